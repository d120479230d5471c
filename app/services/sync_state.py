"""Sync state store: the per-entity ledger behind every pass"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.models import SyncConflict, SyncRecord
from app.models.base import utcnow
from app.models.sync_record import SyncOutcome
from app.services.conflict_resolver import ConflictDecision

logger = logging.getLogger(__name__)

ENTITY_TASK = "task"


def entity_key(local_id: Optional[int], external_id: Optional[str], entity_type: str = ENTITY_TASK) -> str:
    """Stable identity of a linked pair, used to deduplicate conflicts."""
    return f"{entity_type}:{local_id if local_id is not None else '-'}:{external_id or '-'}"


class SyncStateStore:
    """Queries and updates on SyncRecord / SyncConflict rows.

    Methods that take part in an entity's write (upsert, record_error,
    open_conflict) only flush; the caller commits them together with the
    local change.
    """

    def __init__(self, db: Session):
        self.db = db

    def _active(self, integration_id: int, entity_type: str = ENTITY_TASK):
        return self.db.query(SyncRecord).filter(
            SyncRecord.integration_id == integration_id,
            SyncRecord.entity_type == entity_type,
            SyncRecord.stale == False,  # noqa: E712
        )

    def get(
        self,
        integration_id: int,
        *,
        local_id: Optional[int] = None,
        external_id: Optional[str] = None,
        entity_type: str = ENTITY_TASK,
    ) -> Optional[SyncRecord]:
        """Active record by local id or external id (local id first)."""
        if local_id is None and external_id is None:
            raise ValueError("get() needs local_id or external_id")
        query = self._active(integration_id, entity_type)
        if local_id is not None:
            row = query.filter(SyncRecord.local_id == local_id).first()
            if row is not None or external_id is None:
                return row
        return query.filter(SyncRecord.external_id == str(external_id)).first()

    def list_active(self, integration_id: int, project_id: Optional[int] = None) -> List[SyncRecord]:
        query = self._active(integration_id)
        if project_id is not None:
            query = query.filter(SyncRecord.project_id == project_id)
        return query.order_by(SyncRecord.id.asc()).all()

    def mark_stale(self, record: SyncRecord, reason: str) -> SyncRecord:
        record.stale = True
        record.stale_reason = reason
        self.db.flush()
        return record

    def upsert(
        self,
        *,
        integration_id: int,
        project_id: int,
        local_id: int,
        external_id: str,
        external_key: Optional[str] = None,
        local_revision: Optional[str] = None,
        remote_revision: Optional[str] = None,
        remote_updated_at: Optional[datetime] = None,
        outcome: SyncOutcome = SyncOutcome.SUCCESS,
        policy: Optional[str] = None,
        entity_type: str = ENTITY_TASK,
    ) -> SyncRecord:
        """Create or advance the active record for (local_id, external_id).

        If either side is currently linked to a different partner, that
        record is superseded (marked stale) before the new link is written.
        """
        external_id = str(external_id)
        now = utcnow()
        by_local = self._active(integration_id, entity_type).filter(SyncRecord.local_id == local_id).first()
        by_external = (
            self._active(integration_id, entity_type).filter(SyncRecord.external_id == external_id).first()
        )

        record = None
        for candidate in (by_local, by_external):
            if candidate is None or candidate is record:
                continue
            same_pair = candidate.local_id == local_id and candidate.external_id == external_id
            # Records of failed creates carry only one side; the first successful link completes them.
            half_linked = (candidate.local_id == local_id and candidate.external_id is None) or (
                candidate.external_id == external_id and candidate.local_id is None
            )
            if record is None and (same_pair or half_linked):
                record = candidate
            else:
                logger.info(
                    f"Superseding sync record {candidate.id} "
                    f"({candidate.local_id} <-> {candidate.external_id}) with {local_id} <-> {external_id}"
                )
                self.mark_stale(candidate, "relinked")

        if record is None:
            record = SyncRecord(
                integration_id=integration_id,
                project_id=project_id,
                entity_type=entity_type,
                local_id=local_id,
                external_id=external_id,
            )
            self.db.add(record)

        record.project_id = project_id
        record.local_id = local_id
        record.external_id = external_id
        if external_key:
            record.external_key = external_key
        record.local_revision = local_revision
        record.remote_revision = remote_revision
        record.remote_updated_at = remote_updated_at
        record.outcome = outcome
        record.policy = policy
        record.last_attempt_at = now
        if outcome == SyncOutcome.SUCCESS:
            record.last_synced_at = now
            record.attempts = 0
            record.last_error = None
        self.db.flush()
        return record

    def record_error(
        self,
        record: Optional[SyncRecord],
        error: str,
        *,
        outcome: SyncOutcome = SyncOutcome.ERROR,
        policy: Optional[str] = None,
    ) -> Optional[SyncRecord]:
        """Flag a failed attempt, keeping the prior revision tokens."""
        if record is None:
            return None
        record.outcome = outcome
        record.last_attempt_at = utcnow()
        if outcome == SyncOutcome.ERROR:
            record.attempts = (record.attempts or 0) + 1
            record.last_error = (error or "")[:2000]
        if policy is not None:
            record.policy = policy
        self.db.flush()
        return record

    def record_entity_error(
        self,
        error: str,
        *,
        integration_id: int,
        project_id: int,
        local_id: Optional[int] = None,
        external_id: Optional[str] = None,
        external_key: Optional[str] = None,
        policy: Optional[str] = None,
        entity_type: str = ENTITY_TASK,
    ) -> SyncRecord:
        """Flag a failed attempt for an entity that may not be linked yet.

        A failed create has no partner, so its record carries only the side
        that exists; `upsert` completes it once the create succeeds.
        """
        if local_id is None and external_id is None:
            raise ValueError("record_entity_error() needs local_id or external_id")
        external_id = str(external_id) if external_id is not None else None
        record = None
        if local_id is not None:
            record = self._active(integration_id, entity_type).filter(SyncRecord.local_id == local_id).first()
        if record is None and external_id is not None:
            record = self._active(integration_id, entity_type).filter(SyncRecord.external_id == external_id).first()
        if record is None:
            record = SyncRecord(
                integration_id=integration_id,
                project_id=project_id,
                entity_type=entity_type,
                local_id=local_id,
                external_id=external_id,
                external_key=external_key,
                attempts=0,
            )
            self.db.add(record)
        return self.record_error(record, error, policy=policy)

    def list_stale(self, integration_id: int, older_than: Optional[datetime] = None) -> List[SyncRecord]:
        """Records needing attention: failed/pending ones, or ones not synced since `older_than`."""
        query = self._active(integration_id)
        retry = SyncRecord.outcome.in_([SyncOutcome.ERROR, SyncOutcome.PENDING])
        if older_than is not None:
            query = query.filter(
                retry | (SyncRecord.last_synced_at == None) | (SyncRecord.last_synced_at < older_than)  # noqa: E711
            )
        else:
            query = query.filter(retry)
        return query.order_by(SyncRecord.last_attempt_at.asc()).all()

    def reset_failed(self, integration_id: int, project_id: Optional[int] = None) -> int:
        """Make every `error` record retry-eligible again; returns how many.

        Only flushes: a pass commits the reset once its preflight and remote
        snapshot succeeded, other callers commit it themselves.
        """
        query = self._active(integration_id).filter(SyncRecord.outcome == SyncOutcome.ERROR)
        if project_id is not None:
            query = query.filter(SyncRecord.project_id == project_id)
        rows = query.all()
        for row in rows:
            row.outcome = SyncOutcome.PENDING
            row.attempts = 0
            row.last_error = None
        self.db.flush()
        if rows:
            logger.info(f"Reset {len(rows)} failed sync records for integration {integration_id}")
        return len(rows)

    def summary(self, integration_id: int, project_id: Optional[int] = None) -> Dict[str, int]:
        """Active record counts by outcome, plus stale and total counts."""
        query = self.db.query(SyncRecord.outcome, func.count(SyncRecord.id)).filter(
            SyncRecord.integration_id == integration_id,
            SyncRecord.stale == False,  # noqa: E712
        )
        if project_id is not None:
            query = query.filter(SyncRecord.project_id == project_id)
        counts = {outcome.value: 0 for outcome in SyncOutcome}
        for outcome, count in query.group_by(SyncRecord.outcome).all():
            key = outcome.value if isinstance(outcome, SyncOutcome) else str(outcome)
            counts[key] = count

        stale_query = self.db.query(func.count(SyncRecord.id)).filter(
            SyncRecord.integration_id == integration_id,
            SyncRecord.stale == True,  # noqa: E712
        )
        if project_id is not None:
            stale_query = stale_query.filter(SyncRecord.project_id == project_id)
        counts["stale"] = stale_query.scalar() or 0
        counts["total"] = sum(counts[o.value] for o in SyncOutcome)
        return counts

    # --- manual conflicts ---

    def open_conflict(
        self,
        decision: ConflictDecision,
        *,
        integration_id: int,
        project_id: int,
        task_id: int,
        external_id: Optional[str],
        external_key: Optional[str] = None,
        record: Optional[SyncRecord] = None,
    ) -> SyncConflict:
        """Surface (or refresh) the unresolved conflict for decision.entity_key."""
        conflict = (
            self.db.query(SyncConflict)
            .filter(
                SyncConflict.integration_id == integration_id,
                SyncConflict.entity_key == decision.entity_key,
                SyncConflict.resolved == False,  # noqa: E712
            )
            .first()
        )
        if conflict is None:
            conflict = SyncConflict(
                integration_id=integration_id,
                project_id=project_id,
                entity_key=decision.entity_key,
                task_id=task_id,
            )
            self.db.add(conflict)
            logger.warning(f"Conflict detected for {decision.entity_key}: {', '.join(decision.diffs) or 'content'}")

        conflict.sync_record_id = record.id if record is not None else None
        conflict.external_id = external_id
        conflict.external_key = external_key
        conflict.description = f"Both sides changed since last sync ({decision.reason})"
        conflict.local_data = json.dumps(decision.local.to_dict(), sort_keys=True)
        conflict.remote_data = json.dumps(decision.remote.to_dict(), sort_keys=True)
        conflict.field_diffs = json.dumps(decision.diffs)
        self.db.flush()
        return conflict

    def pending_decision(self, integration_id: int, key: str) -> Optional[SyncConflict]:
        """Latest user-resolved conflict for `key` that no pass has applied yet."""
        return (
            self.db.query(SyncConflict)
            .filter(
                SyncConflict.integration_id == integration_id,
                SyncConflict.entity_key == key,
                SyncConflict.resolved == True,  # noqa: E712
                SyncConflict.applied_at == None,  # noqa: E711
            )
            .order_by(SyncConflict.resolved_at.desc(), SyncConflict.id.desc())
            .first()
        )

    def settle_conflicts(self, integration_id: int, key: str) -> int:
        """Close every conflict on `key` now that the pair is in sync again.

        User decisions not yet applied are stamped applied, so they cannot be
        replayed on a later, unrelated conflict. Open conflicts are closed as
        superseded. Returns how many rows changed.
        """
        rows = (
            self.db.query(SyncConflict)
            .filter(
                SyncConflict.integration_id == integration_id,
                SyncConflict.entity_key == key,
                or_(SyncConflict.resolved == False, SyncConflict.applied_at == None),  # noqa: E711,E712
            )
            .all()
        )
        now = utcnow()
        for conflict in rows:
            if not conflict.resolved:
                conflict.resolved = True
                conflict.resolution = "superseded"
                conflict.resolved_at = now
                conflict.resolution_notes = conflict.resolution_notes or "Superseded: both sides in sync again"
                logger.info(f"Conflict {conflict.id} on {key} superseded")
            conflict.applied_at = now
        self.db.flush()
        return len(rows)

    def unresolved_conflicts(self, integration_id: int, project_id: Optional[int] = None) -> List[SyncConflict]:
        query = self.db.query(SyncConflict).filter(
            SyncConflict.integration_id == integration_id,
            SyncConflict.resolved == False,  # noqa: E712
        )
        if project_id is not None:
            query = query.filter(SyncConflict.project_id == project_id)
        return query.order_by(SyncConflict.created_at.desc()).all()
