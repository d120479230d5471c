"""Bidirectional task synchronization between local projects and Jira"""

import enum
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models import (
    JiraIntegration,
    Project,
    Status,
    StatusMapping,
    SyncLog,
    SyncRecord,
    Task,
    UserMapping,
)
from app.models.base import utcnow
from app.models.sync_log import SyncDirection, SyncStatus, SyncTrigger
from app.models.sync_record import SyncOutcome
from app.services.conflict_resolver import (
    ConflictPolicy,
    EntitySnapshot,
    Resolution,
    resolve,
)
from app.services.errors import (
    EntitySyncError,
    JiraAuthError,
    JiraError,
    JiraNotFoundError,
    JiraRateLimitError,
    PassFatalError,
)
from app.services.jira_client import (
    ExternalIssue,
    ExternalIssueType,
    ExternalPriority,
    ExternalProject,
    ExternalStatus,
    JiraClient,
    since_from_cursor,
)
from app.services.jira_converter import (
    description_for_jira,
    normalize_text,
    priority_from_jira,
    priority_to_jira,
    status_color_from_jira,
)
from app.services.notifier import Notifier
from app.services.sync_lock import SyncLockManager
from app.services.sync_state import SyncStateStore, entity_key

logger = logging.getLogger(__name__)

UNCHANGED = "unchanged"
LOCAL_ONLY_CHANGED = "local_only_changed"
REMOTE_ONLY_CHANGED = "remote_only_changed"
BOTH_CHANGED = "both_changed"
NEW_LOCAL = "new_local"
NEW_REMOTE = "new_remote"
LOCAL_DELETED = "local_deleted"

RETRY_OUTCOMES = (SyncOutcome.ERROR, SyncOutcome.PENDING, SyncOutcome.CONFLICT)


class PassOutcome(str, enum.Enum):
    """How a pass ended"""
    SUCCESS = "success"
    PARTIAL = "partial"
    RATE_LIMITED = "rate_limited"
    DRY_RUN = "dry_run"


def _flag(data: Dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


@dataclass
class SyncOptions:
    """Per-pass switches (API payloads use the camelCase names)"""

    push_to_jira: bool = True
    pull_from_jira: bool = True
    resolve_conflicts: ConflictPolicy = ConflictPolicy.MANUAL
    sync_tasks: bool = True
    sync_statuses: bool = True
    propagate_deletes: bool = False

    def __post_init__(self):
        self.resolve_conflicts = ConflictPolicy.parse(self.resolve_conflicts)

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> "SyncOptions":
        data = data or {}
        return cls(
            push_to_jira=bool(_flag(data, "pushToJira", "push_to_jira", default=True)),
            pull_from_jira=bool(_flag(data, "pullFromJira", "pull_from_jira", default=True)),
            resolve_conflicts=_flag(data, "resolveConflicts", "resolve_conflicts", default="manual"),
            sync_tasks=bool(_flag(data, "syncTasks", "sync_tasks", default=True)),
            sync_statuses=bool(_flag(data, "syncStatuses", "sync_statuses", default=True)),
            propagate_deletes=bool(_flag(data, "propagateDeletes", "propagate_deletes", default=False)),
        )

    @property
    def dry_run(self) -> bool:
        return not self.push_to_jira and not self.pull_from_jira

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pushToJira": self.push_to_jira,
            "pullFromJira": self.pull_from_jira,
            "resolveConflicts": self.resolve_conflicts.value,
            "syncTasks": self.sync_tasks,
            "syncStatuses": self.sync_statuses,
            "propagateDeletes": self.propagate_deletes,
        }


@dataclass
class PassResult:
    """Structured summary of one pass"""

    success: bool = True
    outcome: PassOutcome = PassOutcome.SUCCESS
    retryable: bool = False
    message: str = ""
    tasks_pushed: int = 0
    tasks_pulled: int = 0
    tasks_deleted: int = 0
    statuses_pushed: int = 0
    statuses_pulled: int = 0
    unchanged: int = 0
    skipped: int = 0
    processed: int = 0
    reset_records: int = 0
    classified: Dict[str, int] = field(default_factory=dict)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def count(self, classification: str):
        self.classified[classification] = self.classified.get(classification, 0) + 1

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "retryable": self.retryable,
            "data": {
                "tasksPushedToJira": self.tasks_pushed,
                "tasksPulledFromJira": self.tasks_pulled,
                "tasksDeletedFromJira": self.tasks_deleted,
                "statusesPushedToJira": self.statuses_pushed,
                "statusesPulledFromJira": self.statuses_pulled,
                "unchanged": self.unchanged,
                "skipped": self.skipped,
                "processed": self.processed,
                "resetRecords": self.reset_records,
                "classified": dict(self.classified),
                "conflicts": list(self.conflicts),
                "errors": list(self.errors),
                "outcome": self.outcome.value,
            },
        }


class _RateLimitCeilingReached(Exception):
    """Cumulative rate-limit suspension went over the ceiling."""


@dataclass
class _Pass:
    """State of one running pass"""

    integration: JiraIntegration
    project: Project
    options: SyncOptions
    trigger: SyncTrigger
    client: Any
    result: PassResult
    started_at: datetime
    lock_token: str
    lock_renewed_at: datetime
    suspended_s: float = 0.0
    remote_issues: List[ExternalIssue] = field(default_factory=list)
    forward_status: Dict[int, str] = field(default_factory=dict)
    reverse_status: Dict[str, int] = field(default_factory=dict)
    account_by_user: Dict[str, str] = field(default_factory=dict)
    user_by_account: Dict[str, str] = field(default_factory=dict)
    issue_type: Optional[str] = None
    priority_names: Set[str] = field(default_factory=set)
    statuses: List[ExternalStatus] = field(default_factory=list)
    pulled: Set[str] = field(default_factory=set)
    pushed: Set[str] = field(default_factory=set)
    remote_failures: int = 0


@dataclass
class _Entity:
    task: Optional[Task] = None
    issue: Optional[ExternalIssue] = None
    record: Optional[SyncRecord] = None
    external_id: Optional[str] = None
    from_remote: bool = False


class SyncService:
    """Runs reconciliation passes for (integration, project) scopes.

    Collaborators are injected so tests can swap the Jira client, the
    notifier and the clock/sleep used for rate-limit suspension.
    """

    def __init__(
        self,
        db: Session,
        *,
        client_factory: Optional[Callable[..., Any]] = None,
        notifier: Optional[Notifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        lock_manager: Optional[SyncLockManager] = None,
    ):
        self.db = db
        self.client_factory = client_factory or self._default_client_factory
        self.notifier = notifier or Notifier()
        self.sleep = sleep
        self.clock = clock
        self.store = SyncStateStore(db)
        self.locks = lock_manager or SyncLockManager(db, clock=clock)
        self.clients: Dict[int, Any] = {}

    @staticmethod
    def _default_client_factory(domain: str, email: str, api_token: str) -> JiraClient:
        return JiraClient(
            domain,
            email,
            api_token,
            timeout=settings.jira_request_timeout_seconds,
            max_results=settings.jira_max_results,
        )

    def _get_client(self, integration: JiraIntegration):
        """Get or create the Jira client for an integration"""
        if integration.id not in self.clients:
            self.clients[integration.id] = self.client_factory(
                integration.jira_domain, integration.jira_email, integration.jira_api_token
            )
        return self.clients[integration.id]

    # --- connection and catalog pass-throughs ---

    def test_connection(self, domain: str, email: str, api_token: str) -> Dict[str, Any]:
        """Check credentials without persisting anything."""
        client = self.client_factory(domain, email, api_token)
        try:
            user = client.get_current_user()
        except JiraAuthError:
            return {"success": False, "message": "Invalid Jira credentials"}
        except JiraError as e:
            return {"success": False, "message": f"Could not connect to Jira: {e}"}
        name = user.get("displayName") or user.get("emailAddress") or email
        return {"success": True, "message": f"Connected to {domain} as {name}"}

    def list_remote_projects(self, integration: JiraIntegration) -> List[ExternalProject]:
        return self._get_client(integration).list_projects()

    def list_remote_statuses(self, integration: JiraIntegration, project_key: str) -> List[ExternalStatus]:
        return self._get_client(integration).list_statuses(project_key)

    def list_remote_issue_types(self, integration: JiraIntegration, project_key: str) -> List[ExternalIssueType]:
        return self._get_client(integration).list_issue_types(project_key)

    def list_remote_priorities(self, integration: JiraIntegration) -> List[ExternalPriority]:
        return self._get_client(integration).list_priorities()

    # --- logging ---

    def _log_sync(
        self,
        project: Project,
        status: SyncStatus,
        direction: Optional[SyncDirection] = None,
        message: str = "",
        *,
        integration_id: Optional[int] = None,
        trigger: Optional[SyncTrigger] = None,
        task_id: Optional[int] = None,
        external_key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Log sync operation"""
        log = SyncLog(
            integration_id=integration_id if integration_id is not None else project.integration_id,
            project_id=project.id,
            status=status,
            direction=direction,
            trigger=trigger,
            message=message,
            task_id=task_id,
            external_key=external_key,
            details=json.dumps(details, default=str) if details is not None else None,
        )
        self.db.add(log)
        self.db.commit()

    # --- pass entry points ---

    def run_project_pass(
        self,
        project_id: int,
        options: Optional[SyncOptions] = None,
        *,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        reset_failed: bool = False,
    ) -> PassResult:
        """Look up a project and its integration, then run a pass"""
        project = self.db.query(Project).filter(Project.id == project_id).first()
        if not project:
            raise ValueError(f"Project {project_id} not found")
        if not project.integration_id:
            raise ValueError(f"Project {project.name} is not linked to Jira")
        integration = self.db.query(JiraIntegration).filter(JiraIntegration.id == project.integration_id).first()
        if not integration:
            raise ValueError(f"Integration {project.integration_id} not found")
        return self.run_pass(integration, project, options, trigger=trigger, reset_failed=reset_failed)

    def run_pass(
        self,
        integration: JiraIntegration,
        project: Project,
        options: Optional[SyncOptions] = None,
        *,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        reset_failed: bool = False,
    ) -> PassResult:
        """Run one reconciliation pass.

        Raises SyncLockedError when another pass holds the lock and
        PassFatalError when nothing could be synced (credentials, catalogs,
        remote snapshot) or when the lock was lost mid-pass
        (SyncLockLostError). Per-entity failures end up in the result.
        """
        options = options or SyncOptions()
        if not integration.is_active:
            raise PassFatalError(f"Jira integration {integration.id} is deactivated")
        if not project.jira_project_key:
            raise PassFatalError(f"Project {project.name} has no Jira project key")

        token = self.locks.acquire(integration.id, project.id)
        try:
            started_at = self.clock()
            ctx = _Pass(
                integration=integration,
                project=project,
                options=options,
                trigger=trigger,
                client=self._get_client(integration),
                result=PassResult(),
                started_at=started_at,
                lock_token=token,
                lock_renewed_at=started_at,
            )
            try:
                self._run_locked(ctx, reset_failed)
            except _RateLimitCeilingReached:
                self.db.rollback()
                result = ctx.result
                result.success = False
                result.outcome = PassOutcome.RATE_LIMITED
                result.retryable = True
                result.message = (
                    f"Rate limited by Jira for {ctx.suspended_s:.0f}s; "
                    f"pass stopped after {result.processed} entities, remaining work is left for the next pass"
                )
                logger.warning(f"Sync of project {project.name}: {result.message}")
                self._log_sync(
                    project,
                    SyncStatus.RATE_LIMITED,
                    message=result.message,
                    integration_id=integration.id,
                    trigger=trigger,
                    details=result.to_response()["data"],
                )
            return ctx.result
        except PassFatalError as e:
            self.db.rollback()
            logger.error(f"Sync of project {project.name} failed: {e}")
            self._log_sync(
                project, SyncStatus.FAILED, message=str(e), integration_id=integration.id, trigger=trigger
            )
            raise
        finally:
            self.locks.release(integration.id, project.id, token)

    def _run_locked(self, ctx: _Pass, reset_failed: bool):
        result = ctx.result
        project = ctx.project
        logger.info(
            f"Starting {ctx.trigger.value} sync of project {project.name} "
            f"({project.jira_project_key}) with {ctx.options.to_dict()}"
        )

        ctx.client.clear_catalog_cache()
        # Nothing is written before credentials, catalogs and the remote snapshot are in hand.
        self._preflight(ctx)
        if ctx.options.sync_tasks:
            self._fetch_remote(ctx)
        if reset_failed:
            result.reset_records = self.store.reset_failed(ctx.integration.id, project.id)
            self.db.commit()

        self._keep_lock(ctx)
        if ctx.options.sync_statuses:
            self._sync_statuses(ctx)
        self._load_mappings(ctx)
        if ctx.options.sync_tasks:
            self._sync_tasks(ctx)

        if not ctx.options.dry_run:
            # Local watermark only moves when local changes could be pushed, the
            # remote one only when remote changes could be pulled without failures.
            if ctx.options.push_to_jira and ctx.options.sync_tasks:
                project.last_synced_at = ctx.started_at
            if ctx.options.pull_from_jira and ctx.options.sync_tasks and not ctx.remote_failures:
                project.remote_sync_cursor = ctx.started_at.isoformat()
            self.db.commit()

        if ctx.options.dry_run:
            result.outcome = PassOutcome.DRY_RUN
        elif result.errors:
            result.outcome = PassOutcome.PARTIAL
        result.message = (
            f"Sync completed: {result.tasks_pushed} pushed, {result.tasks_pulled} pulled, "
            f"{len(result.conflicts)} conflicts, {len(result.errors)} errors"
        )
        logger.info(f"Sync of project {project.name}: {result.message}")
        self._log_sync(
            project,
            SyncStatus.SUCCESS if not result.errors else SyncStatus.FAILED,
            message=result.message,
            integration_id=ctx.integration.id,
            trigger=ctx.trigger,
            details=result.to_response()["data"],
        )

    # --- lock, rate limits and auth ---

    def _keep_lock(self, ctx: _Pass):
        """Renew the pass's lock once a third of its TTL has gone by.

        SyncLockLostError propagates: a pass whose lock was taken over must
        stop writing.
        """
        now = self.clock()
        if (now - ctx.lock_renewed_at).total_seconds() < self.locks.ttl_seconds / 3:
            return
        self.locks.refresh(ctx.integration.id, ctx.project.id, ctx.lock_token)
        ctx.lock_renewed_at = now

    def _call(self, ctx: _Pass, fn: Callable[[], Any]) -> Any:
        """Run a Jira call, suspending on rate limits until the ceiling is hit."""
        while True:
            try:
                return fn()
            except JiraRateLimitError as e:
                delay = e.retry_after if e.retry_after is not None else settings.rate_limit_default_backoff_seconds
                if ctx.suspended_s + delay > settings.rate_limit_ceiling_seconds:
                    raise _RateLimitCeilingReached() from e
                logger.warning(f"Rate limited by Jira; sleeping {delay:.1f}s before retrying")
                ctx.suspended_s += delay
                self.sleep(delay)

    def _record_auth_failure(self, integration: JiraIntegration, error: Exception):
        integration.consecutive_auth_failures = (integration.consecutive_auth_failures or 0) + 1
        failures = integration.consecutive_auth_failures
        logger.warning(f"Jira rejected credentials for integration {integration.id} ({failures} in a row)")
        deactivated = False
        if failures >= settings.auth_failure_threshold and integration.is_active:
            integration.is_active = False
            integration.deactivated_at = utcnow()
            integration.deactivation_reason = f"{failures} consecutive authentication failures: {error}"
            deactivated = True
        self.db.commit()
        if deactivated:
            self.notifier.integration_deactivated(integration, integration.deactivation_reason)

    def _preflight(self, ctx: _Pass):
        """Credentials and catalogs; any failure here is fatal to the pass."""
        client = ctx.client
        key = ctx.project.jira_project_key
        try:
            self._call(ctx, client.get_current_user)
            ctx.statuses = self._call(ctx, lambda: client.list_statuses(key))
            issue_types = self._call(ctx, lambda: client.list_issue_types(key))
            priorities = self._call(ctx, client.list_priorities)
        except JiraAuthError as e:
            self.db.rollback()
            self._record_auth_failure(ctx.integration, e)
            raise PassFatalError(f"Jira authentication failed: {e}", cause=e) from e
        except JiraNotFoundError as e:
            raise PassFatalError(f"Jira project {key} not found or not visible", cause=e) from e
        except JiraError as e:
            raise PassFatalError(f"Could not load Jira catalogs for {key}: {e}", cause=e) from e

        if ctx.integration.consecutive_auth_failures:
            ctx.integration.consecutive_auth_failures = 0
            self.db.commit()

        ctx.priority_names = {p.name for p in priorities}
        ctx.issue_type = self._pick_issue_type(ctx.integration, issue_types)

    @staticmethod
    def _pick_issue_type(integration: JiraIntegration, issue_types: List[ExternalIssueType]) -> Optional[str]:
        wanted = integration.default_issue_type or settings.default_issue_type
        for issue_type in issue_types:
            if issue_type.name.lower() == (wanted or "").lower():
                return issue_type.name
        fallback = next((t.name for t in issue_types if not t.subtask), None)
        if fallback:
            logger.info(f"Issue type {wanted!r} not available; using {fallback!r}")
        return fallback

    # --- statuses ---

    def _mappings(self, ctx: _Pass):
        return self.db.query(StatusMapping).filter(
            StatusMapping.integration_id == ctx.integration.id,
            StatusMapping.project_id == ctx.project.id,
        )

    def _sync_statuses(self, ctx: _Pass):
        """Align the local status catalog and mappings with Jira's statuses."""
        project = ctx.project
        result = ctx.result
        by_external = {m.external_status_id: m for m in self._mappings(ctx).all()}

        if ctx.options.pull_from_jira:
            local_statuses = self.db.query(Status).filter(Status.project_id == project.id).all()
            by_name = {s.name.lower(): s for s in local_statuses}
            next_position = max((s.position or 0 for s in local_statuses), default=-1) + 1
            for ext in ctx.statuses:
                try:
                    mapping = by_external.get(ext.id)
                    if mapping is not None:
                        mapping.external_status_name = ext.name
                        mapping.external_category = ext.category
                        self.db.commit()
                        continue

                    status = by_name.get(ext.name.lower())
                    if status is None:
                        status = Status(
                            project_id=project.id,
                            name=ext.name,
                            color=status_color_from_jira(ext.color_name),
                            position=next_position,
                            category=ext.category,
                        )
                        self.db.add(status)
                        self.db.flush()
                        next_position += 1
                        by_name[ext.name.lower()] = status
                        logger.info(f"Created local status {ext.name!r} in project {project.name}")

                    mapping = self._add_status_mapping(ctx, status, ext)
                    self.db.commit()
                    by_external[ext.id] = mapping
                    result.statuses_pulled += 1
                except IntegrityError as e:
                    self.db.rollback()
                    logger.warning(f"Status mapping for {ext.name!r} already exists: {e.orig}")

        if ctx.options.push_to_jira:
            mapped_ids = {m.status_id for m in by_external.values()}
            remote_by_name = {s.name.lower(): s for s in ctx.statuses}
            for status in self.db.query(Status).filter(Status.project_id == project.id).order_by(Status.position):
                if status.id in mapped_ids:
                    continue
                ext = remote_by_name.get(status.name.lower())
                if ext is None or ext.id in by_external:
                    logger.info(
                        f"Skipping local status {status.name!r}: no matching Jira status "
                        f"(Jira workflows are edited in Jira)"
                    )
                    continue
                try:
                    by_external[ext.id] = self._add_status_mapping(ctx, status, ext)
                    self.db.commit()
                    mapped_ids.add(status.id)
                    result.statuses_pushed += 1
                except IntegrityError as e:
                    self.db.rollback()
                    logger.warning(f"Could not link status {status.name!r}: {e.orig}")

    def _add_status_mapping(self, ctx: _Pass, status: Status, ext: ExternalStatus) -> StatusMapping:
        has_primary = (
            self._mappings(ctx)
            .filter(StatusMapping.status_id == status.id, StatusMapping.is_primary == True)  # noqa: E712
            .first()
            is not None
        )
        mapping = StatusMapping(
            integration_id=ctx.integration.id,
            project_id=ctx.project.id,
            status_id=status.id,
            external_status_id=ext.id,
            external_status_name=ext.name,
            external_category=ext.category,
            is_primary=not has_primary,
        )
        self.db.add(mapping)
        self.db.flush()
        return mapping

    def _load_mappings(self, ctx: _Pass):
        for mapping in self._mappings(ctx).order_by(StatusMapping.is_primary.desc(), StatusMapping.id.asc()):
            ctx.reverse_status[mapping.external_status_id] = mapping.status_id
            ctx.forward_status.setdefault(mapping.status_id, mapping.external_status_id)

        users = self.db.query(UserMapping).filter(UserMapping.integration_id == ctx.integration.id).all()
        ctx.account_by_user = {u.local_user_id: u.jira_account_id for u in users}
        ctx.user_by_account = {u.jira_account_id: u.local_user_id for u in users}

    # --- snapshots ---

    def _local_snapshot(self, ctx: _Pass, task: Task) -> EntitySnapshot:
        return EntitySnapshot(
            title=task.title or "",
            description=description_for_jira(task.description),
            status_id=ctx.forward_status.get(task.status_id),
            priority=priority_to_jira(task.priority),
            assignee_account_id=ctx.account_by_user.get(task.assignee_id) if task.assignee_id else None,
            updated_at=task.updated_at,
        )

    @staticmethod
    def _remote_snapshot(issue: ExternalIssue) -> EntitySnapshot:
        return EntitySnapshot(
            title=issue.title or "",
            description=normalize_text(issue.description),
            status_id=issue.status_id,
            priority=priority_to_jira(priority_from_jira(issue.priority)),
            assignee_account_id=issue.assignee_account_id,
            updated_at=issue.updated_at,
        )

    def _local_candidates(self, ctx: _Pass, records: List[SyncRecord], remote_ids: List[str]) -> List[Task]:
        """Tasks that may need work this pass."""
        project = ctx.project
        query = self.db.query(Task).filter(Task.project_id == project.id)
        if project.last_synced_at is not None:
            retry_ids = [r.local_id for r in records if r.outcome in RETRY_OUTCOMES and r.local_id is not None]
            conditions = [Task.updated_at > project.last_synced_at, Task.external_id == None]  # noqa: E711
            if retry_ids:
                conditions.append(Task.id.in_(retry_ids))
            if remote_ids:
                conditions.append(Task.external_id.in_(remote_ids))
            query = query.filter(or_(*conditions))
        tasks = []
        for task in query.order_by(Task.id.asc()).all():
            data = task.external_data or {}
            if data.get("sync_excluded") or data.get("jira_deleted"):
                continue
            tasks.append(task)
        return tasks

    def _build_entities(self, ctx: _Pass, remote_issues: List[ExternalIssue]) -> List[_Entity]:
        records = self.store.list_active(ctx.integration.id, ctx.project.id)
        by_local = {r.local_id: r for r in records if r.local_id is not None}
        by_external = {r.external_id: r for r in records if r.external_id is not None}
        tasks = self._local_candidates(ctx, records, [i.id for i in remote_issues])
        tasks_by_id = {t.id: t for t in tasks}
        tasks_by_external = {t.external_id: t for t in tasks if t.external_id}

        entities: List[_Entity] = []
        seen_tasks: Set[int] = set()
        seen_records: Set[int] = set()

        for issue in remote_issues:
            record = by_external.get(issue.id)
            if record is not None and record.local_id is not None:
                task = tasks_by_id.get(record.local_id) or self.db.get(Task, record.local_id)
            else:
                task = tasks_by_external.get(issue.id)
            if record is not None:
                seen_records.add(record.id)
            if task is not None:
                data = task.external_data or {}
                if data.get("sync_excluded") or data.get("jira_deleted"):
                    continue
                seen_tasks.add(task.id)
            entities.append(_Entity(task=task, issue=issue, record=record, external_id=issue.id, from_remote=True))

        for task in tasks:
            if task.id in seen_tasks:
                continue
            record = by_local.get(task.id)
            if record is not None:
                seen_records.add(record.id)
            external_id = (record.external_id if record is not None else None) or task.external_id
            entities.append(_Entity(task=task, record=record, external_id=external_id))

        if ctx.options.propagate_deletes:
            # Half-linked records of failed creates have nothing to delete on the other side.
            unseen = [
                r
                for r in records
                if r.id not in seen_records and r.local_id is not None and r.external_id is not None
            ]
            existing = set()
            if unseen:
                ids = [r.local_id for r in unseen]
                existing = {row[0] for row in self.db.query(Task.id).filter(Task.id.in_(ids)).all()}
            for record in unseen:
                if record.local_id not in existing:
                    entities.append(_Entity(record=record, external_id=record.external_id))
        return entities

    # --- tasks ---

    def _fetch_remote(self, ctx: _Pass):
        """Remote snapshot for the pass; failing to get it is fatal."""
        key = ctx.project.jira_project_key
        since = since_from_cursor(ctx.project.remote_sync_cursor, settings.incremental_overlap_minutes)
        try:
            ctx.remote_issues = self._call(ctx, lambda: ctx.client.list_issues(key, since=since))
        except JiraAuthError as e:
            self.db.rollback()
            self._record_auth_failure(ctx.integration, e)
            raise PassFatalError(f"Jira authentication failed: {e}", cause=e) from e
        except JiraError as e:
            raise PassFatalError(f"Could not fetch Jira issues for {key}: {e}", cause=e) from e
        logger.info(
            f"Fetched {len(ctx.remote_issues)} Jira issues for {key} "
            f"({'since ' + since.isoformat() if since else 'full scan'})"
        )

    def _sync_tasks(self, ctx: _Pass):
        for entity in self._build_entities(ctx, ctx.remote_issues):
            self._keep_lock(ctx)
            try:
                self._process_entity(ctx, entity)
                ctx.result.processed += 1
            except _RateLimitCeilingReached:
                raise
            except JiraAuthError as e:
                self.db.rollback()
                self._record_auth_failure(ctx.integration, e)
                raise PassFatalError(f"Jira authentication failed: {e}", cause=e) from e
            except Exception as e:
                self.db.rollback()
                self._record_entity_failure(ctx, entity, e)
                ctx.result.processed += 1

    def _record_entity_failure(self, ctx: _Pass, entity: _Entity, error: Exception):
        task_id = entity.task.id if entity.task is not None else (entity.record.local_id if entity.record else None)
        external_key = entity.issue.key if entity.issue is not None else None
        if external_key is None and entity.record is not None:
            external_key = entity.record.external_key
        direction = SyncDirection.PULL if entity.from_remote else SyncDirection.PUSH
        logger.error(f"Failed to sync task {task_id} / {external_key or entity.external_id}: {error}")

        policy = ctx.options.resolve_conflicts.value
        if entity.record is not None:
            self.store.record_error(entity.record, str(error), policy=policy)
        else:
            self.store.record_entity_error(
                str(error),
                integration_id=ctx.integration.id,
                project_id=ctx.project.id,
                local_id=task_id,
                external_id=entity.external_id,
                external_key=external_key,
                policy=policy,
            )
        self.db.commit()
        if entity.from_remote:
            ctx.remote_failures += 1
        ctx.result.errors.append(
            {
                "taskId": task_id,
                "externalId": entity.external_id,
                "externalKey": external_key,
                "direction": direction.value,
                "error": str(error),
            }
        )
        self._log_sync(
            ctx.project,
            SyncStatus.FAILED,
            direction,
            f"Failed: {error}",
            integration_id=ctx.integration.id,
            trigger=ctx.trigger,
            task_id=task_id,
            external_key=external_key,
        )

    def _process_entity(self, ctx: _Pass, entity: _Entity):
        result = ctx.result
        options = ctx.options

        if entity.task is None and entity.issue is None:
            result.count(LOCAL_DELETED)
            if options.push_to_jira:
                self._push_delete(ctx, entity)
            return

        if entity.task is None:
            if entity.record is not None and entity.record.local_id is not None:
                # Linked task vanished locally; without delete propagation only the link goes.
                result.count(LOCAL_DELETED)
                if options.propagate_deletes and options.push_to_jira:
                    self._push_delete(ctx, entity)
                elif not options.dry_run:
                    self.store.mark_stale(entity.record, "local_missing")
                    self.db.commit()
                return
            result.count(NEW_REMOTE)
            if options.pull_from_jira:
                self._pull_create(ctx, entity.issue)
            else:
                result.skipped += 1
            return

        if entity.external_id is None:
            result.count(NEW_LOCAL)
            if options.push_to_jira:
                self._push_create(ctx, entity.task)
            else:
                result.skipped += 1
            return

        if entity.issue is None:
            try:
                entity.issue = self._call(ctx, lambda: ctx.client.get_issue(entity.external_id))
            except JiraNotFoundError:
                logger.info(f"Jira issue {entity.external_id} no longer exists; unlinking task {entity.task.id}")
                if not options.dry_run:
                    self._unlink_remote_deleted(ctx.project, entity.record, entity.task)
                result.skipped += 1
                return

        task, issue, record = entity.task, entity.issue, entity.record
        local = self._local_snapshot(ctx, task)
        remote = self._remote_snapshot(issue)
        local_rev, remote_rev = local.revision(), remote.revision()

        if record is None:
            classification = BOTH_CHANGED
        else:
            local_changed = local_rev != record.local_revision
            remote_changed = remote_rev != record.remote_revision
            if local_changed and remote_changed:
                classification = BOTH_CHANGED
            elif local_changed:
                classification = LOCAL_ONLY_CHANGED
            elif remote_changed:
                classification = REMOTE_ONLY_CHANGED
            else:
                classification = UNCHANGED
        result.count(classification)

        if options.dry_run:
            return

        if classification == UNCHANGED:
            result.unchanged += 1
            if record.outcome != SyncOutcome.SUCCESS:
                self._advance(ctx, task, issue, local_rev, remote_rev)
                self.db.commit()
            return

        if classification == LOCAL_ONLY_CHANGED:
            if options.push_to_jira:
                self._push_update(ctx, task, issue, local)
            else:
                result.skipped += 1
            return

        if classification == REMOTE_ONLY_CHANGED:
            if options.pull_from_jira:
                self._pull_update(ctx, task, issue, remote)
            else:
                result.skipped += 1
            return

        if local_rev == remote_rev:
            # Both sides moved to the same content.
            result.unchanged += 1
            self._advance(ctx, task, issue, local_rev, remote_rev)
            self.db.commit()
            return

        self._resolve_conflict(ctx, task, issue, record, local, remote)

    def _resolve_conflict(
        self,
        ctx: _Pass,
        task: Task,
        issue: ExternalIssue,
        record: Optional[SyncRecord],
        local: EntitySnapshot,
        remote: EntitySnapshot,
    ):
        options = ctx.options
        key = entity_key(task.id, issue.id)
        pending = self.store.pending_decision(ctx.integration.id, key)
        decision = resolve(
            key,
            local,
            remote,
            options.resolve_conflicts,
            prior_local_revision=record.local_revision if record else None,
            prior_remote_revision=record.remote_revision if record else None,
            decision=pending.resolution if pending else None,
        )
        ctx.result.conflicts.append(
            {
                "entityKey": key,
                "taskId": task.id,
                "externalKey": issue.key,
                "fields": decision.diffs,
                "resolution": decision.resolution.value,
                "reason": decision.reason,
            }
        )

        if decision.resolution == Resolution.MANUAL:
            conflict = self.store.open_conflict(
                decision,
                integration_id=ctx.integration.id,
                project_id=ctx.project.id,
                task_id=task.id,
                external_id=issue.id,
                external_key=issue.key,
                record=record,
            )
            if record is None:
                record = self.store.upsert(
                    integration_id=ctx.integration.id,
                    project_id=ctx.project.id,
                    local_id=task.id,
                    external_id=issue.id,
                    external_key=issue.key,
                    outcome=SyncOutcome.CONFLICT,
                    policy=options.resolve_conflicts.value,
                )
                conflict.sync_record_id = record.id
            else:
                self.store.record_error(
                    record, decision.reason, outcome=SyncOutcome.CONFLICT, policy=options.resolve_conflicts.value
                )
            self.db.commit()
            self._log_sync(
                ctx.project,
                SyncStatus.CONFLICT,
                message=f"Conflict on {issue.key}: {', '.join(decision.diffs)} differ",
                integration_id=ctx.integration.id,
                trigger=ctx.trigger,
                task_id=task.id,
                external_key=issue.key,
            )
            return

        if decision.resolution == Resolution.PUSH and options.push_to_jira:
            self._push_update(ctx, task, issue, local)
        elif decision.resolution == Resolution.PULL and options.pull_from_jira:
            self._pull_update(ctx, task, issue, remote)
        else:
            logger.info(f"Conflict on {issue.key} resolved to {decision.resolution.value}, but that direction is off")
            ctx.result.skipped += 1

    # --- writes ---

    def _advance(
        self,
        ctx: _Pass,
        task: Task,
        issue: ExternalIssue,
        local_rev: Optional[str],
        remote_rev: Optional[str],
        outcome: SyncOutcome = SyncOutcome.SUCCESS,
    ) -> SyncRecord:
        """Write the link; a successful one also closes the pair's conflicts and pending decisions."""
        record = self.store.upsert(
            integration_id=ctx.integration.id,
            project_id=ctx.project.id,
            local_id=task.id,
            external_id=issue.id,
            external_key=issue.key,
            local_revision=local_rev,
            remote_revision=remote_rev,
            remote_updated_at=issue.updated_at,
            outcome=outcome,
            policy=ctx.options.resolve_conflicts.value,
        )
        if outcome == SyncOutcome.SUCCESS:
            self.store.settle_conflicts(ctx.integration.id, entity_key(task.id, issue.id))
        return record

    def _push_fields(self, ctx: _Pass, task: Task, *, create: bool) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "title": task.title,
            "description": description_for_jira(task.description),
            "due_date": task.due_date,
        }
        priority = priority_to_jira(task.priority)
        if priority in ctx.priority_names:
            fields["priority"] = priority
        else:
            logger.info(f"Jira has no priority {priority!r}; leaving it unset for task {task.id}")

        if task.assignee_id:
            account_id = ctx.account_by_user.get(task.assignee_id)
            if account_id:
                fields["assignee_account_id"] = account_id
            else:
                logger.warning(f"No Jira account mapped for user {task.assignee_id}; assignee not synced")
        else:
            fields["assignee_account_id"] = None

        status_id = ctx.forward_status.get(task.status_id)
        if status_id:
            fields["status_id"] = status_id
        if create and ctx.issue_type:
            fields["issue_type"] = ctx.issue_type
        return fields

    def _refetch_revision(self, ctx: _Pass, issue_id: str, fallback: str) -> Tuple[Optional[ExternalIssue], str]:
        """Re-read an issue after a push; fall back to the pushed content hash."""
        try:
            refreshed = self._call(ctx, lambda: ctx.client.get_issue(issue_id))
        except JiraAuthError:
            raise
        except JiraError as e:
            logger.warning(f"Could not re-read Jira issue {issue_id} after push: {e}")
            return None, fallback
        return refreshed, self._remote_snapshot(refreshed).revision()

    def _push_create(self, ctx: _Pass, task: Task):
        """Create a Jira issue for a local task and link them."""
        fields = self._push_fields(ctx, task, create=True)
        status_id = fields.pop("status_id", None)
        created = self._call(ctx, lambda: ctx.client.create_issue(ctx.project.jira_project_key, fields))

        # Link first so a later failure can never produce a duplicate issue.
        task.external_id = created.id
        task.integration_type = "jira"
        data = dict(task.external_data or {})
        data["jira_key"] = created.key
        task.external_data = data
        self.db.flush()
        local_rev = self._local_snapshot(ctx, task).revision()
        self._advance(ctx, task, created, local_rev, local_rev)
        self.db.commit()
        ctx.pushed.add(created.id)
        ctx.result.tasks_pushed += 1
        logger.info(f"Pushed new task {task.id} as {created.key}")

        if status_id:
            try:
                self._call(ctx, lambda: ctx.client.transition_issue(created.id, status_id))
            except JiraAuthError:
                raise
            except JiraError as e:
                logger.warning(f"Could not move {created.key} to status {status_id}: {e}")
        refreshed, remote_rev = self._refetch_revision(ctx, created.id, local_rev)
        if refreshed is not None:
            self._advance(ctx, task, refreshed, local_rev, remote_rev)
            self.db.commit()

    def _push_update(
        self,
        ctx: _Pass,
        task: Task,
        issue: ExternalIssue,
        local: EntitySnapshot,
    ):
        if issue.id in ctx.pulled:
            raise EntitySyncError(f"{issue.key} was pulled in this pass and cannot be pushed")
        fields = self._push_fields(ctx, task, create=False)
        self._call(ctx, lambda: ctx.client.update_issue(issue.id, fields))
        local_rev = local.revision()
        refreshed, remote_rev = self._refetch_revision(ctx, issue.id, local_rev)
        self._advance(ctx, task, refreshed or issue, local_rev, remote_rev)
        self.db.commit()
        ctx.pushed.add(issue.id)
        ctx.result.tasks_pushed += 1
        logger.info(f"Pushed task {task.id} to {issue.key}")

    def _apply_issue(self, ctx: _Pass, task: Task, issue: ExternalIssue):
        """Copy Jira fields onto a local task."""
        task.title = issue.title
        task.description = issue.description or None
        task.priority = priority_from_jira(issue.priority)
        task.due_date = issue.due_date
        if issue.status_id in ctx.reverse_status:
            task.status_id = ctx.reverse_status[issue.status_id]
        elif issue.status_id:
            logger.info(f"Jira status {issue.status_name!r} is not mapped; keeping local status of {issue.key}")

        if issue.assignee_account_id:
            user_id = ctx.user_by_account.get(issue.assignee_account_id)
            if user_id is None:
                logger.warning(
                    f"No local user mapped for Jira account {issue.assignee_name or issue.assignee_account_id}; "
                    f"leaving {issue.key} unassigned"
                )
            task.assignee_id = user_id
        else:
            task.assignee_id = None

        task.external_id = issue.id
        task.integration_type = "jira"
        data = dict(task.external_data or {})
        data.update(
            {
                "jira_key": issue.key,
                "jira_priority": issue.priority,
                "jira_assignee": issue.assignee_email or issue.assignee_name,
                "jira_issue_type": issue.issue_type,
                "jira_parent_key": issue.parent_key,
                "jira_subtask_keys": list(issue.subtask_keys),
                "last_jira_update": issue.updated_at.isoformat() if issue.updated_at else None,
            }
        )
        task.external_data = data

    def _pull_create(self, ctx: _Pass, issue: ExternalIssue):
        """Create a local task for a Jira issue and link them, in one transaction."""
        task = Task(project_id=ctx.project.id, title=issue.title)
        self._apply_issue(ctx, task, issue)
        self.db.add(task)
        self.db.flush()
        local_rev = self._local_snapshot(ctx, task).revision()
        self._advance(ctx, task, issue, local_rev, self._remote_snapshot(issue).revision())
        self.db.commit()
        ctx.pulled.add(issue.id)
        ctx.result.tasks_pulled += 1
        logger.info(f"Pulled new issue {issue.key} as task {task.id}")

    def _pull_update(
        self,
        ctx: _Pass,
        task: Task,
        issue: ExternalIssue,
        remote: EntitySnapshot,
    ):
        if issue.id in ctx.pushed:
            raise EntitySyncError(f"{issue.key} was pushed in this pass and cannot be pulled")
        self._apply_issue(ctx, task, issue)
        self.db.flush()
        local_rev = self._local_snapshot(ctx, task).revision()
        self._advance(ctx, task, issue, local_rev, remote.revision())
        self.db.commit()
        ctx.pulled.add(issue.id)
        ctx.result.tasks_pulled += 1
        logger.info(f"Pulled {issue.key} into task {task.id}")

    def _push_delete(self, ctx: _Pass, entity: _Entity):
        record = entity.record
        self._call(ctx, lambda: ctx.client.delete_issue(record.external_id))
        self.store.mark_stale(record, "local_deleted")
        self.db.commit()
        ctx.result.tasks_deleted += 1
        logger.info(f"Deleted Jira issue {record.external_key or record.external_id} (local task {record.local_id} gone)")

    # --- remote deletions ---

    def _unlink_remote_deleted(self, project: Project, record: Optional[SyncRecord], task: Optional[Task]):
        if record is not None:
            self.store.mark_stale(record, "remote_deleted")
        if task is not None:
            data = dict(task.external_data or {})
            data.update({"jira_deleted": True, "sync_excluded": True, "jira_deleted_at": utcnow().isoformat()})
            task.external_data = data
            task.external_id = None
        self.db.commit()

    def handle_remote_deletion(
        self,
        integration: JiraIntegration,
        project: Project,
        external_id: str,
        *,
        trigger: SyncTrigger = SyncTrigger.WEBHOOK,
    ) -> str:
        """React to a Jira issue being deleted.

        The local task is kept, unlinked and excluded from further syncs.
        Returns "unlinked", or "skipped" when the issue was never synced.
        """
        external_id = str(external_id)
        with self.locks.hold(integration.id, project.id):
            record = self.store.get(integration.id, external_id=external_id)
            if record is None:
                logger.info(f"Skipping deletion of Jira issue {external_id}: not synced")
                self._log_sync(
                    project,
                    SyncStatus.SKIPPED,
                    SyncDirection.PULL,
                    f"Skipped: deleted Jira issue {external_id} has no sync record",
                    integration_id=integration.id,
                    trigger=trigger,
                )
                return "skipped"

            task = self.db.get(Task, record.local_id) if record.local_id is not None else None
            external_key = record.external_key
            self._unlink_remote_deleted(project, record, task)
            self._log_sync(
                project,
                SyncStatus.SUCCESS,
                SyncDirection.PULL,
                f"Jira issue {external_key or external_id} deleted; task unlinked",
                integration_id=integration.id,
                trigger=trigger,
                task_id=record.local_id,
                external_key=external_key,
            )
            return "unlinked"

    # --- status query ---

    def get_status(self, integration: JiraIntegration, project: Project) -> Dict[str, Any]:
        """Ledger summary for a project: counts, last pass and open conflicts"""
        last_pass = (
            self.db.query(SyncLog)
            .filter(SyncLog.project_id == project.id, SyncLog.task_id == None)  # noqa: E711
            .order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
            .first()
        )
        conflicts = self.store.unresolved_conflicts(integration.id, project.id)
        return {
            "projectId": project.id,
            "jiraProjectKey": project.jira_project_key,
            "integrationActive": bool(integration.is_active),
            "running": self.locks.is_locked(integration.id, project.id),
            "counts": self.store.summary(integration.id, project.id),
            "lastSyncedAt": project.last_synced_at.isoformat() if project.last_synced_at else None,
            "lastPass": {
                "at": last_pass.created_at.isoformat() if last_pass.created_at else None,
                "status": last_pass.status.value,
                "trigger": last_pass.trigger.value if last_pass.trigger else None,
                "message": last_pass.message,
            }
            if last_pass
            else None,
            "conflicts": [
                {
                    "id": c.id,
                    "entityKey": c.entity_key,
                    "taskId": c.task_id,
                    "externalKey": c.external_key,
                    "fields": json.loads(c.field_diffs) if c.field_diffs else [],
                    "description": c.description,
                    "createdAt": c.created_at.isoformat() if c.created_at else None,
                }
                for c in conflicts
            ],
        }
