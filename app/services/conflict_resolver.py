"""Conflict resolution for entities changed on both sides since the last sync.

Everything here is a pure function of its inputs: the same snapshots, prior
record and policy always produce the same decision.
"""

import enum
import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

CANONICAL_FIELDS = ("title", "description", "status_id", "priority", "assignee_account_id")


class ConflictPolicy(str, enum.Enum):
    MANUAL = "manual"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MOST_RECENT_WINS = "most_recent_wins"

    @classmethod
    def parse(cls, value: Any) -> "ConflictPolicy":
        """Accept enum values, API camelCase names and the short aliases."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.MANUAL
        key = str(value).strip().replace("-", "_").lower()
        aliases = {
            "manual": cls.MANUAL,
            "local": cls.LOCAL_WINS,
            "local_wins": cls.LOCAL_WINS,
            "localwins": cls.LOCAL_WINS,
            "remote": cls.REMOTE_WINS,
            "remote_wins": cls.REMOTE_WINS,
            "remotewins": cls.REMOTE_WINS,
            "most_recent_wins": cls.MOST_RECENT_WINS,
            "mostrecentwins": cls.MOST_RECENT_WINS,
            "most_recent": cls.MOST_RECENT_WINS,
        }
        try:
            return aliases[key]
        except KeyError:
            raise ValueError(f"Unknown conflict policy: {value!r}") from None


class Resolution(str, enum.Enum):
    PUSH = "push"  # local version wins, written to Jira
    PULL = "pull"  # Jira version wins, written locally
    MANUAL = "manual"  # left for a user decision


@dataclass(frozen=True)
class EntitySnapshot:
    """Canonical, Jira-shaped projection of one side of a linked pair."""

    title: str = ""
    description: str = ""
    status_id: Optional[str] = None
    priority: Optional[str] = None
    assignee_account_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    def canonical(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in CANONICAL_FIELDS}

    def revision(self) -> str:
        """Content hash used as the revision token on SyncRecords."""
        raw = json.dumps(self.canonical(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class ConflictDecision:
    entity_key: str
    local: EntitySnapshot
    remote: EntitySnapshot
    policy: ConflictPolicy
    resolution: Resolution
    diffs: List[str] = field(default_factory=list)
    reason: str = ""


def field_diffs(local: EntitySnapshot, remote: EntitySnapshot) -> List[str]:
    """Names of canonical fields that differ (for display only)."""
    return [name for name in CANONICAL_FIELDS if getattr(local, name) != getattr(remote, name)]


def resolve(
    entity_key: str,
    local: EntitySnapshot,
    remote: EntitySnapshot,
    policy: ConflictPolicy,
    *,
    prior_local_revision: Optional[str] = None,
    prior_remote_revision: Optional[str] = None,
    decision: Optional[str] = None,
) -> ConflictDecision:
    """Decide which side wins for an entity changed on both sides.

    `decision` is a stored user choice ("local" or "remote") and overrides the
    policy. With most_recent_wins, equal timestamps go to remote; a side with
    no timestamp loses to one that has it.
    """
    policy = ConflictPolicy.parse(policy)
    diffs = field_diffs(local, remote)

    def _decided(resolution: Resolution, reason: str) -> ConflictDecision:
        return ConflictDecision(
            entity_key=entity_key,
            local=local,
            remote=remote,
            policy=policy,
            resolution=resolution,
            diffs=diffs,
            reason=reason,
        )

    if decision:
        choice = str(decision).lower()
        if choice == "local":
            return _decided(Resolution.PUSH, "user chose local")
        if choice == "remote":
            return _decided(Resolution.PULL, "user chose remote")
        raise ValueError(f"Unknown conflict decision: {decision!r}")

    if policy == ConflictPolicy.LOCAL_WINS:
        return _decided(Resolution.PUSH, "local wins")
    if policy == ConflictPolicy.REMOTE_WINS:
        return _decided(Resolution.PULL, "remote wins")
    if policy == ConflictPolicy.MOST_RECENT_WINS:
        if local.updated_at is not None and (remote.updated_at is None or local.updated_at > remote.updated_at):
            return _decided(Resolution.PUSH, "local is more recent")
        return _decided(Resolution.PULL, "remote is more recent or tied")

    if prior_local_revision is None and prior_remote_revision is None:
        reason = "linked without a sync record; both sides differ"
    else:
        reason = "changed on both sides since last sync"
    return _decided(Resolution.MANUAL, reason)
