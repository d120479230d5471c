"""Advisory lock: at most one sync pass per (integration, project)"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models import SyncLock
from app.models.base import utcnow
from app.services.errors import SyncLockedError, SyncLockLostError

logger = logging.getLogger(__name__)


class SyncLockManager:
    """Lock rows in `sync_locks`; the unique (integration_id, project_id) constraint does the exclusion."""

    def __init__(
        self,
        db: Session,
        *,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.sync_lock_ttl_seconds
        self.clock = clock

    def acquire(self, integration_id: int, project_id: int) -> str:
        """Take the lock and return its owner token, or raise SyncLockedError."""
        now = self.clock()

        # Locks past their TTL belong to crashed passes.
        expired = (
            self.db.query(SyncLock)
            .filter(
                SyncLock.integration_id == integration_id,
                SyncLock.project_id == project_id,
                SyncLock.expires_at < now,
            )
            .delete(synchronize_session=False)
        )
        if expired:
            logger.warning(f"Taking over expired sync lock for integration {integration_id}, project {project_id}")

        token = uuid.uuid4().hex
        self.db.add(
            SyncLock(
                integration_id=integration_id,
                project_id=project_id,
                token=token,
                acquired_at=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise SyncLockedError(
                f"A sync pass is already running for integration {integration_id}, project {project_id}"
            ) from None
        return token

    def release(self, integration_id: int, project_id: int, token: str) -> bool:
        """Drop the lock if `token` still owns it."""
        self.db.rollback()  # discard anything a failed pass left pending
        deleted = (
            self.db.query(SyncLock)
            .filter(
                SyncLock.integration_id == integration_id,
                SyncLock.project_id == project_id,
                SyncLock.token == token,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if not deleted:
            logger.warning(f"Sync lock for integration {integration_id}, project {project_id} was taken over")
        return bool(deleted)

    def refresh(self, integration_id: int, project_id: int, token: str) -> None:
        """Extend the lock held by `token` by another TTL.

        Raises SyncLockLostError when `token` no longer owns the row, i.e. the
        lock expired and another pass took it over.
        """
        updated = (
            self.db.query(SyncLock)
            .filter(
                SyncLock.integration_id == integration_id,
                SyncLock.project_id == project_id,
                SyncLock.token == token,
            )
            .update(
                {SyncLock.expires_at: self.clock() + timedelta(seconds=self.ttl_seconds)},
                synchronize_session=False,
            )
        )
        self.db.commit()
        if not updated:
            raise SyncLockLostError(
                f"Sync lock for integration {integration_id}, project {project_id} was taken over by another pass"
            )

    @contextmanager
    def hold(self, integration_id: int, project_id: int):
        token = self.acquire(integration_id, project_id)
        try:
            yield token
        finally:
            self.release(integration_id, project_id, token)

    def is_locked(self, integration_id: int, project_id: int) -> bool:
        return (
            self.db.query(SyncLock)
            .filter(
                SyncLock.integration_id == integration_id,
                SyncLock.project_id == project_id,
                SyncLock.expires_at >= self.clock(),
            )
            .first()
            is not None
        )
