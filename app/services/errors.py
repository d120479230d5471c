"""Sync error taxonomy.

Jira errors are raised by JiraClient; the orchestrator decides whether they
are fatal to a pass or recorded against a single entity.
"""

from typing import List, Optional


class JiraError(Exception):
    """Base error for Jira API calls."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class JiraAuthError(JiraError):
    """Credentials rejected (HTTP 401)."""


class JiraNotFoundError(JiraError):
    """Issue, project or resource does not exist (HTTP 404)."""


class JiraTransientError(JiraError):
    """Network failure, timeout or 5xx; safe to retry later."""


class JiraValidationError(JiraError):
    """Jira refused the request (4xx other than 401/404/429)."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List[str]] = None):
        super().__init__(message, status_code)
        self.errors = errors or []


class JiraRateLimitError(JiraError):
    """HTTP 429; `retry_after` is the server's hint in seconds, if any."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, 429)
        self.retry_after = retry_after


class SyncLockedError(Exception):
    """Another pass already holds the lock for this integration/project."""


class PassFatalError(Exception):
    """A pass could not proceed (credentials, catalogs, snapshot)."""

    def __init__(self, message: str, *, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class SyncLockLostError(PassFatalError):
    """The running pass's lock expired and was taken over by another pass."""


class EntitySyncError(Exception):
    """A single entity could not be synced; the pass continues."""
