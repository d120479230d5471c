"""Jira Cloud REST API client wrapper"""
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from app.services.errors import (
    JiraAuthError,
    JiraError,
    JiraNotFoundError,
    JiraRateLimitError,
    JiraTransientError,
    JiraValidationError,
)
from app.services.jira_converter import adf_to_text, text_to_adf

logger = logging.getLogger(__name__)

ISSUE_FIELDS = [
    "summary",
    "description",
    "status",
    "priority",
    "assignee",
    "issuetype",
    "duedate",
    "created",
    "updated",
    "parent",
    "subtasks",
]


def parse_jira_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Jira timestamps ("2024-05-01T10:00:00.000+0000") into UTC tz-naive datetimes."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            dt = datetime.strptime(value, fmt)
            break
        except ValueError:
            continue
    else:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


@dataclass
class ExternalProject:
    id: str
    key: str
    name: str
    description: Optional[str] = None
    lead: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ExternalProject":
        lead = data.get("lead") or {}
        return cls(
            id=str(data["id"]),
            key=data["key"],
            name=data.get("name", data["key"]),
            description=data.get("description"),
            lead=lead.get("displayName"),
            url=data.get("self"),
        )


@dataclass
class ExternalStatus:
    id: str
    name: str
    category: Optional[str] = None
    color_name: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ExternalStatus":
        category = data.get("statusCategory") or {}
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            category=category.get("key"),
            color_name=category.get("colorName"),
        )


@dataclass
class ExternalIssueType:
    id: str
    name: str
    subtask: bool = False


@dataclass
class ExternalPriority:
    id: str
    name: str


@dataclass
class ExternalIssue:
    """Transient copy of a Jira issue, normalized for the sync engine."""

    id: str
    key: str
    title: str
    description: str = ""
    status_id: Optional[str] = None
    status_name: Optional[str] = None
    status_category: Optional[str] = None
    priority: Optional[str] = None
    assignee_account_id: Optional[str] = None
    assignee_email: Optional[str] = None
    assignee_name: Optional[str] = None
    issue_type: Optional[str] = None
    due_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    parent_key: Optional[str] = None
    subtask_keys: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ExternalIssue":
        fields = data.get("fields") or {}
        status = fields.get("status") or {}
        priority = fields.get("priority") or {}
        assignee = fields.get("assignee") or {}
        issue_type = fields.get("issuetype") or {}
        parent = fields.get("parent") or {}
        return cls(
            id=str(data["id"]),
            key=data.get("key", ""),
            title=fields.get("summary") or "",
            description=adf_to_text(fields.get("description")),
            status_id=str(status["id"]) if status.get("id") is not None else None,
            status_name=status.get("name"),
            status_category=(status.get("statusCategory") or {}).get("key"),
            priority=priority.get("name"),
            assignee_account_id=assignee.get("accountId"),
            assignee_email=assignee.get("emailAddress"),
            assignee_name=assignee.get("displayName"),
            issue_type=issue_type.get("name"),
            due_date=_parse_date(fields.get("duedate")),
            created_at=parse_jira_datetime(fields.get("created")),
            updated_at=parse_jira_datetime(fields.get("updated")),
            parent_key=parent.get("key"),
            subtask_keys=[s.get("key") for s in fields.get("subtasks") or [] if s.get("key")],
        )


class JiraClient:
    """Wrapper for Jira Cloud REST API v3 operations"""

    def __init__(
        self,
        domain: str,
        email: str,
        api_token: str,
        *,
        timeout: float = 30.0,
        max_results: int = 100,
        session: Optional[requests.Session] = None,
    ):
        """Initialize Jira client (no network I/O)."""
        self.domain = self.normalize_domain(domain)
        self.base_url = f"https://{self.domain}/rest/api/3"
        self.timeout = timeout
        self.max_results = max_results
        self.session = session or requests.Session()
        self.session.auth = (email, api_token)
        self.session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})
        self._catalog_cache: Dict[tuple, Any] = {}
        # JQL date literals are read in the account's time zone.
        self.time_zone: Optional[str] = None

    @staticmethod
    def normalize_domain(domain: str) -> str:
        """Accept "acme.atlassian.net", "https://acme.atlassian.net/" and similar."""
        value = (domain or "").strip()
        for prefix in ("https://", "http://"):
            if value.lower().startswith(prefix):
                value = value[len(prefix):]
        return value.rstrip("/")

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Retry predicate for transient Jira failures.

        Rate limits are not retried here: the sync pass decides how long to wait.
        """
        return isinstance(exc, JiraTransientError)

    def _with_retries(self, fn: Callable[[], Any], *, max_attempts: int = 3, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

    @staticmethod
    def _error_messages(response: requests.Response) -> List[str]:
        try:
            body = response.json()
        except ValueError:
            return [response.text[:500]] if response.text else []
        if not isinstance(body, dict):
            return []
        messages = list(body.get("errorMessages") or [])
        for name, msg in (body.get("errors") or {}).items():
            messages.append(f"{name}: {msg}")
        return messages

    def _raise_for_status(self, response: requests.Response, method: str, path: str):
        status = response.status_code
        if status < 400:
            return
        detail = "; ".join(self._error_messages(response)) or response.reason or ""
        message = f"Jira API {method} {path} failed: HTTP {status} {detail}".strip()
        if status == 401:
            raise JiraAuthError(message, status)
        if status == 404:
            raise JiraNotFoundError(message, status)
        if status == 429:
            raise JiraRateLimitError(message, retry_after=self._parse_retry_after(response.headers.get("Retry-After")))
        if status >= 500:
            raise JiraTransientError(message, status)
        raise JiraValidationError(message, status, errors=self._error_messages(response))

    def _send(self, method: str, path: str, *, params=None, json=None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, params=params, json=json, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise JiraTransientError(f"Jira API {method} {path} timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise JiraTransientError(f"Cannot connect to Jira at {self.domain}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise JiraError(f"Jira API {method} {path} failed: {e}") from e

        self._raise_for_status(response, method, path)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise JiraError(f"Jira API {method} {path} returned invalid JSON") from e

    def _request(self, method: str, path: str, *, params=None, json=None) -> Any:
        return self._with_retries(lambda: self._send(method, path, params=params, json=json))

    # --- connection ---

    def test_connection(self) -> bool:
        """Authenticated check; returns False instead of raising."""
        try:
            self._request("GET", "/myself")
            return True
        except JiraError as e:
            logger.warning(f"Jira connection test failed for {self.domain}: {e}")
            return False

    def get_current_user(self) -> Dict[str, Any]:
        """Account behind the credentials; also remembers its time zone for JQL dates."""
        user = self._request("GET", "/myself") or {}
        self.time_zone = user.get("timeZone") or self.time_zone
        return user

    # --- catalogs (cached until clear_catalog_cache) ---

    def clear_catalog_cache(self):
        self._catalog_cache.clear()

    def _cached(self, key: tuple, loader: Callable[[], Any]) -> Any:
        if key not in self._catalog_cache:
            self._catalog_cache[key] = loader()
        return self._catalog_cache[key]

    def list_projects(self) -> List[ExternalProject]:
        """List projects visible to the account (paged)."""
        projects: List[ExternalProject] = []
        start_at = 0
        while True:
            page = self._request(
                "GET", "/project/search", params={"startAt": start_at, "maxResults": self.max_results}
            )
            if isinstance(page, list):
                # Older endpoint shape: plain list, no paging.
                return [ExternalProject.from_api(p) for p in page]
            values = (page or {}).get("values") or []
            projects.extend(ExternalProject.from_api(p) for p in values)
            if page.get("isLast", True) or not values:
                return projects
            start_at += len(values)

    def list_statuses(self, project_key: str) -> List[ExternalStatus]:
        """Statuses used by any issue type of the project, de-duplicated by id."""

        def _load():
            response = self._request("GET", f"/project/{project_key}/statuses") or []
            seen = {}
            for issue_type in response:
                for status in issue_type.get("statuses") or []:
                    sid = str(status.get("id"))
                    if sid not in seen:
                        seen[sid] = ExternalStatus.from_api(status)
            return list(seen.values())

        return self._cached(("statuses", project_key), _load)

    def list_issue_types(self, project_key: str) -> List[ExternalIssueType]:
        def _load():
            response = self._request("GET", f"/project/{project_key}") or {}
            return [
                ExternalIssueType(id=str(t["id"]), name=t.get("name", ""), subtask=bool(t.get("subtask")))
                for t in response.get("issueTypes") or []
            ]

        return self._cached(("issue_types", project_key), _load)

    def list_priorities(self) -> List[ExternalPriority]:
        def _load():
            response = self._request("GET", "/priority") or []
            return [ExternalPriority(id=str(p["id"]), name=p.get("name", "")) for p in response]

        return self._cached(("priorities",), _load)

    # --- issues ---

    @staticmethod
    def build_jql(project_key: str, since: Optional[datetime] = None, time_zone: Optional[str] = None) -> str:
        """JQL for a project's issues, oldest update first.

        `since` is UTC (tz-naive); it is shifted into `time_zone` when known.
        """
        jql = f'project = "{project_key}"'
        if since is not None:
            if time_zone:
                try:
                    since = since.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(time_zone)).replace(tzinfo=None)
                except (ZoneInfoNotFoundError, ValueError):
                    logger.warning(f"Unknown Jira time zone {time_zone!r}; using UTC in JQL")
            # JQL only has minute precision.
            jql += f' AND updated >= "{since.strftime("%Y/%m/%d %H:%M")}"'
        return jql + " ORDER BY updated ASC"

    def list_issues(self, project_key: str, since: Optional[datetime] = None) -> List[ExternalIssue]:
        """Get issues of a project, optionally only those updated since `since` (UTC).

        JQL compares at minute precision, so callers subtract a small overlap
        window and rely on revision tokens to ignore repeats.
        """
        jql = self.build_jql(project_key, since, self.time_zone)
        issues: List[ExternalIssue] = []
        start_at = 0
        while True:
            page = self._request(
                "GET",
                "/search",
                params={
                    "jql": jql,
                    "startAt": start_at,
                    "maxResults": self.max_results,
                    "fields": ",".join(ISSUE_FIELDS),
                },
            ) or {}
            batch = page.get("issues") or []
            issues.extend(ExternalIssue.from_api(i) for i in batch)
            start_at += len(batch)
            if not batch or start_at >= int(page.get("total", 0)):
                return issues

    def get_issue(self, issue_id_or_key: str) -> ExternalIssue:
        data = self._request("GET", f"/issue/{issue_id_or_key}", params={"fields": ",".join(ISSUE_FIELDS)})
        return ExternalIssue.from_api(data)

    @staticmethod
    def _build_fields_payload(fields: Dict[str, Any], *, for_update: bool) -> Dict[str, Any]:
        """Map our field names onto Jira's `fields` payload."""
        payload: Dict[str, Any] = {}
        if "title" in fields:
            payload["summary"] = fields["title"]
        if "description" in fields:
            doc = text_to_adf(fields["description"])
            if doc is not None or for_update:
                payload["description"] = doc
        if fields.get("priority"):
            payload["priority"] = {"name": fields["priority"]}
        if "assignee_account_id" in fields:
            account_id = fields["assignee_account_id"]
            if account_id:
                payload["assignee"] = {"accountId": account_id}
            elif for_update:
                payload["assignee"] = None
        if "due_date" in fields:
            due = fields["due_date"]
            if due is not None:
                payload["duedate"] = due.isoformat() if isinstance(due, date) else str(due)
            elif for_update:
                payload["duedate"] = None
        if not for_update and fields.get("issue_type"):
            payload["issuetype"] = {"name": fields["issue_type"]}
        return payload

    def create_issue(self, project_key: str, fields: Dict[str, Any]) -> ExternalIssue:
        """Create an issue.

        Only the POST is made here; the returned issue carries id, key and
        title. Status transitions and a full re-read are up to the caller, so
        a failure there never hides that the issue exists.
        """
        payload = self._build_fields_payload(fields, for_update=False)
        payload["project"] = {"key": project_key}
        try:
            created = self._request("POST", "/issue", json={"fields": payload})
        except JiraError as e:
            logger.error(f"Failed to create issue in project {project_key}: {e}")
            raise
        logger.info(f"Created issue {created.get('key')} in project {project_key}")

        return ExternalIssue(id=str(created["id"]), key=created.get("key", ""), title=fields.get("title") or "")

    def update_issue(self, issue_id: str, fields: Dict[str, Any]) -> None:
        """Update issue fields; a `status_id` entry is applied as a workflow transition."""
        payload = self._build_fields_payload(fields, for_update=True)
        try:
            if payload:
                self._request("PUT", f"/issue/{issue_id}", json={"fields": payload})
            status_id = fields.get("status_id")
            if status_id:
                self.transition_issue(issue_id, status_id)
        except JiraError as e:
            logger.error(f"Failed to update issue {issue_id}: {e}")
            raise
        logger.info(f"Updated issue {issue_id}")

    def delete_issue(self, issue_id: str) -> None:
        try:
            self._request("DELETE", f"/issue/{issue_id}", params={"deleteSubtasks": "true"})
        except JiraNotFoundError:
            logger.info(f"Issue {issue_id} already gone")
            return
        logger.info(f"Deleted issue {issue_id}")

    def get_transitions(self, issue_id: str) -> List[Dict[str, Any]]:
        response = self._request("GET", f"/issue/{issue_id}/transitions") or {}
        return response.get("transitions") or []

    def transition_issue(self, issue_id: str, status_id: str) -> bool:
        """Move an issue to `status_id` if the workflow offers a transition to it."""
        current = self._request("GET", f"/issue/{issue_id}", params={"fields": "status"}) or {}
        current_status = ((current.get("fields") or {}).get("status") or {}).get("id")
        if current_status is not None and str(current_status) == str(status_id):
            return True

        for transition in self.get_transitions(issue_id):
            target = (transition.get("to") or {}).get("id")
            if target is not None and str(target) == str(status_id):
                self._request("POST", f"/issue/{issue_id}/transitions", json={"transition": {"id": transition["id"]}})
                return True
        logger.warning(f"No workflow transition from issue {issue_id} to status {status_id}")
        return False


def since_from_cursor(cursor: Optional[str], overlap_minutes: int = 0) -> Optional[datetime]:
    """Decode a continuation token into the `since` bound for list_issues."""
    if not cursor:
        return None
    try:
        since = datetime.fromisoformat(cursor)
    except ValueError:
        logger.warning(f"Ignoring unreadable sync cursor {cursor!r}; doing a full scan")
        return None
    return since - timedelta(minutes=overlap_minutes)
