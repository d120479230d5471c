"""Security-related helpers (built-in auth, webhook signatures).

Provides optional HTTP Basic auth protection for the API and HMAC
verification of inbound Jira webhooks.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

ANONYMOUS_ACTOR = "anonymous"


@dataclass(frozen=True)
class BasicAuthCredentials:
    username: str
    password: str


def _parse_basic_auth_header(header_value: str) -> BasicAuthCredentials | None:
    """Parse an Authorization header containing HTTP Basic auth."""
    if not header_value:
        return None

    scheme, _, param = header_value.partition(" ")
    if scheme.lower() != "basic" or not param:
        return None

    try:
        decoded = base64.b64decode(param, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None

    username, sep, password = decoded.partition(":")
    if sep != ":":
        return None

    return BasicAuthCredentials(username=username, password=password)


def request_actor(request: Request) -> str:
    """Who is calling: the authenticated Basic user, else "anonymous"."""
    return getattr(request.state, "actor", None) or ANONYMOUS_ACTOR


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Protect routes via HTTP Basic auth.

    All paths are protected except an allowlist (/health and the Jira
    webhook, which Jira cannot authenticate against).
    """

    def __init__(
        self,
        app,
        *,
        username: str,
        password: str,
        allow_paths: set[str] | None = None,
        realm: str = "JiraSync",
    ):
        super().__init__(app)
        self._username = username
        self._password = password
        self._allow_paths = allow_paths or {"/health"}
        self._realm = realm

    def _unauthorized(self) -> Response:
        return Response(
            content="Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": f'Basic realm="{self._realm}", charset="UTF-8"'},
        )

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self._allow_paths:
            return await call_next(request)

        creds = _parse_basic_auth_header(request.headers.get("Authorization", ""))
        if creds is None:
            return self._unauthorized()

        ok_user = secrets.compare_digest(creds.username, self._username)
        ok_pass = secrets.compare_digest(creds.password, self._password)
        if not (ok_user and ok_pass):
            return self._unauthorized()

        request.state.actor = creds.username
        return await call_next(request)


def webhook_signature(body: bytes, secret: str) -> str:
    """Value Jira puts in X-Hub-Signature for a body signed with `secret`."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(body: bytes, header_value: str | None, secret: str) -> bool:
    """Check an X-Hub-Signature header ("sha256=<hex>") against the raw body."""
    if not secret or not header_value:
        return False
    algorithm, sep, _ = header_value.partition("=")
    if sep != "=" or algorithm.lower() != "sha256":
        logger.warning(f"Unsupported webhook signature scheme: {algorithm!r}")
        return False
    return secrets.compare_digest(header_value.strip().lower(), webhook_signature(body, secret))
