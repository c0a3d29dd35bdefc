"""
Admin authorization guard.

Every lifecycle call must carry either the shared API secret as a bearer
token (service-to-service) or a session token whose identity is on the
admin email allow-list (interactive). A bearer that is not the API key is
forwarded for session validation only when it is JWT-shaped, so a
mistyped secret never leaves the service. Fails closed: with no secret and no
allow-list configured, nothing is admitted.
"""

import secrets
from dataclasses import dataclass
from typing import FrozenSet, Optional

from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector

from ..identity.provider import IdentityProvider


@dataclass
class AdminCredentials:
    """Credentials presented with a request."""
    bearer_token: Optional[str] = None
    session_token: Optional[str] = None


@dataclass
class Principal:
    """Caller admitted by the guard."""
    method: str
    subject: str
    email: Optional[str] = None


def credentials_from_request(request: Request, cookie_name: str) -> AdminCredentials:
    """Extract bearer and session-cookie credentials from a request."""
    bearer = None
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        bearer = value.strip()
    session = request.cookies.get(cookie_name) or None
    return AdminCredentials(bearer_token=bearer, session_token=session)


def _looks_like_session(token: Optional[str]) -> bool:
    """Session tokens are JWTs; anything else in the header is a failed API key."""
    if not token:
        return False
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


class AuthorizationGuard:
    """Admits service callers and allow-listed admins."""

    def __init__(self, api_key: str, admin_emails: FrozenSet[str], identity_provider: IdentityProvider,
                 metrics: Optional[MetricsCollector] = None):
        self.api_key = api_key or ""
        self.admin_emails = frozenset(email.lower() for email in admin_emails)
        self.identity_provider = identity_provider
        self.metrics = metrics
        self.logger = get_logger("customers.auth")

    def _record(self, method: str, decision: str):
        if self.metrics:
            self.metrics.increment_counter("authorization_decisions_total", method=method, decision=decision)

    def _matches_api_key(self, token: str) -> bool:
        if not self.api_key:
            return False
        return secrets.compare_digest(token.encode(), self.api_key.encode())

    async def authorize(self, credentials: AdminCredentials, operation: str) -> Principal:
        """Return the admitted principal or raise AuthenticationError/AuthorizationError."""
        if credentials.bearer_token and self._matches_api_key(credentials.bearer_token):
            self._record("api_key", "allowed")
            self.logger.info("Service caller authorized", operation=operation)
            return Principal(method="api_key", subject="service")

        session_token = credentials.session_token
        if not session_token and self.admin_emails and _looks_like_session(credentials.bearer_token):
            session_token = credentials.bearer_token

        if not session_token:
            self._record("none", "unauthenticated")
            self.logger.warning("Missing or invalid credentials", operation=operation)
            raise AuthenticationError("Missing or invalid credentials")

        if not self.admin_emails:
            self._record("session", "unauthenticated")
            raise AuthenticationError("Session access is not enabled")

        # AuthenticationError from the provider propagates as 401
        try:
            identity = await self.identity_provider.validate_session(session_token)
        except AuthenticationError:
            self._record("session", "unauthenticated")
            self.logger.warning("Session rejected", operation=operation)
            raise

        if (identity.email or "").lower() not in self.admin_emails:
            self._record("session", "forbidden")
            self.logger.warning(
                "Non-admin session denied",
                operation=operation,
                user_id=identity.id
            )
            raise AuthorizationError(
                "Caller is not an administrator",
                details={"operation": operation}
            )

        set_user_context(user_id=identity.id)
        self._record("session", "allowed")
        self.logger.info("Admin session authorized", operation=operation, user_id=identity.id)
        return Principal(method="session", subject=identity.id, email=identity.email)
