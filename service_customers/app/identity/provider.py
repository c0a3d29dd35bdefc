"""
Login identity provider client for the Customers Service.

Talks to the GoTrue admin API. The provider is authoritative for login;
nothing here caches identities.
"""

import secrets
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

import httpx

from shared.logging import get_logger
from shared.errors import AuthenticationError, ExternalServiceError

from ..models import Identity


class IdentityProviderError(ExternalServiceError):
    """An identity provider call failed."""

    def __init__(self, operation: str, cause: str, status_code: Optional[int] = None):
        self.operation = operation
        self.cause = cause
        details: Dict[str, Any] = {"operation": operation, "cause": cause}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__("identity_provider", f"{operation} failed: {cause}", details)


def generate_initial_credential() -> str:
    """Random one-time credential for a freshly provisioned login."""
    return secrets.token_urlsafe(24)


class IdentityProvider(ABC):
    """Create/delete login identities and validate interactive sessions."""

    @abstractmethod
    async def create_identity(self, email: str, initial_credential: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> Identity:
        """Create a login identity; raises IdentityProviderError."""

    @abstractmethod
    async def delete_identity(self, identity_id: str) -> None:
        """Delete a login identity; an already-absent identity is success."""

    @abstractmethod
    async def validate_session(self, token: str) -> Identity:
        """Resolve a session token to its identity; raises AuthenticationError."""

    async def health_check(self) -> bool:
        return True


class GoTrueIdentityProvider(IdentityProvider):
    """Identity provider backed by the GoTrue admin HTTP API."""

    def __init__(self, base_url: str, service_key: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("customers.identity_provider")

    def _client(self, token: Optional[str] = None) -> httpx.AsyncClient:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {token or self.service_key}",
        }
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        for field in ("msg", "message", "error_description", "error"):
            if isinstance(body, dict) and body.get(field):
                return str(body[field])
        return f"HTTP {response.status_code}"

    @staticmethod
    def _to_identity(body: Dict[str, Any]) -> Identity:
        user = body.get("user", body)
        return Identity(id=str(user["id"]), email=user.get("email", ""))

    async def create_identity(self, email: str, initial_credential: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> Identity:
        payload = {
            "email": email,
            "password": initial_credential or generate_initial_credential(),
            "email_confirm": True,
            "user_metadata": metadata or {},
        }
        try:
            async with self._client() as client:
                response = await client.post("/auth/v1/admin/users", json=payload)
        except httpx.HTTPError as e:
            self.logger.error("Identity provider unavailable", operation="create_identity", error=str(e))
            raise IdentityProviderError("create_identity", str(e) or type(e).__name__)

        if response.status_code not in (200, 201):
            message = self._error_message(response)
            self.logger.warning(
                "Identity creation rejected",
                status_code=response.status_code,
                error=message
            )
            raise IdentityProviderError("create_identity", message, response.status_code)

        try:
            identity = self._to_identity(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise IdentityProviderError("create_identity", f"malformed response: {e}", response.status_code)

        self.logger.info("Identity created", identity_id=identity.id)
        return identity

    async def delete_identity(self, identity_id: str) -> None:
        try:
            async with self._client() as client:
                response = await client.delete(f"/auth/v1/admin/users/{identity_id}")
        except httpx.HTTPError as e:
            self.logger.error("Identity provider unavailable", operation="delete_identity", error=str(e))
            raise IdentityProviderError("delete_identity", str(e) or type(e).__name__)

        if response.status_code == 404:
            self.logger.info("Identity already absent", identity_id=identity_id)
            return
        if response.status_code not in (200, 204):
            message = self._error_message(response)
            raise IdentityProviderError("delete_identity", message, response.status_code)

        self.logger.info("Identity deleted", identity_id=identity_id)

    async def validate_session(self, token: str) -> Identity:
        try:
            async with self._client(token) as client:
                response = await client.get("/auth/v1/user")
        except httpx.HTTPError as e:
            self.logger.error("Identity provider unavailable", operation="validate_session", error=str(e))
            raise AuthenticationError(
                "Session could not be validated",
                details={"cause": str(e) or type(e).__name__}
            )

        if response.status_code != 200:
            raise AuthenticationError(
                "Invalid or expired session",
                details={"status_code": response.status_code}
            )

        try:
            return self._to_identity(response.json())
        except (ValueError, KeyError, TypeError):
            raise AuthenticationError("Invalid or expired session")

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/auth/v1/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
