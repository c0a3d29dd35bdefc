"""
Shared fixtures for Customers service tests.
"""

import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from shared.errors import AuthenticationError
from shared.metrics import MetricsCollector
from service_customers.app.identity.provider import IdentityProvider, IdentityProviderError
from service_customers.app.lifecycle.orchestrator import LifecycleOrchestrator
from service_customers.app.models import Identity
from service_customers.app.persistence.gateway import (
    Entity, StoreError, StoreGateway,
    check_columns, check_writable, get_schema, normalize_key
)


def _matches(row: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    for column, value in filter.items():
        if value is None:
            if row.get(column) is not None:
                return False
        elif isinstance(value, (list, tuple, set, frozenset)):
            if row.get(column) not in value:
                return False
        elif row.get(column) != value:
            return False
    return True


class InMemoryStoreGateway(StoreGateway):
    """Dict-backed store gateway with injectable failures."""

    def __init__(self):
        self.tables: Dict[Entity, List[Dict[str, Any]]] = {entity: [] for entity in Entity}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[Entity, str], str] = {}
        self.healthy = True

    def fail_on(self, entity: Entity, operation: str, cause: str = "connection reset"):
        self._failures[(entity, operation)] = cause

    def clear_failures(self):
        self._failures.clear()

    def seed(self, entity: Entity, *rows: Dict[str, Any]):
        self.tables[entity].extend(dict(row) for row in rows)

    def rows(self, entity: Entity) -> List[Dict[str, Any]]:
        return self.tables[entity]

    def _enter(self, entity: Entity, operation: str):
        self.calls.append((entity.value, operation))
        cause = self._failures.get((entity, operation))
        if cause:
            raise StoreError(entity, operation, cause)

    async def get(self, entity: Entity, key: Any) -> Optional[Any]:
        schema = get_schema(entity)
        self._enter(entity, "get")
        key_filter = normalize_key(schema, key)
        for row in self.tables[entity]:
            if _matches(row, key_filter):
                return schema.to_model(row)
        return None

    async def list(self, entity: Entity, filter: Optional[Mapping[str, Any]] = None) -> List[Any]:
        schema = get_schema(entity)
        filter = filter or {}
        check_columns(schema, filter.keys())
        self._enter(entity, "list")
        return [schema.to_model(row) for row in self.tables[entity] if _matches(row, filter)]

    async def insert(self, entity: Entity, rows: Sequence[Mapping[str, Any]], upsert: bool = False) -> int:
        schema = get_schema(entity)
        check_writable(schema, "insert")
        self._enter(entity, "insert")
        table = self.tables[entity]
        pending = []
        for row in rows:
            check_columns(schema, row.keys())
            key = {col: row[col] for col in schema.key}
            if any(_matches(existing, key) for existing in table + pending):
                if upsert:
                    continue
                raise StoreError(entity, "insert", "duplicate key value", constraint=f"{schema.table}_pkey",
                                 sqlstate="23505")
            pending.append(dict(row))
        table.extend(pending)
        return len(pending)

    async def update(self, entity: Entity, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        schema = get_schema(entity)
        check_writable(schema, "update")
        check_columns(schema, list(filter.keys()) + list(patch.keys()))
        self._enter(entity, "update")
        count = 0
        for row in self.tables[entity]:
            if _matches(row, filter):
                row.update(patch)
                count += 1
        return count

    async def delete(self, entity: Entity, filter: Mapping[str, Any]) -> int:
        schema = get_schema(entity)
        check_writable(schema, "delete")
        check_columns(schema, filter.keys())
        self._enter(entity, "delete")
        table = self.tables[entity]
        kept = [row for row in table if not _matches(row, filter)]
        removed = len(table) - len(kept)
        self.tables[entity] = kept
        return removed

    async def health_check(self) -> bool:
        return self.healthy


class FakeIdentityProvider(IdentityProvider):
    """In-memory identity provider with injectable failures."""

    def __init__(self):
        self.identities: Dict[str, Identity] = {}
        self.sessions: Dict[str, Identity] = {}
        self.credentials: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_create: Optional[str] = None
        self.fail_delete: Optional[str] = None
        self.healthy = True

    def add_session(self, token: str, email: str, identity_id: Optional[str] = None) -> Identity:
        identity = Identity(id=identity_id or str(uuid.uuid4()), email=email)
        self.sessions[token] = identity
        return identity

    async def create_identity(self, email: str, initial_credential: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> Identity:
        self.calls.append(("create_identity", email))
        if self.fail_create:
            raise IdentityProviderError("create_identity", self.fail_create, 422)
        if any(identity.email.lower() == email.lower() for identity in self.identities.values()):
            raise IdentityProviderError(
                "create_identity", "A user with this email address has already been registered", 422
            )
        identity = Identity(id=str(uuid.uuid4()), email=email)
        self.identities[identity.id] = identity
        self.credentials[identity.id] = initial_credential or "generated"
        return identity

    async def delete_identity(self, identity_id: str) -> None:
        self.calls.append(("delete_identity", identity_id))
        if self.fail_delete:
            raise IdentityProviderError("delete_identity", self.fail_delete, 500)
        self.identities.pop(identity_id, None)

    async def validate_session(self, token: str) -> Identity:
        self.calls.append(("validate_session", token))
        identity = self.sessions.get(token)
        if identity is None:
            raise AuthenticationError("Invalid or expired session")
        return identity

    async def health_check(self) -> bool:
        return self.healthy


@pytest.fixture
def store():
    """Create in-memory store gateway."""
    return InMemoryStoreGateway()


@pytest.fixture
def identity_provider():
    """Create fake identity provider."""
    return FakeIdentityProvider()


@pytest.fixture
def metrics():
    """Create metrics collector with its own registry."""
    return MetricsCollector("customers")


@pytest.fixture
def orchestrator(store, identity_provider, metrics):
    """Create LifecycleOrchestrator over the fakes."""
    return LifecycleOrchestrator(store, identity_provider, metrics)
