"""
Store gateway contract for the Customers Service.

Typed point/filtered CRUD over the entities the lifecycle touches. No
business logic lives here; every failure is raised as a StoreError naming
the entity and operation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type

from shared.errors import ExternalServiceError, ValidationError

from ..models import Customer, Entitlement, Identity, Order, Product, Profile


class Entity(str, Enum):
    """Entities reachable through the store gateway."""
    IDENTITY = "identity"
    CUSTOMER = "customer"
    PROFILE = "profile"
    PRODUCT = "product"
    ENTITLEMENT = "entitlement"
    ORDER = "order"


@dataclass(frozen=True)
class EntitySchema:
    """Table mapping for one entity."""
    entity: Entity
    table: str
    key: Tuple[str, ...]
    model: Type
    writable: bool = True

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(self.model))

    def to_model(self, row: Mapping[str, Any]):
        """Build the entity dataclass from a store row, ignoring extra columns."""
        values = {name: row[name] for name in self.columns if name in row}
        for name in ("id", "customer_id", "product_id"):
            if values.get(name) is not None:
                values[name] = str(values[name])
        return self.model(**values)


SCHEMAS: Dict[Entity, EntitySchema] = {
    Entity.IDENTITY: EntitySchema(Entity.IDENTITY, "auth.users", ("id",), Identity, writable=False),
    Entity.CUSTOMER: EntitySchema(Entity.CUSTOMER, "customers", ("id",), Customer),
    Entity.PROFILE: EntitySchema(Entity.PROFILE, "profiles", ("id",), Profile),
    Entity.PRODUCT: EntitySchema(Entity.PRODUCT, "products", ("id",), Product, writable=False),
    Entity.ENTITLEMENT: EntitySchema(Entity.ENTITLEMENT, "customer_products", ("customer_id", "product_id"), Entitlement),
    Entity.ORDER: EntitySchema(Entity.ORDER, "orders", ("id",), Order),
}


class StoreError(ExternalServiceError):
    """A store call failed; carries the entity, operation and cause."""

    def __init__(self, entity: Entity, operation: str, cause: str,
                 constraint: Optional[str] = None, sqlstate: Optional[str] = None):
        self.entity = entity
        self.operation = operation
        self.cause = cause
        self.constraint = constraint
        details = {
            "entity": entity.value,
            "operation": operation,
            "cause": cause,
        }
        if constraint:
            details["constraint"] = constraint
        if sqlstate:
            details["sqlstate"] = sqlstate
        super().__init__("store", f"{operation} {entity.value} failed: {cause}", details)


def get_schema(entity: Entity) -> EntitySchema:
    return SCHEMAS[entity]


def normalize_key(schema: EntitySchema, key: Any) -> Dict[str, Any]:
    """Accept a scalar for single-column keys or a mapping for composite keys."""
    if isinstance(key, Mapping):
        missing = [col for col in schema.key if col not in key]
        if missing:
            raise ValidationError(
                f"Incomplete key for {schema.entity.value}",
                details={"missing": missing}
            )
        return {col: key[col] for col in schema.key}

    if len(schema.key) != 1:
        raise ValidationError(
            f"{schema.entity.value} has a composite key",
            details={"key": list(schema.key)}
        )
    return {schema.key[0]: key}


def check_columns(schema: EntitySchema, columns: Iterable[str]) -> None:
    """Reject column names that are not part of the entity."""
    unknown = sorted(set(columns) - set(schema.columns))
    if unknown:
        raise ValidationError(
            f"Unknown {schema.entity.value} columns",
            details={"columns": unknown}
        )


def check_writable(schema: EntitySchema, operation: str) -> None:
    if not schema.writable:
        raise ValidationError(
            f"{schema.entity.value} is read-only through the store gateway",
            details={"operation": operation}
        )


class StoreGateway(ABC):
    """Per-entity CRUD capability over the relational store.

    Filters map column names to a scalar (equality), a list/tuple/set
    (membership) or None (IS NULL). update/delete require a non-empty
    filter and return the affected row count; zero is not an error.
    """

    @abstractmethod
    async def get(self, entity: Entity, key: Any) -> Optional[Any]:
        """Point lookup by primary key; None when absent."""

    @abstractmethod
    async def list(self, entity: Entity, filter: Optional[Mapping[str, Any]] = None) -> List[Any]:
        """Filtered list query."""

    @abstractmethod
    async def insert(self, entity: Entity, rows: Sequence[Mapping[str, Any]], upsert: bool = False) -> int:
        """Insert a batch of rows as one statement.

        With upsert=True rows conflicting on the entity key are left
        untouched and counted as success. Returns the number of new rows.
        """

    @abstractmethod
    async def update(self, entity: Entity, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        """Apply patch to every row matching filter."""

    @abstractmethod
    async def delete(self, entity: Entity, filter: Mapping[str, Any]) -> int:
        """Delete every row matching filter."""

    async def start(self):
        """Acquire connections. Override in subclasses."""

    async def stop(self):
        """Release connections. Override in subclasses."""

    async def health_check(self) -> bool:
        return True
