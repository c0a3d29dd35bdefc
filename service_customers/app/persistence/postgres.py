"""
PostgreSQL store gateway for the Customers Service.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import asyncpg

from shared.logging import get_logger
from shared.errors import ValidationError
from .gateway import (
    Entity, EntitySchema, StoreError, StoreGateway,
    check_columns, check_writable, get_schema, normalize_key
)

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _quote_ident(name: str) -> str:
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


def _where(filter: Mapping[str, Any], start: int = 1) -> Tuple[str, List[Any]]:
    """Build a WHERE clause with positional parameters starting at $start."""
    clauses = []
    params: List[Any] = []
    for column, value in filter.items():
        ident = _quote_ident(column)
        if value is None:
            clauses.append(f"{ident} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            params.append(list(value))
            clauses.append(f"{ident} = ANY(${start + len(params) - 1})")
        else:
            params.append(value)
            clauses.append(f"{ident} = ${start + len(params) - 1}")
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'DELETE 3' or 'INSERT 0 2'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError, IndexError):
        return 0


class PostgreSQLStoreGateway(StoreGateway):
    """asyncpg-backed store gateway."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 30.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("customers.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            self.logger.info("PostgreSQL store gateway started")
        except _STORE_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL store gateway", error=str(e))
            raise StoreError(Entity.CUSTOMER, "connect", str(e))

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL store gateway stopped")

    async def _run(self, schema: EntitySchema, operation: str, method: str, sql: str, params: Sequence[Any]):
        if self.pool is None:
            raise StoreError(schema.entity, operation, "store gateway not started")
        try:
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(sql, *params)
        except _STORE_ERRORS as e:
            constraint = getattr(e, "constraint_name", None)
            sqlstate = getattr(e, "sqlstate", None)
            self.logger.error(
                "Store call failed",
                entity=schema.entity.value,
                operation=operation,
                error=str(e),
                constraint=constraint
            )
            raise StoreError(schema.entity, operation, str(e) or type(e).__name__, constraint, sqlstate) from e

    async def get(self, entity: Entity, key: Any) -> Optional[Any]:
        schema = get_schema(entity)
        where, params = _where(normalize_key(schema, key))
        sql = f"SELECT * FROM {_quote_ident(schema.table)}{where} LIMIT 1"
        row = await self._run(schema, "get", "fetchrow", sql, params)
        return schema.to_model(row) if row else None

    async def list(self, entity: Entity, filter: Optional[Mapping[str, Any]] = None) -> List[Any]:
        schema = get_schema(entity)
        filter = filter or {}
        check_columns(schema, filter.keys())
        where, params = _where(filter)
        sql = f"SELECT * FROM {_quote_ident(schema.table)}{where}"
        rows = await self._run(schema, "list", "fetch", sql, params)
        return [schema.to_model(row) for row in rows]

    async def insert(self, entity: Entity, rows: Sequence[Mapping[str, Any]], upsert: bool = False) -> int:
        schema = get_schema(entity)
        check_writable(schema, "insert")
        if not rows:
            return 0

        columns = list(rows[0].keys())
        check_columns(schema, columns)
        if any(set(row.keys()) != set(columns) for row in rows):
            raise ValidationError(
                f"Batch insert into {entity.value} requires uniform rows",
                details={"columns": columns}
            )

        params: List[Any] = []
        values = []
        for row in rows:
            placeholders = []
            for column in columns:
                params.append(row[column])
                placeholders.append(f"${len(params)}")
            values.append("(" + ", ".join(placeholders) + ")")

        sql = (
            f"INSERT INTO {_quote_ident(schema.table)} "
            f"({', '.join(_quote_ident(c) for c in columns)}) VALUES {', '.join(values)}"
        )
        if upsert:
            sql += f" ON CONFLICT ({', '.join(_quote_ident(c) for c in schema.key)}) DO NOTHING"

        status = await self._run(schema, "insert", "execute", sql, params)
        inserted = _affected(status)
        self.logger.info("Rows inserted", entity=entity.value, requested=len(rows), inserted=inserted)
        return inserted

    async def update(self, entity: Entity, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        schema = get_schema(entity)
        check_writable(schema, "update")
        if not filter:
            raise ValidationError(f"Refusing unfiltered update of {entity.value}")
        if not patch:
            return 0
        check_columns(schema, list(filter.keys()) + list(patch.keys()))

        params: List[Any] = []
        assignments = []
        for column, value in patch.items():
            params.append(value)
            assignments.append(f"{_quote_ident(column)} = ${len(params)}")
        where, where_params = _where(filter, start=len(params) + 1)
        params.extend(where_params)

        sql = f"UPDATE {_quote_ident(schema.table)} SET {', '.join(assignments)}{where}"
        status = await self._run(schema, "update", "execute", sql, params)
        return _affected(status)

    async def delete(self, entity: Entity, filter: Mapping[str, Any]) -> int:
        schema = get_schema(entity)
        check_writable(schema, "delete")
        if not filter:
            raise ValidationError(f"Refusing unfiltered delete of {entity.value}")
        check_columns(schema, filter.keys())

        where, params = _where(filter)
        sql = f"DELETE FROM {_quote_ident(schema.table)}{where}"
        status = await self._run(schema, "delete", "execute", sql, params)
        return _affected(status)

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except _STORE_ERRORS:
            return False
