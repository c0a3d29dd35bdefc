"""
Store gateway package.

- gateway: Entity registry, filters and the abstract StoreGateway.
- postgres: asyncpg implementation.
"""
