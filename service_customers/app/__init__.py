"""
Customers Service package for the storefront.

Owns the lifecycle of a customer account across the login identity
provider and the relational store. It provides:

- app.main: Admin API surface for provision, update, deprovision and entitlements.
- app.auth: Authorization guard for service callers and admin sessions.
- app.lifecycle: Ordered, step-reporting lifecycle operations.
- app.entitlements: Pure entitlement set reconciliation.
- app.persistence: Store gateway abstraction and its PostgreSQL backend.
- app.identity: Identity provider client (GoTrue admin API).

Guidelines:
- The service is stateless; the store and identity provider are authoritative.
- Operations never retry; callers re-invoke and every step is idempotent.
- A failed operation reports which steps already committed.
"""
