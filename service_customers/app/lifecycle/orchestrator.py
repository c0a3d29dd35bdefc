"""
Customer lifecycle orchestrator.

Provision, Update and Deprovision run as fixed, ordered step sequences
over independent store and identity-provider calls (no cross-call
transaction). Dependent data is detached or removed first and the login
identity last, every step is idempotent, and a failing step aborts the
operation with a named DownstreamFailure listing what already committed.
Re-invoking an operation after a failure converges; nothing is retried
here.
"""

import re
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from shared.tracing import add_span_event, trace_operation

from ..entitlements.reconciler import apply_diff, normalize_product_ids, reconcile
from ..identity.provider import IdentityProvider, IdentityProviderError
from ..models import Entitlement
from ..persistence.gateway import Entity, StoreError, StoreGateway
from .results import DownstreamFailure, FailureKind, LifecycleResult, StepOutcome, StepStatus

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

Plan = Sequence[Tuple[str, Entity]]

PROVISION_PLAN: Plan = (
    ("create_identity", Entity.IDENTITY),
    ("insert_customer", Entity.CUSTOMER),
    ("insert_entitlements", Entity.ENTITLEMENT),
)

UPDATE_PLAN: Plan = (
    ("lookup_customer", Entity.CUSTOMER),
    ("update_customer", Entity.CUSTOMER),
    ("add_entitlements", Entity.ENTITLEMENT),
    ("remove_entitlements", Entity.ENTITLEMENT),
)

DEPROVISION_PLAN: Plan = (
    ("delete_entitlements", Entity.ENTITLEMENT),
    ("detach_profiles", Entity.PROFILE),
    ("detach_orders", Entity.ORDER),
    ("delete_customer", Entity.CUSTOMER),
    ("delete_identity", Entity.IDENTITY),
)

SET_ENTITLEMENTS_PLAN: Plan = (
    ("lookup_customer", Entity.CUSTOMER),
    ("list_entitlements", Entity.ENTITLEMENT),
    ("add_entitlements", Entity.ENTITLEMENT),
    ("remove_entitlements", Entity.ENTITLEMENT),
)

NOTES_PLAN: Plan = (
    ("update_notes", Entity.ENTITLEMENT),
)

LIST_PLAN: Plan = (
    ("list_entitlements", Entity.ENTITLEMENT),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def validate_email(email: Optional[str]) -> str:
    value = (email or "").strip()
    if not EMAIL_PATTERN.match(value):
        raise ValidationError(f'Email address "{value}" is invalid', details={"field": "email"})
    return value


def _require(value: Optional[str], field: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        raise ValidationError(f"Missing required field: {field}", details={"field": field})
    return stripped


class _Saga:
    """Runs the steps of one operation and records their outcomes."""

    def __init__(self, operation: str, plan: Plan, customer_id: Optional[str],
                 logger, metrics: Optional[MetricsCollector]):
        self.result = LifecycleResult(
            operation=operation,
            customer_id=customer_id,
            steps=[StepOutcome(step=step, entity=entity.value) for step, entity in plan]
        )
        self.logger = logger
        self.metrics = metrics

    @property
    def operation(self) -> str:
        return self.result.operation

    def bind_customer(self, customer_id: str):
        self.result.customer_id = customer_id
        set_user_context(customer_id=customer_id)

    async def run(self, step: str, failure: FailureKind, call: Callable[[], Awaitable[Any]],
                  residual: Optional[Dict[str, Any]] = None, skip_when_zero: bool = False) -> Any:
        outcome = self.result.step(step)
        self.logger.debug(
            "Lifecycle step started",
            operation=self.operation,
            step=step,
            customer_id=self.result.customer_id
        )
        try:
            value = await call()
        except (StoreError, IdentityProviderError) as e:
            outcome.status = StepStatus.FAILED
            outcome.detail = e.cause
            if self.metrics:
                self.metrics.increment_counter(
                    "lifecycle_step_failures_total", operation=self.operation, step=step
                )
            add_span_event("lifecycle_step_failed", step=step, cause=e.cause)
            self.logger.error(
                "Lifecycle step failed",
                operation=self.operation,
                step=step,
                failure=failure.value,
                customer_id=self.result.customer_id,
                cause=e.cause,
                residual=residual
            )
            raise DownstreamFailure(failure, self.result, step, outcome.entity, e.cause, residual) from e

        if isinstance(value, int) and not isinstance(value, bool):
            outcome.affected = value
        if skip_when_zero and not value:
            outcome.status = StepStatus.SKIPPED
            outcome.detail = "nothing to change"
        else:
            outcome.status = StepStatus.APPLIED

        self.logger.info(
            "Lifecycle step completed",
            operation=self.operation,
            step=step,
            status=outcome.status.value,
            customer_id=self.result.customer_id,
            affected=outcome.affected
        )
        return value

    def skip(self, step: str, detail: str):
        outcome = self.result.step(step)
        outcome.status = StepStatus.SKIPPED
        outcome.detail = detail

    def not_found(self, step: str, message: str) -> NotFoundError:
        outcome = self.result.step(step)
        outcome.status = StepStatus.FAILED
        outcome.detail = message
        return NotFoundError(message, details={
            "operation": self.operation,
            "customer_id": self.result.customer_id,
            "step": step,
            "steps": self.result.steps_as_dicts(),
        })


class LifecycleOrchestrator:
    """Provision, update and deprovision customers across store and identity provider."""

    def __init__(self, store: StoreGateway, identity_provider: IdentityProvider,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.identity_provider = identity_provider
        self.metrics = metrics
        self.logger = get_logger("customers.lifecycle")

    def _saga(self, operation: str, plan: Plan, customer_id: Optional[str] = None) -> _Saga:
        if customer_id:
            set_user_context(customer_id=customer_id)
        return _Saga(operation, plan, customer_id, self.logger, self.metrics)

    @contextmanager
    def _observe(self, operation: str, customer_id: Optional[str] = None):
        start_time = time.time()
        outcome = "error"
        with trace_operation(f"customers.{operation}", customer_id=customer_id):
            try:
                yield
                outcome = "succeeded"
            except DownstreamFailure:
                outcome = "failed"
                raise
            except (ValidationError, NotFoundError):
                outcome = "rejected"
                raise
            finally:
                if self.metrics:
                    self.metrics.increment_counter(
                        "lifecycle_operations_total", operation=operation, outcome=outcome
                    )
                    self.metrics.observe_histogram(
                        "lifecycle_operation_duration_seconds",
                        time.time() - start_time,
                        operation=operation
                    )
                    if outcome == "succeeded":
                        self.metrics.record_business_event(f"customer_{operation}")

    async def _require_customer(self, saga: _Saga, customer_id: str):
        """Run the lookup step; raise NotFoundError before any entitlement write."""
        customer = await saga.run(
            "lookup_customer",
            FailureKind.CUSTOMER_LOOKUP_FAILED,
            lambda: self.store.get(Entity.CUSTOMER, customer_id)
        )
        if customer is None:
            raise saga.not_found("lookup_customer", "Customer not found")
        return customer

    # ==================== PROVISION ====================

    async def provision(self, name: str, email: str, product_ids: Iterable[str] = ()) -> LifecycleResult:
        """Create identity, customer row and initial entitlements."""
        with self._observe("provision"):
            name = _require(name, "name")
            email = validate_email(email)
            desired = sorted(normalize_product_ids(product_ids))

            saga = self._saga("provision", PROVISION_PLAN)
            identity = await saga.run(
                "create_identity",
                FailureKind.IDENTITY_CREATION_FAILED,
                lambda: self.identity_provider.create_identity(email, metadata={"name": name})
            )
            saga.bind_customer(identity.id)

            now = _now()
            await saga.run(
                "insert_customer",
                FailureKind.CUSTOMER_CREATION_FAILED,
                lambda: self.store.insert(Entity.CUSTOMER, [{
                    "id": identity.id,
                    "name": name,
                    "email": email,
                    "created_at": now,
                    "updated_at": now,
                }]),
                residual={"orphaned_identity_id": identity.id}
            )

            if desired:
                await saga.run(
                    "insert_entitlements",
                    FailureKind.ENTITLEMENT_CREATION_FAILED,
                    lambda: self.store.insert(
                        Entity.ENTITLEMENT,
                        [
                            {"customer_id": identity.id, "product_id": product_id, "created_at": now}
                            for product_id in desired
                        ],
                        upsert=True
                    ),
                    # customer exists; converge with set_entitlements rather than re-provisioning
                    residual={"customer_id": identity.id, "missing_product_ids": desired}
                )
            else:
                saga.skip("insert_entitlements", "no products requested")

        self.logger.info("Customer provisioned", customer_id=identity.id, products=len(desired))
        return saga.result

    # ==================== UPDATE ====================

    async def update(self, customer_id: str, name: Optional[str] = None, email: Optional[str] = None,
                     products_to_add: Iterable[str] = (), products_to_remove: Iterable[str] = ()) -> LifecycleResult:
        """Patch profile fields, then add and remove entitlements."""
        with self._observe("update", customer_id):
            customer_id = _require(customer_id, "customerId")
            patch: Dict[str, Any] = {}
            if name is not None:
                patch["name"] = _require(name, "customerName")
            if email is not None:
                patch["email"] = validate_email(email)

            to_add = normalize_product_ids(products_to_add)
            to_remove = normalize_product_ids(products_to_remove)
            overlap = to_add & to_remove
            if overlap:
                raise ValidationError(
                    "Products cannot be both added and removed",
                    details={"product_ids": sorted(overlap)}
                )

            saga = self._saga("update", UPDATE_PLAN, customer_id)
            if patch:
                saga.skip("lookup_customer", "existence checked by update_customer")
                patch["updated_at"] = _now()
                updated = await saga.run(
                    "update_customer",
                    FailureKind.CUSTOMER_UPDATE_FAILED,
                    lambda: self.store.update(Entity.CUSTOMER, {"id": customer_id}, patch)
                )
                if updated == 0:
                    raise saga.not_found("update_customer", "Customer not found")
            else:
                await self._require_customer(saga, customer_id)
                saga.skip("update_customer", "no profile fields supplied")

            if to_add:
                now = _now()
                await saga.run(
                    "add_entitlements",
                    FailureKind.ENTITLEMENT_ADD_FAILED,
                    lambda: self.store.insert(
                        Entity.ENTITLEMENT,
                        [
                            {"customer_id": customer_id, "product_id": product_id, "created_at": now}
                            for product_id in sorted(to_add)
                        ],
                        upsert=True
                    )
                )
            else:
                saga.skip("add_entitlements", "no products to add")

            if to_remove:
                await saga.run(
                    "remove_entitlements",
                    FailureKind.ENTITLEMENT_REMOVE_FAILED,
                    lambda: self.store.delete(
                        Entity.ENTITLEMENT,
                        {"customer_id": customer_id, "product_id": sorted(to_remove)}
                    )
                )
            else:
                saga.skip("remove_entitlements", "no products to remove")

        return saga.result

    # ==================== DEPROVISION ====================

    async def deprovision(self, customer_id: str) -> LifecycleResult:
        """Remove entitlements, detach profiles and orders, then delete customer and identity."""
        with self._observe("deprovision", customer_id):
            customer_id = _require(customer_id, "customerId")

            saga = self._saga("deprovision", DEPROVISION_PLAN, customer_id)
            await saga.run(
                "delete_entitlements",
                FailureKind.ENTITLEMENT_CLEANUP_FAILED,
                lambda: self.store.delete(Entity.ENTITLEMENT, {"customer_id": customer_id})
            )
            await saga.run(
                "detach_profiles",
                FailureKind.PROFILE_DETACH_FAILED,
                lambda: self.store.update(Entity.PROFILE, {"customer_id": customer_id}, {"customer_id": None})
            )
            await saga.run(
                "detach_orders",
                FailureKind.ORDER_DETACH_FAILED,
                lambda: self._detach_orders(customer_id),
                skip_when_zero=True
            )
            await saga.run(
                "delete_customer",
                FailureKind.CUSTOMER_DELETE_FAILED,
                lambda: self.store.delete(Entity.CUSTOMER, {"id": customer_id})
            )
            await saga.run(
                "delete_identity",
                FailureKind.IDENTITY_DELETE_FAILED,
                lambda: self.identity_provider.delete_identity(customer_id),
                residual={"orphaned_identity_id": customer_id, "customer_deleted": True}
            )

        self.logger.info("Customer deprovisioned", customer_id=customer_id)
        return saga.result

    async def _detach_orders(self, customer_id: str) -> int:
        orders = await self.store.list(Entity.ORDER, {"customer_id": customer_id})
        if not orders:
            return 0
        return await self.store.update(Entity.ORDER, {"customer_id": customer_id}, {"customer_id": None})

    # ==================== ENTITLEMENTS ====================

    async def set_entitlements(self, customer_id: str, product_ids: Iterable[str]) -> LifecycleResult:
        """Move the customer's entitlements to exactly product_ids."""
        with self._observe("set_entitlements", customer_id):
            customer_id = _require(customer_id, "customerId")
            desired = normalize_product_ids(product_ids)

            saga = self._saga("set_entitlements", SET_ENTITLEMENTS_PLAN, customer_id)
            await self._require_customer(saga, customer_id)
            current: List[Entitlement] = await saga.run(
                "list_entitlements",
                FailureKind.ENTITLEMENT_LIST_FAILED,
                lambda: self.store.list(Entity.ENTITLEMENT, {"customer_id": customer_id})
            )
            diff = reconcile(customer_id, desired, current)

            if diff.to_insert:
                now = _now()
                await saga.run(
                    "add_entitlements",
                    FailureKind.ENTITLEMENT_ADD_FAILED,
                    lambda: self.store.insert(
                        Entity.ENTITLEMENT,
                        [dict(row, created_at=now) for row in diff.to_insert],
                        upsert=True
                    )
                )
            else:
                saga.skip("add_entitlements", "no products to add")

            if diff.to_delete:
                await saga.run(
                    "remove_entitlements",
                    FailureKind.ENTITLEMENT_REMOVE_FAILED,
                    lambda: self.store.delete(
                        Entity.ENTITLEMENT,
                        {"customer_id": customer_id, "product_id": diff.to_delete}
                    )
                )
            else:
                saga.skip("remove_entitlements", "no products to remove")

        saga.result.summary["product_ids"] = sorted(
            row.product_id for row in apply_diff(current, diff)
        )
        return saga.result

    async def update_entitlement_notes(self, customer_id: str, product_id: str,
                                       notes: Optional[str]) -> LifecycleResult:
        """Set the free-text notes on one entitlement."""
        with self._observe("update_notes", customer_id):
            customer_id = _require(customer_id, "customerId")
            product_id = _require(product_id, "productId")
            notes = notes.strip() or None if notes is not None else None

            saga = self._saga("update_notes", NOTES_PLAN, customer_id)
            updated = await saga.run(
                "update_notes",
                FailureKind.ENTITLEMENT_NOTES_UPDATE_FAILED,
                lambda: self.store.update(
                    Entity.ENTITLEMENT,
                    {"customer_id": customer_id, "product_id": product_id},
                    {"notes": notes}
                )
            )
            if updated == 0:
                raise saga.not_found("update_notes", "Entitlement not found")

        return saga.result

    async def list_entitlements(self, customer_id: str) -> List[Entitlement]:
        customer_id = _require(customer_id, "customerId")
        saga = self._saga("list_entitlements", LIST_PLAN, customer_id)
        rows = await saga.run(
            "list_entitlements",
            FailureKind.ENTITLEMENT_LIST_FAILED,
            lambda: self.store.list(Entity.ENTITLEMENT, {"customer_id": customer_id})
        )
        return sorted(rows, key=lambda row: row.product_id)
