"""
Unit tests for LifecycleOrchestrator.
"""

import pytest
from unittest.mock import AsyncMock

from shared.errors import NotFoundError, ValidationError
from service_customers.app.lifecycle.results import DownstreamFailure, FailureKind, StepStatus
from service_customers.app.persistence.gateway import Entity


def _product_ids(store, customer_id):
    return {row["product_id"] for row in store.rows(Entity.ENTITLEMENT) if row["customer_id"] == customer_id}


def _statuses(result):
    return {outcome.step: outcome.status for outcome in result.steps}


class TestProvision:
    """Test cases for provision."""

    @pytest.mark.asyncio
    async def test_provision_creates_identity_customer_and_entitlements(self, orchestrator, store, identity_provider):
        result = await orchestrator.provision("Acme Diner", "acme@example.com", ["P1", "P3", "P1"])

        customer_id = result.customer_id
        assert customer_id in identity_provider.identities
        assert store.rows(Entity.CUSTOMER)[0]["id"] == customer_id
        assert store.rows(Entity.CUSTOMER)[0]["name"] == "Acme Diner"
        assert _product_ids(store, customer_id) == {"P1", "P3"}
        assert result.completed_steps == ["create_identity", "insert_customer", "insert_entitlements"]

    @pytest.mark.asyncio
    async def test_provision_without_products_skips_entitlements(self, orchestrator, store):
        result = await orchestrator.provision("Acme Diner", "acme@example.com", [])

        assert _statuses(result)["insert_entitlements"] == StepStatus.SKIPPED
        assert store.rows(Entity.ENTITLEMENT) == []

    @pytest.mark.asyncio
    async def test_initial_credential_not_exposed(self, orchestrator):
        result = await orchestrator.provision("Acme Diner", "acme@example.com", [])
        assert "password" not in str(result.steps_as_dicts())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,email", [
        ("", "acme@example.com"),
        ("   ", "acme@example.com"),
        ("Acme Diner", "not-an-email"),
        ("Acme Diner", ""),
    ])
    async def test_invalid_input_has_no_side_effects(self, orchestrator, store, identity_provider, name, email):
        with pytest.raises(ValidationError):
            await orchestrator.provision(name, email, ["P1"])

        assert identity_provider.calls == []
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_blank_product_id_rejected_before_any_call(self, orchestrator, identity_provider):
        with pytest.raises(ValidationError):
            await orchestrator.provision("Acme Diner", "acme@example.com", ["P1", " "])
        assert identity_provider.calls == []

    @pytest.mark.asyncio
    async def test_identity_failure_creates_nothing(self, orchestrator, store, identity_provider):
        identity_provider.fail_create = "email already registered"

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.provision("Acme Diner", "acme@example.com", ["P1"])

        failure = exc_info.value
        assert failure.kind == FailureKind.IDENTITY_CREATION_FAILED
        assert failure.code == "IDENTITY_CREATION_FAILED"
        assert failure.step == "create_identity"
        assert failure.details["completed_steps"] == []
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_customer_insert_failure_reports_orphaned_identity(self, orchestrator, store, identity_provider):
        store.fail_on(Entity.CUSTOMER, "insert")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.provision("Acme Diner", "acme@example.com", ["P1"])

        failure = exc_info.value
        identity_id = next(iter(identity_provider.identities))
        assert failure.kind == FailureKind.CUSTOMER_CREATION_FAILED
        assert failure.entity == "customer"
        assert failure.residual == {"orphaned_identity_id": identity_id}
        assert failure.details["completed_steps"] == ["create_identity"]
        assert _statuses(failure.result)["insert_entitlements"] == StepStatus.NOT_ATTEMPTED
        assert store.rows(Entity.ENTITLEMENT) == []

    @pytest.mark.asyncio
    async def test_entitlement_insert_failure_keeps_customer(self, orchestrator, store):
        store.fail_on(Entity.ENTITLEMENT, "insert")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.provision("Acme Diner", "acme@example.com", ["P1"])

        failure = exc_info.value
        assert failure.kind == FailureKind.ENTITLEMENT_CREATION_FAILED
        assert failure.details["completed_steps"] == ["create_identity", "insert_customer"]
        assert failure.residual["missing_product_ids"] == ["P1"]
        assert len(store.rows(Entity.CUSTOMER)) == 1

    @pytest.mark.asyncio
    async def test_failure_recorded_in_metrics(self, orchestrator, store, metrics):
        store.fail_on(Entity.CUSTOMER, "insert")

        with pytest.raises(DownstreamFailure):
            await orchestrator.provision("Acme Diner", "acme@example.com", [])

        assert metrics.registry.get_sample_value(
            "lifecycle_step_failures_total", {"operation": "provision", "step": "insert_customer"}
        ) == 1.0
        assert metrics.registry.get_sample_value(
            "lifecycle_operations_total", {"operation": "provision", "outcome": "failed"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_invalid_input_recorded_as_rejected(self, orchestrator, metrics):
        with pytest.raises(ValidationError):
            await orchestrator.provision("Acme Diner", "not-an-email", [])

        assert metrics.registry.get_sample_value(
            "lifecycle_operations_total", {"operation": "provision", "outcome": "rejected"}
        ) == 1.0


class TestUpdate:
    """Test cases for update."""

    @pytest.fixture
    def customer(self, store):
        store.seed(Entity.CUSTOMER, {"id": "c1", "name": "Old Name", "email": "old@example.com"})
        store.seed(Entity.ENTITLEMENT, {"customer_id": "c1", "product_id": "P1", "notes": "weekly"})
        return "c1"

    @pytest.mark.asyncio
    async def test_add_preserves_existing_notes(self, orchestrator, store, customer):
        result = await orchestrator.update(customer, products_to_add=["P1", "P2"])

        rows = {row["product_id"]: row for row in store.rows(Entity.ENTITLEMENT)}
        assert set(rows) == {"P1", "P2"}
        assert rows["P1"]["notes"] == "weekly"
        assert _statuses(result)["update_customer"] == StepStatus.SKIPPED
        assert _statuses(result)["remove_entitlements"] == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_profile_fields_patched(self, orchestrator, store, customer):
        await orchestrator.update(customer, name="New Name", email="new@example.com")

        row = store.rows(Entity.CUSTOMER)[0]
        assert row["name"] == "New Name"
        assert row["email"] == "new@example.com"
        assert row["updated_at"] is not None

    @pytest.mark.asyncio
    async def test_remove_absent_product_is_noop(self, orchestrator, store, customer):
        result = await orchestrator.update(customer, products_to_remove=["P9"])

        assert _product_ids(store, customer) == {"P1"}
        assert result.step("remove_entitlements").affected == 0

    @pytest.mark.asyncio
    async def test_unknown_customer_is_not_found(self, orchestrator, store):
        with pytest.raises(NotFoundError):
            await orchestrator.update("missing", name="Someone", products_to_add=["P1"])

        assert store.rows(Entity.ENTITLEMENT) == []

    @pytest.mark.asyncio
    async def test_unknown_customer_without_patch_is_not_found(self, orchestrator, store, metrics):
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.update("no-such-customer", products_to_add=["P1"])

        assert exc_info.value.details["step"] == "lookup_customer"
        assert store.rows(Entity.ENTITLEMENT) == []
        assert ("entitlement", "insert") not in store.calls
        assert metrics.registry.get_sample_value(
            "lifecycle_operations_total", {"operation": "update", "outcome": "rejected"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_lookup_failure_named(self, orchestrator, store, customer):
        store.fail_on(Entity.CUSTOMER, "get")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.update(customer, products_to_add=["P2"])

        assert exc_info.value.kind == FailureKind.CUSTOMER_LOOKUP_FAILED
        assert _product_ids(store, customer) == {"P1"}

    @pytest.mark.asyncio
    async def test_patch_skips_lookup(self, orchestrator, store, customer):
        result = await orchestrator.update(customer, name="New Name")

        assert _statuses(result)["lookup_customer"] == StepStatus.SKIPPED
        assert ("customer", "get") not in store.calls

    @pytest.mark.asyncio
    async def test_conflicting_add_and_remove_rejected(self, orchestrator, store, customer):
        with pytest.raises(ValidationError):
            await orchestrator.update(customer, products_to_add=["P2"], products_to_remove=["P2"])
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, orchestrator, store, customer):
        with pytest.raises(ValidationError):
            await orchestrator.update(customer, email="broken")
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_customer_update_failure_stops_entitlement_changes(self, orchestrator, store, customer):
        store.fail_on(Entity.CUSTOMER, "update")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.update(customer, name="New Name", products_to_add=["P2"])

        assert exc_info.value.kind == FailureKind.CUSTOMER_UPDATE_FAILED
        assert _product_ids(store, customer) == {"P1"}

    @pytest.mark.asyncio
    async def test_add_failure_named(self, orchestrator, store, customer):
        store.fail_on(Entity.ENTITLEMENT, "insert")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.update(customer, name="New Name", products_to_add=["P2"], products_to_remove=["P1"])

        failure = exc_info.value
        assert failure.kind == FailureKind.ENTITLEMENT_ADD_FAILED
        assert failure.details["completed_steps"] == ["update_customer"]
        assert _statuses(failure.result)["remove_entitlements"] == StepStatus.NOT_ATTEMPTED

    @pytest.mark.asyncio
    async def test_remove_failure_named(self, orchestrator, store, customer):
        store.fail_on(Entity.ENTITLEMENT, "delete")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.update(customer, products_to_add=["P2"], products_to_remove=["P1"])

        failure = exc_info.value
        assert failure.kind == FailureKind.ENTITLEMENT_REMOVE_FAILED
        assert failure.details["completed_steps"] == ["lookup_customer", "add_entitlements"]

        # re-invoking after the fault clears converges
        store.clear_failures()
        await orchestrator.update(customer, products_to_add=["P2"], products_to_remove=["P1"])
        assert _product_ids(store, customer) == {"P2"}


class TestDeprovision:
    """Test cases for deprovision."""

    @pytest.mark.asyncio
    async def test_provision_then_deprovision_cleans_up(self, orchestrator, store, identity_provider):
        provisioned = await orchestrator.provision("Acme Diner", "acme@example.com", ["P1", "P2"])
        customer_id = provisioned.customer_id

        result = await orchestrator.deprovision(customer_id)

        assert store.rows(Entity.CUSTOMER) == []
        assert store.rows(Entity.ENTITLEMENT) == []
        assert customer_id not in identity_provider.identities
        assert _statuses(result)["detach_orders"] == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_deprovision_detaches_profiles_and_orders(self, orchestrator, store):
        store.seed(Entity.CUSTOMER, {"id": "c1", "name": "Acme", "email": "acme@example.com"})
        store.seed(Entity.PROFILE, {"id": "u1", "customer_id": "c1"}, {"id": "u2", "customer_id": "c2"})
        store.seed(Entity.ORDER, {"id": "o1", "customer_id": "c1", "status": "delivered"})

        result = await orchestrator.deprovision("c1")

        profiles = {row["id"]: row["customer_id"] for row in store.rows(Entity.PROFILE)}
        assert profiles == {"u1": None, "u2": "c2"}
        assert store.rows(Entity.ORDER) == [{"id": "o1", "customer_id": None, "status": "delivered"}]
        assert result.step("detach_orders").affected == 1

    @pytest.mark.asyncio
    async def test_deprovision_twice_is_idempotent(self, orchestrator):
        provisioned = await orchestrator.provision("Acme Diner", "acme@example.com", ["P1"])

        await orchestrator.deprovision(provisioned.customer_id)
        second = await orchestrator.deprovision(provisioned.customer_id)

        assert second.step("delete_customer").affected == 0

    @pytest.mark.asyncio
    async def test_entitlement_cleanup_failure_aborts_before_cascade(self, orchestrator, store, identity_provider):
        provisioned = await orchestrator.provision("Acme Diner", "acme@example.com", ["P1"])
        store.fail_on(Entity.ENTITLEMENT, "delete")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.deprovision(provisioned.customer_id)

        assert exc_info.value.kind == FailureKind.ENTITLEMENT_CLEANUP_FAILED
        assert exc_info.value.details["completed_steps"] == []
        assert len(store.rows(Entity.CUSTOMER)) == 1
        assert provisioned.customer_id in identity_provider.identities

    @pytest.mark.asyncio
    @pytest.mark.parametrize("entity,operation,kind", [
        (Entity.PROFILE, "update", FailureKind.PROFILE_DETACH_FAILED),
        (Entity.ORDER, "list", FailureKind.ORDER_DETACH_FAILED),
        (Entity.CUSTOMER, "delete", FailureKind.CUSTOMER_DELETE_FAILED),
    ])
    async def test_store_failures_named(self, orchestrator, store, identity_provider, entity, operation, kind):
        provisioned = await orchestrator.provision("Acme Diner", "acme@example.com", [])
        store.fail_on(entity, operation)

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.deprovision(provisioned.customer_id)

        assert exc_info.value.kind == kind
        assert provisioned.customer_id in identity_provider.identities

    @pytest.mark.asyncio
    async def test_identity_delete_failure_reports_residual(self, orchestrator, store, identity_provider):
        provisioned = await orchestrator.provision("Acme Diner", "acme@example.com", [])
        identity_provider.fail_delete = "provider unavailable"

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.deprovision(provisioned.customer_id)

        failure = exc_info.value
        assert failure.kind == FailureKind.IDENTITY_DELETE_FAILED
        assert failure.residual["orphaned_identity_id"] == provisioned.customer_id
        assert store.rows(Entity.CUSTOMER) == []
        assert "delete_customer" in failure.details["completed_steps"]

    @pytest.mark.asyncio
    async def test_order_detach_failure_keeps_customer_and_identity(self, orchestrator, store, identity_provider):
        provisioned = await orchestrator.provision("Acme Diner", "acme@example.com", [])
        customer_id = provisioned.customer_id
        store.seed(Entity.ORDER, {"id": "o1", "customer_id": customer_id, "status": "delivered"})
        store.fail_on(Entity.ORDER, "update")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.deprovision(customer_id)

        failure = exc_info.value
        assert failure.kind == FailureKind.ORDER_DETACH_FAILED
        assert failure.details["completed_steps"] == ["delete_entitlements", "detach_profiles"]
        assert store.rows(Entity.ORDER)[0]["customer_id"] == customer_id
        assert len(store.rows(Entity.CUSTOMER)) == 1
        assert customer_id in identity_provider.identities

    @pytest.mark.asyncio
    async def test_unexpected_error_not_counted_as_success(self, orchestrator, store, metrics):
        store.seed(Entity.CUSTOMER, {"id": "c1", "name": "Acme", "email": "acme@example.com"})
        store.delete = AsyncMock(side_effect=RuntimeError("driver bug"))

        with pytest.raises(RuntimeError):
            await orchestrator.deprovision("c1")

        assert metrics.registry.get_sample_value(
            "lifecycle_operations_total", {"operation": "deprovision", "outcome": "error"}
        ) == 1.0
        assert metrics.registry.get_sample_value(
            "lifecycle_operations_total", {"operation": "deprovision", "outcome": "succeeded"}
        ) is None
        assert metrics.registry.get_sample_value(
            "business_events_total", {"event_type": "customer_deprovision", "service": "customers"}
        ) is None


class TestEntitlementOperations:
    """Test cases for set_entitlements, notes and listing."""

    @pytest.fixture
    def customer(self, store):
        store.seed(Entity.CUSTOMER, {"id": "c1", "name": "Acme", "email": "acme@example.com"})
        store.seed(
            Entity.ENTITLEMENT,
            {"customer_id": "c1", "product_id": "P1", "notes": "keep"},
            {"customer_id": "c1", "product_id": "P2", "notes": None},
        )
        return "c1"

    @pytest.mark.asyncio
    async def test_set_entitlements_applies_minimal_diff(self, orchestrator, store, customer):
        result = await orchestrator.set_entitlements(customer, ["P1", "P3"])

        rows = {row["product_id"]: row for row in store.rows(Entity.ENTITLEMENT)}
        assert set(rows) == {"P1", "P3"}
        assert rows["P1"]["notes"] == "keep"
        assert result.summary["product_ids"] == ["P1", "P3"]
        assert result.step("add_entitlements").affected == 1
        assert result.step("remove_entitlements").affected == 1

    @pytest.mark.asyncio
    async def test_set_entitlements_unchanged_is_noop(self, orchestrator, store, customer):
        result = await orchestrator.set_entitlements(customer, ["P2", "P1"])

        assert _statuses(result)["add_entitlements"] == StepStatus.SKIPPED
        assert _statuses(result)["remove_entitlements"] == StepStatus.SKIPPED
        assert ("entitlement", "insert") not in store.calls

    @pytest.mark.asyncio
    async def test_set_entitlements_list_failure(self, orchestrator, store, customer):
        store.fail_on(Entity.ENTITLEMENT, "list")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.set_entitlements(customer, ["P1"])

        assert exc_info.value.kind == FailureKind.ENTITLEMENT_LIST_FAILED

    @pytest.mark.asyncio
    async def test_set_entitlements_unknown_customer(self, orchestrator, store):
        with pytest.raises(NotFoundError):
            await orchestrator.set_entitlements("no-such-customer", ["P1"])

        assert store.rows(Entity.ENTITLEMENT) == []
        assert ("entitlement", "list") not in store.calls

    @pytest.mark.asyncio
    async def test_update_notes(self, orchestrator, store, customer):
        await orchestrator.update_entitlement_notes(customer, "P2", "  deliver fridays ")

        rows = {row["product_id"]: row for row in store.rows(Entity.ENTITLEMENT)}
        assert rows["P2"]["notes"] == "deliver fridays"
        assert rows["P1"]["notes"] == "keep"

    @pytest.mark.asyncio
    async def test_update_notes_missing_entitlement(self, orchestrator, customer):
        with pytest.raises(NotFoundError):
            await orchestrator.update_entitlement_notes(customer, "P9", "note")

    @pytest.mark.asyncio
    async def test_update_notes_failure_named(self, orchestrator, store, customer):
        store.fail_on(Entity.ENTITLEMENT, "update")

        with pytest.raises(DownstreamFailure) as exc_info:
            await orchestrator.update_entitlement_notes(customer, "P1", "note")

        assert exc_info.value.kind == FailureKind.ENTITLEMENT_NOTES_UPDATE_FAILED

    @pytest.mark.asyncio
    async def test_list_entitlements_sorted(self, orchestrator, store, customer):
        store.seed(Entity.ENTITLEMENT, {"customer_id": "c1", "product_id": "P0"})

        rows = await orchestrator.list_entitlements(customer)

        assert [row.product_id for row in rows] == ["P0", "P1", "P2"]


class TestAcmeDinerScenario:
    """End-to-end lifecycle over the in-memory fakes."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, orchestrator, store, identity_provider, metrics):
        provisioned = await orchestrator.provision("Acme Diner", "acme@example.com", ["P1", "P3"])
        customer_id = provisioned.customer_id
        assert customer_id

        await orchestrator.update(customer_id, products_to_add=["P5"], products_to_remove=["P1"])
        assert _product_ids(store, customer_id) == {"P3", "P5"}

        store.seed(Entity.ORDER, {"id": "o1", "customer_id": customer_id, "status": "delivered"})
        await orchestrator.deprovision(customer_id)

        assert store.rows(Entity.CUSTOMER) == []
        assert _product_ids(store, customer_id) == set()
        assert customer_id not in identity_provider.identities
        assert store.rows(Entity.ORDER)[0]["customer_id"] is None

        for operation in ("provision", "update", "deprovision"):
            assert metrics.registry.get_sample_value(
                "lifecycle_operations_total", {"operation": operation, "outcome": "succeeded"}
            ) == 1.0
