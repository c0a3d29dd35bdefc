"""
Customers service for the storefront.

Admin-only HTTP surface over the customer lifecycle: provisioning,
updating and deprovisioning customers and managing their product
entitlements.
"""

from typing import Optional

from fastapi import Depends, Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config

from .auth.guard import AuthorizationGuard, Principal, credentials_from_request
from .identity.provider import GoTrueIdentityProvider, IdentityProvider
from .lifecycle.orchestrator import LifecycleOrchestrator
from .lifecycle.results import LifecycleResult
from .models import (
    DeprovisionRequest, EntitlementListResponse, LifecycleResponse,
    ProductNotesRequest, ProvisionRequest, SetEntitlementsRequest, UpdateRequest
)
from .persistence.gateway import StoreGateway
from .persistence.postgres import PostgreSQLStoreGateway


def _response(result: LifecycleResult, message: str) -> LifecycleResponse:
    return LifecycleResponse(
        customer_id=result.customer_id,
        message=message,
        steps=result.steps_as_dicts(),
        summary=result.summary
    )


class CustomersService(BaseService):
    """Customers service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[StoreGateway] = None,
                 identity_provider: Optional[IdentityProvider] = None):
        super().__init__("customers", 8013, config or get_config("customers", 8013))

        self.store = store or PostgreSQLStoreGateway(
            self.config.postgres_dsn,
            min_size=self.config.postgres_pool_min,
            max_size=self.config.postgres_pool_max,
            command_timeout=self.config.store_command_timeout
        )
        self.identity_provider = identity_provider or GoTrueIdentityProvider(
            self.config.identity_provider_url,
            self.config.identity_service_key,
            timeout=self.config.identity_request_timeout
        )
        self.guard = AuthorizationGuard(
            self.config.admin_api_key,
            self.config.admin_email_set,
            self.identity_provider,
            self.metrics
        )
        self.orchestrator = LifecycleOrchestrator(self.store, self.identity_provider, self.metrics)

        if not self.config.admin_api_key and not self.config.admin_email_set:
            self.logger.warning("No admin credentials configured; every admin request will be rejected")

        self._setup_customers_routes()

    def _require_admin(self, operation: str):
        """Route dependency admitting only service callers and admins.

        Missing or invalid credentials answer 401. A valid session whose email
        is not on the admin allow-list answers 403 (AUTHORIZATION_ERROR); the
        caller is known but not permitted.
        """

        async def dependency(request: Request) -> Principal:
            credentials = credentials_from_request(request, self.config.session_cookie_name)
            return await self.guard.authorize(credentials, operation)

        return dependency

    def _setup_customers_routes(self):
        """Set up customer lifecycle routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "customers",
                "message": "Storefront - Customers Service",
                "version": "1.0.0",
                "capabilities": ["provision", "update", "deprovision", "entitlements"]
            }

        @self.app.post("/admin/customer/provision", response_model=LifecycleResponse, status_code=201)
        async def provision_customer(request: ProvisionRequest,
                                     principal: Principal = Depends(self._require_admin("provision"))):
            """Create a customer with login identity and initial entitlements."""
            result = await self.orchestrator.provision(
                request.customer_data.name,
                request.customer_data.email,
                request.product_ids
            )
            return _response(result, "Customer provisioned")

        @self.app.post("/admin/customer/update", response_model=LifecycleResponse)
        async def update_customer(request: UpdateRequest,
                                  principal: Principal = Depends(self._require_admin("update"))):
            """Update profile fields and add or remove entitlements."""
            # empty strings mean "leave unchanged"
            result = await self.orchestrator.update(
                request.customer_id,
                name=request.customer_name or None,
                email=request.customer_email or None,
                products_to_add=request.products_to_add,
                products_to_remove=request.products_to_remove
            )
            return _response(result, "Customer updated")

        @self.app.post("/admin/customer/deprovision", response_model=LifecycleResponse)
        async def deprovision_customer(request: DeprovisionRequest,
                                       principal: Principal = Depends(self._require_admin("deprovision"))):
            """Remove a customer, detaching historical data."""
            result = await self.orchestrator.deprovision(request.customer_id)
            return _response(result, "Customer deprovisioned")

        @self.app.post("/admin/customer/entitlements", response_model=LifecycleResponse)
        async def set_entitlements(request: SetEntitlementsRequest,
                                   principal: Principal = Depends(self._require_admin("set_entitlements"))):
            """Replace the customer's entitlement set."""
            result = await self.orchestrator.set_entitlements(request.customer_id, request.product_ids)
            return _response(result, "Entitlements updated")

        @self.app.post("/admin/customer/product-notes", response_model=LifecycleResponse)
        async def update_product_notes(request: ProductNotesRequest,
                                       principal: Principal = Depends(self._require_admin("update_notes"))):
            """Edit the notes on one entitlement."""
            result = await self.orchestrator.update_entitlement_notes(
                request.customer_id, request.product_id, request.notes
            )
            return _response(result, "Entitlement notes updated")

        @self.app.get("/admin/customer/{customer_id}/entitlements", response_model=EntitlementListResponse)
        async def list_entitlements(customer_id: str,
                                    principal: Principal = Depends(self._require_admin("list_entitlements"))):
            """List the customer's current entitlements."""
            rows = await self.orchestrator.list_entitlements(customer_id)
            return EntitlementListResponse(
                customer_id=customer_id,
                entitlements=[row.to_dict() for row in rows],
                total=len(rows)
            )

    async def _check_dependencies(self):
        """Check service dependencies."""
        store_ok = await self.store.health_check()
        identity_ok = await self.identity_provider.health_check()
        return {
            "store": "ok" if store_ok else "error",
            "identity_provider": "ok" if identity_ok else "error",
        }

    async def start(self):
        """Start service components."""
        await self.store.start()
        self.logger.info("Customers service started")

    async def stop(self):
        """Stop service components."""
        await self.store.stop()
        self.logger.info("Customers service stopped")


def create_app(config: Optional[ServiceConfig] = None, store: Optional[StoreGateway] = None,
               identity_provider: Optional[IdentityProvider] = None):
    """Create FastAPI application."""
    service = CustomersService(config=config, store=store, identity_provider=identity_provider)
    return service.app


if __name__ == "__main__":
    service = CustomersService()
    service.run()
