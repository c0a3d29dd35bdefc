"""
Data models for the Customers Service.

Entity dataclasses mirror the rows held by the relational store; the
pydantic models define the admin HTTP contract (camelCase on the wire).
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


@dataclass
class Identity:
    """Login identity held by the identity provider."""
    id: str
    email: str


@dataclass
class Customer:
    """Customer record; id equals the identity id."""
    id: str
    name: str
    email: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Profile:
    """Per-login profile; created at first sign-in, outside this service."""
    id: str
    customer_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Product:
    """Catalogue product (read-only here)."""
    id: str
    item_number: str
    description: str


@dataclass
class Entitlement:
    """Grants a customer the right to view and order a product."""
    customer_id: str
    product_id: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.created_at:
            data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class Order:
    """Customer order; only its customer reference is touched here."""
    id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CustomerData(_CamelModel):
    """Profile fields for a new customer."""
    name: str = Field(..., description="Customer display name")
    email: str = Field(..., description="Login and contact email")


class ProvisionRequest(_CamelModel):
    """Request model for provisioning a customer."""
    customer_data: CustomerData = Field(..., alias="customerData")
    product_ids: List[str] = Field(default_factory=list, alias="productIds")


class UpdateRequest(_CamelModel):
    """Request model for updating a customer."""
    customer_id: str = Field(..., alias="customerId")
    customer_name: Optional[str] = Field(None, alias="customerName")
    customer_email: Optional[str] = Field(None, alias="customerEmail")
    products_to_add: List[str] = Field(default_factory=list, alias="productsToAdd")
    products_to_remove: List[str] = Field(default_factory=list, alias="productsToRemove")


class DeprovisionRequest(_CamelModel):
    """Request model for deprovisioning a customer."""
    customer_id: str = Field(..., alias="customerId")


class SetEntitlementsRequest(_CamelModel):
    """Request model for replacing a customer's entitlement set."""
    customer_id: str = Field(..., alias="customerId")
    product_ids: List[str] = Field(default_factory=list, alias="productIds")


class ProductNotesRequest(_CamelModel):
    """Request model for editing the notes on one entitlement."""
    customer_id: str = Field(..., alias="customerId")
    product_id: str = Field(..., alias="productId")
    notes: Optional[str] = None


class LifecycleResponse(_CamelModel):
    """Successful lifecycle operation response."""
    success: bool = True
    customer_id: Optional[str] = Field(None, alias="customerId")
    message: str
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


class EntitlementListResponse(_CamelModel):
    """Current entitlements of a customer."""
    customer_id: str = Field(..., alias="customerId")
    entitlements: List[Dict[str, Any]]
    total: int
