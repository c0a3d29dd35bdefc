"""
Entitlement set reconciliation.

Computes the minimal insert/delete diff that moves a customer's current
entitlements to a desired product set. Pure: no I/O, and notes on
products kept in both sets are never part of the diff.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set

from shared.errors import ValidationError

from ..models import Entitlement


@dataclass
class EntitlementDiff:
    """Rows to insert and product ids to delete."""
    customer_id: str
    to_insert: List[Dict[str, str]] = field(default_factory=list)
    to_delete: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_insert and not self.to_delete


def normalize_product_ids(product_ids: Iterable[str]) -> Set[str]:
    """Strip and de-duplicate product ids; blank ids are rejected."""
    normalized = set()
    for product_id in product_ids:
        value = product_id.strip() if isinstance(product_id, str) else ""
        if not value:
            raise ValidationError(
                "Product ids must be non-empty strings",
                details={"product_id": product_id}
            )
        normalized.add(value)
    return normalized


def reconcile(customer_id: str, desired: Iterable[str], current: Iterable[Entitlement]) -> EntitlementDiff:
    """Diff desired product ids against the customer's current entitlement rows."""
    desired_ids = normalize_product_ids(desired)
    current_ids = {row.product_id for row in current}

    return EntitlementDiff(
        customer_id=customer_id,
        to_insert=[
            {"customer_id": customer_id, "product_id": product_id}
            for product_id in sorted(desired_ids - current_ids)
        ],
        to_delete=sorted(current_ids - desired_ids),
    )


def apply_diff(current: Iterable[Entitlement], diff: EntitlementDiff) -> List[Entitlement]:
    """Entitlement rows after applying diff; retained rows keep their notes."""
    removed = set(diff.to_delete)
    result = [row for row in current if row.product_id not in removed]
    present = {row.product_id for row in result}
    for row in diff.to_insert:
        if row["product_id"] not in present:
            result.append(Entitlement(customer_id=diff.customer_id, product_id=row["product_id"]))
            present.add(row["product_id"])
    return result
