# Overview: FIFO-by-expiry batch allocation; read-only, never mutates stock.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from ..extensions import db
from ..errors import InsufficientStockError
from ..models import Batch
from .concurrency import lock_for_update


@dataclass(frozen=True)
class BatchAllocation:
    """One step of an allocation plan: take `quantity` units from `batch`."""
    batch: Batch
    quantity: int

    @property
    def batch_id(self) -> int:
        return self.batch.id

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch.id,
            "batch_number": self.batch.batch_number,
            "expiry_date": self.batch.expiry_date.isoformat(),
            "available_quantity": self.batch.current_quantity,
            "allocated_quantity": self.quantity,
        }


def eligible_batches_query(product_id: int, *, skip_expired_as_of: date | None = None):
    """
    Active batches with stock for a product, earliest expiry first.

    Ties on expiry_date fall back to id (receipt order) so the plan is deterministic.
    """
    query = db.session.query(Batch).filter(
        Batch.product_id == product_id,
        Batch.is_active.is_(True),
        Batch.current_quantity > 0,
    )
    if skip_expired_as_of is not None:
        query = query.filter(Batch.expiry_date > skip_expired_as_of)
    return query.order_by(Batch.expiry_date.asc(), Batch.id.asc())


def plan_allocation(batches: Iterable[Batch], quantity: int, *, product_id: int | None = None) -> list[BatchAllocation]:
    """
    Walk batches in the given order, taking as much as each holds until
    quantity is covered.

    Raises InsufficientStockError (with the total that was eligible) when the
    batches cannot cover quantity; no partial plan is returned.
    """
    if quantity <= 0:
        raise ValueError("quantity must be a positive integer")

    batches = list(batches)
    total = sum(b.current_quantity for b in batches)
    if total < quantity:
        raise InsufficientStockError(
            available=total,
            required=quantity,
            product_id=product_id,
            message=f"Insufficient stock across all batches. Available: {total}, Required: {quantity}",
        )

    plan: list[BatchAllocation] = []
    remaining = quantity
    for batch in batches:
        if remaining <= 0:
            break
        take = min(batch.current_quantity, remaining)
        plan.append(BatchAllocation(batch=batch, quantity=take))
        remaining -= take
    return plan


def allocate_fifo(
    product_id: int,
    quantity: int,
    *,
    lock: bool = False,
    skip_expired_as_of: date | None = None,
) -> list[BatchAllocation]:
    """
    Allocate `quantity` units of a product across its batches, earliest expiry first.

    lock=True selects the batch rows FOR UPDATE; the stock executor uses it so
    the plan cannot go stale before it is applied.
    """
    query = eligible_batches_query(product_id, skip_expired_as_of=skip_expired_as_of)
    if lock:
        query = lock_for_update(query)
    return plan_allocation(query.all(), quantity, product_id=product_id)
