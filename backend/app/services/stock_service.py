# Overview: Stock availability, validation, and the atomic stock operation executor.

# backend/app/services/stock_service.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import (
    InactiveEntityError,
    InsufficientStockError,
    NotFoundError,
    StockValidationError,
    UnsupportedOperationError,
)
from ..models import (
    AuditEventType,
    Batch,
    OperationType,
    Product,
    StockMovement,
    StockOperation,
    StockReservation,
)
from app.time_utils import days_until, utcnow, utctoday
from . import audit_service
from .batch_allocator import BatchAllocation, plan_allocation
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
"""
Stock invariants (authoritative)

Derived stock:
- Committed stock for a product is SUM(current_quantity) over its active
  batches. There is no cached counter on Product.
- Available stock is committed stock minus the quantity held by reservations
  whose expires_at is still in the future, floored at zero.

Mutation:
- Every mutation runs inside one DB transaction that first locks all active
  batch rows of the product (SELECT ... FOR UPDATE, BEGIN IMMEDIATE on SQLite),
  then re-reads quantities, then writes.
- A batch's current_quantity never goes below zero.
- Each executed operation writes exactly one StockOperation row and one
  StockMovement row per batch touched, plus a STOCK_MOVEMENT audit event.
  Either all of them commit with the batch updates or none do.
"""


@dataclass
class StockValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    batch_expired: bool = False

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def _expiry_warning_days() -> int:
    return int(current_app.config.get("EXPIRY_WARNING_DAYS", 30))


def _require_positive_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise StockValidationError(["Quantity must be a positive integer"])
    return quantity


def coerce_operation_type(value) -> OperationType:
    try:
        return OperationType(value)
    except ValueError:
        raise UnsupportedOperationError(
            f"Unknown operation type: {value}",
            details={"allowed": [t.value for t in OperationType]},
        )


def get_product(product_id: int, *, require_active: bool = False) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    if require_active and not product.is_active:
        raise InactiveEntityError("Product is inactive", details={"product_id": product_id})
    return product


def get_batch(batch_id: int, *, product_id: int | None = None, require_active: bool = False) -> Batch:
    batch = db.session.get(Batch, batch_id)
    if batch is None or (product_id is not None and batch.product_id != product_id):
        raise NotFoundError("Batch not found", details={"batch_id": batch_id, "product_id": product_id})
    if require_active and not batch.is_active:
        raise InactiveEntityError("Batch is inactive", details={"batch_id": batch_id})
    return batch


# =============================================================================
# Read side
# =============================================================================

def get_committed_stock(product_id: int) -> int:
    q = db.session.query(func.coalesce(func.sum(Batch.current_quantity), 0)).filter(
        Batch.product_id == product_id,
        Batch.is_active.is_(True),
    )
    return int(q.scalar() or 0)


def get_reserved_stock(product_id: int, *, batch_id: int | None = None) -> int:
    """Quantity held by reservations that have not yet expired."""
    q = db.session.query(func.coalesce(func.sum(StockReservation.quantity), 0)).filter(
        StockReservation.product_id == product_id,
        StockReservation.expires_at > utcnow(),
    )
    if batch_id is not None:
        q = q.filter(StockReservation.batch_id == batch_id)
    return int(q.scalar() or 0)


def get_available_stock(product_id: int, branch_id=None) -> int:
    """
    Committed stock minus active reservations, never negative.

    Branch-scoped stock is not modeled; passing branch_id is rejected rather
    than silently answering for the whole pharmacy.
    """
    if branch_id is not None:
        raise UnsupportedOperationError(
            "Branch-scoped stock is not supported",
            details={"branch_id": branch_id},
        )
    available = get_committed_stock(product_id) - get_reserved_stock(product_id)
    return max(available, 0)


def validate_stock_availability(product_id: int, quantity, batch_id: int | None = None) -> StockValidationResult:
    """
    Pre-check for a stock request. Never raises for business failures; callers
    decide whether warnings block.
    """
    errors: list[str] = []
    warnings: list[str] = []

    product = db.session.get(Product, product_id)
    if product is None or not product.is_active:
        errors.append("Product not found or inactive")
        return StockValidationResult(is_valid=False, errors=errors, warnings=warnings)

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        errors.append("Quantity must be a positive integer")
        return StockValidationResult(is_valid=False, errors=errors, warnings=warnings)

    available = get_available_stock(product_id)
    if available < quantity:
        errors.append(f"Insufficient stock. Available: {available}, Required: {quantity}")

    batch_expired = False
    if batch_id is not None:
        batch = db.session.get(Batch, batch_id)
        if batch is None or not batch.is_active or batch.product_id != product_id:
            errors.append("Batch not found or inactive")
        else:
            batch_available = max(batch.current_quantity - get_reserved_stock(product_id, batch_id=batch_id), 0)
            if batch_available < quantity:
                errors.append(
                    f"Insufficient batch quantity. Available: {batch_available}, Required: {quantity}"
                )

            remaining_days = days_until(batch.expiry_date)
            if remaining_days <= 0:
                batch_expired = True
                errors.append("Batch has expired")
            elif remaining_days <= _expiry_warning_days():
                warnings.append(f"Batch expires in {remaining_days} days")

    return StockValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        batch_expired=batch_expired,
    )


def get_stock_summary(product_id: int) -> dict:
    product = get_product(product_id)
    batches = (
        db.session.query(Batch)
        .filter(Batch.product_id == product_id, Batch.is_active.is_(True))
        .order_by(Batch.expiry_date.asc(), Batch.id.asc())
        .all()
    )
    committed = sum(b.current_quantity for b in batches)
    reserved = get_reserved_stock(product_id)
    today = utctoday()

    return {
        "product_id": product.id,
        "product_name": product.name,
        "committed_quantity": committed,
        "reserved_quantity": reserved,
        "available_quantity": max(committed - reserved, 0),
        "stock_value_cents": sum(b.current_quantity * b.cost_price_cents for b in batches),
        "min_stock_level": product.min_stock_level,
        "max_stock_level": product.max_stock_level,
        "is_low_stock": committed <= product.min_stock_level,
        "batches": [
            {
                **b.to_dict(),
                "days_until_expiry": days_until(b.expiry_date, today),
            }
            for b in batches
        ],
    }


def get_expiring_batches(days: int = 30) -> list[Batch]:
    """Active batches with stock that expire within `days` (already-expired included)."""
    horizon = utctoday() + timedelta(days=days)
    return (
        db.session.query(Batch)
        .filter(
            Batch.is_active.is_(True),
            Batch.current_quantity > 0,
            Batch.expiry_date <= horizon,
        )
        .order_by(Batch.expiry_date.asc(), Batch.id.asc())
        .all()
    )


def get_expired_batches() -> list[Batch]:
    return (
        db.session.query(Batch)
        .filter(
            Batch.is_active.is_(True),
            Batch.current_quantity > 0,
            Batch.expiry_date <= utctoday(),
        )
        .order_by(Batch.expiry_date.asc(), Batch.id.asc())
        .all()
    )


def get_low_stock_products() -> list[dict]:
    """Active products whose committed stock is at or below min_stock_level."""
    stock = func.coalesce(func.sum(Batch.current_quantity), 0)
    rows = (
        db.session.query(Product, stock.label("committed"))
        .outerjoin(Batch, (Batch.product_id == Product.id) & (Batch.is_active.is_(True)))
        .filter(Product.is_active.is_(True))
        .group_by(Product.id)
        .having(stock <= Product.min_stock_level)
        .order_by(Product.name.asc())
        .all()
    )
    return [
        {
            "product_id": product.id,
            "name": product.name,
            "category": product.category,
            "barcode": product.barcode,
            "committed_quantity": int(committed),
            "min_stock_level": product.min_stock_level,
        }
        for product, committed in rows
    ]


# =============================================================================
# Executor
# =============================================================================

def _lock_product_batches(product_id: int) -> list[Batch]:
    """Lock every active batch row of the product, in expiry (FIFO) order."""
    q = (
        db.session.query(Batch)
        .filter(Batch.product_id == product_id, Batch.is_active.is_(True))
        .order_by(Batch.expiry_date.asc(), Batch.id.asc())
    )
    return lock_for_update(q).all()


def _plan_steps(
    *,
    product_id: int,
    batch_id: int | None,
    quantity: int,
    op_type: OperationType,
    locked: list[Batch],
) -> list[BatchAllocation]:
    if batch_id is not None:
        batch = next((b for b in locked if b.id == batch_id), None)
        if batch is None:
            # Not among the active batches: distinguish missing from soft-deleted.
            batch = get_batch(batch_id, product_id=product_id, require_active=True)
        if op_type.subtracts and batch.current_quantity < quantity:
            raise InsufficientStockError(
                available=batch.current_quantity,
                required=quantity,
                product_id=product_id,
                batch_id=batch_id,
            )
        return [BatchAllocation(batch=batch, quantity=quantity)]

    if op_type.subtracts:
        eligible = [b for b in locked if b.current_quantity > 0]
        return plan_allocation(eligible, quantity, product_id=product_id)

    # Adding stock without a target batch: use the earliest-expiring active batch.
    if not locked:
        raise UnsupportedOperationError(
            "Adding stock without a batch requires an existing batch; receive a new batch instead",
            details={"product_id": product_id, "operation_type": op_type.value},
        )
    return [BatchAllocation(batch=locked[0], quantity=quantity)]


def apply_stock_operation(
    *,
    product_id: int,
    quantity: int,
    operation_type: OperationType | str,
    batch_id: int | None = None,
    reason: str | None = None,
    user_id: int | None = None,
    reference_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> StockOperation:
    """
    Core executor without transaction control.

    The caller must have opened the write transaction and is responsible for
    commit/rollback. Used directly by sale completion so several items share
    one transaction.
    """
    op_type = coerce_operation_type(operation_type)
    quantity = _require_positive_quantity(quantity)
    get_product(product_id, require_active=True)

    locked = _lock_product_batches(product_id)
    previous_total = sum(b.current_quantity for b in locked)

    steps = _plan_steps(
        product_id=product_id,
        batch_id=batch_id,
        quantity=quantity,
        op_type=op_type,
        locked=locked,
    )

    sign = -1 if op_type.subtracts else 1
    for step in steps:
        new_batch_qty = step.batch.current_quantity + sign * step.quantity
        if new_batch_qty < 0:
            raise InsufficientStockError(
                available=step.batch.current_quantity,
                required=step.quantity,
                product_id=product_id,
                batch_id=step.batch.id,
            )
        step.batch.current_quantity = new_batch_qty

    quantity_change = sign * quantity
    new_total = previous_total + quantity_change
    if new_total < 0:
        raise InsufficientStockError(available=previous_total, required=quantity, product_id=product_id)

    touched_batch_id = batch_id
    if touched_batch_id is None and len(steps) == 1:
        touched_batch_id = steps[0].batch.id

    operation = StockOperation(
        operation_type=op_type.value,
        product_id=product_id,
        batch_id=touched_batch_id,
        quantity_change=quantity_change,
        previous_quantity=previous_total,
        new_quantity=new_total,
        user_id=user_id,
        reference_id=reference_id,
    )
    db.session.add(operation)
    db.session.flush()

    for step in steps:
        db.session.add(
            StockMovement(
                product_id=product_id,
                batch_id=step.batch.id,
                stock_operation_id=operation.id,
                movement_type=op_type.movement_type.value,
                quantity=step.quantity,
                reason=reason,
                user_id=user_id,
                reference_id=reference_id,
            )
        )

    audit_service.log_event(
        event_type=AuditEventType.STOCK_MOVEMENT,
        product_id=product_id,
        batch_id=touched_batch_id,
        user_id=user_id,
        details={
            "operation_id": operation.id,
            "operation_type": op_type.value,
            "quantity_change": quantity_change,
            "previous_quantity": previous_total,
            "new_quantity": new_total,
            "reference_id": reference_id,
            "allocations": [
                {"batch_id": s.batch.id, "quantity": s.quantity} for s in steps
            ],
        },
        ip_address=ip_address,
        user_agent=user_agent,
    )

    db.session.flush()
    return operation


def execute_stock_operation(
    *,
    product_id: int,
    quantity: int,
    operation_type: OperationType | str,
    batch_id: int | None = None,
    reason: str | None = None,
    user_id: int | None = None,
    reference_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> str:
    """
    Apply a stock operation atomically and return its operation id.

    SALE/TRANSFER subtract; PURCHASE/ADJUSTMENT add. Without batch_id,
    subtracting operations consume batches FIFO by expiry. Any failure rolls
    back every write.
    """
    def _op():
        begin_write_transaction()
        operation = apply_stock_operation(
            product_id=product_id,
            quantity=quantity,
            operation_type=operation_type,
            batch_id=batch_id,
            reason=reason,
            user_id=user_id,
            reference_id=reference_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        operation_id = operation.id
        db.session.commit()
        return operation_id

    return run_with_retry(_op)
