# Overview: Batch receipt and soft delete; the only place new stock lots enter the ledger.

"""
Batch Receipt Service

WHY: A purchase without a target batch is rejected by the stock executor, so
new lots are created here. Receipt writes the Batch row, one PURCHASE
StockOperation, one IN StockMovement ("Initial stock"), and a STOCK_MOVEMENT
audit event in a single transaction.

LIFECYCLE:
1. Received: active, current_quantity == initial_quantity
2. Consumed/adjusted through stock operations
3. Soft-deleted (is_active=False) only once current_quantity reaches zero
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import func

from ..extensions import db
from ..errors import InactiveEntityError, NotFoundError, StockValidationError
from ..models import (
    AuditEventType,
    Batch,
    MovementType,
    OperationType,
    Product,
    StockMovement,
    StockOperation,
)
from . import audit_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry


def _committed_locked(product_id: int) -> int:
    rows = lock_for_update(
        db.session.query(Batch).filter(Batch.product_id == product_id, Batch.is_active.is_(True))
    ).all()
    return sum(b.current_quantity for b in rows)


def receive_batch(
    *,
    product_id: int,
    batch_number: str,
    manufacturing_date: date,
    expiry_date: date,
    quantity: int,
    cost_price_cents: int = 0,
    supplier_id: int | None = None,
    lot_number: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Batch:
    errors: list[str] = []
    batch_number = (batch_number or "").strip()
    if not batch_number:
        errors.append("Batch number is required")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        errors.append("Quantity must be a positive integer")
    if isinstance(cost_price_cents, bool) or not isinstance(cost_price_cents, int) or cost_price_cents < 0:
        errors.append("Cost price must be a non-negative integer")
    if manufacturing_date and expiry_date and expiry_date <= manufacturing_date:
        errors.append("Expiry date must be after manufacturing date")
    if errors:
        raise StockValidationError(errors)

    def _op():
        begin_write_transaction()

        product = db.session.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product not found", details={"product_id": product_id})
        if not product.is_active:
            raise InactiveEntityError("Product is inactive", details={"product_id": product_id})

        duplicate = (
            db.session.query(func.count(Batch.id))
            .filter(Batch.product_id == product_id, Batch.batch_number == batch_number)
            .scalar()
        )
        if duplicate:
            raise StockValidationError([f"Batch number {batch_number} already exists for this product"])

        previous_total = _committed_locked(product_id)

        batch = Batch(
            product_id=product_id,
            supplier_id=supplier_id,
            batch_number=batch_number,
            lot_number=lot_number,
            manufacturing_date=manufacturing_date,
            expiry_date=expiry_date,
            initial_quantity=quantity,
            current_quantity=quantity,
            cost_price_cents=cost_price_cents,
            notes=notes,
            is_active=True,
        )
        db.session.add(batch)
        db.session.flush()

        operation = StockOperation(
            operation_type=OperationType.PURCHASE.value,
            product_id=product_id,
            batch_id=batch.id,
            quantity_change=quantity,
            previous_quantity=previous_total,
            new_quantity=previous_total + quantity,
            user_id=user_id,
            reference_id=batch_number,
        )
        db.session.add(operation)
        db.session.flush()

        db.session.add(
            StockMovement(
                product_id=product_id,
                batch_id=batch.id,
                stock_operation_id=operation.id,
                movement_type=MovementType.IN.value,
                quantity=quantity,
                reason="Initial stock",
                user_id=user_id,
                reference_id=batch_number,
            )
        )

        audit_service.log_event(
            event_type=AuditEventType.STOCK_MOVEMENT,
            product_id=product_id,
            batch_id=batch.id,
            user_id=user_id,
            details={
                "operation_id": operation.id,
                "operation_type": OperationType.PURCHASE.value,
                "quantity_change": quantity,
                "previous_quantity": previous_total,
                "new_quantity": previous_total + quantity,
                "reference_id": batch_number,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )

        db.session.commit()
        return batch

    return run_with_retry(_op)


def get_batch(batch_id: int) -> Batch:
    batch = db.session.get(Batch, batch_id)
    if batch is None:
        raise NotFoundError("Batch not found", details={"batch_id": batch_id})
    return batch


def list_batches(product_id: int, *, include_inactive: bool = False) -> list[Batch]:
    q = db.session.query(Batch).filter(Batch.product_id == product_id)
    if not include_inactive:
        q = q.filter(Batch.is_active.is_(True))
    return q.order_by(Batch.expiry_date.asc(), Batch.id.asc()).all()


def deactivate_batch(batch_id: int) -> Batch:
    """Soft delete. Refused while the batch still holds stock."""
    def _op():
        begin_write_transaction()
        batch = lock_for_update(db.session.query(Batch).filter_by(id=batch_id)).first()
        if batch is None:
            raise NotFoundError("Batch not found", details={"batch_id": batch_id})
        if batch.current_quantity != 0:
            raise StockValidationError(
                [f"Cannot delete batch with remaining stock ({batch.current_quantity} units)"]
            )
        batch.is_active = False
        db.session.commit()
        return batch

    return run_with_retry(_op)
