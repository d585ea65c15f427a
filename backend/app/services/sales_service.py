"""
Sales Service - document-first sale processing

WHY: Separates sale intent from stock posting. A sale is priced and persisted
when it is created; batches are only decremented when the sale completes, in
the same transaction that flips the sale and its payments to COMPLETED.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..extensions import db
from ..errors import InactiveEntityError, NotFoundError, StockError
from ..models import (
    SALE_TRANSITIONS,
    Batch,
    Customer,
    OperationType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    ReservationType,
    Sale,
    SaleAuditLog,
    SaleItem,
    SaleStatus,
)
from app.time_utils import utcnow
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .document_service import next_sale_number
from .reservation_service import place_reservation, release_reservations_for_reference
from .stock_service import apply_stock_operation


class SaleError(StockError):
    """Raised for sale operation errors."""


class SaleStateError(SaleError):
    """Requested lifecycle transition is not allowed from the sale's current status."""

    http_status = 409


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_non_negative_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def compute_tax_cents(taxable_cents: int, rate_bps: int) -> int:
    """Flat tax, nearest cent, half-up."""
    return (taxable_cents * rate_bps + 5000) // 10000


def _tax_rate_bps() -> int:
    return int(current_app.config.get("SALES_TAX_RATE_BPS", 1200))


def _log_sale_audit(
    sale: Sale,
    action: str,
    description: str,
    *,
    changes: dict | None = None,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SaleAuditLog:
    entry = SaleAuditLog(
        sale_id=sale.id,
        action=action,
        description=description,
        changes=changes,
        performed_by_user_id=user_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(entry)
    return entry


def _check_transition(sale: Sale, target: SaleStatus) -> None:
    current = SaleStatus(sale.status)
    if target not in SALE_TRANSITIONS[current]:
        raise SaleStateError(
            f"Cannot move sale from {current.value} to {target.value}",
            details={"sale_id": sale.id, "status": current.value, "requested": target.value},
        )


def _resolve_customer(customer: dict | None, user_id: int | None) -> Customer | None:
    """Find by id, then by phone; otherwise create."""
    if not customer:
        return None

    customer_id = customer.get("id")
    if customer_id is not None:
        found = db.session.get(Customer, customer_id)
        if found is None:
            raise NotFoundError("Customer not found", details={"customer_id": customer_id})
        return found

    phone = (customer.get("patient_phone") or "").strip()
    if phone:
        found = db.session.query(Customer).filter_by(patient_phone=phone).first()
        if found is not None:
            return found

    name = (customer.get("patient_name") or "").strip()
    if not name or not phone:
        raise SaleError("Customer requires patient_name and patient_phone")

    created = Customer(
        patient_name=name,
        patient_phone=phone,
        patient_email=customer.get("patient_email"),
        doctor_name=customer.get("doctor_name"),
        doctor_license=customer.get("doctor_license"),
        created_by_user_id=user_id,
    )
    db.session.add(created)
    db.session.flush()
    return created


def _build_item(raw: dict, index: int) -> SaleItem:
    product_id = raw.get("product_id")
    product = db.session.get(Product, product_id) if product_id is not None else None
    if product is None:
        raise NotFoundError("Product not found", details={"item": index, "product_id": product_id})
    if not product.is_active:
        raise InactiveEntityError("Product is inactive", details={"item": index, "product_id": product_id})

    batch_id = raw.get("batch_id")
    if batch_id is not None:
        batch = db.session.get(Batch, batch_id)
        if batch is None or batch.product_id != product.id:
            raise NotFoundError("Batch not found", details={"item": index, "batch_id": batch_id})
        if not batch.is_active:
            raise InactiveEntityError("Batch is inactive", details={"item": index, "batch_id": batch_id})

    quantity = raw.get("quantity")
    if not _is_positive_int(quantity):
        raise SaleError("Quantity must be a positive integer", details={"item": index})

    unit_price = raw.get("unit_price_cents", product.selling_price_cents)
    if not _is_positive_int(unit_price):
        raise SaleError("Unit price must be greater than zero", details={"item": index})

    discount = raw.get("discount_cents", 0) or 0
    if not _is_non_negative_int(discount):
        raise SaleError("Item discount must be a non-negative integer", details={"item": index})

    gross = quantity * unit_price
    if discount > gross:
        raise SaleError("Item discount exceeds line amount", details={"item": index})

    return SaleItem(
        product_id=product.id,
        batch_id=batch_id,
        quantity=quantity,
        unit_price_cents=unit_price,
        discount_cents=discount,
        line_total_cents=gross - discount,
    )


def create_sale(
    *,
    items: list[dict],
    cashier_id: int | None = None,
    customer: dict | None = None,
    payment_method: PaymentMethod | str = PaymentMethod.CASH,
    discount_cents: int = 0,
    notes: str | None = None,
    prescription_id: str | None = None,
    as_draft: bool = False,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Sale:
    """
    Price and persist a sale with its items and a PENDING payment.

    Stock sufficiency is not checked here; completion re-validates under lock.
    When RESERVE_STOCK_ON_SALE is enabled each item is reserved against the
    sale number, and a reservation failure aborts the whole sale.
    """
    if not items:
        raise SaleError("Sale must contain at least one item")
    if not _is_non_negative_int(discount_cents):
        raise SaleError("Discount must be a non-negative integer")
    try:
        method = PaymentMethod(payment_method)
    except ValueError:
        raise SaleError(f"Unsupported payment method: {payment_method}")

    reserve = bool(current_app.config.get("RESERVE_STOCK_ON_SALE", False))

    def _op():
        begin_write_transaction()

        sale_items = [_build_item(raw, i) for i, raw in enumerate(items)]
        subtotal = sum(item.line_total_cents for item in sale_items)
        if discount_cents > subtotal:
            raise SaleError("Discount exceeds subtotal", details={"subtotal_cents": subtotal})

        taxable = subtotal - discount_cents
        tax = compute_tax_cents(taxable, _tax_rate_bps())
        total = taxable + tax

        buyer = _resolve_customer(customer, cashier_id)
        status = SaleStatus.DRAFT if as_draft else SaleStatus.PENDING

        sale = Sale(
            sale_number=next_sale_number(),
            customer_id=buyer.id if buyer else None,
            cashier_id=cashier_id,
            status=status.value,
            subtotal_cents=subtotal,
            tax_cents=tax,
            discount_cents=discount_cents,
            total_cents=total,
            notes=notes,
            prescription_id=prescription_id,
        )
        db.session.add(sale)
        db.session.flush()

        for item in sale_items:
            item.sale_id = sale.id
            db.session.add(item)

        db.session.add(
            Payment(
                sale_id=sale.id,
                payment_method=method.value,
                status=PaymentStatus.PENDING.value,
                amount_cents=total,
            )
        )

        if reserve:
            for item in sale_items:
                place_reservation(
                    product_id=item.product_id,
                    batch_id=item.batch_id,
                    quantity=item.quantity,
                    reservation_type=ReservationType.SALE,
                    reference_id=sale.sale_number,
                    user_id=cashier_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )

        _log_sale_audit(
            sale,
            "CREATED",
            f"Sale {sale.sale_number} created",
            changes={"status": status.value, "total_cents": total, "item_count": len(sale_items)},
            user_id=cashier_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    current_app.logger.info("Sale %s created (total_cents=%s)", sale.sale_number, sale.total_cents)
    return sale


def _locked_sale(sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale


def submit_sale(sale_id: int, *, user_id: int | None = None, ip_address: str | None = None, user_agent: str | None = None) -> Sale:
    """DRAFT -> PENDING."""
    def _op():
        begin_write_transaction()
        sale = _locked_sale(sale_id)
        _check_transition(sale, SaleStatus.PENDING)
        sale.status = SaleStatus.PENDING.value
        _log_sale_audit(
            sale,
            "SUBMITTED",
            f"Sale {sale.sale_number} submitted",
            changes={"status": {"from": SaleStatus.DRAFT.value, "to": SaleStatus.PENDING.value}},
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.session.commit()
        return sale

    return run_with_retry(_op)


def complete_sale(
    sale_id: int,
    *,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Sale:
    """
    PENDING -> COMPLETED, deducting stock for every item.

    Every item's stock operation, the status change, the payment update, and
    the audit row share one transaction. If any item fails (e.g.
    InsufficientStockError) nothing is written and the sale stays PENDING.
    A second completion of the same sale fails with SaleStateError.
    """
    def _op():
        begin_write_transaction()
        sale = _locked_sale(sale_id)
        _check_transition(sale, SaleStatus.COMPLETED)

        items = list(sale.items)
        if not items:
            raise SaleError("Cannot complete sale with no items", details={"sale_id": sale.id})

        actor = user_id or sale.cashier_id
        release_reservations_for_reference(sale.sale_number, user_id=actor)

        for item in items:
            operation = apply_stock_operation(
                product_id=item.product_id,
                batch_id=item.batch_id,
                quantity=item.quantity,
                operation_type=OperationType.SALE,
                reason=f"Sale {sale.sale_number}",
                user_id=actor,
                reference_id=sale.sale_number,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            item.stock_operation_id = operation.id

        sale.status = SaleStatus.COMPLETED.value
        sale.completed_at = utcnow()
        for payment in sale.payments:
            payment.status = PaymentStatus.COMPLETED.value

        _log_sale_audit(
            sale,
            "COMPLETED",
            f"Sale {sale.sale_number} completed",
            changes={
                "status": {"from": SaleStatus.PENDING.value, "to": SaleStatus.COMPLETED.value},
                "stock_operations": [item.stock_operation_id for item in items],
            },
            user_id=actor,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    current_app.logger.info("Sale %s completed", sale.sale_number)
    return sale


def cancel_sale(
    sale_id: int,
    *,
    reason: str,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Sale:
    """
    Cancel a DRAFT or PENDING sale.

    Stock is untouched because only completion mutates batches; any
    reservations held for the sale are released.
    """
    if not reason or not reason.strip():
        raise SaleError("Cancellation reason is required")

    def _op():
        begin_write_transaction()
        sale = _locked_sale(sale_id)
        previous = sale.status
        _check_transition(sale, SaleStatus.CANCELLED)

        sale.status = SaleStatus.CANCELLED.value
        sale.cancelled_at = utcnow()
        sale.cancel_reason = reason.strip()
        for payment in sale.payments:
            payment.status = PaymentStatus.FAILED.value

        release_reservations_for_reference(sale.sale_number, user_id=user_id)

        _log_sale_audit(
            sale,
            "CANCELLED",
            f"Sale {sale.sale_number} cancelled: {sale.cancel_reason}",
            changes={
                "status": {"from": previous, "to": SaleStatus.CANCELLED.value},
                "reason": sale.cancel_reason,
            },
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        db.session.commit()
        return sale

    return run_with_retry(_op)


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale


def get_sale_by_number(sale_number: str) -> Sale:
    sale = db.session.query(Sale).filter_by(sale_number=sale_number).first()
    if sale is None:
        raise NotFoundError("Sale not found", details={"sale_number": sale_number})
    return sale


def list_sales(
    *,
    status: str | None = None,
    cashier_id: int | None = None,
    customer_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Sale], int]:
    """Return (page, total_count), newest first."""
    q = db.session.query(Sale)
    if status:
        q = q.filter(Sale.status == SaleStatus(status).value)
    if cashier_id is not None:
        q = q.filter(Sale.cashier_id == cashier_id)
    if customer_id is not None:
        q = q.filter(Sale.customer_id == customer_id)
    if date_from is not None:
        q = q.filter(Sale.created_at >= date_from)
    if date_to is not None:
        q = q.filter(Sale.created_at <= date_to)

    total = q.count()
    rows = q.order_by(Sale.created_at.desc(), Sale.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def get_sale_audit_log(sale_id: int) -> list[SaleAuditLog]:
    get_sale(sale_id)
    return (
        db.session.query(SaleAuditLog)
        .filter_by(sale_id=sale_id)
        .order_by(SaleAuditLog.created_at.asc(), SaleAuditLog.id.asc())
        .all()
    )
