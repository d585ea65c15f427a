# Overview: Time-bounded stock holds; reserve, release, and expiry cleanup.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..errors import ExpiredBatchError, NotFoundError, StockValidationError
from ..models import AuditEventType, ReservationType, StockReservation
from app.time_utils import utcnow
from . import audit_service
from .concurrency import begin_write_transaction, run_with_retry
from .stock_service import _lock_product_batches, validate_stock_availability


def _default_expiry() -> datetime:
    minutes = int(current_app.config.get("RESERVATION_TTL_MINUTES", 15))
    return utcnow() + timedelta(minutes=minutes)


def place_reservation(
    *,
    product_id: int,
    quantity: int,
    reservation_type: ReservationType | str = ReservationType.SALE,
    batch_id: int | None = None,
    reference_id: str | None = None,
    expires_at: datetime | None = None,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> StockReservation:
    """
    Validate and insert a reservation inside the caller's transaction.

    Raises ExpiredBatchError when the targeted batch is past expiry and
    StockValidationError for any other validation failure.

    The product's batch rows stay locked until the caller commits, so two
    holds cannot both be validated against the same free stock.
    """
    res_type = ReservationType(reservation_type)

    if expires_at is not None and expires_at <= utcnow():
        raise StockValidationError(["Reservation expiry must be in the future"])

    _lock_product_batches(product_id)
    result = validate_stock_availability(product_id, quantity, batch_id)
    if not result.is_valid:
        if result.batch_expired:
            raise ExpiredBatchError(result.errors, result.warnings)
        raise StockValidationError(result.errors, result.warnings)

    reservation = StockReservation(
        product_id=product_id,
        batch_id=batch_id,
        quantity=quantity,
        reservation_type=res_type.value,
        reference_id=reference_id,
        expires_at=expires_at or _default_expiry(),
        user_id=user_id,
    )
    db.session.add(reservation)
    db.session.flush()

    audit_service.log_event(
        event_type=AuditEventType.STOCK_RESERVATION,
        product_id=product_id,
        batch_id=batch_id,
        user_id=user_id,
        details={
            "reservation_id": reservation.id,
            "quantity": quantity,
            "reservation_type": res_type.value,
            "reference_id": reference_id,
            "expires_at": reservation.expires_at.isoformat(),
            "warnings": result.warnings,
        },
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return reservation


def reserve_stock(
    *,
    product_id: int,
    quantity: int,
    reservation_type: ReservationType | str = ReservationType.SALE,
    batch_id: int | None = None,
    reference_id: str | None = None,
    expires_at: datetime | None = None,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> str:
    """Hold stock for a pending action; returns the reservation id."""
    def _op():
        begin_write_transaction()
        reservation = place_reservation(
            product_id=product_id,
            quantity=quantity,
            reservation_type=reservation_type,
            batch_id=batch_id,
            reference_id=reference_id,
            expires_at=expires_at,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        reservation_id = reservation.id
        db.session.commit()
        return reservation_id

    return run_with_retry(_op)


def _drop_reservation(reservation: StockReservation, *, user_id: int | None = None) -> None:
    audit_service.log_event(
        event_type=AuditEventType.STOCK_RELEASE,
        product_id=reservation.product_id,
        batch_id=reservation.batch_id,
        user_id=user_id,
        details={
            "reservation_id": reservation.id,
            "quantity": reservation.quantity,
            "reference_id": reservation.reference_id,
        },
    )
    db.session.delete(reservation)


def release_reservation(reservation_id: str, *, user_id: int | None = None, strict: bool = False) -> bool:
    """
    Delete a reservation.

    Idempotent: an unknown or already-released id returns False, unless
    strict=True in which case NotFoundError is raised.
    """
    def _op():
        reservation = db.session.get(StockReservation, reservation_id)
        if reservation is None:
            if strict:
                raise NotFoundError("Reservation not found", details={"reservation_id": reservation_id})
            return False
        _drop_reservation(reservation, user_id=user_id)
        db.session.commit()
        return True

    return run_with_retry(_op)


def release_reservations_for_reference(reference_id: str, *, user_id: int | None = None) -> int:
    """Drop every reservation held for a document (flush only; caller commits)."""
    reservations = (
        db.session.query(StockReservation)
        .filter(StockReservation.reference_id == reference_id)
        .all()
    )
    for reservation in reservations:
        _drop_reservation(reservation, user_id=user_id)
    db.session.flush()
    return len(reservations)


def list_reservations(*, product_id: int | None = None, reference_id: str | None = None, active_only: bool = True) -> list[StockReservation]:
    q = db.session.query(StockReservation)
    if product_id is not None:
        q = q.filter(StockReservation.product_id == product_id)
    if reference_id is not None:
        q = q.filter(StockReservation.reference_id == reference_id)
    if active_only:
        q = q.filter(StockReservation.expires_at > utcnow())
    return q.order_by(StockReservation.expires_at.asc()).all()


def cleanup_expired_reservations() -> int:
    """Delete reservations whose expires_at has passed; returns how many were removed."""
    def _op():
        count = (
            db.session.query(StockReservation)
            .filter(StockReservation.expires_at < utcnow())
            .delete(synchronize_session=False)
        )
        db.session.commit()
        return count

    removed = run_with_retry(_op)
    if removed:
        current_app.logger.info("Removed %d expired stock reservations", removed)
    return removed
