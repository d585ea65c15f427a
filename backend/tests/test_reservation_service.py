"""
Stock reservations.

Verifies:
- Reservations never change batch quantities, only availability
- Expired batches are rejected with ExpiredBatchError and nothing is written
- Release is idempotent (strict mode raises NotFoundError)
- Expired holds stop counting and are removed by cleanup
"""

from datetime import timedelta

import pytest

from app.errors import ExpiredBatchError, NotFoundError, StockValidationError
from app.models import AuditEventType, Batch, StockAuditEvent, StockReservation
from app.services import reservation_service, stock_service
from app.time_utils import utcnow, utctoday


def test_reserve_reduces_available_not_committed(db_session, product, make_batch):
    batch = make_batch(product, 10)

    reservation_id = reservation_service.reserve_stock(
        product_id=product.id, quantity=4, reference_id="CART-1"
    )

    db_session.expire_all()
    assert db_session.get(Batch, batch.id).current_quantity == 10
    assert stock_service.get_committed_stock(product.id) == 10
    assert stock_service.get_available_stock(product.id) == 6

    reservation = db_session.get(StockReservation, reservation_id)
    assert reservation.reservation_type == "SALE"
    assert reservation.reference_id == "CART-1"


def test_default_expiry_uses_configured_ttl(app, db_session, product, make_batch):
    make_batch(product, 10)
    before = utcnow()

    reservation_id = reservation_service.reserve_stock(product_id=product.id, quantity=1)

    reservation = db_session.get(StockReservation, reservation_id)
    ttl = timedelta(minutes=app.config["RESERVATION_TTL_MINUTES"])
    assert before + ttl - timedelta(seconds=5) <= reservation.expires_at <= utcnow() + ttl


def test_reservations_stack_until_exhausted(product, make_batch):
    make_batch(product, 5)
    reservation_service.reserve_stock(product_id=product.id, quantity=3)

    with pytest.raises(StockValidationError) as exc_info:
        reservation_service.reserve_stock(product_id=product.id, quantity=3)

    assert "Insufficient stock. Available: 2, Required: 3" in exc_info.value.errors


@pytest.mark.parametrize("offset", [timedelta(hours=-1), timedelta(0)])
def test_expiry_in_the_past_rejected(db_session, product, make_batch, offset):
    make_batch(product, 10)

    with pytest.raises(StockValidationError) as exc_info:
        reservation_service.reserve_stock(product_id=product.id, quantity=1, expires_at=utcnow() + offset)

    assert exc_info.value.errors == ["Reservation expiry must be in the future"]
    assert db_session.query(StockReservation).count() == 0
    assert db_session.query(StockAuditEvent).count() == 0


def test_batches_locked_before_availability_read(monkeypatch, product, make_batch):
    make_batch(product, 10)
    calls = []

    real_lock = reservation_service._lock_product_batches
    real_validate = reservation_service.validate_stock_availability

    def lock(product_id):
        calls.append(("lock", product_id))
        return real_lock(product_id)

    def validate(product_id, quantity, batch_id=None):
        calls.append(("validate", product_id))
        return real_validate(product_id, quantity, batch_id)

    monkeypatch.setattr(reservation_service, "_lock_product_batches", lock)
    monkeypatch.setattr(reservation_service, "validate_stock_availability", validate)

    reservation_service.reserve_stock(product_id=product.id, quantity=8)

    assert calls == [("lock", product.id), ("validate", product.id)]


def test_expired_batch_rejected_without_writes(db_session, product, make_batch):
    stale = make_batch(product, 10, expiry=utctoday() - timedelta(days=2))

    with pytest.raises(ExpiredBatchError) as exc_info:
        reservation_service.reserve_stock(product_id=product.id, quantity=1, batch_id=stale.id)

    assert "Batch has expired" in exc_info.value.errors
    assert db_session.query(StockReservation).count() == 0
    assert db_session.query(StockAuditEvent).count() == 0


def test_unknown_reservation_type_rejected(product, make_batch):
    make_batch(product, 10)
    with pytest.raises(ValueError):
        reservation_service.reserve_stock(product_id=product.id, quantity=1, reservation_type="HOLD")


def test_reserve_writes_audit_event(db_session, product, make_batch):
    batch = make_batch(product, 10, expiry=utctoday() + timedelta(days=5))

    reservation_id = reservation_service.reserve_stock(
        product_id=product.id, quantity=2, batch_id=batch.id
    )

    event = db_session.query(StockAuditEvent).one()
    assert event.event_type == AuditEventType.STOCK_RESERVATION.value
    assert event.batch_id == batch.id
    assert event.details["reservation_id"] == reservation_id
    assert event.details["warnings"] == ["Batch expires in 5 days"]


class TestRelease:

    def test_release_restores_availability(self, db_session, product, make_batch):
        make_batch(product, 10)
        reservation_id = reservation_service.reserve_stock(product_id=product.id, quantity=7)

        assert reservation_service.release_reservation(reservation_id) is True

        assert stock_service.get_available_stock(product.id) == 10
        events = [e.event_type for e in db_session.query(StockAuditEvent).all()]
        assert sorted(events) == [AuditEventType.STOCK_RELEASE.value, AuditEventType.STOCK_RESERVATION.value]

    def test_release_is_idempotent(self, product, make_batch):
        make_batch(product, 10)
        reservation_id = reservation_service.reserve_stock(product_id=product.id, quantity=1)

        assert reservation_service.release_reservation(reservation_id) is True
        assert reservation_service.release_reservation(reservation_id) is False

    def test_strict_release_of_unknown_id(self, db_session):
        with pytest.raises(NotFoundError):
            reservation_service.release_reservation("does-not-exist", strict=True)

    def test_release_by_reference(self, db_session, product, make_product, make_batch):
        other = make_product()
        make_batch(product, 10)
        make_batch(other, 10)
        reservation_service.reserve_stock(product_id=product.id, quantity=2, reference_id="SALE-X")
        reservation_service.reserve_stock(product_id=other.id, quantity=2, reference_id="SALE-X")
        keep = reservation_service.reserve_stock(product_id=product.id, quantity=1, reference_id="SALE-Y")

        released = reservation_service.release_reservations_for_reference("SALE-X")
        db_session.commit()

        assert released == 2
        assert [r.id for r in db_session.query(StockReservation).all()] == [keep]


class TestExpiry:

    def test_expired_hold_frees_stock_and_is_cleaned(self, db_session, product, make_batch):
        make_batch(product, 10)
        stale = reservation_service.reserve_stock(product_id=product.id, quantity=6)
        live = reservation_service.reserve_stock(product_id=product.id, quantity=2)
        db_session.get(StockReservation, stale).expires_at = utcnow() - timedelta(seconds=1)
        db_session.commit()

        assert stock_service.get_available_stock(product.id) == 8
        assert [r.id for r in reservation_service.list_reservations(product_id=product.id)] == [live]

        removed = reservation_service.cleanup_expired_reservations()

        assert removed == 1
        assert db_session.query(StockReservation).count() == 1
        assert reservation_service.cleanup_expired_reservations() == 0
