"""
FIFO-by-expiry batch allocation.

Verifies:
- Earliest-expiring batch is consumed first, ties broken by receipt order
- Inactive and empty batches are skipped
- Shortfall raises InsufficientStockError with no partial plan
- Allocation never mutates batch quantities
"""

from datetime import date, timedelta

import pytest

from app.errors import InsufficientStockError
from app.services.batch_allocator import allocate_fifo, plan_allocation
from app.time_utils import utctoday


class TestFifoOrdering:

    def test_earliest_expiry_consumed_first(self, product, make_batch):
        b1 = make_batch(product, 5, expiry=date(2025, 1, 1))
        b2 = make_batch(product, 10, expiry=date(2025, 6, 1))

        plan = allocate_fifo(product.id, 8)

        assert [(step.batch_id, step.quantity) for step in plan] == [(b1.id, 5), (b2.id, 3)]

    def test_order_is_by_expiry_not_insertion(self, product, make_batch):
        later = make_batch(product, 10, expiry=utctoday() + timedelta(days=200))
        sooner = make_batch(product, 4, expiry=utctoday() + timedelta(days=40))

        plan = allocate_fifo(product.id, 6)

        assert [(step.batch_id, step.quantity) for step in plan] == [(sooner.id, 4), (later.id, 2)]

    def test_same_expiry_falls_back_to_receipt_order(self, product, make_batch):
        expiry = utctoday() + timedelta(days=90)
        first = make_batch(product, 3, expiry=expiry)
        second = make_batch(product, 3, expiry=expiry)

        plan = allocate_fifo(product.id, 4)

        assert [step.batch_id for step in plan] == [first.id, second.id]

    def test_single_batch_covers_request(self, product, make_batch):
        b1 = make_batch(product, 20)
        make_batch(product, 20, expiry=utctoday() + timedelta(days=500))

        plan = allocate_fifo(product.id, 20)

        assert len(plan) == 1
        assert plan[0].batch_id == b1.id
        assert plan[0].quantity == 20


class TestEligibility:

    def test_inactive_and_empty_batches_skipped(self, product, make_batch):
        make_batch(product, 10, expiry=utctoday() + timedelta(days=10), is_active=False)
        make_batch(product, 0, expiry=utctoday() + timedelta(days=20))
        live = make_batch(product, 7, expiry=utctoday() + timedelta(days=30))

        plan = allocate_fifo(product.id, 5)

        assert [(step.batch_id, step.quantity) for step in plan] == [(live.id, 5)]

    def test_skip_expired_as_of(self, product, make_batch):
        make_batch(product, 10, expiry=utctoday() - timedelta(days=1))
        fresh = make_batch(product, 10, expiry=utctoday() + timedelta(days=100))

        plan = allocate_fifo(product.id, 5, skip_expired_as_of=utctoday())

        assert [step.batch_id for step in plan] == [fresh.id]


class TestShortfall:

    def test_insufficient_raises_with_totals(self, product, make_batch):
        make_batch(product, 5)
        make_batch(product, 10, expiry=utctoday() + timedelta(days=400))

        with pytest.raises(InsufficientStockError) as exc_info:
            allocate_fifo(product.id, 16)

        assert exc_info.value.available == 15
        assert exc_info.value.required == 16
        assert "Available: 15, Required: 16" in str(exc_info.value)

    def test_no_batches(self, product):
        with pytest.raises(InsufficientStockError) as exc_info:
            allocate_fifo(product.id, 1)
        assert exc_info.value.available == 0

    def test_non_positive_quantity_rejected(self):
        with pytest.raises(ValueError):
            plan_allocation([], 0)

    def test_allocation_is_read_only(self, db_session, product, make_batch):
        b1 = make_batch(product, 5)

        allocate_fifo(product.id, 3)
        db_session.expire_all()

        assert db_session.get(type(b1), b1.id).current_quantity == 5
