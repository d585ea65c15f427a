"""
HTTP surface: authentication, permission checks, and error mapping.

Verifies:
- Missing/invalid/revoked tokens get 401
- Pharmacists cannot call manage:stock endpoints (403)
- Domain errors map to 4xx with a structured body; no stock changes on failure
"""

from datetime import timedelta

import pytest

from app.models import Batch, Sale, SaleStatus, StockReservation
from app.permissions import MANAGE_STOCK, READ_INVENTORY, get_role_permissions, has_permission
from app.services import session_service
from app.time_utils import utctoday


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _qty(db_session, batch_id):
    db_session.expire_all()
    return db_session.get(Batch, batch_id).current_quantity


class TestAuthentication:

    def test_missing_token(self, client, db_session, product):
        response = client.get(f"/api/stock/available/{product.id}")
        assert response.status_code == 401
        assert response.get_json()["error"] == "Authentication required"

    def test_unknown_token(self, client, db_session, product):
        response = client.get(f"/api/stock/available/{product.id}", headers=auth_headers("bogus"))
        assert response.status_code == 401
        assert response.get_json()["error"] == "Invalid or expired token"

    def test_revoked_token(self, client, db_session, pharmacist, product):
        _, token = session_service.create_session(pharmacist.id)
        assert session_service.revoke_session(token) is True

        response = client.get(f"/api/stock/available/{product.id}", headers=auth_headers(token))
        assert response.status_code == 401

    def test_expired_token(self, client, db_session, pharmacist, product):
        _, token = session_service.create_session(pharmacist.id, ttl=timedelta(seconds=-1))

        response = client.get(f"/api/stock/available/{product.id}", headers=auth_headers(token))
        assert response.status_code == 401

    def test_deactivated_user(self, client, db_session, pharmacist, pharmacist_headers, product):
        pharmacist.is_active = False
        db_session.commit()

        response = client.get(f"/api/stock/available/{product.id}", headers=pharmacist_headers)
        assert response.status_code == 401


class TestPermissions:

    def test_admin_role_extends_pharmacist(self):
        assert get_role_permissions("PHARMACIST") < get_role_permissions("ADMIN")
        assert has_permission("ADMIN", MANAGE_STOCK)
        assert not has_permission("PHARMACIST", MANAGE_STOCK)
        assert not has_permission(None, READ_INVENTORY)

    def test_pharmacist_cannot_cleanup(self, client, pharmacist_headers):
        response = client.post("/api/stock/cleanup", headers=pharmacist_headers)
        assert response.status_code == 403
        assert response.get_json()["required_permission"] == "manage:stock"

    def test_pharmacist_cannot_delete_batch(self, client, pharmacist_headers, product, make_batch):
        batch = make_batch(product, 0)
        response = client.delete(f"/api/batches/{batch.id}", headers=pharmacist_headers)
        assert response.status_code == 403

    def test_admin_can_cleanup(self, client, admin_headers):
        response = client.post("/api/stock/cleanup", headers=admin_headers)
        assert response.status_code == 200
        assert response.get_json() == {"expired_reservations_removed": 0}


class TestStockRoutes:

    def test_execute_sale(self, client, db_session, pharmacist, pharmacist_headers, product, make_batch):
        batch = make_batch(product, 10)

        response = client.post(
            "/api/stock/execute",
            json={"product_id": product.id, "quantity": 4, "operation_type": "sale", "reason": "Walk-in"},
            headers=pharmacist_headers,
        )

        assert response.status_code == 201
        body = response.get_json()
        assert body["operation"]["quantity_change"] == -4
        assert body["operation"]["user_id"] == pharmacist.id
        assert _qty(db_session, batch.id) == 6

        detail = client.get(f"/api/stock/operations/{body['operation_id']}", headers=pharmacist_headers)
        assert detail.status_code == 200
        assert [m["quantity"] for m in detail.get_json()["movements"]] == [4]

    def test_execute_insufficient_is_409(self, client, db_session, pharmacist_headers, product, make_batch):
        batch = make_batch(product, 3)

        response = client.post(
            "/api/stock/execute",
            json={"product_id": product.id, "quantity": 4, "operation_type": "SALE"},
            headers=pharmacist_headers,
        )

        assert response.status_code == 409
        body = response.get_json()
        assert body["details"]["available"] == 3
        assert body["details"]["required"] == 4
        assert _qty(db_session, batch.id) == 3

    def test_execute_rejects_bad_payload(self, client, pharmacist_headers, product):
        missing_type = client.post(
            "/api/stock/execute", json={"product_id": product.id, "quantity": 1}, headers=pharmacist_headers
        )
        decimal_qty = client.post(
            "/api/stock/execute",
            json={"product_id": product.id, "quantity": 1.5, "operation_type": "SALE"},
            headers=pharmacist_headers,
        )
        extra_field = client.post(
            "/api/stock/execute",
            json={"product_id": product.id, "quantity": 1, "operation_type": "SALE", "branch_id": 2},
            headers=pharmacist_headers,
        )

        assert missing_type.status_code == 400
        assert decimal_qty.status_code == 400
        assert extra_field.status_code == 400

    def test_execute_unknown_product_is_404(self, client, pharmacist_headers):
        response = client.post(
            "/api/stock/execute",
            json={"product_id": 99999, "quantity": 1, "operation_type": "SALE"},
            headers=pharmacist_headers,
        )
        assert response.status_code == 404

    def test_reserve_and_release(self, client, db_session, pharmacist_headers, product, make_batch):
        make_batch(product, 10)

        reserved = client.post(
            "/api/stock/reserve",
            json={"product_id": product.id, "quantity": 3, "reservation_type": "sale", "reference_id": "CART-9"},
            headers=pharmacist_headers,
        )
        assert reserved.status_code == 201
        reservation_id = reserved.get_json()["reservation_id"]

        available = client.get(f"/api/stock/available/{product.id}", headers=pharmacist_headers)
        assert available.get_json()["available_quantity"] == 7

        released = client.delete(f"/api/stock/reserve/{reservation_id}", headers=pharmacist_headers)
        again = client.delete(f"/api/stock/reserve/{reservation_id}", headers=pharmacist_headers)

        assert released.get_json()["released"] is True
        assert again.get_json()["released"] is False
        db_session.expire_all()
        assert db_session.query(StockReservation).count() == 0

    def test_reserve_expired_batch(self, client, pharmacist_headers, product, make_batch):
        stale = make_batch(product, 10, expiry=utctoday() - timedelta(days=1))

        response = client.post(
            "/api/stock/reserve",
            json={"product_id": product.id, "batch_id": stale.id, "quantity": 1},
            headers=pharmacist_headers,
        )

        assert response.status_code == 400
        assert "Batch has expired" in response.get_json()["details"]["errors"]

    def test_validate_reports_without_failing(self, client, pharmacist_headers, product, make_batch):
        make_batch(product, 2)

        response = client.post(
            "/api/stock/validate",
            json={"product_id": product.id, "quantity": 5},
            headers=pharmacist_headers,
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["is_valid"] is False
        assert body["errors"] == ["Insufficient stock. Available: 2, Required: 5"]

    def test_branch_scope_rejected(self, client, pharmacist_headers, product):
        response = client.get(f"/api/stock/available/{product.id}?branch_id=3", headers=pharmacist_headers)
        assert response.status_code == 400

    def test_fifo_preview(self, client, db_session, pharmacist_headers, product, make_batch):
        first = make_batch(product, 5, expiry=utctoday() + timedelta(days=20))
        second = make_batch(product, 10, expiry=utctoday() + timedelta(days=90))

        response = client.get(f"/api/stock/fifo/{product.id}?quantity=8", headers=pharmacist_headers)

        assert response.status_code == 200
        allocations = response.get_json()["allocations"]
        assert [(a["batch_id"], a["allocated_quantity"]) for a in allocations] == [(first.id, 5), (second.id, 3)]
        assert _qty(db_session, first.id) == 5

    def test_fifo_requires_quantity(self, client, pharmacist_headers, product):
        response = client.get(f"/api/stock/fifo/{product.id}", headers=pharmacist_headers)
        assert response.status_code == 400

    def test_read_queries(self, client, pharmacist_headers, product, make_batch):
        make_batch(product, 4, expiry=utctoday() + timedelta(days=3))

        summary = client.get(f"/api/stock/summary/{product.id}", headers=pharmacist_headers).get_json()
        expiring = client.get("/api/stock/expiring?days=7", headers=pharmacist_headers).get_json()
        expired = client.get("/api/stock/expired", headers=pharmacist_headers).get_json()
        low = client.get("/api/stock/low-stock", headers=pharmacist_headers).get_json()

        assert summary["available_quantity"] == 4
        assert summary["is_low_stock"] is True
        assert len(expiring["batches"]) == 1
        assert expired["batches"] == []
        assert [p["product_id"] for p in low["products"]] == [product.id]

    def test_history_and_audit(self, client, pharmacist_headers, product, make_batch):
        make_batch(product, 10)
        client.post(
            "/api/stock/execute",
            json={"product_id": product.id, "quantity": 2, "operation_type": "SALE"},
            headers=pharmacist_headers,
        )

        history = client.get(
            f"/api/stock/history?product_id={product.id}&movement_type=OUT", headers=pharmacist_headers
        )
        audit = client.get(f"/api/stock/audit/{product.id}", headers=pharmacist_headers)
        bad = client.get("/api/stock/history?movement_type=SIDEWAYS", headers=pharmacist_headers)

        assert [m["quantity"] for m in history.get_json()["movements"]] == [2]
        assert audit.get_json()["summary"]["total_out"] == 2
        assert len(audit.get_json()["events"]) == 1
        assert bad.status_code == 400

    def test_summary_for_missing_product(self, client, pharmacist_headers):
        response = client.get("/api/stock/summary/4040", headers=pharmacist_headers)
        assert response.status_code == 404

    @pytest.mark.parametrize("path", ["/api/stock/history", "/api/stock/audit/{product_id}"])
    @pytest.mark.parametrize("limit", ["-1", "0"])
    def test_limit_must_be_positive(self, client, pharmacist_headers, product, path, limit):
        url = path.format(product_id=product.id)
        response = client.get(f"{url}?limit={limit}", headers=pharmacist_headers)

        assert response.status_code == 400
        assert response.get_json()["error"] == "limit must be a positive integer"

    def test_history_limit_is_capped(self, client, pharmacist_headers, product, make_batch):
        make_batch(product, 10)
        for _ in range(3):
            client.post(
                "/api/stock/execute",
                json={"product_id": product.id, "quantity": 1, "operation_type": "SALE"},
                headers=pharmacist_headers,
            )

        one = client.get("/api/stock/history?limit=1", headers=pharmacist_headers)
        huge = client.get("/api/stock/history?limit=100000", headers=pharmacist_headers)

        assert len(one.get_json()["movements"]) == 1
        assert len(huge.get_json()["movements"]) == 3

    def test_execute_ignores_other_holds(self, client, db_session, pharmacist_headers, product, make_batch):
        batch = make_batch(product, 5)
        client.post(
            "/api/stock/reserve",
            json={"product_id": product.id, "quantity": 4, "reference_id": "SALE-HOLD"},
            headers=pharmacist_headers,
        )

        response = client.post(
            "/api/stock/execute",
            json={"product_id": product.id, "quantity": 5, "operation_type": "SALE"},
            headers=pharmacist_headers,
        )

        assert response.status_code == 201
        assert _qty(db_session, batch.id) == 0
        available = client.get(f"/api/stock/available/{product.id}", headers=pharmacist_headers)
        assert available.get_json()["available_quantity"] == 0


class TestBatchRoutes:

    def test_receive_get_and_delete(self, client, db_session, pharmacist_headers, admin_headers, product):
        response = client.post(
            "/api/batches/",
            json={
                "product_id": product.id,
                "batch_number": "PCM-2611",
                "manufacturing_date": (utctoday() - timedelta(days=60)).isoformat(),
                "expiry_date": (utctoday() + timedelta(days=10)).isoformat(),
                "initial_quantity": 12,
                "cost_price_cents": 90,
            },
            headers=pharmacist_headers,
        )
        assert response.status_code == 201
        batch_id = response.get_json()["batch"]["id"]

        fetched = client.get(f"/api/batches/{batch_id}", headers=pharmacist_headers).get_json()["batch"]
        assert fetched["current_quantity"] == 12
        assert fetched["days_until_expiry"] == 10

        refused = client.delete(f"/api/batches/{batch_id}", headers=admin_headers)
        assert refused.status_code == 400

        client.post(
            "/api/stock/execute",
            json={"product_id": product.id, "quantity": 12, "operation_type": "SALE"},
            headers=pharmacist_headers,
        )
        deleted = client.delete(f"/api/batches/{batch_id}", headers=admin_headers)
        assert deleted.status_code == 200
        assert deleted.get_json()["batch"]["is_active"] is False

    def test_receive_rejects_bad_dates(self, client, pharmacist_headers, product):
        response = client.post(
            "/api/batches/",
            json={
                "product_id": product.id,
                "batch_number": "BAD-1",
                "manufacturing_date": "2026-05-01",
                "expiry_date": "2026-04-01",
                "initial_quantity": 1,
            },
            headers=pharmacist_headers,
        )
        assert response.status_code == 400

    def test_missing_batch(self, client, pharmacist_headers):
        assert client.get("/api/batches/8080", headers=pharmacist_headers).status_code == 404


class TestSaleRoutes:

    def _create(self, client, headers, product, quantity=2, **extra):
        return client.post(
            "/api/sales/",
            json={"items": [{"product_id": product.id, "quantity": quantity}], **extra},
            headers=headers,
        )

    def test_create_and_complete(self, client, db_session, pharmacist, pharmacist_headers, product, make_batch):
        batch = make_batch(product, 10)

        created = self._create(client, pharmacist_headers, product)
        assert created.status_code == 201
        sale = created.get_json()["sale"]
        assert sale["status"] == SaleStatus.PENDING.value
        assert sale["total_cents"] == 1120
        assert sale["cashier_id"] == pharmacist.id

        completed = client.post(f"/api/sales/{sale['id']}/complete", headers=pharmacist_headers)
        assert completed.status_code == 200
        assert completed.get_json()["sale"]["status"] == SaleStatus.COMPLETED.value
        assert _qty(db_session, batch.id) == 8

        again = client.post(f"/api/sales/{sale['id']}/complete", headers=pharmacist_headers)
        assert again.status_code == 409
        assert _qty(db_session, batch.id) == 8

        detail = client.get(f"/api/sales/{sale['id']}", headers=pharmacist_headers).get_json()["sale"]
        assert [entry["action"] for entry in detail["audit_log"]] == ["CREATED", "COMPLETED"]

        by_number = client.get(f"/api/sales/number/{sale['sale_number']}", headers=pharmacist_headers)
        assert by_number.get_json()["sale"]["id"] == sale["id"]

    def test_complete_without_stock_is_409(self, client, db_session, pharmacist_headers, product, make_batch):
        batch = make_batch(product, 1)
        sale = self._create(client, pharmacist_headers, product, quantity=5).get_json()["sale"]

        response = client.post(f"/api/sales/{sale['id']}/complete", headers=pharmacist_headers)

        assert response.status_code == 409
        assert _qty(db_session, batch.id) == 1
        assert db_session.get(Sale, sale["id"]).status == SaleStatus.PENDING.value

    def test_cancel_requires_reason(self, client, pharmacist_headers, product):
        sale = self._create(client, pharmacist_headers, product).get_json()["sale"]

        missing = client.post(f"/api/sales/{sale['id']}/cancel", json={}, headers=pharmacist_headers)
        cancelled = client.post(
            f"/api/sales/{sale['id']}/cancel", json={"reason": "Wrong item"}, headers=pharmacist_headers
        )

        assert missing.status_code == 400
        assert cancelled.status_code == 200
        assert cancelled.get_json()["sale"]["status"] == SaleStatus.CANCELLED.value

    def test_draft_submit(self, client, pharmacist_headers, product):
        sale = self._create(client, pharmacist_headers, product, as_draft=True).get_json()["sale"]
        assert sale["status"] == SaleStatus.DRAFT.value

        submitted = client.post(f"/api/sales/{sale['id']}/submit", headers=pharmacist_headers)
        assert submitted.get_json()["sale"]["status"] == SaleStatus.PENDING.value

    def test_list_with_filters(self, client, pharmacist_headers, product):
        self._create(client, pharmacist_headers, product)
        self._create(client, pharmacist_headers, product, as_draft=True)

        everything = client.get("/api/sales/?limit=1", headers=pharmacist_headers).get_json()
        drafts = client.get("/api/sales/?status=draft", headers=pharmacist_headers).get_json()
        invalid = client.get("/api/sales/?status=LOST", headers=pharmacist_headers)

        assert everything["total"] == 2
        assert len(everything["sales"]) == 1
        assert drafts["total"] == 1
        assert invalid.status_code == 400

    def test_list_rejects_non_positive_limit(self, client, pharmacist_headers):
        response = client.get("/api/sales/?limit=-1", headers=pharmacist_headers)
        assert response.status_code == 400

    def test_invalid_items(self, client, pharmacist_headers, product):
        response = client.post(
            "/api/sales/",
            json={"items": [{"product_id": product.id, "quantity": 0}]},
            headers=pharmacist_headers,
        )
        assert response.status_code == 400
        assert response.get_json()["error"].startswith("items[0]:")

    def test_missing_sale(self, client, pharmacist_headers):
        assert client.get("/api/sales/777", headers=pharmacist_headers).status_code == 404


def test_health(client, db_session):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["checks"]["database"]["status"] == "healthy"
