# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/app/routes/sales.py
"""Sales API routes with permission enforcement"""

from flask import Blueprint, request, jsonify, g
from flask import current_app

from app.time_utils import parse_iso_datetime
from ..errors import StockError
from ..models import SaleStatus
from ..permissions import CREATE_SALES, READ_SALES, UPDATE_SALES
from ..services import sales_service
from ..validation import ValidationError, validate_sale_items
from ..decorators import require_auth, require_permission


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _client_context() -> dict:
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


@sales_bp.post("/")
@require_auth
@require_permission(CREATE_SALES)
def create_sale_route():
    """
    Create a sale (PENDING, or DRAFT with "as_draft": true).

    Body: {items: [...], customer?: {...}, payment_method?, discount_cents?,
    notes?, prescription_id?}
    """
    data = request.get_json(silent=True) or {}
    try:
        items = validate_sale_items(data.get("items"))
        customer = data.get("customer")
        if customer is not None and not isinstance(customer, dict):
            raise ValidationError("customer must be an object")
        discount = data.get("discount_cents", 0)
        if isinstance(discount, bool) or not isinstance(discount, int):
            raise ValidationError("discount_cents must be an integer")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        sale = sales_service.create_sale(
            items=items,
            cashier_id=g.current_user.id,
            customer=customer,
            payment_method=str(data.get("payment_method") or "CASH").upper(),
            discount_cents=discount,
            notes=data.get("notes"),
            prescription_id=data.get("prescription_id"),
            as_draft=bool(data.get("as_draft", False)),
            **_client_context(),
        )
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"sale": sale.to_dict()}), 201


@sales_bp.get("/")
@require_auth
@require_permission(READ_SALES)
def list_sales_route():
    status = request.args.get("status")
    try:
        if status and status.upper() not in {s.value for s in SaleStatus}:
            raise ValidationError(f"Invalid status: {status}")
        limit = int(request.args.get("limit", 50))
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        limit = min(limit, 200)
        offset = max(int(request.args.get("offset", 0)), 0)
        cashier_id = request.args.get("cashier_id", type=int)
        customer_id = request.args.get("customer_id", type=int)
        date_from = parse_iso_datetime(request.args.get("date_from"))
        date_to = parse_iso_datetime(request.args.get("date_to"))
    except (ValidationError, ValueError) as e:
        return jsonify({"error": str(e)}), 400

    sales, total = sales_service.list_sales(
        status=status.upper() if status else None,
        cashier_id=cashier_id,
        customer_id=customer_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "sales": [s.to_dict(include_items=False) for s in sales],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@sales_bp.get("/<int:sale_id>")
@require_auth
@require_permission(READ_SALES)
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status

    data = sale.to_dict()
    data["audit_log"] = [entry.to_dict() for entry in sales_service.get_sale_audit_log(sale_id)]
    return jsonify({"sale": data})


@sales_bp.get("/number/<sale_number>")
@require_auth
@require_permission(READ_SALES)
def get_sale_by_number_route(sale_number: str):
    try:
        sale = sales_service.get_sale_by_number(sale_number)
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status
    return jsonify({"sale": sale.to_dict()})


@sales_bp.post("/<int:sale_id>/submit")
@require_auth
@require_permission(UPDATE_SALES)
def submit_sale_route(sale_id: int):
    try:
        sale = sales_service.submit_sale(sale_id, user_id=g.current_user.id, **_client_context())
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status
    return jsonify({"sale": sale.to_dict()})


@sales_bp.post("/<int:sale_id>/complete")
@require_auth
@require_permission(UPDATE_SALES)
def complete_sale_route(sale_id: int):
    """
    Complete a PENDING sale: deduct stock for every item and settle payments.

    Any item failure leaves the sale PENDING with stock untouched.
    """
    try:
        sale = sales_service.complete_sale(sale_id, user_id=g.current_user.id, **_client_context())
    except StockError as e:
        current_app.logger.info("Sale %s completion rejected: %s", sale_id, e)
        return jsonify({"error": str(e), "details": e.details}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to complete sale")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"sale": sale.to_dict()})


@sales_bp.post("/<int:sale_id>/cancel")
@require_auth
@require_permission(UPDATE_SALES)
def cancel_sale_route(sale_id: int):
    data = request.get_json(silent=True) or {}
    reason = data.get("reason")
    if not reason or not isinstance(reason, str):
        return jsonify({"error": "reason is required"}), 400

    try:
        sale = sales_service.cancel_sale(
            sale_id, reason=reason, user_id=g.current_user.id, **_client_context()
        )
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status
    return jsonify({"sale": sale.to_dict()})
