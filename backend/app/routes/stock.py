# backend/app/routes/stock.py
"""
Stock management routes.

SECURITY: All routes require authentication.
- Read operations require read:inventory
- Reservations and stock operations require update:inventory
- Cleanup requires manage:stock

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- Expiry is compared by calendar date (UTC).
"""
from flask import Blueprint, current_app, g, request, jsonify

from app.time_utils import parse_iso_datetime
from ..errors import StockError
from ..permissions import MANAGE_STOCK, READ_INVENTORY, UPDATE_INVENTORY
from ..validation import (
    ValidationError,
    validate_reservation,
    validate_stock_check,
    validate_stock_operation,
)
from ..decorators import require_auth, require_permission
from ..services import audit_service, reservation_service, stock_service
from ..services.batch_allocator import allocate_fifo


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _client_context() -> dict:
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


def _error(e: StockError):
    return jsonify({"error": str(e), "details": e.details}), e.http_status


def _query_int(name: str, default: int | None = None) -> int | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _query_limit(default: int, ceiling: int) -> int:
    limit = _query_int("limit", default)
    if limit < 1:
        raise ValidationError("limit must be a positive integer")
    return min(limit, ceiling)


def _query_datetime(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


@stock_bp.get("/summary/<int:product_id>")
@require_auth
@require_permission(READ_INVENTORY)
def stock_summary_route(product_id: int):
    try:
        return jsonify(stock_service.get_stock_summary(product_id))
    except StockError as e:
        return _error(e)


@stock_bp.get("/available/<int:product_id>")
@require_auth
@require_permission(READ_INVENTORY)
def available_stock_route(product_id: int):
    try:
        branch_id = _query_int("branch_id")
        available = stock_service.get_available_stock(product_id, branch_id)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except StockError as e:
        return _error(e)
    return jsonify({"product_id": product_id, "available_quantity": available})


@stock_bp.post("/validate")
@require_auth
@require_permission(READ_INVENTORY)
def validate_stock_route():
    """Pre-check only; always 200 with {is_valid, errors, warnings} for well-formed input."""
    try:
        patch = validate_stock_check(request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    result = stock_service.validate_stock_availability(
        patch["product_id"], patch["quantity"], patch.get("batch_id")
    )
    return jsonify(result.to_dict())


@stock_bp.post("/reserve")
@require_auth
@require_permission(UPDATE_INVENTORY)
def reserve_stock_route():
    try:
        patch = validate_reservation(request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    if "reservation_type" not in patch or patch["reservation_type"] is None:
        patch.pop("reservation_type", None)

    try:
        reservation_id = reservation_service.reserve_stock(
            user_id=g.current_user.id,
            **patch,
            **_client_context(),
        )
    except StockError as e:
        current_app.logger.info("Reservation rejected: %s", e)
        return _error(e)

    return jsonify({"reservation_id": reservation_id}), 201


@stock_bp.delete("/reserve/<reservation_id>")
@require_auth
@require_permission(UPDATE_INVENTORY)
def release_reservation_route(reservation_id: str):
    released = reservation_service.release_reservation(reservation_id, user_id=g.current_user.id)
    return jsonify({"reservation_id": reservation_id, "released": released})


@stock_bp.post("/execute")
@require_auth
@require_permission(UPDATE_INVENTORY)
def execute_stock_operation_route():
    """
    Apply a SALE, PURCHASE, ADJUSTMENT or TRANSFER to batch stock.

    Subtractions are checked against batch quantities only. Open reservations
    are not deducted here, so a direct SALE or TRANSFER can consume units a
    pending sale is holding. Use /validate first when holds must be honoured.
    """
    try:
        patch = validate_stock_operation(request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        operation_id = stock_service.execute_stock_operation(
            user_id=g.current_user.id,
            **patch,
            **_client_context(),
        )
    except StockError as e:
        current_app.logger.info("Stock operation rejected: %s", e)
        return _error(e)
    except Exception:
        current_app.logger.exception("Stock operation failed")
        return jsonify({"error": "Internal server error"}), 500

    operation = audit_service.get_operation(operation_id)
    return jsonify({"operation_id": operation_id, "operation": operation.to_dict()}), 201


@stock_bp.get("/fifo/<int:product_id>")
@require_auth
@require_permission(READ_INVENTORY)
def fifo_plan_route(product_id: int):
    """Preview the FIFO allocation for a quantity without touching stock."""
    try:
        quantity = _query_int("quantity")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    if quantity is None or quantity <= 0:
        return jsonify({"error": "quantity must be > 0"}), 400

    try:
        plan = allocate_fifo(product_id, quantity)
    except StockError as e:
        return _error(e)

    return jsonify({
        "product_id": product_id,
        "quantity": quantity,
        "allocations": [step.to_dict() for step in plan],
    })


@stock_bp.get("/history")
@require_auth
@require_permission(READ_INVENTORY)
def stock_history_route():
    try:
        movements = audit_service.get_stock_history(
            product_id=_query_int("product_id"),
            batch_id=_query_int("batch_id"),
            movement_type=request.args.get("movement_type") or None,
            date_from=_query_datetime("date_from"),
            date_to=_query_datetime("date_to"),
            limit=_query_limit(100, 500),
        )
    except (ValidationError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"movements": [m.to_dict() for m in movements]})


@stock_bp.get("/operations/<operation_id>")
@require_auth
@require_permission(READ_INVENTORY)
def get_operation_route(operation_id: str):
    try:
        operation = audit_service.get_operation(operation_id)
    except StockError as e:
        return _error(e)
    return jsonify({
        "operation": operation.to_dict(),
        "movements": [m.to_dict() for m in operation.movements],
    })


@stock_bp.get("/expiring")
@require_auth
@require_permission(READ_INVENTORY)
def expiring_batches_route():
    try:
        days = _query_int("days", current_app.config.get("EXPIRY_WARNING_DAYS", 30))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    batches = stock_service.get_expiring_batches(days)
    return jsonify({"days": days, "batches": [b.to_dict() for b in batches]})


@stock_bp.get("/expired")
@require_auth
@require_permission(READ_INVENTORY)
def expired_batches_route():
    batches = stock_service.get_expired_batches()
    return jsonify({"batches": [b.to_dict() for b in batches]})


@stock_bp.get("/low-stock")
@require_auth
@require_permission(READ_INVENTORY)
def low_stock_route():
    return jsonify({"products": stock_service.get_low_stock_products()})


@stock_bp.get("/audit/<int:product_id>")
@require_auth
@require_permission(READ_INVENTORY)
def product_audit_route(product_id: int):
    try:
        events = audit_service.get_product_audit_trail(
            product_id,
            event_type=request.args.get("event_type") or None,
            user_id=_query_int("user_id"),
            date_from=_query_datetime("date_from"),
            date_to=_query_datetime("date_to"),
            limit=_query_limit(100, 500),
        )
        summary = audit_service.get_stock_movement_summary(
            product_id,
            date_from=_query_datetime("date_from"),
            date_to=_query_datetime("date_to"),
        )
    except (ValidationError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"events": [e.to_dict() for e in events], "summary": summary})


@stock_bp.post("/cleanup")
@require_auth
@require_permission(MANAGE_STOCK)
def cleanup_route():
    removed = reservation_service.cleanup_expired_reservations()
    return jsonify({"expired_reservations_removed": removed})
