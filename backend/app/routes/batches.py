# backend/app/routes/batches.py
"""
Batch receipt routes.

SECURITY: All routes require authentication.
- Viewing requires read:inventory
- Receiving requires update:inventory
- Soft delete requires manage:stock
"""
from flask import Blueprint, current_app, g, request, jsonify

from ..errors import StockError
from ..permissions import MANAGE_STOCK, READ_INVENTORY, UPDATE_INVENTORY
from ..validation import ValidationError, validate_batch_receive
from ..decorators import require_auth, require_permission
from ..services import batch_service
from app.time_utils import days_until


batches_bp = Blueprint("batches", __name__, url_prefix="/api/batches")


@batches_bp.post("/")
@require_auth
@require_permission(UPDATE_INVENTORY)
def receive_batch_route():
    """
    Receive a new batch of a product.

    Writes the batch, a PURCHASE stock operation, and an IN movement atomically.
    """
    try:
        patch = validate_batch_receive(request.get_json(silent=True) or {})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    quantity = patch.pop("initial_quantity")
    try:
        batch = batch_service.receive_batch(
            quantity=quantity,
            user_id=g.current_user.id,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
            **patch,
        )
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to receive batch")
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info(
        "Batch %s received for product %s (%s units)", batch.batch_number, batch.product_id, quantity
    )
    return jsonify({"batch": batch.to_dict()}), 201


@batches_bp.get("/<int:batch_id>")
@require_auth
@require_permission(READ_INVENTORY)
def get_batch_route(batch_id: int):
    try:
        batch = batch_service.get_batch(batch_id)
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status

    data = batch.to_dict()
    data["days_until_expiry"] = days_until(batch.expiry_date)
    return jsonify({"batch": data})


@batches_bp.delete("/<int:batch_id>")
@require_auth
@require_permission(MANAGE_STOCK)
def deactivate_batch_route(batch_id: int):
    """Soft delete; refused while the batch still holds stock."""
    try:
        batch = batch_service.deactivate_batch(batch_id)
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), e.http_status
    return jsonify({"batch": batch.to_dict()})
