from __future__ import annotations
from datetime import date, datetime
from app.time_utils import parse_iso_date, parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Date, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .models import Batch, OperationType, ReservationType, SaleItem, StockMovement, StockReservation


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Calendar dates (YYYY-MM-DD)
    if isinstance(coltype, Date):
        if isinstance(value, date) and not isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                d = parse_iso_date(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 date (YYYY-MM-DD)")
            if d is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 date (YYYY-MM-DD)")
            return d
        raise ValidationError(f"{col.key} must be a date")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


# =============================================================================
# Policies
# =============================================================================

BATCH_RECEIVE_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id", "supplier_id", "batch_number", "lot_number",
        "manufacturing_date", "expiry_date", "initial_quantity",
        "cost_price_cents", "notes",
    },
    required_on_create={"product_id", "batch_number", "manufacturing_date", "expiry_date", "initial_quantity"},
)

STOCK_CHECK_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "batch_id", "quantity"},
    required_on_create={"product_id", "quantity"},
)

RESERVATION_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "batch_id", "quantity", "reservation_type", "reference_id", "expires_at"},
    required_on_create={"product_id", "quantity"},
)

STOCK_OPERATION_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "batch_id", "quantity", "reason", "reference_id"},
    required_on_create={"product_id", "quantity"},
)

SALE_ITEM_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "batch_id", "quantity", "unit_price_cents", "discount_cents"},
    required_on_create={"product_id", "quantity"},
)


def _require_positive(patch: dict, key: str) -> None:
    value = patch.get(key)
    if value is None or value <= 0:
        raise ValidationError(f"{key} must be > 0")


def enforce_rules_batch_receive(patch: dict) -> None:
    _require_positive(patch, "initial_quantity")

    cost = patch.get("cost_price_cents")
    if cost is not None:
        if cost < 0:
            raise ValidationError("cost_price_cents must be >= 0")
        if cost > MAX_PRICE_CENTS:
            raise ValidationError(f"cost_price_cents cannot exceed {MAX_PRICE_CENTS}")

    if patch["expiry_date"] <= patch["manufacturing_date"]:
        raise ValidationError("expiry_date must be after manufacturing_date")


def validate_batch_receive(payload: dict) -> dict:
    patch = validate_payload(model=Batch, payload=payload, policy=BATCH_RECEIVE_POLICY, partial=False)
    enforce_rules_batch_receive(patch)
    return patch


def validate_stock_check(payload: dict) -> dict:
    # Quantity sign is reported by the availability check, not rejected here.
    return validate_payload(model=StockReservation, payload=payload, policy=STOCK_CHECK_POLICY, partial=False)


def validate_reservation(payload: dict) -> dict:
    patch = validate_payload(model=StockReservation, payload=payload, policy=RESERVATION_POLICY, partial=False)
    _require_positive(patch, "quantity")
    if patch.get("reservation_type") is not None:
        try:
            patch["reservation_type"] = ReservationType(patch["reservation_type"].upper())
        except ValueError:
            raise ValidationError(f"Invalid reservation_type: {patch['reservation_type']}")
    return patch


def validate_stock_operation(payload: dict) -> dict:
    """Validate an execute request; operation_type is checked against OperationType."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    raw_type = payload.pop("operation_type", None)
    if not raw_type or not isinstance(raw_type, str):
        raise ValidationError("operation_type is required")
    try:
        op_type = OperationType(raw_type.strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid operation_type: {raw_type}")

    patch = validate_payload(model=StockMovement, payload=payload, policy=STOCK_OPERATION_POLICY, partial=False)
    _require_positive(patch, "quantity")
    patch["operation_type"] = op_type
    return patch


def validate_sale_items(raw_items) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    items = []
    for i, raw in enumerate(raw_items):
        try:
            patch = validate_payload(model=SaleItem, payload=raw, policy=SALE_ITEM_POLICY, partial=False)
        except ValidationError as e:
            raise ValidationError(f"items[{i}]: {e}")
        if patch.get("quantity") is None or patch["quantity"] <= 0:
            raise ValidationError(f"items[{i}]: quantity must be > 0")
        if patch.get("unit_price_cents") is not None and patch["unit_price_cents"] > MAX_PRICE_CENTS:
            raise ValidationError(f"items[{i}]: unit_price_cents cannot exceed {MAX_PRICE_CENTS}")
        items.append(patch)
    return items
