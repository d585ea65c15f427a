# Overview: Stock audit trail; append-only events, movement history, and retention cleanup.

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from ..extensions import db
from ..errors import NotFoundError
from ..models import (
    AuditEventType,
    MovementType,
    StockAuditEvent,
    StockMovement,
    StockOperation,
)
from app.time_utils import to_utc_z, utcnow
"""
Stock audit invariants:

- Audit events are written inside the same DB transaction as the action
  they describe (log_event only flushes; the caller commits).
- StockMovement and StockOperation rows are never updated. The only deletes
  are the retention cleanups below.
"""


def log_event(
    *,
    event_type: AuditEventType | str,
    product_id: int,
    batch_id: int | None = None,
    user_id: int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> StockAuditEvent:
    event = StockAuditEvent(
        event_type=AuditEventType(event_type).value,
        product_id=product_id,
        batch_id=batch_id,
        user_id=user_id,
        details=details or {},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(event)
    db.session.flush()
    return event


def get_product_audit_trail(
    product_id: int,
    *,
    event_type: str | None = None,
    user_id: int | None = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 100,
) -> list[StockAuditEvent]:
    q = db.session.query(StockAuditEvent).filter(StockAuditEvent.product_id == product_id)
    if event_type:
        q = q.filter(StockAuditEvent.event_type == event_type)
    if user_id is not None:
        q = q.filter(StockAuditEvent.user_id == user_id)
    if date_from is not None:
        q = q.filter(StockAuditEvent.created_at >= date_from)
    if date_to is not None:
        q = q.filter(StockAuditEvent.created_at <= date_to)
    return q.order_by(StockAuditEvent.created_at.desc()).limit(limit).all()


def get_stock_history(
    *,
    product_id: int | None = None,
    batch_id: int | None = None,
    movement_type: str | None = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 100,
) -> list[StockMovement]:
    """Movement history, newest first. Date filters are inclusive."""
    q = db.session.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if batch_id is not None:
        q = q.filter(StockMovement.batch_id == batch_id)
    if movement_type:
        q = q.filter(StockMovement.movement_type == MovementType(movement_type).value)
    if date_from is not None:
        q = q.filter(StockMovement.created_at >= date_from)
    if date_to is not None:
        q = q.filter(StockMovement.created_at <= date_to)
    return q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()


def get_operation(operation_id: str) -> StockOperation:
    op = db.session.get(StockOperation, operation_id)
    if op is None:
        raise NotFoundError("Stock operation not found", details={"operation_id": operation_id})
    return op


def list_operations(*, reference_id: str | None = None, product_id: int | None = None, limit: int = 100) -> list[StockOperation]:
    q = db.session.query(StockOperation)
    if reference_id is not None:
        q = q.filter(StockOperation.reference_id == reference_id)
    if product_id is not None:
        q = q.filter(StockOperation.product_id == product_id)
    return q.order_by(StockOperation.created_at.desc()).limit(limit).all()


def get_stock_movement_summary(
    product_id: int,
    *,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict:
    """
    Totals of IN and OUT movements for a product.

    ADJUSTMENT and TRANSFER rows count toward movement_count only.
    """
    q = db.session.query(
        StockMovement.movement_type, StockMovement.quantity, StockMovement.created_at
    ).filter(StockMovement.product_id == product_id)
    if date_from is not None:
        q = q.filter(StockMovement.created_at >= date_from)
    if date_to is not None:
        q = q.filter(StockMovement.created_at <= date_to)

    total_in = 0
    total_out = 0
    count = 0
    last = None
    for movement_type, quantity, created_at in q.all():
        if movement_type == MovementType.IN.value:
            total_in += quantity
        elif movement_type == MovementType.OUT.value:
            total_out += quantity
        count += 1
        if last is None or created_at > last:
            last = created_at

    return {
        "total_in": total_in,
        "total_out": total_out,
        "net_change": total_in - total_out,
        "movement_count": count,
        "last_movement": to_utc_z(last),
    }


def get_user_activity_summary(
    user_id: int,
    *,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict:
    q = db.session.query(StockMovement.product_id, StockMovement.quantity).filter(
        StockMovement.user_id == user_id
    )
    if date_from is not None:
        q = q.filter(StockMovement.created_at >= date_from)
    if date_to is not None:
        q = q.filter(StockMovement.created_at <= date_to)
    rows = q.all()

    per_product = Counter(product_id for product_id, _ in rows)
    most_active = per_product.most_common(1)[0][0] if per_product else None
    return {
        "total_movements": len(rows),
        "products_affected": len(per_product),
        "total_quantity_moved": sum(qty for _, qty in rows),
        "most_active_product_id": most_active,
    }


def cleanup_old_audit_logs(*, retention_days: int = 365) -> int:
    """Delete stock audit events older than retention_days."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(StockAuditEvent).filter(
        StockAuditEvent.created_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def cleanup_old_movements(*, retention_days: int = 1825) -> int:
    """
    Delete stock movements older than retention_days.

    StockOperation rows are kept; they hold the before/after totals.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(StockMovement).filter(
        StockMovement.created_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
