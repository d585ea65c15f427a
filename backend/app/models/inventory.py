from __future__ import annotations

import uuid
from enum import Enum

from ..extensions import db
from app.time_utils import to_utc_z, to_iso_date


class OperationType(str, Enum):
    SALE = "SALE"
    PURCHASE = "PURCHASE"
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER = "TRANSFER"

    @property
    def subtracts(self) -> bool:
        return self in (OperationType.SALE, OperationType.TRANSFER)

    @property
    def movement_type(self) -> "MovementType":
        return _MOVEMENT_FOR_OPERATION[self]


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER = "TRANSFER"


_MOVEMENT_FOR_OPERATION = {
    OperationType.SALE: MovementType.OUT,
    OperationType.PURCHASE: MovementType.IN,
    OperationType.ADJUSTMENT: MovementType.ADJUSTMENT,
    OperationType.TRANSFER: MovementType.TRANSFER,
}


class ReservationType(str, Enum):
    SALE = "SALE"
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"


class AuditEventType(str, Enum):
    STOCK_MOVEMENT = "STOCK_MOVEMENT"
    STOCK_RESERVATION = "STOCK_RESERVATION"
    STOCK_RELEASE = "STOCK_RELEASE"
    STOCK_VALIDATION = "STOCK_VALIDATION"


def _new_uuid() -> str:
    return str(uuid.uuid4())


class Batch(db.Model):
    """
    A received lot of a product: the true unit of stock tracking.

    INVARIANT: current_quantity >= 0 (checked by the executor under row lock and
    by a CHECK constraint). initial_quantity is informational only; adjustments
    may take current_quantity above it.

    version_id provides optimistic locking on top of SELECT ... FOR UPDATE, so a
    concurrent writer that slipped past the lock (SQLite) raises StaleDataError
    and is retried rather than overwriting.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.UniqueConstraint("product_id", "batch_number", name="uq_batches_product_batch_number"),
        db.CheckConstraint("current_quantity >= 0", name="ck_batches_current_quantity_nonnegative"),
        db.Index("ix_batches_product_active_expiry", "product_id", "is_active", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    batch_number = db.Column(db.String(64), nullable=False)
    lot_number = db.Column(db.String(64), nullable=True)
    manufacturing_date = db.Column(db.Date, nullable=False)
    expiry_date = db.Column(db.Date, nullable=False, index=True)

    initial_quantity = db.Column(db.Integer, nullable=False)
    current_quantity = db.Column(db.Integer, nullable=False)
    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("batches", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Batch id={self.id} product_id={self.product_id} "
            f"number={self.batch_number!r} qty={self.current_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "supplier_id": self.supplier_id,
            "batch_number": self.batch_number,
            "lot_number": self.lot_number,
            "manufacturing_date": to_iso_date(self.manufacturing_date),
            "expiry_date": to_iso_date(self.expiry_date),
            "initial_quantity": self.initial_quantity,
            "current_quantity": self.current_quantity,
            "cost_price_cents": self.cost_price_cents,
            "notes": self.notes,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockOperation(db.Model):
    """
    Audit row for one executed stock mutation.

    Written in the same DB transaction as the batch updates and the
    StockMovement rows. previous_quantity / new_quantity are product-level
    committed totals, so new_quantity == previous_quantity + quantity_change.
    quantity_change is signed (negative for SALE/TRANSFER).
    """
    __tablename__ = "stock_operations"
    __table_args__ = (
        db.CheckConstraint("new_quantity >= 0", name="ck_stock_operations_new_quantity_nonnegative"),
        db.Index("ix_stock_operations_product_created", "product_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    operation_type = db.Column(db.String(16), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True)

    quantity_change = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    reference_id = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    movements = db.relationship(
        "StockMovement",
        backref=db.backref("operation", lazy=True),
        lazy=True,
        order_by="StockMovement.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "quantity_change": self.quantity_change,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "user_id": self.user_id,
            "reference_id": self.reference_id,
            "created_at": to_utc_z(self.created_at),
        }


class StockMovement(db.Model):
    """
    Append-only record of a quantity change on one batch.

    quantity is always a positive magnitude; direction comes from movement_type.
    Rows are only removed by the retention cleanup.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True, index=True)
    stock_operation_id = db.Column(db.String(36), db.ForeignKey("stock_operations.id"), nullable=True, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    reference_id = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    batch = db.relationship("Batch")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "batch_number": self.batch.batch_number if self.batch else None,
            "stock_operation_id": self.stock_operation_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "reason": self.reason,
            "user_id": self.user_id,
            "reference_id": self.reference_id,
            "created_at": to_utc_z(self.created_at),
        }


class StockReservation(db.Model):
    """
    Non-committing hold on stock.

    Never touches Batch.current_quantity; subtracted from committed stock only
    when computing availability, and only while expires_at is in the future.
    """
    __tablename__ = "stock_reservations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_reservations_quantity_positive"),
        db.Index("ix_stock_reservations_product_expires", "product_id", "expires_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    reservation_type = db.Column(db.String(16), nullable=False)
    reference_id = db.Column(db.String(64), nullable=True, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "reservation_type": self.reservation_type,
            "reference_id": self.reference_id,
            "expires_at": to_utc_z(self.expires_at),
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }


class StockAuditEvent(db.Model):
    """Stock-layer audit trail (reservations, releases, executed movements)."""
    __tablename__ = "stock_audit_events"
    __table_args__ = (
        db.Index("ix_stock_audit_events_product_created", "product_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    event_type = db.Column(db.String(32), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    details = db.Column(db.JSON, nullable=False, default=dict)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "user_id": self.user_id,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }
