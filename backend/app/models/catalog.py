from __future__ import annotations

from enum import Enum

from ..extensions import db
from app.time_utils import to_utc_z


class ProductCategory(str, Enum):
    OTC = "OTC"
    PRESCRIPTION = "PRESCRIPTION"
    SUPPLEMENTS = "SUPPLEMENTS"
    MEDICAL_DEVICES = "MEDICAL_DEVICES"
    COSMETICS = "COSMETICS"
    OTHER = "OTHER"


class Supplier(db.Model):
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact_person = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    license_number = db.Column(db.String(128), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact_person": self.contact_person,
            "email": self.email,
            "phone": self.phone,
            "license_number": self.license_number,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Catalog entry.

    STOCK IS NOT STORED HERE. On-hand quantity is derived from active
    Batch.current_quantity rows; see stock_service.get_committed_stock().
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category", "category"),
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    generic_name = db.Column(db.String(255), nullable=True)
    manufacturer = db.Column(db.String(255), nullable=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    category = db.Column(db.String(32), nullable=False, default=ProductCategory.OTHER.value)

    # Authoritative storage in cents
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)

    unit_of_measure = db.Column(db.String(32), nullable=False, default="unit")
    pack_size = db.Column(db.Integer, nullable=False, default=1)

    # Reorder thresholds
    min_stock_level = db.Column(db.Integer, nullable=False, default=10)
    max_stock_level = db.Column(db.Integer, nullable=False, default=1000)

    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    supplier = db.relationship("Supplier", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "generic_name": self.generic_name,
            "manufacturer": self.manufacturer,
            "barcode": self.barcode,
            "category": self.category,
            "unit_cost_cents": self.unit_cost_cents,
            "selling_price_cents": self.selling_price_cents,
            "unit_of_measure": self.unit_of_measure,
            "pack_size": self.pack_size,
            "min_stock_level": self.min_stock_level,
            "max_stock_level": self.max_stock_level,
            "requires_prescription": self.requires_prescription,
            "is_active": self.is_active,
            "supplier_id": self.supplier_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
