from __future__ import annotations

from enum import Enum

from ..extensions import db
from app.time_utils import to_utc_z


class UserRole(str, Enum):
    PHARMACIST = "PHARMACIST"
    ADMIN = "ADMIN"


class User(db.Model):
    """
    Staff account.

    Rows are provisioned by the external auth provider (or `flask users create`);
    this service never stores passwords.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    role = db.Column(db.String(16), nullable=False, default=UserRole.PHARMACIST.value)
    pharmacy_name = db.Column(db.String(255), nullable=True)
    drug_license_number = db.Column(db.String(128), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "pharmacy_name": self.pharmacy_name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class AuthSession(db.Model):
    """
    Bearer session issued by the auth provider.

    SECURITY: Only the SHA-256 hash of the token is stored.
    """
    __tablename__ = "auth_sessions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))
