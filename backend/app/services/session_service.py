# Overview: Bearer session validation against tokens issued by the external auth provider.

"""
Session Token Service

WHY: Login happens in the external auth provider; this back end only has to
recognize the bearer tokens it hands out. Provider-issued sessions land in
auth_sessions as SHA-256 hashes. create_session exists so the CLI and the
test suite can mint tokens without the provider.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Absolute expiry per session
- Revocable; deactivated users are rejected
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from ..extensions import db
from ..models import AuthSession, User
from app.time_utils import utcnow


SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)


@dataclass
class SessionContext:
    user: User
    session: AuthSession

    @property
    def role(self) -> str:
        return self.user.role


def generate_token() -> str:
    return secrets.token_hex(32)  # 32 bytes = 64 hex characters


def hash_token(token: str) -> str:
    """
    Hash token for database storage using SHA-256.

    Tokens are already high-entropy, so a fast hash is sufficient.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(
    user_id: int,
    user_agent: str | None = None,
    ip_address: str | None = None,
    ttl: timedelta = SESSION_ABSOLUTE_TIMEOUT,
) -> tuple[AuthSession, str]:
    """
    Returns (session_record, plaintext_token).

    Raises ValueError if the user does not exist or is inactive.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise ValueError("User not found")
    if not user.is_active:
        raise ValueError("User is inactive")

    plaintext_token = generate_token()
    now = utcnow()

    session = AuthSession(
        user_id=user_id,
        token_hash=hash_token(plaintext_token),
        expires_at=now + ttl,
        user_agent=user_agent,
        ip_address=ip_address,
        is_revoked=False,
    )
    user.last_login_at = now

    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def validate_session(token: str) -> SessionContext | None:
    """
    Return SessionContext for a live token, otherwise None.

    None means: unknown, expired, or revoked token, or a deactivated user.
    """
    session = db.session.query(AuthSession).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return None

    if session.expires_at < utcnow():
        return None

    user = session.user
    if not user or not user.is_active:
        return None

    return SessionContext(user=user, session=session)


def revoke_session(token: str) -> bool:
    """Returns True if session was revoked, False if not found."""
    session = db.session.query(AuthSession).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()

    if not session:
        return False

    session.is_revoked = True
    session.revoked_at = utcnow()
    db.session.commit()
    return True
