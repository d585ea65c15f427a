# Overview: Atomic per-day document numbering (SALE-YYYYMMDD-NNNN).

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from app.time_utils import utctoday


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _bump(document_type: str, period: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.period == period,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    db.session.flush()
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, period=period)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    document_type: str,
    prefix: str,
    on_date: date | None = None,
    pad: int = 4,
) -> str:
    """
    Allocate the next number for a document type within one calendar day.

    Runs inside the caller's transaction: the UPDATE takes the row lock on
    (document_type, period) and the number is released only if the caller
    rolls back. The first number of a day is inserted under a savepoint so a
    concurrent first insert falls back to the UPDATE path.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    period = (on_date or utctoday()).strftime("%Y%m%d")

    number = _bump(document_type, period)
    if number is None:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, period=period, next_number=2))
            number = 1
        except IntegrityError:
            number = _bump(document_type, period)
            if number is None:
                raise

    return f"{prefix}-{period}-{number:0{pad}d}"


def next_sale_number(on_date: date | None = None) -> str:
    return next_document_number(document_type="SALE", prefix="SALE", on_date=on_date)
