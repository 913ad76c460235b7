# Overview: Atomic per-day transfer number allocation (TRF-YYYYMMDD-NNNN).

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import utcnow


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _bump(sequence_key: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.sequence_key == sequence_key)
        .values(next_number=DocumentSequence.next_number + 1, updated_at=utcnow())
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(sequence_key=sequence_key)
        .scalar()
    )
    return current - 1


def next_transfer_number(*, prefix: str | None = None, on_date: date | None = None, pad: int = 4) -> str:
    """
    Atomically allocate the next transfer number for a calendar day.

    The UPDATE takes the row lock on the (prefix, day) sequence; the first
    allocation of a day inserts the row inside a savepoint so a concurrent
    insert only costs a retry of the UPDATE, not the caller's transaction.
    Must run inside the caller's transaction (run_with_retry scope).
    """
    prefix = prefix or current_app.config.get("TRANSFER_NUMBER_PREFIX", "TRF")
    if not prefix:
        raise DocumentSequenceError("prefix is required")
    day = on_date or utcnow().date()
    sequence_key = f"{prefix}-{day:%Y%m%d}"

    next_num = _bump(sequence_key)
    if next_num is None:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(sequence_key=sequence_key, next_number=2))
            next_num = 1
        except IntegrityError:
            next_num = _bump(sequence_key)
            if next_num is None:
                raise

    return f"{sequence_key}-{next_num:0{pad}d}"
