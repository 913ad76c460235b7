# Overview: Retry and row-locking helpers shared by every mutating service operation.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

_DEPTH_KEY = "stockroute.retry_depth"


def lock_for_update(query):
    """
    Apply row-level locking for critical operations and re-read the row.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    populate_existing() makes sure an identity-map copy loaded earlier in the
    request is refreshed before any decision is taken on it.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).

    Nested calls (a cascade running inside another operation) execute
    directly: a rollback there would discard the outer operation's flushed
    work, so only the outermost call owns the retry loop.
    """
    info = db.session.info
    if info.get(_DEPTH_KEY):
        return func()

    last_exc = None
    for attempt in range(attempts):
        info[_DEPTH_KEY] = 1
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        finally:
            info.pop(_DEPTH_KEY, None)
    if last_exc:
        raise last_exc


def commit_with_retry(*, attempts: int = 3, backoff_base: float = 0.1):
    """Commit current session with retry handling."""
    def _op():
        db.session.commit()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
