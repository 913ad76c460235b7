# Overview: Append-only status transition log for transfers.

from __future__ import annotations

from stockroute.extensions import db
from stockroute.models import StatusLogEntry
from stockroute.services.directory_service import display_names
from stockroute.time_utils import utcnow


def record(transfer_id: int, from_status: str | None, to_status: str, actor, notes: str | None = None) -> StatusLogEntry:
    """
    Append one log entry. Entries are never updated or deleted.

    Runs inside the caller's transaction; the entry commits or rolls back
    together with the status change it describes.
    """
    entry = StatusLogEntry(
        transfer_id=transfer_id,
        from_status=from_status,
        to_status=to_status,
        changed_by=getattr(actor, "id", actor),
        changed_at=utcnow(),
        notes=notes,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def history(transfer_id: int) -> list[dict]:
    """Entries for a transfer, oldest first, each with changed_by_name."""
    entries = (
        db.session.query(StatusLogEntry)
        .filter_by(transfer_id=transfer_id)
        .order_by(StatusLogEntry.changed_at.asc(), StatusLogEntry.id.asc())
        .all()
    )
    names = display_names(e.changed_by for e in entries)
    rows = []
    for entry in entries:
        row = entry.to_dict()
        row["changed_by_name"] = names.get(entry.changed_by)
        rows.append(row)
    return rows
