# Overview: Transfer orchestrator; request intake, the single status-change entry point, listing and detail.

"""
StockRoute Transfer Service

WHY THIS EXISTS:
- Every transfer status mutation funnels through change_status so the status
  log stays the single record of what happened, including cascades driven by
  the packing and delivery trackers.
- Services only flush; the route commits. A failure anywhere in an operation
  (including inside a cascade) leaves nothing behind once the route rolls back.

CONCURRENCY:
- The transfer row is re-read with lock_for_update before any decision.
- expected_status lets a caller state what it saw; a mismatch means someone
  else moved the transfer first.
- Transfer.version_id catches the same race at flush time on databases that
  don't honor FOR UPDATE. A stale flush is a lost race, never a retry.
- Without expected_status, the status read on the first attempt is pinned, so
  a retry (deadlock, lock timeout) cannot apply the transition to a status
  this call never saw.
All of these surface as InvalidTransitionError so the caller refetches.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, or_
from sqlalchemy.orm.exc import StaleDataError

from stockroute.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from stockroute.extensions import db
from stockroute.models import Location, Product, Transfer, TransferItem
from stockroute.services import directory_service, role_service, status_log_service
from stockroute.services.concurrency import lock_for_update, run_with_retry
from stockroute.services.document_service import next_transfer_number
from stockroute.time_utils import parse_iso_date, utcnow
from stockroute.validation import coerce_int, optional_text
from stockroute.workflow import (
    IN_PROGRESS_STATUSES,
    VALID_PRIORITIES,
    VALID_UNITS,
    LocationType,
    Role,
    TransferStatus,
    approval_target,
    is_legal_transition,
    is_system_transition,
    validate_status,
)

logger = logging.getLogger(__name__)


# status -> (timestamp column, actor column) set on first entry
_STATUS_STAMPS = {
    TransferStatus.STORE_APPROVED: ("store_approved_at", "store_approved_by"),
    TransferStatus.WAREHOUSE_APPROVED: ("warehouse_approved_at", "warehouse_approved_by"),
    TransferStatus.REJECTED: ("rejected_at", "rejected_by"),
    TransferStatus.CANCELLED: ("cancelled_at", None),
    TransferStatus.DISPATCHED: ("dispatched_at", None),
    TransferStatus.DELIVERED: ("delivered_at", None),
}

VALID_TABS = ("all", "my_requests", "approvals", "packing", "logistics")

_TAB_STATUSES = {
    "packing": (TransferStatus.WAREHOUSE_APPROVED, TransferStatus.PACKING),
    "logistics": (TransferStatus.PACKED, TransferStatus.DISPATCHED, TransferStatus.IN_TRANSIT),
}

EDITABLE_FIELDS = ("priority", "request_notes", "expected_delivery_date")


def _actor_id(actor):
    return getattr(actor, "id", actor)


def _parse_priority(value) -> str:
    if value is None or value == "":
        return "normal"
    priority = str(value).strip().lower()
    if priority not in VALID_PRIORITIES:
        raise ValidationError(f"priority must be one of: {', '.join(VALID_PRIORITIES)}")
    return priority


def _parse_delivery_date(value):
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError("expected_delivery_date must be a date (YYYY-MM-DD)")


def _require_active_location(location_id, field: str) -> Location:
    if location_id is None or location_id == "":
        raise ValidationError(f"{field} is required")
    location = db.session.get(Location, coerce_int(location_id, field))
    if not location:
        raise ValidationError(f"{field} does not reference a known location")
    if not location.is_active:
        raise ValidationError(f"{location.label} is inactive")
    return location


def _build_items(raw_items) -> list[TransferItem]:
    """Validate every requested line before anything is added to the session."""
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("At least one item is required")

    built = []
    for idx, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item {idx} is malformed")

        product = None
        if raw.get("product_id") not in (None, ""):
            product = db.session.get(Product, coerce_int(raw["product_id"], f"Item {idx} product_id"))
            if not product:
                raise ValidationError(f"Item {idx} references an unknown product")

        name = optional_text(raw.get("product_name"), f"Item {idx} product_name") or (product.product_name if product else None)
        if not name:
            raise ValidationError(f"Item {idx} is missing a product name")

        quantity = coerce_int(raw.get("quantity_requested"), f"Item {idx} quantity_requested")
        if quantity < 1:
            raise ValidationError(f"Item {idx} quantity_requested must be at least 1")

        unit = (optional_text(raw.get("unit"), f"Item {idx} unit") or (product.unit if product else None) or "pcs").lower()
        if unit not in VALID_UNITS:
            raise ValidationError(f"Item {idx} unit must be one of: {', '.join(VALID_UNITS)}")

        built.append(TransferItem(
            product_id=product.id if product else None,
            product_name=name,
            product_code=raw.get("product_code") or (product.product_code if product else None),
            product_category=raw.get("product_category") or (product.product_category if product else None),
            quantity_requested=quantity,
            quantity_packed=0,
            quantity_delivered=0,
            unit=unit,
            item_notes=optional_text(raw.get("item_notes") or raw.get("notes"), f"Item {idx} notes"),
        ))
    return built


def request_transfer(
    *,
    source_location_id,
    destination_location_id,
    items,
    requester,
    priority: str | None = None,
    request_notes: str | None = None,
    expected_delivery_date=None,
    project_id: int | None = None,
) -> Transfer:
    """
    Create a transfer in `requested` with its items and first log entry.

    Raises ValidationError for any malformed input; nothing is written in
    that case.
    """
    if requester is None:
        raise ValidationError("requester is required")

    def _op():
        source = _require_active_location(source_location_id, "source_location_id")
        destination = _require_active_location(destination_location_id, "destination_location_id")
        if source.id == destination.id:
            raise ValidationError("Source and destination locations must be different")

        lines = _build_items(items)
        parsed_priority = _parse_priority(priority)
        delivery_date = _parse_delivery_date(expected_delivery_date)
        project = coerce_int(project_id, "project_id") if project_id not in (None, "") else None

        now = utcnow()
        transfer = Transfer(
            transfer_number=next_transfer_number(),
            source_location_id=source.id,
            destination_location_id=destination.id,
            source_label=source.label,
            destination_label=destination.label,
            priority=parsed_priority,
            transfer_status=TransferStatus.REQUESTED,
            request_notes=optional_text(request_notes, "request_notes"),
            expected_delivery_date=delivery_date,
            project_id=project,
            requested_by=_actor_id(requester),
            requested_at=now,
            updated_at=now,
        )
        db.session.add(transfer)
        db.session.flush()

        for line in lines:
            line.transfer_id = transfer.id
            db.session.add(line)
        db.session.flush()

        status_log_service.record(
            transfer.id, None, TransferStatus.REQUESTED, requester, "Transfer request created"
        )
        logger.info(
            "Transfer %s requested: %s -> %s (%d items)",
            transfer.transfer_number, source.location_code, destination.location_code, len(lines),
        )
        return transfer

    return run_with_retry(_op)


def require_transfer(transfer_id, *, lock: bool = False) -> Transfer:
    query = db.session.query(Transfer).filter_by(id=transfer_id)
    if lock:
        query = lock_for_update(query)
    transfer = query.first()
    if not transfer:
        raise NotFoundError("Transfer not found")
    return transfer


def _stamp(transfer: Transfer, target_status: str, actor, now) -> None:
    stamps = _STATUS_STAMPS.get(target_status)
    if not stamps:
        return
    at_field, by_field = stamps
    if getattr(transfer, at_field) is None:
        setattr(transfer, at_field, now)
        if by_field:
            setattr(transfer, by_field, _actor_id(actor))


def change_status(
    transfer_id: int,
    target_status: str,
    actor,
    *,
    notes: str | None = None,
    expected_status: str | None = None,
    rejection_reason: str | None = None,
    cascade: bool = False,
) -> Transfer:
    """
    Apply one status transition and append its log entry.

    The only code path that writes Transfer.transfer_status after creation.
    cascade=True is used by the packing/delivery trackers: it skips the role
    gate (the tracker already authorized its own action) but never the
    transition table.

    Raises:
        NotFoundError: unknown transfer
        InvalidTransitionError: pair not in the table, system transition
            requested directly, or the status moved since the caller read it
        UnauthorizedError: actor fails the role gate
        ValidationError: rejection without a reason
    """
    validate_status(target_status)
    if expected_status is not None:
        validate_status(expected_status)
    notes = optional_text(notes, "notes")
    observed = {}

    def _op():
        transfer = require_transfer(transfer_id, lock=True)
        current = transfer.transfer_status

        seen = expected_status if expected_status is not None else observed.setdefault("status", current)
        if seen != current:
            raise ConflictError(
                f"Transfer status changed from {seen} to {current}; reload and try again"
            )
        if not is_legal_transition(current, target_status):
            raise InvalidTransitionError(f"Cannot change transfer status from {current} to {target_status}")
        if not cascade:
            if is_system_transition(current, target_status):
                raise InvalidTransitionError(f"{current} to {target_status} happens automatically")
            if not role_service.authorize_transition(actor, transfer, current, target_status):
                raise UnauthorizedError("You are not authorized to perform this action on this transfer")

        if target_status == TransferStatus.REJECTED:
            reason = optional_text(rejection_reason, "rejection_reason")
            if not reason:
                raise ValidationError("Rejection reason is required")
            transfer.rejection_reason = reason

        now = utcnow()
        transfer.transfer_status = target_status
        transfer.updated_at = now
        _stamp(transfer, target_status, actor, now)
        try:
            db.session.flush()
        except StaleDataError as exc:
            raise ConflictError("Transfer was changed by someone else; reload and try again") from exc

        status_log_service.record(transfer.id, current, target_status, actor, notes)
        logger.info(
            "Transfer %s: %s -> %s by user %s%s",
            transfer.transfer_number, current, target_status, _actor_id(actor),
            " (cascade)" if cascade else "",
        )
        return transfer

    return _run_transition(_op)


def _run_transition(op):
    try:
        return run_with_retry(op)
    except ConflictError as exc:
        raise InvalidTransitionError(str(exc)) from exc
    except StaleDataError as exc:
        raise InvalidTransitionError("Transfer was changed by someone else; reload and try again") from exc


def _warehouse_step_note(transfer: Transfer, actor) -> str | None:
    """
    Note for a warehouse approval folded into the first approval, or None when
    the warehouse still has to approve separately.
    """
    source_type = transfer.source_location.location_type
    destination_type = transfer.destination_location.location_type
    if LocationType.WAREHOUSE not in (source_type, destination_type):
        return "No warehouse approval required"
    if source_type == LocationType.WAREHOUSE and role_service.authorize(
        actor, transfer.source_location_id, Role.WAREHOUSE_MANAGER,
    ):
        return "Approved by source warehouse manager"
    return None


def approve(transfer_id: int, actor, *, notes: str | None = None, expected_status: str | None = None) -> Transfer:
    """
    Advance one approval step.

    requested -> store_approved, or store_approved -> warehouse_approved.
    The first approval also takes the warehouse step, as a cascade in the same
    transaction, when no warehouse is involved (store-to-store) or when the
    approver manages the source warehouse.
    """
    observed = {}

    def _op():
        transfer = require_transfer(transfer_id, lock=True)
        current = transfer.transfer_status
        seen = expected_status if expected_status is not None else observed.setdefault("status", current)
        target = approval_target(current)
        if target is None:
            raise InvalidTransitionError(f"Transfer in status {current} cannot be approved")

        transfer = change_status(
            transfer.id, target, actor, notes=notes, expected_status=seen,
        )
        if target == TransferStatus.STORE_APPROVED:
            step_note = _warehouse_step_note(transfer, actor)
            if step_note:
                transfer = change_status(
                    transfer.id,
                    TransferStatus.WAREHOUSE_APPROVED,
                    actor,
                    notes=step_note,
                    cascade=True,
                )
        return transfer

    return _run_transition(_op)


def reject(
    transfer_id: int,
    actor,
    reason: str | None,
    *,
    notes: str | None = None,
    expected_status: str | None = None,
) -> Transfer:
    reason = optional_text(reason, "rejection_reason")
    if not reason:
        raise ValidationError("Rejection reason is required")
    return change_status(
        transfer_id,
        TransferStatus.REJECTED,
        actor,
        notes=notes or f"Rejected: {reason}",
        expected_status=expected_status,
        rejection_reason=reason,
    )


def cancel(transfer_id: int, actor, *, notes: str | None = None, expected_status: str | None = None) -> Transfer:
    return change_status(
        transfer_id,
        TransferStatus.CANCELLED,
        actor,
        notes=notes or "Cancelled by requester",
        expected_status=expected_status,
    )


def update_transfer(transfer_id: int, actor, changes: dict) -> Transfer:
    """Requester edits priority, notes or expected date while still `requested`."""
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("No changes supplied")
    unknown = sorted(k for k in changes if k not in EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    def _op():
        transfer = require_transfer(transfer_id, lock=True)
        if transfer.requested_by != _actor_id(actor):
            raise UnauthorizedError("Only the requester can edit this transfer")
        if transfer.transfer_status != TransferStatus.REQUESTED:
            raise InvalidTransitionError("Transfer can only be edited while it is requested")

        if "priority" in changes:
            transfer.priority = _parse_priority(changes["priority"])
        if "request_notes" in changes:
            transfer.request_notes = optional_text(changes["request_notes"], "request_notes")
        if "expected_delivery_date" in changes:
            transfer.expected_delivery_date = _parse_delivery_date(changes["expected_delivery_date"])
        transfer.updated_at = utcnow()
        db.session.flush()
        return transfer

    return _run_transition(_op)


def _approvals_filter(actor):
    store_ids = role_service.manager_location_ids(actor, Role.STORE_MANAGER)
    warehouse_ids = role_service.manager_location_ids(actor, Role.WAREHOUSE_MANAGER)
    clauses = []
    if store_ids or warehouse_ids:
        clauses.append(
            (Transfer.transfer_status == TransferStatus.REQUESTED)
            & Transfer.source_location_id.in_(store_ids + warehouse_ids)
        )
    if warehouse_ids:
        clauses.append(
            (Transfer.transfer_status == TransferStatus.STORE_APPROVED)
            & or_(
                Transfer.source_location_id.in_(warehouse_ids),
                Transfer.destination_location_id.in_(warehouse_ids),
            )
        )
    if not clauses:
        return None
    return or_(*clauses)


def compute_stats(transfers: list[Transfer]) -> dict:
    return {
        "total": len(transfers),
        "requested": sum(1 for t in transfers if t.transfer_status == TransferStatus.REQUESTED),
        "in_progress": sum(1 for t in transfers if t.transfer_status in IN_PROGRESS_STATUSES),
        "delivered": sum(1 for t in transfers if t.transfer_status == TransferStatus.DELIVERED),
        "rejected": sum(1 for t in transfers if t.transfer_status == TransferStatus.REJECTED),
    }


def list_transfers(
    actor,
    *,
    tab: str = "all",
    status: str | None = None,
    search: str | None = None,
    project_id: int | None = None,
) -> tuple[list[Transfer], dict]:
    """Transfers for a dashboard tab, newest first, with stats over the same set."""
    tab = tab or "all"
    if tab not in VALID_TABS:
        raise ValidationError(f"tab must be one of: {', '.join(VALID_TABS)}")

    query = db.session.query(Transfer)

    if tab == "my_requests":
        query = query.filter(Transfer.requested_by == _actor_id(actor))
    elif tab == "approvals":
        clause = _approvals_filter(actor)
        if clause is None:
            return [], compute_stats([])
        query = query.filter(clause)
    elif tab in _TAB_STATUSES:
        query = query.filter(Transfer.transfer_status.in_(_TAB_STATUSES[tab]))

    if status:
        validate_status(status)
        query = query.filter(Transfer.transfer_status == status)
    if project_id is not None:
        query = query.filter(Transfer.project_id == project_id)
    if search and search.strip():
        like = f"%{search.strip().lower()}%"
        query = query.filter(or_(
            func.lower(Transfer.transfer_number).like(like),
            func.lower(Transfer.request_notes).like(like),
        ))

    transfers = query.order_by(Transfer.requested_at.desc(), Transfer.id.desc()).all()
    return transfers, compute_stats(transfers)


def get_transfer_detail(transfer_id: int) -> dict:
    transfer = require_transfer(transfer_id)
    return {
        "transfer": transfer.to_dict(),
        "requester": directory_service.resolve_user(transfer.requested_by),
        "statusLog": status_log_service.history(transfer.id),
        "packingTasks": [task.to_dict() for task in transfer.packing_tasks],
        "deliveryAssignments": [a.to_dict() for a in transfer.delivery_assignments],
    }
