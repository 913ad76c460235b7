# Overview: Packing Task Tracker; assigns packing work and reconciles packed quantities into the transfer.

from __future__ import annotations

import logging

from sqlalchemy import func

from stockroute.errors import InvalidTransitionError, NotFoundError, UnauthorizedError, ValidationError
from stockroute.extensions import db
from stockroute.models import PackedQuantityRecord, PackingTask, Transfer, TransferItem
from stockroute.services import role_service, transfer_service
from stockroute.services.concurrency import lock_for_update, run_with_retry
from stockroute.services.directory_service import require_active_user
from stockroute.time_utils import utcnow
from stockroute.validation import coerce_int, optional_text
from stockroute.workflow import (
    PACKING_ASSIGNER_ROLES,
    PACKING_STATUSES,
    PACKING_TRANSITIONS,
    PackingStatus,
    TransferStatus,
)

logger = logging.getLogger(__name__)

_ASSIGNABLE_STATUSES = (TransferStatus.WAREHOUSE_APPROVED, TransferStatus.PACKING)


def _actor_id(actor):
    return getattr(actor, "id", actor)


def normalize_item_quantities(item_quantities) -> list[tuple[int, int]]:
    """
    Accept [{item_id, quantity}, ...] or {item_id: quantity} and return
    (item_id, quantity) pairs with positive integer quantities.
    """
    if item_quantities is None:
        return []
    if isinstance(item_quantities, dict):
        raw = [{"item_id": k, "quantity": v} for k, v in item_quantities.items()]
    elif isinstance(item_quantities, list):
        raw = item_quantities
    else:
        raise ValidationError("item_quantities must be a list of {item_id, quantity}")

    pairs = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError("item_quantities must be a list of {item_id, quantity}")
        item_id = coerce_int(entry.get("item_id"), "item_id")
        quantity = entry.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("quantity must be an integer")
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        pairs.append((item_id, quantity))
    return pairs


def list_tasks(transfer_id: int) -> list[PackingTask]:
    transfer_service.require_transfer(transfer_id)
    return (
        db.session.query(PackingTask)
        .filter_by(transfer_id=transfer_id)
        .order_by(PackingTask.id.asc())
        .all()
    )


def assign_packing(transfer_id: int, assignee_id, actor, *, notes: str | None = None) -> PackingTask:
    """
    Create a pending packing task.

    The first task on a warehouse-approved transfer moves it to `packing`.
    """
    def _op():
        transfer = transfer_service.require_transfer(transfer_id, lock=True)
        if transfer.transfer_status not in _ASSIGNABLE_STATUSES:
            raise InvalidTransitionError(
                f"Packing cannot be assigned while the transfer is {transfer.transfer_status}"
            )
        if not role_service.has_any_role_on_transfer(actor, transfer, PACKING_ASSIGNER_ROLES):
            raise UnauthorizedError("You are not authorized to assign packing for this transfer")
        assignee = require_active_user(assignee_id, field="assigned_to")

        task = PackingTask(
            transfer_id=transfer.id,
            assigned_to=assignee.id,
            assigned_by=_actor_id(actor),
            task_status=PackingStatus.PENDING,
            packing_notes=optional_text(notes, "notes"),
            assigned_at=utcnow(),
        )
        db.session.add(task)
        db.session.flush()

        if transfer.transfer_status == TransferStatus.WAREHOUSE_APPROVED:
            transfer_service.change_status(
                transfer.id, TransferStatus.PACKING, actor, notes="Packing task assigned", cascade=True,
            )
        logger.info("Packing task %s on transfer %s assigned to user %s", task.id, transfer.transfer_number, assignee.id)
        return task

    return run_with_retry(_op)


def _record_packed(task: PackingTask, transfer: Transfer, pairs: list[tuple[int, int]], actor) -> None:
    items = {item.id: item for item in transfer.items}

    totals: dict[int, int] = {}
    for item_id, quantity in pairs:
        if item_id not in items:
            raise ValidationError(f"Item {item_id} does not belong to this transfer")
        totals[item_id] = totals.get(item_id, 0) + quantity

    for item_id, added in totals.items():
        item = items[item_id]
        if item.quantity_packed + added > item.quantity_requested:
            raise ValidationError(
                f"Packed quantity for {item.product_name} cannot exceed requested quantity "
                f"({item.quantity_requested})"
            )

    now = utcnow()
    for item_id, quantity in pairs:
        item = items[item_id]
        item.quantity_packed += quantity
        task.packed_quantities.append(PackedQuantityRecord(
            transfer_item_id=item.id,
            quantity=quantity,
            recorded_by=_actor_id(actor),
            recorded_at=now,
        ))
    db.session.flush()


def _pack_remaining(task: PackingTask, transfer: Transfer, actor) -> None:
    pairs = [(item.id, item.remaining_to_pack) for item in transfer.items if item.remaining_to_pack > 0]
    if pairs:
        _record_packed(task, transfer, pairs, actor)


def _has_records(task: PackingTask) -> bool:
    return db.session.query(PackedQuantityRecord.id).filter_by(packing_task_id=task.id).first() is not None


def is_fully_packed(transfer: Transfer) -> bool:
    """Every item's quantity packed under completed tasks reaches its requested quantity."""
    rows = (
        db.session.query(PackedQuantityRecord.transfer_item_id, func.sum(PackedQuantityRecord.quantity))
        .join(PackingTask, PackingTask.id == PackedQuantityRecord.packing_task_id)
        .filter(
            PackingTask.transfer_id == transfer.id,
            PackingTask.task_status == PackingStatus.COMPLETED,
        )
        .group_by(PackedQuantityRecord.transfer_item_id)
        .all()
    )
    packed = {item_id: int(total or 0) for item_id, total in rows}
    items = db.session.query(TransferItem).filter_by(transfer_id=transfer.id).all()
    return bool(items) and all(packed.get(item.id, 0) >= item.quantity_requested for item in items)


def update_packing_task(
    task_id: int,
    actor,
    *,
    new_status: str | None = None,
    item_quantities=None,
    notes: str | None = None,
    transfer_id: int | None = None,
) -> PackingTask:
    """
    Advance a packing task and/or record packed quantities against it.

    pending -> in_progress -> completed; repeating the current status is a
    no-op. Quantities may be recorded while in progress or on the call that
    completes the task. Completing a task that recorded nothing packs every
    item's remaining quantity. When completed tasks cover every item the
    transfer cascades to `packed`.
    """
    task_id = coerce_int(task_id, "task_id")
    if transfer_id is not None:
        transfer_id = coerce_int(transfer_id, "transfer_id")
    notes = optional_text(notes, "notes")
    pairs = normalize_item_quantities(item_quantities)
    if new_status is not None and new_status not in PACKING_STATUSES:
        raise ValidationError(f"task_status must be one of: {', '.join(PACKING_STATUSES)}")

    def _op():
        task = lock_for_update(db.session.query(PackingTask).filter_by(id=task_id)).first()
        if not task or (transfer_id is not None and task.transfer_id != transfer_id):
            raise NotFoundError("Packing task not found")
        transfer = transfer_service.require_transfer(task.transfer_id, lock=True)

        is_assignee = task.assigned_to == _actor_id(actor)
        if not is_assignee and not role_service.has_any_role_on_transfer(actor, transfer, PACKING_ASSIGNER_ROLES):
            raise UnauthorizedError("You are not authorized to update this packing task")

        current = task.task_status
        target = new_status or current
        if target != current and (current, target) not in PACKING_TRANSITIONS:
            raise InvalidTransitionError(f"Cannot move packing task from {current} to {target}")

        if pairs:
            if current == PackingStatus.COMPLETED:
                raise InvalidTransitionError("Packing task is already completed")
            if target == PackingStatus.PENDING:
                raise InvalidTransitionError("Start the packing task before recording packed quantities")
            if transfer.transfer_status != TransferStatus.PACKING:
                raise InvalidTransitionError(f"Cannot record packed quantities while the transfer is {transfer.transfer_status}")
            _record_packed(task, transfer, pairs, actor)

        if notes:
            task.packing_notes = notes

        if target == current:
            db.session.flush()
            return task

        now = utcnow()
        task.task_status = target
        if target == PackingStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now
        if target == PackingStatus.COMPLETED:
            task.completed_at = now
            if not _has_records(task):
                _pack_remaining(task, transfer, actor)
        db.session.flush()
        logger.info("Packing task %s on transfer %s: %s -> %s", task.id, transfer.transfer_number, current, target)

        if (
            target == PackingStatus.COMPLETED
            and transfer.transfer_status == TransferStatus.PACKING
            and is_fully_packed(transfer)
        ):
            transfer_service.change_status(
                transfer.id, TransferStatus.PACKED, actor, notes="All items packed", cascade=True,
            )
        return task

    return run_with_retry(_op)
