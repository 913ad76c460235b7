# Overview: Delivery Assignment Tracker; hands packed transfers to logistics and walks them to delivered.

from __future__ import annotations

import logging

from stockroute.errors import InvalidTransitionError, NotFoundError, UnauthorizedError, ValidationError
from stockroute.extensions import db
from stockroute.models import DeliveredQuantityRecord, DeliveryAssignment, Transfer
from stockroute.services import role_service, transfer_service
from stockroute.services.concurrency import lock_for_update, run_with_retry
from stockroute.services.directory_service import require_active_user
from stockroute.services.packing_service import normalize_item_quantities
from stockroute.time_utils import utcnow
from stockroute.validation import coerce_int, optional_text
from stockroute.workflow import (
    DELIVERY_ASSIGNER_ROLES,
    DELIVERY_CASCADE_TARGET,
    DELIVERY_STATUSES,
    DELIVERY_TRANSITIONS,
    DELIVERY_WORKER_ROLES,
    FULFILLMENT_PATH,
    DeliveryStatus,
    TransferStatus,
)

logger = logging.getLogger(__name__)

_ASSIGNABLE_STATUSES = (TransferStatus.PACKED, TransferStatus.DISPATCHED)

# delivery status -> assignment timestamp column
_STATUS_STAMPS = {
    DeliveryStatus.PICKED_UP: "picked_up_at",
    DeliveryStatus.IN_TRANSIT: "in_transit_at",
    DeliveryStatus.DELIVERED: "delivered_at",
    DeliveryStatus.FAILED: "failed_at",
}

_STEP_NOTES = {
    TransferStatus.DISPATCHED: "Picked up for delivery",
    TransferStatus.IN_TRANSIT: "Delivery in transit",
    TransferStatus.DELIVERED: "Delivered",
}


def _actor_id(actor):
    return getattr(actor, "id", actor)


def list_assignments(transfer_id: int) -> list[DeliveryAssignment]:
    transfer_service.require_transfer(transfer_id)
    return (
        db.session.query(DeliveryAssignment)
        .filter_by(transfer_id=transfer_id)
        .order_by(DeliveryAssignment.id.asc())
        .all()
    )


def assign_delivery(
    transfer_id: int,
    assignee_id,
    actor,
    *,
    vehicle_number: str | None = None,
    driver_name: str | None = None,
    driver_phone: str | None = None,
    notes: str | None = None,
) -> DeliveryAssignment:
    def _op():
        transfer = transfer_service.require_transfer(transfer_id, lock=True)
        if transfer.transfer_status not in _ASSIGNABLE_STATUSES:
            raise InvalidTransitionError(
                f"Delivery cannot be assigned while the transfer is {transfer.transfer_status}"
            )
        if not role_service.has_any_role_on_transfer(actor, transfer, DELIVERY_ASSIGNER_ROLES):
            raise UnauthorizedError("You are not authorized to assign delivery for this transfer")
        assignee = require_active_user(assignee_id, field="assigned_to")

        assignment = DeliveryAssignment(
            transfer_id=transfer.id,
            assigned_to=assignee.id,
            assigned_by=_actor_id(actor),
            vehicle_number=optional_text(vehicle_number, "vehicle_number"),
            driver_name=optional_text(driver_name, "driver_name"),
            driver_phone=optional_text(driver_phone, "driver_phone"),
            delivery_status=DeliveryStatus.PENDING,
            delivery_notes=optional_text(notes, "notes"),
            assigned_at=utcnow(),
        )
        db.session.add(assignment)
        db.session.flush()
        logger.info(
            "Delivery %s on transfer %s assigned to user %s",
            assignment.id, transfer.transfer_number, assignee.id,
        )
        return assignment

    return run_with_retry(_op)


def _record_delivered(assignment: DeliveryAssignment, transfer: Transfer, pairs, actor) -> None:
    items = {item.id: item for item in transfer.items}

    if not pairs:
        pairs = [(item.id, item.remaining_to_deliver) for item in transfer.items if item.remaining_to_deliver > 0]

    totals: dict[int, int] = {}
    for item_id, quantity in pairs:
        if item_id not in items:
            raise ValidationError(f"Item {item_id} does not belong to this transfer")
        totals[item_id] = totals.get(item_id, 0) + quantity
    for item_id, added in totals.items():
        item = items[item_id]
        if item.quantity_delivered + added > item.quantity_packed:
            raise ValidationError(
                f"Delivered quantity for {item.product_name} cannot exceed packed quantity "
                f"({item.quantity_packed})"
            )

    now = utcnow()
    for item_id, quantity in pairs:
        item = items[item_id]
        item.quantity_delivered += quantity
        assignment.delivered_quantities.append(DeliveredQuantityRecord(
            transfer_item_id=item.id,
            quantity=quantity,
            recorded_by=_actor_id(actor),
            recorded_at=now,
        ))
    db.session.flush()


def _walk_transfer(transfer: Transfer, target: str, actor, *, final_note: str | None) -> None:
    """Advance the transfer one logged step at a time until it reaches target."""
    current = transfer.transfer_status
    if current not in FULFILLMENT_PATH:
        raise InvalidTransitionError(f"Transfer in status {current} is not out for delivery")

    start = FULFILLMENT_PATH.index(current)
    end = FULFILLMENT_PATH.index(target)
    for step in FULFILLMENT_PATH[start + 1:end + 1]:
        note = final_note if step == target and final_note else _STEP_NOTES[step]
        transfer_service.change_status(transfer.id, step, actor, notes=note, cascade=True)


def update_delivery_status(
    assignment_id: int,
    new_status: str,
    actor,
    *,
    recipient_name: str | None = None,
    notes: str | None = None,
    item_quantities=None,
    transfer_id: int | None = None,
) -> DeliveryAssignment:
    """
    Move a delivery assignment forward and drive the transfer along with it.

    pending -> picked_up -> in_transit -> delivered, and failed from any
    non-terminal state. Repeating the current status is a no-op, so each
    timestamp is set once. picked_up / in_transit / delivered walk the
    transfer through FULFILLMENT_PATH, one change_status call per step.
    """
    if new_status not in DELIVERY_STATUSES:
        raise ValidationError(f"delivery_status must be one of: {', '.join(DELIVERY_STATUSES)}")
    assignment_id = coerce_int(assignment_id, "assignment_id")
    if transfer_id is not None:
        transfer_id = coerce_int(transfer_id, "transfer_id")
    recipient_name = optional_text(recipient_name, "recipient_name")
    notes = optional_text(notes, "notes")
    pairs = normalize_item_quantities(item_quantities)
    if pairs and new_status != DeliveryStatus.DELIVERED:
        raise ValidationError("Delivered quantities can only be recorded when marking a delivery delivered")

    def _op():
        assignment = lock_for_update(
            db.session.query(DeliveryAssignment).filter_by(id=assignment_id)
        ).first()
        if not assignment or (transfer_id is not None and assignment.transfer_id != transfer_id):
            raise NotFoundError("Delivery assignment not found")
        transfer = transfer_service.require_transfer(assignment.transfer_id, lock=True)

        is_assignee = assignment.assigned_to == _actor_id(actor)
        if not is_assignee and not role_service.has_any_role_on_transfer(actor, transfer, DELIVERY_WORKER_ROLES):
            raise UnauthorizedError("You are not authorized to update this delivery")

        current = assignment.delivery_status
        if current == new_status:
            return assignment
        if (current, new_status) not in DELIVERY_TRANSITIONS:
            raise InvalidTransitionError(f"Cannot move delivery from {current} to {new_status}")

        now = utcnow()
        assignment.delivery_status = new_status
        stamp = _STATUS_STAMPS[new_status]
        if getattr(assignment, stamp) is None:
            setattr(assignment, stamp, now)
        if recipient_name:
            assignment.recipient_name = recipient_name
        if notes:
            assignment.delivery_notes = notes
        db.session.flush()

        final_note = None
        if new_status == DeliveryStatus.DELIVERED:
            _record_delivered(assignment, transfer, pairs, actor)
            final_note = "Delivered"
            if assignment.recipient_name:
                final_note = f'Delivered, received by "{assignment.recipient_name}"'
            if notes:
                final_note = f"{final_note}. {notes}"

        target = DELIVERY_CASCADE_TARGET.get(new_status)
        if target:
            _walk_transfer(transfer, target, actor, final_note=final_note)

        logger.info(
            "Delivery %s on transfer %s: %s -> %s",
            assignment.id, transfer.transfer_number, current, new_status,
        )
        return assignment

    return run_with_retry(_op)
