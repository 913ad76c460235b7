# Overview: Transfer state machine definition and role permissions; pure, no database access.

"""
StockRoute Transfer Workflow

STATE MACHINE:
    requested -> store_approved -> warehouse_approved -> packing -> packed
              -> dispatched -> in_transit -> delivered

    requested      -> rejected | cancelled
    store_approved -> rejected

    delivered, rejected, cancelled are terminal.

RULES:
1. Only pairs listed in TRANSITIONS are legal. No skipping, no reversing.
2. SYSTEM transitions are driven by the packing tracker, never by a user
   request. They still go through the same change_status entry point.
3. Cancellation belongs to the original requester, not to a role.
4. A role only grants authority at the location where it is held, and
   manager roles only count at a location of the matching type.
"""

from __future__ import annotations

from enum import Enum

from .errors import ValidationError


class TransferStatus:
    """Transfer status values (stored as plain strings)."""
    REQUESTED = "requested"
    STORE_APPROVED = "store_approved"
    WAREHOUSE_APPROVED = "warehouse_approved"
    PACKING = "packing"
    PACKED = "packed"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


ALL_STATUSES = (
    TransferStatus.REQUESTED,
    TransferStatus.STORE_APPROVED,
    TransferStatus.WAREHOUSE_APPROVED,
    TransferStatus.PACKING,
    TransferStatus.PACKED,
    TransferStatus.DISPATCHED,
    TransferStatus.IN_TRANSIT,
    TransferStatus.DELIVERED,
    TransferStatus.REJECTED,
    TransferStatus.CANCELLED,
)

TERMINAL_STATUSES = frozenset({
    TransferStatus.DELIVERED,
    TransferStatus.REJECTED,
    TransferStatus.CANCELLED,
})

IN_PROGRESS_STATUSES = frozenset({
    TransferStatus.STORE_APPROVED,
    TransferStatus.WAREHOUSE_APPROVED,
    TransferStatus.PACKING,
    TransferStatus.PACKED,
    TransferStatus.DISPATCHED,
    TransferStatus.IN_TRANSIT,
})


class Role(str, Enum):
    LINEMAN = "lineman"
    STORE_MANAGER = "store_manager"
    WAREHOUSE_MANAGER = "warehouse_manager"
    PACKING_TEAM = "packing_team"
    LOGISTICS_MANAGER = "logistics_manager"
    LOGISTICS_TEAM = "logistics_team"


class LocationType:
    STORE = "store"
    WAREHOUSE = "warehouse"


VALID_LOCATION_TYPES = (LocationType.STORE, LocationType.WAREHOUSE)
VALID_PRIORITIES = ("low", "normal", "high", "urgent")
VALID_UNITS = ("pcs", "kg", "box")


class Side:
    """Which end of a transfer a location sits on."""
    SOURCE = "source"
    DESTINATION = "destination"


BOTH_SIDES = frozenset({Side.SOURCE, Side.DESTINATION})


# Who may drive each transition.
ACTOR_ROLE = "role"
ACTOR_REQUESTER = "requester"
ACTOR_SYSTEM = "system"

# (from, to) -> (actor kind, sides whose role assignments are consulted)
TRANSITIONS: dict[tuple[str, str], tuple[str, frozenset[str]]] = {
    (TransferStatus.REQUESTED, TransferStatus.STORE_APPROVED): (ACTOR_ROLE, frozenset({Side.SOURCE})),
    (TransferStatus.REQUESTED, TransferStatus.REJECTED): (ACTOR_ROLE, BOTH_SIDES),
    (TransferStatus.REQUESTED, TransferStatus.CANCELLED): (ACTOR_REQUESTER, frozenset()),
    (TransferStatus.STORE_APPROVED, TransferStatus.WAREHOUSE_APPROVED): (ACTOR_ROLE, BOTH_SIDES),
    (TransferStatus.STORE_APPROVED, TransferStatus.REJECTED): (ACTOR_ROLE, BOTH_SIDES),
    (TransferStatus.WAREHOUSE_APPROVED, TransferStatus.PACKING): (ACTOR_SYSTEM, frozenset()),
    (TransferStatus.PACKING, TransferStatus.PACKED): (ACTOR_SYSTEM, frozenset()),
    (TransferStatus.PACKED, TransferStatus.DISPATCHED): (ACTOR_ROLE, BOTH_SIDES),
    (TransferStatus.DISPATCHED, TransferStatus.IN_TRANSIT): (ACTOR_ROLE, BOTH_SIDES),
    (TransferStatus.IN_TRANSIT, TransferStatus.DELIVERED): (ACTOR_ROLE, BOTH_SIDES),
}

# Forward path used when a delivery update has to walk the transfer forward.
FULFILLMENT_PATH = (
    TransferStatus.PACKED,
    TransferStatus.DISPATCHED,
    TransferStatus.IN_TRANSIT,
    TransferStatus.DELIVERED,
)


_STORE_MANAGER_TRANSITIONS = frozenset({
    (TransferStatus.REQUESTED, TransferStatus.STORE_APPROVED),
    (TransferStatus.REQUESTED, TransferStatus.REJECTED),
})

_WAREHOUSE_MANAGER_TRANSITIONS = frozenset({
    (TransferStatus.REQUESTED, TransferStatus.STORE_APPROVED),
    (TransferStatus.REQUESTED, TransferStatus.REJECTED),
    (TransferStatus.STORE_APPROVED, TransferStatus.WAREHOUSE_APPROVED),
    (TransferStatus.STORE_APPROVED, TransferStatus.REJECTED),
})

_DISPATCH_TRANSITIONS = frozenset({
    (TransferStatus.PACKED, TransferStatus.DISPATCHED),
})

_LOGISTICS_TEAM_TRANSITIONS = frozenset({
    (TransferStatus.DISPATCHED, TransferStatus.IN_TRANSIT),
    (TransferStatus.IN_TRANSIT, TransferStatus.DELIVERED),
})


def validate_status(status: str) -> None:
    if status not in ALL_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(ALL_STATUSES)}"
        )


def parse_role(value) -> Role:
    """Convert a raw role string to Role, raising ValueError for unknown values."""
    if isinstance(value, Role):
        return value
    return Role(str(value).strip())


def is_legal_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in TRANSITIONS


def is_system_transition(from_status: str, to_status: str) -> bool:
    entry = TRANSITIONS.get((from_status, to_status))
    return entry is not None and entry[0] == ACTOR_SYSTEM


def permitted_transitions(role: Role | str, location_type: str) -> frozenset[tuple[str, str]]:
    """
    Transitions a role grants when held at a location of the given type.

    Manager roles are type-bound: a store manager only approves from a store,
    a warehouse manager only from a warehouse. Packing and logistics roles
    work at either kind of location.
    """
    role = parse_role(role)

    if role is Role.STORE_MANAGER:
        return _STORE_MANAGER_TRANSITIONS if location_type == LocationType.STORE else frozenset()
    if role is Role.WAREHOUSE_MANAGER:
        return _WAREHOUSE_MANAGER_TRANSITIONS if location_type == LocationType.WAREHOUSE else frozenset()
    if role in (Role.LOGISTICS_MANAGER, Role.PACKING_TEAM):
        return _DISPATCH_TRANSITIONS
    if role is Role.LOGISTICS_TEAM:
        return _LOGISTICS_TEAM_TRANSITIONS
    return frozenset()


def approval_target(current_status: str) -> str | None:
    """Next status an 'approve' action resolves to, or None if nothing to approve."""
    if current_status == TransferStatus.REQUESTED:
        return TransferStatus.STORE_APPROVED
    if current_status == TransferStatus.STORE_APPROVED:
        return TransferStatus.WAREHOUSE_APPROVED
    return None


# Roles allowed to hand out packing and delivery work at either end of a transfer.
PACKING_ASSIGNER_ROLES = frozenset({Role.WAREHOUSE_MANAGER, Role.PACKING_TEAM})
DELIVERY_ASSIGNER_ROLES = frozenset({Role.LOGISTICS_MANAGER})
DELIVERY_WORKER_ROLES = frozenset({Role.LOGISTICS_MANAGER, Role.LOGISTICS_TEAM})


# -- Sub-workflows --

class PackingStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


PACKING_STATUSES = (PackingStatus.PENDING, PackingStatus.IN_PROGRESS, PackingStatus.COMPLETED)

PACKING_TRANSITIONS = frozenset({
    (PackingStatus.PENDING, PackingStatus.IN_PROGRESS),
    (PackingStatus.IN_PROGRESS, PackingStatus.COMPLETED),
})


class DeliveryStatus:
    PENDING = "pending"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"


DELIVERY_STATUSES = (
    DeliveryStatus.PENDING,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.FAILED,
)

DELIVERY_TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED})

DELIVERY_TRANSITIONS = frozenset({
    (DeliveryStatus.PENDING, DeliveryStatus.PICKED_UP),
    (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT),
    (DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED),
    (DeliveryStatus.PENDING, DeliveryStatus.FAILED),
    (DeliveryStatus.PICKED_UP, DeliveryStatus.FAILED),
    (DeliveryStatus.IN_TRANSIT, DeliveryStatus.FAILED),
})

# Transfer status a delivery update drives the parent transfer to.
DELIVERY_CASCADE_TARGET = {
    DeliveryStatus.PICKED_UP: TransferStatus.DISPATCHED,
    DeliveryStatus.IN_TRANSIT: TransferStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED: TransferStatus.DELIVERED,
}
