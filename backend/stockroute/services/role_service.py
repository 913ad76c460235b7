# Overview: Role Assignment Store and the Role Gate that consults it.

from __future__ import annotations

import logging

from stockroute.errors import ConflictError, NotFoundError, ValidationError
from stockroute.extensions import db
from stockroute.models import Location, RoleAssignment, Transfer
from stockroute.services.concurrency import lock_for_update, run_with_retry
from stockroute.services.directory_service import require_active_user
from stockroute.services.location_service import get_location
from stockroute.workflow import (
    ACTOR_REQUESTER,
    ACTOR_ROLE,
    TRANSITIONS,
    Role,
    Side,
    parse_role,
    permitted_transitions,
)

logger = logging.getLogger(__name__)


def _actor_id(actor) -> int | None:
    if actor is None:
        return None
    return getattr(actor, "id", actor)


def active_roles_at(actor, location_id: int) -> set[Role]:
    """Roles the actor currently holds at a location."""
    actor_id = _actor_id(actor)
    if actor_id is None or location_id is None:
        return set()
    rows = (
        db.session.query(RoleAssignment.role)
        .filter_by(user_id=actor_id, location_id=location_id, is_active=True)
        .all()
    )
    roles: set[Role] = set()
    for (raw,) in rows:
        try:
            roles.add(parse_role(raw))
        except ValueError:
            logger.warning("Ignoring unknown role %r on user %s", raw, actor_id)
    return roles


def authorize(actor, location_id: int, required_role) -> bool:
    """True if the actor holds an active assignment of required_role at location_id."""
    return parse_role(required_role) in active_roles_at(actor, location_id)


def _side_location(transfer: Transfer, side: str) -> Location | None:
    if side == Side.SOURCE:
        return transfer.source_location
    return transfer.destination_location


def authorize_transition(actor, transfer: Transfer, from_status: str, to_status: str) -> bool:
    """
    Decide whether the actor may drive transfer from_status -> to_status.

    Requester-owned transitions check authorship; role transitions look at the
    actor's roles on the sides the transition table names and ask the pure
    permission function whether any of them grants the pair at that location's
    type. System transitions are never user-authorized.
    """
    entry = TRANSITIONS.get((from_status, to_status))
    if entry is None:
        return False
    kind, sides = entry

    if kind == ACTOR_REQUESTER:
        return _actor_id(actor) is not None and transfer.requested_by == _actor_id(actor)
    if kind != ACTOR_ROLE:
        return False

    for side in sides:
        location = _side_location(transfer, side)
        if location is None:
            continue
        for role in active_roles_at(actor, location.id):
            if (from_status, to_status) in permitted_transitions(role, location.location_type):
                return True
    return False


def has_any_role_on_transfer(actor, transfer: Transfer, roles) -> bool:
    """True if the actor holds any of roles at the transfer's source or destination."""
    wanted = {parse_role(r) for r in roles}
    for location_id in (transfer.source_location_id, transfer.destination_location_id):
        if wanted & active_roles_at(actor, location_id):
            return True
    return False


def manager_location_ids(actor, role) -> list[int]:
    role = parse_role(role)
    rows = (
        db.session.query(RoleAssignment.location_id)
        .filter_by(user_id=_actor_id(actor), role=role.value, is_active=True)
        .all()
    )
    return [row.location_id for row in rows]


# -- Role assignment CRUD --

def list_roles(*, location_id: int | None = None, user_id: int | None = None, include_inactive: bool = False) -> list[RoleAssignment]:
    query = db.session.query(RoleAssignment)
    if location_id is not None:
        query = query.filter(RoleAssignment.location_id == location_id)
    if user_id is not None:
        query = query.filter(RoleAssignment.user_id == user_id)
    if not include_inactive:
        query = query.filter(RoleAssignment.is_active.is_(True))
    return query.order_by(RoleAssignment.id.asc()).all()


def grant_role(*, user_id, location_id, role, employee_id=None, assigned_by=None) -> RoleAssignment:
    def _op():
        try:
            parsed = parse_role(role)
        except ValueError:
            raise ValidationError(f"Invalid role. Must be one of: {', '.join(r.value for r in Role)}")

        user = require_active_user(user_id)
        location = get_location(location_id)
        if not location:
            raise ValidationError("location_id must reference an existing location")

        existing = (
            db.session.query(RoleAssignment)
            .filter_by(user_id=user.id, location_id=location.id, role=parsed.value, is_active=True)
            .first()
        )
        if existing:
            raise ConflictError("User already has this role at this location")

        assignment = RoleAssignment(
            user_id=user.id,
            location_id=location.id,
            role=parsed.value,
            employee_id=employee_id,
            assigned_by=_actor_id(assigned_by),
            is_active=True,
        )
        db.session.add(assignment)
        db.session.flush()
        logger.info("Granted %s at %s to user %s", parsed.value, location.location_code, user.id)
        return assignment

    return run_with_retry(_op)


def deactivate_role(assignment_id: int) -> RoleAssignment:
    def _op():
        assignment = lock_for_update(
            db.session.query(RoleAssignment).filter_by(id=assignment_id)
        ).first()
        if not assignment:
            raise NotFoundError("Role assignment not found")
        assignment.is_active = False
        db.session.flush()
        logger.info("Deactivated role assignment %s", assignment.id)
        return assignment

    return run_with_retry(_op)
