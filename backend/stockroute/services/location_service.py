from __future__ import annotations

import logging

from sqlalchemy import or_

from stockroute.errors import NotFoundError, ValidationError
from stockroute.extensions import db
from stockroute.models import Location, Transfer
from stockroute.services.concurrency import lock_for_update, run_with_retry
from stockroute.validation import ModelValidationPolicy, enforce_rules_location, validate_payload
from stockroute.workflow import LocationType

logger = logging.getLogger(__name__)

LOCATION_POLICY = ModelValidationPolicy(
    writable_fields={
        "location_name", "location_code", "location_type",
        "city", "address", "phone_number", "notes",
        "is_active", "project_id",
    },
    required_on_create={"location_name", "location_code", "location_type"},
)

# Fields baked into transfer labels and the role gate
FROZEN_ONCE_REFERENCED = ("location_name", "location_code", "location_type")


def get_location(location_id) -> Location | None:
    try:
        location_id = int(location_id)
    except (TypeError, ValueError):
        return None
    return db.session.get(Location, location_id)


def require_location(location_id) -> Location:
    location = get_location(location_id)
    if not location:
        raise NotFoundError("Location not found")
    return location


def is_referenced(location_id: int) -> bool:
    return db.session.query(Transfer.id).filter(
        or_(
            Transfer.source_location_id == location_id,
            Transfer.destination_location_id == location_id,
        )
    ).first() is not None


def list_locations(
    *,
    project_id: int | None = None,
    location_type: str | None = None,
    active: bool | None = None,
) -> tuple[list[Location], dict]:
    query = db.session.query(Location)
    if project_id is not None:
        query = query.filter(Location.project_id == project_id)
    if location_type:
        query = query.filter(Location.location_type == location_type)
    if active is not None:
        query = query.filter(Location.is_active.is_(active))

    locations = query.order_by(Location.location_name.asc(), Location.id.asc()).all()
    stats = {
        "total": len(locations),
        "stores": sum(1 for loc in locations if loc.location_type == LocationType.STORE),
        "warehouses": sum(1 for loc in locations if loc.location_type == LocationType.WAREHOUSE),
        "active": sum(1 for loc in locations if loc.is_active),
    }
    return locations, stats


def _ensure_code_free(code: str, *, exclude_id: int | None = None) -> None:
    query = db.session.query(Location.id).filter(Location.location_code == code)
    if exclude_id is not None:
        query = query.filter(Location.id != exclude_id)
    if query.first():
        raise ValidationError(f"Location code {code} already exists")


def create_location(payload: dict) -> Location:
    def _op():
        patch = validate_payload(model=Location, payload=payload, policy=LOCATION_POLICY, partial=False)
        enforce_rules_location(patch)
        _ensure_code_free(patch["location_code"])

        location = Location(**patch)
        db.session.add(location)
        db.session.flush()
        logger.info("Location %s created (%s)", location.location_code, location.location_type)
        return location

    return run_with_retry(_op)


def update_location(location_id: int, payload: dict) -> Location:
    """
    Patch a location.

    Once any transfer references the location, name/code/type are frozen;
    activation and contact details stay editable.
    """
    def _op():
        location = lock_for_update(db.session.query(Location).filter_by(id=location_id)).first()
        if not location:
            raise NotFoundError("Location not found")

        patch = validate_payload(model=Location, payload=payload, policy=LOCATION_POLICY, partial=True)
        enforce_rules_location(patch)

        changed_frozen = [
            k for k in FROZEN_ONCE_REFERENCED
            if k in patch and patch[k] != getattr(location, k)
        ]
        if changed_frozen and is_referenced(location.id):
            raise ValidationError(
                f"Cannot change {', '.join(changed_frozen)} of a location referenced by transfers"
            )
        if "location_code" in patch and patch["location_code"] != location.location_code:
            _ensure_code_free(patch["location_code"], exclude_id=location.id)

        for k, v in patch.items():
            setattr(location, k, v)
        db.session.flush()
        return location

    return run_with_retry(_op)
