# Overview: Location Registry API routes; parses input and returns JSON responses.

from flask import Blueprint, current_app, jsonify, request

from stockroute.decorators import require_actor
from stockroute.errors import NotFoundError, TransferWorkflowError, error_response
from stockroute.extensions import db
from stockroute.services import location_service
from stockroute.services.concurrency import commit_with_retry


locations_bp = Blueprint("transfer_locations", __name__, url_prefix="/api/transfers/locations")


def _active_filter():
    raw = request.args.get("active")
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in ("1", "true", "yes")


@locations_bp.get("")
@require_actor
def list_locations():
    locations, stats = location_service.list_locations(
        project_id=request.args.get("project_id", type=int),
        location_type=request.args.get("location_type") or None,
        active=_active_filter(),
    )
    return jsonify({"locations": [loc.to_dict() for loc in locations], "stats": stats}), 200


@locations_bp.post("")
@require_actor
def create_location():
    try:
        location = location_service.create_location(request.get_json(silent=True))
        commit_with_retry()
        return jsonify({"location": location.to_dict()}), 201
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create location")
        return jsonify({"error": "Internal server error"}), 500


@locations_bp.get("/<int:location_id>")
@require_actor
def get_location(location_id: int):
    location = location_service.get_location(location_id)
    if not location:
        return error_response(NotFoundError("Location not found"))
    return jsonify({"location": location.to_dict()}), 200


@locations_bp.patch("/<int:location_id>")
@require_actor
def update_location(location_id: int):
    try:
        location = location_service.update_location(location_id, request.get_json(silent=True))
        commit_with_retry()
        return jsonify({"location": location.to_dict()}), 200
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update location")
        return jsonify({"error": "Internal server error"}), 500
