# Overview: Role assignment API routes; grants and revokes workflow roles per location.

from flask import Blueprint, current_app, g, jsonify, request

from stockroute.decorators import require_actor
from stockroute.errors import TransferWorkflowError, error_response
from stockroute.extensions import db
from stockroute.services import role_service
from stockroute.services.concurrency import commit_with_retry


roles_bp = Blueprint("transfer_roles", __name__, url_prefix="/api/transfers/roles")


@roles_bp.get("")
@require_actor
def list_roles():
    assignments = role_service.list_roles(
        location_id=request.args.get("location_id", type=int),
        user_id=request.args.get("user_id", type=int),
    )
    return jsonify({"roles": [a.to_dict() for a in assignments]}), 200


@roles_bp.post("")
@require_actor
def grant_role():
    """
    Request body:
    {
        "user_id": int,
        "location_id": int,
        "role": str,
        "employee_id": int (optional)
    }

    Returns:
        201: Role granted
        400: Invalid role, inactive user or unknown location
        409: User already holds this role at this location
    """
    data = request.get_json(silent=True) or {}
    try:
        assignment = role_service.grant_role(
            user_id=data["user_id"],
            location_id=data["location_id"],
            role=data["role"],
            employee_id=data.get("employee_id"),
            assigned_by=g.current_user,
        )
        commit_with_retry()
        return jsonify({"role": assignment.to_dict()}), 201
    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to grant role")
        return jsonify({"error": "Internal server error"}), 500


@roles_bp.delete("/<int:assignment_id>")
@require_actor
def revoke_role(assignment_id: int):
    try:
        assignment = role_service.deactivate_role(assignment_id)
        commit_with_retry()
        return jsonify({"role": assignment.to_dict()}), 200
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to revoke role")
        return jsonify({"error": "Internal server error"}), 500
