# backend/stockroute/routes/transfers.py
"""
Transfer workflow API routes: requests, approvals, packing, delivery, history.

Every mutating route follows the same shape: call the service, commit with
retry, serialize. Domain errors roll back and map to their status code;
anything unexpected rolls back, is logged, and returns a generic 500.
"""
from flask import Blueprint, current_app, g, jsonify, request

from stockroute.decorators import require_actor
from stockroute.errors import TransferWorkflowError, ValidationError, error_response
from stockroute.extensions import db
from stockroute.services import delivery_service, packing_service, status_log_service, transfer_service
from stockroute.services.concurrency import commit_with_retry


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


def _internal_error(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


@transfers_bp.route("", methods=["POST"])
@require_actor
def create_transfer():
    """
    Create a transfer request.

    Request body:
    {
        "source_location_id": int,
        "destination_location_id": int,
        "items": [{"product_name": str, "quantity_requested": int, "unit": str, ...}],
        "priority": str (optional),
        "request_notes": str (optional),
        "expected_delivery_date": "YYYY-MM-DD" (optional),
        "project_id": int (optional)
    }

    Returns:
        201: Transfer created
        400: Invalid request
    """
    try:
        data = _json_body()
        transfer = transfer_service.request_transfer(
            source_location_id=data["source_location_id"],
            destination_location_id=data["destination_location_id"],
            items=data.get("items"),
            requester=g.current_user,
            priority=data.get("priority"),
            request_notes=data.get("request_notes"),
            expected_delivery_date=data.get("expected_delivery_date"),
            project_id=data.get("project_id"),
        )
        commit_with_retry()
        return jsonify({"transfer": transfer.to_dict()}), 201

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to create transfer")


@transfers_bp.route("", methods=["GET"])
@require_actor
def list_transfers():
    """
    List transfers for a dashboard tab.

    Query params: tab (all|my_requests|approvals|packing|logistics), status,
    search, project_id.
    """
    try:
        transfers, stats = transfer_service.list_transfers(
            g.current_user,
            tab=request.args.get("tab", "all"),
            status=request.args.get("status") or None,
            search=request.args.get("search"),
            project_id=request.args.get("project_id", type=int),
        )
        return jsonify({
            "transfers": [t.to_dict(include_items=False) for t in transfers],
            "stats": stats,
        }), 200

    except TransferWorkflowError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to list transfers")


@transfers_bp.route("/<int:transfer_id>", methods=["GET"])
@require_actor
def get_transfer(transfer_id: int):
    try:
        return jsonify(transfer_service.get_transfer_detail(transfer_id)), 200
    except TransferWorkflowError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to load transfer")


@transfers_bp.route("/<int:transfer_id>", methods=["PATCH"])
@require_actor
def update_transfer(transfer_id: int):
    """Edit priority, request_notes or expected_delivery_date while requested."""
    try:
        transfer = transfer_service.update_transfer(transfer_id, g.current_user, _json_body())
        commit_with_retry()
        return jsonify({"transfer": transfer.to_dict()}), 200

    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to update transfer")


@transfers_bp.route("/<int:transfer_id>/approve", methods=["POST"])
@require_actor
def approve_transfer(transfer_id: int):
    """
    Approve, reject or cancel a transfer.

    Request body:
    {
        "action": "approve" | "reject" | "cancel" (default "approve"),
        "notes": str (optional),
        "rejection_reason": str (required for reject),
        "expected_status": str (optional, status the caller last saw)
    }

    Returns:
        200: Transfer updated
        400: Invalid request / missing rejection reason
        403: Actor lacks the role for this step
        404: Transfer not found
        409: Not legal from the current status (including a lost race)
    """
    try:
        data = _json_body()
        action = data.get("action", "approve")
        notes = data.get("notes")
        expected_status = data.get("expected_status")

        if action == "approve":
            transfer = transfer_service.approve(
                transfer_id, g.current_user, notes=notes, expected_status=expected_status,
            )
        elif action == "reject":
            transfer = transfer_service.reject(
                transfer_id, g.current_user, data.get("rejection_reason"),
                notes=notes, expected_status=expected_status,
            )
        elif action == "cancel":
            transfer = transfer_service.cancel(
                transfer_id, g.current_user, notes=notes, expected_status=expected_status,
            )
        else:
            raise ValidationError("action must be one of: approve, reject, cancel")

        commit_with_retry()
        return jsonify({"transfer": transfer.to_dict()}), 200

    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to process approval action")


@transfers_bp.route("/<int:transfer_id>/status", methods=["PATCH"])
@require_actor
def change_transfer_status(transfer_id: int):
    """
    Request body:
    {
        "new_status": str,
        "notes": str (optional),
        "expected_status": str (optional),
        "rejection_reason": str (required when new_status is rejected)
    }
    """
    try:
        data = _json_body()
        transfer = transfer_service.change_status(
            transfer_id,
            data["new_status"],
            g.current_user,
            notes=data.get("notes"),
            expected_status=data.get("expected_status"),
            rejection_reason=data.get("rejection_reason"),
        )
        commit_with_retry()
        return jsonify({"transfer": transfer.to_dict()}), 200

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to change transfer status")


@transfers_bp.route("/<int:transfer_id>/history", methods=["GET"])
@require_actor
def transfer_history(transfer_id: int):
    try:
        transfer_service.require_transfer(transfer_id)
        return jsonify({"history": status_log_service.history(transfer_id)}), 200
    except TransferWorkflowError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to load transfer history")


# -- Packing --

@transfers_bp.route("/<int:transfer_id>/packing", methods=["GET"])
@require_actor
def list_packing_tasks(transfer_id: int):
    try:
        tasks = packing_service.list_tasks(transfer_id)
        return jsonify({"tasks": [task.to_dict() for task in tasks]}), 200
    except TransferWorkflowError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to list packing tasks")


@transfers_bp.route("/<int:transfer_id>/packing", methods=["POST"])
@require_actor
def assign_packing(transfer_id: int):
    """
    Request body:
    {
        "assigned_to": int,
        "packing_notes": str (optional)
    }
    """
    try:
        data = _json_body()
        task = packing_service.assign_packing(
            transfer_id,
            data["assigned_to"],
            g.current_user,
            notes=data.get("packing_notes"),
        )
        commit_with_retry()
        return jsonify({"task": task.to_dict()}), 201

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to assign packing task")


@transfers_bp.route("/<int:transfer_id>/packing", methods=["PATCH"])
@require_actor
def update_packing_task(transfer_id: int):
    """
    Request body:
    {
        "task_id": int,
        "task_status": "in_progress" | "completed" (optional),
        "packing_notes": str (optional),
        "item_quantities": [{"item_id": int, "quantity": int}] (optional)
    }
    """
    try:
        data = _json_body()
        task = packing_service.update_packing_task(
            data["task_id"],
            g.current_user,
            new_status=data.get("task_status"),
            item_quantities=data.get("item_quantities"),
            notes=data.get("packing_notes"),
            transfer_id=transfer_id,
        )
        commit_with_retry()
        return jsonify({"task": task.to_dict()}), 200

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to update packing task")


# -- Delivery --

@transfers_bp.route("/<int:transfer_id>/delivery", methods=["GET"])
@require_actor
def list_delivery_assignments(transfer_id: int):
    try:
        assignments = delivery_service.list_assignments(transfer_id)
        return jsonify({"assignments": [a.to_dict() for a in assignments]}), 200
    except TransferWorkflowError as e:
        return error_response(e)
    except Exception:
        return _internal_error("Failed to list delivery assignments")


@transfers_bp.route("/<int:transfer_id>/delivery", methods=["POST"])
@require_actor
def assign_delivery(transfer_id: int):
    """
    Request body:
    {
        "assigned_to": int,
        "vehicle_number": str (optional),
        "driver_name": str (optional),
        "driver_phone": str (optional),
        "delivery_notes": str (optional)
    }
    """
    try:
        data = _json_body()
        assignment = delivery_service.assign_delivery(
            transfer_id,
            data["assigned_to"],
            g.current_user,
            vehicle_number=data.get("vehicle_number"),
            driver_name=data.get("driver_name"),
            driver_phone=data.get("driver_phone"),
            notes=data.get("delivery_notes"),
        )
        commit_with_retry()
        return jsonify({"assignment": assignment.to_dict()}), 201

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to assign delivery")


@transfers_bp.route("/<int:transfer_id>/delivery", methods=["PATCH"])
@require_actor
def update_delivery(transfer_id: int):
    """
    Request body:
    {
        "assignment_id": int,
        "delivery_status": str,
        "recipient_name": str (optional),
        "delivery_notes": str (optional),
        "item_quantities": [{"item_id": int, "quantity": int}] (optional, delivered only)
    }
    """
    try:
        data = _json_body()
        assignment = delivery_service.update_delivery_status(
            data["assignment_id"],
            data["delivery_status"],
            g.current_user,
            recipient_name=data.get("recipient_name"),
            notes=data.get("delivery_notes"),
            item_quantities=data.get("item_quantities"),
            transfer_id=transfer_id,
        )
        commit_with_retry()
        return jsonify({"assignment": assignment.to_dict()}), 200

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except TransferWorkflowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception:
        return _internal_error("Failed to update delivery")
