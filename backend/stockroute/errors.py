# Overview: Domain error taxonomy for the transfer workflow and its HTTP mapping.

from __future__ import annotations

from flask import jsonify


class TransferWorkflowError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 400


class ValidationError(TransferWorkflowError, ValueError):
    """400-level input problem (missing fields, same source/destination, empty items)."""
    status_code = 400


class NotFoundError(TransferWorkflowError):
    """Unknown transfer, task, assignment, or reference record."""
    status_code = 404


class UnauthorizedError(TransferWorkflowError):
    """Actor lacks the role required for the action at the relevant location."""
    status_code = 403


class InvalidTransitionError(TransferWorkflowError):
    """Requested status change is not legal from the current state."""
    status_code = 409


class ConflictError(TransferWorkflowError):
    """
    409-level conflict with current state (duplicate grant, status changed
    underneath the caller since it was read).

    On transfer status changes the service layer re-raises it as
    InvalidTransitionError.
    """
    status_code = 409


def error_response(exc: TransferWorkflowError):
    """JSON body and status for a domain error."""
    if isinstance(exc, ConflictError):
        exc = InvalidTransitionError(str(exc))
    return jsonify({"error": str(exc)}), exc.status_code
