# Overview: Request decorators for API routes (acting user resolution).

from functools import wraps
from flask import current_app, g, jsonify, request

from .services import directory_service


def require_actor(f):
    """
    Resolve the acting user and expose it as g.current_user.

    Authentication happens upstream; the gateway forwards the user id in the
    configured ACTOR_HEADER (X-User-Id by default). Returns 401 if:
    - the header is missing
    - the id does not resolve to a user
    - the user is deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        header = current_app.config.get("ACTOR_HEADER", "X-User-Id")
        raw_id = request.headers.get(header)
        if not raw_id:
            return jsonify({"error": "Authentication required"}), 401

        user = directory_service.get_user(raw_id.strip())
        if not user or not user.is_active:
            return jsonify({"error": "Unknown or inactive user"}), 401

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function
