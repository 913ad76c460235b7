# Overview: Identity Directory lookups (acting user resolution, display names).

from __future__ import annotations

from ..errors import ValidationError
from ..extensions import db
from ..models import User


def get_user(user_id) -> User | None:
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        return None
    return db.session.get(User, user_id)


def resolve_user(user_id) -> dict | None:
    """Display record {id, full_name, email} for a user id, None if unknown."""
    user = get_user(user_id)
    return user.to_summary() if user else None


def display_names(user_ids) -> dict[int, str]:
    ids = {uid for uid in user_ids if uid is not None}
    if not ids:
        return {}
    rows = db.session.query(User.id, User.full_name).filter(User.id.in_(ids)).all()
    return {row.id: row.full_name for row in rows}


def require_active_user(user_id, *, field: str = "user_id") -> User:
    user = get_user(user_id)
    if not user or not user.is_active:
        raise ValidationError(f"{field} must reference an active user")
    return user


def create_user(*, full_name: str, email: str) -> User:
    full_name = (full_name or "").strip()
    email = (email or "").strip().lower()
    if not full_name or not email:
        raise ValidationError("full_name and email are required")
    if db.session.query(User).filter_by(email=email).first():
        raise ValidationError("A user with this email already exists")
    user = User(full_name=full_name, email=email, is_active=True)
    db.session.add(user)
    db.session.flush()
    return user
