from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class User(db.Model):
    """
    Identity Directory entry.

    Authentication happens upstream; this table only lets the workflow
    resolve an acting user id to a display name and check that the user
    is still active.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_users_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
        }

    def to_dict(self) -> dict:
        return {
            **self.to_summary(),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
