from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Location(db.Model):
    """
    Store or warehouse that transfers move stock between.

    Once a transfer references a location its name, code and type are frozen;
    transfers also keep their own denormalized labels.
    """
    __tablename__ = "transfer_locations"
    __table_args__ = (
        db.UniqueConstraint("location_code", name="uq_transfer_locations_code"),
        db.CheckConstraint("location_type IN ('store', 'warehouse')", name="ck_transfer_locations_type"),
        db.Index("ix_transfer_locations_project", "project_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    location_name = db.Column(db.String(120), nullable=False)
    location_code = db.Column(db.String(32), nullable=False)
    location_type = db.Column(db.String(16), nullable=False)

    city = db.Column(db.String(120), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    phone_number = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Opaque to the workflow; only used as a list filter
    project_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Location id={self.id} code={self.location_code!r} type={self.location_type}>"

    @property
    def label(self) -> str:
        return f"{self.location_name} ({self.location_code})"

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "location_name": self.location_name,
            "location_code": self.location_code,
            "location_type": self.location_type,
            "city": self.city,
        }

    def to_dict(self) -> dict:
        return {
            **self.to_summary(),
            "address": self.address,
            "phone_number": self.phone_number,
            "notes": self.notes,
            "is_active": self.is_active,
            "project_id": self.project_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Product(db.Model):
    """Catalog entry offered when building a transfer request."""
    __tablename__ = "transfer_products"
    __table_args__ = (
        db.Index("ix_transfer_products_project", "project_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_name = db.Column(db.String(200), nullable=False)
    product_code = db.Column(db.String(64), nullable=True, index=True)
    product_category = db.Column(db.String(120), nullable=True)
    brand = db.Column(db.String(120), nullable=True)
    unit = db.Column(db.String(16), nullable=False, default="pcs")
    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    project_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_name": self.product_name,
            "product_code": self.product_code,
            "product_category": self.product_category,
            "brand": self.brand,
            "unit": self.unit,
            "notes": self.notes,
            "is_active": self.is_active,
            "project_id": self.project_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class RoleAssignment(db.Model):
    """
    (user, location, role) grant consulted by the role gate.

    A user may hold several roles across several locations. Removing a grant
    deactivates the row so past approvals stay explainable.
    """
    __tablename__ = "transfer_roles"
    __table_args__ = (
        db.Index("ix_transfer_roles_user_location", "user_id", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    location_id = db.Column(db.Integer, db.ForeignKey("transfer_locations.id"), nullable=False, index=True)
    role = db.Column(db.String(32), nullable=False)

    # Back-reference into the employee directory, not interpreted here
    employee_id = db.Column(db.Integer, nullable=True)

    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    user = db.relationship("User", foreign_keys=[user_id])
    location = db.relationship("Location")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "location_id": self.location_id,
            "role": self.role,
            "employee_id": self.employee_id,
            "assigned_by": self.assigned_by,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "location": self.location.to_summary() if self.location else None,
            "profile": self.user.to_summary() if self.user else None,
        }
