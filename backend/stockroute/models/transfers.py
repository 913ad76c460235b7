from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z, utcnow


class Transfer(db.Model):
    """
    Inter-location inventory transfer request.

    LIFECYCLE:
    1. requested: created by a lineman, awaiting source approval
    2. store_approved: source manager approved, awaiting warehouse approval
    3. warehouse_approved: cleared for packing
    4. packing: at least one packing task assigned
    5. packed: every item packed to its requested quantity
    6. dispatched / in_transit: handed to logistics
    7. delivered: received at destination (terminal)
    rejected / cancelled: terminal side branches

    Status only ever changes through transfer_service.change_status, which
    also appends the StatusLogEntry. version_id guards against two actors
    applying conflicting transitions from the same read.
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.UniqueConstraint("transfer_number", name="uq_transfers_number"),
        db.CheckConstraint("source_location_id <> destination_location_id", name="ck_transfers_distinct_locations"),
        db.Index("ix_transfers_status_requested", "transfer_status", "requested_at"),
        db.Index("ix_transfers_project", "project_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # e.g. "TRF-20260115-0003"
    transfer_number = db.Column(db.String(64), nullable=False)

    source_location_id = db.Column(db.Integer, db.ForeignKey("transfer_locations.id"), nullable=False, index=True)
    destination_location_id = db.Column(db.Integer, db.ForeignKey("transfer_locations.id"), nullable=False, index=True)

    # Labels captured at request time
    source_label = db.Column(db.String(200), nullable=False)
    destination_label = db.Column(db.String(200), nullable=False)

    priority = db.Column(db.String(16), nullable=False, default="normal")
    transfer_status = db.Column(db.String(32), nullable=False, default="requested", index=True)

    request_notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    expected_delivery_date = db.Column(db.Date, nullable=True)

    project_id = db.Column(db.Integer, nullable=True)

    # Attribution
    requested_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    store_approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    warehouse_approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Set once, on first entry to the matching status
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    store_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    warehouse_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    source_location = db.relationship("Location", foreign_keys=[source_location_id])
    destination_location = db.relationship("Location", foreign_keys=[destination_location_id])
    requester = db.relationship("User", foreign_keys=[requested_by])

    items = db.relationship(
        "TransferItem",
        back_populates="transfer",
        order_by="TransferItem.id",
        lazy=True,
    )
    status_log = db.relationship(
        "StatusLogEntry",
        back_populates="transfer",
        order_by="StatusLogEntry.id",
        lazy=True,
    )
    packing_tasks = db.relationship(
        "PackingTask",
        back_populates="transfer",
        order_by="PackingTask.id",
        lazy=True,
    )
    delivery_assignments = db.relationship(
        "DeliveryAssignment",
        back_populates="transfer",
        order_by="DeliveryAssignment.id",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Transfer id={self.id} number={self.transfer_number!r} status={self.transfer_status}>"

    def to_dict(self, *, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "transfer_number": self.transfer_number,
            "source_location_id": self.source_location_id,
            "destination_location_id": self.destination_location_id,
            "source_label": self.source_label,
            "destination_label": self.destination_label,
            "source": self.source_location.to_summary() if self.source_location else None,
            "destination": self.destination_location.to_summary() if self.destination_location else None,
            "priority": self.priority,
            "transfer_status": self.transfer_status,
            "request_notes": self.request_notes,
            "rejection_reason": self.rejection_reason,
            "expected_delivery_date": to_iso_date(self.expected_delivery_date),
            "project_id": self.project_id,
            "requested_by": self.requested_by,
            "store_approved_by": self.store_approved_by,
            "warehouse_approved_by": self.warehouse_approved_by,
            "rejected_by": self.rejected_by,
            "requested_at": to_utc_z(self.requested_at),
            "store_approved_at": to_utc_z(self.store_approved_at),
            "warehouse_approved_at": to_utc_z(self.warehouse_approved_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "dispatched_at": to_utc_z(self.dispatched_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class TransferItem(db.Model):
    """
    One product line on a transfer.

    Quantities only grow: packed increments come from PackedQuantityRecord,
    delivered increments from DeliveredQuantityRecord.
    0 <= delivered <= packed <= requested holds at all times.
    """
    __tablename__ = "transfer_items"
    __table_args__ = (
        db.CheckConstraint("quantity_requested >= 1", name="ck_transfer_items_requested"),
        db.CheckConstraint(
            "quantity_packed >= 0 AND quantity_packed <= quantity_requested",
            name="ck_transfer_items_packed",
        ),
        db.CheckConstraint(
            "quantity_delivered >= 0 AND quantity_delivered <= quantity_packed",
            name="ck_transfer_items_delivered",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False, index=True)

    # Null for free-text entries that are not in the catalog
    product_id = db.Column(db.Integer, db.ForeignKey("transfer_products.id"), nullable=True)
    product_name = db.Column(db.String(200), nullable=False)
    product_code = db.Column(db.String(64), nullable=True)
    product_category = db.Column(db.String(120), nullable=True)

    quantity_requested = db.Column(db.Integer, nullable=False)
    quantity_packed = db.Column(db.Integer, nullable=False, default=0)
    quantity_delivered = db.Column(db.Integer, nullable=False, default=0)
    unit = db.Column(db.String(16), nullable=False, default="pcs")
    item_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    transfer = db.relationship("Transfer", back_populates="items")
    product = db.relationship("Product")

    @property
    def remaining_to_pack(self) -> int:
        return self.quantity_requested - self.quantity_packed

    @property
    def remaining_to_deliver(self) -> int:
        return self.quantity_packed - self.quantity_delivered

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_code": self.product_code,
            "product_category": self.product_category,
            "quantity_requested": self.quantity_requested,
            "quantity_packed": self.quantity_packed,
            "quantity_delivered": self.quantity_delivered,
            "unit": self.unit,
            "item_notes": self.item_notes,
        }


class StatusLogEntry(db.Model):
    """
    Append-only record of one transfer status change.

    Rows are never updated or deleted. The first row of every transfer has
    from_status = NULL.
    """
    __tablename__ = "transfer_status_log"
    __table_args__ = (
        db.Index("ix_transfer_status_log_transfer_changed", "transfer_id", "changed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False)
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    notes = db.Column(db.Text, nullable=True)

    transfer = db.relationship("Transfer", back_populates="status_log")
    changer = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "changed_by": self.changed_by,
            "changed_at": to_utc_z(self.changed_at),
            "notes": self.notes,
        }


class PackingTask(db.Model):
    """Unit of picking/packing work assigned to one person."""
    __tablename__ = "transfer_packing_tasks"
    __table_args__ = (
        db.CheckConstraint(
            "task_status IN ('pending', 'in_progress', 'completed')",
            name="ck_transfer_packing_tasks_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False, index=True)
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    task_status = db.Column(db.String(16), nullable=False, default="pending")
    packing_notes = db.Column(db.Text, nullable=True)

    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    transfer = db.relationship("Transfer", back_populates="packing_tasks")
    assignee = db.relationship("User", foreign_keys=[assigned_to])
    packed_quantities = db.relationship(
        "PackedQuantityRecord",
        back_populates="packing_task",
        order_by="PackedQuantityRecord.id",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "assignee": self.assignee.to_summary() if self.assignee else None,
            "task_status": self.task_status,
            "packing_notes": self.packing_notes,
            "assigned_at": to_utc_z(self.assigned_at),
            "started_at": to_utc_z(self.started_at),
            "completed_at": to_utc_z(self.completed_at),
            "packed_quantities": [rec.to_dict() for rec in self.packed_quantities],
        }


class PackedQuantityRecord(db.Model):
    """Quantity of one item packed under one packing task."""
    __tablename__ = "transfer_packed_quantities"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_transfer_packed_quantities_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    packing_task_id = db.Column(db.Integer, db.ForeignKey("transfer_packing_tasks.id"), nullable=False, index=True)
    transfer_item_id = db.Column(db.Integer, db.ForeignKey("transfer_items.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    recorded_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    packing_task = db.relationship("PackingTask", back_populates="packed_quantities")
    transfer_item = db.relationship("TransferItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "packing_task_id": self.packing_task_id,
            "transfer_item_id": self.transfer_item_id,
            "quantity": self.quantity,
            "recorded_by": self.recorded_by,
            "recorded_at": to_utc_z(self.recorded_at),
        }


class DeliveryAssignment(db.Model):
    """Transport job for a packed transfer."""
    __tablename__ = "transfer_delivery_assignments"
    __table_args__ = (
        db.CheckConstraint(
            "delivery_status IN ('pending', 'picked_up', 'in_transit', 'delivered', 'failed')",
            name="ck_transfer_delivery_assignments_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("transfers.id"), nullable=False, index=True)
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    vehicle_number = db.Column(db.String(32), nullable=True)
    driver_name = db.Column(db.String(120), nullable=True)
    driver_phone = db.Column(db.String(32), nullable=True)

    delivery_status = db.Column(db.String(16), nullable=False, default="pending")
    recipient_name = db.Column(db.String(120), nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)

    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    picked_up_at = db.Column(db.DateTime(timezone=True), nullable=True)
    in_transit_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    transfer = db.relationship("Transfer", back_populates="delivery_assignments")
    assignee = db.relationship("User", foreign_keys=[assigned_to])
    delivered_quantities = db.relationship(
        "DeliveredQuantityRecord",
        back_populates="delivery_assignment",
        order_by="DeliveredQuantityRecord.id",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "assignee": self.assignee.to_summary() if self.assignee else None,
            "vehicle_number": self.vehicle_number,
            "driver_name": self.driver_name,
            "driver_phone": self.driver_phone,
            "delivery_status": self.delivery_status,
            "recipient_name": self.recipient_name,
            "delivery_notes": self.delivery_notes,
            "assigned_at": to_utc_z(self.assigned_at),
            "picked_up_at": to_utc_z(self.picked_up_at),
            "in_transit_at": to_utc_z(self.in_transit_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "failed_at": to_utc_z(self.failed_at),
            "delivered_quantities": [rec.to_dict() for rec in self.delivered_quantities],
        }


class DeliveredQuantityRecord(db.Model):
    """Quantity of one item handed over under one delivery assignment."""
    __tablename__ = "transfer_delivered_quantities"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_transfer_delivered_quantities_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    delivery_assignment_id = db.Column(
        db.Integer, db.ForeignKey("transfer_delivery_assignments.id"), nullable=False, index=True
    )
    transfer_item_id = db.Column(db.Integer, db.ForeignKey("transfer_items.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    recorded_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    delivery_assignment = db.relationship("DeliveryAssignment", back_populates="delivered_quantities")
    transfer_item = db.relationship("TransferItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "delivery_assignment_id": self.delivery_assignment_id,
            "transfer_item_id": self.transfer_item_id,
            "quantity": self.quantity,
            "recorded_by": self.recorded_by,
            "recorded_at": to_utc_z(self.recorded_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic document sequences keyed by prefix and day.

    WHY: Prevent race conditions when generating transfer numbers.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("sequence_key", name="uq_document_sequences_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sequence_key = db.Column(db.String(64), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sequence_key": self.sequence_key,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
