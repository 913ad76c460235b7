from .directory import User
from .locations import Location, Product, RoleAssignment
from .transfers import (
    Transfer,
    TransferItem,
    StatusLogEntry,
    PackingTask,
    PackedQuantityRecord,
    DeliveryAssignment,
    DeliveredQuantityRecord,
    DocumentSequence,
)

__all__ = [
    'User',
    'Location', 'Product', 'RoleAssignment',
    'Transfer', 'TransferItem', 'StatusLogEntry',
    'PackingTask', 'PackedQuantityRecord',
    'DeliveryAssignment', 'DeliveredQuantityRecord',
    'DocumentSequence',
]
