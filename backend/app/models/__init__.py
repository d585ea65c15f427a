from .auth import User, UserRole, AuthSession
from .catalog import Supplier, Product, ProductCategory
from .inventory import (
    Batch,
    StockOperation,
    StockMovement,
    StockReservation,
    StockAuditEvent,
    OperationType,
    MovementType,
    ReservationType,
    AuditEventType,
)
from .sales import (
    Customer,
    Sale,
    SaleItem,
    Payment,
    SaleAuditLog,
    DocumentSequence,
    SaleStatus,
    SALE_TRANSITIONS,
    PaymentMethod,
    PaymentStatus,
)

__all__ = [
    'User', 'UserRole', 'AuthSession',
    'Supplier', 'Product', 'ProductCategory',
    'Batch', 'StockOperation', 'StockMovement', 'StockReservation', 'StockAuditEvent',
    'OperationType', 'MovementType', 'ReservationType', 'AuditEventType',
    'Customer', 'Sale', 'SaleItem', 'Payment', 'SaleAuditLog', 'DocumentSequence',
    'SaleStatus', 'SALE_TRANSITIONS', 'PaymentMethod', 'PaymentStatus',
]
