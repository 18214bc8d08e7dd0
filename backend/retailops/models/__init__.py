from .orders import Order, OrderItem, OrderActivity
from .inventory import ProductVariant, StockMovement, InventoryTransaction, InventoryTransactionItem
from .support import Ticket, NotificationLog, DocumentSequence

__all__ = [
    'Order', 'OrderItem', 'OrderActivity',
    'ProductVariant', 'StockMovement', 'InventoryTransaction', 'InventoryTransactionItem',
    'Ticket', 'NotificationLog', 'DocumentSequence',
]
