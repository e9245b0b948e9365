from .catalog import Product, Supplier
from .stock import StockItem, StockMovement
from .orders import Order, OrderItem, OrderStatusHistory, Payment, DeliveryTracking, DeliveryTrackingEvent
from .purchasing import PurchaseOrder, PurchaseOrderItem, PurchaseOrderStatusHistory, PurchaseOrderReceipt
from .finance import FinanceAccount, FinanceTransaction, JournalEntry, JournalEntryLine
from .documents import DocumentSequence

__all__ = [
    'Product', 'Supplier',
    'StockItem', 'StockMovement',
    'Order', 'OrderItem', 'OrderStatusHistory', 'Payment',
    'DeliveryTracking', 'DeliveryTrackingEvent',
    'PurchaseOrder', 'PurchaseOrderItem', 'PurchaseOrderStatusHistory', 'PurchaseOrderReceipt',
    'FinanceAccount', 'FinanceTransaction', 'JournalEntry', 'JournalEntryLine',
    'DocumentSequence',
]
