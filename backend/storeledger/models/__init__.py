from .catalog import Store, Product
from .stock import Stock, StockMovement, StockTransfer
from .sales import Sale, SaleLine, SaleStatusEvent
from .refunds import Refund, RefundLine, SaleRefundBalance, PendingRestoration

__all__ = [
    'Store', 'Product',
    'Stock', 'StockMovement', 'StockTransfer',
    'Sale', 'SaleLine', 'SaleStatusEvent',
    'Refund', 'RefundLine', 'SaleRefundBalance', 'PendingRestoration',
]
