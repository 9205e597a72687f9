from .catalog import ProductBatch, StockMovement
from .checkout import CheckoutQueueItem
from .orders import Order, OrderLine
from .payments import PaymentGroup

__all__ = [
    'ProductBatch', 'StockMovement',
    'CheckoutQueueItem',
    'Order', 'OrderLine',
    'PaymentGroup',
]
