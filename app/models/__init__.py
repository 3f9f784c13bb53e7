# Models
from .product import Product, ProductVariant, ProductStatus
from .inventory import Inventory, InventoryLocation, StockStatus
from .inventory_reservations import InventoryReservation, ReservationKind, ReservationStatus
from .orders import Order, OrderItem, OrderStatus, PaymentStatus
from .payments import PaymentTransaction, PaymentWebhookLog, TransactionStatus
from .discounts import Discount, DiscountCode, DiscountTarget, DiscountUsage
from .outbox import OutboxEvent

__all__ = [
    "Product",
    "ProductVariant",
    "ProductStatus",
    "Inventory",
    "InventoryLocation",
    "StockStatus",
    "InventoryReservation",
    "ReservationKind",
    "ReservationStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "PaymentTransaction",
    "PaymentWebhookLog",
    "TransactionStatus",
    "Discount",
    "DiscountCode",
    "DiscountTarget",
    "DiscountUsage",
    "OutboxEvent",
]
