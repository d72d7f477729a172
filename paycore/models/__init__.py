"""Модели базы данных."""
from paycore.models.user import User
from paycore.models.product import Product, ProductStatus
from paycore.models.order import Order, OrderStatus
from paycore.models.payment import (
    Payment,
    PaymentAuditLog,
    PaymentHold,
    PaymentHoldStatus,
    PaymentProviderName,
    PaymentStatus,
)

__all__ = [
    "User",
    "Product",
    "ProductStatus",
    "Order",
    "OrderStatus",
    "Payment",
    "PaymentAuditLog",
    "PaymentHold",
    "PaymentHoldStatus",
    "PaymentProviderName",
    "PaymentStatus",
]
