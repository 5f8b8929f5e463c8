"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel
from .payment import PaymentModel, RefundModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "PaymentModel",
    "RefundModel",
]
