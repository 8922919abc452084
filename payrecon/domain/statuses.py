from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Settlement status of a payment."""

    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"

    @property
    def display_name(self) -> str:
        """Human-friendly label used by the admin dashboard."""

        mapping = {
            self.PROCESSING: "Processing",
            self.SUCCEEDED: "Paid",
            self.FAILED: "Failed",
            self.CANCELLED: "Cancelled",
            self.REFUNDED: "Refunded",
            self.PARTIALLY_REFUNDED: "Partially refunded",
        }
        return mapping.get(self, self.value)

    @property
    def is_settled(self) -> bool:
        return self in {self.SUCCEEDED, self.PARTIALLY_REFUNDED, self.REFUNDED}


class OrderStatus(str, Enum):
    """Status of a customer order."""

    NEW = "NEW"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    def can_become(self, target: "OrderStatus") -> bool:
        """Whether payment-driven transitions may move an order to ``target``.

        SHIPPED and DELIVERED belong to fulfillment and are never targets here.
        """
        if target == self:
            return False
        if target == OrderStatus.PROCESSING:
            return self == OrderStatus.NEW
        if target == OrderStatus.CANCELLED:
            return self in {OrderStatus.NEW, OrderStatus.PROCESSING}
        if target == OrderStatus.REFUNDED:
            return self not in {OrderStatus.CANCELLED, OrderStatus.REFUNDED}
        return False


class EventKind(str, Enum):
    """Provider-independent kind of a payment notification."""

    CREATED = "CREATED"
    AUTHORIZED = "AUTHORIZED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"
