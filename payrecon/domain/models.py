from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from .enums import ProviderName, ReconcileResult
from .statuses import EventKind, OrderStatus, PaymentStatus

if TYPE_CHECKING:
    from .dtos import EventMetadata


@dataclass
class Customer:
    """Customer identity, matched by contact email."""

    email: str
    name: str
    phone: str = ""
    city: str = ""
    address: str = ""
    id: int | None = None


@dataclass
class OrderItem:
    product_ref: str
    name: str
    quantity: int
    unit_price: Decimal
    variation_ref: str | None = None

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class Order:
    """Internal representation of a customer purchase."""

    customer_name: str
    customer_email: str
    total: Decimal
    customer_phone: str = ""
    shipping_city: str = ""
    shipping_address: str = ""
    subtotal: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    shipping_cost: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    status: OrderStatus = OrderStatus.NEW
    external_payment_ref: str | None = None
    payment_provider: ProviderName | None = None
    customer_id: int | None = None
    items: list[OrderItem] = field(default_factory=list)
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Payment:
    """One external payment attempt and its settlement lifecycle."""

    provider: ProviderName
    external_payment_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus = PaymentStatus.PROCESSING
    order_id: int | None = None
    external_charge_id: str | None = None
    refunded_amount: Decimal = Decimal("0.00")
    failure_reason: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - self.refunded_amount


# Refund row holding back an amount while the provider call is in flight.
REFUND_RESERVED = "reserved"


@dataclass
class RefundRecord:
    payment_id: int
    provider: ProviderName
    amount: Decimal
    status: str
    provider_refund_id: str | None = None
    reason: str | None = None
    idempotency_key: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class NormalizedEvent:
    """Provider notification reduced to what the reconciler needs.

    ``kind`` is ``None`` for provider event types we do not act on. For
    ``REFUNDED`` events ``amount`` is the provider's cumulative refunded total.
    """

    provider: ProviderName
    external_payment_id: str | None
    kind: EventKind | None
    amount: Decimal | None = None
    currency: str | None = None
    metadata: "EventMetadata | None" = None
    metadata_error: str | None = None
    raw_timestamp: datetime | None = None
    event_id: str | None = None
    event_type: str | None = None
    charge_id: str | None = None
    failure_reason: str | None = None


@dataclass
class MaterializationDraft:
    """Everything needed to create the first Order/Payment pair atomically."""

    customer: Customer
    order: Order
    payment: Payment


@dataclass
class ReconcileOutcome:
    result: ReconcileResult
    order: Order | None = None
    payment: Payment | None = None
    detail: str | None = None
