from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .enums import ProviderName, ReconcileResult
from .statuses import OrderStatus, PaymentStatus


class MetadataItem(BaseModel):
    """Line item as carried in provider metadata (best effort, may be truncated upstream)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    product_ref: str = Field(validation_alias=AliasChoices("product_ref", "productId", "id", "reference_id"))
    name: str = Field(default="", validation_alias=AliasChoices("name", "title"))
    unit_price: Decimal = Field(validation_alias=AliasChoices("unit_price", "price"))
    quantity: int = Field(default=1, ge=1)
    variation_ref: str | None = Field(default=None, validation_alias=AliasChoices("variation_ref", "variationId"))


class EventMetadata(BaseModel):
    """Closed set of customer/order fields accepted from provider metadata."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    customer_name: str = Field(min_length=1, validation_alias=AliasChoices("customer_name", "customerName"))
    customer_email: str = Field(min_length=3, validation_alias=AliasChoices("customer_email", "customerEmail"))
    customer_phone: str = Field(default="", validation_alias=AliasChoices("customer_phone", "customerPhone"))
    shipping_city: str = Field(min_length=1, validation_alias=AliasChoices("shipping_city", "shippingCity"))
    shipping_address: str = Field(min_length=1, validation_alias=AliasChoices("shipping_address", "shippingAddress"))
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    shipping_cost: Decimal | None = Field(default=None, validation_alias=AliasChoices("shipping_cost", "shippingCost"))
    discount: Decimal | None = None
    total: Decimal | None = None
    items: list[MetadataItem] = Field(default_factory=list, validation_alias=AliasChoices("items", "orderItems"))

    @field_validator("customer_email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("customer_email is not an email address")
        return value.lower()

    @field_validator("subtotal", "tax", "shipping_cost", "discount", "total", mode="before")
    @classmethod
    def _blank_amount(cls, value: Any) -> Any:
        return None if value in ("", None) else value

    @field_validator("items", mode="before")
    @classmethod
    def _decode_items(cls, value: Any) -> Any:
        # Stripe metadata values are strings, so items arrive JSON encoded and
        # possibly cut at 500 characters; unparseable items fall back to [].
        if value in (None, ""):
            return []
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return []
        if not isinstance(value, list):
            return []
        valid = []
        for raw in value:
            try:
                valid.append(MetadataItem.model_validate(raw))
            except ValidationError:
                continue
        return valid

    @classmethod
    def parse(cls, raw: dict[str, Any] | None) -> tuple["EventMetadata | None", str | None]:
        """Validate ``raw`` and return ``(metadata, None)`` or ``(None, error)``."""
        if not raw:
            return None, "metadata missing"
        try:
            return cls.model_validate(raw), None
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            return None, "invalid metadata fields: " + ", ".join(fields)

    def to_provider_metadata(self) -> dict[str, str]:
        """Flat string mapping in the shape Stripe metadata accepts."""
        items = [
            {
                "id": item.product_ref,
                "name": item.name,
                "price": str(item.unit_price),
                "quantity": item.quantity,
                "variationId": item.variation_ref,
            }
            for item in self.items
        ]
        data = {
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "customerPhone": self.customer_phone,
            "shippingCity": self.shipping_city,
            "shippingAddress": self.shipping_address,
            "itemsCount": str(len(self.items)),
            "orderItems": json.dumps(items)[:500],
        }
        for key, value in (
            ("subtotal", self.subtotal),
            ("tax", self.tax),
            ("shippingCost", self.shipping_cost),
            ("discount", self.discount),
            ("total", self.total),
        ):
            if value is not None:
                data[key] = str(value)
        return data


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutCustomer(_CamelModel):
    full_name: str = Field(min_length=1, alias="fullName")
    email: str = Field(min_length=3)
    phone: str = ""


class CheckoutShipping(_CamelModel):
    city: str = Field(min_length=1)
    address: str = Field(min_length=1)
    zip: str = ""


class CheckoutItem(_CamelModel):
    id: str
    name: str
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)
    variation_id: str | None = Field(default=None, alias="variationId")
    category: str = "Coffee"
    image_url: str = Field(default="", alias="imageUrl")


class CheckoutRequest(_CamelModel):
    """Cart totals and customer details posted by the storefront."""

    provider: ProviderName = ProviderName.STRIPE
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="AED", min_length=3, max_length=3)
    customer_info: CheckoutCustomer = Field(alias="customerInfo")
    shipping_info: CheckoutShipping = Field(alias="shippingInfo")
    items: list[CheckoutItem] = Field(min_length=1)
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    shipping_cost: Decimal | None = Field(default=None, alias="shippingCost")
    discount: Decimal = Decimal("0")
    order_reference: str | None = Field(default=None, alias="orderReference")

    def to_metadata(self) -> EventMetadata:
        return EventMetadata(
            customer_name=self.customer_info.full_name,
            customer_email=self.customer_info.email,
            customer_phone=self.customer_info.phone,
            shipping_city=self.shipping_info.city,
            shipping_address=self.shipping_info.address,
            subtotal=self.subtotal,
            tax=self.tax,
            shipping_cost=self.shipping_cost,
            discount=self.discount,
            total=self.amount,
            items=[
                MetadataItem(
                    product_ref=item.id,
                    name=item.name,
                    unit_price=item.price,
                    quantity=item.quantity,
                    variation_ref=item.variation_id,
                )
                for item in self.items
            ],
        )


class CheckoutIntentResponse(_CamelModel):
    provider: ProviderName
    payment_id: str = Field(alias="paymentId")
    client_secret: str | None = Field(default=None, alias="clientSecret")
    checkout_url: str | None = Field(default=None, alias="checkoutUrl")


class CheckoutConfirmRequest(CheckoutRequest):
    payment_id: str = Field(min_length=1, alias="paymentId")


class OrderItemView(_CamelModel):
    product_ref: str = Field(alias="productRef")
    name: str
    quantity: int
    unit_price: Decimal = Field(alias="unitPrice")
    subtotal: Decimal


class OrderView(_CamelModel):
    id: int
    status: OrderStatus
    customer_email: str = Field(alias="customerEmail")
    customer_name: str = Field(alias="customerName")
    total: Decimal
    external_payment_ref: str | None = Field(default=None, alias="externalPaymentRef")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    items: list[OrderItemView] = Field(default_factory=list)


class PaymentView(_CamelModel):
    id: int
    provider: ProviderName
    external_payment_id: str = Field(alias="externalPaymentId")
    status: PaymentStatus
    amount: Decimal
    currency: str
    refunded_amount: Decimal = Field(alias="refundedAmount")
    failure_reason: str | None = Field(default=None, alias="failureReason")
    created_at: datetime | None = Field(default=None, alias="createdAt")


class CheckoutConfirmResponse(_CamelModel):
    success: bool
    result: ReconcileResult
    order: OrderView | None = None
    payment: PaymentView | None = None


class RefundRequest(_CamelModel):
    payment_id: int = Field(alias="paymentId")
    amount: Decimal
    reason: str | None = None


class RefundInfo(_CamelModel):
    id: str | None
    amount: Decimal
    status: str


class RefundResponse(_CamelModel):
    success: bool
    refund: RefundInfo | None = None
    payment: PaymentView | None = None
    error: str | None = None


class CaptureRequest(_CamelModel):
    payment_id: int = Field(alias="paymentId")
    amount: Decimal | None = None


class CaptureResponse(_CamelModel):
    success: bool
    payment: PaymentView | None = None
    error: str | None = None


class RecoverRequest(_CamelModel):
    payment_intent_id: str = Field(min_length=1, alias="paymentIntentId")
    provider: ProviderName | None = None


class RecoverResponse(_CamelModel):
    success: bool
    message: str
    status: str | None = None
    order: OrderView | None = None


class ProviderPaymentView(_CamelModel):
    id: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    created: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class LedgerCrossReference(_CamelModel):
    order_exists: bool = Field(alias="orderExists")
    payment_exists: bool = Field(alias="paymentExists")
    order: OrderView | None = None
    payment: PaymentView | None = None


class InspectResponse(_CamelModel):
    provider: ProviderPaymentView
    database: LedgerCrossReference


class ProviderAttemptView(_CamelModel):
    provider: ProviderName
    id: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    created: datetime | None = None
    customer_email: str | None = Field(default=None, alias="customerEmail")
    has_order: bool = Field(default=False, alias="hasOrder")


class OrphanReport(_CamelModel):
    total: int
    orphans: list[ProviderAttemptView]


class IncompleteReport(_CamelModel):
    total: int
    without_orders: int = Field(alias="withoutOrders")
    by_status: dict[str, int] = Field(alias="byStatus")
    payments: list[ProviderAttemptView]


class WebhookAck(BaseModel):
    received: bool = True
