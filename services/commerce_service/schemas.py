"""Pydantic schemas for the commerce service."""

import re
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from services.commerce_service.models import (
    DeliveryOption,
    OrderStatus,
    PaymentStatus,
)

_TAGS = re.compile(r"[<>]")
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+=", re.IGNORECASE)
_POSTAL_CODE = re.compile(r"^[A-Za-z0-9\s\-]{3,10}$")
_PHONE = re.compile(r"^\+?[1-9]\d{0,15}$")
_PHONE_NOISE = re.compile(r"[\s\-\(\)]")


def sanitize_text(value: str) -> str:
    """Strip markup and script vectors from free-text input."""
    value = _TAGS.sub("", value)
    value = _JS_SCHEME.sub("", value)
    value = _EVENT_HANDLER.sub("", value)
    return value.strip()


# ============================================================================
# CART SCHEMAS
# ============================================================================


class CartItemCreate(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(1, gt=0)
    variant_id: Optional[str] = Field(None, max_length=255)
    variant_attributes: Optional[dict[str, str]] = None
    # Price the client displayed; honoured only if it matches a catalog price
    price: Optional[Decimal] = Field(None, ge=0)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=0)


class CartLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    product_name: Optional[str] = None
    variant_id: str
    variant_attributes: Optional[dict] = None
    quantity: int
    price: Decimal
    currency: str
    applied_discount: Decimal = Decimal("0")
    line_total: Decimal = Decimal("0")


class CartTotals(BaseModel):
    total_items: int = 0
    subtotal: Decimal = Decimal("0")
    total_discount: Decimal = Decimal("0")
    final_total: Decimal = Decimal("0")


class CartResponse(BaseModel):
    items: list[CartLineResponse] = []
    totals: CartTotals = CartTotals()


class CustomerCareContact(BaseModel):
    email: str
    phone: str
    hours: str


class CustomerCare(BaseModel):
    message: str
    contact_info: CustomerCareContact


class PartialStockInfo(BaseModel):
    requested: int
    available: int
    added: int
    remaining: int
    restock_message: str
    customer_care: CustomerCare


class AddToCartResponse(BaseModel):
    success: bool = True
    message: str
    item: CartLineResponse
    partial_stock: Optional[PartialStockInfo] = None


class GuestCartItem(BaseModel):
    """A line from a guest cart. Incomplete lines are skipped, not rejected."""

    product_id: Optional[uuid.UUID] = None
    quantity: int = 0
    variant_id: Optional[str] = Field(None, max_length=255)
    variant_attributes: Optional[dict[str, str]] = None


class CartMergeRequest(BaseModel):
    items: list[GuestCartItem] = []


class MergedLine(BaseModel):
    product_id: uuid.UUID
    variant_id: str
    action: str  # "merged" or "added"
    quantity: int
    added: int


class MergeConflict(BaseModel):
    product_id: uuid.UUID
    variant_id: str
    requested: int
    available: Optional[int] = None
    reason: str


class MergeSummary(BaseModel):
    total_items: int
    merged: int
    conflicts: int


class CartMergeResponse(BaseModel):
    merged: list[MergedLine] = []
    conflicts: list[MergeConflict] = []
    summary: MergeSummary


# ============================================================================
# STOCK SCHEMAS
# ============================================================================


class StockLevel(BaseModel):
    product_id: uuid.UUID
    available: Optional[int] = None  # None means unlimited
    in_stock: bool


class PrimaryValueIn(BaseModel):
    attribute: str = Field(..., min_length=1, max_length=100)
    value: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(0, ge=0)


class StockUpdateRequest(BaseModel):
    stock_quantity: Optional[int] = Field(None, ge=0)
    variants: Optional[dict[uuid.UUID, list[PrimaryValueIn]]] = None


# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    address1: str = Field(..., min_length=5, max_length=200)
    address2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    state: str = Field(..., min_length=2, max_length=50)
    postal_code: str
    country: str = Field(..., min_length=2, max_length=50)
    phone: str
    email: EmailStr

    @field_validator(
        "full_name", "address1", "address2", "city", "state", "postal_code",
        "country", "phone",
        mode="before",
    )
    @classmethod
    def sanitize(cls, v):
        if isinstance(v, str):
            return sanitize_text(v)
        return v

    @field_validator("postal_code")
    @classmethod
    def check_postal_code(cls, v: str) -> str:
        if not _POSTAL_CODE.match(v):
            raise ValueError("Invalid postal code")
        return v

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v: str) -> str:
        if not _PHONE.match(_PHONE_NOISE.sub("", v)):
            raise ValueError("Invalid phone number")
        return v


class CheckoutRequest(BaseModel):
    # Kept loose here; the checkout flow validates and reports field errors
    shipping_address: Optional[dict] = None
    payment_method: Optional[str] = None
    delivery_option: Optional[str] = None


class CheckoutResponse(BaseModel):
    order_id: str
    reference_id: str
    pickup_id: str
    total: Decimal
    currency: str
    status: OrderStatus
    payment_status: PaymentStatus
    item_count: int
    created_at: datetime


# ============================================================================
# ORDER SCHEMAS
# ============================================================================


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    product_name: str
    variant_id: str
    variant_attributes: Optional[dict] = None
    quantity: int
    unit_price: Decimal
    applied_discount: Decimal
    total_price: Decimal


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reference_id: str
    pickup_id: str
    total_amount: Decimal
    currency: str
    shipping_address: Optional[dict] = None
    delivery_option: DeliveryOption
    payment_method: Optional[str] = None
    payment_status: PaymentStatus
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemResponse] = []


# ============================================================================
# PAYMENT SCHEMAS
# ============================================================================


class PaymentStatusUpdate(BaseModel):
    payment_status: str
    payment_id: Optional[str] = Field(None, max_length=255)
    payment_method: Optional[str] = Field(None, max_length=50)


class PaymentStatusResponse(BaseModel):
    reference_id: str
    pickup_id: str
    payment_status: PaymentStatus
    status: OrderStatus


class PaymentCallbackPayload(BaseModel):
    """Provider callback body. The provider names the event key inconsistently."""

    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    event_type: Optional[str] = Field(None, alias="eventType")
    data: dict = {}

    @property
    def event_name(self) -> Optional[str]:
        return self.event or self.event_type


class PaymentCallbackResponse(BaseModel):
    success: bool = True
    message: str
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None


# ============================================================================
# LIFECYCLE SCHEMAS
# ============================================================================


class CleanupResponse(BaseModel):
    failed_count: int
    deleted_count: int
    total_processed: int
    timestamp: datetime
