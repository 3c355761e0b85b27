"""
RescueBag — Pydantic schemas

Domain snapshots (Pack, Order, PaymentAttempt) are what the stores hand out:
plain values, never live ORM rows, so no caller can mutate stored state by
accident. Request/response models for the HTTP layer live alongside them.
"""
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from rescuebag.models.order import (
    FulfillmentMethod,
    FulfillmentStatus,
    PaymentMethod,
    PaymentOutcome,
    PaymentStatus,
)


# ─── Domain snapshots ─────────────────────────────────────────────────────────

class Pack(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    business_id: str
    title: str
    description: str | None = None
    original_price: int = Field(..., ge=0)
    discounted_price: int = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    active: bool = True
    pickup_start: str | None = None
    pickup_end: str | None = None
    version_id: int = 1

    @property
    def discount_percentage(self) -> int:
        if not self.original_price:
            return 0
        return round(100 * (self.original_price - self.discounted_price) / self.original_price)


class Order(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    pack_id: str
    business_id: str

    quantity: int = Field(..., gt=0)
    unit_discounted_price: int
    unit_original_price: int
    total_price: int
    discount_amount: int
    currency: str

    fulfillment_method: FulfillmentMethod = FulfillmentMethod.PICKUP
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.CREATED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod | None = None

    qr_token: str | None = None
    qr_expires_at: datetime | None = None
    redeemed_at: datetime | None = None

    notes: str | None = None
    pickup_date: date | None = None
    cancellation_reason: str | None = None
    idempotency_key: str | None = None

    created_at: datetime
    paid_at: datetime | None = None
    confirmed_at: datetime | None = None
    preparing_at: datetime | None = None
    ready_at: datetime | None = None
    canceled_at: datetime | None = None
    updated_at: datetime

    version_id: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.fulfillment_status.is_terminal


class PaymentAttempt(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    method: PaymentMethod
    provider_reference: str
    outcome: PaymentOutcome
    amount: int | None = None
    payment_url: str | None = None
    failure_reason: str | None = None
    raw: dict[str, Any] | None = None
    received_at: datetime


# ─── Packs API ────────────────────────────────────────────────────────────────

class PackCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    original_price: int = Field(..., gt=0, description="Price in minor units")
    discounted_price: int = Field(..., gt=0, description="Price in minor units")
    stock: int = Field(..., ge=0)
    pickup_start: str | None = Field(None, pattern=r"^\d{2}:\d{2}$", examples=["17:00"])
    pickup_end: str | None = Field(None, pattern=r"^\d{2}:\d{2}$", examples=["20:00"])


# ─── Orders API ───────────────────────────────────────────────────────────────

class OrderCreateRequest(BaseModel):
    pack_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1, le=20)
    notes: str | None = Field(None, max_length=500)
    pickup_date: date | None = None
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.PICKUP


class OrderListResponse(BaseModel):
    orders: list[Order]
    total: int
    limit: int
    offset: int


class CancelRequest(BaseModel):
    reason: str = Field("", max_length=500)


class AdvanceRequest(BaseModel):
    to: FulfillmentStatus = Field(..., examples=["PREPARING", "READY"])


class QrScanRequest(BaseModel):
    qr_token: str = Field(..., min_length=1)


class QrScanResponse(BaseModel):
    valid: bool
    message: str
    order: Order


# ─── Payments API ─────────────────────────────────────────────────────────────

class PaymentCreateRequest(BaseModel):
    order_id: str
    method: PaymentMethod
    customer_email: EmailStr


class PaymentCreateResponse(BaseModel):
    payment_id: str
    provider_reference: str
    payment_url: str
    order: Order


class PaymentOrderResponse(BaseModel):
    order: Order
    attempts: list[PaymentAttempt] = []
    can_show_qr: bool


class WebhookAck(BaseModel):
    success: bool
    order_id: str
    payment_status: PaymentStatus
    duplicate: bool = False


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    dependencies: dict[str, str]
