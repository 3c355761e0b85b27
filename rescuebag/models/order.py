"""
RescueBag — Order DB models and status enumerations

[CONFIG DATA]        packs — listed by businesses, stock mutated by reservations
[TRANSACTIONAL DATA] orders, payment_attempts

Statuses are closed enumerations; the stored value equals the member name so
raw SQL and ORM reads never disagree on casing.
"""
import uuid
from datetime import date, datetime
from enum import Enum as PyEnum
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Date, DateTime, Enum, Integer, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column
from rescuebag.db.database import Base


class FulfillmentStatus(str, PyEnum):
    CREATED = "CREATED"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_FULFILLMENT


TERMINAL_FULFILLMENT = frozenset({
    FulfillmentStatus.PICKED_UP,
    FulfillmentStatus.DELIVERED,
    FulfillmentStatus.CANCELED,
})


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentOutcome(str, PyEnum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentOutcome.PENDING


class PaymentMethod(str, PyEnum):
    STRIPE = "STRIPE"
    MERCADOPAGO = "MERCADOPAGO"
    PAYU = "PAYU"
    NEQUI = "NEQUI"
    DAVIPLATA = "DAVIPLATA"
    CASH = "CASH"


class FulfillmentMethod(str, PyEnum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class PackRow(Base):
    """
    [CONFIG DATA] — A surprise bag listed by a business.
    version_id is the optimistic locking column; stock never goes negative.
    """
    __tablename__ = "packs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_price: Mapped[int] = mapped_column(Integer, nullable=False)    # minor units
    discounted_price: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    pickup_start: Mapped[str | None] = mapped_column(String(5), nullable=True)  # "17:00"
    pickup_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="check_stock_non_negative"),
    )


class OrderRow(Base):
    """
    [TRANSACTIONAL DATA] — One reservation of N units of a pack.
    The commercial snapshot (prices, quantity) is written once at creation.
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    pack_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    business_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_discounted_price: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_original_price: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    fulfillment_method: Mapped[FulfillmentMethod] = mapped_column(
        Enum(FulfillmentMethod, name="fulfillment_method"), nullable=False,
        default=FulfillmentMethod.PICKUP,
    )
    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        Enum(FulfillmentStatus, name="fulfillment_status"), index=True, nullable=False,
        default=FulfillmentStatus.CREATED,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status"), nullable=False, default=PaymentStatus.PENDING,
    )
    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        Enum(PaymentMethod, name="payment_method"), nullable=True,
    )

    qr_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    qr_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    pickup_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    preparing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ready_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # optimistic lock

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_quantity_positive"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderRow id={self.id} fulfillment={self.fulfillment_status} "
            f"payment={self.payment_status}>"
        )


class PaymentAttemptRow(Base):
    """
    [TRANSACTIONAL DATA] — One provider call or notification for an order.
    (provider_reference, outcome) is unique: replays of the same outcome are no-ops.
    """
    __tablename__ = "payment_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod, name="payment_method"), nullable=False)
    provider_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    outcome: Mapped[PaymentOutcome] = mapped_column(
        Enum(PaymentOutcome, name="payment_outcome"), nullable=False,
    )
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider_reference", "outcome", name="uq_payment_attempt_reference_outcome"),
    )
