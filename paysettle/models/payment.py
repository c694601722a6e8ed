"""Payment model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"


class Payment(Base):
    """One row per settled provider payment, keyed by (provider, external_payment_id)."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "external_payment_id",
            name="uq_payments_provider_external_payment_id",
        ),
        CheckConstraint("amount >= 0", name="ck_payment_non_negative_amount"),
        Index("ix_payments_status", "status"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=True, index=True
    )
    webhook_event_id: Mapped[int | None] = mapped_column(ForeignKey("webhook_events.id"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    user = relationship("User", back_populates="payments")
    subscription = relationship("Subscription", back_populates="payments")
