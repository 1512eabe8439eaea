"""
Webhook models.

Webhook is a subscriber endpoint; WebhookDelivery is the append-only
ledger of "event X must reach webhook Y" rows driven by the delivery engine.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, LargeBinary, JSON, ForeignKey, Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from gateway.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class DeliveryStatus(str, enum.Enum):
    """Delivery status enum. DELIVERED and FAILED are terminal."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Webhook(UUIDPrimaryKeyMixin, Base, TimestampMixin):
    """Subscriber endpoint registered by a marketplace user."""
    __tablename__ = "webhooks"

    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    secret: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    deliveries = relationship(
        "WebhookDelivery",
        back_populates="webhook",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    def __repr__(self):
        return f"<Webhook(id={self.id}, owner_id={self.owner_id}, url={self.url})>"


class WebhookDelivery(UUIDPrimaryKeyMixin, Base):
    """
    One (event, webhook) notification tracked to a terminal outcome.

    lease_expires_at is the claim: a worker may only attempt the row while it
    holds an unexpired lease it obtained through a conditional update.
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_due", "status", "next_retry_at"),
    )

    webhook_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    webhook = relationship("Webhook", back_populates="deliveries")

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, event={self.event}, status={self.status}, attempts={self.attempts})>"
