"""SQLAlchemy database models for the payment gateway hub."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Transaction(Base):
    """
    Transaction ledger table.

    One row per payment attempt routed to a provider. Rows are never
    deleted; status history, refunds and webhook evidence accumulate in
    ``metadata``.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("refunded_amount >= 0", name="non_negative_refund"),
        CheckConstraint("refunded_amount <= amount", name="refund_within_amount"),
        CheckConstraint("retry_count >= 0", name="non_negative_retry_count"),
        CheckConstraint(
            "status IN ('initiated', 'processing', 'completed', 'failed', "
            "'partially_refunded', 'refunded', 'canceled', 'disputed')",
            name="valid_status",
        ),
        CheckConstraint("provider IN ('stripe', 'paypal')", name="valid_provider"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        UniqueConstraint("provider", "provider_transaction_id", name="uq_provider_transaction"),
        Index("idx_transactions_retry_due", "status", "next_retry_at"),
        Index("idx_transactions_customer_created", "customer_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, provider={self.provider}, "
            f"amount={self.amount} {self.currency}, status={self.status})>"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation used by the API layer."""
        return {
            "id": str(self.id),
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "provider": self.provider,
            "provider_transaction_id": self.provider_transaction_id,
            "payment_method": self.payment_method,
            "description": self.description,
            "customer_id": self.customer_id,
            "customer_email": self.customer_email,
            "refunded_amount": self.refunded_amount,
            "retry_count": self.retry_count,
            "next_retry_at": ensure_utc(self.next_retry_at),
            "error_message": self.error_message,
            "error_code": self.error_code,
            "metadata": self.metadata_ or {},
            "completed_at": ensure_utc(self.completed_at),
            "created_at": ensure_utc(self.created_at),
            "updated_at": ensure_utc(self.updated_at),
        }
