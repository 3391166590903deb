"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Plan(Base):
    """
    ORM model for plans table.

    Plan catalog maintained outside this service. Read-only here.
    """

    __tablename__ = "plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Store product identifiers
    android_product_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    ios_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    # Display pricing
    unit_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    display_price: Mapped[str | None] = mapped_column(String(50), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("unit_amount_minor >= 0", name="ck_plans_amount_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, key={self.key})>"


class Subscription(Base):
    """
    ORM model for subscriptions table.

    One row per (user_id, environment). Mutated only by the reconciler
    through atomic upsert / conditional update statements. Never deleted.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    environment: Mapped[str] = mapped_column(String(20), nullable=False)

    plan_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False
    )
    device_type: Mapped[str] = mapped_column(String(10), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Purchase token (Android) or original transaction id (iOS)
    external_anchor_id: Mapped[str] = mapped_column(String(4096), nullable=False)
    current_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "environment", name="uq_subscriptions_user_environment"),
        CheckConstraint(
            "environment IN ('sandbox', 'production')", name="ck_subscriptions_environment"
        ),
        CheckConstraint("device_type IN ('ANDROID', 'IOS')", name="ck_subscriptions_device_type"),
        CheckConstraint(
            "status IN ('incomplete', 'trialing', 'active', 'past_due', 'canceling', 'canceled')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("amount_minor >= 0", name="ck_subscriptions_amount_non_negative"),
        Index("idx_subscriptions_anchor_environment", "external_anchor_id", "environment"),
        Index("idx_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"environment={self.environment}, status={self.status})>"
        )


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only financial record. The only permitted mutation is
    succeeded -> refunded.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Store transaction id (dedup key)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    environment: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="succeeded")
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("status IN ('succeeded', 'refunded')", name="ck_ledger_entries_status"),
        CheckConstraint("amount_minor >= 0", name="ck_ledger_entries_amount_non_negative"),
        CheckConstraint(
            "(status = 'refunded') = (refunded_at IS NOT NULL)",
            name="ck_ledger_entries_refunded_at",
        ),
        Index("idx_ledger_entries_paid_at", "paid_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(id={self.id}, transaction_id={self.transaction_id}, "
            f"amount={self.amount_minor}, status={self.status})>"
        )
