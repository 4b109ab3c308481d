"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations.
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
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime stored as UTC.

    Backends without native timezone support (SQLite) hand back naive values;
    those are read as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to UTCDateTime column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Resource(Base):
    """
    ORM model for resources table.

    Read-only mirror of the content catalog: price and object key per asset.
    """

    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    storage_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (CheckConstraint("price_minor >= 0", name="ck_resource_price_non_negative"),)

    def __repr__(self) -> str:
        return f"<Resource(id={self.id}, price_minor={self.price_minor}, active={self.is_active})>"


class SubscriptionPlan(Base):
    """
    ORM model for subscription_plans table.

    Managed by admin tooling; only unlimited plans entitle resource access.
    """

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unlimited_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Purchase(Base):
    """
    ORM model for purchases table.

    Append-only ledger of access grants. Rows are never deleted; only status
    and access flags move, through PurchaseLedger transitions.
    """

    __tablename__ = "purchases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    principal_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)

    # Processor references
    external_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_signature: Mapped[str | None] = mapped_column(String(512), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    access_granted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    access_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    expiry_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_purchase_amount_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded', 'expired')",
            name="ck_purchase_status",
        ),
        CheckConstraint(
            "payment_method IN ('processor', 'subscription', 'free')",
            name="ck_purchase_payment_method",
        ),
        CheckConstraint(
            "NOT access_granted OR status = 'completed'",
            name="ck_purchase_granted_requires_completed",
        ),
        Index(
            "uq_purchases_one_pending",
            "principal_id",
            "resource_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_purchases_principal_resource", "principal_id", "resource_id"),
        Index("idx_purchases_order_id", "external_order_id"),
        Index("uq_purchases_payment_id", "external_payment_id", unique=True),
        Index("idx_purchases_status_expiry", "status", "expiry_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Purchase(id={self.id}, principal_id={self.principal_id}, "
            f"resource_id={self.resource_id}, status={self.status})>"
        )


class Subscription(Base):
    """
    ORM model for subscriptions table.

    At most one active subscription per principal.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    principal_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("subscription_plans.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'cancelled', 'expired')", name="ck_subscription_status"
        ),
        CheckConstraint("end_date > start_date", name="ck_subscription_window"),
        Index(
            "uq_subscriptions_one_active",
            "principal_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_subscriptions_external_id", "external_subscription_id"),
        Index("idx_subscriptions_status_end", "status", "end_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, principal_id={self.principal_id}, "
            f"status={self.status}, end_date={self.end_date})>"
        )
