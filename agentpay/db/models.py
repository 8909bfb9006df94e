"""
SQLAlchemy database models for the AgentPay settlement engine.
Covers the catalog rows the engine reads (sellers, items) and the ledger it owns
(entitlements, transactions, earn distributions and their shares).
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
    func,
    text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from databases that drop the offset."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum(enum_cls: type[Enum]) -> SQLEnum:
    # Persist enum values ("confirmed"), not member names ("CONFIRMED")
    return SQLEnum(enum_cls, values_callable=lambda members: [m.value for m in members])


# USDC amounts: 6 decimal places, matching the token's on-chain precision
Amount = Numeric(18, 6)


# ===================
# Enums
# ===================

class PricingModel(str, Enum):
    """How an item is sold."""
    FREE = "free"
    ONE_TIME = "one_time"


class ConfirmationStatus(str, Enum):
    """Lifecycle of an entitlement's underlying settlement."""
    PRECONFIRMED = "preconfirmed"
    CONFIRMED = "confirmed"
    REVOKED = "revoked"


class TransactionStatus(str, Enum):
    """Settlement transaction status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class DistributionStatus(str, Enum):
    """Monthly earn distribution status."""
    COMPUTED = "computed"
    PAID = "paid"


class PayoutStatus(str, Enum):
    """Per-seller earn payout status."""
    PENDING = "pending"
    PAID = "paid"


# ===================
# Catalog (read by the engine, managed elsewhere)
# ===================

class Seller(Base):
    """Publisher of items and recipient of sale proceeds."""

    __tablename__ = "sellers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255))
    payout_address: Mapped[str] = mapped_column(String(42))
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow
    )

    items: Mapped[list["Item"]] = relationship(back_populates="seller")


class Item(Base):
    """A priced digital good (agent listing)."""

    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True, index=True)  # e.g. "acme.research.analyst"
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey("sellers.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))

    # Pricing
    pricing_model: Mapped[PricingModel] = mapped_column(_enum(PricingModel), default=PricingModel.ONE_TIME)
    price: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(16), default="USDC")

    # Denormalized from the seller so quotes stay stable if the seller edits their profile
    payout_address: Mapped[str] = mapped_column(String(42))

    is_published: Mapped[bool] = mapped_column(Boolean, default=True)
    purchase_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow
    )

    seller: Mapped["Seller"] = relationship(back_populates="items")

    @property
    def is_free(self) -> bool:
        """Free items need no payment."""
        return self.pricing_model == PricingModel.FREE or self.price <= 0


# ===================
# Ledger
# ===================

class Entitlement(Base):
    """
    Access grant tying a buyer wallet to a purchased item.
    At most one active row per (item, buyer); enforced by a partial unique index.
    """

    __tablename__ = "entitlements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(36), ForeignKey("items.id", ondelete="CASCADE"))

    # Lower-cased canonical form
    buyer_address: Mapped[str] = mapped_column(String(42))

    # Opaque bearer token presented to the gateway
    token: Mapped[str] = mapped_column(String(128), unique=True)

    pricing_model: Mapped[PricingModel] = mapped_column(_enum(PricingModel))
    amount_paid: Mapped[Decimal] = mapped_column(Amount)
    currency: Mapped[str] = mapped_column(String(16), default="USDC")

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    confirmation_status: Mapped[ConfirmationStatus] = mapped_column(
        _enum(ConfirmationStatus),
        default=ConfirmationStatus.CONFIRMED
    )
    verification_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # NULL = perpetual
    revoked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow
    )

    item: Mapped["Item"] = relationship()
    transaction: Mapped[Optional["Transaction"]] = relationship(back_populates="entitlement", uselist=False)

    __table_args__ = (
        Index(
            "uq_entitlements_active_item_buyer",
            "item_id",
            "buyer_address",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_entitlements_buyer", "buyer_address"),
        Index(
            "ix_entitlements_pending_verification",
            "verification_deadline",
            postgresql_where=text("confirmation_status = 'preconfirmed'"),
        ),
    )


class Transaction(Base):
    """
    One settlement per entitlement. tx_hash is the replay-protection key.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entitlement_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("entitlements.id", ondelete="CASCADE"),
        unique=True
    )

    tx_hash: Mapped[str] = mapped_column(String(66), unique=True)  # lower-cased
    from_address: Mapped[str] = mapped_column(String(42))
    to_address: Mapped[str] = mapped_column(String(42))  # seller payout address snapshot

    amount: Mapped[Decimal] = mapped_column(Amount)
    currency: Mapped[str] = mapped_column(String(16), default="USDC")
    platform_fee: Mapped[Decimal] = mapped_column(Amount)
    seller_amount: Mapped[Decimal] = mapped_column(Amount)

    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus),
        default=TransactionStatus.PENDING
    )
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now()
    )

    entitlement: Mapped["Entitlement"] = relationship(back_populates="transaction")

    __table_args__ = (
        Index("ix_transactions_status_created", "status", "created_at"),
    )


# ===================
# Earn Program
# ===================

class EarnDistribution(Base):
    """
    Monthly pool of platform fees shared back to sellers.
    period_start is the idempotency key for the aggregation job.
    """

    __tablename__ = "earn_distributions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), unique=True)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    total_platform_fees: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"))
    earn_pool: Mapped[Decimal] = mapped_column(Amount, default=Decimal("0"))

    status: Mapped[DistributionStatus] = mapped_column(
        _enum(DistributionStatus),
        default=DistributionStatus.COMPUTED
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now()
    )

    shares: Mapped[list["EarnDistributionShare"]] = relationship(
        back_populates="distribution",
        cascade="all, delete-orphan",
        order_by="EarnDistributionShare.rank",
    )


class EarnDistributionShare(Base):
    """A seller's slice of an earn distribution."""

    __tablename__ = "earn_distribution_shares"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    distribution_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("earn_distributions.id", ondelete="CASCADE")
    )
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey("sellers.id"))

    seller_platform_fees: Mapped[Decimal] = mapped_column(Amount)
    share_percent: Mapped[Decimal] = mapped_column(Numeric(7, 4))
    earn_amount: Mapped[Decimal] = mapped_column(Amount)
    rank: Mapped[int] = mapped_column(Integer)

    payout_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    payout_status: Mapped[PayoutStatus] = mapped_column(
        _enum(PayoutStatus),
        default=PayoutStatus.PENDING
    )
    payout_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    payout_log_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now()
    )

    distribution: Mapped["EarnDistribution"] = relationship(back_populates="shares")
    seller: Mapped["Seller"] = relationship()

    __table_args__ = (
        Index("uq_earn_shares_distribution_seller", "distribution_id", "seller_id", unique=True),
        Index("ix_earn_shares_payout_status", "payout_status"),
    )
