"""
Database connection, session management and ledger operations.

Every operation opens its own short session; multi-row transitions that must
be atomic (confirm, revoke, distribution + shares) run inside one session.
Status transitions are conditional updates so overlapping job runs are no-ops.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional

from sqlalchemy import case, delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import selectinload

from agentpay.db.models import (
    Base,
    ConfirmationStatus,
    DistributionStatus,
    EarnDistribution,
    EarnDistributionShare,
    Entitlement,
    Item,
    PayoutStatus,
    Seller,
    Transaction,
    TransactionStatus,
)
from agentpay.utils.logging import get_logger

logger = get_logger(__name__)


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def normalize_database_url(database_url: str) -> str:
    """Convert postgres:// URLs to the asyncpg driver."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class Database:
    """Async engine, session factory and the ledger's persistence operations."""

    def __init__(self, database_url: str, echo: bool = False):
        url = normalize_database_url(database_url)

        engine_kwargs: dict = {"echo": echo, "pool_pre_ping": True}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_size=5, max_overflow=10)

        self._engine: Optional[AsyncEngine] = create_async_engine(url, **engine_kwargs)
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        logger.info("Database connection initialized", dialect=self._engine.dialect.name)

    async def create_tables(self) -> None:
        """Create all database tables."""
        if self._engine is None:
            raise RuntimeError("Database not initialized")

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database tables created")

    async def close(self) -> None:
        """Close database connection."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async database session that commits on success."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ===================
    # Catalog Hooks
    # ===================

    async def get_item(self, item_ref: str) -> Optional[Item]:
        """Get a published item by id or slug."""
        async with self.session() as session:
            result = await session.execute(
                select(Item)
                .where(or_(Item.id == item_ref, Item.slug == item_ref))
                .where(Item.is_published.is_(True))
                .options(selectinload(Item.seller))
            )
            return result.scalar_one_or_none()

    async def increment_purchase_count(self, item_id: str) -> None:
        """Bump an item's purchase counter."""
        async with self.session() as session:
            await session.execute(
                update(Item)
                .where(Item.id == item_id)
                .values(purchase_count=Item.purchase_count + 1)
            )

    @staticmethod
    async def _decrement_purchase_count(session: AsyncSession, item_id: str) -> None:
        await session.execute(
            update(Item)
            .where(Item.id == item_id)
            .values(
                purchase_count=case(
                    (Item.purchase_count > 0, Item.purchase_count - 1),
                    else_=0,
                )
            )
        )

    # ===================
    # Entitlement Operations
    # ===================

    async def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        """Get an entitlement with its transaction."""
        async with self.session() as session:
            result = await session.execute(
                select(Entitlement)
                .where(Entitlement.id == entitlement_id)
                .options(selectinload(Entitlement.transaction))
            )
            return result.scalar_one_or_none()

    async def get_active_entitlement(
        self,
        item_id: str,
        buyer_address: str,
        now: datetime,
    ) -> Optional[Entitlement]:
        """Get the buyer's active, unexpired entitlement for an item."""
        async with self.session() as session:
            result = await session.execute(
                select(Entitlement)
                .where(Entitlement.item_id == item_id)
                .where(Entitlement.buyer_address == buyer_address.lower())
                .where(Entitlement.is_active.is_(True))
                .where(or_(Entitlement.expires_at.is_(None), Entitlement.expires_at > now))
            )
            return result.scalars().first()

    async def retire_expired_entitlements(
        self,
        item_id: str,
        buyer_address: str,
        now: datetime,
    ) -> int:
        """Deactivate lapsed entitlements so the pair can be purchased again."""
        async with self.session() as session:
            result = await session.execute(
                update(Entitlement)
                .where(Entitlement.item_id == item_id)
                .where(Entitlement.buyer_address == buyer_address.lower())
                .where(Entitlement.is_active.is_(True))
                .where(Entitlement.expires_at.is_not(None))
                .where(Entitlement.expires_at <= now)
                .values(is_active=False)
            )
            return result.rowcount

    async def insert_entitlement(self, entitlement: Entitlement) -> Entitlement:
        """
        Insert an entitlement.

        Raises:
            IntegrityError: if the buyer already holds an active entitlement for the item
        """
        async with self.session() as session:
            session.add(entitlement)
            await session.flush()
            return entitlement

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """
        Insert a settlement transaction.

        Raises:
            IntegrityError: if the transaction hash was already used
        """
        async with self.session() as session:
            session.add(transaction)
            await session.flush()
            return transaction

    async def delete_orphaned_entitlement(self, entitlement_id: str) -> bool:
        """Delete an entitlement that never got its transaction recorded."""
        async with self.session() as session:
            result = await session.execute(
                delete(Entitlement)
                .where(Entitlement.id == entitlement_id)
                .where(~exists().where(Transaction.entitlement_id == Entitlement.id))
            )
            return result.rowcount > 0

    async def get_overdue_preconfirmed(self, now: datetime, limit: int = 500) -> list[Entitlement]:
        """Preconfirmed entitlements whose verification deadline has passed."""
        async with self.session() as session:
            result = await session.execute(
                select(Entitlement)
                .where(Entitlement.confirmation_status == ConfirmationStatus.PRECONFIRMED)
                .where(Entitlement.verification_deadline.is_not(None))
                .where(Entitlement.verification_deadline < now)
                .options(selectinload(Entitlement.transaction))
                .order_by(Entitlement.verification_deadline)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def confirm_entitlement(
        self,
        entitlement_id: str,
        block_number: Optional[int],
        confirmations: int,
    ) -> bool:
        """
        Move a preconfirmed entitlement to confirmed and finalize its transaction.

        Returns:
            True if this call performed the transition
        """
        async with self.session() as session:
            result = await session.execute(
                update(Entitlement)
                .where(Entitlement.id == entitlement_id)
                .where(Entitlement.confirmation_status == ConfirmationStatus.PRECONFIRMED)
                .values(
                    confirmation_status=ConfirmationStatus.CONFIRMED,
                    verification_deadline=None,
                )
            )
            if result.rowcount == 0:
                return False

            await session.execute(
                update(Transaction)
                .where(Transaction.entitlement_id == entitlement_id)
                .values(
                    status=TransactionStatus.CONFIRMED,
                    block_number=block_number,
                    confirmations=confirmations,
                )
            )
            return True

    async def revoke_entitlement(
        self,
        entitlement_id: str,
        reason: str,
        only_if_status: Optional[ConfirmationStatus] = None,
    ) -> bool:
        """
        Revoke an entitlement, fail its transaction and undo the purchase count.

        Args:
            entitlement_id: Entitlement to revoke
            reason: Stored for audit
            only_if_status: Guard; revoke only when currently in this status

        Returns:
            True if this call performed the transition
        """
        async with self.session() as session:
            query = (
                update(Entitlement)
                .where(Entitlement.id == entitlement_id)
                .where(Entitlement.confirmation_status != ConfirmationStatus.REVOKED)
            )
            if only_if_status is not None:
                query = query.where(Entitlement.confirmation_status == only_if_status)

            result = await session.execute(
                query.values(
                    is_active=False,
                    confirmation_status=ConfirmationStatus.REVOKED,
                    verification_deadline=None,
                    revoked_reason=reason,
                )
            )
            if result.rowcount == 0:
                return False

            await session.execute(
                update(Transaction)
                .where(Transaction.entitlement_id == entitlement_id)
                .where(Transaction.status != TransactionStatus.CONFIRMED)
                .values(status=TransactionStatus.FAILED)
            )

            item_id = (
                await session.execute(select(Entitlement.item_id).where(Entitlement.id == entitlement_id))
            ).scalar_one()
            await self._decrement_purchase_count(session, item_id)
            return True

    # ===================
    # Earn Distribution Operations
    # ===================

    async def get_distribution(self, period_start: datetime) -> Optional[EarnDistribution]:
        """Get the distribution for a period with its shares."""
        async with self.session() as session:
            result = await session.execute(
                select(EarnDistribution)
                .where(EarnDistribution.period_start == period_start)
                .options(selectinload(EarnDistribution.shares))
            )
            return result.scalar_one_or_none()

    async def get_latest_distribution(self) -> Optional[EarnDistribution]:
        """Most recent distribution with shares and their sellers."""
        async with self.session() as session:
            result = await session.execute(
                select(EarnDistribution)
                .order_by(EarnDistribution.period_start.desc())
                .options(
                    selectinload(EarnDistribution.shares).selectinload(EarnDistributionShare.seller)
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_confirmed_fees(
        self,
        period_start: datetime,
        period_end: datetime,
    ) -> list[tuple[str, str, str, Decimal]]:
        """
        Confirmed sales in [period_start, period_end) with their seller.

        Returns:
            Rows of (seller_id, display_name, payout_address, platform_fee)
        """
        async with self.session() as session:
            result = await session.execute(
                select(
                    Seller.id,
                    Seller.display_name,
                    Seller.payout_address,
                    Transaction.platform_fee,
                )
                .join(Entitlement, Transaction.entitlement_id == Entitlement.id)
                .join(Item, Entitlement.item_id == Item.id)
                .join(Seller, Item.seller_id == Seller.id)
                .where(Transaction.status == TransactionStatus.CONFIRMED)
                .where(Transaction.created_at >= period_start)
                .where(Transaction.created_at < period_end)
                .order_by(Transaction.created_at, Transaction.id)
            )
            return [tuple(row) for row in result.all()]

    async def insert_distribution(
        self,
        distribution: EarnDistribution,
        shares: list[EarnDistributionShare],
    ) -> EarnDistribution:
        """
        Write a distribution and all its shares in one database transaction.

        Raises:
            IntegrityError: if the period was already computed
        """
        distribution.shares = list(shares)
        async with self.session() as session:
            session.add(distribution)
            await session.flush()
            return distribution

    async def get_pending_shares(self) -> list[EarnDistributionShare]:
        """Unpaid shares with something to pay."""
        async with self.session() as session:
            result = await session.execute(
                select(EarnDistributionShare)
                .where(EarnDistributionShare.payout_status == PayoutStatus.PENDING)
                .where(EarnDistributionShare.earn_amount > 0)
                .order_by(EarnDistributionShare.created_at, EarnDistributionShare.rank)
            )
            return list(result.scalars().all())

    async def mark_share_paid(self, share_id: str, tx_hash: str, log_index: Optional[int] = None) -> bool:
        """Record an observed payout for a pending share."""
        async with self.session() as session:
            result = await session.execute(
                update(EarnDistributionShare)
                .where(EarnDistributionShare.id == share_id)
                .where(EarnDistributionShare.payout_status == PayoutStatus.PENDING)
                .values(
                    payout_status=PayoutStatus.PAID,
                    payout_tx_hash=tx_hash,
                    payout_log_index=log_index,
                )
            )
            return result.rowcount > 0

    async def is_payout_transfer_recorded(self, tx_hash: str, log_index: Optional[int] = None) -> bool:
        """Check if a transfer (hash and log index) was already matched to a share."""
        if log_index is None:
            log_filter = EarnDistributionShare.payout_log_index.is_(None)
        else:
            log_filter = EarnDistributionShare.payout_log_index == log_index
        async with self.session() as session:
            result = await session.execute(
                select(EarnDistributionShare.id)
                .where(EarnDistributionShare.payout_tx_hash == tx_hash)
                .where(log_filter)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def mark_distribution_paid_if_settled(self, distribution_id: str) -> bool:
        """Flip a distribution to paid once none of its payable shares are pending."""
        async with self.session() as session:
            remaining = await session.execute(
                select(EarnDistributionShare.id)
                .where(EarnDistributionShare.distribution_id == distribution_id)
                .where(EarnDistributionShare.payout_status == PayoutStatus.PENDING)
                .where(EarnDistributionShare.earn_amount > 0)
                .limit(1)
            )
            if remaining.scalar_one_or_none() is not None:
                return False

            result = await session.execute(
                update(EarnDistribution)
                .where(EarnDistribution.id == distribution_id)
                .where(EarnDistribution.status == DistributionStatus.COMPUTED)
                .values(status=DistributionStatus.PAID)
            )
            return result.rowcount > 0
