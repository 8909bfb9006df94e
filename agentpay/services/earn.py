"""
Earn distribution engine.

Once per calendar month, earn_pool_percent of the previous month's platform
fees is pooled and split between sellers in proportion to the fees their
confirmed sales generated. One distribution row per period start; running
the engine again for the same period is a no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from agentpay.config import Settings
from agentpay.db.database import Database, generate_id
from agentpay.db.models import (
    DistributionStatus,
    EarnDistribution,
    EarnDistributionShare,
    PayoutStatus,
    ensure_utc,
    utcnow,
)
from agentpay.services.fee import from_micro, percent_of, proportional, to_micro
from agentpay.utils.logging import get_logger

logger = get_logger(__name__)

LEADERBOARD_SIZE = 20


def month_start(year: int, month: int) -> datetime:
    """First instant of a UTC calendar month; month may overflow either way."""
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def previous_month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """[start, end) of the calendar month before now, in UTC."""
    now = now.astimezone(timezone.utc)
    end = month_start(now.year, now.month)
    return month_start(now.year, now.month - 1), end


def current_month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """[start, end) of the calendar month containing now, in UTC."""
    now = now.astimezone(timezone.utc)
    return month_start(now.year, now.month), month_start(now.year, now.month + 1)


@dataclass
class SellerContribution:
    """Platform fees one seller generated in a period."""
    seller_id: str
    display_name: str
    payout_address: Optional[str]
    fee_micro: int = 0


@dataclass
class ShareAllocation:
    """A seller's computed slice of the pool."""
    seller_id: str
    display_name: str
    payout_address: Optional[str]
    fee_micro: int
    share_percent: Decimal
    earn_micro: int
    rank: int


@dataclass
class Allocation:
    total_fee_micro: int
    pool_micro: int
    shares: list[ShareAllocation] = field(default_factory=list)


def aggregate_contributions(rows) -> list[SellerContribution]:
    """
    Sum per-transaction platform fees by seller, in micro-units.

    Returns:
        Contributions ranked by fees descending, ties broken by seller id
    """
    by_seller: dict[str, SellerContribution] = {}
    for seller_id, display_name, payout_address, platform_fee in rows:
        entry = by_seller.get(seller_id)
        if entry is None:
            entry = SellerContribution(
                seller_id=seller_id,
                display_name=display_name or "",
                payout_address=payout_address,
            )
            by_seller[seller_id] = entry
        entry.fee_micro += to_micro(platform_fee or 0)

    return sorted(by_seller.values(), key=lambda c: (-c.fee_micro, c.seller_id))


def share_percent(fee_micro: int, total_micro: int) -> Decimal:
    """Seller's percentage of total fees, rounded to two places."""
    if total_micro <= 0:
        return Decimal("0.00")
    pct = Decimal(fee_micro) * 100 / Decimal(total_micro)
    return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def allocate(contributions: list[SellerContribution], pool_percent) -> Allocation:
    """
    Split the pool across ranked contributions.

    Each share is round(pool * fee / total). If independent rounding pushes the
    sum above the pool, the excess is taken back one micro-unit at a time from
    the lowest-ranked shares that rounded up.
    """
    total = sum(c.fee_micro for c in contributions)
    pool = percent_of(total, pool_percent)

    shares = [
        ShareAllocation(
            seller_id=c.seller_id,
            display_name=c.display_name,
            payout_address=c.payout_address,
            fee_micro=c.fee_micro,
            share_percent=share_percent(c.fee_micro, total),
            earn_micro=proportional(pool, c.fee_micro, total),
            rank=rank,
        )
        for rank, c in enumerate(contributions, start=1)
    ]

    excess = sum(s.earn_micro for s in shares) - pool
    if excess > 0:
        for share in reversed(shares):
            if excess == 0:
                break
            # Rounded up iff the exact product is below the rounded value
            if share.earn_micro * total > pool * share.fee_micro:
                share.earn_micro -= 1
                excess -= 1

    return Allocation(total_fee_micro=total, pool_micro=pool, shares=shares)


@dataclass
class DistributionResult:
    """Outcome of an engine run."""
    computed: bool
    distribution: EarnDistribution

    def to_dict(self) -> dict:
        d = self.distribution
        return {
            "computed": self.computed,
            "distribution_id": d.id,
            "period_start": ensure_utc(d.period_start).isoformat(),
            "period_end": ensure_utc(d.period_end).isoformat(),
            "total_platform_fees": str(d.total_platform_fees),
            "pool": str(d.earn_pool),
            "publishers": len(d.shares),
            "status": d.status.value,
        }


class EarnDistributionEngine:
    """Computes monthly earn distributions and the live leaderboard."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._settings = settings
        self._clock = clock

    async def run(self, now: Optional[datetime] = None) -> DistributionResult:
        """
        Compute the distribution for the previous calendar month.

        Returns the existing distribution unchanged if the period was already
        computed, including by a concurrent run.
        """
        now = now or self._clock()
        period_start, period_end = previous_month_bounds(now)

        existing = await self._db.get_distribution(period_start)
        if existing is not None:
            logger.debug("Distribution already computed", period_start=period_start.isoformat())
            return DistributionResult(computed=False, distribution=existing)

        rows = await self._db.get_confirmed_fees(period_start, period_end)
        allocation = allocate(aggregate_contributions(rows), self._settings.earn_pool_percent)

        distribution = EarnDistribution(
            id=generate_id(),
            period_start=period_start,
            period_end=period_end,
            total_platform_fees=from_micro(allocation.total_fee_micro),
            earn_pool=from_micro(allocation.pool_micro),
            status=DistributionStatus.COMPUTED,
        )
        shares = [
            EarnDistributionShare(
                id=generate_id(),
                seller_id=s.seller_id,
                seller_platform_fees=from_micro(s.fee_micro),
                share_percent=s.share_percent,
                earn_amount=from_micro(s.earn_micro),
                rank=s.rank,
                payout_address=s.payout_address,
                payout_status=PayoutStatus.PENDING,
            )
            for s in allocation.shares
        ]

        try:
            await self._db.insert_distribution(distribution, shares)
        except IntegrityError:
            existing = await self._db.get_distribution(period_start)
            if existing is None:
                raise
            logger.info("Distribution computed concurrently", period_start=period_start.isoformat())
            return DistributionResult(computed=False, distribution=existing)

        logger.info(
            "Earn distribution computed",
            period_start=period_start.isoformat(),
            total_platform_fees=str(distribution.total_platform_fees),
            earn_pool=str(distribution.earn_pool),
            publishers=len(shares),
        )
        return DistributionResult(computed=True, distribution=distribution)

    async def leaderboard(self, now: Optional[datetime] = None, limit: int = LEADERBOARD_SIZE) -> dict:
        """Live current-month standings plus the most recent distribution."""
        now = now or self._clock()
        start, end = current_month_bounds(now)

        rows = await self._db.get_confirmed_fees(start, end)
        allocation = allocate(aggregate_contributions(rows), self._settings.earn_pool_percent)

        latest = await self._db.get_latest_distribution()
        last_distribution = None
        if latest is not None:
            last_distribution = {
                "period_start": ensure_utc(latest.period_start).isoformat(),
                "period_end": ensure_utc(latest.period_end).isoformat(),
                "total_platform_fees": str(latest.total_platform_fees),
                "earn_pool": str(latest.earn_pool),
                "status": latest.status.value,
                "top_publishers": [
                    {
                        "rank": share.rank,
                        "display_name": share.seller.display_name if share.seller else "Unknown",
                        "share_percent": str(share.share_percent),
                        "earn_amount": str(share.earn_amount),
                        "payout_status": share.payout_status.value,
                    }
                    for share in latest.shares[:limit]
                ],
            }

        pool_percent = self._settings.earn_pool_percent
        return {
            "program": {
                "name": "Publisher Earn Program",
                "description": (
                    f"{pool_percent}% of platform fees are pooled monthly and distributed "
                    "to publishers proportional to their sales contribution."
                ),
                "earn_pool_percent": str(pool_percent),
            },
            "current_month": {
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
                "total_platform_fees": str(from_micro(allocation.total_fee_micro)),
                "estimated_earn_pool": str(from_micro(allocation.pool_micro)),
                "leaderboard": [
                    {
                        "rank": s.rank,
                        "display_name": s.display_name or "Unknown",
                        "share_percent": str(s.share_percent),
                        "estimated_earn": str(from_micro(s.earn_micro)),
                    }
                    for s in allocation.shares[:limit]
                ],
            },
            "last_distribution": last_distribution,
        }
