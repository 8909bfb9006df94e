"""
Background driver for the reconciliation job and the earn distribution engine.

Runs reconciliation every reconcile_interval seconds and the distribution
engine every earn_check_interval seconds. Preconfirmed settlements register an
explicit wake-up at their verification deadline so they are finalized promptly;
a wake-up is an ordinary reconciliation run, so a failed one is logged and
picked up again by the next tick.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

from agentpay.db.models import ensure_utc, utcnow
from agentpay.services.earn import DistributionResult, EarnDistributionEngine
from agentpay.services.reconciliation import ReconciliationJob, ReconciliationSummary
from agentpay.utils.logging import get_logger

logger = get_logger(__name__)

# Grace after a deadline so the row is strictly overdue when the wake-up fires
WAKEUP_GRACE_SECONDS = 1.0


class ReconciliationScheduler:
    """Periodic and on-demand reconciliation runs."""

    def __init__(
        self,
        reconciliation: ReconciliationJob,
        earn_engine: EarnDistributionEngine,
        reconcile_interval: float = 30.0,
        earn_check_interval: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.reconciliation = reconciliation
        self.earn_engine = earn_engine
        self.reconcile_interval = reconcile_interval
        self.earn_check_interval = earn_check_interval
        self._clock = clock

        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._wakeups: dict[str, asyncio.Task] = {}  # entitlement_id -> wake-up task
        self._run_lock = asyncio.Lock()

        self.last_reconciliation: Optional[ReconciliationSummary] = None
        self.last_distribution: Optional[DistributionResult] = None
        self.failed_runs = 0

    @property
    def last_results(self) -> dict:
        """Most recent run summaries."""
        return {
            "reconciliation": self.last_reconciliation.to_dict() if self.last_reconciliation else None,
            "distribution": self.last_distribution.to_dict() if self.last_distribution else None,
            "failed_runs": self.failed_runs,
            "pending_wakeups": len(self._wakeups),
        }

    async def start(self) -> None:
        """Start the periodic loops."""
        if self._running:
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._reconcile_loop()),
            asyncio.create_task(self._earn_loop()),
        ]
        logger.info(
            "Reconciliation scheduler started",
            reconcile_interval=self.reconcile_interval,
            earn_check_interval=self.earn_check_interval,
        )

    async def stop(self) -> None:
        """Stop loops and pending wake-ups."""
        self._running = False

        tasks = self._tasks + list(self._wakeups.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._tasks = []
        self._wakeups.clear()
        logger.info("Reconciliation scheduler stopped")

    def schedule_confirmation(self, entitlement_id: str, deadline: datetime) -> None:
        """Re-check a preconfirmed settlement just after its deadline."""
        if not self._running:
            # The periodic loop will pick it up once started
            return
        if entitlement_id in self._wakeups:
            return

        delay = (ensure_utc(deadline) - self._clock()).total_seconds() + WAKEUP_GRACE_SECONDS
        task = asyncio.create_task(self._wakeup(entitlement_id, max(0.0, delay)))
        self._wakeups[entitlement_id] = task

    async def _wakeup(self, entitlement_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            logger.debug("Confirmation wake-up", entitlement_id=entitlement_id)
            await self.reconcile_once()
        finally:
            self._wakeups.pop(entitlement_id, None)

    async def reconcile_once(self) -> Optional[ReconciliationSummary]:
        """One reconciliation run; failures are logged and counted."""
        async with self._run_lock:
            try:
                summary = await self.reconciliation.run(self._clock())
            except Exception as e:
                self.failed_runs += 1
                logger.error("Reconciliation run failed", error=str(e))
                return None

            self.last_reconciliation = summary
            return summary

    async def distribute_once(self) -> Optional[DistributionResult]:
        """One distribution check; no-op if the period is already computed."""
        try:
            result = await self.earn_engine.run(self._clock())
        except Exception as e:
            self.failed_runs += 1
            logger.error("Earn distribution run failed", error=str(e))
            return None

        self.last_distribution = result
        return result

    async def _reconcile_loop(self) -> None:
        while self._running:
            await self.reconcile_once()
            await asyncio.sleep(self.reconcile_interval)

    async def _earn_loop(self) -> None:
        while self._running:
            await self.distribute_once()
            await asyncio.sleep(self.earn_check_interval)
