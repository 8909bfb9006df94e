"""
Reconciliation job.

Two independent phases, both safe to run on any schedule and concurrently with
themselves:

- settlement finalization: preconfirmed entitlements past their verification
  deadline are confirmed or revoked against the chain's receipt;
- payout reconciliation: pending earn shares are matched against USDC
  transfers sent from the platform wallet.

Per-row failures are logged and counted; they never abort the batch.
"""

import math
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

from agentpay.config import Settings
from agentpay.db.database import Database
from agentpay.db.models import ConfirmationStatus, Entitlement, ensure_utc, utcnow
from agentpay.services.chain import ChainReader
from agentpay.services.confirmation import REVOKE_REASONS, Transition, decide
from agentpay.services.entitlements import EntitlementLedger
from agentpay.services.errors import ChainReadError
from agentpay.services.fee import to_micro
from agentpay.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FinalizationSummary:
    """Result of a settlement finalization pass."""
    checked: int = 0
    confirmed: int = 0
    revoked: int = 0
    errors: int = 0


@dataclass
class PayoutSummary:
    """Result of a payout reconciliation pass."""
    checked: int = 0
    confirmed: int = 0
    errors: int = 0
    distributions_paid: int = 0
    error: Optional[str] = None


@dataclass
class ReconciliationSummary:
    settlements: FinalizationSummary = field(default_factory=FinalizationSummary)
    payouts: PayoutSummary = field(default_factory=PayoutSummary)

    def to_dict(self) -> dict:
        return asdict(self)


class ReconciliationJob:
    """Finalizes preconfirmed settlements and reconciles earn payouts."""

    def __init__(
        self,
        db: Database,
        chain: ChainReader,
        settings: Settings,
        ledger: Optional[EntitlementLedger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._chain = chain
        self._settings = settings
        self._ledger = ledger or EntitlementLedger(db)
        self._clock = clock

    async def run(self, now: Optional[datetime] = None) -> ReconciliationSummary:
        """Run both phases."""
        now = now or self._clock()
        return ReconciliationSummary(
            settlements=await self.finalize_settlements(now),
            payouts=await self.reconcile_payouts(now),
        )

    # ===================
    # Settlement Finalization
    # ===================

    async def finalize_settlements(self, now: Optional[datetime] = None) -> FinalizationSummary:
        """Confirm or revoke every preconfirmed entitlement whose deadline has passed."""
        now = now or self._clock()
        summary = FinalizationSummary()

        overdue = await self._db.get_overdue_preconfirmed(now)
        summary.checked = len(overdue)

        for entitlement in overdue:
            try:
                transition, applied = await self._finalize(entitlement)
            except Exception as e:
                summary.errors += 1
                logger.error(
                    "Failed to finalize entitlement",
                    entitlement_id=entitlement.id,
                    error=str(e),
                )
                continue

            if not applied:
                continue
            if transition == Transition.CONFIRM:
                summary.confirmed += 1
            elif transition in REVOKE_REASONS:
                summary.revoked += 1

        if summary.checked:
            logger.info("Settlement finalization complete", **asdict(summary))
        return summary

    async def _finalize(self, entitlement: Entitlement) -> tuple[Transition, bool]:
        transaction = entitlement.transaction
        if transaction is None:
            applied = await self._ledger.revoke(
                entitlement.id,
                "No settlement transaction recorded",
                only_if_status=ConfirmationStatus.PRECONFIRMED,
            )
            return Transition.REVOKE_TIMEOUT, applied

        receipt = await self._chain.get_receipt(transaction.tx_hash)

        # Rows are only selected once their deadline has passed
        transition = decide(receipt, self._settings.min_confirmations, deadline_passed=True)

        if transition == Transition.CONFIRM:
            applied = await self._ledger.confirm(
                entitlement.id,
                receipt.block_number,
                receipt.confirmations,
            )
        elif transition in REVOKE_REASONS:
            applied = await self._ledger.revoke(
                entitlement.id,
                REVOKE_REASONS[transition],
                only_if_status=ConfirmationStatus.PRECONFIRMED,
            )
            if applied:
                logger.warning(
                    "Preconfirmed settlement revoked",
                    entitlement_id=entitlement.id,
                    tx_hash=transaction.tx_hash,
                    reason=REVOKE_REASONS[transition],
                    receipt=receipt.outcome.value,
                    confirmations=receipt.confirmations,
                )
        else:
            applied = False

        return transition, applied

    # ===================
    # Payout Reconciliation
    # ===================

    def scan_start_block(self, head: int, earliest: datetime, now: datetime) -> int:
        """First block that could hold a payout for shares created at or after earliest."""
        seconds_ago = math.ceil((now - ensure_utc(earliest)).total_seconds())
        seconds_ago += self._settings.payout_scan_buffer_seconds
        blocks_ago = math.ceil(seconds_ago / self._settings.seconds_per_block)
        return max(0, head - blocks_ago)

    async def reconcile_payouts(self, now: Optional[datetime] = None) -> PayoutSummary:
        """Match observed platform-wallet transfers to pending earn shares."""
        now = now or self._clock()
        summary = PayoutSummary()

        pending = await self._db.get_pending_shares()
        summary.checked = len(pending)
        if not pending:
            return summary

        earliest = min(ensure_utc(share.created_at) for share in pending)

        try:
            head = await self._chain.get_block_number()
            from_block = self.scan_start_block(head, earliest, now)
            transfers = await self._chain.get_transfer_logs(self._settings.platform_wallet, from_block)
        except ChainReadError as e:
            logger.error("Failed to fetch payout transfers", error=str(e))
            summary.error = "Log query failed"
            return summary

        candidates = defaultdict(list)
        for share in pending:
            if share.payout_address:
                candidates[share.payout_address.lower()].append(share)

        tolerance_micro = to_micro(self._settings.payout_match_tolerance_usdc)
        touched_distributions = set()

        for transfer in transfers:
            shares = candidates.get(transfer.to.lower())
            if not shares or transfer.value <= 0:
                continue

            try:
                # A transfer log pays exactly one share, ever
                if await self._db.is_payout_transfer_recorded(transfer.tx_hash, transfer.log_index):
                    continue

                for index, share in enumerate(shares):
                    if abs(transfer.value - to_micro(share.earn_amount)) > tolerance_micro:
                        continue

                    if await self._db.mark_share_paid(share.id, transfer.tx_hash, transfer.log_index):
                        summary.confirmed += 1
                        touched_distributions.add(share.distribution_id)
                        logger.info(
                            "Earn payout confirmed",
                            share_id=share.id,
                            payout_address=share.payout_address,
                            amount=str(share.earn_amount),
                            tx_hash=transfer.tx_hash,
                            log_index=transfer.log_index,
                        )
                    shares.pop(index)
                    break
            except Exception as e:
                summary.errors += 1
                logger.error("Failed to reconcile payout", tx_hash=transfer.tx_hash, error=str(e))

        for distribution_id in touched_distributions:
            try:
                if await self._db.mark_distribution_paid_if_settled(distribution_id):
                    summary.distributions_paid += 1
                    logger.info("Distribution fully paid", distribution_id=distribution_id)
            except Exception as e:
                summary.errors += 1
                logger.error("Failed to update distribution", distribution_id=distribution_id, error=str(e))

        return summary
