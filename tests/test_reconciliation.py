"""
Tests for earn payout reconciliation and the reconciliation scheduler.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from agentpay.db.models import DistributionStatus, PayoutStatus
from agentpay.services.chain import TransferLog
from agentpay.services.scheduler import ReconciliationScheduler

from conftest import OTHER_PAYOUT, PLATFORM_WALLET, SELLER_PAYOUT, add_item, add_sale, add_seller, random_tx_hash

FEB = datetime(2026, 2, 10, 9, 30, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 2, 1, tzinfo=timezone.utc)


async def shares_by_address(db):
    distribution = await db.get_distribution(PERIOD_START)
    return distribution, {share.payout_address: share for share in distribution.shares}


class TestPayoutReconciliation:
    """Test matching platform-wallet transfers to pending shares."""

    @pytest.fixture
    async def distribution(self, engine, db, seller):
        # $8.00 to the seller, $2.00 to the other seller
        other = await add_seller(db, "Beta Labs", OTHER_PAYOUT)
        big = await add_item(db, seller, "acme.research.big", Decimal("400.00"))
        small = await add_item(db, other, "beta.labs.small", Decimal("100.00"))
        await add_sale(db, big, FEB)
        await add_sale(db, small, FEB)

        result = await engine.earn.run()
        return result.distribution

    async def test_no_pending_shares(self, engine, chain):
        """Test nothing is read from chain without pending shares."""
        summary = await engine.reconciliation.reconcile_payouts()

        assert summary.checked == 0
        assert chain.log_queries == []

    async def test_exact_transfer_matches(self, engine, db, chain, distribution):
        """Test a transfer of the exact amount marks the share paid."""
        tx_hash = random_tx_hash()
        chain.transfers = [TransferLog(to=SELLER_PAYOUT, value=8_000_000, tx_hash=tx_hash)]

        summary = await engine.reconciliation.reconcile_payouts()

        assert summary.checked == 2
        assert summary.confirmed == 1
        assert summary.distributions_paid == 0
        assert chain.log_queries[0][0] == PLATFORM_WALLET

        stored, shares = await shares_by_address(db)
        assert shares[SELLER_PAYOUT].payout_status == PayoutStatus.PAID
        assert shares[SELLER_PAYOUT].payout_tx_hash == tx_hash
        assert shares[OTHER_PAYOUT].payout_status == PayoutStatus.PENDING
        assert stored.status == DistributionStatus.COMPUTED

    async def test_all_paid_closes_distribution(self, engine, db, chain, distribution):
        """Test the distribution flips to paid with its last share."""
        chain.transfers = [
            TransferLog(to=SELLER_PAYOUT.lower(), value=8_000_000, tx_hash=random_tx_hash()),
            TransferLog(to=OTHER_PAYOUT, value=2_005_000, tx_hash=random_tx_hash()),
        ]

        summary = await engine.reconciliation.reconcile_payouts()

        assert summary.confirmed == 2
        assert summary.distributions_paid == 1
        stored, _ = await shares_by_address(db)
        assert stored.status == DistributionStatus.PAID

    async def test_outside_tolerance(self, engine, db, chain, distribution):
        """Test transfers off by more than the tolerance are ignored."""
        chain.transfers = [
            TransferLog(to=OTHER_PAYOUT, value=2_020_000, tx_hash=random_tx_hash()),
            TransferLog(to=OTHER_PAYOUT, value=1_980_000, tx_hash=random_tx_hash()),
        ]

        summary = await engine.reconciliation.reconcile_payouts()

        assert summary.confirmed == 0
        _, shares = await shares_by_address(db)
        assert shares[OTHER_PAYOUT].payout_status == PayoutStatus.PENDING

    async def test_unrelated_recipient(self, engine, chain, distribution):
        """Test transfers to unknown addresses are ignored."""
        chain.transfers = [TransferLog(to=PLATFORM_WALLET, value=8_000_000, tx_hash=random_tx_hash())]

        summary = await engine.reconciliation.reconcile_payouts()
        assert summary.confirmed == 0

    async def test_rerun_is_idempotent(self, engine, chain, distribution):
        """Test the same transfer is not matched twice."""
        chain.transfers = [TransferLog(to=SELLER_PAYOUT, value=8_000_000, tx_hash=random_tx_hash())]

        first = await engine.reconciliation.reconcile_payouts()
        second = await engine.reconciliation.reconcile_payouts()

        assert first.confirmed == 1
        assert second.confirmed == 0
        assert second.checked == 1

    async def test_one_transfer_pays_one_share(self, engine, db, chain):
        """Test two equal shares to one address need two transfers."""
        first = await add_seller(db, "Gamma", SELLER_PAYOUT)
        second = await add_seller(db, "Delta", SELLER_PAYOUT)
        await add_sale(db, await add_item(db, first, "gamma.one", Decimal("50.00")), FEB)
        await add_sale(db, await add_item(db, second, "delta.one", Decimal("50.00")), FEB)
        await engine.earn.run()

        chain.transfers = [TransferLog(to=SELLER_PAYOUT, value=1_000_000, tx_hash=random_tx_hash())]
        summary = await engine.reconciliation.reconcile_payouts()
        assert summary.confirmed == 1

        chain.transfers.append(TransferLog(to=SELLER_PAYOUT, value=1_000_000, tx_hash=random_tx_hash()))
        summary = await engine.reconciliation.reconcile_payouts()
        assert summary.confirmed == 1
        assert summary.distributions_paid == 1

    async def test_batched_payout(self, engine, db, chain, distribution):
        """Test one transaction paying several sellers settles every share."""
        tx_hash = random_tx_hash()
        chain.transfers = [
            TransferLog(to=SELLER_PAYOUT, value=8_000_000, tx_hash=tx_hash, log_index=3),
            TransferLog(to=OTHER_PAYOUT, value=2_000_000, tx_hash=tx_hash, log_index=4),
        ]

        summary = await engine.reconciliation.reconcile_payouts()

        assert summary.confirmed == 2
        assert summary.distributions_paid == 1
        stored, shares = await shares_by_address(db)
        assert stored.status == DistributionStatus.PAID
        assert shares[SELLER_PAYOUT].payout_tx_hash == tx_hash
        assert shares[SELLER_PAYOUT].payout_log_index == 3
        assert shares[OTHER_PAYOUT].payout_tx_hash == tx_hash
        assert shares[OTHER_PAYOUT].payout_log_index == 4

    async def test_batched_payout_log_not_reused(self, engine, db, chain):
        """Test a transfer log already matched cannot pay a second share."""
        first = await add_seller(db, "Gamma", SELLER_PAYOUT)
        second = await add_seller(db, "Delta", SELLER_PAYOUT)
        await add_sale(db, await add_item(db, first, "gamma.one", Decimal("50.00")), FEB)
        await add_sale(db, await add_item(db, second, "delta.one", Decimal("50.00")), FEB)
        await engine.earn.run()

        tx_hash = random_tx_hash()
        chain.transfers = [TransferLog(to=SELLER_PAYOUT, value=1_000_000, tx_hash=tx_hash, log_index=0)]
        assert (await engine.reconciliation.reconcile_payouts()).confirmed == 1
        assert (await engine.reconciliation.reconcile_payouts()).confirmed == 0

        chain.transfers.append(TransferLog(to=SELLER_PAYOUT, value=1_000_000, tx_hash=tx_hash, log_index=1))
        summary = await engine.reconciliation.reconcile_payouts()
        assert summary.confirmed == 1
        assert summary.distributions_paid == 1

    async def test_log_query_failure(self, engine, chain, distribution):
        """Test a failed log query is reported, not raised."""
        chain.fail_logs = True

        summary = await engine.reconciliation.reconcile_payouts()

        assert summary.error == "Log query failed"
        assert summary.confirmed == 0

    async def test_run_reports_both_phases(self, engine, chain, distribution):
        """Test a full run returns both summaries."""
        chain.transfers = [TransferLog(to=SELLER_PAYOUT, value=8_000_000, tx_hash=random_tx_hash())]

        summary = await engine.reconciliation.run()

        body = summary.to_dict()
        assert body["settlements"]["checked"] == 0
        assert body["payouts"]["confirmed"] == 1


class TestScanWindow:
    """Test the payout log scan start block."""

    async def test_window(self, engine, clock):
        """Test the window covers the oldest share plus the buffer."""
        earliest = clock() - timedelta(seconds=1200)
        # (1200 + 3600) / 12 = 400 blocks
        assert engine.reconciliation.scan_start_block(1_000, earliest, clock()) == 600

    async def test_floor_at_genesis(self, engine, clock):
        """Test the window never starts before block zero."""
        earliest = clock() - timedelta(days=30)
        assert engine.reconciliation.scan_start_block(1_000, earliest, clock()) == 0

    async def test_naive_timestamps(self, engine, clock):
        """Test timestamps read back without an offset are treated as UTC."""
        earliest = (clock() - timedelta(seconds=1200)).replace(tzinfo=None)
        assert engine.reconciliation.scan_start_block(1_000, earliest, clock()) == 600


class FailingJob:
    async def run(self, now=None):
        raise RuntimeError("database unavailable")


class IdleJob:
    async def run(self, now=None):
        return None


class TestReconciliationScheduler:
    """Test the background driver."""

    async def test_failed_run_is_counted(self, engine, clock):
        """Test a failing run is logged and counted."""
        scheduler = ReconciliationScheduler(FailingJob(), engine.earn, clock=clock)

        assert await scheduler.reconcile_once() is None
        assert scheduler.failed_runs == 1
        assert scheduler.last_results["reconciliation"] is None

    async def test_successful_runs_are_kept(self, engine):
        """Test run summaries are kept for the health check."""
        await engine.scheduler.reconcile_once()
        await engine.scheduler.distribute_once()

        results = engine.scheduler.last_results
        assert results["reconciliation"]["settlements"]["checked"] == 0
        assert results["distribution"]["computed"] is True
        assert results["failed_runs"] == 0

    async def test_wakeups_need_a_running_scheduler(self, engine, clock):
        """Test confirmations are only scheduled while running."""
        engine.scheduler.schedule_confirmation("entitlement-1", clock() + timedelta(seconds=60))
        assert engine.scheduler.last_results["pending_wakeups"] == 0

    async def test_wakeup_lifecycle(self, clock):
        """Test wake-ups are registered once and cancelled on stop."""
        scheduler = ReconciliationScheduler(IdleJob(), IdleJob(), reconcile_interval=3600, clock=clock)
        await scheduler.start()

        deadline = clock() + timedelta(seconds=60)
        scheduler.schedule_confirmation("entitlement-1", deadline)
        scheduler.schedule_confirmation("entitlement-1", deadline)
        assert scheduler.last_results["pending_wakeups"] == 1

        await scheduler.stop()
        assert scheduler.last_results["pending_wakeups"] == 0
