"""
Wiring for the payment engine.

Every service receives its collaborators explicitly; build_engine assembles
the production graph and tests pass their own relay, chain reader or database.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from agentpay.config import Settings
from agentpay.db.database import Database
from agentpay.db.models import utcnow
from agentpay.services.chain import ChainReader, Web3ChainReader
from agentpay.services.earn import EarnDistributionEngine
from agentpay.services.entitlements import EntitlementLedger
from agentpay.services.reconciliation import ReconciliationJob
from agentpay.services.relay import HttpSettlementRelay, SettlementRelay
from agentpay.services.scheduler import ReconciliationScheduler
from agentpay.services.settlement import SettlementService
from agentpay.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PaymentEngine:
    """The assembled settlement and entitlement engine."""
    settings: Settings
    db: Database
    relay: Optional[SettlementRelay]
    chain: ChainReader
    ledger: EntitlementLedger
    settlement: SettlementService
    reconciliation: ReconciliationJob
    earn: EarnDistributionEngine
    scheduler: ReconciliationScheduler

    async def close(self) -> None:
        """Stop background work and release connections."""
        await self.scheduler.stop()
        if self.relay is not None:
            await self.relay.close()
        await self.chain.close()
        await self.db.close()


def build_engine(
    settings: Settings,
    db: Optional[Database] = None,
    relay: Optional[SettlementRelay] = None,
    chain: Optional[ChainReader] = None,
    clock: Callable[[], datetime] = utcnow,
) -> PaymentEngine:
    """
    Assemble the engine.

    Without an injected relay, settlement uses the configured facilitator
    endpoint; with neither, settle() reports settlement as unavailable.
    """
    db = db or Database(settings.database_url)

    if relay is None and settings.settlement_configured:
        relay = HttpSettlementRelay(settings.facilitator_endpoint, settings.facilitator_timeout_seconds)
    if relay is None:
        logger.warning("No settlement relay configured, paid settlements are disabled")

    if chain is None:
        chain = Web3ChainReader(settings.eth_rpc_url, settings.usdc_contract, settings.rpc_timeout_seconds)

    ledger = EntitlementLedger(db)
    reconciliation = ReconciliationJob(db, chain, settings, ledger=ledger, clock=clock)
    earn = EarnDistributionEngine(db, settings, clock=clock)
    scheduler = ReconciliationScheduler(
        reconciliation,
        earn,
        reconcile_interval=settings.reconcile_interval_seconds,
        earn_check_interval=settings.earn_check_interval_seconds,
        clock=clock,
    )
    settlement = SettlementService(
        db,
        settings,
        relay,
        ledger=ledger,
        scheduler=scheduler,
        clock=clock,
    )

    return PaymentEngine(
        settings=settings,
        db=db,
        relay=relay,
        chain=chain,
        ledger=ledger,
        settlement=settlement,
        reconciliation=reconciliation,
        earn=earn,
        scheduler=scheduler,
    )
