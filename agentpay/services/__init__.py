"""
Payment settlement and entitlement services.

Fee splitting, quotes, relay settlement, the entitlement ledger and its
confirmation state machine, reconciliation, and the monthly earn program.
"""

from agentpay.services.engine import PaymentEngine, build_engine
from agentpay.services.earn import EarnDistributionEngine
from agentpay.services.entitlements import EntitlementLedger
from agentpay.services.fee import FeeSplit, calculate_fee_split
from agentpay.services.reconciliation import ReconciliationJob
from agentpay.services.scheduler import ReconciliationScheduler
from agentpay.services.settlement import SettlementService

__all__ = [
    "PaymentEngine",
    "build_engine",
    "EarnDistributionEngine",
    "EntitlementLedger",
    "FeeSplit",
    "calculate_fee_split",
    "ReconciliationJob",
    "ReconciliationScheduler",
    "SettlementService",
]
