"""
Confirmation state machine.

preconfirmed -> confirmed | revoked. Relay proofs that are already final skip
preconfirmed. Anything unresolved past its verification deadline is revoked.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from agentpay.db.models import ConfirmationStatus, TransactionStatus
from agentpay.services.chain import Receipt, ReceiptOutcome
from agentpay.services.relay import ProofStatus, SettlementProof


@dataclass(frozen=True)
class InitialState:
    """Where a freshly settled entitlement starts."""
    confirmation_status: ConfirmationStatus
    transaction_status: TransactionStatus
    verification_deadline: Optional[datetime]


def initial_state(proof: SettlementProof, now: datetime, window_seconds: int) -> InitialState:
    """Map a relay proof's status onto the ledger's starting state."""
    status = proof.status

    if status == ProofStatus.CONFIRMED:
        return InitialState(
            confirmation_status=ConfirmationStatus.CONFIRMED,
            transaction_status=TransactionStatus.CONFIRMED,
            verification_deadline=None,
        )

    if status in (ProofStatus.PRECONFIRMED, ProofStatus.PENDING, ProofStatus.UNKNOWN):
        return InitialState(
            confirmation_status=ConfirmationStatus.PRECONFIRMED,
            transaction_status=TransactionStatus.PENDING,
            verification_deadline=now + timedelta(seconds=window_seconds),
        )

    raise ValueError(f"Unhandled proof status: {status}")


class Transition(str, Enum):
    """Decision for a preconfirmed entitlement."""
    CONFIRM = "confirm"
    REVOKE_FAILED = "revoke_failed"
    REVOKE_TIMEOUT = "revoke_timeout"
    WAIT = "wait"


def decide(receipt: Optional[Receipt], min_confirmations: int, deadline_passed: bool) -> Transition:
    """
    Decide what to do with a preconfirmed entitlement given the chain's answer.

    A None receipt means the chain read itself was indeterminate.
    """
    if receipt is not None and receipt.outcome == ReceiptOutcome.FAILURE:
        return Transition.REVOKE_FAILED

    if (
        receipt is not None
        and receipt.outcome == ReceiptOutcome.SUCCESS
        and receipt.confirmations >= min_confirmations
    ):
        return Transition.CONFIRM

    # No receipt, too shallow, or unreadable
    if deadline_passed:
        return Transition.REVOKE_TIMEOUT
    return Transition.WAIT


REVOKE_REASONS = {
    Transition.REVOKE_FAILED: "Transaction failed on-chain",
    Transition.REVOKE_TIMEOUT: "Verification deadline exceeded",
}
