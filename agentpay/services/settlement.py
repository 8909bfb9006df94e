"""
Settlement service: access checks and paid-item settlement.

settle() validates the buyer's quote and signed authorization, runs the
relay's verify then settle phases, and records the resulting entitlement and
transaction. Nothing is written until the relay has produced a proof; once a
proof exists the write completes even if the caller goes away.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from agentpay.config import Settings
from agentpay.db.database import Database
from agentpay.db.models import ConfirmationStatus, Entitlement, Item, Transaction, utcnow
from agentpay.services.confirmation import initial_state
from agentpay.services.entitlements import EntitlementLedger
from agentpay.services.errors import (
    AlreadyEntitledError,
    InputRejectedError,
    ItemNotFoundError,
    PriceMismatchError,
    QuoteExpiredError,
    SettlementFailedError,
    SettlementUnavailableError,
)
from agentpay.services.fee import FeeSplit, calculate_fee_split, to_micro
from agentpay.services.quote import (
    Quote,
    TransferAuthorization,
    build_quote,
    check_authorization,
    fee_split_info,
    is_address,
)
from agentpay.services.relay import SettlementProof, SettlementRelay
from agentpay.utils.logging import LoggerMixin, log_context


class ConfirmationScheduler(Protocol):
    def schedule_confirmation(self, entitlement_id: str, deadline: datetime) -> None:
        ...


@dataclass
class AccessResult:
    """Outcome of an access check."""
    item: Item
    granted: bool
    entitlement: Optional[Entitlement] = None
    quote: Optional[Quote] = None


@dataclass
class SettlementResult:
    """A recorded settlement."""
    entitlement: Entitlement
    transaction: Transaction
    proof: SettlementProof
    split: FeeSplit

    @property
    def status(self) -> ConfirmationStatus:
        return self.entitlement.confirmation_status


class SettlementService(LoggerMixin):
    """Authorization verifier and entitlement issuer."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        relay: Optional[SettlementRelay],
        ledger: Optional[EntitlementLedger] = None,
        scheduler: Optional[ConfirmationScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._settings = settings
        self._relay = relay
        self._ledger = ledger or EntitlementLedger(db)
        self._scheduler = scheduler
        self._clock = clock

    @property
    def ledger(self) -> EntitlementLedger:
        return self._ledger

    async def get_item(self, item_ref: str) -> Item:
        item = await self._db.get_item(item_ref)
        if item is None:
            raise ItemNotFoundError("Item not found")
        return item

    def quote_for(self, item: Item) -> Quote:
        """Fresh payment quote at the item's current price."""
        return build_quote(item, self._settings, now=self._clock())

    async def check_access(self, item_ref: str, buyer_address: Optional[str]) -> AccessResult:
        """
        Read-only access check.

        Free items are granted outright. Paid items are granted when the buyer
        holds an active, unexpired entitlement; otherwise a quote is returned.
        """
        item = await self.get_item(item_ref)

        if item.is_free:
            return AccessResult(item=item, granted=True)

        if not buyer_address:
            raise InputRejectedError("Wallet address required for paid items", code="wallet_required")
        if not is_address(buyer_address):
            raise InputRejectedError("Invalid wallet address", code="invalid_wallet")

        entitlement = await self._ledger.lookup(item.id, buyer_address, now=self._clock())
        if entitlement is not None:
            return AccessResult(item=item, granted=True, entitlement=entitlement)

        return AccessResult(item=item, granted=False, quote=self.quote_for(item))

    async def settle(
        self,
        item_ref: str,
        buyer_address: str,
        quote: Quote,
        authorization: TransferAuthorization,
    ) -> SettlementResult:
        """
        Settle a paid purchase.

        Raises:
            InputRejectedError: bad item, quote, price or authorization
            AuthorizationRejectedError: the relay refused the authorization
            SettlementFailedError: the relay could not settle
            ConflictError: already entitled, or the transaction was already used
            SettlementUnavailableError: no relay configured
        """
        if self._relay is None:
            raise SettlementUnavailableError("Payment settlement not configured")

        if not is_address(buyer_address):
            raise InputRejectedError("Invalid wallet address", code="invalid_wallet")
        buyer = buyer_address.lower()

        item = await self.get_item(item_ref)
        if item.is_free:
            raise InputRejectedError("Item is free, no payment required", code="free_item")
        if quote.item_id not in (item.id, item.slug):
            raise InputRejectedError("Quote is for a different item", code="quote_item_mismatch")
        if quote.pay_to.lower() != item.payout_address.lower():
            raise QuoteExpiredError("Payment quote is stale, payout address changed", code="quote_stale")

        now = self._clock()
        if quote.is_expired(now):
            raise QuoteExpiredError("Payment quote expired")

        split = calculate_fee_split(item.price, self._settings.platform_fee_percent)
        if quote.amount_micro != split.price_micro:
            raise PriceMismatchError("Payment amount mismatch")

        existing = await self._ledger.lookup(item.id, buyer, now=now)
        if existing is not None:
            raise AlreadyEntitledError("You already own this item")

        check_authorization(
            authorization,
            quote,
            buyer_address=buyer,
            price_micro=split.price_micro,
            now=now,
            verify_signature=self._settings.verify_authorization_signatures,
        )

        wire_split = fee_split_info(split, self._settings.platform_wallet, item.payout_address)

        with log_context(item_id=item.id, buyer=buyer):
            await self._relay.verify(authorization, quote, buyer, wire_split)
            proof = await self._relay.settle(authorization, quote, buyer, wire_split)
            self._check_proof_amount(proof, split)

            # A proof exists: funds moved. Finish recording even if the caller is cancelled.
            return await asyncio.shield(self._record(item, buyer, split, proof))

    def _check_proof_amount(self, proof: SettlementProof, split: FeeSplit) -> None:
        if proof.amount is None:
            return

        try:
            paid_micro = to_micro(proof.amount)
        except ArithmeticError:
            self.log.error("Relay proof amount unreadable", tx_hash=proof.tx_hash, amount=proof.amount)
            raise SettlementFailedError("Settlement proof amount unreadable")

        if paid_micro < split.price_micro:
            self.log.error(
                "Settlement underpaid",
                tx_hash=proof.tx_hash,
                paid_micro=paid_micro,
                expected_micro=split.price_micro,
            )
            raise SettlementFailedError("Settled amount is less than the quoted price")

        if paid_micro > split.price_micro:
            self.log.warning(
                "Settlement overpaid",
                tx_hash=proof.tx_hash,
                paid_micro=paid_micro,
                expected_micro=split.price_micro,
            )

    async def _record(
        self,
        item: Item,
        buyer: str,
        split: FeeSplit,
        proof: SettlementProof,
    ) -> SettlementResult:
        settled_at = self._clock()
        state = initial_state(proof, settled_at, self._settings.preconfirmation_window_seconds)

        try:
            entitlement = await self._ledger.issue(
                item,
                buyer,
                amount_paid=split.price,
                confirmation_status=state.confirmation_status,
                verification_deadline=state.verification_deadline,
                now=settled_at,
            )
        except AlreadyEntitledError:
            self.log.error(
                "Settlement proof orphaned by a concurrent purchase",
                tx_hash=proof.tx_hash,
                item_id=item.id,
                buyer=buyer,
                amount=str(split.price),
            )
            raise

        transaction = await self._ledger.record_transaction(
            entitlement,
            tx_hash=proof.tx_hash,
            from_address=buyer,
            to_address=item.payout_address,
            split=split,
            status=state.transaction_status,
            block_number=proof.block_number,
            confirmations=proof.confirmations,
        )

        await self._db.increment_purchase_count(item.id)

        if state.verification_deadline is not None and self._scheduler is not None:
            self._scheduler.schedule_confirmation(entitlement.id, state.verification_deadline)

        self.log.info(
            "Settlement recorded",
            entitlement_id=entitlement.id,
            tx_hash=transaction.tx_hash,
            status=entitlement.confirmation_status.value,
            proof_status=proof.status.value,
            platform_fee=str(split.platform_amount),
            seller_amount=str(split.seller_amount),
        )

        return SettlementResult(
            entitlement=entitlement,
            transaction=transaction,
            proof=proof,
            split=split,
        )
