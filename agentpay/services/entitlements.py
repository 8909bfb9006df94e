"""
Entitlement ledger.

Issues, looks up and revokes access grants. The storage layer enforces at most
one active entitlement per (item, buyer) and one use per transaction hash;
this service turns those constraint violations into conflicts.
"""

import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from agentpay.db.database import Database, generate_id
from agentpay.db.models import (
    ConfirmationStatus,
    Entitlement,
    Item,
    PricingModel,
    Transaction,
    TransactionStatus,
)
from agentpay.services.errors import AlreadyEntitledError, ReplayConflictError
from agentpay.services.fee import FeeSplit
from agentpay.utils.logging import LoggerMixin


def generate_entitlement_token() -> str:
    """Opaque 32-byte bearer token."""
    return secrets.token_hex(32)


class EntitlementLedger(LoggerMixin):
    """Durable record of who may use which item."""

    def __init__(self, db: Database):
        self._db = db

    async def lookup(
        self,
        item_id: str,
        buyer_address: str,
        now: Optional[datetime] = None,
    ) -> Optional[Entitlement]:
        """Active, unexpired entitlement for the pair, evaluated at read time."""
        now = now or datetime.now(timezone.utc)
        return await self._db.get_active_entitlement(item_id, buyer_address.lower(), now)

    async def issue(
        self,
        item: Item,
        buyer_address: str,
        amount_paid: Decimal,
        confirmation_status: ConfirmationStatus,
        verification_deadline: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """
        Create an active entitlement.

        Raises:
            AlreadyEntitledError: if the buyer already holds one for this item
        """
        buyer = buyer_address.lower()
        now = now or datetime.now(timezone.utc)

        retired = await self._db.retire_expired_entitlements(item.id, buyer, now)
        if retired:
            self.log.info("Retired expired entitlements", item_id=item.id, buyer=buyer, count=retired)

        entitlement = Entitlement(
            id=generate_id(),
            item_id=item.id,
            buyer_address=buyer,
            token=generate_entitlement_token(),
            pricing_model=PricingModel.ONE_TIME,
            amount_paid=amount_paid,
            currency=item.currency or "USDC",
            is_active=True,
            confirmation_status=confirmation_status,
            verification_deadline=verification_deadline,
            expires_at=expires_at,
        )

        try:
            await self._db.insert_entitlement(entitlement)
        except IntegrityError:
            raise AlreadyEntitledError("You already own this item")

        self.log.info(
            "Entitlement issued",
            entitlement_id=entitlement.id,
            item_id=item.id,
            buyer=buyer,
            status=confirmation_status.value,
            deadline=verification_deadline.isoformat() if verification_deadline else None,
        )
        return entitlement

    async def record_transaction(
        self,
        entitlement: Entitlement,
        tx_hash: str,
        from_address: str,
        to_address: str,
        split: FeeSplit,
        status: TransactionStatus,
        block_number: Optional[int] = None,
        confirmations: int = 0,
    ) -> Transaction:
        """
        Record the settlement behind an entitlement.

        A duplicate transaction hash deletes the entitlement just issued.

        Raises:
            ReplayConflictError: if the hash was already used for a purchase
        """
        tx_hash = tx_hash.lower()
        transaction = Transaction(
            id=generate_id(),
            entitlement_id=entitlement.id,
            tx_hash=tx_hash,
            from_address=from_address.lower(),
            to_address=to_address.lower(),
            amount=split.price,
            currency=entitlement.currency,
            platform_fee=split.platform_amount,
            seller_amount=split.seller_amount,
            status=status,
            block_number=block_number,
            confirmations=confirmations,
        )

        try:
            await self._db.insert_transaction(transaction)
        except IntegrityError:
            deleted = await self._db.delete_orphaned_entitlement(entitlement.id)
            self.log.warning(
                "Duplicate transaction hash, entitlement compensated",
                tx_hash=tx_hash,
                entitlement_id=entitlement.id,
                deleted=deleted,
            )
            raise ReplayConflictError("Transaction already used")

        return transaction

    async def revoke(
        self,
        entitlement_id: str,
        reason: str,
        only_if_status: Optional[ConfirmationStatus] = None,
    ) -> bool:
        """
        Terminally revoke an entitlement and decrement the item's purchase count.

        Returns:
            True if this call revoked it, False if it was already terminal
        """
        revoked = await self._db.revoke_entitlement(entitlement_id, reason, only_if_status)
        if revoked:
            self.log.info("Entitlement revoked", entitlement_id=entitlement_id, reason=reason)
        return revoked

    async def confirm(
        self,
        entitlement_id: str,
        block_number: Optional[int],
        confirmations: int,
    ) -> bool:
        """Finalize a preconfirmed entitlement."""
        confirmed = await self._db.confirm_entitlement(entitlement_id, block_number, confirmations)
        if confirmed:
            self.log.info(
                "Entitlement confirmed",
                entitlement_id=entitlement_id,
                block_number=block_number,
                confirmations=confirmations,
            )
        return confirmed
