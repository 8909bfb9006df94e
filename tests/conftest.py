"""
Pytest configuration and fixtures.
"""

import asyncio
import os
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

# Settings are read at import time by the API module
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./agentpay-test.db")
os.environ.setdefault("RATE_LIMIT_GLOBAL", "10000/minute")
os.environ.setdefault("RATE_LIMIT_SETTLE", "10000/minute")

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from agentpay.config import Settings
from agentpay.db.database import Database, generate_id
from agentpay.db.models import (
    ConfirmationStatus,
    Entitlement,
    Item,
    PricingModel,
    Seller,
    Transaction,
    TransactionStatus,
)
from agentpay.services.chain import ChainReader, Receipt, ReceiptOutcome, TransferLog
from agentpay.services.engine import build_engine
from agentpay.services.errors import ChainReadError
from agentpay.services.fee import calculate_fee_split
from agentpay.services.quote import Quote, TransferAuthorization, typed_data_for
from agentpay.services.relay import SettlementProof, SettlementRelay

PLATFORM_WALLET = "0x71483B877c40eb2BF99230176947F5ec1c2351cb"
SELLER_PAYOUT = "0x1111111111111111111111111111111111111111"
OTHER_PAYOUT = "0x2222222222222222222222222222222222222222"
CRON_SECRET = "test-cron-secret"


def random_tx_hash() -> str:
    return "0x" + secrets.token_hex(32)


class FrozenClock:
    """Controllable clock injected into the engine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeRelay(SettlementRelay):
    """In-process settlement relay."""

    def __init__(self):
        self.status = "confirmed"
        self.amount: Optional[str] = None
        self.block_number: Optional[int] = 100
        self.tx_hashes: list[str] = []
        self.verify_error: Optional[Exception] = None
        self.settle_error: Optional[Exception] = None
        self.verify_calls = 0
        self.settle_calls = 0
        self.fee_splits = []
        self.verify_started = asyncio.Event()
        self.verify_gate: Optional[asyncio.Event] = None
        self.settled = asyncio.Event()

    async def verify(self, authorization, quote, payer, fee_split):
        self.verify_calls += 1
        self.fee_splits.append(fee_split)
        self.verify_started.set()
        if self.verify_gate is not None:
            await self.verify_gate.wait()
        await asyncio.sleep(0)
        if self.verify_error is not None:
            raise self.verify_error

    async def settle(self, authorization, quote, payer, fee_split):
        self.settle_calls += 1
        await asyncio.sleep(0)
        if self.settle_error is not None:
            raise self.settle_error
        tx_hash = self.tx_hashes.pop(0) if self.tx_hashes else random_tx_hash()
        proof = SettlementProof(
            tx_hash=tx_hash,
            status=self.status,
            block_number=self.block_number,
            amount=self.amount,
            **{"from": payer, "to": quote.pay_to},
        )
        self.settled.set()
        return proof


class FakeChain(ChainReader):
    """In-process chain reader."""

    def __init__(self):
        self.head = 1_000
        self.receipts: dict[str, Receipt] = {}
        self.transfers: list[TransferLog] = []
        self.fail_receipts = False
        self.fail_logs = False
        self.log_queries: list[tuple[str, int]] = []

    async def get_receipt(self, tx_hash):
        if self.fail_receipts:
            raise ChainReadError("RPC timeout during eth_getTransactionReceipt")
        return self.receipts.get(tx_hash.lower(), Receipt(outcome=ReceiptOutcome.NONE))

    async def get_block_number(self):
        return self.head

    async def get_transfer_logs(self, from_address, since_block):
        if self.fail_logs:
            raise ChainReadError("RPC error during eth_getLogs")
        self.log_queries.append((from_address, since_block))
        return list(self.transfers)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'agentpay.db'}",
        platform_wallet=PLATFORM_WALLET,
        platform_fee_percent=Decimal("20"),
        earn_pool_percent=Decimal("10"),
        preconfirmation_window_seconds=60,
        min_confirmations=2,
        cron_secret=CRON_SECRET,
    )


@pytest.fixture
async def db(settings):
    database = Database(settings.database_url)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
async def engine(settings, db, relay, chain, clock):
    payment_engine = build_engine(settings, db=db, relay=relay, chain=chain, clock=clock)
    yield payment_engine
    await payment_engine.scheduler.stop()


@pytest.fixture
async def seller(db):
    return await add_seller(db, "Acme Research", SELLER_PAYOUT)


@pytest.fixture
async def item(db, seller):
    return await add_item(db, seller, "acme.research.analyst", Decimal("5.00"))


@pytest.fixture
async def free_item(db, seller):
    return await add_item(db, seller, "acme.research.free", Decimal("0"), PricingModel.FREE)


@pytest.fixture
def buyer():
    return Account.create()


async def add_seller(db: Database, display_name: str, payout_address: str) -> Seller:
    seller = Seller(id=generate_id(), display_name=display_name, payout_address=payout_address)
    async with db.session() as session:
        session.add(seller)
    return seller


async def add_item(
    db: Database,
    seller: Seller,
    slug: str,
    price: Decimal,
    pricing_model: PricingModel = PricingModel.ONE_TIME,
) -> Item:
    item = Item(
        id=generate_id(),
        slug=slug,
        seller_id=seller.id,
        name=slug.split(".")[-1].title(),
        pricing_model=pricing_model,
        price=price,
        payout_address=seller.payout_address,
    )
    async with db.session() as session:
        session.add(item)
    return item


async def add_sale(
    db: Database,
    item: Item,
    created_at: datetime,
    buyer_address: Optional[str] = None,
    platform_fee_percent: Decimal = Decimal("20"),
    status: TransactionStatus = TransactionStatus.CONFIRMED,
) -> Transaction:
    """Record a settled sale directly, bypassing the relay."""
    buyer_address = buyer_address or "0x" + secrets.token_hex(20)
    split = calculate_fee_split(item.price, platform_fee_percent)
    entitlement = Entitlement(
        id=generate_id(),
        item_id=item.id,
        buyer_address=buyer_address.lower(),
        token=secrets.token_hex(32),
        pricing_model=PricingModel.ONE_TIME,
        amount_paid=split.price,
        confirmation_status=ConfirmationStatus.CONFIRMED,
    )
    transaction = Transaction(
        id=generate_id(),
        entitlement_id=entitlement.id,
        tx_hash=random_tx_hash(),
        from_address=buyer_address.lower(),
        to_address=item.payout_address.lower(),
        amount=split.price,
        platform_fee=split.platform_amount,
        seller_amount=split.seller_amount,
        status=status,
        created_at=created_at,
    )
    await db.insert_entitlement(entitlement)
    await db.insert_transaction(transaction)
    return transaction


def sign_authorization(
    account,
    quote: Quote,
    now: datetime,
    value: Optional[int] = None,
    pay_to: Optional[str] = None,
) -> TransferAuthorization:
    """Sign an EIP-3009 transferWithAuthorization for a quote."""
    timestamp = int(now.timestamp())
    unsigned = TransferAuthorization(
        from_address=account.address,
        to=pay_to or quote.pay_to,
        value=str(quote.amount_micro if value is None else value),
        valid_after=timestamp - 60,
        valid_before=timestamp + 3600,
        nonce="0x" + secrets.token_hex(32),
        v=0,
        r="0x0",
        s="0x0",
    )
    signable = encode_typed_data(full_message=typed_data_for(unsigned, quote.chain_id, quote.token))
    signed = account.sign_message(signable)
    return unsigned.model_copy(update={
        "v": signed.v,
        "r": "0x" + signed.r.to_bytes(32, "big").hex(),
        "s": "0x" + signed.s.to_bytes(32, "big").hex(),
    })


async def purchase(engine, item: Item, account, clock: FrozenClock):
    """Quote and settle an item for a buyer account."""
    quote = engine.settlement.quote_for(item)
    authorization = sign_authorization(account, quote, clock())
    return await engine.settlement.settle(item.id, account.address, quote, authorization)
