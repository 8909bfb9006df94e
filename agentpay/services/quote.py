"""
Payment quotes and signed transfer authorizations.

A quote is the "payment required" offer handed to a buyer: the price, who to
pay, and how the sale splits between platform and seller. The buyer answers
with an EIP-3009 transferWithAuthorization signed for exactly that amount.
"""

import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentpay.config import EVM_ADDRESS_RE, Settings
from agentpay.db.models import Item
from agentpay.services.errors import InputRejectedError, InvalidAuthorizationError
from agentpay.services.fee import USDC_DECIMALS, FeeSplit, calculate_fee_split, from_micro, to_micro

# EIP-712 domain of Circle's USDC (FiatTokenV2)
USDC_DOMAIN_NAME = "USD Coin"
USDC_DOMAIN_VERSION = "2"

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


def format_amount(amount: Decimal) -> str:
    """Render a USDC amount with two decimals, or six when cents are not enough."""
    cents = amount.quantize(Decimal("0.01"))
    if cents == amount:
        return f"{cents:.2f}"
    return f"{from_micro(to_micro(amount)):f}"


def is_address(value: Optional[str]) -> bool:
    """Check for a 0x-prefixed 20-byte hex address."""
    return bool(value) and EVM_ADDRESS_RE.match(value) is not None


class FeeSplitInfo(BaseModel):
    """How a quoted price divides between platform and seller."""
    platform_address: str
    platform_amount: str
    platform_percent: Decimal
    seller_address: str
    seller_amount: str
    seller_percent: Decimal


class Quote(BaseModel):
    """Payment-required offer for an item."""
    item_id: str
    item_name: Optional[str] = None
    amount: str
    currency: str = "USDC"
    pay_to: str
    nonce: str
    expires_at: datetime
    chain_id: int
    token: str
    token_decimals: int = USDC_DECIMALS
    domain_name: str = USDC_DOMAIN_NAME
    domain_version: str = USDC_DOMAIN_VERSION
    fee_split: FeeSplitInfo

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        try:
            amount = Decimal(v)
        except ArithmeticError:
            raise ValueError("amount must be a decimal string")
        if not amount.is_finite() or amount < 0:
            raise ValueError("amount must be a non-negative decimal")
        try:
            to_micro(amount)
        except ArithmeticError:
            raise ValueError("amount is out of range")
        return v

    @property
    def amount_micro(self) -> int:
        try:
            return to_micro(self.amount)
        except (ArithmeticError, ValueError):
            raise InputRejectedError("Quote amount is out of range", code="invalid_amount")

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


class TransferAuthorization(BaseModel):
    """EIP-3009 transferWithAuthorization signed by the buyer."""
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    to: str
    value: str  # micro-units, decimal string
    valid_after: int = Field(alias="validAfter")
    valid_before: int = Field(alias="validBefore")
    nonce: str  # 0x-prefixed bytes32
    v: int
    r: str
    s: str

    def to_wire(self) -> dict:
        """Serialize with the field names the relay expects."""
        return self.model_dump(by_alias=True)


def build_quote(item: Item, settings: Settings, now: Optional[datetime] = None) -> Quote:
    """
    Build a payment quote for an item at its current price.

    Args:
        item: Item being purchased
        settings: Fee percentages, platform wallet, chain metadata, quote TTL
        now: Clock override

    Returns:
        Quote valid for settings.quote_ttl_seconds
    """
    now = now or datetime.now(timezone.utc)
    split = calculate_fee_split(item.price, settings.platform_fee_percent)

    return Quote(
        item_id=item.id,
        item_name=item.name,
        amount=format_amount(split.price),
        currency=item.currency or "USDC",
        pay_to=item.payout_address,
        nonce=secrets.token_hex(16),
        expires_at=now + timedelta(seconds=settings.quote_ttl_seconds),
        chain_id=settings.chain_id,
        token=settings.usdc_contract,
        fee_split=fee_split_info(split, settings.platform_wallet, item.payout_address),
    )


def fee_split_info(split: FeeSplit, platform_address: str, seller_address: str) -> FeeSplitInfo:
    """Wire form of a fee split."""
    return FeeSplitInfo(
        platform_address=platform_address,
        platform_amount=format_amount(split.platform_amount),
        platform_percent=split.platform_percent,
        seller_address=seller_address,
        seller_amount=format_amount(split.seller_amount),
        seller_percent=split.seller_percent,
    )


def typed_data_for(authorization: TransferAuthorization, chain_id: int, token: str) -> dict:
    """EIP-712 payload the buyer signs for a transferWithAuthorization."""
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": USDC_DOMAIN_NAME,
            "version": USDC_DOMAIN_VERSION,
            "chainId": chain_id,
            "verifyingContract": token,
        },
        "message": {
            "from": authorization.from_address,
            "to": authorization.to,
            "value": int(authorization.value),
            "validAfter": authorization.valid_after,
            "validBefore": authorization.valid_before,
            "nonce": bytes.fromhex(authorization.nonce[2:]),
        },
    }


def recover_authorization_signer(authorization: TransferAuthorization, chain_id: int, token: str) -> str:
    """Recover the address that signed the authorization."""
    signable = encode_typed_data(full_message=typed_data_for(authorization, chain_id, token))
    signature = (
        int(authorization.r, 16).to_bytes(32, "big")
        + int(authorization.s, 16).to_bytes(32, "big")
        + bytes([authorization.v])
    )
    return Account.recover_message(signable, signature=signature)


def check_authorization(
    authorization: TransferAuthorization,
    quote: Quote,
    buyer_address: str,
    price_micro: int,
    now: datetime,
    verify_signature: bool = True,
) -> None:
    """
    Local checks run before anything is sent to the relay.

    Raises:
        InvalidAuthorizationError: if the authorization does not pay this quote
    """
    if not is_address(authorization.from_address) or not is_address(authorization.to):
        raise InvalidAuthorizationError("Authorization addresses are malformed")

    if authorization.from_address.lower() != buyer_address.lower():
        raise InvalidAuthorizationError("Authorization is not signed for the buyer's wallet")

    if authorization.to.lower() != quote.pay_to.lower():
        raise InvalidAuthorizationError("Authorization pays the wrong recipient")

    try:
        value = int(authorization.value)
    except ValueError:
        raise InvalidAuthorizationError("Authorization value is not an integer")
    if value != price_micro:
        raise InvalidAuthorizationError(
            f"Authorization value {value} does not match price {price_micro}"
        )

    timestamp = int(now.timestamp())
    if authorization.valid_before <= timestamp:
        raise InvalidAuthorizationError("Authorization has expired")
    if authorization.valid_after > timestamp:
        raise InvalidAuthorizationError("Authorization is not yet valid")

    nonce = authorization.nonce
    if not nonce.startswith("0x") or len(nonce) != 66:
        raise InvalidAuthorizationError("Authorization nonce must be 32 bytes")

    if verify_signature:
        try:
            signer = recover_authorization_signer(authorization, quote.chain_id, quote.token)
        except Exception as e:
            raise InvalidAuthorizationError(f"Authorization signature is invalid: {e}")
        if signer.lower() != buyer_address.lower():
            raise InvalidAuthorizationError("Authorization signature does not match the buyer")
