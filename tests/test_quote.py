"""
Tests for payment quotes, transfer authorizations and relay proofs.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from eth_account import Account

from agentpay.services.errors import InputRejectedError, InvalidAuthorizationError, RelayError
from agentpay.services.quote import (
    Quote,
    build_quote,
    check_authorization,
    format_amount,
    recover_authorization_signer,
)
from agentpay.services.relay import ProofStatus, parse_proof

from conftest import PLATFORM_WALLET, SELLER_PAYOUT, random_tx_hash, sign_authorization


class TestFormatAmount:
    """Test quote amount rendering."""

    def test_whole_cents(self):
        """Test cent-precision prices render with two decimals."""
        assert format_amount(Decimal("5")) == "5.00"
        assert format_amount(Decimal("19.990000")) == "19.99"

    def test_sub_cent(self):
        """Test sub-cent prices keep six decimals."""
        assert format_amount(Decimal("0.015")) == "0.015000"


class TestBuildQuote:
    """Test quote generation."""

    async def test_quote_fields(self, item, settings, clock):
        """Test a quote carries price, payee, expiry and fee split."""
        quote = build_quote(item, settings, now=clock())

        assert quote.item_id == item.id
        assert quote.amount == "5.00"
        assert quote.amount_micro == 5_000_000
        assert quote.currency == "USDC"
        assert quote.pay_to == SELLER_PAYOUT
        assert quote.expires_at == clock() + timedelta(seconds=900)
        assert quote.chain_id == 1
        assert quote.token == settings.usdc_contract
        assert len(quote.nonce) == 32

        assert quote.fee_split.platform_address == PLATFORM_WALLET
        assert quote.fee_split.platform_amount == "1.00"
        assert quote.fee_split.seller_amount == "4.00"
        assert quote.fee_split.platform_percent == Decimal("20")
        assert quote.fee_split.seller_percent == Decimal("80")

    async def test_nonces_differ(self, item, settings, clock):
        """Test every quote gets a fresh nonce."""
        first = build_quote(item, settings, now=clock())
        second = build_quote(item, settings, now=clock())
        assert first.nonce != second.nonce

    async def test_expiry(self, item, settings, clock):
        """Test quote expiry check."""
        quote = build_quote(item, settings, now=clock())
        assert not quote.is_expired(clock())
        assert quote.is_expired(clock() + timedelta(seconds=900))

    async def test_json_round_trip(self, item, settings, clock):
        """Test a quote survives the wire unchanged."""
        quote = build_quote(item, settings, now=clock())
        parsed = Quote.model_validate(quote.model_dump(mode="json"))
        assert parsed == quote

    @pytest.mark.parametrize("amount", ["five", "1e30", "1" * 30, "NaN", "Infinity", "-1.00"])
    def test_rejects_bad_amount(self, amount):
        """Test non-numeric, negative and out-of-range amounts are rejected."""
        with pytest.raises(ValueError):
            Quote(
                item_id="x",
                amount=amount,
                pay_to=SELLER_PAYOUT,
                nonce="n",
                expires_at="2026-01-01T00:00:00Z",
                chain_id=1,
                token=SELLER_PAYOUT,
                fee_split={
                    "platform_address": PLATFORM_WALLET,
                    "platform_amount": "1.00",
                    "platform_percent": "20",
                    "seller_address": SELLER_PAYOUT,
                    "seller_amount": "4.00",
                    "seller_percent": "80",
                },
            )

    async def test_unvalidated_amount_out_of_range(self, item, settings, clock):
        """Test an out-of-range amount that skipped validation is an input rejection."""
        quote = build_quote(item, settings, now=clock()).model_copy(update={"amount": "1e30"})

        with pytest.raises(InputRejectedError) as exc_info:
            quote.amount_micro
        assert exc_info.value.code == "invalid_amount"


class TestCheckAuthorization:
    """Test local authorization checks."""

    @pytest.fixture
    async def quote(self, item, settings, clock):
        return build_quote(item, settings, now=clock())

    async def test_valid_authorization(self, quote, buyer, clock):
        """Test a correctly signed authorization passes."""
        authorization = sign_authorization(buyer, quote, clock())
        check_authorization(authorization, quote, buyer.address.lower(), 5_000_000, clock())

    async def test_recovers_signer(self, quote, buyer, clock):
        """Test the EIP-712 signer is recovered."""
        authorization = sign_authorization(buyer, quote, clock())
        signer = recover_authorization_signer(authorization, quote.chain_id, quote.token)
        assert signer.lower() == buyer.address.lower()

    async def test_wrong_buyer(self, quote, buyer, clock):
        """Test an authorization from another wallet is rejected."""
        other = Account.create()
        authorization = sign_authorization(other, quote, clock())
        with pytest.raises(InvalidAuthorizationError):
            check_authorization(authorization, quote, buyer.address, 5_000_000, clock())

    async def test_wrong_recipient(self, quote, buyer, clock):
        """Test paying someone other than the quote's payee is rejected."""
        authorization = sign_authorization(buyer, quote, clock(), pay_to=PLATFORM_WALLET)
        with pytest.raises(InvalidAuthorizationError, match="recipient"):
            check_authorization(authorization, quote, buyer.address, 5_000_000, clock())

    async def test_wrong_value(self, quote, buyer, clock):
        """Test an authorization for a different amount is rejected."""
        authorization = sign_authorization(buyer, quote, clock(), value=4_999_999)
        with pytest.raises(InvalidAuthorizationError, match="does not match price"):
            check_authorization(authorization, quote, buyer.address, 5_000_000, clock())

    async def test_expired(self, quote, buyer, clock):
        """Test an authorization past validBefore is rejected."""
        authorization = sign_authorization(buyer, quote, clock())
        later = clock() + timedelta(hours=2)
        with pytest.raises(InvalidAuthorizationError, match="expired"):
            check_authorization(authorization, quote, buyer.address, 5_000_000, later)

    async def test_not_yet_valid(self, quote, buyer, clock):
        """Test an authorization before validAfter is rejected."""
        authorization = sign_authorization(buyer, quote, clock())
        earlier = clock() - timedelta(minutes=5)
        with pytest.raises(InvalidAuthorizationError, match="not yet valid"):
            check_authorization(authorization, quote, buyer.address, 5_000_000, earlier)

    async def test_bad_nonce(self, quote, buyer, clock):
        """Test a nonce that is not 32 bytes is rejected."""
        authorization = sign_authorization(buyer, quote, clock()).model_copy(update={"nonce": "0x1234"})
        with pytest.raises(InvalidAuthorizationError, match="nonce"):
            check_authorization(authorization, quote, buyer.address, 5_000_000, clock())

    async def test_tampered_signature(self, quote, buyer, clock):
        """Test a signature over different terms is rejected."""
        other = Account.create()
        authorization = sign_authorization(buyer, quote, clock()).model_copy(
            update={"from_address": other.address}
        )
        with pytest.raises(InvalidAuthorizationError, match="signature"):
            check_authorization(authorization, quote, other.address, 5_000_000, clock())

    async def test_signature_check_can_be_disabled(self, quote, buyer, clock):
        """Test relay-only verification skips local recovery."""
        authorization = sign_authorization(buyer, quote, clock()).model_copy(
            update={"r": "0x" + "00" * 32}
        )
        check_authorization(
            authorization, quote, buyer.address, 5_000_000, clock(), verify_signature=False
        )

    async def test_wire_aliases(self, quote, buyer, clock):
        """Test the authorization serializes with EIP-3009 field names."""
        wire = sign_authorization(buyer, quote, clock()).to_wire()
        assert wire["from"] == buyer.address
        assert "validAfter" in wire
        assert "validBefore" in wire


class TestSettlementProof:
    """Test relay proof parsing."""

    def test_parse_flat_proof(self):
        """Test a flat proof payload."""
        tx_hash = random_tx_hash()
        proof = parse_proof({
            "tx_hash": tx_hash.upper().replace("0X", "0x"),
            "status": "confirmed",
            "block_number": 123,
            "confirmations": 3,
            "from": "0xabc",
        })
        assert proof.tx_hash == tx_hash
        assert proof.status == ProofStatus.CONFIRMED
        assert proof.confirmations == 3
        assert proof.from_address == "0xabc"

    def test_parse_nested_proof(self):
        """Test a proof wrapped in {"proof": ...}."""
        proof = parse_proof({"success": True, "proof": {"tx_hash": random_tx_hash(), "status": "preconfirmed"}})
        assert proof.status == ProofStatus.PRECONFIRMED
        assert proof.confirmations == 0

    def test_unknown_status(self):
        """Test unrecognized statuses map to unknown."""
        proof = parse_proof({"tx_hash": random_tx_hash(), "status": "mined-ish", "confirmations": None})
        assert proof.status == ProofStatus.UNKNOWN
        assert proof.confirmations == 0

    def test_missing_status(self):
        """Test a proof without a status is unknown."""
        assert parse_proof({"tx_hash": random_tx_hash()}).status == ProofStatus.UNKNOWN

    def test_malformed_hash(self):
        """Test proofs without a usable hash are rejected."""
        with pytest.raises(RelayError):
            parse_proof({"tx_hash": "0x1234", "status": "confirmed"})
        with pytest.raises(RelayError):
            parse_proof({"status": "confirmed"})
