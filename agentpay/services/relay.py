"""
Settlement relay (x402 facilitator) client.

The relay executes the buyer's signed authorization on their behalf in two
phases: verify (signature and balance checks, no funds move) and settle
(executes the transfer and returns a proof).
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agentpay.services.errors import (
    AuthorizationRejectedError,
    RelayError,
    SettlementFailedError,
)
from agentpay.services.quote import FeeSplitInfo, Quote, TransferAuthorization
from agentpay.utils.logging import get_logger

logger = get_logger(__name__)


class ProofStatus(str, Enum):
    """Relay-reported settlement status. UNKNOWN catches anything else."""
    PENDING = "pending"
    PRECONFIRMED = "preconfirmed"
    CONFIRMED = "confirmed"
    UNKNOWN = "unknown"


class SettlementProof(BaseModel):
    """Proof returned by the relay after a successful settle."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tx_hash: str
    status: ProofStatus = ProofStatus.UNKNOWN
    block_number: Optional[int] = None
    confirmations: int = 0
    amount: Optional[str] = None
    currency: Optional[str] = None
    from_address: Optional[str] = Field(default=None, alias="from")
    to_address: Optional[str] = Field(default=None, alias="to")
    facilitator_signature: Optional[str] = None
    timestamp: Optional[Union[int, str]] = None

    @field_validator("tx_hash")
    @classmethod
    def normalize_tx_hash(cls, v: str) -> str:
        v = v.strip().lower()
        if not v.startswith("0x") or len(v) != 66:
            raise ValueError("tx_hash must be a 0x-prefixed 32-byte hex string")
        return v

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v: Any) -> ProofStatus:
        try:
            return ProofStatus(str(v).lower())
        except ValueError:
            return ProofStatus.UNKNOWN

    @field_validator("confirmations", mode="before")
    @classmethod
    def default_confirmations(cls, v: Any) -> int:
        return 0 if v is None else v


def parse_proof(data: Any) -> SettlementProof:
    """
    Parse a relay proof payload.

    Raises:
        RelayError: if the payload carries no usable transaction hash
    """
    if isinstance(data, dict) and isinstance(data.get("proof"), dict):
        data = data["proof"]
    try:
        return SettlementProof.model_validate(data)
    except ValidationError as e:
        raise RelayError(f"Malformed settlement proof: {e.errors()[0]['msg']}")


class SettlementRelay(ABC):
    """Interface of the external settlement relay."""

    @abstractmethod
    async def verify(
        self,
        authorization: TransferAuthorization,
        quote: Quote,
        payer: str,
        fee_split: FeeSplitInfo,
    ) -> None:
        """
        Validate the authorization without moving funds.

        Raises:
            AuthorizationRejectedError: if the relay refuses it
        """
        pass

    @abstractmethod
    async def settle(
        self,
        authorization: TransferAuthorization,
        quote: Quote,
        payer: str,
        fee_split: FeeSplitInfo,
    ) -> SettlementProof:
        """
        Execute the transfer.

        Raises:
            SettlementFailedError: if no proof was produced
        """
        pass

    async def close(self) -> None:
        pass


class RetryableRelayError(RelayError):
    """Transient relay failure (timeout, connection error, 429)."""
    pass


class HttpSettlementRelay(SettlementRelay):
    """Settlement relay reached over HTTP (POST /verify, POST /settle)."""

    def __init__(self, endpoint: str, timeout: float = 30.0):
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        """Initialize HTTP client."""
        self._http_client = httpx.AsyncClient(
            base_url=self._endpoint,
            timeout=self._timeout,
            headers={"Content-Type": "application/json"},
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10, keepalive_expiry=30),
        )
        logger.info("Settlement relay client initialized", endpoint=self._endpoint)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def _payload(
        authorization: TransferAuthorization,
        quote: Quote,
        payer: str,
        fee_split: FeeSplitInfo,
    ) -> dict:
        return {
            "authorization": authorization.to_wire(),
            "payment_required": quote.model_dump(mode="json"),
            "payer": payer,
            "fee_split": fee_split.model_dump(mode="json"),
        }

    async def _post(self, endpoint: str, payload: dict) -> httpx.Response:
        if not self._http_client:
            await self.initialize()

        try:
            response = await self._http_client.post(endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise RetryableRelayError(f"Relay timeout on {endpoint}: {e}")
        except httpx.TransportError as e:
            raise RetryableRelayError(f"Relay unreachable on {endpoint}: {e}")

        if response.status_code == 429:
            logger.warning("Rate limited by settlement relay", endpoint=endpoint)
            raise RetryableRelayError("Relay rate limit exceeded")

        return response

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] if response.text else ""
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or body.get("reason") or "")
        return ""

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RetryableRelayError),
        reraise=True,
    )
    async def _verify_request(self, payload: dict) -> httpx.Response:
        return await self._post("/verify", payload)

    async def verify(
        self,
        authorization: TransferAuthorization,
        quote: Quote,
        payer: str,
        fee_split: FeeSplitInfo,
    ) -> None:
        payload = self._payload(authorization, quote, payer, fee_split)

        try:
            response = await self._verify_request(payload)
        except RelayError as e:
            logger.error("Relay verify unavailable", payer=payer, error=str(e))
            raise AuthorizationRejectedError(f"Payment verification unavailable: {e.message}")

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            # Some relays answer 200 with {"isValid": false, "invalidReason": ...}
            if isinstance(body, dict) and body.get("isValid") is False:
                reason = body.get("invalidReason") or "Authorization rejected"
                raise AuthorizationRejectedError(f"Payment verification failed: {reason}")
            return

        detail = self._error_detail(response)
        logger.warning(
            "Relay rejected authorization",
            payer=payer,
            status=response.status_code,
            detail=detail,
        )
        raise AuthorizationRejectedError(
            f"Payment verification failed: {detail}" if detail else "Payment verification failed"
        )

    async def settle(
        self,
        authorization: TransferAuthorization,
        quote: Quote,
        payer: str,
        fee_split: FeeSplitInfo,
    ) -> SettlementProof:
        payload = self._payload(authorization, quote, payer, fee_split)

        # Never retried: a retry could move funds twice
        try:
            response = await self._post("/settle", payload)
        except RelayError as e:
            logger.error("Relay settle failed", payer=payer, error=str(e))
            raise SettlementFailedError(f"Payment settlement failed: {e.message}")

        if not response.is_success:
            detail = self._error_detail(response)
            logger.error(
                "Relay settle rejected",
                payer=payer,
                status=response.status_code,
                detail=detail,
            )
            raise SettlementFailedError(
                f"Payment settlement failed: {detail}" if detail else "Payment settlement failed"
            )

        try:
            body = response.json()
        except ValueError:
            raise SettlementFailedError("Relay returned a non-JSON settlement response")

        try:
            return parse_proof(body)
        except RelayError as e:
            logger.error("Relay returned an unusable proof", payer=payer, error=e.message)
            raise SettlementFailedError(e.message)
