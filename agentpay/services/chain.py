"""
Chain-state reader for USDC settlements on Ethereum.

Reads transaction receipts (to finalize preconfirmed settlements) and USDC
Transfer events sent from the platform wallet (to reconcile earn payouts).
Read-only: no keys, no transaction submission.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from agentpay.services.errors import ChainReadError
from agentpay.utils.logging import get_logger

logger = get_logger(__name__)

TRANSFER_EVENT_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


class ReceiptOutcome(str, Enum):
    """What the chain says about a transaction."""
    SUCCESS = "success"
    FAILURE = "failure"
    NONE = "none"


@dataclass
class Receipt:
    """Receipt lookup result."""
    outcome: ReceiptOutcome
    block_number: Optional[int] = None
    confirmations: int = 0


@dataclass
class TransferLog:
    """Observed ERC-20 transfer."""
    to: str
    value: int  # token base units (micro-USDC)
    tx_hash: str
    block_number: Optional[int] = None
    log_index: Optional[int] = None


def address_topic(address: str) -> str:
    """Left-pad an address into a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


class ChainReader(ABC):
    """Interface of the chain-state reader."""

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Receipt:
        """Look up a transaction receipt and its confirmation depth."""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current chain head."""
        pass

    @abstractmethod
    async def get_transfer_logs(self, from_address: str, since_block: int) -> list[TransferLog]:
        """USDC transfers sent by from_address since since_block (inclusive)."""
        pass

    async def close(self) -> None:
        pass


class Web3ChainReader(ChainReader):
    """Chain reader backed by a JSON-RPC endpoint."""

    def __init__(self, rpc_url: str, token_address: str, timeout: float = 20.0):
        self._rpc_url = rpc_url
        self._token_address = Web3.to_checksum_address(token_address)
        self._timeout = timeout
        self._w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
        )

    async def _call(self, label: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except TransactionNotFound:
            raise
        except asyncio.TimeoutError:
            raise ChainReadError(f"RPC timeout during {label}")
        except Exception as e:
            raise ChainReadError(f"RPC error during {label}: {e}")

    async def get_block_number(self) -> int:
        return int(await self._call("eth_blockNumber", self._w3.eth.block_number))

    async def get_receipt(self, tx_hash: str) -> Receipt:
        try:
            receipt = await self._call(
                "eth_getTransactionReceipt",
                self._w3.eth.get_transaction_receipt(tx_hash),
            )
        except TransactionNotFound:
            return Receipt(outcome=ReceiptOutcome.NONE)

        if receipt is None:
            return Receipt(outcome=ReceiptOutcome.NONE)

        block_number = receipt.get("blockNumber")
        if receipt.get("status") != 1:
            return Receipt(outcome=ReceiptOutcome.FAILURE, block_number=block_number)

        head = await self.get_block_number()
        confirmations = max(0, head - block_number) if block_number is not None else 0

        return Receipt(
            outcome=ReceiptOutcome.SUCCESS,
            block_number=block_number,
            confirmations=confirmations,
        )

    async def get_transfer_logs(self, from_address: str, since_block: int) -> list[TransferLog]:
        logs = await self._call(
            "eth_getLogs",
            self._w3.eth.get_logs({
                "address": self._token_address,
                "fromBlock": max(0, since_block),
                "toBlock": "latest",
                "topics": [TRANSFER_EVENT_TOPIC, address_topic(from_address)],
            }),
        )

        transfers = []
        for log in logs:
            topics = log["topics"]
            if len(topics) < 3:
                continue
            to = Web3.to_checksum_address(bytes(topics[2])[-20:])
            transfers.append(TransferLog(
                to=to,
                value=int.from_bytes(bytes(log["data"]), "big"),
                tx_hash=Web3.to_hex(log["transactionHash"]).lower(),
                block_number=log.get("blockNumber"),
                log_index=log.get("logIndex"),
            ))

        logger.debug(
            "Fetched transfer logs",
            from_address=from_address,
            since_block=since_block,
            count=len(transfers),
        )
        return transfers
