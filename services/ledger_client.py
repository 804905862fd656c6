"""
Ledger Client
=============

Adapter for the on-chain escrow contract that custodies deal funds. The contract is
addressed by the deal code (its "external id"); it hands back a numeric correlation
id that every later call uses.

web3 is synchronous, so every RPC runs in a worker thread under a hard deadline.
A call that exceeds the deadline raises LedgerTimeoutError; the effect on the ledger
is then unknown and the next status read is the authority.
"""

import asyncio
import logging
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Callable, Optional, Protocol

from web3 import Web3
from web3.exceptions import TimeExhausted

from config import Config
from utils.exceptions import LedgerError, LedgerTimeoutError

logger = logging.getLogger(__name__)


class LedgerStatus(IntEnum):
    """Status codes reported by the escrow contract"""
    PENDING = 0
    FUNDED = 1
    COMPLETED = 2
    REFUNDED = 3
    DISPUTED = 4
    CANCELLED = 5


# Ledger states that can only be reached after the buyer deposited
DEPOSITED_STATES = frozenset({
    LedgerStatus.FUNDED, LedgerStatus.COMPLETED, LedgerStatus.DISPUTED, LedgerStatus.REFUNDED,
})


class TxOutcome(Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class TxHandle(Protocol):
    tx_hash: str

    async def await_confirmation(self, timeout: float) -> TxOutcome:
        ...


class LedgerClient(Protocol):
    """Operations the escrow core needs from the ledger"""

    async def resolve_correlation_id(self, deal_code: str) -> Optional[int]:
        ...

    async def read_status(self, ledger_deal_id: int) -> LedgerStatus:
        ...

    async def create_on_ledger(self, deal_code: str, seller_wallet: str, buyer_wallet: str,
                               amount: Decimal) -> TxHandle:
        ...

    async def mark_disputed(self, ledger_deal_id: int) -> TxHandle:
        ...

    async def resolve_release(self, ledger_deal_id: int) -> TxHandle:
        ...

    async def resolve_refund(self, ledger_deal_id: int) -> TxHandle:
        ...


async def confirm_transaction(handle: TxHandle, action: str, timeout: Optional[float] = None) -> str:
    """Await a transaction and return its hash; raise LedgerError unless it confirmed"""
    timeout = Config.LEDGER_CONFIRMATION_TIMEOUT_SECONDS if timeout is None else timeout
    outcome = await handle.await_confirmation(timeout)
    if outcome is TxOutcome.CONFIRMED:
        logger.info(f"⛓️ LEDGER_CONFIRMED: {action} tx={handle.tx_hash}")
        return handle.tx_hash
    if outcome is TxOutcome.TIMED_OUT:
        raise LedgerTimeoutError(f"{action} not confirmed within {timeout}s (tx {handle.tx_hash})")
    raise LedgerError(f"{action} failed on ledger (tx {handle.tx_hash})")


ESCROW_ABI = [
    {
        "type": "function", "name": "createDeal", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_externalId", "type": "string"},
            {"name": "_seller", "type": "address"},
            {"name": "_buyer", "type": "address"},
            {"name": "_amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function", "name": "externalIdToDealId", "stateMutability": "view",
        "inputs": [{"name": "", "type": "string"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function", "name": "deals", "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "externalId", "type": "string"},
            {"name": "seller", "type": "address"},
            {"name": "buyer", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "status", "type": "uint8"},
            {"name": "createdAt", "type": "uint256"},
            {"name": "completedAt", "type": "uint256"},
        ],
    },
    {
        "type": "function", "name": "dispute", "stateMutability": "nonpayable",
        "inputs": [{"name": "_dealId", "type": "uint256"}], "outputs": [],
    },
    {
        "type": "function", "name": "resolveRelease", "stateMutability": "nonpayable",
        "inputs": [{"name": "_dealId", "type": "uint256"}], "outputs": [],
    },
    {
        "type": "function", "name": "refund", "stateMutability": "nonpayable",
        "inputs": [{"name": "_dealId", "type": "uint256"}], "outputs": [],
    },
]

_STATUS_INDEX = 4


class Web3TxHandle:
    """Pending contract transaction"""

    def __init__(self, w3: Web3, tx_hash: str):
        self._w3 = w3
        self.tx_hash = tx_hash

    async def await_confirmation(self, timeout: float) -> TxOutcome:
        def _wait():
            return self._w3.eth.wait_for_transaction_receipt(self.tx_hash, timeout=timeout)

        try:
            # Outer deadline in case the provider ignores the poll timeout
            receipt = await asyncio.wait_for(asyncio.to_thread(_wait), timeout=timeout + 5)
        except (TimeExhausted, asyncio.TimeoutError):
            logger.warning(f"⏱️ LEDGER_TX_TIMEOUT: {self.tx_hash} not mined within {timeout}s")
            return TxOutcome.TIMED_OUT
        except Exception as e:
            logger.error(f"❌ LEDGER_TX_RECEIPT_ERROR: {self.tx_hash}: {e}")
            return TxOutcome.FAILED

        if receipt["status"] == 1:
            return TxOutcome.CONFIRMED
        logger.error(f"❌ LEDGER_TX_REVERTED: {self.tx_hash}")
        return TxOutcome.FAILED


class Web3LedgerClient:
    """Escrow contract client over JSON-RPC"""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: int,
        token_decimals: int = 6,
        call_timeout: float = 30,
        gas_limit: int = 300000,
        w3: Optional[Web3] = None,
    ):
        self._w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": call_timeout}))
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=ESCROW_ABI
        )
        self._account = self._w3.eth.account.from_key(private_key)
        self._chain_id = chain_id
        self._token_decimals = token_decimals
        self._call_timeout = call_timeout
        self._gas_limit = gas_limit
        # Serialises nonce allocation across concurrent sends
        self._send_lock = asyncio.Lock()

    @classmethod
    def from_config(cls) -> "Web3LedgerClient":
        return cls(
            rpc_url=Config.LEDGER_RPC_URL,
            contract_address=Config.ESCROW_CONTRACT_ADDRESS,
            private_key=Config.LEDGER_PRIVATE_KEY,
            chain_id=Config.LEDGER_CHAIN_ID,
            token_decimals=Config.LEDGER_TOKEN_DECIMALS,
            call_timeout=Config.LEDGER_CALL_TIMEOUT_SECONDS,
            gas_limit=Config.LEDGER_GAS_LIMIT,
        )

    async def _run(self, action: str, fn: Callable[..., Any], *args) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._call_timeout)
        except asyncio.TimeoutError:
            raise LedgerTimeoutError(f"{action} timed out after {self._call_timeout}s")
        except Exception as e:
            raise LedgerError(f"{action} failed: {e}") from e

    def _send_sync(self, contract_call) -> str:
        tx = contract_call.build_transaction({
            "from": self._account.address,
            "nonce": self._w3.eth.get_transaction_count(self._account.address, "pending"),
            "chainId": self._chain_id,
            "gas": self._gas_limit,
            "gasPrice": self._w3.eth.gas_price,
        })
        signed = self._account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def _send(self, action: str, contract_call) -> Web3TxHandle:
        async with self._send_lock:
            tx_hash = await self._run(action, self._send_sync, contract_call)
        logger.info(f"⛓️ LEDGER_TX_SENT: {action} tx={tx_hash}")
        return Web3TxHandle(self._w3, tx_hash)

    def to_base_units(self, amount: Decimal) -> int:
        return int((Decimal(amount) * (Decimal(10) ** self._token_decimals)).to_integral_value())

    async def resolve_correlation_id(self, deal_code: str) -> Optional[int]:
        ledger_id = await self._run(
            f"externalIdToDealId({deal_code})",
            self._contract.functions.externalIdToDealId(deal_code).call,
        )
        return int(ledger_id) or None

    async def read_status(self, ledger_deal_id: int) -> LedgerStatus:
        record = await self._run(
            f"deals({ledger_deal_id})", self._contract.functions.deals(ledger_deal_id).call
        )
        try:
            return LedgerStatus(int(record[_STATUS_INDEX]))
        except ValueError:
            raise LedgerError(f"Unknown ledger status {record[_STATUS_INDEX]} for deal {ledger_deal_id}")

    async def create_on_ledger(self, deal_code: str, seller_wallet: str, buyer_wallet: str,
                               amount: Decimal) -> Web3TxHandle:
        call = self._contract.functions.createDeal(
            deal_code,
            Web3.to_checksum_address(seller_wallet),
            Web3.to_checksum_address(buyer_wallet),
            self.to_base_units(amount),
        )
        return await self._send(f"createDeal({deal_code})", call)

    async def mark_disputed(self, ledger_deal_id: int) -> Web3TxHandle:
        return await self._send(f"dispute({ledger_deal_id})", self._contract.functions.dispute(ledger_deal_id))

    async def resolve_release(self, ledger_deal_id: int) -> Web3TxHandle:
        return await self._send(
            f"resolveRelease({ledger_deal_id})", self._contract.functions.resolveRelease(ledger_deal_id)
        )

    async def resolve_refund(self, ledger_deal_id: int) -> Web3TxHandle:
        return await self._send(f"refund({ledger_deal_id})", self._contract.functions.refund(ledger_deal_id))
