"""
Escrow Test Foundation

Shared doubles and builders for the escrow tests:
1. FakeLedgerClient: scriptable escrow contract that yields to the event loop on every call
2. RecordingSink: captures notifications instead of sending Telegram messages
3. Fixed test identities and wallets
4. Builders that drive a deal into each status through the public services
"""

import asyncio
import itertools
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from models import Deal
from services.access_control import Identity
from services.ledger_client import LedgerStatus, TxOutcome
from utils.exceptions import LedgerError

# Test identities
SELLER = Identity.of(1001, "@Alice_Seller")
BUYER = Identity.of(2002, "bob_buyer")
MODERATOR = Identity.of(3003, "mod_mary")
SECOND_MODERATOR = Identity.of(3004, "mod_max")
OUTSIDER = Identity.of(4004, "eve")
BOTMASTER = Identity.of(9001, "root_admin")

SELLER_WALLET = "0x" + "a1" * 20
BUYER_WALLET = "0x" + "b2" * 20
MODERATOR_WALLET = "0x" + "c3" * 20


class FakeTxHandle:
    """Transaction whose effect lands on the fake ledger only when it confirms"""

    def __init__(self, ledger: "FakeLedgerClient", tx_hash: str, outcome: TxOutcome, effect=None):
        self._ledger = ledger
        self.tx_hash = tx_hash
        self.outcome = outcome
        self._effect = effect

    async def await_confirmation(self, timeout: float) -> TxOutcome:
        await asyncio.sleep(0)
        if self.outcome is TxOutcome.CONFIRMED and self._effect is not None:
            self._effect()
        return self.outcome


class FakeLedgerClient:
    """In-memory escrow contract"""

    def __init__(self):
        self.ids: Dict[str, int] = {}
        self.statuses: Dict[int, LedgerStatus] = {}
        self.calls: List[Tuple[str, object]] = []
        self.outcomes: Dict[str, TxOutcome] = {}
        self.errors: Dict[str, Exception] = {}
        self._next_id = itertools.count(1)
        self._tx_counter = itertools.count(1)

    # Test helpers -------------------------------------------------------

    def register(self, code: str, status: LedgerStatus = LedgerStatus.PENDING) -> int:
        ledger_id = next(self._next_id)
        self.ids[code] = ledger_id
        self.statuses[ledger_id] = status
        return ledger_id

    def set_status(self, code: str, status: LedgerStatus) -> None:
        self.statuses[self.ids[code]] = status

    def deposit(self, code: str) -> None:
        self.set_status(code, LedgerStatus.FUNDED)

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    # LedgerClient -------------------------------------------------------

    async def _enter(self, name: str, arg) -> None:
        await asyncio.sleep(0)
        self.calls.append((name, arg))
        if name in self.errors:
            raise self.errors[name]

    def _handle(self, name: str, effect) -> FakeTxHandle:
        outcome = self.outcomes.get(name, TxOutcome.CONFIRMED)
        return FakeTxHandle(self, f"0x{next(self._tx_counter):064x}", outcome, effect)

    async def resolve_correlation_id(self, deal_code: str) -> Optional[int]:
        await self._enter("resolve_correlation_id", deal_code)
        return self.ids.get(deal_code)

    async def read_status(self, ledger_deal_id: int) -> LedgerStatus:
        await self._enter("read_status", ledger_deal_id)
        if ledger_deal_id not in self.statuses:
            raise LedgerError(f"unknown ledger deal {ledger_deal_id}")
        return self.statuses[ledger_deal_id]

    async def create_on_ledger(self, deal_code: str, seller_wallet: str, buyer_wallet: str,
                               amount: Decimal) -> FakeTxHandle:
        await self._enter("create_on_ledger", deal_code)
        return self._handle("create_on_ledger", lambda: self.register(deal_code))

    async def mark_disputed(self, ledger_deal_id: int) -> FakeTxHandle:
        await self._enter("mark_disputed", ledger_deal_id)
        return self._handle(
            "mark_disputed", lambda: self.statuses.__setitem__(ledger_deal_id, LedgerStatus.DISPUTED)
        )

    async def resolve_release(self, ledger_deal_id: int) -> FakeTxHandle:
        await self._enter("resolve_release", ledger_deal_id)
        return self._handle(
            "resolve_release", lambda: self.statuses.__setitem__(ledger_deal_id, LedgerStatus.COMPLETED)
        )

    async def resolve_refund(self, ledger_deal_id: int) -> FakeTxHandle:
        await self._enter("resolve_refund", ledger_deal_id)
        return self._handle(
            "resolve_refund", lambda: self.statuses.__setitem__(ledger_deal_id, LedgerStatus.REFUNDED)
        )


class RecordingSink:
    """Notification sink that records messages; recipients in ``failing`` raise"""

    def __init__(self):
        self.messages: List[Tuple[int, str]] = []
        self.failing = set()

    async def notify(self, platform_id: int, message: str, attachment_ref: Optional[str] = None,
                     attachment_type: Optional[str] = None) -> None:
        await asyncio.sleep(0)
        if platform_id in self.failing:
            raise ConnectionError(f"chat unavailable for {platform_id}")
        self.messages.append((platform_id, message))

    def to(self, platform_id: int) -> List[str]:
        return [message for recipient, message in self.messages if recipient == platform_id]

async def make_pending(core, amount="50", description="Vintage camera") -> Deal:
    return await core.deal_service.create_deal(SELLER, BUYER.handle, amount, description)


async def make_funded(core, ledger) -> Deal:
    deal = await make_pending(core)
    await core.deal_service.anchor_on_ledger(BUYER, deal.code)
    ledger.deposit(deal.code)
    await core.reconciler.run_cycle()
    return core.deals.require(deal.code)


async def make_disputed(core, ledger, reason="no delivery") -> Deal:
    deal = await make_funded(core, ledger)
    return await core.dispute_service.open_dispute(BUYER, deal.code, reason)

