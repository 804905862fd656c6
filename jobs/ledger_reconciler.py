"""
Ledger Reconciler
Polls the escrow contract and moves deals forward when the ledger shows a deposit or
a completion. Also sends the advisory funded-deal reminder and flags deals whose
local status has drifted from the ledger.

Deals are processed one at a time; a failure on one deal is logged and counted and
the cycle moves on.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from caching.bounded_cache import ActionCooldown
from config import Config
from models import Deal, DealStatus
from services.deal_repository import DealRepository
from services.ledger_client import DEPOSITED_STATES, LedgerClient, LedgerStatus
from services.notification_service import NotificationDispatcher
from utils.datetime_helpers import get_naive_utc_now, hours_ago
from utils.deal_state_machine import ActorKind, DealStateMachine, Transitions
from utils.exceptions import EscrowError

logger = logging.getLogger(__name__)

# Local status -> ledger statuses that contradict it
DIVERGENT_LEDGER_STATES = {
    DealStatus.DISPUTED: frozenset({LedgerStatus.COMPLETED, LedgerStatus.REFUNDED}),
    DealStatus.FUNDED: frozenset({LedgerStatus.REFUNDED, LedgerStatus.CANCELLED}),
    # Deposit landed on the ledger record after a local cancel
    DealStatus.CANCELLED: DEPOSITED_STATES,
}


class ReconciliationResult:
    """Counters for one reconciliation cycle"""

    def __init__(self):
        self.skipped = False
        self.deals_checked = 0
        self.funded = 0
        self.completed = 0
        self.already_applied = 0
        self.reminders_sent = 0
        self.divergences = 0
        self.failures = 0
        self.execution_time_ms = 0
        self.errors: List[str] = []

    def add_error(self, deal_code: str, error: Exception):
        self.failures += 1
        self.errors.append(f"{deal_code}: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "deals_checked": self.deals_checked,
            "funded": self.funded,
            "completed": self.completed,
            "already_applied": self.already_applied,
            "reminders_sent": self.reminders_sent,
            "divergences": self.divergences,
            "failures": self.failures,
            "execution_time_ms": self.execution_time_ms,
        }


class LedgerReconciler:
    """Single reconciler per deployment; cycles never overlap"""

    def __init__(
        self,
        deals: DealRepository,
        state_machine: DealStateMachine,
        ledger: LedgerClient,
        notifier: NotificationDispatcher,
        funded_reminder_hours: Optional[float] = None,
        divergence_cooldown: Optional[ActionCooldown] = None,
    ):
        self.deals = deals
        self.state_machine = state_machine
        self.ledger = ledger
        self.notifier = notifier
        self.funded_reminder_hours = (
            Config.FUNDED_REMINDER_HOURS if funded_reminder_hours is None else funded_reminder_hours
        )
        self.divergence_cooldown = divergence_cooldown or ActionCooldown(
            Config.DIVERGENCE_ALERT_COOLDOWN_SECONDS, max_entries=Config.COOLDOWN_CACHE_MAX_ENTRIES
        )
        self._cycle_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    async def run_cycle(self) -> ReconciliationResult:
        """Run one pass; returns immediately with ``skipped`` set if a pass is in progress"""
        result = ReconciliationResult()
        if self._cycle_lock.locked():
            logger.info("⏭️ RECONCILE_SKIPPED: previous cycle still running")
            result.skipped = True
            return result

        async with self._cycle_lock:
            started = time.monotonic()
            steps = (
                ("deposits", self._confirm_deposits),
                ("completions", self._detect_completions),
                ("reminders", self._send_funded_reminders),
                ("divergence", self._sweep_divergence),
            )
            for name, step in steps:
                try:
                    await step(result)
                except EscrowError as e:
                    logger.error(f"❌ RECONCILE_STEP_FAILED: {name}: {e}")
                    result.add_error(name, e)
            result.execution_time_ms = int((time.monotonic() - started) * 1000)

        if result.funded or result.completed or result.failures or result.divergences:
            logger.info(f"🔁 RECONCILE_DONE: {result.get_summary()}")
        return result

    async def _read_status(self, deal: Deal, result: ReconciliationResult) -> Optional[LedgerStatus]:
        result.deals_checked += 1
        try:
            return await self.ledger.read_status(deal.ledger_deal_id)
        except EscrowError as e:
            logger.warning(f"⚠️ RECONCILE_LEDGER_READ_FAILED: {deal.code}: {e}")
            result.add_error(deal.code, e)
            return None

    async def _confirm_deposits(self, result: ReconciliationResult) -> None:
        for deal in self.deals.list_by_status(DealStatus.PENDING_DEPOSIT, require_ledger_id=True):
            ledger_status = await self._read_status(deal, result)
            if ledger_status not in DEPOSITED_STATES:
                continue
            try:
                applied = self.state_machine.commit(
                    deal, Transitions.CONFIRM_DEPOSIT, ActorKind.RECONCILER, {"funded_at": get_naive_utc_now()}
                )
            except EscrowError as e:
                logger.error(f"❌ RECONCILE_FUND_FAILED: {deal.code}: {e}")
                result.add_error(deal.code, e)
                continue

            if not applied:
                result.already_applied += 1
                continue
            result.funded += 1
            logger.info(f"💰 RECONCILE_FUNDED: {deal.code} (ledger {ledger_status.name})")
            await self.notifier.notify_parties(
                deal, f"💰 Deal {deal.code} is funded: {deal.amount} {deal.currency} is held in escrow."
            )

    async def _detect_completions(self, result: ReconciliationResult) -> None:
        for deal in self.deals.list_by_status(DealStatus.FUNDED, require_ledger_id=True):
            ledger_status = await self._read_status(deal, result)
            if ledger_status is None:
                continue
            if ledger_status is not LedgerStatus.COMPLETED:
                await self._check_divergence(deal, ledger_status, result)
                continue
            try:
                applied = self.state_machine.commit(
                    deal, Transitions.LEDGER_COMPLETE, ActorKind.RECONCILER, {"completed_at": get_naive_utc_now()}
                )
            except EscrowError as e:
                logger.error(f"❌ RECONCILE_COMPLETE_FAILED: {deal.code}: {e}")
                result.add_error(deal.code, e)
                continue

            if not applied:
                result.already_applied += 1
                continue
            result.completed += 1
            logger.info(f"✅ RECONCILE_COMPLETED: {deal.code}")
            await self.notifier.notify_parties(deal, f"✅ Deal {deal.code} completed on the ledger.")

    async def _send_funded_reminders(self, result: ReconciliationResult) -> None:
        """Advisory nudge for deals sitting in Funded; never moves funds"""
        if self.funded_reminder_hours <= 0:
            return
        for deal in self.deals.list_due_funded_reminders(hours_ago(self.funded_reminder_hours)):
            try:
                marked = self.deals.conditional_update(
                    deal.code, DealStatus.FUNDED,
                    {"funded_reminder_sent_at": get_naive_utc_now()},
                    require_null=("funded_reminder_sent_at",),
                )
            except EscrowError as e:
                result.add_error(deal.code, e)
                continue
            if not marked.applied:
                continue

            result.reminders_sent += 1
            await self.notifier.notify_buyer(
                deal, f"⏰ Deal {deal.code} has been funded for a while. Release it once you received the goods, or open a dispute."
            )
            await self.notifier.notify_seller(
                deal, f"⏰ Deal {deal.code} is still funded and awaiting the buyer's release."
            )

    async def _sweep_divergence(self, result: ReconciliationResult) -> None:
        """Disputed and cancelled deals never move on their own; only check them against the ledger"""
        for status in (DealStatus.DISPUTED, DealStatus.CANCELLED):
            for deal in self.deals.list_by_status(status, require_ledger_id=True):
                ledger_status = await self._read_status(deal, result)
                if ledger_status is not None:
                    await self._check_divergence(deal, ledger_status, result)

    async def _check_divergence(self, deal: Deal, ledger_status: LedgerStatus, result: ReconciliationResult) -> None:
        """Report, never repair: a contradiction needs a human decision"""
        contradicting = DIVERGENT_LEDGER_STATES.get(deal.status_enum, frozenset())
        if ledger_status not in contradicting:
            return

        result.divergences += 1
        logger.warning(
            f"⚠️ LEDGER_DIVERGENCE: {deal.code} is {deal.status} locally but {ledger_status.name} on the ledger"
        )
        if self.divergence_cooldown.try_acquire(deal.code):
            await self.notifier.notify_botmasters(
                f"⚠️ Ledger divergence on {deal.code}: local {deal.status}, ledger {ledger_status.name}. "
                "Manual review required."
            )
