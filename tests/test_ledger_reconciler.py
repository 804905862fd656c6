"""
Ledger reconciler: deposit confirmation, completion detection, reminders, divergence alerts
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from models import DealStatus
from services.ledger_client import LedgerStatus
from tests.escrow_test_foundation import BOTMASTER, BUYER, SELLER, make_pending
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import LedgerError, PersistenceError


async def _anchored(core, ledger):
    deal = await make_pending(core)
    return await core.deal_service.anchor_on_ledger(BUYER, deal.code)


class TestDepositConfirmation:

    @pytest.mark.asyncio
    async def test_deposit_moves_deal_to_funded(self, registered, ledger, sink):
        deal = await _anchored(registered, ledger)
        ledger.deposit(deal.code)

        result = await registered.reconciler.run_cycle()
        assert result.funded == 1
        assert result.failures == 0

        stored = registered.deals.require(deal.code)
        assert stored.status == DealStatus.FUNDED.value
        assert stored.funded_at is not None
        assert any("is funded" in message for message in sink.to(SELLER.platform_id))

    @pytest.mark.asyncio
    async def test_second_pass_changes_nothing(self, registered, ledger, sink):
        deal = await _anchored(registered, ledger)
        ledger.deposit(deal.code)
        await registered.reconciler.run_cycle()
        first = registered.deals.require(deal.code)
        sent = len(sink.messages)

        result = await registered.reconciler.run_cycle()
        second = registered.deals.require(deal.code)
        assert result.funded == 0
        assert (second.status, second.funded_at) == (first.status, first.funded_at)
        assert len(sink.messages) == sent

    @pytest.mark.asyncio
    async def test_pending_ledger_record_left_alone(self, registered, ledger):
        deal = await _anchored(registered, ledger)
        result = await registered.reconciler.run_cycle()
        assert result.funded == 0
        assert registered.deals.require(deal.code).status == DealStatus.PENDING_DEPOSIT.value

    @pytest.mark.asyncio
    async def test_unanchored_deals_are_not_polled(self, registered, ledger):
        await make_pending(registered)
        await registered.reconciler.run_cycle()
        assert ledger.count("read_status") == 0

    @pytest.mark.asyncio
    async def test_disputed_on_ledger_counts_as_deposited(self, registered, ledger):
        deal = await _anchored(registered, ledger)
        ledger.set_status(deal.code, LedgerStatus.DISPUTED)
        await registered.reconciler.run_cycle()
        assert registered.deals.require(deal.code).status == DealStatus.FUNDED.value


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_one_bad_deal_does_not_stop_the_cycle(self, registered, ledger):
        broken = await _anchored(registered, ledger)
        healthy = await _anchored(registered, ledger)
        ledger.deposit(broken.code)
        ledger.deposit(healthy.code)
        # Unknown ledger id makes the read fail for this deal only
        ledger.statuses.pop(broken.ledger_deal_id)

        result = await registered.reconciler.run_cycle()
        assert result.failures == 1
        assert result.funded == 1
        assert broken.code in result.errors[0]
        assert registered.deals.require(healthy.code).status == DealStatus.FUNDED.value
        assert registered.deals.require(broken.code).status == DealStatus.PENDING_DEPOSIT.value

    @pytest.mark.asyncio
    async def test_ledger_outage_is_counted_not_raised(self, registered, ledger):
        deal = await _anchored(registered, ledger)
        ledger.errors["read_status"] = LedgerError("rpc down")
        result = await registered.reconciler.run_cycle()
        assert result.failures == 1
        assert registered.deals.require(deal.code).status == DealStatus.PENDING_DEPOSIT.value

    @pytest.mark.asyncio
    async def test_failed_listing_does_not_skip_later_steps(self, registered, ledger, disputed_deal):
        ledger.set_status(disputed_deal.code, LedgerStatus.REFUNDED)
        with patch.object(
            registered.deals, "list_due_funded_reminders", side_effect=PersistenceError("db down")
        ):
            result = await registered.reconciler.run_cycle()
        assert result.failures == 1
        assert result.errors == ["reminders: db down"]
        assert result.divergences == 1


class TestCompletionDetection:

    @pytest.mark.asyncio
    async def test_completion_on_ledger(self, registered, ledger, funded_deal):
        ledger.set_status(funded_deal.code, LedgerStatus.COMPLETED)
        result = await registered.reconciler.run_cycle()
        assert result.completed == 1
        stored = registered.deals.require(funded_deal.code)
        assert stored.status == DealStatus.COMPLETED.value
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_disputed_deal_never_auto_completed(self, registered, ledger, disputed_deal):
        ledger.set_status(disputed_deal.code, LedgerStatus.COMPLETED)
        result = await registered.reconciler.run_cycle()
        assert result.completed == 0
        assert result.divergences == 1
        assert registered.deals.require(disputed_deal.code).status == DealStatus.DISPUTED.value


class TestRunGuard:

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, registered, ledger):
        deal = await _anchored(registered, ledger)
        ledger.deposit(deal.code)

        first, second = await asyncio.gather(
            registered.reconciler.run_cycle(),
            registered.reconciler.run_cycle(),
        )
        assert not first.skipped
        assert second.skipped
        assert first.funded == 1
        assert not registered.reconciler.is_running


class TestFundedReminders:

    @pytest.mark.asyncio
    async def test_reminder_sent_once(self, registered, ledger, sink, funded_deal):
        registered.deals.conditional_update(
            funded_deal.code, DealStatus.FUNDED, {"funded_at": get_naive_utc_now() - timedelta(hours=30)}
        )

        result = await registered.reconciler.run_cycle()
        assert result.reminders_sent == 1
        assert any("funded for a while" in message for message in sink.to(BUYER.platform_id))
        assert registered.deals.require(funded_deal.code).status == DealStatus.FUNDED.value

        again = await registered.reconciler.run_cycle()
        assert again.reminders_sent == 0

    @pytest.mark.asyncio
    async def test_recent_deal_not_reminded(self, registered, funded_deal):
        result = await registered.reconciler.run_cycle()
        assert result.reminders_sent == 0


class TestDivergence:

    @pytest.mark.asyncio
    async def test_funded_deal_refunded_on_ledger_is_flagged(self, registered, ledger, sink, funded_deal):
        ledger.set_status(funded_deal.code, LedgerStatus.REFUNDED)

        result = await registered.reconciler.run_cycle()
        assert result.divergences == 1
        assert registered.deals.require(funded_deal.code).status == DealStatus.FUNDED.value
        alerts = [m for m in sink.to(BOTMASTER.platform_id) if "divergence" in m]
        assert len(alerts) == 1

        # Repeated detections stay within the alert cooldown
        again = await registered.reconciler.run_cycle()
        assert again.divergences == 1
        alerts = [m for m in sink.to(BOTMASTER.platform_id) if "divergence" in m]
        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_consistent_disputed_deal_not_flagged(self, registered, disputed_deal):
        result = await registered.reconciler.run_cycle()
        assert result.divergences == 0

    @pytest.mark.asyncio
    async def test_deposit_after_local_cancel_is_flagged(self, registered, ledger, sink):
        deal = await _anchored(registered, ledger)
        await registered.deal_service.cancel(SELLER, deal.code)
        ledger.deposit(deal.code)

        result = await registered.reconciler.run_cycle()
        assert result.divergences == 1
        assert registered.deals.require(deal.code).status == DealStatus.CANCELLED.value
        assert any("divergence" in m for m in sink.to(BOTMASTER.platform_id))

    @pytest.mark.asyncio
    async def test_cancelled_deal_without_deposit_not_flagged(self, registered, ledger):
        deal = await _anchored(registered, ledger)
        await registered.deal_service.cancel(SELLER, deal.code)
        result = await registered.reconciler.run_cycle()
        assert result.divergences == 0
