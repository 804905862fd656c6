"""
Notification dispatch: Telegram delivery, recipient resolution and swallowed failures
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import TelegramError

from services.notification_service import NotificationDispatcher, TelegramNotificationSink
from services.repositories import UserRepository
from tests.escrow_test_foundation import BOTMASTER, BUYER, RecordingSink


@pytest.fixture
def users(session_factory):
    users = UserRepository(session_factory)
    users.upsert(BUYER.platform_id, BUYER.handle)
    return users


class TestTelegramSink:

    @pytest.mark.asyncio
    async def test_text_message(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        await TelegramNotificationSink(bot=bot).notify(2002, "Deal funded")
        bot.send_message.assert_awaited_once_with(chat_id=2002, text="Deal funded")

    @pytest.mark.asyncio
    async def test_photo_evidence(self):
        bot = MagicMock()
        bot.send_photo = AsyncMock()
        await TelegramNotificationSink(bot=bot).notify(2002, "Evidence", "file-id-1", "photo")
        bot.send_photo.assert_awaited_once_with(chat_id=2002, photo="file-id-1", caption="Evidence")


class TestNotificationDispatcher:

    @pytest.mark.asyncio
    async def test_delivery(self, users):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(sink, users, botmaster_ids=[BOTMASTER.platform_id])
        assert await dispatcher.send(2002, "hello")
        assert sink.to(2002) == ["hello"]

    @pytest.mark.asyncio
    async def test_telegram_error_swallowed(self, users, caplog):
        sink = MagicMock()
        sink.notify = AsyncMock(side_effect=TelegramError("Forbidden: bot was blocked by the user"))
        dispatcher = NotificationDispatcher(sink, users)
        with caplog.at_level(logging.WARNING, logger="services.notification_service"):
            assert await dispatcher.send(2002, "hello") is False
        assert "NOTIFY_FAILED" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_sink_times_out(self, users, caplog):
        class SlowSink:
            async def notify(self, platform_id, message, attachment_ref=None, attachment_type=None):
                await asyncio.sleep(1)

        dispatcher = NotificationDispatcher(SlowSink(), users, timeout=0.01)
        with caplog.at_level(logging.WARNING, logger="services.notification_service"):
            assert await dispatcher.send(2002, "hello") is False
        assert "NOTIFY_TIMEOUT" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, users):
        dispatcher = NotificationDispatcher(RecordingSink(), users)
        assert await dispatcher.send(None, "hello") is False

    def test_resolve_platform_id_by_handle(self, users):
        dispatcher = NotificationDispatcher(RecordingSink(), users)
        assert dispatcher.resolve_platform_id(None, BUYER.handle) == BUYER.platform_id
        assert dispatcher.resolve_platform_id(77, BUYER.handle) == 77
        assert dispatcher.resolve_platform_id(None, "nobody") is None

    @pytest.mark.asyncio
    async def test_botmaster_fanout_excludes_sender(self, users):
        sink = RecordingSink()
        dispatcher = NotificationDispatcher(sink, users, botmaster_ids=[9001, 9002])
        delivered = await dispatcher.notify_botmasters("new dispute", exclude=9001)
        assert delivered == 1
        assert sink.to(9001) == []
        assert sink.to(9002) == ["new dispute"]

    @pytest.mark.asyncio
    async def test_one_failing_recipient_does_not_stop_others(self, users):
        sink = RecordingSink()
        sink.failing.add(9001)
        dispatcher = NotificationDispatcher(sink, users, botmaster_ids=[9001, 9002])
        assert await dispatcher.notify_botmasters("new dispute") == 1
