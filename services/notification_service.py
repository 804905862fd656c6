"""
Deal Notifications
==================

Fire-and-forget delivery of deal events to parties, moderators and botmasters.
Delivery failures never propagate into the caller: they are logged and reported as
a False return so the originating state change is never rolled back by a chat
outage.
"""

import asyncio
import logging
from typing import Iterable, Optional, Protocol

from telegram import Bot
from telegram.error import TelegramError

from config import Config
from models import Deal
from services.repositories import UserRepository

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, platform_id: int, message: str, attachment_ref: Optional[str] = None,
                     attachment_type: Optional[str] = None) -> None:
        ...


class TelegramNotificationSink:
    """Sends notifications as Telegram direct messages"""

    def __init__(self, bot: Optional[Bot] = None, token: Optional[str] = None):
        self._bot = bot or Bot(token or Config.BOT_TOKEN)

    async def notify(self, platform_id: int, message: str, attachment_ref: Optional[str] = None,
                     attachment_type: Optional[str] = None) -> None:
        if attachment_ref and attachment_type == "photo":
            await self._bot.send_photo(chat_id=platform_id, photo=attachment_ref, caption=message)
            return
        await self._bot.send_message(chat_id=platform_id, text=message)


class LoggingNotificationSink:
    """Development sink: writes notifications to the log"""

    async def notify(self, platform_id: int, message: str, attachment_ref: Optional[str] = None,
                     attachment_type: Optional[str] = None) -> None:
        logger.info(f"📨 NOTIFY {platform_id}: {message}")


class NotificationDispatcher:
    """Resolves recipients and delivers through a sink with a per-send deadline"""

    def __init__(self, sink: NotificationSink, users: UserRepository,
                 botmaster_ids: Iterable[int] = (), timeout: Optional[float] = None):
        self._sink = sink
        self._users = users
        self._botmaster_ids = tuple(botmaster_ids)
        self._timeout = Config.NOTIFICATION_TIMEOUT_SECONDS if timeout is None else timeout

    async def send(self, platform_id: Optional[int], message: str, attachment_ref: Optional[str] = None,
                   attachment_type: Optional[str] = None) -> bool:
        if platform_id is None:
            return False
        try:
            await asyncio.wait_for(
                self._sink.notify(platform_id, message, attachment_ref, attachment_type),
                timeout=self._timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ NOTIFY_TIMEOUT: recipient {platform_id} after {self._timeout}s")
        except TelegramError as e:
            logger.warning(f"⚠️ NOTIFY_FAILED: recipient {platform_id}: {e}")
        except Exception as e:
            logger.warning(f"⚠️ NOTIFY_FAILED: recipient {platform_id}: {e}", exc_info=True)
        return False

    def resolve_platform_id(self, platform_id: Optional[int], handle: Optional[str]) -> Optional[int]:
        if platform_id is not None:
            return platform_id
        user = self._users.find_by_handle(handle)
        if user is None:
            logger.info(f"📭 NOTIFY_UNREACHABLE: @{handle} has no registered platform id")
            return None
        return user.platform_id

    async def send_to(self, platform_id: Optional[int], handle: Optional[str], message: str) -> bool:
        return await self.send(self.resolve_platform_id(platform_id, handle), message)

    async def notify_seller(self, deal: Deal, message: str) -> bool:
        return await self.send_to(deal.seller_platform_id, deal.seller_handle, message)

    async def notify_buyer(self, deal: Deal, message: str) -> bool:
        return await self.send_to(deal.buyer_platform_id, deal.buyer_handle, message)

    async def notify_parties(self, deal: Deal, message: str, exclude: Optional[int] = None) -> int:
        delivered = 0
        recipients = {
            self.resolve_platform_id(deal.seller_platform_id, deal.seller_handle),
            self.resolve_platform_id(deal.buyer_platform_id, deal.buyer_handle),
        }
        for platform_id in recipients:
            if platform_id is None or platform_id == exclude:
                continue
            if await self.send(platform_id, message):
                delivered += 1
        return delivered

    async def notify_botmasters(self, message: str, exclude: Optional[int] = None,
                                attachment_ref: Optional[str] = None,
                                attachment_type: Optional[str] = None) -> int:
        delivered = 0
        for platform_id in self._botmaster_ids:
            if platform_id == exclude:
                continue
            if await self.send(platform_id, message, attachment_ref, attachment_type):
                delivered += 1
        return delivered
