"""
Notification Service
Best-effort delivery of bot messages to buyers, sellers and the admin.

State changes are committed before anything is sent; a failed delivery is
logged and never propagates back to the caller.
"""

import logging
from typing import Optional

from telegram import InlineKeyboardMarkup
from telegram.error import TelegramError

from utils.exception_handler import NotificationDeliveryError

logger = logging.getLogger(__name__)


class Notifier:
    """
    Delivery capability used by the services.

    Subclasses implement ``_deliver`` / ``_post``; the public methods wrap them
    so a transport failure can never fail a committed operation.
    """

    async def notify(self, user_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup] = None) -> None:
        try:
            await self._deliver(user_id, text, keyboard)
        except NotificationDeliveryError as e:
            logger.warning(f"📭 NOTIFY_FAILED: user={user_id} reason={e}")
        except Exception as e:
            logger.error(f"📭 NOTIFY_FAILED: user={user_id} unexpected {type(e).__name__}: {e}")

    async def post_to_chat(
        self,
        chat_id: int,
        text: str,
        keyboard: Optional[InlineKeyboardMarkup] = None,
        topic_id: Optional[int] = None,
    ) -> Optional[int]:
        """Post to a group (optionally a forum topic). Returns the message id, or None on failure."""
        try:
            return await self._post(chat_id, text, keyboard, topic_id)
        except NotificationDeliveryError as e:
            logger.warning(f"📭 POST_FAILED: chat={chat_id} reason={e}")
        except Exception as e:
            logger.error(f"📭 POST_FAILED: chat={chat_id} unexpected {type(e).__name__}: {e}")
        return None

    async def _deliver(self, user_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup]) -> None:
        raise NotImplementedError

    async def _post(
        self, chat_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup], topic_id: Optional[int]
    ) -> Optional[int]:
        raise NotImplementedError


class TelegramNotifier(Notifier):
    """Notifier backed by a python-telegram-bot ``Bot``"""

    def __init__(self, bot):
        self.bot = bot

    async def _deliver(self, user_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup]) -> None:
        try:
            await self.bot.send_message(chat_id=user_id, text=text, reply_markup=keyboard)
            logger.debug(f"📨 Message delivered to {user_id}")
        except TelegramError as e:
            raise NotificationDeliveryError(user_id, str(e)) from e

    async def _post(
        self, chat_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup], topic_id: Optional[int]
    ) -> Optional[int]:
        try:
            message = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_markup=keyboard,
                message_thread_id=topic_id,
            )
        except TelegramError as e:
            raise NotificationDeliveryError(chat_id, str(e)) from e
        return message.message_id


class NullNotifier(Notifier):
    """Drops every message. Used when no bot is wired (scripts, maintenance)."""

    async def _deliver(self, user_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup]) -> None:
        logger.debug(f"NullNotifier dropped message for {user_id}")

    async def _post(self, chat_id, text, keyboard, topic_id) -> Optional[int]:
        return None
