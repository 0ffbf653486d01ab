"""
Utility functions for handling callback queries safely
"""

import logging
from typing import Optional

from telegram.error import BadRequest, TelegramError

from utils.constants import MAX_MESSAGE_LENGTH, PendingInput

logger = logging.getLogger(__name__)


def truncate_message(text: str) -> str:
    if len(text) > MAX_MESSAGE_LENGTH:
        return text[: MAX_MESSAGE_LENGTH - 50] + "...\n\n📄 Message truncated due to length"
    return text


async def safe_answer_callback_query(query, text: Optional[str] = None, show_alert: bool = False):
    """
    Answer a callback query immediately so the button spinner stops.

    Failures (expired query, network) are logged and ignored; the button action
    itself still runs.

    Args:
        query: The callback query to answer
        text: Optional text to show to user
        show_alert: Whether to show alert popup (default: False)
    """
    if not query:
        return

    user_id = query.from_user.id if query.from_user else 0
    try:
        if text:
            await query.answer(text, show_alert=show_alert)
        else:
            await query.answer()
    except TelegramError as answer_error:
        error_msg = str(answer_error).lower()
        if "too old" in error_msg or "expired" in error_msg or "timeout" in error_msg:
            logger.warning(f"Callback timeout for user {user_id}: {answer_error}")
        else:
            logger.debug(f"Callback answer failed (non-critical): {answer_error}")


async def safe_edit_message_text(query, text: str, **kwargs) -> bool:
    """
    Edit the message a button belongs to, tolerating "message is not modified"
    and deleted messages.

    Returns:
        True when the message was edited
    """
    if not query or not getattr(query, "message", None):
        logger.debug("safe_edit_message_text: no message to edit")
        return False

    try:
        await query.edit_message_text(truncate_message(text), **kwargs)
        return True
    except BadRequest as e:
        if "not modified" in str(e).lower():
            logger.debug("Message content unchanged, skipping edit")
            return True
        logger.warning(f"⚠️ Could not edit message: {e}")
        return False
    except TelegramError as e:
        logger.warning(f"⚠️ Telegram error editing message: {e}")
        return False


def set_pending_input(context, kind: str, offer_id: Optional[int] = None, **extra) -> None:
    """Remember which free-text reply the user owes us next"""
    pending = {"kind": kind}
    if offer_id is not None:
        pending["offer_id"] = offer_id
    pending.update(extra)
    context.user_data[PendingInput.KEY] = pending


def clear_pending_input(context) -> None:
    context.user_data.pop(PendingInput.KEY, None)


def get_pending_input(context) -> Optional[dict]:
    return context.user_data.get(PendingInput.KEY)
