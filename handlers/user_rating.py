"""
User Rating Handler
Thumbs up / thumbs down feedback after a completed charge. A thumbs down
asks for a short reason before it is recorded.
"""

import logging
from typing import Optional

from telegram import Update
from telegram.ext import CallbackQueryHandler, ContextTypes

from models import FeedbackSide, Offer, OfferStatus
from services.service_registry import get_services
from utils.callback_utils import (
    clear_pending_input,
    safe_answer_callback_query,
    safe_edit_message_text,
    set_pending_input,
)
from utils.constants import CallbackData, PendingInput
from utils.exception_handler import (
    AlreadySubmittedError,
    MarketplaceError,
    StateConflictError,
    UnauthorizedActorError,
    safe_telegram_handler,
    user_facing_message,
)

logger = logging.getLogger(__name__)

NEGATIVE_REASON_PROMPT = "✍️ Sorry it did not go well. Briefly tell us what went wrong."


def feedback_side_for(offer: Offer, user_id: int) -> FeedbackSide:
    if user_id == offer.buyer_id:
        return FeedbackSide.BUYER
    if user_id == offer.seller_id:
        return FeedbackSide.SELLER
    raise UnauthorizedActorError("You are not part of this charge", user_id)


async def record_feedback(context, offer: Offer, side: FeedbackSide, positive: bool,
                          author, comment: Optional[str] = None) -> None:
    """Store the rating and tell the rated user about it"""
    services = get_services(context)
    target_id = services.feedback.submit(offer.id, side, positive, comment=comment, actor_id=author.id)

    author_name = f"@{author.username}" if getattr(author, "username", None) else (author.first_name or str(author.id))
    text = (
        f"{'👍' if positive else '👎'} {author_name} left {'positive' if positive else 'negative'} "
        f"feedback for charge #{offer.id}."
    )
    if comment:
        text += f"\n\n💬 {comment}"
    await services.notifier.notify(target_id, text)


@safe_telegram_handler
async def handle_feedback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle feedback_positive:<offer_id> / feedback_negative:<offer_id>"""
    query = update.callback_query
    user = update.effective_user
    if not query or not user or not query.data:
        return

    positive = query.data.startswith(CallbackData.FEEDBACK_POSITIVE)
    try:
        offer_id = CallbackData.parse_offer_id(query.data)
    except ValueError:
        await safe_answer_callback_query(query, "❌ Invalid request", show_alert=True)
        return

    services = get_services(context)
    try:
        offer = services.engine.get_offer(offer_id)
        side = feedback_side_for(offer, user.id)

        if not positive:
            if offer.status != OfferStatus.COMPLETED.value:
                raise StateConflictError(offer_id, OfferStatus.COMPLETED.value, offer.status)
            if services.feedback.has_submitted(offer, side):
                raise AlreadySubmittedError(offer_id, side.value)
            set_pending_input(context, PendingInput.FEEDBACK_REASON, offer_id, side=side.value)
            await safe_answer_callback_query(query)
            await context.bot.send_message(chat_id=user.id, text=NEGATIVE_REASON_PROMPT)
            return

        await record_feedback(context, offer, side, True, user)
    except MarketplaceError as e:
        await safe_answer_callback_query(query, user_facing_message(e), show_alert=True)
        return

    await safe_answer_callback_query(query, "⭐ Thanks for your feedback!")
    await safe_edit_message_text(query, f"👍 Feedback recorded for charge #{offer_id}. Thank you!")


async def handle_feedback_reason_input(update: Update, context: ContextTypes.DEFAULT_TYPE, pending: dict) -> None:
    """Text reply carrying the reason for a negative rating"""
    message = update.effective_message
    user = update.effective_user
    reason = (message.text or "").strip()
    if not reason:
        await message.reply_text(NEGATIVE_REASON_PROMPT)
        return

    services = get_services(context)
    try:
        offer = services.engine.get_offer(pending["offer_id"])
        await record_feedback(context, offer, FeedbackSide(pending["side"]), False, user, comment=reason)
    except MarketplaceError as e:
        clear_pending_input(context)
        await message.reply_text(user_facing_message(e))
        return

    clear_pending_input(context)
    await message.reply_text(f"👎 Feedback recorded for charge #{offer.id}. Thank you!")


def register_rating_handlers(application) -> None:
    pattern = f"^({CallbackData.FEEDBACK_POSITIVE}|{CallbackData.FEEDBACK_NEGATIVE}):\\d+$"
    application.add_handler(CallbackQueryHandler(handle_feedback, pattern=pattern))
    logger.info("✅ Rating handlers registered")
