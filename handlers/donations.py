"""
Donation Handlers
Fixed or custom donation after a completed charge and the /my_donations summary
"""

import logging

from telegram import Update
from telegram.ext import CallbackQueryHandler, CommandHandler, ContextTypes

from config import Config
from models import Offer, OfferStatus
from services.service_registry import get_services
from utils.callback_utils import (
    clear_pending_input,
    safe_answer_callback_query,
    safe_edit_message_text,
    set_pending_input,
)
from utils.constants import CallbackData, PendingInput
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import (
    DonationAlreadyRecordedError,
    MarketplaceError,
    StateConflictError,
    UnauthorizedActorError,
    ValidationError,
    safe_telegram_handler,
    user_facing_message,
)

logger = logging.getLogger(__name__)


def check_donation_allowed(services, offer_id: int, user_id: int) -> Offer:
    """The seller of a completed charge may donate, once, when an admin is configured"""
    if Config.ADMIN_USER_ID is None:
        raise ValidationError("Donations are not enabled")

    offer = services.engine.get_offer(offer_id)
    if user_id != offer.seller_id:
        raise UnauthorizedActorError("Only the seller can donate for this charge", user_id)
    if offer.status != OfferStatus.COMPLETED.value:
        raise StateConflictError(offer_id, OfferStatus.COMPLETED.value, offer.status)
    return offer


@safe_telegram_handler
async def handle_donate_fixed(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Seller donates the fixed amount to the admin after a completed charge"""
    query = update.callback_query
    user = update.effective_user
    if not query or not user or not query.data:
        return

    services = get_services(context)
    try:
        offer_id = CallbackData.parse_offer_id(query.data)
        check_donation_allowed(services, offer_id, user.id)
        await services.ledger.donate(
            user.id, Config.ADMIN_USER_ID, Config.FIXED_DONATION_KWH, source_offer_id=offer_id
        )
    except ValueError:
        await safe_answer_callback_query(query, "❌ Invalid request", show_alert=True)
        return
    except MarketplaceError as e:
        await safe_answer_callback_query(query, user_facing_message(e), show_alert=True)
        return

    await safe_answer_callback_query(query, "🎁 Thank you!")
    await safe_edit_message_text(
        query, f"🎁 You donated {MarketDecimal.format(Config.FIXED_DONATION_KWH)} kWh. Thank you!"
    )


@safe_telegram_handler
async def handle_donate_custom(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Ask the seller how many kWh to donate"""
    query = update.callback_query
    user = update.effective_user
    if not query or not user or not query.data:
        return

    services = get_services(context)
    try:
        offer_id = CallbackData.parse_offer_id(query.data)
        offer = check_donation_allowed(services, offer_id, user.id)
        if services.ledger.has_donation_for_offer(offer_id):
            raise DonationAlreadyRecordedError(offer_id)
    except ValueError:
        await safe_answer_callback_query(query, "❌ Invalid request", show_alert=True)
        return
    except MarketplaceError as e:
        await safe_answer_callback_query(query, user_facing_message(e), show_alert=True)
        return

    set_pending_input(context, PendingInput.DONATION_AMOUNT, offer_id)
    await safe_answer_callback_query(query)
    await context.bot.send_message(
        chat_id=user.id,
        text=(
            f"✍️ This charge was {MarketDecimal.format(offer.kwh_charged)} kWh.\n"
            f"How many kWh would you like to donate? (e.g. 1.5)"
        ),
    )


async def handle_donation_amount_input(update: Update, context: ContextTypes.DEFAULT_TYPE, pending: dict) -> None:
    """Text reply to the custom donation prompt"""
    message = update.effective_message
    user = update.effective_user
    offer_id = pending["offer_id"]
    services = get_services(context)
    try:
        check_donation_allowed(services, offer_id, user.id)
        donation = await services.ledger.donate(
            user.id, Config.ADMIN_USER_ID, (message.text or "").strip(), source_offer_id=offer_id
        )
    except (StateConflictError, UnauthorizedActorError) as e:
        clear_pending_input(context)
        await message.reply_text(user_facing_message(e))
        return
    except ValidationError as e:
        await message.reply_text(f"{user_facing_message(e)}\nPlease send a number of kWh, e.g. 1.5")
        return
    except MarketplaceError as e:
        clear_pending_input(context)
        await message.reply_text(user_facing_message(e))
        return

    clear_pending_input(context)
    await message.reply_text(f"🎁 You donated {MarketDecimal.format(donation.kwh_amount)} kWh. Thank you!")


@safe_telegram_handler
async def handle_donate_skip(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if not query:
        return
    await safe_answer_callback_query(query)
    await safe_edit_message_text(query, "👌 No problem, thanks anyway!")


def format_donation_stats(stats: dict) -> str:
    if stats["role"] == "admin":
        lines = [
            "🎁 Donations received",
            f"Total received: {MarketDecimal.format(stats['total_received'])} kWh",
            f"Available: {MarketDecimal.format(stats['total_available'])} kWh",
        ]
        for donor in stats["donors"]:
            lines.append(
                f"  • {donor['donor_id']}: {MarketDecimal.format(donor['available'])} available "
                f"/ {MarketDecimal.format(donor['total_donated'])} donated"
            )
        return "\n".join(lines)

    return "\n".join([
        "🎁 Your donations",
        f"Donated: {MarketDecimal.format(stats['donated'])} kWh",
        f"Already used: {MarketDecimal.format(stats['used'])} kWh",
        f"Still available: {MarketDecimal.format(stats['available'])} kWh",
    ])


@safe_telegram_handler
async def handle_my_donations(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return
    stats = get_services(context).ledger.get_donation_stats(user.id)
    await message.reply_text(format_donation_stats(stats))


def register_donation_handlers(application) -> None:
    application.add_handler(
        CallbackQueryHandler(handle_donate_fixed, pattern=f"^{CallbackData.DONATE_FIXED}:\\d+$")
    )
    application.add_handler(
        CallbackQueryHandler(handle_donate_custom, pattern=f"^{CallbackData.DONATE_CUSTOM}:\\d+$")
    )
    application.add_handler(
        CallbackQueryHandler(handle_donate_skip, pattern=f"^{CallbackData.DONATE_SKIP}:\\d+$")
    )
    application.add_handler(CommandHandler("my_donations", handle_my_donations))
    logger.info("✅ Donation handlers registered")
