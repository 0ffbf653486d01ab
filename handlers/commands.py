"""Command handlers: /start, /profile, /sell, /transactions"""

import logging

from telegram import Update
from telegram.ext import CommandHandler, ContextTypes

from handlers.offer_callbacks import OFFER_REQUEST_HELP, set_offer_request
from models import AnnouncementType
from services.feedback_service import FeedbackTracker
from services.service_registry import get_services
from services.user_service import UserService
from utils.constants import CallbackData, PLATFORM_NAME
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import MarketplaceError, ValidationError, safe_telegram_handler, user_facing_message

logger = logging.getLogger(__name__)

SELL_USAGE = (
    "Usage: /sell price; connector (AC, DC or both); networks; location; "
    "networks that cannot be activated (optional); notes (optional)"
)

DEEP_LINK_PREFIX = f"{CallbackData.BUY_KWH}_"


@safe_telegram_handler
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Register the user; a ``buy_kwh_<announcement>`` deep link starts a charging request"""
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    services = get_services(context)
    db_user = services.users.register_user(user)

    payload = context.args[0] if context.args else ""
    if payload.startswith(DEEP_LINK_PREFIX):
        announcement_id = payload[len(DEEP_LINK_PREFIX):]
        set_offer_request(context, announcement_id)
        await message.reply_text(OFFER_REQUEST_HELP)
        return

    await message.reply_text(
        f"⚡ Welcome to {PLATFORM_NAME}, {UserService.display_name(db_user)}!\n\n"
        "/sell – publish your wallbox\n"
        "/my_offers – your charges\n"
        "/profile – your reputation and balance\n"
        "/transactions – your history\n"
        "/wallet – totals per trading partner\n"
        "/my_donations – donation summary"
    )


def format_profile(profile: dict, whitelisted: bool = False) -> str:
    user = profile["user"]
    pct = FeedbackTracker.get_positive_percentage(user)
    rating = f"{pct}% positive ({user.total_ratings} ratings)" if pct is not None else "no ratings yet"
    lines = [
        f"👤 {UserService.display_name(user)}",
        f"⭐ {rating}",
    ]
    if FeedbackTracker.is_trusted_seller(user, whitelisted):
        lines.append("🏅 Trusted seller")
    lines.append(f"🔋 Balance: {MarketDecimal.format(user.balance)} kWh")

    if profile["active_announcements"]:
        lines.append("\n📢 Active announcements")
        for announcement in profile["active_announcements"]:
            lines.append(f"  • {announcement.type}: {announcement.location} ({announcement.price})")

    if profile["recent_transactions"]:
        lines.append("\n🧾 Recent charges")
        for tx in profile["recent_transactions"]:
            role = "bought" if tx.buyer_id == user.user_id else "sold"
            lines.append(
                f"  • {role} {MarketDecimal.format(tx.kwh_amount)} kWh for {MarketDecimal.format(tx.total_amount)}"
            )
    return "\n".join(lines)


@safe_telegram_handler
async def profile_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    services = get_services(context)
    services.users.register_user(user)
    profile = services.users.get_user_profile(user.id)
    await message.reply_text(format_profile(profile, services.access.is_whitelisted(user.id)))


def parse_sell_fields(text: str) -> dict:
    parts = [part.strip() for part in (text or "").split(";")]
    if len(parts) < 4:
        raise ValidationError(SELL_USAGE)
    return {
        "price": parts[0],
        "connector_type": parts[1].upper() if parts[1].lower() in ("ac", "dc") else parts[1].lower(),
        "brand": parts[2],
        "location": parts[3],
        "non_activatable_brands": parts[4] if len(parts) > 4 else "",
        "additional_info": "; ".join(parts[5:]),
    }


@safe_telegram_handler
async def sell_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Replace the user's sell announcement and publish it to the marketplace group"""
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    services = get_services(context)
    services.users.register_user(user)
    try:
        fields = parse_sell_fields(" ".join(context.args or []))
        announcement = services.directory.replace_active(user.id, AnnouncementType.SELL, fields)
    except MarketplaceError as e:
        await message.reply_text(user_facing_message(e))
        return

    message_id = await services.directory.publish(announcement, services.notifier)
    published = "and published in the group" if message_id else "(not published: group unavailable)"
    await message.reply_text(f"📢 Announcement {announcement.id} created {published}.")


@safe_telegram_handler
async def transactions_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    stats = get_services(context).transactions.calculate_user_stats(user.id)
    bought = stats["as_buyer"]
    sold = stats["as_seller"]
    await message.reply_text(
        "🧾 Your transactions\n\n"
        f"Bought: {bought['count']} charges, {MarketDecimal.format(bought['kwh'])} kWh, "
        f"{MarketDecimal.format(bought['amount'])} paid\n"
        f"Sold: {sold['count']} charges, {MarketDecimal.format(sold['kwh'])} kWh, "
        f"{MarketDecimal.format(sold['amount'])} received\n"
        f"Disputed: {stats['disputed']}"
    )


def register_command_handlers(application) -> None:
    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("profile", profile_command))
    application.add_handler(CommandHandler("sell", sell_command))
    application.add_handler(CommandHandler("transactions", transactions_command))
    logger.info("✅ Command handlers registered")
