"""
Manual Charge Request
The admin asks a specific seller for a charge directly, without going through
one of the seller's announcements.
"""

import logging

from telegram import Update
from telegram.ext import CommandHandler, ContextTypes

from config import Config
from services.service_registry import get_services
from services.user_service import UserService
from utils.callback_utils import clear_pending_input, set_pending_input
from utils.constants import PendingInput
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import MarketplaceError, ValidationError, safe_telegram_handler, user_facing_message

logger = logging.getLogger(__name__)

MANUAL_REQUEST_USAGE = "Usage: /manual_charge @username or user id"

MANUAL_REQUEST_HELP = (
    "✍️ Send the charge details in one message:\n"
    "DD/MM/YYYY HH:MM; network or card; location; kWh; connector (optional)\n\n"
    "Example: 24/05/2026 18:30; Enel X; Via Roma 1, Milano; 20; CCS2"
)


def parse_manual_request(text: str) -> dict:
    """Split ``DD/MM/YYYY HH:MM; brand; location; kWh; connector`` into offer fields"""
    parts = [part.strip() for part in (text or "").split(";")]
    if len(parts) < 4:
        raise ValidationError("Please use: DD/MM/YYYY HH:MM; network; location; kWh; connector")
    schedule = parts[0].split()
    if len(schedule) != 2:
        raise ValidationError("Date and time must look like 24/05/2026 18:30")
    kwh = MarketDecimal.parse_positive(parts[3], "kWh")
    return {
        "date": schedule[0],
        "time": schedule[1],
        "brand": parts[1],
        "location": parts[2],
        "kwh": kwh,
        "charger_connector": parts[4] if len(parts) > 4 and parts[4] else None,
    }


@safe_telegram_handler
async def manual_charge_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/manual_charge <seller>: admin only, needs a positive balance"""
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return

    if not Config.is_admin(user.id):
        await message.reply_text("⛔ Only the admin can send direct charge requests.")
        return
    if not context.args:
        await message.reply_text(MANUAL_REQUEST_USAGE)
        return

    services = get_services(context)
    seller = services.users.find_user(context.args[0])
    if seller is None:
        await message.reply_text(f"❌ User {context.args[0]} not found. They must have started the bot first.")
        return
    if seller.user_id == user.id:
        await message.reply_text("❌ You cannot request a charge from yourself.")
        return

    admin = services.users.get_user(user.id)
    if admin is None or not admin.balance or admin.balance <= 0:
        await message.reply_text("❌ You have no kWh balance for a direct request.")
        return

    set_pending_input(context, PendingInput.MANUAL_REQUEST, seller_id=seller.user_id)
    await message.reply_text(
        f"⚡ Direct request to {UserService.display_name(seller)} "
        f"(your balance: {MarketDecimal.format(admin.balance)} kWh)\n\n{MANUAL_REQUEST_HELP}"
    )


async def handle_manual_request_input(update: Update, context: ContextTypes.DEFAULT_TYPE, pending: dict) -> None:
    """Turn the admin's details message into a pending offer for the chosen seller"""
    message = update.effective_message
    user = update.effective_user
    services = get_services(context)
    try:
        fields = parse_manual_request(message.text or "")
        kwh = fields.pop("kwh")
        offer = await services.engine.create({
            **fields,
            "buyer_id": user.id,
            "seller_id": pending["seller_id"],
            "additional_info": f"Direct request from the admin, about {MarketDecimal.format(kwh)} kWh",
        })
    except ValidationError as e:
        await message.reply_text(f"{user_facing_message(e)}\n\n{MANUAL_REQUEST_HELP}")
        return
    except MarketplaceError as e:
        clear_pending_input(context)
        await message.reply_text(user_facing_message(e))
        return

    clear_pending_input(context)
    logger.info(f"📨 MANUAL_REQUEST_SENT: offer={offer.id} admin={user.id} seller={offer.seller_id}")
    await message.reply_text(f"📨 Request #{offer.id} sent to the seller.")


def register_manual_request_handlers(application) -> None:
    application.add_handler(CommandHandler("manual_charge", manual_charge_command))
    logger.info("✅ Manual request handlers registered")
