"""
Offer Button Handlers
Inline buttons that move a charging offer through its lifecycle, plus the
free-text follow-ups some buttons ask for (reasons, kWh, price, payment method,
charger photo).
"""

import logging
from typing import Optional

from telegram import Update
from telegram.ext import CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from handlers.donations import handle_donation_amount_input
from handlers.manual_request import handle_manual_request_input
from handlers.user_rating import handle_feedback_reason_input
from services.service_registry import get_services
from utils.callback_utils import (
    clear_pending_input,
    get_pending_input,
    safe_answer_callback_query,
    safe_edit_message_text,
    set_pending_input,
)
from utils.constants import CallbackData, PendingInput
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import (
    MarketplaceError,
    StateConflictError,
    UnauthorizedActorError,
    ValidationError,
    safe_telegram_handler,
    user_facing_message,
)
from utils.keyboards import payment_sent_keyboard
from utils.offer_state_machine import OfferAction, OfferRole, OfferStateValidator

logger = logging.getLogger(__name__)


# Buttons that transition immediately
DIRECT_ACTIONS = {
    CallbackData.ACCEPT_OFFER: OfferAction.ACCEPT,
    CallbackData.READY_TO_CHARGE: OfferAction.BUYER_READY,
    CallbackData.CHARGING_STARTED: OfferAction.SELLER_STARTS_CHARGING,
    CallbackData.CHARGING_OK: OfferAction.BUYER_CONFIRMS_OK,
    CallbackData.KWH_OK: OfferAction.SELLER_CONFIRMS_KWH,
    CallbackData.PAYMENT_CONFIRMED: OfferAction.SELLER_CONFIRMS_RECEIPT,
}

# Buttons that first ask for text: prefix -> (pending input kind, action it feeds, prompt)
PROMPT_ACTIONS = {
    CallbackData.REJECT_OFFER: (
        PendingInput.REJECT_REASON, OfferAction.REJECT, "✍️ Why are you rejecting this request?"),
    CallbackData.CANCEL_CHARGE: (
        PendingInput.CANCEL_REASON, OfferAction.BUYER_CANCEL, "✍️ Why are you cancelling?"),
    CallbackData.CHARGING_ISSUES: (
        PendingInput.ISSUE_DESCRIPTION, OfferAction.BUYER_REPORTS_ISSUE, "✍️ Describe the problem for the seller."),
    CallbackData.KWH_DISPUTE: (
        PendingInput.KWH_DISPUTE_REASON, OfferAction.SELLER_DISPUTES_KWH, "✍️ What is wrong with the declared kWh?"),
    CallbackData.PAYMENT_SENT: (
        PendingInput.PAYMENT_METHOD, OfferAction.BUYER_MARKS_PAID, "💳 Which payment method did you use?"),
    CallbackData.PAYMENT_NOT_RECEIVED: (
        PendingInput.PAYMENT_DISPUTE_REASON, OfferAction.SELLER_DISPUTES_PAYMENT,
        "✍️ Describe the payment problem."),
}

# Pending input kind -> action and payload key
INPUT_ACTIONS = {
    PendingInput.REJECT_REASON: (OfferAction.REJECT, "reason"),
    PendingInput.CANCEL_REASON: (OfferAction.BUYER_CANCEL, "reason"),
    PendingInput.ISSUE_DESCRIPTION: (OfferAction.BUYER_REPORTS_ISSUE, "reason"),
    PendingInput.KWH_AMOUNT: (OfferAction.BUYER_DECLARES_KWH, "kwh"),
    PendingInput.CHARGER_PHOTO: (OfferAction.BUYER_SUBMITS_PHOTO, "photo"),
    PendingInput.KWH_DISPUTE_REASON: (OfferAction.SELLER_DISPUTES_KWH, "reason"),
    PendingInput.UNIT_PRICE: (OfferAction.SELLER_SETS_UNIT_PRICE, "unit_price"),
    PendingInput.PAYMENT_METHOD: (OfferAction.BUYER_MARKS_PAID, "payment_method"),
    PendingInput.PAYMENT_DISPUTE_REASON: (OfferAction.SELLER_DISPUTES_PAYMENT, "reason"),
}

# Follow-up question after a successful action
NEXT_PROMPTS = {
    OfferAction.BUYER_CONFIRMS_OK: (
        PendingInput.KWH_AMOUNT, "🔋 When the charge ends, send the number of kWh charged (e.g. 22.5)."),
    OfferAction.BUYER_DECLARES_KWH: (
        PendingInput.CHARGER_PHOTO, "📸 Now send a photo of the charger display showing the kWh."),
    OfferAction.SELLER_CONFIRMS_KWH: (
        PendingInput.UNIT_PRICE, "💶 Send the price per kWh (e.g. 0.30)."),
}

BUTTON_PATTERN = "^({}):\\d+$".format("|".join(list(DIRECT_ACTIONS) + list(PROMPT_ACTIONS)))

# Pending input kinds owned by other handler modules
DELEGATED_INPUTS = {
    PendingInput.MANUAL_REQUEST: handle_manual_request_input,
    PendingInput.DONATION_AMOUNT: handle_donation_amount_input,
    PendingInput.FEEDBACK_REASON: handle_feedback_reason_input,
}


OFFER_REQUEST_HELP = (
    "✍️ Send your charging request in one message:\n"
    "DD/MM/YYYY HH:MM; network or card; location; notes (optional)\n\n"
    "Example: 24/05/2026 18:30; Enel X; Via Roma 1, Milano; Tesla Model 3"
)


def set_offer_request(context: ContextTypes.DEFAULT_TYPE, announcement_id: str) -> None:
    set_pending_input(context, PendingInput.OFFER_REQUEST, announcement_id=announcement_id)


def parse_offer_request(text: str) -> dict:
    """Split ``DD/MM/YYYY HH:MM; brand; location; notes`` into offer fields"""
    parts = [part.strip() for part in (text or "").split(";")]
    if len(parts) < 3:
        raise ValidationError("Please use: DD/MM/YYYY HH:MM; network; location; notes")
    schedule = parts[0].split()
    if len(schedule) != 2:
        raise ValidationError("Date and time must look like 24/05/2026 18:30")
    return {
        "date": schedule[0],
        "time": schedule[1],
        "brand": parts[1],
        "location": parts[2],
        "additional_info": "; ".join(parts[3:]),
    }


async def _create_offer_from_message(update: Update, context: ContextTypes.DEFAULT_TYPE, announcement_id: Optional[str]) -> None:
    message = update.effective_message
    user = update.effective_user
    services = get_services(context)
    try:
        offer_data = parse_offer_request(message.text or "")
        offer_data["buyer_id"] = user.id
        offer = await services.engine.create(offer_data, announcement_id=announcement_id)
    except ValidationError as e:
        await message.reply_text(f"{user_facing_message(e)}\n\n{OFFER_REQUEST_HELP}")
        return
    except MarketplaceError as e:
        clear_pending_input(context)
        await message.reply_text(user_facing_message(e))
        return

    clear_pending_input(context)
    await message.reply_text(
        f"📨 Request #{offer.id} sent to the seller. You will be notified when they answer."
    )


def precheck_action(services, offer_id: int, action: OfferAction, user_id: int) -> None:
    """Reject a prompt button early when the offer or actor is already wrong"""
    offer = services.engine.get_offer(offer_id)
    rule = OfferStateValidator.get_rule(action)
    party = offer.buyer_id if rule.role is OfferRole.BUYER else offer.seller_id
    if user_id != party:
        raise UnauthorizedActorError(f"Only the {rule.role.value} can do this", user_id)
    if offer.status != rule.source.value:
        raise StateConflictError(offer_id, rule.source.value, offer.status)


@safe_telegram_handler
async def handle_offer_button(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    user = update.effective_user
    if not query or not user or not query.data:
        return

    services = get_services(context)
    if not services.access.is_allowed(user.id):
        await safe_answer_callback_query(query, "⏳ Too many actions, please slow down.", show_alert=True)
        return

    prefix = query.data.split(CallbackData.SEPARATOR, 1)[0]
    try:
        offer_id = CallbackData.parse_offer_id(query.data)
    except ValueError:
        await safe_answer_callback_query(query, "❌ Invalid request", show_alert=True)
        return

    try:
        if prefix in PROMPT_ACTIONS:
            kind, action, prompt = PROMPT_ACTIONS[prefix]
            precheck_action(services, offer_id, action, user.id)
            set_pending_input(context, kind, offer_id)
            await safe_answer_callback_query(query)
            # Sent as a new message so the buttons above stay usable
            await context.bot.send_message(chat_id=user.id, text=prompt)
            return

        action = DIRECT_ACTIONS[prefix]
        offer = await services.engine.transition(offer_id, action, actor_id=user.id)
    except MarketplaceError as e:
        logger.info(f"🚫 OFFER_BUTTON_REFUSED: user={user.id} data={query.data} error={type(e).__name__}")
        await safe_answer_callback_query(query, user_facing_message(e), show_alert=True)
        return

    await safe_answer_callback_query(query, "✅ Done")
    await safe_edit_message_text(query, f"✅ Charge #{offer.id}: {offer.status.replace('_', ' ')}")

    if action in NEXT_PROMPTS:
        kind, prompt = NEXT_PROMPTS[action]
        set_pending_input(context, kind, offer.id)
        await context.bot.send_message(chat_id=user.id, text=prompt)


@safe_telegram_handler
async def handle_pending_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Feed a text or photo reply into the action its button asked for"""
    message = update.effective_message
    user = update.effective_user
    pending = get_pending_input(context)
    if not message or not user or not pending:
        return

    kind = pending["kind"]
    if kind == PendingInput.OFFER_REQUEST:
        await _create_offer_from_message(update, context, pending.get("announcement_id"))
        return
    if kind in DELEGATED_INPUTS:
        await DELEGATED_INPUTS[kind](update, context, pending)
        return

    offer_id = pending["offer_id"]
    if kind not in INPUT_ACTIONS:
        clear_pending_input(context)
        return

    action, payload_key = INPUT_ACTIONS[kind]
    if kind == PendingInput.CHARGER_PHOTO:
        if not message.photo:
            await message.reply_text("📸 Please send a photo of the charger display.")
            return
        value = message.photo[-1].file_id
    else:
        value = (message.text or "").strip()

    services = get_services(context)
    try:
        offer = await services.engine.transition(offer_id, action, {payload_key: value}, actor_id=user.id)
    except (StateConflictError, UnauthorizedActorError) as e:
        clear_pending_input(context)
        await message.reply_text(user_facing_message(e))
        return
    except ValidationError as e:
        # Keep waiting so the user can correct the value
        await message.reply_text(f"{user_facing_message(e)}\nPlease try again.")
        return
    except MarketplaceError as e:
        clear_pending_input(context)
        await message.reply_text(user_facing_message(e))
        return

    clear_pending_input(context)
    await message.reply_text(f"✅ Charge #{offer.id}: {offer.status.replace('_', ' ')}")

    if action in NEXT_PROMPTS:
        next_kind, prompt = NEXT_PROMPTS[action]
        set_pending_input(context, next_kind, offer.id)
        await message.reply_text(prompt)


@safe_telegram_handler
async def handle_pay_with_balance(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Buyer uses their balance towards the amount due, once per charge"""
    query = update.callback_query
    user = update.effective_user
    if not query or not user or not query.data:
        return

    services = get_services(context)
    try:
        offer_id = CallbackData.parse_offer_id(query.data)
    except ValueError:
        await safe_answer_callback_query(query, "❌ Invalid request", show_alert=True)
        return

    try:
        precheck_action(services, offer_id, OfferAction.BUYER_MARKS_PAID, user.id)
        offer = services.engine.get_offer(offer_id)
        breakdown = services.payments.apply_balance(offer, user.id)
    except MarketplaceError as e:
        logger.info(f"🚫 BALANCE_PAYMENT_REFUSED: user={user.id} offer={offer_id} error={type(e).__name__}")
        await safe_answer_callback_query(query, user_facing_message(e), show_alert=True)
        return

    if breakdown.balance_used <= 0:
        await safe_answer_callback_query(query, "ℹ️ You have no balance to use.", show_alert=True)
        return

    await safe_answer_callback_query(query, "💳 Balance applied")
    await safe_edit_message_text(
        query,
        f"💳 Charge #{offer_id}: {MarketDecimal.format(breakdown.balance_used)} paid with balance.\n"
        f"Still to pay: {MarketDecimal.format(breakdown.amount_to_pay)}\n"
        f"Remaining balance: {MarketDecimal.format(breakdown.remaining_balance)} kWh\n\n"
        f"Press the button once you have paid the rest.",
        reply_markup=payment_sent_keyboard(offer_id),
    )


def format_active_offers(grouped: dict) -> str:
    labels = {
        "pending": "🟡 Pending",
        "accepted": "🟢 Accepted",
        "ready_to_charge": "🚗 Ready to charge",
        "charging": "⚡ Charging",
        "payment": "💶 Payment",
        "completed": "✅ Completed",
        "disputed": "🔴 Disputed",
        "cancelled": "⚫ Cancelled",
    }
    lines = ["📋 Your charges"]
    for group, offers in grouped.items():
        if not offers:
            continue
        lines.append(f"\n{labels.get(group, group)} ({len(offers)})")
        for offer in offers[:5]:
            lines.append(f"  • #{offer.id} {offer.charge_time} {offer.location}")
    if len(lines) == 1:
        lines.append("\nNo charges yet.")
    return "\n".join(lines)


@safe_telegram_handler
async def handle_my_offers(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return
    grouped = get_services(context).engine.get_active_offers(user.id)
    await message.reply_text(format_active_offers(grouped))


def register_offer_handlers(application) -> None:
    application.add_handler(CallbackQueryHandler(handle_offer_button, pattern=BUTTON_PATTERN))
    application.add_handler(
        CallbackQueryHandler(handle_pay_with_balance, pattern=f"^{CallbackData.PAY_WITH_BALANCE}:\\d+$")
    )
    application.add_handler(CommandHandler("my_offers", handle_my_offers))
    application.add_handler(
        MessageHandler((filters.TEXT & ~filters.COMMAND) | filters.PHOTO, handle_pending_input),
        group=1,
    )
    logger.info(f"✅ Offer handlers registered ({len(DIRECT_ACTIONS) + len(PROMPT_ACTIONS)} buttons)")
