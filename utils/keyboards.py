"""Inline keyboard utilities for the kWh marketplace bot"""

from decimal import Decimal

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from utils.constants import CallbackData
from utils.decimal_precision import MarketDecimal


def _button(text: str, prefix: str, entity_id) -> InlineKeyboardButton:
    return InlineKeyboardButton(text, callback_data=CallbackData.build(prefix, entity_id))


def offer_decision_keyboard(offer_id: int) -> InlineKeyboardMarkup:
    """Seller: accept or reject a new charging request"""
    return InlineKeyboardMarkup([
        [
            _button("✅ Accept", CallbackData.ACCEPT_OFFER, offer_id),
            _button("❌ Reject", CallbackData.REJECT_OFFER, offer_id),
        ]
    ])


def buyer_ready_keyboard(offer_id: int) -> InlineKeyboardMarkup:
    """Buyer: confirm arrival at the charger or cancel"""
    return InlineKeyboardMarkup([
        [_button("🔌 I'm at the charger", CallbackData.READY_TO_CHARGE, offer_id)],
        [_button("❌ Cancel", CallbackData.CANCEL_CHARGE, offer_id)],
    ])


def start_charging_keyboard(offer_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [_button("⚡ Charging started", CallbackData.CHARGING_STARTED, offer_id)],
    ])


def charging_check_keyboard(offer_id: int) -> InlineKeyboardMarkup:
    """Buyer: is the car actually charging?"""
    return InlineKeyboardMarkup([
        [
            _button("✅ Charging OK", CallbackData.CHARGING_OK, offer_id),
            _button("⚠️ Problems", CallbackData.CHARGING_ISSUES, offer_id),
        ]
    ])


def kwh_review_keyboard(offer_id: int) -> InlineKeyboardMarkup:
    """Seller: accept or contest the declared kWh"""
    return InlineKeyboardMarkup([
        [
            _button("✅ kWh correct", CallbackData.KWH_OK, offer_id),
            _button("⚠️ Contest", CallbackData.KWH_DISPUTE, offer_id),
        ]
    ])


def payment_sent_keyboard(offer_id: int, with_balance: bool = False) -> InlineKeyboardMarkup:
    rows = []
    if with_balance:
        rows.append([_button("💳 Use my balance", CallbackData.PAY_WITH_BALANCE, offer_id)])
    rows.append([_button("💸 Payment sent", CallbackData.PAYMENT_SENT, offer_id)])
    return InlineKeyboardMarkup(rows)


def payment_confirmation_keyboard(offer_id: int) -> InlineKeyboardMarkup:
    """Seller: confirm the payment arrived"""
    return InlineKeyboardMarkup([
        [_button("✅ Payment received", CallbackData.PAYMENT_CONFIRMED, offer_id)],
        [_button("⚠️ Not received", CallbackData.PAYMENT_NOT_RECEIVED, offer_id)],
    ])


def feedback_keyboard(offer_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [
            _button("👍 Positive", CallbackData.FEEDBACK_POSITIVE, offer_id),
            _button("👎 Negative", CallbackData.FEEDBACK_NEGATIVE, offer_id),
        ]
    ])


def donation_keyboard(offer_id: int, fixed_kwh: Decimal) -> InlineKeyboardMarkup:
    """Seller: offer a quick donation to the admin pool after completion"""
    return InlineKeyboardMarkup([
        [_button(f"🎁 Donate {MarketDecimal.format(fixed_kwh)} kWh", CallbackData.DONATE_FIXED, offer_id)],
        [_button("✏️ Choose amount", CallbackData.DONATE_CUSTOM, offer_id)],
        [_button("No thanks", CallbackData.DONATE_SKIP, offer_id)],
    ])


def buy_kwh_keyboard(announcement_id: str, bot_username: str) -> InlineKeyboardMarkup:
    """Group post button that opens a private chat with the bot"""
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton(
                "⚡ Buy kWh",
                url=f"https://t.me/{bot_username}?start={CallbackData.BUY_KWH}_{announcement_id}",
            )
        ]
    ])
