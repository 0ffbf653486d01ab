"""
Offer Notification Messages
Text and buttons sent to each party after an offer changes state.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from telegram import InlineKeyboardMarkup

from config import Config
from models import Offer
from utils.constants import STATUS_EMOJIS
from utils.datetime_helpers import format_charge_date
from utils.decimal_precision import MarketDecimal
from utils.keyboards import (
    buyer_ready_keyboard,
    charging_check_keyboard,
    donation_keyboard,
    feedback_keyboard,
    kwh_review_keyboard,
    offer_decision_keyboard,
    payment_confirmation_keyboard,
    payment_sent_keyboard,
    start_charging_keyboard,
)
from utils.offer_state_machine import OfferAction

logger = logging.getLogger(__name__)


@dataclass
class OutgoingMessage:
    user_id: int
    text: str
    keyboard: Optional[InlineKeyboardMarkup] = None


def offer_summary(offer: Offer) -> str:
    emoji = STATUS_EMOJIS.get(offer.status, "•")
    lines = [
        f"{emoji} Charge #{offer.id}",
        f"📅 {format_charge_date(offer.charge_date)} at {offer.charge_time}",
        f"📍 {offer.location}",
        f"🔌 {offer.brand}",
    ]
    if offer.kwh_charged is not None:
        lines.append(f"🔋 {MarketDecimal.format(offer.kwh_charged)} kWh")
    if offer.total_amount is not None:
        lines.append(f"💶 Total: {MarketDecimal.format(offer.total_amount)}")
    return "\n".join(lines)


def new_offer_message(offer: Offer) -> OutgoingMessage:
    text = f"🆕 New charging request\n\n{offer_summary(offer)}"
    if offer.additional_info:
        text += f"\nℹ️ {offer.additional_info}"
    return OutgoingMessage(offer.seller_id, text, offer_decision_keyboard(offer.id))


def amount_due_message(offer: Offer, payload: dict) -> OutgoingMessage:
    """
    Amount due sent to the buyer once the seller sets the price.

    ``payload`` may carry ``donation_coverage`` (admin buyer) or
    ``buyer_balance`` (everyone else).
    """
    lines = [
        f"💶 Amount due: {MarketDecimal.format(offer.total_amount)} "
        f"({MarketDecimal.format(offer.kwh_charged)} kWh × {MarketDecimal.format(offer.unit_price)})"
    ]
    coverage = payload.get("donation_coverage")
    balance = payload.get("buyer_balance") or Decimal("0")
    if coverage is not None:
        lines.append(
            f"🎁 Donations from this seller cover {MarketDecimal.format(coverage.kwh_covered)} kWh "
            f"({MarketDecimal.format(coverage.amount_covered)})"
        )
        lines.append(f"💸 Still to pay: {MarketDecimal.format(coverage.amount_to_pay)}")
    elif balance > 0:
        lines.append(f"💳 Your balance: {MarketDecimal.format(balance)}. You can use it towards this charge.")
    lines.append("\nPress the button once you have paid.")
    return OutgoingMessage(
        offer.buyer_id,
        "\n".join(lines),
        payment_sent_keyboard(offer.id, with_balance=coverage is None and balance > 0),
    )


def build_transition_messages(action: OfferAction, offer: Offer, payload: Optional[dict] = None) -> List[OutgoingMessage]:
    """Messages to send once ``action`` has been committed on ``offer``"""
    payload = payload or {}
    summary = offer_summary(offer)
    messages: List[OutgoingMessage] = []

    if action is OfferAction.ACCEPT:
        messages.append(OutgoingMessage(
            offer.buyer_id,
            f"✅ Your request was accepted!\n\n{summary}\n\nPress the button when you are at the charger.",
            buyer_ready_keyboard(offer.id),
        ))
    elif action is OfferAction.REJECT:
        messages.append(OutgoingMessage(
            offer.buyer_id,
            f"❌ Your request was rejected.\n\n{summary}\n\nReason: {offer.rejection_reason}",
        ))
    elif action is OfferAction.BUYER_READY:
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"🚗 The buyer is at the charger.\n\n{summary}\n\nStart the charge and press the button.",
            start_charging_keyboard(offer.id),
        ))
    elif action is OfferAction.BUYER_CANCEL:
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"⚫ The buyer cancelled the charge.\n\n{summary}\n\nReason: {offer.cancellation_reason}",
        ))
    elif action is OfferAction.SELLER_STARTS_CHARGING:
        messages.append(OutgoingMessage(
            offer.buyer_id,
            f"⚡ The seller started the charge.\n\n{summary}\n\nIs your car charging?",
            charging_check_keyboard(offer.id),
        ))
    elif action is OfferAction.BUYER_CONFIRMS_OK:
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"✅ The buyer confirmed the car is charging.\n\n{summary}",
        ))
    elif action is OfferAction.BUYER_REPORTS_ISSUE:
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"⚠️ The buyer reports a problem with the charge:\n\n{payload.get('reason')}\n\n{summary}"
            f"\n\nPlease check the charger. The buyer will confirm once the car is charging.",
        ))
        messages.append(OutgoingMessage(
            offer.buyer_id,
            "📨 The seller has been told about the problem.\n\nPress Charging OK once the car is charging.",
            charging_check_keyboard(offer.id),
        ))
    elif action is OfferAction.BUYER_DECLARES_KWH:
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"🔋 The buyer finished charging and declared "
            f"{MarketDecimal.format(offer.kwh_charged)} kWh. Waiting for the display photo.",
        ))
    elif action is OfferAction.BUYER_SUBMITS_PHOTO:
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"📸 The buyer sent the charger photo.\n\n{summary}\n\nIs the kWh amount correct?",
            kwh_review_keyboard(offer.id),
        ))
    elif action is OfferAction.SELLER_CONFIRMS_KWH:
        messages.append(OutgoingMessage(
            offer.buyer_id,
            "✅ The seller confirmed the kWh. You will receive the amount to pay shortly.",
        ))
    elif action is OfferAction.SELLER_DISPUTES_KWH:
        messages.append(OutgoingMessage(
            offer.buyer_id,
            f"⚠️ The seller contests the declared kWh:\n\n{payload.get('reason')}\n\n{summary}",
        ))
    elif action is OfferAction.SELLER_SETS_UNIT_PRICE:
        messages.append(amount_due_message(offer, payload))
    elif action is OfferAction.BUYER_MARKS_PAID:
        text = (
            f"📤 The buyer reports payment of {MarketDecimal.format(offer.amount_to_pay)} "
            f"via {offer.payment_method}."
        )
        if offer.balance_used:
            text += f"\n💳 {MarketDecimal.format(offer.balance_used)} of the total was covered by balance."
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"{text}\n\nPlease confirm you received it.",
            payment_confirmation_keyboard(offer.id),
        ))
    elif action is OfferAction.SELLER_CONFIRMS_RECEIPT:
        messages.append(OutgoingMessage(
            offer.buyer_id,
            f"🎉 Charge completed!\n\n{summary}\n\nHow was the seller?",
            feedback_keyboard(offer.id),
        ))
        messages.append(OutgoingMessage(
            offer.seller_id,
            f"🎉 Charge completed!\n\n{summary}\n\nHow was the buyer?",
            feedback_keyboard(offer.id),
        ))
        if Config.ADMIN_USER_ID is not None and offer.seller_id != Config.ADMIN_USER_ID:
            messages.append(OutgoingMessage(
                offer.seller_id,
                "🎁 Would you like to donate some kWh to support the community?",
                donation_keyboard(offer.id, Config.FIXED_DONATION_KWH),
            ))
    elif action is OfferAction.SELLER_DISPUTES_PAYMENT:
        text = f"🔴 The seller did not receive the payment:\n\n{offer.dispute_reason}\n\n{summary}"
        messages.append(OutgoingMessage(offer.buyer_id, text))
        if Config.ADMIN_USER_ID is not None:
            messages.append(OutgoingMessage(Config.ADMIN_USER_ID, f"🚨 Payment dispute on charge #{offer.id}\n\n{text}"))
    else:
        logger.warning(f"No notification template for action {action}")

    return messages
