"""Constants shared by handlers, keyboards and notifications"""

from models import OfferStatus


class CallbackData:
    """Inline button prefixes. Buttons carry ``<prefix>:<offer_id>``."""

    # Offer lifecycle
    ACCEPT_OFFER = "accept_offer"
    REJECT_OFFER = "reject_offer"
    READY_TO_CHARGE = "ready_to_charge"
    CANCEL_CHARGE = "cancel_charge"
    CHARGING_STARTED = "charging_started"
    CHARGING_OK = "charging_ok"
    CHARGING_ISSUES = "charging_issues"
    KWH_OK = "kwh_ok"
    KWH_DISPUTE = "kwh_dispute"
    PAYMENT_SENT = "payment_sent"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_NOT_RECEIVED = "payment_not_received"
    PAY_WITH_BALANCE = "pay_with_balance"

    # Feedback
    FEEDBACK_POSITIVE = "feedback_positive"
    FEEDBACK_NEGATIVE = "feedback_negative"

    # Donations
    DONATE_FIXED = "donate_fixed"
    DONATE_CUSTOM = "donate_custom"
    DONATE_SKIP = "donate_skip"

    # Announcements (carries the announcement id)
    BUY_KWH = "buy_kwh"

    SEPARATOR = ":"

    @classmethod
    def build(cls, prefix: str, entity_id) -> str:
        return f"{prefix}{cls.SEPARATOR}{entity_id}"

    @classmethod
    def parse_offer_id(cls, data: str) -> int:
        """Extract the numeric offer id from ``prefix:<id>``"""
        _, _, raw_id = (data or "").partition(cls.SEPARATOR)
        return int(raw_id)


class PendingInput:
    """Keys stored in ``context.user_data`` while waiting for a free-text reply"""

    KEY = "pending_offer_input"

    REJECT_REASON = "reject_reason"
    CANCEL_REASON = "cancel_reason"
    ISSUE_DESCRIPTION = "issue_description"
    KWH_AMOUNT = "kwh_amount"
    CHARGER_PHOTO = "charger_photo"
    KWH_DISPUTE_REASON = "kwh_dispute_reason"
    UNIT_PRICE = "unit_price"
    PAYMENT_METHOD = "payment_method"
    PAYMENT_DISPUTE_REASON = "payment_dispute_reason"
    OFFER_REQUEST = "offer_request"
    MANUAL_REQUEST = "manual_request"
    DONATION_AMOUNT = "donation_amount"
    FEEDBACK_REASON = "feedback_reason"


STATUS_EMOJIS = {
    OfferStatus.PENDING.value: "🟡",
    OfferStatus.ACCEPTED.value: "🟢",
    OfferStatus.REJECTED.value: "❌",
    OfferStatus.READY_TO_CHARGE.value: "🚗",
    OfferStatus.CHARGING_STARTED.value: "🔌",
    OfferStatus.CHARGING.value: "⚡",
    OfferStatus.CHARGING_COMPLETED.value: "🔋",
    OfferStatus.KWH_CONFIRMED.value: "📸",
    OfferStatus.PAYMENT_PENDING.value: "💶",
    OfferStatus.PAYMENT_SENT.value: "📤",
    OfferStatus.COMPLETED.value: "✅",
    OfferStatus.DISPUTED.value: "🔴",
    OfferStatus.CANCELLED.value: "⚫",
}

PLATFORM_NAME = "kWh Market"

MAX_MESSAGE_LENGTH = 4000

RECENT_TRANSACTIONS_LIMIT = 5
