"""
Payment Service
Amount calculation and paying (part of) a charge with accumulated balance.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import Config
from models import Offer, OfferStatus
from services.donation_service import DonationLedger
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import StateConflictError, ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class PaymentBreakdown:
    original_amount: Decimal
    balance_used: Decimal
    amount_to_pay: Decimal
    remaining_balance: Decimal


@dataclass(frozen=True)
class DonationCoverage:
    kwh_covered: Decimal
    amount_covered: Decimal
    amount_to_pay: Decimal


class PaymentService:
    def __init__(self, session_factory=None, user_service: Optional[UserService] = None, ledger: Optional[DonationLedger] = None):
        self.session_factory = session_factory
        self.user_service = user_service or UserService(session_factory)
        self.ledger = ledger or DonationLedger(session_factory, user_service=self.user_service)

    @staticmethod
    def calculate_total_amount(kwh, unit_price) -> Decimal:
        """Exact kWh × unit price. Round with ``MarketDecimal.quantize_display`` only for messages."""
        return MarketDecimal.multiply(
            MarketDecimal.parse_positive(kwh, "kWh"),
            MarketDecimal.parse_positive(unit_price, "unit price"),
        )

    def apply_balance(self, offer: Offer, buyer_id: int) -> PaymentBreakdown:
        """
        Use the buyer's balance towards ``offer.total_amount``.

        The amount taken is capped by both the total and the available balance,
        and is debited with a conditional SQL decrement. The offer must be
        waiting for payment, and balance can be applied to it only once.

        Raises:
            ValidationError: no amount yet, wrong user, or the buyer is the admin
            StateConflictError: offer is not waiting for payment or balance was already applied
        """
        if offer.total_amount is None:
            raise ValidationError(f"Offer {offer.id} has no amount to pay yet")
        if buyer_id != offer.buyer_id:
            raise ValidationError(f"User {buyer_id} is not the buyer of offer {offer.id}")
        if Config.is_admin(buyer_id):
            raise ValidationError("Admin charges are covered by donations")

        total = offer.total_amount
        with atomic_transaction(session_factory=self.session_factory) as session:
            current = session.get(Offer, offer.id)
            status = current.status if current is not None else None
            if status != OfferStatus.PAYMENT_PENDING.value:
                raise StateConflictError(offer.id, OfferStatus.PAYMENT_PENDING.value, status)
            if current.balance_used is not None:
                raise StateConflictError(offer.id, status, status, f"Balance was already applied to offer {offer.id}")

            user = self.user_service.get_user_in(session, buyer_id)
            balance = user.balance or ZERO
            balance_used = min(balance, total) if balance > 0 else ZERO

            remaining = balance
            if balance_used > 0:
                self._mark_balance_used(session, offer.id, balance_used)
                remaining = self.user_service.adjust_balance(buyer_id, -balance_used, session=session)

        breakdown = PaymentBreakdown(
            original_amount=total,
            balance_used=balance_used,
            amount_to_pay=total - balance_used,
            remaining_balance=remaining,
        )
        logger.info(
            f"💳 BALANCE_APPLIED: offer={offer.id} buyer={buyer_id} used={balance_used} "
            f"to_pay={breakdown.amount_to_pay} remaining={remaining}"
        )
        return breakdown

    @staticmethod
    def _mark_balance_used(session: Session, offer_id: int, amount: Decimal) -> None:
        result = session.execute(
            update(Offer)
            .where(
                Offer.id == offer_id,
                Offer.status == OfferStatus.PAYMENT_PENDING.value,
                Offer.balance_used.is_(None),
            )
            .values(balance_used=amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = session.get(Offer, offer_id)
            status = current.status if current is not None else None
            if status == OfferStatus.PAYMENT_PENDING.value:
                raise StateConflictError(
                    offer_id, status, status, f"Balance was already applied to offer {offer_id}"
                )
            raise StateConflictError(offer_id, OfferStatus.PAYMENT_PENDING.value, status)

    def preview_donation_coverage(self, offer: Offer) -> DonationCoverage:
        """Read-only estimate of how much of an admin charge donations will cover"""
        if offer.kwh_charged is None:
            raise ValidationError(f"Offer {offer.id} has no kWh declared yet")

        available = self.ledger.get_available_from_donor(offer.buyer_id, offer.seller_id)
        kwh_covered = min(available, offer.kwh_charged)
        unit_price = offer.unit_price or ZERO
        amount_covered = MarketDecimal.quantize_storage(kwh_covered * unit_price)
        total = offer.total_amount if offer.total_amount is not None else MarketDecimal.quantize_storage(
            offer.kwh_charged * unit_price
        )
        return DonationCoverage(
            kwh_covered=kwh_covered,
            amount_covered=amount_covered,
            amount_to_pay=max(total - amount_covered, ZERO),
        )
