"""
Wallet Service
Per-partner view of what a user bought, sold and donated.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import or_, select

from config import Config
from models import Donation, Offer, OfferStatus, Transaction, User
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import NotFoundError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

CANCELLED_STATUSES = (OfferStatus.CANCELLED.value, OfferStatus.REJECTED.value)


@dataclass
class PartnerSummary:
    partner_id: int
    partner_name: str = ""
    total_transactions: int = 0
    kwh_bought: Decimal = ZERO
    kwh_sold: Decimal = ZERO
    amount_spent: Decimal = ZERO
    amount_earned: Decimal = ZERO
    successful_offers: int = 0
    pending_offers: int = 0
    cancelled_offers: int = 0
    donated_kwh: Decimal = ZERO
    available_kwh: Decimal = ZERO
    used_kwh: Decimal = ZERO
    transactions: List[Transaction] = field(default_factory=list)


@dataclass
class WalletSummary:
    user_id: int
    is_admin: bool
    balance: Decimal
    partners: Dict[int, PartnerSummary]
    kwh_bought: Decimal = ZERO
    kwh_sold: Decimal = ZERO
    amount_spent: Decimal = ZERO
    amount_earned: Decimal = ZERO
    successful_offers: int = 0
    pending_offers: int = 0
    cancelled_offers: int = 0
    # Donor view: everything given to the admin. Admin view: credit still unused.
    donated_kwh: Decimal = ZERO
    received_available_kwh: Decimal = ZERO

    def top_partners(self, limit: int = 5) -> List[PartnerSummary]:
        return sorted(
            self.partners.values(),
            key=lambda p: (-p.total_transactions, p.partner_id),
        )[:limit]


class WalletService:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def get_wallet_summary(self, user_id: int) -> WalletSummary:
        """
        Group transactions, offers and donations by counterpart.

        Donations are attributed to the donor for the admin and to the admin for
        everyone else.

        Raises:
            NotFoundError: the user never used the bot
        """
        is_admin = Config.is_admin(user_id)

        with atomic_transaction(session_factory=self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User", user_id)

            transactions = session.execute(
                select(Transaction)
                .where(or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id))
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            ).scalars().all()
            offers = session.execute(
                select(Offer).where(or_(Offer.buyer_id == user_id, Offer.seller_id == user_id))
            ).scalars().all()
            donation_filter = Donation.admin_id == user_id if is_admin else Donation.donor_user_id == user_id
            donations = session.execute(select(Donation).where(donation_filter)).scalars().all()

            partners: Dict[int, PartnerSummary] = {}

            def partner(partner_id: int) -> PartnerSummary:
                return partners.setdefault(partner_id, PartnerSummary(partner_id=partner_id))

            for tx in transactions:
                bought = tx.buyer_id == user_id
                entry = partner(tx.seller_id if bought else tx.buyer_id)
                entry.total_transactions += 1
                entry.transactions.append(tx)
                if bought:
                    entry.kwh_bought += tx.kwh_amount
                    entry.amount_spent += tx.total_amount
                else:
                    entry.kwh_sold += tx.kwh_amount
                    entry.amount_earned += tx.total_amount

            for offer in offers:
                entry = partner(offer.counterpart_of(user_id))
                if offer.status == OfferStatus.COMPLETED.value:
                    entry.successful_offers += 1
                elif offer.status in CANCELLED_STATUSES:
                    entry.cancelled_offers += 1
                else:
                    entry.pending_offers += 1

            for donation in donations:
                entry = partner(donation.donor_user_id if is_admin else donation.admin_id)
                entry.donated_kwh += donation.kwh_amount
                if donation.is_used:
                    entry.used_kwh += donation.kwh_amount
                else:
                    entry.available_kwh += donation.kwh_amount

            for partner_user in session.execute(
                select(User).where(User.user_id.in_(list(partners)))
            ).scalars().all():
                partners[partner_user.user_id].partner_name = UserService.display_name(partner_user)

            summary = WalletSummary(
                user_id=user_id,
                is_admin=is_admin,
                balance=user.balance or ZERO,
                partners=partners,
            )

        for entry in partners.values():
            if not entry.partner_name:
                entry.partner_name = f"Partner {entry.partner_id}"
            summary.kwh_bought += entry.kwh_bought
            summary.kwh_sold += entry.kwh_sold
            summary.amount_spent += entry.amount_spent
            summary.amount_earned += entry.amount_earned
            summary.successful_offers += entry.successful_offers
            summary.pending_offers += entry.pending_offers
            summary.cancelled_offers += entry.cancelled_offers
            if is_admin:
                summary.received_available_kwh += entry.available_kwh
            else:
                summary.donated_kwh += entry.donated_kwh

        logger.info(f"💼 WALLET_SUMMARY: user={user_id} partners={len(partners)} admin={is_admin}")
        return summary

    def get_partner_detail(self, user_id: int, partner_id: int) -> PartnerSummary:
        """
        One partner's slice of the wallet.

        Raises:
            NotFoundError: the user has no history with ``partner_id``
        """
        detail: Optional[PartnerSummary] = self.get_wallet_summary(user_id).partners.get(partner_id)
        if detail is None:
            raise NotFoundError("Partner", partner_id)
        return detail
