"""
Donation Ledger
===============

Sellers donate kWh credit to the admin. When the admin buys a charge from a
seller, that seller's unused donations cover the kWh oldest-first. A partially
used donation is split into a used record (keeping the original timestamp) and
a smaller unused remainder, so per donor/admin pair used + unused always equals
the total ever donated.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import Donation, Offer
from services.notification_service import Notifier
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import DonationAlreadyRecordedError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class DonationSlice:
    """Value view of (part of) a donation record"""
    donor_user_id: int
    admin_id: int
    kwh_amount: Decimal
    created_at: datetime
    is_used: bool


@dataclass(frozen=True)
class ConsumptionResult:
    covered_amount: Decimal
    records_touched: int


def split_donation(donation, amount) -> Tuple[DonationSlice, DonationSlice]:
    """
    Split an unused donation into a used part of ``amount`` kWh and the unused remainder.

    Pure: the donation itself is not modified. Both parts keep the original
    ``created_at``.

    Raises:
        ValidationError: amount is not strictly between zero and the donation size
    """
    amount = MarketDecimal.parse_positive(amount, "split amount")
    if amount >= donation.kwh_amount:
        raise ValidationError(
            f"Split amount {amount} must be smaller than the donation ({donation.kwh_amount})"
        )
    used_part = DonationSlice(
        donor_user_id=donation.donor_user_id,
        admin_id=donation.admin_id,
        kwh_amount=amount,
        created_at=donation.created_at,
        is_used=True,
    )
    remainder = DonationSlice(
        donor_user_id=donation.donor_user_id,
        admin_id=donation.admin_id,
        kwh_amount=donation.kwh_amount - amount,
        created_at=donation.created_at,
        is_used=False,
    )
    return used_part, remainder


class DonationLedger:
    """Admin kWh pool funded by seller donations"""

    def __init__(self, session_factory=None, notifier: Optional[Notifier] = None, user_service: Optional[UserService] = None):
        self.session_factory = session_factory
        self.notifier = notifier
        self.user_service = user_service or UserService(session_factory)

    async def donate(self, donor_id: int, admin_id: int, kwh_amount, source_offer_id: Optional[int] = None) -> Donation:
        """
        Record a donation and credit the admin balance in one transaction.

        ``source_offer_id`` ties the donation to the completed charge it follows;
        a second donation for the same charge raises ``DonationAlreadyRecordedError``.
        """
        amount = MarketDecimal.parse_positive(kwh_amount, "donation")
        if donor_id == admin_id:
            raise ValidationError("Cannot donate to yourself")

        with atomic_transaction(session_factory=self.session_factory) as session:
            UserService.ensure_user(session, donor_id)
            UserService.ensure_user(session, admin_id)

            donation = Donation(
                donor_user_id=donor_id,
                admin_id=admin_id,
                kwh_amount=amount,
                is_used=False,
                source_offer_id=source_offer_id,
            )
            if source_offer_id is not None and session.execute(
                select(Donation.id).where(Donation.source_offer_id == source_offer_id)
            ).first() is not None:
                raise DonationAlreadyRecordedError(source_offer_id)
            session.add(donation)
            try:
                session.flush()
            except IntegrityError:
                if source_offer_id is None:
                    raise
                # Lost the race against a concurrent tap on the same offer
                raise DonationAlreadyRecordedError(source_offer_id)

            new_balance = self.user_service.adjust_balance(admin_id, amount, session=session)
            available = self._sum(session, admin_id, donor_id, used=False)

        logger.info(
            f"🎁 DONATION_RECORDED: id={donation.id} donor={donor_id} admin={admin_id} kwh={amount} "
            f"offer={source_offer_id}"
        )

        if self.notifier is not None:
            await self.notifier.notify(
                admin_id,
                f"🎁 New donation from {donor_id}: {MarketDecimal.format(amount)} kWh\n\n"
                f"Available from this donor: {MarketDecimal.format(available)} kWh\n"
                f"Your balance: {MarketDecimal.format(new_balance)} kWh",
            )
        return donation

    def consume_for_offer(self, offer: Offer, session: Optional[Session] = None) -> ConsumptionResult:
        """
        Cover ``offer.kwh_charged`` with the seller's unused donations to the buyer (admin).

        Oldest donations are consumed first. A shortfall is returned as partial
        coverage, not an error.
        """
        needed = offer.kwh_charged
        if needed is None or needed <= 0:
            return ConsumptionResult(ZERO, 0)

        with atomic_transaction(session, self.session_factory) as s:
            donations = s.execute(
                select(Donation)
                .where(
                    Donation.admin_id == offer.buyer_id,
                    Donation.donor_user_id == offer.seller_id,
                    Donation.is_used.is_(False),
                )
                .order_by(Donation.created_at.asc(), Donation.id.asc())
                .with_for_update()
            ).scalars().all()

            remaining = Decimal(needed)
            covered = ZERO
            touched = 0

            for donation in donations:
                if remaining <= 0:
                    break

                if donation.kwh_amount <= remaining:
                    self._mark_used(s, donation, offer.id)
                    covered += donation.kwh_amount
                    remaining -= donation.kwh_amount
                else:
                    used_part, remainder = split_donation(donation, remaining)
                    self._apply_split(s, donation, used_part, remainder, offer.id)
                    covered += used_part.kwh_amount
                    remaining = ZERO
                touched += 1

            s.flush()

        if remaining > 0:
            logger.info(
                f"🔋 DONATION_SHORTFALL: offer={offer.id} needed={needed} covered={covered}"
            )
        logger.info(
            f"🔋 DONATION_CONSUMED: offer={offer.id} admin={offer.buyer_id} donor={offer.seller_id} "
            f"covered={covered} records={touched}"
        )
        return ConsumptionResult(covered, touched)

    @staticmethod
    def _mark_used(session: Session, donation: Donation, offer_id: int) -> None:
        result = session.execute(
            update(Donation)
            .where(Donation.id == donation.id, Donation.is_used.is_(False))
            .values(is_used=True, used_in_offer_id=offer_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflictError(offer_id, "unused", "used", f"Donation {donation.id} was consumed concurrently")
        donation.is_used = True
        donation.used_in_offer_id = offer_id

    @staticmethod
    def _apply_split(session: Session, donation: Donation, used_part: DonationSlice, remainder: DonationSlice, offer_id: int) -> None:
        result = session.execute(
            update(Donation)
            .where(
                Donation.id == donation.id,
                Donation.is_used.is_(False),
                Donation.kwh_amount == donation.kwh_amount,
            )
            .values(kwh_amount=remainder.kwh_amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflictError(offer_id, "unused", "changed", f"Donation {donation.id} changed concurrently")
        donation.kwh_amount = remainder.kwh_amount

        session.add(Donation(
            donor_user_id=used_part.donor_user_id,
            admin_id=used_part.admin_id,
            kwh_amount=used_part.kwh_amount,
            is_used=True,
            used_in_offer_id=offer_id,
            created_at=used_part.created_at,
        ))

    @staticmethod
    def _sum(session: Session, admin_id: int, donor_id: int, used: bool) -> Decimal:
        total = session.execute(
            select(func.coalesce(func.sum(Donation.kwh_amount), 0)).where(
                Donation.admin_id == admin_id,
                Donation.donor_user_id == donor_id,
                Donation.is_used.is_(used),
            )
        ).scalar_one()
        return Decimal(str(total))

    def has_donation_for_offer(self, offer_id: int) -> bool:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return session.execute(
                select(Donation.id).where(Donation.source_offer_id == offer_id)
            ).first() is not None

    def get_available_from_donor(self, admin_id: int, donor_id: int) -> Decimal:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self._sum(session, admin_id, donor_id, used=False)

    def get_used_with_donor(self, admin_id: int, donor_id: int) -> Decimal:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return self._sum(session, admin_id, donor_id, used=True)

    def get_donor_summary(self, admin_id: int) -> List[Dict[str, Any]]:
        """Per-donor totals for an admin, largest available first"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            donations = session.execute(
                select(Donation).where(Donation.admin_id == admin_id)
            ).scalars().all()

        summary: Dict[int, Dict[str, Any]] = {}
        for donation in donations:
            entry = summary.setdefault(donation.donor_user_id, {
                "donor_id": donation.donor_user_id,
                "total_donated": ZERO,
                "used": ZERO,
                "available": ZERO,
            })
            entry["total_donated"] += donation.kwh_amount
            if donation.is_used:
                entry["used"] += donation.kwh_amount
            else:
                entry["available"] += donation.kwh_amount

        return sorted(summary.values(), key=lambda e: (-e["available"], e["donor_id"]))

    def get_donation_stats(self, user_id: int, as_admin: Optional[bool] = None) -> Dict[str, Any]:
        """
        Admin view: per-donor totals. Donor view: what the user gave, and how much
        of it was already used.
        """
        if as_admin is None:
            as_admin = Config.is_admin(user_id)

        if as_admin:
            donors = self.get_donor_summary(user_id)
            return {
                "role": "admin",
                "donors": donors,
                "total_available": sum((d["available"] for d in donors), ZERO),
                "total_received": sum((d["total_donated"] for d in donors), ZERO),
            }

        with atomic_transaction(session_factory=self.session_factory) as session:
            donations = session.execute(
                select(Donation).where(Donation.donor_user_id == user_id)
            ).scalars().all()

        used = sum((d.kwh_amount for d in donations if d.is_used), ZERO)
        available = sum((d.kwh_amount for d in donations if not d.is_used), ZERO)
        return {
            "role": "donor",
            "donated": used + available,
            "used": used,
            "available": available,
        }
