"""
Offer Lifecycle Engine
======================

Drives a charging offer from ``pending`` to a terminal state.

Every transition is one compare-and-set on (offer id, expected status) so that
when two handlers race on the same offer exactly one wins and the other gets a
``StateConflictError``. Side effects that must be atomic with the status change
(transaction record, donation consumption) share its database transaction.
Notifications are sent only after commit and never fail the caller.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config import Config
from models import Announcement, AnnouncementStatus, Offer, OfferStatus, User
from services.donation_service import ConsumptionResult, DonationLedger
from services.notification_service import Notifier
from services.offer_notifications import build_transition_messages, new_offer_message
from services.payment_service import PaymentService
from services.transaction_service import TransactionService
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import compute_expiry, get_naive_utc_now, parse_charge_schedule
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import (
    NotFoundError,
    StateConflictError,
    UnauthorizedActorError,
    ValidationError,
)
from utils.offer_state_machine import OfferAction, OfferRole, OfferStateValidator, TransitionRule
from utils.optimistic_locking import assert_offer_status, compare_and_set_status

logger = logging.getLogger(__name__)

ACTIVE_OFFER_GROUPS = {
    "pending": (OfferStatus.PENDING,),
    "accepted": (OfferStatus.ACCEPTED,),
    "ready_to_charge": (OfferStatus.READY_TO_CHARGE,),
    "charging": (OfferStatus.CHARGING_STARTED, OfferStatus.CHARGING, OfferStatus.CHARGING_COMPLETED),
    "payment": (OfferStatus.KWH_CONFIRMED, OfferStatus.PAYMENT_PENDING, OfferStatus.PAYMENT_SENT),
    "completed": (OfferStatus.COMPLETED,),
    "disputed": (OfferStatus.DISPUTED,),
    "cancelled": (OfferStatus.CANCELLED,),
}

EXPIRABLE_STATUSES = (OfferStatus.PENDING, OfferStatus.ACCEPTED)


def _required_text(payload: Dict[str, Any], key: str, label: str) -> str:
    value = payload.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


class OfferLifecycleEngine:
    """State machine for charging offers"""

    def __init__(
        self,
        session_factory=None,
        notifier: Optional[Notifier] = None,
        donation_ledger: Optional[DonationLedger] = None,
        transaction_service: Optional[TransactionService] = None,
        user_service: Optional[UserService] = None,
        admin_id: Optional[int] = None,
        expiry_hours: Optional[int] = None,
        payment_service: Optional[PaymentService] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.user_service = user_service or UserService(session_factory)
        self.donation_ledger = donation_ledger or DonationLedger(session_factory, notifier, self.user_service)
        self.transaction_service = transaction_service or TransactionService(session_factory)
        self.payment_service = payment_service or PaymentService(
            session_factory, user_service=self.user_service, ledger=self.donation_ledger
        )
        self.admin_id = admin_id if admin_id is not None else Config.ADMIN_USER_ID
        self.expiry_hours = expiry_hours if expiry_hours is not None else Config.OFFER_EXPIRY_HOURS

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate_offer_data(self, offer_data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            buyer_id = int(offer_data["buyer_id"])
            seller_id = int(offer_data["seller_id"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError("buyer_id and seller_id must be user ids")
        if buyer_id == seller_id:
            raise ValidationError("Buyer and seller must be different users")

        try:
            charge_date, charge_time = parse_charge_schedule(offer_data.get("date"), offer_data.get("time"))
        except (TypeError, ValueError):
            raise ValidationError("Date must be DD/MM/YYYY and time HH:MM")

        return {
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "charge_date": charge_date,
            "charge_time": charge_time,
            "brand": _required_text(offer_data, "brand", "Brand"),
            "location": _required_text(offer_data, "location", "Location"),
            "additional_info": str(offer_data.get("additional_info") or "").strip(),
            "charger_connector": (str(offer_data["charger_connector"]).strip()
                                  if offer_data.get("charger_connector") else None),
        }

    async def create(self, offer_data: Dict[str, Any], announcement_id: Optional[str] = None) -> Offer:
        """
        Create a pending offer and ask the seller to accept it.

        ``offer_data`` carries buyer_id, seller_id, date (DD/MM/YYYY), time (HH:MM),
        brand, location and optionally additional_info / charger_connector. When
        ``announcement_id`` is given and no seller_id is supplied, the announcement
        owner is the seller.
        """
        data = dict(offer_data)

        with atomic_transaction(session_factory=self.session_factory) as session:
            announcement = None
            if announcement_id is not None:
                announcement = session.get(Announcement, announcement_id)
                if announcement is None or announcement.status != AnnouncementStatus.ACTIVE.value:
                    raise NotFoundError("Announcement", announcement_id)
                data.setdefault("seller_id", announcement.owner_user_id)

            clean = self._validate_offer_data(data)
            offer = Offer(
                announcement_id=announcement.id if announcement is not None else None,
                status=OfferStatus.PENDING.value,
                expires_at=compute_expiry(clean["charge_date"], clean["charge_time"], self.expiry_hours),
                **clean,
            )
            session.add(offer)
            session.flush()

        logger.info(
            f"🆕 OFFER_CREATED: id={offer.id} buyer={offer.buyer_id} seller={offer.seller_id} "
            f"announcement={offer.announcement_id} expires_at={offer.expires_at}"
        )

        if self.notifier is not None:
            message = new_offer_message(offer)
            await self.notifier.notify(message.user_id, message.text, message.keyboard)
        return offer

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _build_update(action: OfferAction, payload: Dict[str, Any]):
        """Column values written by ``action`` and which of them are write-once"""
        values: Dict[str, Any] = {}
        write_once: List[str] = []

        if action is OfferAction.REJECT:
            values["rejection_reason"] = _required_text(payload, "reason", "A rejection reason")
        elif action is OfferAction.BUYER_CANCEL:
            values["cancellation_reason"] = _required_text(payload, "reason", "A cancellation reason")
        elif action in (OfferAction.BUYER_REPORTS_ISSUE, OfferAction.SELLER_DISPUTES_KWH):
            _required_text(payload, "reason", "A description")
        elif action is OfferAction.BUYER_DECLARES_KWH:
            values["kwh_charged"] = MarketDecimal.quantize_storage(MarketDecimal.parse_positive(payload.get("kwh"), "kWh"))
            write_once.append("kwh_charged")
        elif action is OfferAction.BUYER_SUBMITS_PHOTO:
            values["charger_photo"] = _required_text(payload, "photo", "A photo of the charger display")
            if payload.get("connector"):
                values["charger_connector"] = str(payload["connector"]).strip()
        elif action is OfferAction.SELLER_SETS_UNIT_PRICE:
            values["unit_price"] = MarketDecimal.quantize_storage(
                MarketDecimal.parse_positive(payload.get("unit_price"), "unit price")
            )
            write_once.extend(["unit_price", "total_amount"])
        elif action is OfferAction.BUYER_MARKS_PAID:
            values["payment_method"] = _required_text(payload, "payment_method", "A payment method")
        elif action is OfferAction.SELLER_CONFIRMS_RECEIPT:
            values["completed_at"] = get_naive_utc_now()
        elif action is OfferAction.SELLER_DISPUTES_PAYMENT:
            values["dispute_reason"] = _required_text(payload, "reason", "A dispute reason")

        return values, write_once

    @staticmethod
    def _check_actor(offer: Offer, rule: TransitionRule, actor_id: Optional[int]) -> None:
        if actor_id is None:
            return
        party = offer.buyer_id if rule.role is OfferRole.BUYER else offer.seller_id
        if actor_id != party:
            raise UnauthorizedActorError(
                f"Only the {rule.role.value} can do this on offer {offer.id}", actor_id
            )

    def _complete(self, session: Session, offer: Offer) -> Optional[ConsumptionResult]:
        """Work that commits together with the move to ``completed``"""
        self.transaction_service.create_from_offer(session, offer)

        if self.admin_id is None or offer.buyer_id != self.admin_id:
            return None

        consumption = self.donation_ledger.consume_for_offer(offer, session=session)
        if consumption.covered_amount > 0:
            debit = consumption.covered_amount
            if not self.user_service.allow_negative_balance:
                balance = session.execute(
                    select(User.balance).where(User.user_id == offer.buyer_id)
                ).scalar_one_or_none() or Decimal("0")
                debit = min(debit, max(balance, Decimal("0")))
            if debit > 0:
                self.user_service.adjust_balance(offer.buyer_id, -debit, session=session)
        return consumption

    async def transition(
        self,
        offer_id: int,
        action,
        payload: Optional[Dict[str, Any]] = None,
        expected_status=None,
        actor_id: Optional[int] = None,
    ) -> Offer:
        """
        Apply ``action`` to the offer.

        Args:
            offer_id: Offer to move
            action: ``OfferAction`` or its string value
            payload: Action input (reason, kwh, photo, unit_price, payment_method)
            expected_status: Status the caller saw; must be the action's source status
            actor_id: User pressing the button; must be the party the action belongs to

        Raises:
            ValidationError: unknown action or bad payload, nothing written
            UnauthorizedActorError: actor is not the allowed party
            StateConflictError: offer is not in the source status (stale or lost race)
            NotFoundError: offer does not exist
        """
        action_enum = OfferStateValidator.resolve_action(action)
        if action_enum is None:
            raise ValidationError(f"Unknown offer action: {action!r}")
        rule = OfferStateValidator.get_rule(action_enum)
        payload = payload or {}

        if expected_status is not None:
            try:
                expected = OfferStatus(expected_status)
            except ValueError:
                raise ValidationError(f"Unknown offer status: {expected_status!r}")
            if expected is not rule.source:
                raise StateConflictError(
                    offer_id, rule.source.value, expected.value,
                    f"Action {action_enum.value} is not allowed from '{expected.value}'",
                )

        values, write_once = self._build_update(action_enum, payload)

        consumption = None
        with atomic_transaction(session_factory=self.session_factory) as session:
            if rule.notify_only:
                offer = assert_offer_status(session, offer_id, rule.source)
                self._check_actor(offer, rule, actor_id)
            else:
                offer = session.get(Offer, offer_id)
                if offer is None:
                    raise NotFoundError("Offer", offer_id)
                self._check_actor(offer, rule, actor_id)

                if action_enum is OfferAction.SELLER_SETS_UNIT_PRICE:
                    if offer.kwh_charged is None:
                        raise StateConflictError(offer_id, rule.source.value, offer.status, "No kWh declared yet")
                    values["total_amount"] = MarketDecimal.multiply(offer.kwh_charged, values["unit_price"])

                compare_and_set_status(session, offer_id, rule.source, rule.target, values, write_once)
                session.refresh(offer)

                if rule.target is OfferStatus.COMPLETED:
                    consumption = self._complete(session, offer)

        logger.info(
            f"🔄 OFFER_TRANSITION: id={offer_id} action={action_enum.value} "
            f"{rule.source.value} → {rule.target.value} actor={actor_id}"
        )
        if consumption is not None:
            logger.info(
                f"🎁 ADMIN_CHARGE_COVERED: offer={offer_id} kwh={consumption.covered_amount} "
                f"records={consumption.records_touched}"
            )

        await self._notify(action_enum, offer, payload)
        return offer

    def _payment_context(self, offer: Offer) -> Dict[str, Any]:
        """What the buyer sees next to the amount due: donation coverage or usable balance"""
        if self.admin_id is not None and offer.buyer_id == self.admin_id:
            return {"donation_coverage": self.payment_service.preview_donation_coverage(offer)}
        buyer = self.user_service.get_user(offer.buyer_id)
        return {"buyer_balance": buyer.balance if buyer is not None else Decimal("0")}

    async def _notify(self, action: OfferAction, offer: Offer, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        if action is OfferAction.SELLER_SETS_UNIT_PRICE:
            payload = {**payload, **self._payment_context(offer)}
        for message in build_transition_messages(action, offer, payload):
            await self.notifier.notify(message.user_id, message.text, message.keyboard)

    # ------------------------------------------------------------------
    # Action wrappers
    # ------------------------------------------------------------------

    async def accept(self, offer_id: int, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.ACCEPT, actor_id=actor_id)

    async def reject(self, offer_id: int, reason: str, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.REJECT, {"reason": reason}, actor_id=actor_id)

    async def buyer_ready(self, offer_id: int, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.BUYER_READY, actor_id=actor_id)

    async def buyer_cancel(self, offer_id: int, reason: str, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.BUYER_CANCEL, {"reason": reason}, actor_id=actor_id)

    async def seller_starts_charging(self, offer_id: int, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.SELLER_STARTS_CHARGING, actor_id=actor_id)

    async def buyer_confirms_ok(self, offer_id: int, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.BUYER_CONFIRMS_OK, actor_id=actor_id)

    async def buyer_reports_issue(self, offer_id: int, description: str, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(
            offer_id, OfferAction.BUYER_REPORTS_ISSUE, {"reason": description}, actor_id=actor_id
        )

    async def buyer_declares_kwh(self, offer_id: int, kwh, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.BUYER_DECLARES_KWH, {"kwh": kwh}, actor_id=actor_id)

    async def buyer_submits_photo(self, offer_id: int, photo: str, connector: Optional[str] = None,
                                  actor_id: Optional[int] = None) -> Offer:
        return await self.transition(
            offer_id, OfferAction.BUYER_SUBMITS_PHOTO, {"photo": photo, "connector": connector}, actor_id=actor_id
        )

    async def seller_confirms_kwh(self, offer_id: int, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.SELLER_CONFIRMS_KWH, actor_id=actor_id)

    async def seller_disputes_kwh(self, offer_id: int, reason: str, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.SELLER_DISPUTES_KWH, {"reason": reason}, actor_id=actor_id)

    async def seller_sets_unit_price(self, offer_id: int, unit_price, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(
            offer_id, OfferAction.SELLER_SETS_UNIT_PRICE, {"unit_price": unit_price}, actor_id=actor_id
        )

    async def buyer_marks_paid(self, offer_id: int, payment_method: str, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(
            offer_id, OfferAction.BUYER_MARKS_PAID, {"payment_method": payment_method}, actor_id=actor_id
        )

    async def seller_confirms_receipt(self, offer_id: int, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(offer_id, OfferAction.SELLER_CONFIRMS_RECEIPT, actor_id=actor_id)

    async def seller_disputes_payment(self, offer_id: int, reason: str, actor_id: Optional[int] = None) -> Offer:
        return await self.transition(
            offer_id, OfferAction.SELLER_DISPUTES_PAYMENT, {"reason": reason}, actor_id=actor_id
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_offer(self, offer_id: int) -> Offer:
        with atomic_transaction(session_factory=self.session_factory) as session:
            offer = session.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError("Offer", offer_id)
            return offer

    def get_active_offers(self, user_id: int) -> Dict[str, List[Offer]]:
        """The user's offers (as buyer or seller) grouped by stage. Rejected offers are left out."""
        with atomic_transaction(session_factory=self.session_factory) as session:
            offers = session.execute(
                select(Offer)
                .where(
                    or_(Offer.buyer_id == user_id, Offer.seller_id == user_id),
                    Offer.status != OfferStatus.REJECTED.value,
                )
                .order_by(Offer.created_at.desc(), Offer.id.desc())
            ).scalars().all()

        grouped: Dict[str, List[Offer]] = {group: [] for group in ACTIVE_OFFER_GROUPS}
        for offer in offers:
            for group, statuses in ACTIVE_OFFER_GROUPS.items():
                if offer.status_enum in statuses:
                    grouped[group].append(offer)
                    break
        return grouped

    def find_expired_offers(self, now=None) -> List[Offer]:
        """Pending or accepted offers past ``expires_at``. Reporting only, nothing is changed."""
        now = now or get_naive_utc_now()
        with atomic_transaction(session_factory=self.session_factory) as session:
            return list(session.execute(
                select(Offer)
                .where(
                    Offer.status.in_([status.value for status in EXPIRABLE_STATUSES]),
                    Offer.expires_at < now,
                )
                .order_by(Offer.expires_at.asc())
            ).scalars().all())
