"""
Offer Lifecycle Engine Tests
Happy path, rejection and cancellation, stale or concurrent taps, actor checks
and best-effort notifications.
"""

import asyncio
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from conftest import ADMIN_ID, BUYER_ID, SELLER_ID, FailingNotifier
from models import Offer, OfferStatus, Transaction
from services.offer_lifecycle_service import OfferLifecycleEngine
from utils.constants import CallbackData
from utils.exception_handler import (
    NotFoundError,
    StateConflictError,
    UnauthorizedActorError,
    ValidationError,
)
from utils.offer_state_machine import OfferAction


def count_transactions(session_factory, offer_id):
    with session_factory() as session:
        return session.execute(
            select(func.count(Transaction.id)).where(Transaction.offer_id == offer_id)
        ).scalar_one()


class TestOfferCreation:
    """Test creating charging requests"""

    @pytest.mark.asyncio
    async def test_create_pending_offer(self, offer_factory, notifier):
        offer = await offer_factory()

        assert offer.status == OfferStatus.PENDING.value
        assert offer.charge_date == datetime(2030, 5, 24)
        assert offer.charge_time == "18:30"
        assert offer.expires_at == datetime(2030, 5, 25, 18, 30)
        assert offer.kwh_charged is None

        seller_messages = notifier.sent_to(SELLER_ID)
        assert len(seller_messages) == 1
        assert CallbackData.build(CallbackData.ACCEPT_OFFER, offer.id) in notifier.callback_data_for(SELLER_ID)

    @pytest.mark.asyncio
    async def test_same_buyer_and_seller_rejected(self, offer_factory):
        with pytest.raises(ValidationError):
            await offer_factory(buyer_id=SELLER_ID, seller_id=SELLER_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"date": "2030-05-24"},
        {"time": "25:00"},
        {"brand": "  "},
        {"location": None},
    ])
    async def test_bad_input_rejected(self, offer_factory, overrides):
        with pytest.raises(ValidationError):
            await offer_factory(**overrides)

    @pytest.mark.asyncio
    async def test_create_from_announcement_uses_owner_as_seller(self, offer_engine, directory):
        announcement = directory.create_announcement(SELLER_ID, "sell", {
            "price": "0.30 €/kWh", "connector_type": "AC", "brand": "Enel X", "location": "Milano",
        })

        offer = await offer_engine.create({
            "buyer_id": BUYER_ID, "date": "24/05/2030", "time": "9:05",
            "brand": "Enel X", "location": "Milano",
        }, announcement_id=announcement.id)

        assert offer.seller_id == SELLER_ID
        assert offer.announcement_id == announcement.id
        assert offer.charge_time == "09:05"

    @pytest.mark.asyncio
    async def test_create_from_archived_announcement_fails(self, offer_engine, directory):
        announcement = directory.create_announcement(SELLER_ID, "sell", {
            "price": "0.30", "connector_type": "DC", "brand": "Ionity", "location": "Torino",
        })
        directory.archive(announcement.id)

        with pytest.raises(NotFoundError):
            await offer_engine.create({
                "buyer_id": BUYER_ID, "date": "24/05/2030", "time": "10:00",
                "brand": "Ionity", "location": "Torino",
            }, announcement_id=announcement.id)


class TestHappyPath:
    """Test a charge from request to completion"""

    @pytest.mark.asyncio
    async def test_full_lifecycle_creates_one_transaction(self, offer_factory, advance_offer, session_factory, notifier):
        offer = await offer_factory()

        offer = await advance_offer(offer.id, OfferStatus.COMPLETED, kwh="20", unit_price="0.25")

        assert offer.status == OfferStatus.COMPLETED.value
        assert offer.kwh_charged == Decimal("20")
        assert offer.unit_price == Decimal("0.25")
        assert offer.total_amount == Decimal("5")
        assert offer.payment_method == "PayPal"
        assert offer.charger_photo == "photo-file-id"
        assert offer.completed_at is not None
        assert count_transactions(session_factory, offer.id) == 1

        # Both parties are asked for feedback
        assert CallbackData.build(CallbackData.FEEDBACK_POSITIVE, offer.id) in notifier.callback_data_for(BUYER_ID)
        assert CallbackData.build(CallbackData.FEEDBACK_POSITIVE, offer.id) in notifier.callback_data_for(SELLER_ID)

    @pytest.mark.asyncio
    async def test_transaction_record_matches_offer(self, offer_factory, advance_offer, transaction_service):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.COMPLETED, kwh="12,5", unit_price="0.40")

        transactions = transaction_service.get_user_transactions(BUYER_ID)

        assert len(transactions) == 1
        tx = transactions[0]
        assert tx.offer_id == offer.id
        assert tx.seller_id == SELLER_ID
        assert tx.kwh_amount == Decimal("12.5")
        assert tx.total_amount == Decimal("5")
        assert tx.price == Decimal("0.4")
        assert tx.payment_method == "PayPal"

    @pytest.mark.asyncio
    async def test_total_amount_is_kwh_times_unit_price(self, offer_factory, advance_offer):
        offer = await offer_factory()
        offer = await advance_offer(offer.id, OfferStatus.PAYMENT_PENDING, kwh="22.5", unit_price="0.35")

        assert offer.total_amount == Decimal("7.875")

    @pytest.mark.asyncio
    async def test_transition_accepts_action_string_and_expected_status(self, offer_factory, offer_engine):
        offer = await offer_factory()

        offer = await offer_engine.transition(offer.id, "accept", expected_status="pending", actor_id=SELLER_ID)

        assert offer.status == OfferStatus.ACCEPTED.value


class TestTerminalBranches:
    """Test rejection, cancellation and disputes"""

    @pytest.mark.asyncio
    async def test_reject_pending_offer(self, offer_factory, offer_engine, notifier):
        offer = await offer_factory()

        offer = await offer_engine.reject(offer.id, "Charger booked", actor_id=SELLER_ID)

        assert offer.status == OfferStatus.REJECTED.value
        assert offer.rejection_reason == "Charger booked"
        assert "Charger booked" in notifier.sent_to(BUYER_ID)[-1]["text"]

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, offer_factory, offer_engine):
        offer = await offer_factory()

        with pytest.raises(ValidationError):
            await offer_engine.reject(offer.id, "   ")

        assert offer_engine.get_offer(offer.id).status == OfferStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_buyer_cancels_accepted_offer(self, offer_factory, offer_engine, advance_offer):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.ACCEPTED)

        offer = await offer_engine.buyer_cancel(offer.id, "Car not ready", actor_id=BUYER_ID)

        assert offer.status == OfferStatus.CANCELLED.value
        assert offer.cancellation_reason == "Car not ready"

    @pytest.mark.asyncio
    async def test_payment_dispute_is_terminal(self, offer_factory, offer_engine, advance_offer, session_factory):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.PAYMENT_SENT)

        offer = await offer_engine.seller_disputes_payment(offer.id, "Nothing arrived", actor_id=SELLER_ID)

        assert offer.status == OfferStatus.DISPUTED.value
        assert offer.dispute_reason == "Nothing arrived"
        assert count_transactions(session_factory, offer.id) == 0

        with pytest.raises(StateConflictError):
            await offer_engine.seller_confirms_receipt(offer.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action,payload", [
        (OfferAction.ACCEPT, None),
        (OfferAction.REJECT, {"reason": "late"}),
        (OfferAction.BUYER_READY, None),
        (OfferAction.SELLER_CONFIRMS_RECEIPT, None),
    ])
    async def test_no_action_leaves_a_terminal_state(self, offer_factory, offer_engine, action, payload):
        offer = await offer_factory()
        await offer_engine.reject(offer.id, "Not available")

        with pytest.raises(StateConflictError):
            await offer_engine.transition(offer.id, action, payload)

        assert offer_engine.get_offer(offer.id).status == OfferStatus.REJECTED.value


class TestStaleAndConcurrentActions:
    """Test that a stale or losing tap never changes state"""

    @pytest.mark.asyncio
    async def test_second_accept_conflicts(self, offer_factory, offer_engine):
        offer = await offer_factory()
        await offer_engine.accept(offer.id)

        with pytest.raises(StateConflictError) as exc_info:
            await offer_engine.accept(offer.id)

        assert exc_info.value.actual == OfferStatus.ACCEPTED.value

    @pytest.mark.asyncio
    async def test_accept_and_reject_race_has_one_winner(self, offer_factory, offer_engine):
        offer = await offer_factory()

        results = await asyncio.gather(
            offer_engine.accept(offer.id),
            offer_engine.reject(offer.id, "Changed my mind"),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Offer)]
        losers = [r for r in results if isinstance(r, StateConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert offer_engine.get_offer(offer.id).status == winners[0].status

    @pytest.mark.asyncio
    async def test_concurrent_receipt_confirmations_create_one_transaction(
        self, offer_factory, offer_engine, advance_offer, session_factory
    ):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.PAYMENT_SENT)

        results = await asyncio.gather(
            *(offer_engine.seller_confirms_receipt(offer.id) for _ in range(3)),
            return_exceptions=True,
        )

        assert sum(isinstance(r, Offer) for r in results) == 1
        assert sum(isinstance(r, StateConflictError) for r in results) == 2
        assert count_transactions(session_factory, offer.id) == 1

    @staticmethod
    def run_in_threads(calls):
        """Run each coroutine factory on its own thread and event loop, released together"""
        barrier = threading.Barrier(len(calls))
        results = []
        lock = threading.Lock()

        def worker(call):
            barrier.wait()
            try:
                result = asyncio.run(call())
            except Exception as e:
                result = e
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return results

    @pytest.mark.asyncio
    async def test_accept_and_reject_from_two_threads(self, offer_factory, offer_engine):
        offer = await offer_factory()

        results = self.run_in_threads([
            lambda: offer_engine.transition(offer.id, OfferAction.ACCEPT, expected_status=OfferStatus.PENDING),
            lambda: offer_engine.transition(
                offer.id, OfferAction.REJECT, {"reason": "Changed my mind"}, expected_status=OfferStatus.PENDING
            ),
        ])

        assert len(results) == 2
        winners = [r for r in results if isinstance(r, Offer)]
        losers = [r for r in results if isinstance(r, StateConflictError)]
        assert len(winners) == 1, results
        assert len(losers) == 1, results
        assert offer_engine.get_offer(offer.id).status == winners[0].status

    @pytest.mark.asyncio
    async def test_threaded_receipt_confirmations_create_one_transaction(
        self, offer_factory, offer_engine, advance_offer, session_factory
    ):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.PAYMENT_SENT)

        results = self.run_in_threads([
            lambda: offer_engine.seller_confirms_receipt(offer.id, actor_id=SELLER_ID) for _ in range(3)
        ])

        assert sum(isinstance(r, Offer) for r in results) == 1, results
        assert sum(isinstance(r, StateConflictError) for r in results) == 2, results
        assert count_transactions(session_factory, offer.id) == 1

    @pytest.mark.asyncio
    async def test_expected_status_mismatch_writes_nothing(self, offer_factory, offer_engine):
        offer = await offer_factory()

        with pytest.raises(StateConflictError):
            await offer_engine.transition(offer.id, OfferAction.ACCEPT, expected_status=OfferStatus.ACCEPTED)

        assert offer_engine.get_offer(offer.id).status == OfferStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_declared_kwh_is_write_once(self, offer_factory, offer_engine, advance_offer):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.CHARGING_COMPLETED, kwh="15")

        with pytest.raises(StateConflictError):
            await offer_engine.buyer_declares_kwh(offer.id, "30")

        assert offer_engine.get_offer(offer.id).kwh_charged == Decimal("15")

    @pytest.mark.asyncio
    async def test_notify_only_action_checks_status(self, offer_factory, offer_engine, notifier):
        offer = await offer_factory()

        with pytest.raises(StateConflictError):
            await offer_engine.buyer_reports_issue(offer.id, "No power")

        assert notifier.sent_to(SELLER_ID)[-1]["text"].startswith("🆕")

    @pytest.mark.asyncio
    async def test_issue_report_keeps_charging_started(self, offer_factory, offer_engine, advance_offer, notifier):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.CHARGING_STARTED)

        offer = await offer_engine.buyer_reports_issue(offer.id, "Cable locked", actor_id=BUYER_ID)

        assert offer.status == OfferStatus.CHARGING_STARTED.value
        assert "Cable locked" in notifier.sent_to(SELLER_ID)[-1]["text"]

    @pytest.mark.asyncio
    async def test_unknown_offer(self, offer_engine):
        with pytest.raises(NotFoundError):
            await offer_engine.accept(9999)

    @pytest.mark.asyncio
    async def test_unknown_action(self, offer_factory, offer_engine):
        offer = await offer_factory()

        with pytest.raises(ValidationError):
            await offer_engine.transition(offer.id, "teleport")


class TestActorChecks:
    """Test that only the allowed party can act"""

    @pytest.mark.asyncio
    async def test_buyer_cannot_accept(self, offer_factory, offer_engine):
        offer = await offer_factory()

        with pytest.raises(UnauthorizedActorError):
            await offer_engine.accept(offer.id, actor_id=BUYER_ID)

        assert offer_engine.get_offer(offer.id).status == OfferStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_seller_cannot_declare_kwh(self, offer_factory, offer_engine, advance_offer):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.CHARGING)

        with pytest.raises(UnauthorizedActorError):
            await offer_engine.buyer_declares_kwh(offer.id, "10", actor_id=SELLER_ID)

    @pytest.mark.asyncio
    async def test_stranger_cannot_confirm_payment(self, offer_factory, offer_engine, advance_offer):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.PAYMENT_SENT)

        with pytest.raises(UnauthorizedActorError):
            await offer_engine.seller_confirms_receipt(offer.id, actor_id=999)


class TestPayloadValidation:
    """Test action inputs"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwh", ["0", "-3", "abc", "NaN"])
    async def test_invalid_kwh(self, offer_factory, offer_engine, advance_offer, kwh):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.CHARGING)

        with pytest.raises(ValidationError):
            await offer_engine.buyer_declares_kwh(offer.id, kwh)

        assert offer_engine.get_offer(offer.id).status == OfferStatus.CHARGING.value

    @pytest.mark.asyncio
    async def test_invalid_unit_price(self, offer_factory, offer_engine, advance_offer):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.KWH_CONFIRMED)

        with pytest.raises(ValidationError):
            await offer_engine.seller_sets_unit_price(offer.id, "free")

    @pytest.mark.asyncio
    async def test_photo_required(self, offer_factory, offer_engine, advance_offer):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.CHARGING_COMPLETED)

        with pytest.raises(ValidationError):
            await offer_engine.buyer_submits_photo(offer.id, "")


class TestNotifications:
    """Test that delivery failures never undo a committed transition"""

    @pytest.mark.asyncio
    async def test_failed_delivery_is_swallowed(self, session_factory, user_service, transaction_service, ledger):
        failing = FailingNotifier()
        engine = OfferLifecycleEngine(
            session_factory,
            notifier=failing,
            donation_ledger=ledger,
            transaction_service=transaction_service,
            user_service=user_service,
            admin_id=ADMIN_ID,
        )
        offer = await engine.create({
            "buyer_id": BUYER_ID, "seller_id": SELLER_ID, "date": "24/05/2030", "time": "18:30",
            "brand": "Enel X", "location": "Milano",
        })

        offer = await engine.accept(offer.id)

        assert offer.status == OfferStatus.ACCEPTED.value
        assert failing.attempts == 2
        assert engine.get_offer(offer.id).status == OfferStatus.ACCEPTED.value

    @pytest.mark.asyncio
    async def test_engine_without_notifier(self, session_factory):
        engine = OfferLifecycleEngine(session_factory, admin_id=ADMIN_ID)
        offer = await engine.create({
            "buyer_id": BUYER_ID, "seller_id": SELLER_ID, "date": "24/05/2030", "time": "18:30",
            "brand": "Enel X", "location": "Milano",
        })

        offer = await engine.accept(offer.id)

        assert offer.status == OfferStatus.ACCEPTED.value


class TestAmountDue:
    """Test what the buyer is told once the seller sets the price"""

    @pytest.mark.asyncio
    async def test_buyer_with_balance_gets_balance_button(self, offer_factory, advance_offer, user_service, notifier):
        user_service.register_user(SimpleNamespace(id=BUYER_ID, username=None, first_name="EV", last_name=None))
        user_service.adjust_balance(BUYER_ID, "2")
        offer = await offer_factory()

        await advance_offer(offer.id, OfferStatus.PAYMENT_PENDING, kwh="10", unit_price="0.50")

        last = notifier.sent_to(BUYER_ID)[-1]
        assert "Your balance: 2.00" in last["text"]
        assert CallbackData.build(CallbackData.PAY_WITH_BALANCE, offer.id) in notifier.callback_data_for(BUYER_ID)

    @pytest.mark.asyncio
    async def test_buyer_without_balance_gets_plain_keyboard(self, offer_factory, advance_offer, notifier):
        offer = await offer_factory()

        await advance_offer(offer.id, OfferStatus.PAYMENT_PENDING)

        assert CallbackData.build(CallbackData.PAY_WITH_BALANCE, offer.id) not in notifier.callback_data_for(BUYER_ID)
        assert CallbackData.build(CallbackData.PAYMENT_SENT, offer.id) in notifier.callback_data_for(BUYER_ID)

    @pytest.mark.asyncio
    async def test_admin_buyer_sees_donation_coverage(self, offer_engine, advance_offer, ledger, notifier):
        await ledger.donate(SELLER_ID, ADMIN_ID, "4")
        offer = await offer_engine.create({
            "buyer_id": ADMIN_ID, "seller_id": SELLER_ID, "date": "24/05/2030", "time": "18:30",
            "brand": "Enel X", "location": "Milano",
        })

        await advance_offer(offer.id, OfferStatus.PAYMENT_PENDING, kwh="10", unit_price="0.50")

        text = notifier.sent_to(ADMIN_ID)[-1]["text"]
        assert "Donations from this seller cover 4.00 kWh (2.00)" in text
        assert "Still to pay: 3.00" in text
        assert CallbackData.build(CallbackData.PAY_WITH_BALANCE, offer.id) not in notifier.callback_data_for(ADMIN_ID)
        # The preview leaves the donations untouched
        assert ledger.get_available_from_donor(ADMIN_ID, SELLER_ID) == Decimal("4")

    @pytest.mark.asyncio
    async def test_seller_sees_part_paid_with_balance(
        self, offer_factory, advance_offer, offer_engine, payment_service, user_service, notifier
    ):
        user_service.register_user(SimpleNamespace(id=BUYER_ID, username=None, first_name="EV", last_name=None))
        user_service.adjust_balance(BUYER_ID, "2")
        offer = await offer_factory()
        offer = await advance_offer(offer.id, OfferStatus.PAYMENT_PENDING, kwh="10", unit_price="0.50")
        payment_service.apply_balance(offer, BUYER_ID)

        await offer_engine.buyer_marks_paid(offer.id, "PayPal", actor_id=BUYER_ID)

        text = notifier.sent_to(SELLER_ID)[-1]["text"]
        assert "reports payment of 3.00 via PayPal" in text
        assert "2.00 of the total was covered by balance" in text


class TestQueries:
    """Test offer listings and expiry reporting"""

    @pytest.mark.asyncio
    async def test_active_offers_grouped_without_rejected(self, offer_factory, offer_engine, advance_offer):
        pending = await offer_factory()
        accepted = await offer_factory()
        rejected = await offer_factory()
        await advance_offer(accepted.id, OfferStatus.ACCEPTED)
        await offer_engine.reject(rejected.id, "Busy")

        grouped = offer_engine.get_active_offers(BUYER_ID)

        assert [o.id for o in grouped["pending"]] == [pending.id]
        assert [o.id for o in grouped["accepted"]] == [accepted.id]
        all_ids = {o.id for offers in grouped.values() for o in offers}
        assert rejected.id not in all_ids
        assert offer_engine.get_active_offers(SELLER_ID)["pending"][0].id == pending.id

    @pytest.mark.asyncio
    async def test_find_expired_offers(self, offer_factory, offer_engine, advance_offer):
        pending = await offer_factory(date="01/01/2030", time="10:00")
        accepted = await offer_factory(date="01/01/2030", time="11:00")
        charging = await offer_factory(date="01/01/2030", time="12:00")
        future = await offer_factory(date="01/06/2030", time="10:00")
        await advance_offer(accepted.id, OfferStatus.ACCEPTED)
        await advance_offer(charging.id, OfferStatus.CHARGING)

        expired = offer_engine.find_expired_offers(now=datetime(2030, 1, 3))

        assert [o.id for o in expired] == [pending.id, accepted.id]
        assert future.id not in [o.id for o in expired]
        # Reporting only
        assert offer_engine.get_offer(pending.id).status == OfferStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_offer_is_expired_helper(self, offer_factory):
        offer = await offer_factory(date="01/01/2030", time="10:00")

        assert not offer.is_expired(datetime(2030, 1, 2, 9, 59))
        assert offer.is_expired(datetime(2030, 1, 2, 10, 0) + timedelta(seconds=1))


VALID_PAYLOADS = {
    OfferAction.REJECT: {"reason": "busy"},
    OfferAction.BUYER_CANCEL: {"reason": "busy"},
    OfferAction.BUYER_REPORTS_ISSUE: {"reason": "no power"},
    OfferAction.BUYER_DECLARES_KWH: {"kwh": "10"},
    OfferAction.BUYER_SUBMITS_PHOTO: {"photo": "photo-file-id"},
    OfferAction.SELLER_DISPUTES_KWH: {"reason": "too high"},
    OfferAction.SELLER_SETS_UNIT_PRICE: {"unit_price": "0.30"},
    OfferAction.BUYER_MARKS_PAID: {"payment_method": "PayPal"},
    OfferAction.SELLER_DISPUTES_PAYMENT: {"reason": "nothing arrived"},
}


class TestMarketplaceScenarios:
    """End-to-end charging scenarios"""

    @pytest.mark.asyncio
    async def test_complete_charge_between_two_users(self, offer_engine, transaction_service):
        offer = await offer_engine.create({
            "buyer_id": 7, "seller_id": 9, "date": "24/05/2030", "time": "18:30",
            "brand": "Be Charge", "location": "Bologna",
        })
        await offer_engine.accept(offer.id)
        await offer_engine.buyer_ready(offer.id)
        await offer_engine.seller_starts_charging(offer.id)
        await offer_engine.buyer_confirms_ok(offer.id)
        await offer_engine.buyer_declares_kwh(offer.id, "22.5")
        await offer_engine.buyer_submits_photo(offer.id, "photo-file-id")
        await offer_engine.seller_confirms_kwh(offer.id)
        offer = await offer_engine.seller_sets_unit_price(offer.id, "0.30")
        assert offer.total_amount == Decimal("6.75")
        await offer_engine.buyer_marks_paid(offer.id, "PayPal")
        offer = await offer_engine.seller_confirms_receipt(offer.id)

        assert offer.status == OfferStatus.COMPLETED.value
        transactions = transaction_service.get_user_transactions(7)
        assert len(transactions) == 1
        assert transactions[0].kwh_amount == Decimal("22.5")
        assert transactions[0].total_amount == Decimal("6.75")
        assert transactions[0].price == Decimal("0.30")

    @pytest.mark.asyncio
    async def test_rejected_offer_cannot_be_accepted(self, offer_factory, offer_engine):
        offer = await offer_factory()
        offer = await offer_engine.reject(offer.id, "colonnina occupata")
        assert offer.status == OfferStatus.REJECTED.value

        with pytest.raises(StateConflictError):
            await offer_engine.accept(offer.id)

    @pytest.mark.asyncio
    async def test_duplicate_accept_taps(self, offer_factory, offer_engine):
        offer = await offer_factory()

        results = await asyncio.gather(
            offer_engine.transition(offer.id, OfferAction.ACCEPT, expected_status=OfferStatus.PENDING),
            offer_engine.transition(offer.id, OfferAction.ACCEPT, expected_status=OfferStatus.PENDING),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, Offer)]
        assert len(accepted) == 1
        assert accepted[0].status == OfferStatus.ACCEPTED.value
        assert sum(isinstance(r, StateConflictError) for r in results) == 1
        assert offer_engine.get_offer(offer.id).status == OfferStatus.ACCEPTED.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", [a for a in OfferAction if a not in (OfferAction.ACCEPT, OfferAction.REJECT)])
    async def test_actions_outside_their_source_status_conflict(self, offer_factory, offer_engine, action):
        offer = await offer_factory()

        with pytest.raises(StateConflictError):
            await offer_engine.transition(offer.id, action, VALID_PAYLOADS.get(action))

        assert offer_engine.get_offer(offer.id).status == OfferStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_total_amount_cannot_be_repriced(self, offer_factory, offer_engine, advance_offer):
        offer = await offer_factory()
        await advance_offer(offer.id, OfferStatus.PAYMENT_PENDING, kwh="10", unit_price="0.30")

        with pytest.raises(StateConflictError):
            await offer_engine.seller_sets_unit_price(offer.id, "0.50")

        offer = await advance_offer(offer.id, OfferStatus.COMPLETED)
        assert offer.total_amount == Decimal("3")
        assert offer.unit_price == Decimal("0.30")
