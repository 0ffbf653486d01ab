"""
Transaction Service Tests
History filters, disputes and per-user statistics
"""

from decimal import Decimal

import pytest

from conftest import BUYER_ID, SELLER_ID
from models import OfferStatus, TransactionStatus
from services.transaction_service import TransactionService
from utils.exception_handler import NotFoundError, StateConflictError, ValidationError

OTHER_SELLER_ID = 201


async def complete_charge(offer_factory, advance_offer, seller_id=SELLER_ID, kwh="10", unit_price="0.30"):
    offer = await offer_factory(seller_id=seller_id)
    return await advance_offer(offer.id, OfferStatus.COMPLETED, kwh=kwh, unit_price=unit_price)


class TestCreateFromOffer:
    """Test the record written at completion"""

    @pytest.mark.asyncio
    async def test_offer_without_amount_is_refused(self, offer_factory, session_factory):
        offer = await offer_factory()

        with session_factory() as session:
            with pytest.raises(ValidationError):
                TransactionService.create_from_offer(session, offer)


class TestHistory:
    """Test transaction listings"""

    @pytest.mark.asyncio
    async def test_filters(self, offer_factory, advance_offer, transaction_service):
        await complete_charge(offer_factory, advance_offer)
        await complete_charge(offer_factory, advance_offer, seller_id=OTHER_SELLER_ID)

        assert len(transaction_service.get_user_transactions(BUYER_ID)) == 2
        assert len(transaction_service.get_user_transactions(SELLER_ID)) == 1
        assert len(transaction_service.get_user_transactions(BUYER_ID, partner_id=OTHER_SELLER_ID)) == 1
        assert len(transaction_service.get_user_transactions(BUYER_ID, limit=1)) == 1
        assert transaction_service.get_user_transactions(BUYER_ID, status="disputed") == []

    @pytest.mark.asyncio
    async def test_newest_first(self, offer_factory, advance_offer, transaction_service):
        first = await complete_charge(offer_factory, advance_offer)
        second = await complete_charge(offer_factory, advance_offer)

        offer_ids = [tx.offer_id for tx in transaction_service.get_user_transactions(BUYER_ID)]

        assert offer_ids == [second.id, first.id]


class TestDisputes:
    """Test disputing a completed transaction"""

    @pytest.mark.asyncio
    async def test_dispute_once(self, offer_factory, advance_offer, transaction_service):
        await complete_charge(offer_factory, advance_offer)
        tx = transaction_service.get_user_transactions(BUYER_ID)[0]

        disputed = transaction_service.dispute_transaction(tx.id, "Charger display was wrong")

        assert disputed.status == TransactionStatus.DISPUTED.value
        assert disputed.dispute_reason == "Charger display was wrong"
        with pytest.raises(StateConflictError):
            transaction_service.dispute_transaction(tx.id, "Again")

    def test_dispute_unknown(self, transaction_service):
        with pytest.raises(NotFoundError):
            transaction_service.dispute_transaction(12345, "Missing")

    def test_dispute_requires_reason(self, transaction_service):
        with pytest.raises(ValidationError):
            transaction_service.dispute_transaction(1, " ")


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_split_by_role(self, offer_factory, advance_offer, transaction_service):
        await complete_charge(offer_factory, advance_offer, kwh="10", unit_price="0.30")
        await complete_charge(offer_factory, advance_offer, kwh="20", unit_price="0.25")
        tx = transaction_service.get_user_transactions(BUYER_ID)[0]
        transaction_service.dispute_transaction(tx.id, "Short charge")

        buyer_stats = transaction_service.calculate_user_stats(BUYER_ID)
        seller_stats = transaction_service.calculate_user_stats(SELLER_ID)

        assert buyer_stats["total_transactions"] == 2
        assert buyer_stats["disputed"] == 1
        assert buyer_stats["as_buyer"] == {"count": 2, "kwh": Decimal("30"), "amount": Decimal("8")}
        assert buyer_stats["as_seller"]["count"] == 0
        assert seller_stats["as_seller"]["kwh"] == Decimal("30")

    def test_stats_for_new_user(self, transaction_service):
        stats = transaction_service.calculate_user_stats(999)

        assert stats["total_transactions"] == 0
        assert stats["as_buyer"]["amount"] == Decimal("0")
