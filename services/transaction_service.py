"""
Transaction Service
Immutable records of completed kWh exchanges, history and stats.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from models import Offer, Transaction, TransactionStatus
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import NotFoundError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class TransactionService:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    @staticmethod
    def create_from_offer(session: Session, offer: Offer) -> Transaction:
        """
        Create the transaction for a completed offer inside the caller's session.

        The unique constraint on ``offer_id`` guarantees a single record per offer.
        """
        if offer.kwh_charged is None or offer.total_amount is None:
            raise ValidationError(f"Offer {offer.id} has no kWh or total amount")

        UserService.ensure_user(session, offer.buyer_id)
        UserService.ensure_user(session, offer.seller_id)

        transaction = Transaction(
            offer_id=offer.id,
            buyer_id=offer.buyer_id,
            seller_id=offer.seller_id,
            kwh_amount=offer.kwh_charged,
            total_amount=offer.total_amount,
            price=MarketDecimal.divide(offer.total_amount, offer.kwh_charged),
            payment_method=offer.payment_method or "unspecified",
            status=TransactionStatus.COMPLETED.value,
        )
        session.add(transaction)
        session.flush()

        logger.info(
            f"🧾 TRANSACTION_CREATED: id={transaction.id} offer={offer.id} "
            f"kwh={transaction.kwh_amount} total={transaction.total_amount}"
        )
        return transaction

    def get_user_transactions(
        self,
        user_id: int,
        status: Optional[str] = None,
        partner_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        """Transactions where the user was buyer or seller, newest first"""
        stmt = select(Transaction).where(
            or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id)
        )
        if status is not None:
            stmt = stmt.where(Transaction.status == TransactionStatus(status).value)
        if partner_id is not None:
            stmt = stmt.where(or_(
                and_(Transaction.buyer_id == user_id, Transaction.seller_id == partner_id),
                and_(Transaction.seller_id == user_id, Transaction.buyer_id == partner_id),
            ))
        stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        if limit:
            stmt = stmt.limit(limit)

        with atomic_transaction(session_factory=self.session_factory) as session:
            return list(session.execute(stmt).scalars().all())

    def dispute_transaction(self, transaction_id: int, reason: str) -> Transaction:
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")

        with atomic_transaction(session_factory=self.session_factory) as session:
            result = session.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.status == TransactionStatus.COMPLETED.value,
                )
                .values(status=TransactionStatus.DISPUTED.value, dispute_reason=reason.strip())
                .execution_options(synchronize_session=False)
            )
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise NotFoundError("Transaction", transaction_id)
            if result.rowcount == 0:
                raise StateConflictError(
                    transaction.offer_id, TransactionStatus.COMPLETED.value, transaction.status,
                    f"Transaction {transaction_id} is already {transaction.status}",
                )
            session.refresh(transaction)

        logger.warning(f"🔴 TRANSACTION_DISPUTED: id={transaction_id} reason={reason.strip()}")
        return transaction

    def calculate_user_stats(self, user_id: int) -> Dict[str, Any]:
        transactions = self.get_user_transactions(user_id)

        stats: Dict[str, Any] = {
            "total_transactions": len(transactions),
            "disputed": 0,
            "as_buyer": {"count": 0, "kwh": ZERO, "amount": ZERO},
            "as_seller": {"count": 0, "kwh": ZERO, "amount": ZERO},
        }
        for tx in transactions:
            if tx.status == TransactionStatus.DISPUTED.value:
                stats["disputed"] += 1
            bucket = stats["as_buyer"] if tx.buyer_id == user_id else stats["as_seller"]
            bucket["count"] += 1
            bucket["kwh"] += tx.kwh_amount
            bucket["amount"] += tx.total_amount
        return stats
