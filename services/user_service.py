"""
User Service
Registration, profile lookups and atomic kWh balance adjustments.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from config import Config
from models import Announcement, AnnouncementStatus, Transaction, User
from utils.atomic_transactions import atomic_transaction
from utils.constants import RECENT_TRANSACTIONS_LIMIT
from utils.decimal_precision import MarketDecimal
from utils.exception_handler import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class UserService:
    """Marketplace participants and their balances"""

    def __init__(self, session_factory=None, allow_negative_balance: Optional[bool] = None):
        self.session_factory = session_factory
        self.allow_negative_balance = (
            Config.ALLOW_NEGATIVE_BALANCE if allow_negative_balance is None else allow_negative_balance
        )

    @staticmethod
    def ensure_user(session: Session, user_id: int) -> User:
        """Return the user row, creating a bare one if the id is unknown"""
        user = session.get(User, user_id)
        if user is None:
            user = User(user_id=user_id, balance=Decimal("0"), positive_ratings=0, total_ratings=0)
            session.add(user)
            session.flush()
            logger.info(f"👤 USER_CREATED: {user_id} (implicit)")
        return user

    def register_user(self, telegram_user) -> User:
        """
        Create or refresh a user from a Telegram ``User`` (or anything with
        ``id``, ``username``, ``first_name``, ``last_name``).
        """
        with atomic_transaction(session_factory=self.session_factory) as session:
            user = session.get(User, telegram_user.id)
            if user is None:
                user = User(
                    user_id=telegram_user.id,
                    username=getattr(telegram_user, "username", None),
                    first_name=getattr(telegram_user, "first_name", None),
                    last_name=getattr(telegram_user, "last_name", None),
                    balance=Decimal("0"),
                    positive_ratings=0,
                    total_ratings=0,
                )
                session.add(user)
                logger.info(f"👤 USER_REGISTERED: {telegram_user.id}")
            else:
                user.username = getattr(telegram_user, "username", None)
                user.first_name = getattr(telegram_user, "first_name", None)
                user.last_name = getattr(telegram_user, "last_name", None)
            session.flush()
            return user

    @staticmethod
    def get_user_in(session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return session.get(User, user_id)

    def find_user(self, identifier: str) -> Optional[User]:
        """Look a user up by numeric id or by @username (case-insensitive)"""
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if identifier.lstrip("-").isdigit():
            return self.get_user(int(identifier))
        username = identifier.lstrip("@").lower()
        with atomic_transaction(session_factory=self.session_factory) as session:
            return session.execute(
                select(User).where(func.lower(User.username) == username)
            ).scalars().first()

    def get_user_profile(self, user_id: int) -> Dict[str, Any]:
        """User row, last transactions and active announcements"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User", user_id)

            recent = session.execute(
                select(Transaction)
                .where(or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id))
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(RECENT_TRANSACTIONS_LIMIT)
            ).scalars().all()

            announcements = session.execute(
                select(Announcement).where(
                    Announcement.owner_user_id == user_id,
                    Announcement.status == AnnouncementStatus.ACTIVE.value,
                )
            ).scalars().all()

            return {
                "user": user,
                "recent_transactions": list(recent),
                "active_announcements": list(announcements),
            }

    def adjust_balance(self, user_id: int, delta, session: Optional[Session] = None) -> Decimal:
        """
        Add ``delta`` kWh to the user's balance with a single SQL increment.

        Negative deltas respect the balance floor policy: unless negative balances
        are allowed the debit only applies while ``balance >= amount``.

        Returns:
            The balance after the update
        """
        amount = MarketDecimal.to_decimal(delta, "balance change")
        with atomic_transaction(session, self.session_factory) as s:
            conditions = [User.user_id == user_id]
            if amount < 0 and not self.allow_negative_balance:
                conditions.append(User.balance >= -amount)

            result = s.execute(
                update(User)
                .where(*conditions)
                .values(balance=User.balance + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if s.get(User, user_id) is None:
                    raise NotFoundError("User", user_id)
                raise ValidationError("Insufficient balance")

            new_balance = s.execute(select(User.balance).where(User.user_id == user_id)).scalar_one()
            logger.info(f"💰 BALANCE_ADJUSTED: user={user_id} delta={amount} balance={new_balance}")
            return new_balance

    @staticmethod
    def display_name(user: Optional[User]) -> str:
        if user is None:
            return "Unknown user"
        if user.username:
            return f"@{user.username}"
        full_name = " ".join(part for part in (user.first_name, user.last_name) if part)
        return full_name or str(user.user_id)
