"""
Feedback & Reputation Tracker
Each party rates the other once per completed charge.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import update

from config import Config
from models import FeedbackSide, Offer, OfferStatus, User
from services.user_service import UserService
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import (
    AlreadySubmittedError,
    NotFoundError,
    StateConflictError,
    UnauthorizedActorError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class FeedbackTracker:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def submit(self, offer_id: int, side, rating: bool, comment: Optional[str] = None, actor_id: Optional[int] = None) -> int:
        """
        Record the feedback ``side`` leaves about its counterpart.

        Returns:
            The id of the rated user

        Raises:
            NotFoundError: unknown offer
            StateConflictError: offer is not completed
            AlreadySubmittedError: this side already rated
            UnauthorizedActorError: actor is not the party for ``side``
        """
        try:
            side = FeedbackSide(side)
        except ValueError:
            raise ValidationError(f"Unknown feedback side: {side!r}")
        if not isinstance(rating, bool):
            raise ValidationError("Rating must be positive or negative")

        rating_column = Offer.buyer_feedback_rating if side is FeedbackSide.BUYER else Offer.seller_feedback_rating
        values = {
            f"{side.value}_feedback_rating": rating,
            f"{side.value}_feedback_comment": (comment or "").strip() or None,
        }

        with atomic_transaction(session_factory=self.session_factory) as session:
            offer = session.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError("Offer", offer_id)
            if offer.status != OfferStatus.COMPLETED.value:
                raise StateConflictError(offer_id, OfferStatus.COMPLETED.value, offer.status)

            author_id = offer.buyer_id if side is FeedbackSide.BUYER else offer.seller_id
            if actor_id is not None and actor_id != author_id:
                raise UnauthorizedActorError(f"User {actor_id} is not the {side.value} of offer {offer_id}", actor_id)

            result = session.execute(
                update(Offer)
                .where(
                    Offer.id == offer_id,
                    Offer.status == OfferStatus.COMPLETED.value,
                    rating_column.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadySubmittedError(offer_id, side.value)

            target_id = offer.seller_id if side is FeedbackSide.BUYER else offer.buyer_id
            UserService.ensure_user(session, target_id)
            session.execute(
                update(User)
                .where(User.user_id == target_id)
                .values(
                    total_ratings=User.total_ratings + 1,
                    positive_ratings=User.positive_ratings + (1 if rating else 0),
                )
                .execution_options(synchronize_session=False)
            )

        logger.info(
            f"⭐ FEEDBACK_RECORDED: offer={offer_id} from={side.value} "
            f"target={target_id} rating={'positive' if rating else 'negative'}"
        )
        return target_id

    @staticmethod
    def has_submitted(offer: Offer, side) -> bool:
        return offer.feedback_rating(FeedbackSide(side)) is not None

    @staticmethod
    def get_positive_percentage(user: User) -> Optional[int]:
        """Rounded share of positive ratings, None when the user has none"""
        if not user.total_ratings:
            return None
        pct = Decimal(user.positive_ratings) * 100 / Decimal(user.total_ratings)
        return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def is_trusted_seller(cls, user: User, whitelisted: bool = False) -> bool:
        pct = cls.get_positive_percentage(user)
        if (
            pct is not None
            and pct >= Config.TRUSTED_SELLER_MIN_PERCENTAGE
            and user.total_ratings >= Config.TRUSTED_SELLER_MIN_RATINGS
        ):
            return True
        return whitelisted and user.positive_ratings >= Config.TRUSTED_WHITELISTED_MIN_POSITIVE
