"""
Exception Handler Module
Provides the marketplace exception hierarchy and error handling decorators
"""

import logging
import functools
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    """Base class for every domain error raised by the marketplace services"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Custom validation error for input validation failures"""


class UnauthorizedActorError(ValidationError):
    """The acting user is not the party allowed to perform the action"""

    def __init__(self, message: str, actor_id: Optional[int] = None):
        self.actor_id = actor_id
        super().__init__(message)


class NotFoundError(MarketplaceError):
    """Referenced entity does not exist"""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class StateConflictError(MarketplaceError):
    """
    Entity is not in the status the caller expected.

    Covers stale button taps, lost races and actions on terminal offers.
    Never retried automatically.
    """

    def __init__(self, offer_id: Any, expected: Optional[str], actual: Optional[str], message: Optional[str] = None):
        self.offer_id = offer_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Offer {offer_id} is '{actual}', expected '{expected}'"
        )


class AlreadySubmittedError(StateConflictError):
    """Feedback for this side of the offer was already recorded"""

    def __init__(self, offer_id: Any, side: str, message: Optional[str] = None):
        self.side = side
        super().__init__(
            offer_id,
            expected=None,
            actual=None,
            message=message or f"Feedback from {side} already submitted for offer {offer_id}",
        )


class DonationAlreadyRecordedError(AlreadySubmittedError):
    """The seller already donated after this offer"""

    def __init__(self, offer_id: Any):
        super().__init__(offer_id, "seller", f"A donation was already recorded for offer {offer_id}")


class NotificationDeliveryError(MarketplaceError):
    """Transport failed to deliver a message. Caught at the notification boundary."""

    def __init__(self, user_id: int, reason: str):
        self.user_id = user_id
        super().__init__(f"Could not notify {user_id}: {reason}")


def user_facing_message(error: MarketplaceError) -> str:
    """Short alert text for a domain error"""
    if isinstance(error, UnauthorizedActorError):
        return "⛔ You are not allowed to perform this action."
    if isinstance(error, DonationAlreadyRecordedError):
        return "ℹ️ You have already donated for this charge."
    if isinstance(error, AlreadySubmittedError):
        return "ℹ️ You have already left feedback for this charge."
    if isinstance(error, StateConflictError):
        return "⚠️ This offer has already been updated. Please check its current status."
    if isinstance(error, NotFoundError):
        return f"❌ {error.entity} not found."
    if isinstance(error, ValidationError):
        return f"❌ {error.message}"
    return "❌ Something went wrong. Please try again."


def safe_telegram_handler(func: Callable) -> Callable:
    """
    Decorator to safely handle telegram handler functions
    Catches exceptions and logs them without crashing the bot
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except MarketplaceError as e:
            logger.warning(f"⚠️ HANDLER_DOMAIN_ERROR in {func.__name__}: {type(e).__name__}: {e}")
            return None
        except Exception as e:
            logger.error(f"Error in telegram handler {func.__name__}: {e}")
            logger.error(f"Exception details: {type(e).__name__}: {str(e)}", exc_info=True)
            # Don't re-raise to prevent bot crashes
            return None

    return wrapper
