"""
Optimistic Locking Infrastructure
Status-conditioned updates that let exactly one concurrent writer win
"""

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import Offer, OfferStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import NotFoundError, StateConflictError

logger = logging.getLogger(__name__)


def _status_value(status) -> str:
    return status.value if isinstance(status, OfferStatus) else str(status)


def current_offer_status(session: Session, offer_id: int) -> Optional[str]:
    return session.execute(select(Offer.status).where(Offer.id == offer_id)).scalar_one_or_none()


def compare_and_set_status(
    session: Session,
    offer_id: int,
    expected_status,
    new_status,
    values: Optional[Dict[str, Any]] = None,
    write_once: Iterable[str] = (),
) -> None:
    """
    Move an offer from ``expected_status`` to ``new_status`` in one statement.

    Args:
        session: Open session; the caller owns commit/rollback
        offer_id: Offer primary key
        expected_status: Status the row must currently hold
        new_status: Status to write
        values: Extra column values written in the same statement
        write_once: Columns from ``values`` that may only be written while NULL

    Raises:
        NotFoundError: offer does not exist
        StateConflictError: offer is not in ``expected_status`` (or a write-once
            column is already set)
    """
    expected = _status_value(expected_status)
    target = _status_value(new_status)

    update_values = dict(values or {})
    update_values["status"] = target
    update_values["updated_at"] = get_naive_utc_now()

    conditions = [Offer.id == offer_id, Offer.status == expected]
    for column_name in write_once:
        conditions.append(getattr(Offer, column_name).is_(None))

    stmt = (
        update(Offer)
        .where(*conditions)
        .values(update_values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)

    if result.rowcount == 0:
        actual = current_offer_status(session, offer_id)
        if actual is None:
            raise NotFoundError("Offer", offer_id)
        logger.warning(
            f"🔒 TRANSITION_BLOCKED: offer={offer_id} expected={expected} actual={actual} target={target}"
        )
        raise StateConflictError(offer_id, expected, actual)

    logger.debug(f"✅ Conditional update applied: offer={offer_id} {expected} → {target}")


def assert_offer_status(session: Session, offer_id: int, expected_status) -> Offer:
    """
    Load an offer and check its status without writing.

    Used by notify-only actions that must still reject stale taps.
    """
    offer = session.get(Offer, offer_id)
    if offer is None:
        raise NotFoundError("Offer", offer_id)
    expected = _status_value(expected_status)
    if offer.status != expected:
        raise StateConflictError(offer_id, expected, offer.status)
    return offer
