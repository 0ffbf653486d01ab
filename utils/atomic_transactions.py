"""Atomic transaction utilities for ledger and lifecycle operations"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy.orm import Session

from utils.exception_handler import MarketplaceError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    When a session is provided the caller owns the outer transaction: nested
    blocks neither commit nor close it. Otherwise a new session is opened from
    ``session_factory`` (default ``SessionLocal``), committed on success and
    rolled back on any error.
    """
    if session is not None:
        yield session
        return

    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    new_session = session_factory()
    try:
        yield new_session
        new_session.commit()
        logger.debug("Sync atomic transaction committed successfully")
    except MarketplaceError as e:
        new_session.rollback()
        logger.info(f"↩️ Transaction rolled back: {type(e).__name__}: {e}")
        raise
    except Exception as e:
        new_session.rollback()
        logger.error(f"Sync transaction rolled back due to error: {e}")
        raise
    finally:
        new_session.close()
