"""
Access Control
Rate limiting and whitelist lookups used by the bot handlers.

Identity verification, group membership checks and risk scoring live outside
this bot; ``AccessControl`` is the seam where they plug in.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable, Optional, Set

from config import Config

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window limiter keyed by user id"""

    def __init__(
        self,
        max_actions: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_actions = max_actions if max_actions is not None else Config.RATE_LIMIT_MAX_ACTIONS
        self.window_seconds = window_seconds if window_seconds is not None else Config.RATE_LIMIT_WINDOW_SECONDS
        self._clock = clock
        self._events: Dict[int, Deque[float]] = defaultdict(deque)

    def allow(self, user_id: int) -> bool:
        now = self._clock()
        self._prune_idle(now)
        events = self._events[user_id]

        if len(events) >= self.max_actions:
            logger.warning(f"🚦 RATE_LIMITED: user={user_id} actions={len(events)} window={self.window_seconds}s")
            return False

        events.append(now)
        return True

    def _prune_idle(self, now: float) -> None:
        """Drop expired timestamps, and users left with none"""
        for user_id in list(self._events):
            events = self._events[user_id]
            while events and now - events[0] >= self.window_seconds:
                events.popleft()
            if not events:
                del self._events[user_id]

    def reset(self, user_id: int) -> None:
        self._events.pop(user_id, None)


class AccessControl:
    """
    Permissive default: everyone may act, nobody is whitelisted unless added.
    """

    def __init__(self, rate_limiter: Optional[RateLimiter] = None, whitelisted_ids: Iterable[int] = ()):
        self.rate_limiter = rate_limiter or RateLimiter()
        self._whitelist: Set[int] = set(whitelisted_ids)

    def is_allowed(self, user_id: int) -> bool:
        return self.rate_limiter.allow(user_id)

    def is_whitelisted(self, user_id: int) -> bool:
        return user_id in self._whitelist

    def add_to_whitelist(self, user_id: int) -> None:
        self._whitelist.add(user_id)
        logger.info(f"✅ WHITELIST_ADDED: user={user_id}")

    def remove_from_whitelist(self, user_id: int) -> None:
        self._whitelist.discard(user_id)
        logger.info(f"🗑️ WHITELIST_REMOVED: user={user_id}")
