"""Rate limiting and whitelist tests"""

from services.access_control import AccessControl, RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRateLimiter:
    def test_limit_within_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_actions=3, window_seconds=10, clock=clock)

        assert [limiter.allow(1) for _ in range(4)] == [True, True, True, False]
        # Other users are unaffected
        assert limiter.allow(2)

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(max_actions=2, window_seconds=10, clock=clock)
        limiter.allow(1)
        clock.now = 5
        limiter.allow(1)
        assert not limiter.allow(1)

        clock.now = 10
        assert limiter.allow(1)
        assert not limiter.allow(1)

    def test_idle_users_are_forgotten(self):
        clock = FakeClock()
        limiter = RateLimiter(max_actions=2, window_seconds=10, clock=clock)
        limiter.allow(1)
        limiter.allow(2)
        assert len(limiter._events) == 2

        clock.now = 10
        limiter.allow(3)

        assert len(limiter._events) == 1
        assert 1 not in limiter._events

    def test_reset(self):
        limiter = RateLimiter(max_actions=1, window_seconds=60, clock=FakeClock())
        limiter.allow(1)

        limiter.reset(1)

        assert limiter.allow(1)


class TestAccessControl:
    def test_whitelist(self):
        access = AccessControl(whitelisted_ids=[10])

        assert access.is_whitelisted(10)
        access.add_to_whitelist(11)
        access.remove_from_whitelist(10)
        assert access.is_whitelisted(11)
        assert not access.is_whitelisted(10)

    def test_is_allowed_uses_rate_limiter(self):
        access = AccessControl(RateLimiter(max_actions=1, window_seconds=60, clock=FakeClock()))

        assert access.is_allowed(5)
        assert not access.is_allowed(5)
