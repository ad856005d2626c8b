from relay.services.rate_limiter import PhoneRateLimiter


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_allows_up_to_limit_then_blocks():
    limiter = PhoneRateLimiter(window_seconds=60, max_messages=3, clock=FakeClock())
    assert [limiter.allow("t:+33600000001") for _ in range(4)] == [True, True, True, False]


def test_keys_are_independent():
    limiter = PhoneRateLimiter(window_seconds=60, max_messages=1, clock=FakeClock())
    assert limiter.allow("t:+33600000001") is True
    assert limiter.allow("t:+33600000002") is True
    assert limiter.allow("t:+33600000001") is False


def test_window_resets():
    clock = FakeClock()
    limiter = PhoneRateLimiter(window_seconds=60, max_messages=1, clock=clock)
    assert limiter.allow("k") is True
    assert limiter.allow("k") is False
    clock.now += 60
    assert limiter.allow("k") is True


def test_reset_clears_counters():
    limiter = PhoneRateLimiter(window_seconds=60, max_messages=1, clock=FakeClock())
    limiter.allow("k")
    limiter.reset()
    assert limiter.allow("k") is True
