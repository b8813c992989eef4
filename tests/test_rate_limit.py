from onemolt.rate_limit import RateLimiter


class Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_limit_then_release_after_window():
    clock = Clock()
    limiter = RateLimiter(1, 5, clock=clock)

    first = limiter.check("k")
    assert first.allowed and first.remaining == 0

    clock.t += 2
    blocked = limiter.check("k")
    assert not blocked.allowed
    assert blocked.retry_after == 3

    clock.t += 3
    assert limiter.check("k").allowed


def test_keys_are_independent():
    limiter = RateLimiter(1, 5, clock=Clock())
    assert limiter.check("a").allowed
    assert limiter.check("b").allowed
    assert not limiter.check("a").allowed


def test_reset_single_key_and_all():
    limiter = RateLimiter(2, 60, clock=Clock())
    for key in ("a", "a", "b", "b"):
        limiter.check(key)
    assert not limiter.check("a").allowed

    limiter.reset("a")
    assert limiter.check("a").allowed
    assert not limiter.check("b").allowed

    limiter.reset()
    assert limiter.check("b").allowed
