from app.services.rate_limiter import SlidingWindowRateLimiter


def test_limit_applies_within_window():
    limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60)

    assert limiter.hit("user:1", now=0) is True
    assert limiter.hit("user:1", now=1) is True
    assert limiter.hit("user:1", now=2) is False
    assert limiter.remaining("user:1", now=2) == 0

    assert limiter.hit("user:1", now=61) is True


def test_idle_keys_are_forgotten():
    limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60)
    limiter.hit("user:1", now=0)
    limiter.hit("ip:10.0.0.1", now=10)
    assert len(limiter) == 2

    limiter.hit("user:2", now=100)

    assert len(limiter) == 1
    assert limiter.remaining("user:1", now=100) == 2
    assert len(limiter) == 1


def test_remaining_drops_expired_key():
    limiter = SlidingWindowRateLimiter(limit=3, window_seconds=60)
    limiter.hit("user:1", now=0)

    assert limiter.remaining("user:1", now=30) == 2
    assert limiter.remaining("user:1", now=90) == 3
    assert len(limiter) == 0
