import pytest

from dealseal.errors import RateLimited
from dealseal.rate_limit import RateLimiter, RateLimitPolicy


class FakeTime:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def test_sliding_window():
    now = FakeTime()
    limiter = RateLimiter(limit=3, window_seconds=60, clock=now)
    assert [limiter.allow("k") for _ in range(4)] == [True, True, True, False]

    now.t += 59
    assert not limiter.allow("k")
    now.t += 1
    assert limiter.allow("k")


def test_check_reports_remaining_and_retry():
    now = FakeTime()
    limiter = RateLimiter(limit=2, window_seconds=60, clock=now)
    assert limiter.check("k").remaining == 1
    assert limiter.check("k").remaining == 0
    denied = limiter.check("k")
    assert not denied.allowed
    assert denied.retry_after == 60


def test_keys_are_independent():
    limiter = RateLimiter(limit=1, window_seconds=60, clock=FakeTime())
    assert limiter.allow("a")
    assert limiter.allow("b")
    assert not limiter.allow("a")


def test_stats_reset_and_cleanup():
    now = FakeTime()
    limiter = RateLimiter(limit=5, window_seconds=60, clock=now)
    limiter.allow("a")
    limiter.allow("a")
    assert limiter.get_stats("a")["current"] == 2
    limiter.reset("a")
    assert limiter.get_stats("a")["current"] == 0

    limiter.allow("b")
    now.t += 61
    assert limiter.cleanup_expired() == 1


def test_policy_buckets():
    now = FakeTime()
    policy = RateLimitPolicy({"otp": (2, 3600), "general": (100, 60)}, clock=now)
    assert policy.check_rate_limit("otp", "ip:1")
    policy.enforce("otp", "ip:1")
    with pytest.raises(RateLimited):
        policy.enforce("otp", "ip:1")
    # other keys and buckets are unaffected
    policy.enforce("otp", "ip:2")
    policy.enforce("general", "ip:1")


def test_unknown_bucket_falls_back_to_general():
    policy = RateLimitPolicy({"general": (1, 60)}, clock=FakeTime())
    policy.enforce("confirm", "ip:1")
    with pytest.raises(RateLimited):
        policy.enforce("confirm", "ip:1")
    policy.reset()
    policy.enforce("confirm", "ip:1")
