import random

import pytest

from core.ratelimits import BackoffPolicy

pytestmark = pytest.mark.unit


def test_delay_doubles_until_cap():
    policy = BackoffPolicy(base=1.0, factor=2.0, cap=10.0, jitter=0.0)
    assert [policy.delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_retry_after_raises_floor_but_not_cap():
    policy = BackoffPolicy(base=1.0, factor=2.0, cap=30.0, jitter=0.0)
    assert policy.delay(0, retry_after=7.0) == 7.0
    assert policy.delay(3, retry_after=2.0) == 8.0
    assert policy.delay(0, retry_after=120.0) == 30.0


def test_jitter_stays_within_bounds():
    policy = BackoffPolicy(base=4.0, factor=2.0, cap=30.0, jitter=0.25)
    rng = random.Random(1234)
    for _ in range(100):
        delay = policy.delay(0, rng=rng)
        assert 4.0 <= delay <= 5.0


def test_exhausted_counts_total_attempts():
    policy = BackoffPolicy(max_attempts=3)
    assert not policy.exhausted(2)
    assert policy.exhausted(3)


def test_from_config_overrides_defaults():
    policy = BackoffPolicy.from_config(
        {"backoff_base_seconds": 2, "backoff_cap_seconds": None, "max_attempts": 6},
        cap=60.0,
    )
    assert policy.base == 2
    assert policy.cap == 60.0
    assert policy.max_attempts == 6
    assert policy.factor == 2.0


def test_from_config_rejects_zero_attempts():
    with pytest.raises(ValueError):
        BackoffPolicy.from_config({"max_attempts": 0})
