# tests/unit/test_backoff.py
"""Unit tests for BackoffPolicy."""

import pytest

from buildloop.config.schema import QueueConfig
from buildloop.queue.backoff import BackoffPolicy


def test_delays_grow_exponentially():
    policy = BackoffPolicy(base_delay=2.0, multiplier=2.0, max_delay=300.0)

    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(2) == 4.0
    assert policy.delay_for(3) == 8.0


def test_delay_is_capped():
    policy = BackoffPolicy(base_delay=10.0, multiplier=10.0, max_delay=60.0)

    assert policy.delay_for(3) == 60.0


def test_should_retry_respects_max_attempts():
    policy = BackoffPolicy(max_attempts=3)

    assert policy.should_retry(1)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)
    # Per-job override wins over the policy default
    assert policy.should_retry(3, max_attempts=5)


def test_from_config():
    policy = BackoffPolicy.from_config(
        QueueConfig(attempts=5, backoff_delay=1.5, backoff_multiplier=3.0, backoff_max_delay=20.0)
    )

    assert policy.max_attempts == 5
    assert policy.base_delay == 1.5
    assert policy.delay_for(2) == 4.5


@pytest.mark.parametrize(
    "kwargs",
    [{"base_delay": -1.0}, {"multiplier": 0.5}, {"max_attempts": 0}],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)
