"""
Unit tests for the retry backoff policy.
"""

import random

import pytest

from jobrunner.config import Settings
from jobrunner.queue.backoff import BackoffPolicy


class TestBackoffPolicy:
    """Tests for BackoffPolicy.delay."""

    def test_exponential_without_jitter(self):
        """Delays double per attempt when jitter is off."""
        policy = BackoffPolicy(base_seconds=1.0, max_seconds=1000.0, jitter=0)

        assert [policy.delay(k) for k in range(5)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max(self):
        """Delays never exceed the cap."""
        policy = BackoffPolicy(base_seconds=1.0, max_seconds=10.0, jitter=0.5)

        assert policy.delay(3, random.Random(1)) <= 10.0
        assert policy.delay(4) == 10.0
        assert policy.delay(10_000) == 10.0

    def test_monotonic_with_jitter(self):
        """Delays are non-decreasing in the attempt number, jitter included."""
        policy = BackoffPolicy(base_seconds=0.5, max_seconds=120.0, jitter=0.9)
        rng = random.Random(42)

        for _ in range(200):
            delays = [policy.delay(k, rng) for k in range(12)]
            assert delays == sorted(delays)
            assert max(delays) <= 120.0

    def test_jitter_only_stretches_upward(self):
        """Jittered delays stay within [raw, raw * (1 + jitter))."""
        policy = BackoffPolicy(base_seconds=1.0, max_seconds=1000.0, jitter=0.25)
        rng = random.Random(7)

        for _ in range(100):
            delay = policy.delay(3, rng)
            assert 8.0 <= delay < 10.0

    def test_negative_attempt_treated_as_zero(self):
        policy = BackoffPolicy(base_seconds=2.0, max_seconds=100.0, jitter=0)

        assert policy.delay(-3) == 2.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_seconds": 0},
            {"base_seconds": 5.0, "max_seconds": 1.0},
            {"jitter": 1.0},
            {"jitter": -0.1},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        """Invalid policies are rejected at construction."""
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)

    def test_from_settings(self):
        settings = Settings(
            backoff_base_seconds=0.5,
            backoff_max_seconds=30.0,
            backoff_jitter=0.1,
        )

        policy = BackoffPolicy.from_settings(settings)

        assert policy == BackoffPolicy(base_seconds=0.5, max_seconds=30.0, jitter=0.1)
