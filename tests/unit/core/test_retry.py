# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the shared retry policy and Retry-After parsing."""

import datetime as dt
from unittest.mock import patch

import pytest

from d365_odata_sync.core.retry import RetryPolicy, parse_retry_after


class TestRetryPolicy:
    """Tests for RetryPolicy delay computation."""

    def test_exponential_delays_without_jitter(self):
        policy = RetryPolicy(base_delay=0.5, max_backoff=60.0, jitter=False)
        assert [policy.compute_delay(a) for a in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_delay_capped_at_max_backoff(self):
        policy = RetryPolicy(base_delay=10.0, max_backoff=15.0, jitter=False)
        assert policy.compute_delay(5) == 15.0

    def test_retry_after_wins(self):
        policy = RetryPolicy(base_delay=0.5, max_backoff=60.0, jitter=True)
        assert policy.compute_delay(3, retry_after=7.0) == 7.0

    def test_retry_after_never_shortened(self):
        policy = RetryPolicy(max_backoff=10.0)
        assert policy.compute_delay(0, retry_after=600.0) == 600.0
        assert policy.exceeds_cap(600.0) is True
        assert policy.exceeds_cap(10.0) is False
        assert policy.exceeds_cap(None) is False

    def test_negative_retry_after_clamped(self):
        policy = RetryPolicy()
        assert policy.compute_delay(0, retry_after=-3.0) == 0.0

    @patch('random.uniform')
    def test_jitter_range(self, mock_uniform):
        mock_uniform.return_value = -0.5
        policy = RetryPolicy(base_delay=2.0, jitter=True)
        assert policy.compute_delay(0) == 1.5
        mock_uniform.assert_called_once_with(-0.5, 0.5)

    def test_backoff_for_failures_monotonic_and_capped(self):
        policy = RetryPolicy(base_delay=5.0, max_backoff=300.0, jitter=False)
        delays = [policy.backoff_for_failures(n) for n in range(1, 10)]
        assert delays[0] == 5.0
        assert delays == sorted(delays)
        assert max(delays) == 300.0
        assert policy.backoff_for_failures(0) == 0.0

    def test_backoff_for_failures_huge_count(self):
        policy = RetryPolicy(base_delay=5.0, max_backoff=300.0)
        assert policy.backoff_for_failures(10_000) == 300.0


class TestParseRetryAfter:
    """Tests for Retry-After header parsing."""

    @pytest.mark.parametrize("value,expected", [("5", 5.0), ("0", 0.0), (" 12 ", 12.0), ("1.5", 1.5)])
    def test_delta_seconds(self, value, expected):
        assert parse_retry_after(value) == expected

    @pytest.mark.parametrize("value", [None, "", "soon", "nan", "inf"])
    def test_unusable_values(self, value):
        assert parse_retry_after(value) is None

    def test_http_date(self):
        now = dt.datetime(2025, 10, 21, 7, 27, 0, tzinfo=dt.timezone.utc)
        assert parse_retry_after("Tue, 21 Oct 2025 07:28:00 GMT", now=now) == 60.0

    def test_http_date_in_past(self):
        now = dt.datetime(2025, 10, 21, 8, 0, 0, tzinfo=dt.timezone.utc)
        assert parse_retry_after("Tue, 21 Oct 2025 07:28:00 GMT", now=now) == 0.0
