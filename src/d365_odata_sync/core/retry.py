# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Retry delay policy shared by the HTTP client, the token provider and the
orchestrator's entity backoff.
"""

from __future__ import annotations

import datetime as _dt
import math
import random
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy with optional jitter and a delay cap.

    :param max_attempts: Total attempts including the first one. Default is 5.
    :type max_attempts: int
    :param base_delay: Base delay in seconds. Default is 0.5.
    :type base_delay: float
    :param max_backoff: Upper bound for any single delay in seconds. Default is 60.0.
    :type max_backoff: float
    :param jitter: Whether to add +/-25% random variation to computed delays.
    :type jitter: bool
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_backoff: float = 60.0
    jitter: bool = True

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before the next attempt.

        A server-provided ``retry_after`` always wins over the computed delay and
        is never shortened; callers use :meth:`exceeds_cap` to decide whether to
        wait that long at all. Otherwise ``base_delay * 2**attempt``, capped at
        ``max_backoff``, with jitter applied when enabled.

        :param attempt: Zero-based retry attempt number.
        :type attempt: int
        :param retry_after: Delay in seconds requested by the server, if any.
        :type retry_after: float or None
        :return: Delay in seconds, always >= 0.
        :rtype: float
        """
        if retry_after is not None:
            return max(0.0, retry_after)

        delay = min(self.base_delay * (2 ** attempt), self.max_backoff)

        if self.jitter:
            jitter_range = delay * 0.25
            delay = max(0, delay + random.uniform(-jitter_range, jitter_range))
        return delay

    def exceeds_cap(self, retry_after: Optional[float]) -> bool:
        """True when the server asks for a longer wait than ``max_backoff`` allows."""
        return retry_after is not None and retry_after > self.max_backoff

    def backoff_for_failures(self, consecutive_failures: int) -> float:
        """
        Deterministic backoff keyed by a failure count (no jitter).

        One failure maps to ``base_delay``; each further failure doubles the
        delay until ``max_backoff`` is reached.
        """
        if consecutive_failures <= 0:
            return 0.0
        exponent = min(consecutive_failures - 1, 62)
        return min(self.base_delay * (2 ** exponent), self.max_backoff)


def parse_retry_after(value: Optional[str], now: Optional[_dt.datetime] = None) -> Optional[float]:
    """
    Parse a ``Retry-After`` header value.

    Handles delta-seconds (``"120"``) and HTTP-date
    (``"Wed, 21 Oct 2025 07:28:00 GMT"``) forms. Returns ``None`` when the
    value is missing or unparseable so callers fall back to exponential backoff.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        if math.isnan(seconds) or math.isinf(seconds):
            return None
        return max(0.0, seconds)

    try:
        target = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if target is None:
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=_dt.timezone.utc)
    current = now or _dt.datetime.now(_dt.timezone.utc)
    return max(0.0, (target - current).total_seconds())


__all__ = ["RetryPolicy", "parse_retry_after"]
