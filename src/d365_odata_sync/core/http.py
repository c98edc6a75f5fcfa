# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
HTTP client with automatic retry logic and timeout handling.

This module provides :class:`HttpClient`, a wrapper around the requests library
that retries throttled (429), unavailable (502/503/504) and network-failed
requests according to a shared :class:`~d365_odata_sync.core.retry.RetryPolicy`,
honouring server-provided ``Retry-After`` delays.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import requests

from ._error_codes import TRANSIENT_STATUS_CODES
from .retry import RetryPolicy, parse_retry_after
from .telemetry import RetryEvent

logger = logging.getLogger(__name__)


class HttpClient:
    """
    HTTP client with configurable retry logic, timeout handling, and optional session support.

    :param retries: Maximum number of attempts (including the first). Default is 5.
    :type retries: int or None
    :param backoff: Base delay in seconds between retry attempts. Default is 0.5.
    :type backoff: float or None
    :param timeout: Default request timeout in seconds. If None, uses per-method defaults.
    :type timeout: float or None
    :param max_backoff: Cap for any single retry delay in seconds. Default is 60.0.
    :type max_backoff: float or None
    :param jitter: Whether to apply +/-25% jitter to computed delays.
    :type jitter: bool
    :param session: Optional requests.Session for connection pooling.
    :type session: requests.Session or None
    :param on_retry: Optional callback invoked with a :class:`RetryEvent` before each retry sleep.
    :type on_retry: Callable[[RetryEvent], None] or None
    """

    def __init__(
        self,
        *,
        retries: Optional[int] = None,
        backoff: Optional[float] = None,
        timeout: Optional[float] = None,
        max_backoff: Optional[float] = None,
        jitter: bool = True,
        session: Optional[requests.Session] = None,
        on_retry: Optional[Callable[[RetryEvent], None]] = None,
    ) -> None:
        self.policy = RetryPolicy(
            max_attempts=retries if retries is not None else 5,
            base_delay=backoff if backoff is not None else 0.5,
            max_backoff=max_backoff if max_backoff is not None else 60.0,
            jitter=jitter,
        )
        self.default_timeout: Optional[float] = timeout
        self.transient_status_codes = set(TRANSIENT_STATUS_CODES)
        self._session = session
        self._on_retry = on_retry

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Execute an HTTP request with automatic retry logic and timeout management.

        Transient status codes are retried until the attempt budget is spent;
        the last response is then returned unchanged so the caller can classify
        it. A ``Retry-After`` longer than ``max_backoff`` is not waited out; that
        response is returned at once. Network exceptions are re-raised after the
        final attempt.

        :param method: HTTP method (GET, POST, ...).
        :type method: str
        :param url: Target URL for the request.
        :type url: str
        :param kwargs: Additional arguments passed to ``requests.request()``.
        :return: HTTP response object.
        :rtype: requests.Response
        :raises requests.exceptions.RequestException: If all retry attempts fail.
        """
        # Metadata documents for F&O can be very large; POST ($batch) gets the long timeout too.
        if "timeout" not in kwargs:
            if self.default_timeout is not None:
                kwargs["timeout"] = self.default_timeout
            else:
                m = (method or "").lower()
                kwargs["timeout"] = 120 if m in ("post", "delete") or url.endswith("$metadata") else 30

        last_attempt = self.policy.max_attempts - 1
        for attempt in range(self.policy.max_attempts):
            try:
                response = self._send(method, url, **kwargs)
            except requests.exceptions.RequestException as exc:
                if attempt >= last_attempt:
                    raise
                delay = self.policy.compute_delay(attempt)
                self._notify_retry(attempt, delay, url, None, type(exc).__name__)
                time.sleep(delay)
                continue

            if response.status_code in self.transient_status_codes and attempt < last_attempt:
                retry_after = parse_retry_after(_header(response, "Retry-After"))
                if self.policy.exceeds_cap(retry_after):
                    logger.warning(
                        "%s asked to retry after %.0fs (cap %.0fs); not retrying",
                        url,
                        retry_after,
                        self.policy.max_backoff,
                    )
                    return response
                delay = self.policy.compute_delay(attempt, retry_after)
                self._notify_retry(attempt, delay, url, response.status_code, "status")
                time.sleep(delay)
                continue

            return response

        # This should never be reached due to the logic above
        raise RuntimeError("Unexpected end of retry loop")

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        if self._session is not None:
            return self._session.request(method, url, **kwargs)
        return requests.request(method, url, **kwargs)

    def _notify_retry(
        self,
        attempt: int,
        delay: float,
        url: str,
        status_code: Optional[int],
        reason: str,
    ) -> None:
        logger.warning(
            "Retrying %s (attempt %d/%d, status=%s, reason=%s) in %.2fs",
            url,
            attempt + 1,
            self.policy.max_attempts,
            status_code,
            reason,
            delay,
        )
        if self._on_retry is not None:
            self._on_retry(
                RetryEvent(
                    source="http",
                    attempt=attempt + 1,
                    delay=delay,
                    url=url,
                    status_code=status_code,
                    reason=reason,
                )
            )

    def close(self) -> None:
        """
        Close the HTTP client and release resources.

        Safe to call multiple times.
        """
        if self._session is not None:
            self._session.close()
            self._session = None


def _header(response: requests.Response, name: str) -> Optional[str]:
    headers = getattr(response, "headers", None) or {}
    return headers.get(name)
