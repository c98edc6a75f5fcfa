# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Access token lifecycle for the sync engine.

:class:`TokenProvider` caches a single bearer token obtained from an Azure
Identity :class:`~azure.core.credentials.TokenCredential`, refreshes it
proactively before it expires and guarantees that concurrent callers never
trigger more than one acquisition at a time.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError

from . import _error_codes as ec
from .errors import AuthError
from .retry import RetryPolicy
from .telemetry import RetryEvent

logger = logging.getLogger(__name__)

CERTIFICATE_PREFIX = "cert:"


@dataclass(frozen=True)
class Credential:
    """App registration identity. ``secret_or_cert_reference`` is a client
    secret, or ``cert:<path>`` naming a PEM certificate."""

    tenant_id: str
    client_id: str
    secret_or_cert_reference: str

    def __repr__(self) -> str:
        return f"Credential(tenant_id={self.tenant_id!r}, client_id={self.client_id!r})"


@dataclass(frozen=True)
class Token:
    """Opaque bearer value and its absolute expiry (epoch seconds)."""

    value: str
    expires_at: float

    def expires_within(self, margin: float, now: float) -> bool:
        return self.expires_at - margin <= now


def build_credential(credential: Credential) -> TokenCredential:
    """Build an Azure Identity credential for the client credentials flow."""
    from azure.identity import CertificateCredential, ClientSecretCredential

    reference = credential.secret_or_cert_reference
    if reference.startswith(CERTIFICATE_PREFIX):
        return CertificateCredential(
            credential.tenant_id,
            credential.client_id,
            certificate_path=reference[len(CERTIFICATE_PREFIX):],
        )
    return ClientSecretCredential(credential.tenant_id, credential.client_id, reference)


class TokenProvider:
    """
    Single-token cache with proactive, single-flight refresh.

    Reads of a valid cached token take no lock. When the token is missing or
    expires within ``refresh_margin`` seconds, the first caller acquires a new
    one while concurrent callers wait for, and share, that same outcome.

    :param credential: Azure Identity credential used for acquisition.
    :type credential: ~azure.core.credentials.TokenCredential
    :param resource: Resource URL (``https://org.crm.dynamics.com``); the scope is ``<resource>/.default``.
    :type resource: str
    :param refresh_margin: Seconds before expiry at which the token counts as stale.
    :type refresh_margin: float
    :param retry_policy: Policy for retrying transient acquisition failures.
    :type retry_policy: RetryPolicy or None
    :param on_retry: Optional callback receiving a :class:`RetryEvent` per retry.
    :param clock: Time source returning epoch seconds.
    """

    def __init__(
        self,
        credential: TokenCredential,
        resource: str,
        *,
        refresh_margin: float = 300.0,
        retry_policy: Optional[RetryPolicy] = None,
        on_retry: Optional[Callable[[RetryEvent], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not isinstance(credential, TokenCredential):
            raise TypeError("credential must implement azure.core.credentials.TokenCredential.")
        self.credential = credential
        self.scope = resource.rstrip("/") + "/.default"
        self.refresh_margin = refresh_margin
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self._on_retry = on_retry
        self._clock = clock
        self._token: Optional[Token] = None
        self._inflight: Optional[Future] = None
        self._lock = threading.Lock()

    def get_token(self) -> Token:
        """
        Return a token valid for at least ``refresh_margin`` seconds.

        :raises AuthError: ``auth_rejected`` when the credential is refused,
            ``auth_transient`` when retries are exhausted.
        """
        token = self._token
        if token is not None and not token.expires_within(self.refresh_margin, self._clock()):
            return token

        with self._lock:
            token = self._token
            if token is not None and not token.expires_within(self.refresh_margin, self._clock()):
                return token
            inflight = self._inflight
            leader = inflight is None
            if leader:
                inflight = Future()
                self._inflight = inflight

        if not leader:
            return inflight.result()

        try:
            token = self._acquire_with_retry()
        except BaseException as exc:
            with self._lock:
                self._inflight = None
            inflight.set_exception(exc)
            raise
        with self._lock:
            self._token = token
            self._inflight = None
        inflight.set_result(token)
        return token

    def invalidate(self) -> None:
        """Drop the cached token so the next call acquires a fresh one."""
        with self._lock:
            self._token = None

    def close(self) -> None:
        """Tear down the cached token and close the underlying credential when it supports it."""
        self.invalidate()
        close = getattr(self.credential, "close", None)
        if callable(close):
            close()

    def _acquire_with_retry(self) -> Token:
        policy = self.retry_policy
        for attempt in range(policy.max_attempts):
            try:
                access = self.credential.get_token(self.scope)
            except ClientAuthenticationError as exc:
                logger.error("Credential rejected for scope %s: %s", self.scope, exc)
                raise AuthError(
                    f"Credential rejected: {exc}", subcode=ec.AUTH_REJECTED, details={"scope": self.scope}
                ) from exc
            except AzureError as exc:
                if attempt >= policy.max_attempts - 1:
                    raise AuthError(
                        f"Token acquisition failed after {policy.max_attempts} attempts: {exc}",
                        subcode=ec.AUTH_TRANSIENT,
                        details={"scope": self.scope},
                    ) from exc
                delay = policy.compute_delay(attempt)
                logger.warning(
                    "Token acquisition failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt + 1,
                    policy.max_attempts,
                    delay,
                    exc,
                )
                if self._on_retry is not None:
                    self._on_retry(
                        RetryEvent(source="token", attempt=attempt + 1, delay=delay, reason=type(exc).__name__)
                    )
                time.sleep(delay)
                continue

            token = Token(value=access.token, expires_at=float(access.expires_on))
            logger.info("Access token acquired for %s, expires at %s", self.scope, int(token.expires_at))
            return token

        # This should never be reached due to the logic above
        raise RuntimeError("Unexpected end of retry loop")


__all__ = ["Credential", "Token", "TokenProvider", "build_credential"]
