"""
Shared provider adapter machinery.

Every adapter turns provider pagination into ``fetch_page(cursor) ->
AdapterPage`` and funnels HTTP calls through ``ProviderAdapter._request``,
which applies the rate limiter and retries throttling/server failures with
capped exponential backoff before surfacing a ``ProviderRequestError``.
Adapters keep no state between invocations; the cursor lives on the run.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Mapping, Sequence

import requests

from config.monitoring import SyncMonitoring
from flask_app.models import LifecycleStage, TransactionStatus

DEFAULT_TIMEOUT_SECONDS = 20.0
MAX_RETRY_AFTER_SECONDS = 60.0

MODE_LOOKBACK = {
    "7d": timedelta(days=7),
    "month": timedelta(days=30),
    "full": timedelta(days=3 * 365),
}


class ProviderError(RuntimeError):
    """Base class for provider adapter failures."""


class ProviderConfigurationError(ProviderError):
    """Raised when credentials or required settings are missing."""


class ProviderRequestError(ProviderError):
    """Raised when a provider call fails permanently or exhausts its retries."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.attempts = attempts


@dataclass(frozen=True)
class RawRecord:
    """Provider-native payload plus the id the provider knows it by."""

    external_id: str
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class AdapterPage:
    records: tuple[RawRecord, ...]
    next_cursor: str | None
    has_more: bool


@dataclass(frozen=True)
class OptIns:
    whatsapp: bool = False
    sms: bool = False
    email: bool = False


@dataclass(frozen=True)
class ContactFields:
    """Normalized contact attributes handed to the merge engine."""

    email: str | None
    phone: str | None
    full_name: str | None
    tags: tuple[str, ...] = ()
    opt_ins: OptIns = field(default_factory=OptIns)
    lifecycle_stage: LifecycleStage | None = None
    payment_status: str | None = None
    customer_id: str | None = None


@dataclass(frozen=True)
class TransactionFields:
    """Normalized payment attributes handed to the transaction loader."""

    payment_key: str
    amount_cents: int
    currency: str
    status: TransactionStatus
    email: str | None
    full_name: str | None = None
    phone: str | None = None
    customer_id: str | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive time range a payment adapter should list."""

    start: datetime
    end: datetime

    @classmethod
    def for_mode(
        cls,
        mode: str,
        *,
        now: datetime | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> "SyncWindow":
        """
        Resolve ``today``/``7d``/``month``/``full`` (or explicit dates) to a window.

        Explicit ``start``/``end`` values win over the mode lookback.
        """
        now = now or datetime.now(timezone.utc)
        resolved_end = end or now
        if start is not None:
            resolved_start = start
        elif mode == "today":
            resolved_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        elif mode in MODE_LOOKBACK:
            resolved_start = now - MODE_LOOKBACK[mode]
        else:
            raise ValueError(f"Unsupported sync mode '{mode}'.")
        if resolved_start > resolved_end:
            raise ValueError("startDate must be before endDate.")
        return cls(start=resolved_start, end=resolved_end)


class RateLimiter:
    """
    Bounded-concurrency gate with a minimum spacing between request starts.

    Safe to share across the worker threads of one adapter.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 5,
        min_interval: float = 0.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_concurrency = max(1, int(max_concurrency))
        self.min_interval = max(0.0, float(min_interval))
        self._semaphore = threading.BoundedSemaphore(self.max_concurrency)
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self._sleep = sleep_fn
        self._clock = clock

    @contextmanager
    def slot(self) -> Iterator[None]:
        with self._semaphore:
            with self._lock:
                now = self._clock()
                wait = self._next_slot - now
                self._next_slot = max(now, self._next_slot) + self.min_interval
            if wait > 0:
                self._sleep(wait)
            yield


class ProviderAdapter:
    """
    Base class for provider adapters.

    Subclasses set ``name``/``kind``, implement ``fetch_page`` and one of
    ``normalize_contact``/``normalize_transaction``, and build themselves from
    Flask config in ``from_config``.
    """

    name = "provider"
    kind = "contact"
    request_delay = 0.0

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
        max_attempts: int = 4,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_concurrency: int = 5,
    ) -> None:
        self.session = session or requests.Session()
        self.sleep_fn = sleep_fn
        self.logger = logger or logging.getLogger(f"flask_app.sync.adapters.{self.name}")
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.backoff_max_seconds = max(0.0, float(backoff_max_seconds))
        self.timeout = timeout
        self.rate_limiter = RateLimiter(
            max_concurrency=max_concurrency,
            min_interval=self.request_delay,
            sleep_fn=sleep_fn,
            clock=clock,
        )

    @staticmethod
    def http_options(config: Mapping[str, Any]) -> dict[str, Any]:
        """Translate ``SYNC_HTTP_*`` settings into constructor keyword arguments."""
        return {
            "max_attempts": config.get("SYNC_HTTP_MAX_ATTEMPTS", 4),
            "max_concurrency": config.get("SYNC_HTTP_MAX_CONCURRENCY", 5),
            "backoff_seconds": config.get("SYNC_HTTP_BACKOFF_SECONDS", 0.5),
            "backoff_max_seconds": config.get("SYNC_HTTP_BACKOFF_MAX_SECONDS", 8.0),
            "timeout": config.get("SYNC_HTTP_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
        }

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs: Any) -> "ProviderAdapter":
        raise NotImplementedError

    def fetch_page(self, cursor: str | None, *, window: SyncWindow | None = None) -> AdapterPage:
        raise NotImplementedError

    def clamp_window(self, window: SyncWindow) -> SyncWindow:
        """Fit a requested window to what the provider serves; applied once when a run is claimed."""
        return window

    def normalize_contact(self, payload: Mapping[str, Any]) -> ContactFields:
        raise NotImplementedError(f"{self.name} does not produce contacts.")

    def normalize_transaction(self, payload: Mapping[str, Any]) -> TransactionFields | None:
        raise NotImplementedError(f"{self.name} does not produce transactions.")

    def _backoff_delay(self, attempt: int, response: requests.Response | None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After") if response.headers else None
            if retry_after:
                try:
                    return min(max(float(retry_after), 0.0), MAX_RETRY_AFTER_SECONDS)
                except ValueError:
                    pass
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Perform one HTTP call with rate limiting and bounded retries.

        429 and 5xx responses as well as connection failures are retried;
        other 4xx responses fail immediately.
        """
        last_error = "no attempt made"
        last_status: int | None = None
        for attempt in range(1, self.max_attempts + 1):
            response: requests.Response | None = None
            try:
                with self.rate_limiter.slot():
                    response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                last_status = None
            else:
                status = response.status_code
                if status == 429 or status >= 500:
                    last_error = f"HTTP {status}"
                    last_status = status
                elif status >= 400:
                    raise ProviderRequestError(
                        f"{self.name} request to {url} failed with HTTP {status}: {_truncate(response.text)}",
                        provider=self.name,
                        status_code=status,
                        attempts=attempt,
                    )
                else:
                    return response

            if attempt >= self.max_attempts:
                break
            delay = self._backoff_delay(attempt, response)
            SyncMonitoring.record_retry(provider=self.name, status=str(last_status or "network"))
            self.logger.warning(
                "%s request retry %s/%s after %s; sleeping %.2fs",
                self.name,
                attempt,
                self.max_attempts,
                last_error,
                delay,
                extra={"sync_provider": self.name, "sync_http_status": last_status, "sync_retry_delay": delay},
            )
            self.sleep_fn(delay)

        raise ProviderRequestError(
            f"{self.name} request to {url} failed after {self.max_attempts} attempts: {last_error}",
            provider=self.name,
            status_code=last_status,
            attempts=self.max_attempts,
        )


def require_settings(provider: str, config: Mapping[str, Any], keys: Sequence[str]) -> dict[str, str]:
    """Return the requested config values, raising when any are blank."""
    missing = [key for key in keys if not config.get(key)]
    if missing:
        raise ProviderConfigurationError(f"{provider} adapter requires settings: {', '.join(missing)}")
    return {key: str(config[key]) for key in keys}


def _truncate(text: str | None, limit: int = 300) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."
