"""Retry policy with exponential backoff, and cooperative cancellation."""
from __future__ import annotations
import random
import threading
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .exceptions import RequestCancelledError

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass
class RetryPolicy:
    """Backoff settings for transient failures.

    delay(attempt) = min(cap, base * factor ** (attempt - 1)), then jittered
    by +/- ``jitter`` (a fraction) and capped again.
    """
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_cap: float = 5.0
    jitter: float = 0.2
    retry_statuses: Tuple[int, ...] = (429, 500, 502, 503, 504)
    # Statuses meaning the server did not act on the request at all
    unapplied_statuses: Tuple[int, ...] = (429, 503)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0 or self.backoff_cap < 0:
            raise ValueError("backoff values cannot be negative")

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if retry_after is not None:
            return max(0.0, min(retry_after, self.backoff_cap))
        delay = min(self.backoff_cap, self.backoff_base * (self.backoff_factor ** max(attempt - 1, 0)))
        if self.jitter and delay:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(0.0, min(delay, self.backoff_cap))

    def should_retry_status(self, method: str, status_code: int, attempt: int) -> bool:
        if attempt >= self.max_attempts or status_code not in self.retry_statuses:
            return False
        if method.upper() in IDEMPOTENT_METHODS:
            return True
        return status_code in self.unapplied_statuses

    def should_retry_connection(self, method: str, attempt: int, before_send: bool) -> bool:
        if attempt >= self.max_attempts:
            return False
        return method.upper() in IDEMPOTENT_METHODS or before_send


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header (delta seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class CancelToken:
    """Cooperative cancellation shared between a caller and in-flight calls.

    ``cancel()`` sets the flag, wakes any backoff wait and runs registered
    callbacks (used to close the transport of an in-flight request).
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()
            return lambda: None

        def _unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unregister

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def raise_if_cancelled(self, endpoint: str = "") -> None:
        if self._event.is_set():
            raise RequestCancelledError(endpoint)
