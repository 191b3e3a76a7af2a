"""
Retry Management and Rate Limiting for Remote Sources

Provides exponential-backoff retries for transient reader failures and a
rate limiter shared by all concurrent site pipelines that call the same
remote service.

Retry policy:
- RateLimitError, RemoteServiceError: retried with exponential backoff and
  jitter, up to max_retries additional attempts
- AuthError: retried once (tokens may be refreshed between attempts); a
  second authentication failure is fatal for the site
- Any other ReaderError (NotFound, Range, Format): not retried
"""

import logging
import random
import time
from typing import Any, Callable, Dict, Optional

from ratelimit import limits, sleep_and_retry

from .logging_utils import AuthError, RemoteServiceError

MAX_AUTH_ATTEMPTS = 2


class RetryManager:
    """
    Execute reader calls, retrying transient failures.

    Backoff is exponential with up to 30% jitter. Each site pipeline gets
    its own manager built from the site's effective settings, so the
    counters describe one site.
    """

    def __init__(self, max_retries: int = 3, backoff_factor: float = 2.0, base_delay: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            max_retries: Additional attempts after the first call
            backoff_factor: Growth of the delay between consecutive retries
            base_delay: Delay in seconds before the first retry
            sleep: Sleep function, replaceable in tests
        """
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.base_delay = base_delay
        self.sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

        self.calls = 0
        self.recovered = 0
        self.exhausted = 0
        self.failures_by_type: Dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings, sleep: Callable[[float], None] = time.sleep) -> 'RetryManager':
        """Build a manager from a settings record; local sources get no retries."""
        return cls(
            max_retries=getattr(settings, 'max_retries', 0),
            backoff_factor=getattr(settings, 'backoff_factor', 2.0),
            base_delay=getattr(settings, 'base_delay', 1.0),
            sleep=sleep,
        )

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (1-based), with jitter."""
        backoff = self.base_delay * self.backoff_factor ** (attempt - 1)
        return backoff * (1.0 + random.uniform(0.0, 0.3))

    def _give_up(self, message: str) -> None:
        self.exhausted += 1
        self.logger.error(message)

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call ``func`` and retry transient failures.

        Args:
            func: Callable to execute (typically a reader's ``read``)
            *args: Arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result of func

        Raises:
            ReaderError: The last error once retries are exhausted, or the
                first non-retriable error
        """
        self.calls += 1
        auth_failures = 0
        attempt = 0

        while True:
            if attempt > 0:
                delay = self.delay_for_attempt(attempt)
                self.logger.info(f"Retry {attempt} of {self.max_retries} in {delay:.1f}s")
                self.sleep(delay)

            try:
                result = func(*args, **kwargs)
            except (RemoteServiceError, AuthError) as e:
                name = type(e).__name__
                self.failures_by_type[name] = self.failures_by_type.get(name, 0) + 1
                self.logger.warning(f"Attempt {attempt + 1} failed ({name}): {e}")

                if isinstance(e, AuthError):
                    auth_failures += 1
                    if auth_failures >= MAX_AUTH_ATTEMPTS:
                        self._give_up(f"Credentials rejected {auth_failures} times: {e}")
                        raise

                if attempt >= self.max_retries:
                    self._give_up(f"Giving up after {attempt + 1} attempts: {e}")
                    raise

                attempt += 1
                continue

            if attempt > 0:
                self.recovered += 1
                self.logger.info(f"Recovered on retry {attempt}")
            return result

    def get_retry_statistics(self) -> Dict[str, Any]:
        """Call counts, failures per error class and the backoff parameters."""
        return {
            'calls': self.calls,
            'recovered': self.recovered,
            'exhausted': self.exhausted,
            'failures_by_type': dict(self.failures_by_type),
            'max_retries': self.max_retries,
            'backoff_factor': self.backoff_factor,
            'base_delay': self.base_delay,
        }


class RemoteRateLimiter:
    """
    Call-rate limiter shared by concurrent workers.

    Wraps ``ratelimit.limits`` with ``sleep_and_retry`` so that ``acquire``
    blocks until a call slot is free instead of raising. The underlying
    limiter is thread-safe, so one instance is shared by every pipeline that
    talks to the same service during an ensemble run.
    """

    def __init__(self, calls: int = 10, period: float = 1.0, name: Optional[str] = None):
        self.calls = calls
        self.period = period
        self.name = name or 'remote'

        @sleep_and_retry
        @limits(calls=calls, period=period)
        def _slot():
            return None

        self._slot = _slot

    @classmethod
    def from_settings(cls, settings, name: Optional[str] = None) -> 'RemoteRateLimiter':
        return cls(calls=settings.rate_limit_calls, period=settings.rate_limit_period, name=name)

    def acquire(self) -> None:
        """Block until a call is allowed."""
        self._slot()

    def __repr__(self):
        return f"RemoteRateLimiter({self.name}: {self.calls} calls / {self.period}s)"
