"""
Bounded retries for transient directory failures.

Only exceptions listed in ``retry_on`` (by default anything marked
``RetryableError``, i.e. directory timeouts) are retried. Nothing in the
session layer reconnects on its own; ``open_session`` is the one caller.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional, Dict

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Marker base for failures worth another attempt."""


class MaxRetriesExceeded(Exception):
    """All attempts failed; ``last_exception`` is the final failure."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Gave up after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable[[], Any],
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    retry_on: Tuple[Type[Exception], ...] = (RetryableError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call ``func`` until it succeeds or ``attempts`` calls have failed.

    Args:
        func: Zero-argument callable; each call must be a fresh attempt
        attempts: Total number of calls, including the first
        delay: Seconds to wait before the second call
        backoff: Factor applied to the wait after each failure
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately
        on_retry: Called with (attempt number, exception) before each wait

    Raises:
        MaxRetriesExceeded: If every attempt raised one of ``retry_on``
    """
    attempts = max(1, attempts)
    wait = delay
    failure = None

    for attempt in range(1, attempts + 1):
        try:
            outcome = func()
        except retry_on as e:
            failure = e
            if attempt == attempts:
                break
            if on_retry is not None:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback raised {callback_error!r}; continuing")
            logger.debug(f"Attempt {attempt}/{attempts} failed, next in {wait:.1f}s")
            time.sleep(wait)
            wait *= backoff
        else:
            if attempt > 1:
                logger.info(f"Succeeded on attempt {attempt}/{attempts}")
            return outcome

    raise MaxRetriesExceeded(attempts, failure)


def retry_settings(error_handling: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    ``retry_call`` keyword arguments from the ``error_handling`` config section.

    ``max_retries`` counts retries, so the attempt count is one more.
    """
    error_handling = error_handling or {}
    return {
        'attempts': int(error_handling.get('max_retries', 2)) + 1,
        'delay': float(error_handling.get('retry_wait_seconds', 2)),
        'backoff': float(error_handling.get('retry_backoff', 1.0)),
    }


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Callback that logs each failed attempt of ``operation_name`` as a warning."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name}: attempt {attempt} failed "
                       f"({type(exception).__name__}: {exception}); retrying")

    return on_retry
