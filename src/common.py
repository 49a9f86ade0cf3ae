"""Common utilities for bounded polling and retrying."""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RetryError(Exception):
    """Raised when a condition is still unmet after all retries.

    Attributes:
        attempts: Number of attempts made
        last_error: Last transient error seen by the condition, if any
    """

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


def retry(
    interval: float,
    max_retries: int,
    condition: Callable[[], bool],
    retry_on: tuple[type[BaseException], ...] = (),
) -> None:
    """Call condition until it returns True, sleeping interval between calls.

    The first call happens immediately. Exceptions listed in retry_on are
    treated as "not yet" and remembered; any other exception propagates.

    Args:
        interval: Seconds to sleep between attempts
        max_retries: Attempts after the first one
        condition: Callable returning True when done
        retry_on: Exception types that count as a failed attempt

    Raises:
        ValueError: If max_retries is not positive
        RetryError: If the condition never returned True
    """
    if max_retries <= 0:
        raise ValueError(f"max_retries ({max_retries}) should be > 0")

    last_error: Optional[BaseException] = None
    for attempt in range(max_retries + 1):
        try:
            if condition():
                return
        except retry_on as e:
            last_error = e
            logger.debug(f"Attempt {attempt + 1} failed: {e}")

        if attempt < max_retries:
            time.sleep(interval)

    raise RetryError(
        f"still failing after {max_retries} retries",
        attempts=max_retries + 1,
        last_error=last_error,
    )


def poll_until(
    condition: Callable[[], bool],
    timeout: float,
    interval: float,
    immediate: bool = True,
) -> bool:
    """Poll condition every interval seconds until it holds or timeout elapses.

    Exceptions from condition propagate and end the poll.

    Returns:
        True if the condition was met, False on timeout
    """
    start = time.monotonic()
    if not immediate:
        time.sleep(interval)
    while True:
        if condition():
            return True
        if time.monotonic() - start + interval > timeout:
            return False
        time.sleep(interval)
