"""
Resilient execution of remote operations.

This module defines the remote error taxonomy shared by the adapters and the
executor that runs every remote query and mutation with bounded retries,
exponential backoff with jitter, and page accumulation.
"""

import time
import random
import logging
import functools
from typing import Callable, Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 7


class RemoteError(Exception):
    """Base exception for errors returned by a remote service."""

    def __init__(self, message: str, status_code: Optional[int] = None, reason: Optional[str] = None):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


class RateLimitedError(RemoteError):
    """The remote service asked us to slow down."""
    pass


class ServiceUnavailableError(RemoteError):
    """The remote service or its backend is temporarily unavailable."""
    pass


class NotFoundError(RemoteError):
    """The requested remote object does not exist."""
    pass


class ProtocolError(RemoteError):
    """Any other error response; never retried."""
    pass


class TransportError(RemoteError):
    """Connection-level failure before a protocol response was received."""
    pass


TRANSIENT_ERRORS = (RateLimitedError, ServiceUnavailableError, TransportError)


def backoff_delay(attempt: int, rng: Optional[random.Random] = None) -> float:
    """
    Calculate the delay before retrying after a failed attempt.

    Args:
        attempt: Number of the attempt that just failed (1-based)
        rng: Optional random generator used for the jitter

    Returns:
        Delay in seconds: 2^attempt seconds plus up to one second of jitter
    """
    jitter_ms = (rng or random).randint(0, 1000)
    return ((2 ** attempt) * 1000 + jitter_ms) / 1000.0


class RemoteExecutor:
    """
    Executes remote operations with retry and backoff.

    Rate limits, backend unavailability and transport failures are retried up to
    ``max_attempts`` times. Not-found responses yield ``None``. Any other error
    propagates immediately.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Optional[random.Random] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.max_attempts = max_attempts
        self._sleep = sleep
        self._rng = rng

    def execute(self, operation: Callable[[], Any], description: str = "remote operation") -> Any:
        """
        Run a single logical remote operation.

        Args:
            operation: Zero-argument callable performing the request
            description: Human readable name used in log messages

        Returns:
            The operation's result, or None if the remote object was not found

        Raises:
            RemoteError: The last error once the retry budget is exhausted, or
                any non-transient error immediately
        """
        for attempt in range(1, self.max_attempts + 1):
            logger.debug(f"{description} attempt #{attempt}")

            try:
                result = operation()
                if attempt > 1:
                    logger.info(f"{description} succeeded on attempt {attempt}")
                return result

            except NotFoundError:
                logger.debug(f"{description} - not found")
                return None

            except TRANSIENT_ERRORS as e:
                if attempt == self.max_attempts:
                    logger.error(f"{description} - retried {attempt} times, failing request: {e}")
                    raise

                delay = backoff_delay(attempt, self._rng)
                if isinstance(e, RateLimitedError):
                    logger.warning(f"{description} - rate limit exceeded ({e.reason}), "
                                   f"sleeping {delay:.2f}s before attempt {attempt + 1}")
                elif isinstance(e, ServiceUnavailableError):
                    logger.warning(f"{description} - service unavailable/backend error, "
                                   f"sleeping {delay:.2f}s before attempt {attempt + 1}")
                else:
                    logger.warning(f"{description} - transport error: {e}, "
                                   f"sleeping {delay:.2f}s before attempt {attempt + 1}")

                self._sleep(delay)

    def execute_paged(self, fetch_page: Callable[[Optional[str]], Optional[Dict[str, Any]]],
                      items_key: str, description: str = "paged listing") -> List[Any]:
        """
        Run a paginated listing until the page token is exhausted.

        Args:
            fetch_page: Callable taking the page token (None for the first page)
                and returning the page document
            items_key: Key of the item list inside each page document
            description: Human readable name used in log messages

        Returns:
            Items of every page, in order
        """
        items = []
        page_token = None
        page_count = 0

        while True:
            page = self.execute(functools.partial(fetch_page, page_token),
                                f"{description} (page {page_count + 1})")
            if page is None:
                break

            page_count += 1
            items.extend(page.get(items_key) or [])

            page_token = page.get('nextPageToken')
            if not page_token:
                break

        logger.debug(f"{description} - retrieved {len(items)} items across {page_count} pages")
        return items
