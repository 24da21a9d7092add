"""HTTP client that retries a single verification request.

State machine: IDLE -> REQUESTING -> SUCCESS, or REQUESTING -> RETRYING ->
REQUESTING ... -> EXHAUSTED once the retry policy gives up.
"""

import logging
import time
from typing import Any, Callable, Iterable, Optional

import httpx
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from meshharness.harness.errors import RequestFailure
from meshharness.harness.models import RequestState, RetrySpec
from meshharness.settings import settings

logger = logging.getLogger(__name__)


def assert_contains(values: Iterable[Any], expected: Any) -> None:
    """Raise AssertionError unless ``expected`` is one of ``values``."""
    values = list(values)
    if expected not in values:
        raise AssertionError(f"{expected!r} not found in {values!r}")


class VerifyingClient:
    """Issue one HTTP request under a fixed-delay retry policy."""

    def __init__(
        self,
        retry: Optional[RetrySpec] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retry = retry or RetrySpec(
            max_attempts=settings.retry_attempts,
            delay_seconds=settings.retry_delay,
        )
        self._client = http_client or httpx.Client(timeout=timeout or settings.request_timeout)
        self._sleep = sleep
        self.state = RequestState.IDLE
        self.attempts = 0

    def __enter__(self) -> "VerifyingClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def request(
        self,
        url: str,
        method: str = "GET",
        decode: Optional[Callable[[httpx.Response], Any]] = None,
    ) -> Any:
        """Send the request until it succeeds or the retry policy is exhausted.

        A non-2xx status and a failing ``decode`` both count as failures.

        Returns:
            The response, or ``decode(response)`` when a decoder is given.

        Raises:
            RequestFailure: With the last failure chained as its cause.
        """
        self.state = RequestState.IDLE
        self.attempts = 0

        def _attempt() -> Any:
            self.attempts += 1
            self.state = RequestState.REQUESTING
            response = self._client.request(method, url)
            response.raise_for_status()
            return decode(response) if decode else response

        retrying = Retrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_fixed(self.retry.delay_seconds),
            retry=retry_if_exception(self.retry.should_retry),
            before_sleep=self._before_retry,
            sleep=self._sleep,
        )

        try:
            result = retrying(_attempt)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            self.state = RequestState.EXHAUSTED
            logger.error(f"{method} {url} exhausted after {self.attempts} attempt(s)")
            raise RequestFailure(url, self.attempts, last_error, method) from last_error
        except Exception as e:
            # Failure the retry predicate declined to retry
            self.state = RequestState.EXHAUSTED
            raise RequestFailure(url, self.attempts, e, method) from e

        self.state = RequestState.SUCCESS
        return result

    def get_json(self, url: str) -> Any:
        """GET ``url`` and decode its JSON body."""
        return self.request(url, "GET", decode=lambda response: response.json())

    def verify_contains(self, url: str, expected: Any) -> list:
        """GET a JSON array and assert that ``expected`` is one of its items."""
        body = self.get_json(url)
        if not isinstance(body, list):
            raise AssertionError(f"Expected a JSON array from {url}, got {type(body).__name__}")
        assert_contains(body, expected)
        return body

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self.state = RequestState.RETRYING
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Attempt {retry_state.attempt_number}/{self.retry.max_attempts} failed: {error!r}, "
            f"retrying in {self.retry.delay_seconds}s"
        )
