"""Bounded retry for outbound HTTP calls.

The scheduler probe and the ntfy relay share the same attempt budget and
linear backoff, but disagree on whether a non-2xx answer is worth another
try. Callers pass that decision in as ``is_retryable_status``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from ttpwatch.domain import RequestFailedError, RetryExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
# Wait after attempt n is n * BACKOFF_STEP_SECONDS.
BACKOFF_STEP_SECONDS = 0.1


class RetryableStatusError(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"status {response.status_code}")
        self.response = response


def never_retry_status(status_code: int) -> bool:
    return False


def always_retry_status(status_code: int) -> bool:
    return True


def _short_exc(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    exc = retry_state.outcome.exception()
    if exc is None:
        return None
    return _describe(exc)


def _describe(exc: BaseException) -> str:
    # Type and message only, no traceback between attempts.
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_after_attempt(label: str) -> Callable[[RetryCallState], None]:
    def hook(retry_state: RetryCallState) -> None:
        reason = _short_exc(retry_state)
        if reason:
            logger.warning("%s: attempt %s failed (%s)", label, retry_state.attempt_number, reason)

    return hook


def _log_before_sleep(label: str) -> Callable[[RetryCallState], None]:
    def hook(retry_state: RetryCallState) -> None:
        sleep_seconds = getattr(retry_state.next_action, "sleep", None)
        if sleep_seconds is None:
            return
        logger.debug(
            "%s: sleeping %.1fs before attempt %s",
            label,
            sleep_seconds,
            retry_state.attempt_number + 1,
        )

    return hook


async def send_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    is_retryable_status: Callable[[int], bool],
    attempts: int = DEFAULT_ATTEMPTS,
    backoff_step: float = BACKOFF_STEP_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "request",
    **request_kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transport errors and retryable statuses.

    Returns the first response that is either 2xx or not retryable.
    Raises ``RetryExhaustedError`` once ``attempts`` tries all failed and
    ``RequestFailedError`` for any other httpx error, without retrying.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=backoff_step, increment=backoff_step),
        retry=retry_if_exception_type((httpx.TransportError, RetryableStatusError)),
        after=_log_after_attempt(label),
        before_sleep=_log_before_sleep(label),
        sleep=sleep,
        reraise=True,
    )

    response: httpx.Response | None = None
    try:
        async for attempt in retrying:
            with attempt:
                response = await client.request(method, url, **request_kwargs)
                if not response.is_success and is_retryable_status(response.status_code):
                    raise RetryableStatusError(response)
    except (httpx.TransportError, RetryableStatusError) as e:
        raise RetryExhaustedError(attempts, _describe(e)) from e
    except httpx.HTTPError as e:
        # Not retried: bad content encoding, too many redirects and the like.
        raise RequestFailedError(_describe(e)) from e

    if response is None:
        raise RuntimeError(f"{label}: no attempt was made")
    return response
