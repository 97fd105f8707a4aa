from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from ttpwatch.domain import NotificationPayload, RequestFailedError, RetryExhaustedError
from ttpwatch.retry import DEFAULT_ATTEMPTS, always_retry_status, send_with_retry

logger = logging.getLogger(__name__)


class NtfyNotifier:
    """Publishes messages to an ntfy relay (JSON publishing, topic in the body)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        server_url: str,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self._server_url = server_url
        self._attempts = attempts
        self._sleep = sleep

    async def send(self, topic: str, message: str, title: str) -> bool:
        """Deliver one message to the relay.

        Returns False when every attempt failed; never raises for relay or
        network failures so callers can move on to the next recipient.
        """
        payload = NotificationPayload(topic=topic, message=message, title=title)

        try:
            await send_with_retry(
                self._client,
                "POST",
                self._server_url,
                is_retryable_status=always_retry_status,
                attempts=self._attempts,
                sleep=self._sleep,
                label=f"ntfy topic={topic}",
                json=payload.as_json(),
            )
        except (RetryExhaustedError, RequestFailedError) as e:
            logger.error("Failed to send ntfy notification (topic=%s): %s", topic, e)
            return False

        logger.info("Sent notification (topic=%s)", topic)
        return True
