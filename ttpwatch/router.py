"""Entry point for scheduled and HTTP invocations.

A timer tick (``{"source": "aws.events", ...}``) runs the availability
check. In multi-user mode an API Gateway v2 HTTP event may also manage
subscriptions::

    POST /subscriptions
    {"action": "subscribe" | "unsubscribe", "location": "5300", "ntfyTopic": "my-topic"}
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import datetime as dt
import json
import logging
from typing import Any, Callable

from ttpwatch.config import Settings, is_valid_topic, load_settings, setup_logging
from ttpwatch.domain import Response, StoreError
from ttpwatch.worker import Worker

logger = logging.getLogger(__name__)

TIMER_SOURCE = "aws.events"

# Leave the runtime some time to serialize the response.
DEADLINE_MARGIN_SECONDS = 0.5


def cors_headers(allow_origin: str) -> dict[str, str]:
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }
    # Browsers reject credentials with a wildcard origin.
    if allow_origin != "*":
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def is_timer_event(event: dict[str, Any]) -> bool:
    return event.get("source") == TIMER_SOURCE


def _http_method(event: dict[str, Any]) -> str | None:
    request_context = event.get("requestContext")
    if not isinstance(request_context, dict):
        return None
    http_info = request_context.get("http")
    if not isinstance(http_info, dict):
        return None
    method = http_info.get("method")
    return method.upper() if isinstance(method, str) else None


def _request_body(event: dict[str, Any]) -> str:
    body = event.get("body") or ""
    if not isinstance(body, str):
        return ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return ""
    return body


class EventRouter:
    def __init__(self, worker: Worker, *, now: Callable[[], dt.datetime] | None = None):
        self.worker = worker
        self.settings: Settings = worker.settings
        self._now = now or (lambda: dt.datetime.now(dt.timezone.utc))
        self._cors = cors_headers(self.settings.cors_allow_origin)

    def _web(self, status_code: int, body: dict[str, str] | None = None) -> Response:
        return Response(status_code, body, self._cors)

    async def handle(self, event: Any) -> Response:
        if isinstance(event, (str, bytes)):
            try:
                event = json.loads(event)
            except ValueError:
                event = None

        if not isinstance(event, dict):
            logger.error("Failed to parse event as JSON object")
            if self.settings.is_personal_mode:
                return Response(400, {"error": "personal mode only handles scheduled events"})
            return self._web(400, {"error": "invalid event format"})

        if self.settings.is_personal_mode:
            if is_timer_event(event):
                return await self.worker.run_personal_check()
            return Response(400, {"error": "personal mode only handles scheduled events"})

        return await self._handle_multi_user(event)

    async def _handle_multi_user(self, event: dict[str, Any]) -> Response:
        if is_timer_event(event):
            return await self.worker.run_multi_user_tick(self._now())

        method = _http_method(event)
        if method == "OPTIONS":
            return self._web(200)

        raw_path = event.get("rawPath")
        if isinstance(raw_path, str):
            if method is None:
                logger.error("Missing requestContext.http.method in event")
                return self._web(400, {"error": "invalid event format"})
            if method == "POST" and raw_path.endswith("/subscriptions"):
                return await self._handle_subscription_request(_request_body(event))

        logger.error("Unsupported event type (keys=%s)", sorted(event))
        return self._web(400, {"error": "unsupported event type"})

    async def _handle_subscription_request(self, body: str) -> Response:
        if not body:
            logger.error("Invalid request: missing body")
            return self._web(400, {"error": "missing request body"})

        try:
            request = json.loads(body)
        except ValueError:
            request = None
        if not isinstance(request, dict):
            logger.error("Failed to parse request body")
            return self._web(400, {"error": "invalid request body"})

        action = request.get("action")
        location = request.get("location")
        topic = request.get("ntfyTopic")
        if not all(isinstance(v, str) and v for v in (action, location, topic)):
            logger.error("Invalid subscription request: missing required fields")
            return self._web(400, {"error": "missing required fields"})

        if not is_valid_topic(topic):
            return self._web(400, {"error": "Ntfy Topic must not contain spaces or special characters"})

        logger.info("Handling subscription request (action=%s location=%s)", action, location)
        try:
            if action == "subscribe":
                return await self._subscribe(location, topic)
            if action == "unsubscribe":
                return await self._unsubscribe(location, topic)
        except StoreError as e:
            logger.error("Subscription request failed (action=%s location=%s): %s", action, location, e)
            return self._web(500, {"error": "internal server error"})

        return self._web(400, {"error": "invalid action, use subscribe or unsubscribe"})

    async def _subscribe(self, location: str, topic: str) -> Response:
        store = self.worker.require_store()
        if await store.exists(location, topic):
            return self._web(400, {"error": "subscription already exists"})

        await store.subscribe(location, topic, self._now())
        logger.info("Added subscription (location=%s topic=%s)", location, topic)
        return self._web(200, {"message": "Subscribed successfully"})

    async def _unsubscribe(self, location: str, topic: str) -> Response:
        store = self.worker.require_store()
        if not await store.unsubscribe(location, topic):
            return self._web(404, {"error": "subscription not found"})

        logger.info("Removed subscription (location=%s topic=%s)", location, topic)
        return self._web(200, {"message": "Unsubscribed successfully"})


async def handle_with_deadline(router: EventRouter, event: Any, timeout_seconds: float | None) -> Response:
    try:
        if timeout_seconds is None:
            return await router.handle(event)
        return await asyncio.wait_for(router.handle(event), timeout_seconds)
    except asyncio.TimeoutError:
        logger.error("Invocation deadline exceeded after %.1fs", timeout_seconds)
    except Exception as e:
        logger.error("Invocation failed (%s: %s)", type(e).__name__, e, exc_info=True)
    return Response(500, {"error": "internal server error"})


def _remaining_seconds(context: Any) -> float | None:
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return None
    return max(get_remaining() / 1000.0 - DEADLINE_MARGIN_SECONDS, 0.0)


# Reused across warm invocations of the same process.
_runner: asyncio.Runner | None = None
_router: EventRouter | None = None


def _get_router() -> tuple[asyncio.Runner, EventRouter]:
    global _runner, _router
    if _runner is None or _router is None:
        settings = load_settings()
        setup_logging(settings.log_level)
        _runner = asyncio.Runner()
        worker = Worker.from_settings(settings)
        if worker.store is not None:
            try:
                _runner.run(worker.store.ensure_indexes())
            except StoreError as e:
                logger.warning("Could not ensure subscription indexes: %s", e)
        _router = EventRouter(worker)
    return _runner, _router


def lambda_handler(event: Any, context: Any = None) -> dict[str, Any]:
    runner, router = _get_router()
    response = runner.run(handle_with_deadline(router, event, _remaining_seconds(context)))
    return response.to_lambda()
