from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Awaitable, Callable

import httpx

from ttpwatch.checker import AvailabilityChecker
from ttpwatch.config import DEFAULT_SERVICE_TYPE, Settings
from ttpwatch.domain import CheckError, Response, StoreError
from ttpwatch.fanout import check_all_locations
from ttpwatch.ntfy_notifier import NtfyNotifier
from ttpwatch.prober import AvailabilityProber
from ttpwatch.store import SubscriptionStore

logger = logging.getLogger(__name__)


def expiration_title(service_type: str) -> str:
    return f"{service_type} Subscription Expired"


def expiration_message(service_type: str) -> str:
    return f"Your {service_type} appointment subscription has expired."


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Worker:
    """Runs one timer tick in either personal or multi-user mode."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        store: SubscriptionStore | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not settings.is_personal_mode and store is None:
            raise RuntimeError("Multi-user mode requires a subscription store")

        self.settings = settings
        self.client = client
        self.store = store
        self.notifier = NtfyNotifier(client, settings.ntfy_server, sleep=sleep)
        self.checker = AvailabilityChecker(
            AvailabilityProber(client, base_url=settings.scheduler_base_url, sleep=sleep),
            self.notifier,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> Worker:
        # One client for every concurrent check.
        client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

        store = None
        if settings.store is not None:
            store = SubscriptionStore.connect(settings.store)
        else:
            logger.info("Running in personal mode, no subscription store needed")

        return cls(settings, client, store)

    async def aclose(self) -> None:
        await self.client.aclose()
        if self.store is not None:
            await self.store.close()

    def require_store(self) -> SubscriptionStore:
        if self.store is None:
            raise RuntimeError("Subscription store is only available in multi-user mode")
        return self.store

    async def run_tick(self, now: dt.datetime | None = None) -> Response:
        if self.settings.is_personal_mode:
            return await self.run_personal_check()
        return await self.run_multi_user_tick(now)

    async def run_personal_check(self) -> Response:
        personal = self.settings.personal
        if personal is None:
            raise RuntimeError("Personal check requires personal mode settings")

        try:
            await self.checker.check_location(
                personal.service_type,
                personal.location_id,
                [personal.ntfy_topic],
                personal.minimum_slots,
            )
        except CheckError as e:
            logger.error(
                "Failed to check availability in personal mode (location=%s minimums=%s): %s",
                personal.location_id,
                list(personal.minimum_slots),
                e,
            )
            return Response(500, {"error": "failed to check availability"})

        return Response(200, {"message": "personal mode check completed"})

    async def sweep_expired(self, now: dt.datetime) -> int:
        """Notify and delete subscriptions that turned 30 days old in this bucket.

        Listing failures raise ``StoreError``; notify and delete failures are
        only logged.
        """
        store = self.require_store()
        subscriptions = await store.expiring(now)

        for sub in subscriptions:
            await self.notifier.send(
                sub.ntfy_topic,
                expiration_message(DEFAULT_SERVICE_TYPE),
                expiration_title(DEFAULT_SERVICE_TYPE),
            )
            try:
                await store.delete(sub.id)
            except StoreError as e:
                logger.error("Failed to delete subscription (id=%s): %s", sub.id, e)
            else:
                logger.info("Deleted expired subscription (id=%s)", sub.id)

        return len(subscriptions)

    async def run_multi_user_tick(self, now: dt.datetime | None = None) -> Response:
        store = self.require_store()
        now = now or _utcnow()

        try:
            await self.sweep_expired(now)
        except StoreError as e:
            logger.error("Failed to handle expiring subscriptions: %s", e)
            return Response(500, {"error": "failed to handle expiring subscriptions"})

        try:
            location_topics = await store.location_topics()
        except StoreError as e:
            logger.error("Failed to load subscriptions: %s", e)
            return Response(500, {"error": "failed to load subscriptions"})

        await check_all_locations(
            self.checker,
            location_topics,
            service_type=DEFAULT_SERVICE_TYPE,
            max_concurrent=self.settings.max_concurrent_checks,
        )
        return Response(200, {"message": "scheduled event processed"})


async def run_forever(worker: Worker, interval_seconds: float) -> None:
    logger.info("Worker started. Interval=%ss", interval_seconds)
    while True:
        try:
            response = await worker.run_tick()
            if response.status_code != 200:
                logger.error("Tick failed (status=%s body=%s)", response.status_code, response.body)
        except Exception as e:
            logger.error("Tick failed in run_forever (%s: %s)", type(e).__name__, e)
        await asyncio.sleep(interval_seconds)
