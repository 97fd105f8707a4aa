"""MongoDB-backed subscriber records.

Each document is one (location, ntfyTopic) pair plus its creation time:

    {"_id": ObjectId, "location": "5300", "ntfyTopic": "my-topic", "createdAt": datetime}
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
from typing import Any, Iterator

from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import PyMongoError

from ttpwatch.config import StoreSettings
from ttpwatch.domain import StoreError, Subscription

logger = logging.getLogger(__name__)

SUBSCRIPTION_TTL = dt.timedelta(days=30)
EXPIRY_BUCKET = dt.timedelta(minutes=5)

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


def expiry_window(now: dt.datetime) -> tuple[dt.datetime, dt.datetime]:
    """Return the [start, end) bucket of subscriptions expiring at ``now``.

    ``now - 30 days`` is floored to its 5-minute boundary; a tick every five
    minutes therefore sweeps each subscription exactly once.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt.timezone.utc)
    threshold = now.astimezone(dt.timezone.utc) - SUBSCRIPTION_TTL
    start = threshold - (threshold - _EPOCH) % EXPIRY_BUCKET
    return start, start + EXPIRY_BUCKET


@contextlib.contextmanager
def _store_call(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as e:
        raise StoreError(f"failed to {operation}: {e}") from e


class SubscriptionStore:
    def __init__(self, collection: Any, client: AsyncMongoClient | None = None):
        self._collection = collection
        self._client = client

    @classmethod
    def connect(cls, settings: StoreSettings) -> SubscriptionStore:
        # The client connects lazily on first operation.
        client: AsyncMongoClient = AsyncMongoClient(
            settings.mongodb_uri,
            tz_aware=True,
            connectTimeoutMS=10_000,
            serverSelectionTimeoutMS=10_000,
        )
        collection = client[settings.database][settings.collection]
        logger.info("Using MongoDB collection %s.%s", settings.database, settings.collection)
        return cls(collection, client)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def ensure_indexes(self) -> None:
        with _store_call("create subscription index"):
            await self._collection.create_index(
                [("location", ASCENDING), ("ntfyTopic", ASCENDING)],
                unique=True,
            )

    async def location_topics(self) -> dict[str, list[str]]:
        pipeline = [{"$group": {"_id": "$location", "ntfyTopics": {"$push": "$ntfyTopic"}}}]
        with _store_call("execute aggregation"):
            cursor = await self._collection.aggregate(pipeline)
            docs = await cursor.to_list(None)
        return {str(doc["_id"]): list(doc["ntfyTopics"]) for doc in docs}

    async def expiring(self, now: dt.datetime) -> list[Subscription]:
        start, end = expiry_window(now)
        with _store_call("find expiring subscriptions"):
            docs = await self._collection.find({"createdAt": {"$gte": start, "$lt": end}}).to_list(None)
        return [Subscription.from_document(doc) for doc in docs]

    async def delete(self, subscription_id: Any) -> None:
        with _store_call("delete subscription"):
            await self._collection.delete_one({"_id": subscription_id})

    async def exists(self, location: str, topic: str) -> bool:
        with _store_call("check existing subscription"):
            count = await self._collection.count_documents({"location": location, "ntfyTopic": topic})
        return count > 0

    async def subscribe(self, location: str, topic: str, now: dt.datetime) -> None:
        with _store_call("insert subscription"):
            await self._collection.insert_one({"location": location, "ntfyTopic": topic, "createdAt": now})

    async def unsubscribe(self, location: str, topic: str) -> bool:
        with _store_call("delete subscription"):
            result = await self._collection.delete_one({"location": location, "ntfyTopic": topic})
        return result.deleted_count > 0
