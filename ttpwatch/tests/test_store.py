from __future__ import annotations

import datetime as dt
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import PyMongoError

from ttpwatch.domain import StoreError, Subscription
from ttpwatch.store import SubscriptionStore, expiry_window

UTC = dt.timezone.utc


def test_expiry_window_floors_to_five_minutes() -> None:
    now = dt.datetime(2025, 6, 30, 12, 7, 30, tzinfo=UTC)

    start, end = expiry_window(now)

    assert start == dt.datetime(2025, 5, 31, 12, 5, tzinfo=UTC)
    assert end == dt.datetime(2025, 5, 31, 12, 10, tzinfo=UTC)


def test_expiry_window_on_boundary_starts_there() -> None:
    now = dt.datetime(2025, 6, 30, 12, 10, tzinfo=UTC)

    start, _ = expiry_window(now)

    assert start == dt.datetime(2025, 5, 31, 12, 10, tzinfo=UTC)


def test_expiry_window_treats_naive_time_as_utc() -> None:
    aware = expiry_window(dt.datetime(2025, 6, 30, 12, 7, tzinfo=UTC))
    naive = expiry_window(dt.datetime(2025, 6, 30, 12, 7))
    assert aware == naive


def test_expiry_bucket_boundary_membership() -> None:
    now = dt.datetime(2025, 6, 30, 12, 7, 30, tzinfo=UTC)
    start, end = expiry_window(now)

    created_exactly_30_days_ago = now - dt.timedelta(days=30)
    created_just_before_bucket = start - dt.timedelta(seconds=1)

    assert start <= created_exactly_30_days_ago < end
    assert not (start <= created_just_before_bucket < end)


def _collection() -> MagicMock:
    collection = MagicMock()
    collection.count_documents = AsyncMock(return_value=0)
    collection.insert_one = AsyncMock()
    collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
    collection.create_index = AsyncMock()
    return collection


@pytest.mark.asyncio
async def test_expiring_queries_the_bucket() -> None:
    now = dt.datetime(2025, 6, 30, 12, 7, 30, tzinfo=UTC)
    start, end = expiry_window(now)
    collection = _collection()
    collection.find.return_value.to_list = AsyncMock(
        return_value=[{"_id": "id-1", "location": "5300", "ntfyTopic": "t1", "createdAt": start}]
    )

    subs = await SubscriptionStore(collection).expiring(now)

    collection.find.assert_called_once_with({"createdAt": {"$gte": start, "$lt": end}})
    assert [(s.id, s.location, s.ntfy_topic) for s in subs] == [("id-1", "5300", "t1")]


@pytest.mark.asyncio
async def test_location_topics_groups_by_location() -> None:
    collection = _collection()
    cursor = MagicMock()
    cursor.to_list = AsyncMock(
        return_value=[
            {"_id": "5300", "ntfyTopics": ["a", "b"]},
            {"_id": "5020", "ntfyTopics": ["c"]},
        ]
    )
    collection.aggregate = AsyncMock(return_value=cursor)

    result = await SubscriptionStore(collection).location_topics()

    assert result == {"5300": ["a", "b"], "5020": ["c"]}
    pipeline = collection.aggregate.call_args.args[0]
    assert pipeline == [{"$group": {"_id": "$location", "ntfyTopics": {"$push": "$ntfyTopic"}}}]


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe() -> None:
    collection = _collection()
    store = SubscriptionStore(collection)
    now = dt.datetime(2025, 1, 1, tzinfo=UTC)

    assert await store.exists("5300", "t1") is False
    await store.subscribe("5300", "t1", now)
    collection.insert_one.assert_awaited_once_with({"location": "5300", "ntfyTopic": "t1", "createdAt": now})

    assert await store.unsubscribe("5300", "t1") is True
    collection.delete_one.return_value = MagicMock(deleted_count=0)
    assert await store.unsubscribe("5300", "t1") is False


@pytest.mark.asyncio
async def test_ensure_indexes_makes_pair_unique() -> None:
    collection = _collection()

    await SubscriptionStore(collection).ensure_indexes()

    args, kwargs = collection.create_index.call_args
    assert args[0] == [("location", 1), ("ntfyTopic", 1)]
    assert kwargs == {"unique": True}


@pytest.mark.asyncio
async def test_driver_errors_become_store_errors() -> None:
    collection = _collection()
    collection.count_documents = AsyncMock(side_effect=PyMongoError("connection refused"))

    with pytest.raises(StoreError, match="failed to check existing subscription"):
        await SubscriptionStore(collection).exists("5300", "t1")


@pytest.mark.asyncio
async def test_expiring_includes_bucket_start_and_excludes_just_before(fake_store) -> None:
    now = dt.datetime(2025, 6, 30, 12, 7, 30, tzinfo=UTC)
    start, end = expiry_window(now)
    fake_store.subscriptions = [
        Subscription("at-start", "5300", "t1", start),
        Subscription("before", "5300", "t2", start - dt.timedelta(seconds=1)),
        Subscription("at-end", "5300", "t3", end),
    ]

    expiring = await fake_store.expiring(now)

    assert [s.id for s in expiring] == ["at-start"]
