from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Sequence

from ttpwatch.checker import AvailabilityChecker
from ttpwatch.config import DEFAULT_SERVICE_TYPE
from ttpwatch.domain import LocationOutcome

logger = logging.getLogger(__name__)

MAX_CONCURRENT_CHECKS = 10


async def check_all_locations(
    checker: AvailabilityChecker,
    location_topics: Mapping[str, Sequence[str]],
    *,
    service_type: str = DEFAULT_SERVICE_TYPE,
    minimums: Sequence[int] = (1,),
    max_concurrent: int = MAX_CONCURRENT_CHECKS,
) -> list[LocationOutcome]:
    """Check every location concurrently, at most ``max_concurrent`` at a time.

    Waits for all checks. A failing location is logged and reported in its
    outcome; it never cancels or fails its siblings.
    """
    semaphore = asyncio.Semaphore(max_concurrent)

    async def check_with_limit(location_id: str, topics: Sequence[str]) -> LocationOutcome:
        async with semaphore:
            try:
                await checker.check_location(service_type, location_id, topics, minimums)
            except Exception as e:
                logger.error("Failed to check availability (location=%s): %s: %s", location_id, type(e).__name__, e)
                return LocationOutcome(location_id, e)
        return LocationOutcome(location_id)

    tasks = [check_with_limit(location_id, topics) for location_id, topics in location_topics.items()]
    outcomes = list(await asyncio.gather(*tasks))

    failed = sum(1 for o in outcomes if not o.ok)
    logger.info("Fan-out complete: %d locations checked, %d failed", len(outcomes), failed)
    return outcomes
