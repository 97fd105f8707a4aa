from __future__ import annotations

import logging
from typing import Sequence

from ttpwatch.domain import Appointment, CheckError
from ttpwatch.ntfy_notifier import NtfyNotifier
from ttpwatch.prober import AvailabilityProber

logger = logging.getLogger(__name__)


def notification_title(service_type: str) -> str:
    return f"{service_type} Appointment Notification"


def notification_message(service_type: str, location_id: str, start_timestamp: str, minimum: int) -> str:
    return f"{service_type} appointment available at {location_id} on {start_timestamp} (minimum {minimum} slots)"


class AvailabilityChecker:
    def __init__(self, prober: AvailabilityProber, notifier: NtfyNotifier):
        self.prober = prober
        self.notifier = notifier

    async def check_location(
        self,
        service_type: str,
        location_id: str,
        topics: Sequence[str],
        minimums: Sequence[int] = (1,),
    ) -> bool:
        """Probe ``minimums`` in order and notify ``topics`` on the first hit.

        Returns True if a notification round was sent. A probe error does not
        stop the remaining thresholds; if nothing was found the last error is
        raised, otherwise a miss returns False.
        """
        last_error: CheckError | None = None

        for minimum in minimums:
            try:
                result = await self.prober.probe(service_type, location_id, minimum)
            except CheckError as e:
                logger.error("Failed to check minimum (location=%s minimum=%s): %s", location_id, minimum, e)
                last_error = e
                continue

            if result.available and result.slot is not None:
                await self._notify(service_type, location_id, topics, minimum, result.slot)
                return True

        if last_error is not None:
            raise last_error
        return False

    async def _notify(
        self,
        service_type: str,
        location_id: str,
        topics: Sequence[str],
        minimum: int,
        slot: Appointment,
    ) -> None:
        message = notification_message(service_type, location_id, slot.start_timestamp, minimum)
        title = notification_title(service_type)

        sent = 0
        # One at a time, in caller order.
        for topic in topics:
            if await self.notifier.send(topic, message, title):
                sent += 1

        logger.info(
            "Appointment found (location=%s minimum=%s start=%s), notified %d/%d topics",
            location_id,
            minimum,
            slot.start_timestamp,
            sent,
            len(topics),
        )
