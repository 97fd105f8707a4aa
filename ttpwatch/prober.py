from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import httpx

from ttpwatch.domain import (
    NOT_AVAILABLE,
    ApiStatusError,
    Appointment,
    Availability,
    DecodeError,
    ProbeError,
    ProbeResult,
    RequestFailedError,
    RetryExhaustedError,
)
from ttpwatch.retry import DEFAULT_ATTEMPTS, never_retry_status, send_with_retry

logger = logging.getLogger(__name__)

BASE_URL = "https://ttp.cbp.dhs.gov"

NEXUS = "NEXUS"


def build_appointment_url(service_type: str, location_id: str, minimum: int, *, base_url: str = BASE_URL) -> str:
    if service_type == NEXUS and not location_id:
        # Without a location NEXUS is queried across all of its centers.
        return f"{base_url}/schedulerapi/slots/asLocations?minimum={minimum}&limit=5&serviceName=NEXUS"
    # Global Entry, located NEXUS and anything unrecognized share one shape.
    return f"{base_url}/schedulerapi/slots?orderBy=soonest&limit=1&locationId={location_id}&minimum={minimum}"


def parse_appointments(body: bytes) -> list[Appointment]:
    try:
        raw = json.loads(body)
    except ValueError as e:
        raise DecodeError(f"failed to decode response: {e}") from e

    if raw is None:
        # A null body carries no slots.
        return []
    if not isinstance(raw, list):
        raise DecodeError(f"failed to decode response: expected a list, got {type(raw).__name__}")

    try:
        return [Appointment.from_json(item) for item in raw]
    except (AttributeError, TypeError, ValueError) as e:
        raise DecodeError(f"failed to decode response: {e}") from e


class AvailabilityProber:
    """Asks the scheduler API whether a location has ``minimum`` free slots."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str = BASE_URL,
        attempts: int = DEFAULT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._attempts = attempts
        self._sleep = sleep

    def url_for(self, service_type: str, location_id: str, minimum: int) -> str:
        return build_appointment_url(service_type, location_id, minimum, base_url=self._base_url)

    async def probe(self, service_type: str, location_id: str, minimum: int) -> ProbeResult:
        url = self.url_for(service_type, location_id, minimum)

        try:
            response = await send_with_retry(
                self._client,
                "GET",
                url,
                is_retryable_status=never_retry_status,
                attempts=self._attempts,
                sleep=self._sleep,
                label=f"probe location={location_id} minimum={minimum}",
            )
        except (RetryExhaustedError, RequestFailedError) as e:
            raise ProbeError(str(e)) from e

        if not response.is_success:
            logger.warning(
                "Non-OK status from scheduler API (location=%s minimum=%s status=%s)",
                location_id,
                minimum,
                response.status_code,
            )
            raise ApiStatusError(response.status_code)

        appointments = parse_appointments(response.content)

        # Only the soonest slot is consulted; a later active slot behind an
        # inactive first one still reads as "not available".
        if appointments and appointments[0].active:
            return ProbeResult(Availability.AVAILABLE, appointments[0])
        return NOT_AVAILABLE
