from __future__ import annotations

import datetime as dt
import enum
import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Appointment:
    """One bookable slot as returned by the scheduler API."""

    location_id: int
    start_timestamp: str
    end_timestamp: str = ""
    active: bool = False
    duration: int = 0
    remote_ind: bool = False

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> Appointment:
        return cls(
            # null fields read as their zero value.
            location_id=int(raw.get("locationId") or 0),
            start_timestamp=str(raw.get("startTimestamp") or ""),
            end_timestamp=str(raw.get("endTimestamp") or ""),
            active=bool(raw.get("active")),
            duration=int(raw.get("duration") or 0),
            remote_ind=bool(raw.get("remoteInd")),
        )


@dataclass(frozen=True)
class NotificationPayload:
    topic: str
    message: str
    title: str

    def as_json(self) -> dict[str, str]:
        return {"topic": self.topic, "message": self.message, "title": self.title}


class Availability(enum.Enum):
    AVAILABLE = "available"
    NOT_AVAILABLE = "not_available"


@dataclass(frozen=True)
class ProbeResult:
    availability: Availability
    slot: Appointment | None = None

    @property
    def available(self) -> bool:
        return self.availability is Availability.AVAILABLE


NOT_AVAILABLE = ProbeResult(Availability.NOT_AVAILABLE)


@dataclass(frozen=True)
class LocationOutcome:
    """Result of one location's check inside a fan-out run."""

    location: str
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Subscription:
    id: Any
    location: str
    ntfy_topic: str
    created_at: dt.datetime

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Subscription:
        return cls(
            id=doc["_id"],
            location=str(doc["location"]),
            ntfy_topic=str(doc["ntfyTopic"]),
            created_at=doc["createdAt"],
        )


class CheckError(RuntimeError):
    """Base class for failures of the check-and-notify pipeline."""


class ProbeError(CheckError):
    """The scheduler API could not be queried or its answer was unusable."""


class ApiStatusError(ProbeError):
    def __init__(self, status_code: int):
        super().__init__(f"API returned status {status_code}")
        self.status_code = status_code


class DecodeError(ProbeError):
    """Response body is not a list of appointment slots."""


class RetryExhaustedError(CheckError):
    def __init__(self, attempts: int, reason: str):
        super().__init__(f"failed after {attempts} attempts: {reason}")
        self.attempts = attempts


class RequestFailedError(CheckError):
    def __init__(self, reason: str):
        super().__init__(f"request failed: {reason}")


class StoreError(RuntimeError):
    """Subscriber store call failed."""


@dataclass(frozen=True)
class Response:
    """Outcome of one invocation, shaped after an API Gateway v2 response."""

    status_code: int
    body: dict[str, str] | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def to_lambda(self) -> dict[str, Any]:
        return {
            "statusCode": self.status_code,
            "headers": dict(self.headers),
            "body": json.dumps(self.body) if self.body is not None else "",
        }
