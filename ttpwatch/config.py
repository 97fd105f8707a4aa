from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_SERVICE_TYPE = "Global Entry"

TOPIC_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def parse_minimum_slots(raw: str) -> tuple[int, ...]:
    # MINIMUM_SLOTS is a comma-separated list, e.g. "1,2,3".
    # Non-numeric and non-positive parts are dropped; order is kept.
    result: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        try:
            value = int(part)
        except ValueError:
            continue
        if value > 0:
            result.append(value)

    if not result:
        return (1,)
    return tuple(result)


def is_valid_topic(topic: str) -> bool:
    return bool(TOPIC_PATTERN.match(topic))


@dataclass(frozen=True)
class PersonalSettings:
    location_id: str
    ntfy_topic: str
    service_type: str = DEFAULT_SERVICE_TYPE
    minimum_slots: tuple[int, ...] = (1,)


@dataclass(frozen=True)
class StoreSettings:
    mongodb_uri: str
    database: str = "global-entry-appointment-db"
    collection: str = "subscriptions"


@dataclass(frozen=True)
class Settings:
    # Exactly one of personal/store is set; that decides the mode.
    personal: PersonalSettings | None = None
    store: StoreSettings | None = None

    ntfy_server: str = "https://ntfy.sh"
    scheduler_base_url: str = "https://ttp.cbp.dhs.gov"
    cors_allow_origin: str = "*"

    http_timeout_seconds: float = 10.0
    max_concurrent_checks: int = 10
    check_interval_seconds: int = 300
    log_level: str = "INFO"

    @property
    def is_personal_mode(self) -> bool:
        return self.personal is not None


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _positive_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if value < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return value


def _load_personal() -> PersonalSettings:
    topic = _require("NTFY_TOPIC")
    if not is_valid_topic(topic):
        raise RuntimeError(f"Invalid NTFY_TOPIC value: {topic!r}. Use letters, digits, '-' or '_'.")

    return PersonalSettings(
        location_id=_require("LOCATION_ID"),
        ntfy_topic=topic,
        service_type=os.getenv("SERVICE_TYPE") or DEFAULT_SERVICE_TYPE,
        minimum_slots=parse_minimum_slots(os.getenv("MINIMUM_SLOTS", "1")),
    )


def _load_store() -> StoreSettings:
    return StoreSettings(
        mongodb_uri=_require("MONGODB_URI"),
        database=os.getenv("MONGODB_DATABASE") or "global-entry-appointment-db",
        collection=os.getenv("MONGODB_COLLECTION") or "subscriptions",
    )


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    personal_mode = os.getenv("PERSONAL_MODE", "").strip().lower() == "true"

    timeout_raw = os.getenv("HTTP_TIMEOUT_SECONDS", "10")
    try:
        http_timeout_seconds = float(timeout_raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid HTTP_TIMEOUT_SECONDS value: {timeout_raw!r}") from e
    if http_timeout_seconds <= 0:
        raise RuntimeError("HTTP_TIMEOUT_SECONDS must be > 0")

    return Settings(
        personal=_load_personal() if personal_mode else None,
        store=None if personal_mode else _load_store(),
        ntfy_server=os.getenv("NTFY_SERVER") or "https://ntfy.sh",
        scheduler_base_url=(os.getenv("SCHEDULER_BASE_URL") or "https://ttp.cbp.dhs.gov").rstrip("/"),
        cors_allow_origin=os.getenv("CORS_ALLOW_ORIGIN") or "*",
        http_timeout_seconds=http_timeout_seconds,
        max_concurrent_checks=_positive_int("MAX_CONCURRENT_CHECKS", "10"),
        check_interval_seconds=_positive_int("CHECK_INTERVAL_SECONDS", "300"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    # basicConfig is a no-op when the runtime already installed a handler.
    logging.getLogger().setLevel(level)
