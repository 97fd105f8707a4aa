import argparse
import asyncio
import logging

from ttpwatch.config import Settings, load_settings, setup_logging
from ttpwatch.worker import Worker, run_forever

logger = logging.getLogger(__name__)


async def _run(settings: Settings, *, once: bool) -> int:
    worker = Worker.from_settings(settings)
    try:
        if once:
            response = await worker.run_tick()
            logger.info("Check finished (status=%s body=%s)", response.status_code, response.body)
            return 0 if response.status_code == 200 else 1

        await run_forever(worker, settings.check_interval_seconds)
        return 0
    finally:
        await worker.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="ttpwatch: Global Entry / NEXUS appointment watcher")
    parser.add_argument("--once", action="store_true", help="Run single check and exit")
    args = parser.parse_args()

    settings = load_settings()
    setup_logging(settings.log_level)
    logger.info(
        "Starting in %s mode (%s)",
        "personal" if settings.is_personal_mode else "multi-user",
        "once" if args.once else f"interval={settings.check_interval_seconds}s",
    )

    try:
        return asyncio.run(_run(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("Stopped")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
