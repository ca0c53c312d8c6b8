"""
Hotel marketing dashboard core — background entry point.

Creates missing tables and runs the report-cache sweep until interrupted.
The HTTP layer imports ``core.factory.build_services`` instead.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from config.settings import config
from core.factory import Services, build_services
from database.session import init_models

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def sweep_report_cache(services: Services, interval_seconds: float) -> None:
    """Delete expired report cache rows every ``interval_seconds``."""
    while True:
        try:
            await services.report_cache.sweep_expired()
        except Exception:
            logger.exception("Report cache sweep failed")
        await asyncio.sleep(interval_seconds)


async def run() -> None:
    services = build_services(config)
    try:
        logger.info("Creating tables…")
        await init_models(services.engine)

        providers = services.registry.list_configured()
        if providers:
            logger.info("Configured providers: %s", ", ".join(providers))
        else:
            logger.warning("No OAuth providers configured (GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET)")

        logger.info(
            "Report cache sweep running every %ss", config.cache_sweep_interval_seconds
        )
        await sweep_report_cache(services, config.cache_sweep_interval_seconds)
    finally:
        await services.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Shutting down.")
