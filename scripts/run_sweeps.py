#!/usr/bin/env python3
"""
Run the checkout maintenance sweeps once.

For deployments that set RUN_BACKGROUND_SWEEPS=false and schedule sweeps
externally, e.g. via cron:
    * * * * * cd /src && python -m scripts.run_sweeps reservations
    0 3 * * * cd /src && python -m scripts.run_sweeps carts

Each sweep takes a Redis lock, so overlapping runs on several hosts are safe.
"""
import argparse
import asyncio

from storefront.app.core.database import async_session
from storefront.app.core.logging import setup_logging
from storefront.app.core.settings import get_settings
from storefront.app.services.cache import CacheService
from storefront.app.services.sweeps import run_cart_sweep, run_reservation_sweep

SWEEPS = {
    "reservations": run_reservation_sweep,
    "carts": run_cart_sweep,
}


async def run(names: list[str]) -> None:
    redis = await CacheService.get_redis()
    cache = CacheService(redis)
    try:
        for name in names:
            result = await SWEEPS[name](async_session, cache)
            print(f"{name}: {result}")
    finally:
        await CacheService.close()


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("sweeps", nargs="*", help=f"Sweeps to run: {', '.join(sorted(SWEEPS))} (default: all)")
    args = parser.parse_args()
    unknown = [name for name in args.sweeps if name not in SWEEPS]
    if unknown:
        parser.error(f"unknown sweep(s): {', '.join(unknown)}")

    settings = get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)
    asyncio.run(run(args.sweeps or sorted(SWEEPS)))


if __name__ == "__main__":
    main()
