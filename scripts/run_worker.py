"""Dedicated continuous dispatcher launcher.

Usage:
  python scripts/run_worker.py

Restarts ``worker_loop`` after a crash, waiting WORKER_RESTART_DELAY_SECONDS
(default 5) between attempts.
"""
from __future__ import annotations

import asyncio
import os, sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import structlog  # noqa: E402

from cafe_scraper.worker import worker_loop  # noqa: E402

logger = structlog.get_logger("run_worker")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


async def _run_forever():
    delay = _env_int("WORKER_RESTART_DELAY_SECONDS", 5)
    while True:
        try:
            await worker_loop()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("worker_crashed", error=str(exc) or type(exc).__name__, restart_in=delay)
        await asyncio.sleep(delay)


def main():  # noqa: D401
    asyncio.run(_run_forever())


if __name__ == "__main__":
    main()
