"""REFRESH_CAFES maintenance job: sync the joined-cafe list into ``cafe_memberships``.

Opens the joined-cafe home with the stored session, collects cafe anchors, derives
cafe ids (numeric ``/ca-fe/cafes/<id>`` or legacy ``/<slug>``) and upserts them.

Usage:
    cafe-refresh-cafes            # refresh now, no job record
    cafe-refresh-cafes <jobId>    # run a queued REFRESH_CAFES job through its lifecycle
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence
from urllib.parse import urlparse

import structlog

from .bootstrap import SCRAPE_JOBS_TOTAL, AppContext, bootstrap
from .core.errors import JobNotFound, SessionExpired
from .core.ids import cafe_url, is_numeric_id
from .runtime.models import JobStatus, JobType, ScrapeJob, utcnow
from .session import StorageState, load_storage_state, open_browser_page

logger = structlog.get_logger(__name__)

JOINED_CAFES_URL = "https://section.cafe.naver.com/ca-fe/home"
_ANCHORS_JS = """els => els.map(el => ({ href: el.href || '', name: (el.textContent || '').trim() }))"""


@dataclass(slots=True)
class JoinedCafe:
    cafe_id: str
    name: str
    url: str


def extract_cafe_id(url: str | None) -> Optional[str]:
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return None
    if parsed.hostname != "cafe.naver.com":
        return None
    path = parsed.path.lstrip("/").strip()
    if not path or "article" in path.lower():
        return None
    parts = path.split("/")
    if len(parts) >= 3 and parts[0].lower() == "ca-fe" and parts[1].lower() == "cafes" and is_numeric_id(parts[2]):
        return parts[2]
    if "/" in path.rstrip("/") or path.endswith(".nhn"):
        return None
    return path.rstrip("/")


def joined_cafes_from_anchors(anchors: Sequence[dict[str, Any]]) -> list[JoinedCafe]:
    unique: dict[str, JoinedCafe] = {}
    for item in anchors:
        cafe_id = extract_cafe_id(item.get("href"))
        if not cafe_id or cafe_id in unique:
            continue
        name = (item.get("name") or "").strip() or cafe_id
        unique[cafe_id] = JoinedCafe(cafe_id=cafe_id, name=name, url=cafe_url(cafe_id))
    return sorted(unique.values(), key=lambda c: c.name)


async def fetch_joined_cafes(settings, storage_state: StorageState) -> list[JoinedCafe]:
    async with open_browser_page(settings, storage_state) as page:
        await page.goto(JOINED_CAFES_URL, wait_until="domcontentloaded", timeout=settings.navigation_timeout_ms)
        await asyncio.sleep(settings.page_settle_ms / 1000.0)
        if "nidlogin" in (page.url or ""):
            raise SessionExpired("cafe session expired: upload a fresh storage state")
        anchors = await page.eval_on_selector_all("a[href*='cafe.naver.com']", _ANCHORS_JS)
    return joined_cafes_from_anchors(anchors or [])


def store_memberships(cafe_store, cafes: Sequence[JoinedCafe]) -> int:
    for cafe in cafes:
        cafe_store.upsert_membership(cafe.cafe_id, cafe.name, cafe.url)
    return len(cafes)


CafeFetcher = Callable[[StorageState], Awaitable[list[JoinedCafe]]]


async def refresh_memberships(ctx: AppContext, fetcher: CafeFetcher | None = None) -> int:
    storage_state = load_storage_state(ctx.settings, ctx.store.settings)
    if fetcher is None:
        cafes = await fetch_joined_cafes(ctx.settings, storage_state)
    else:
        cafes = await fetcher(storage_state)
    count = store_memberships(ctx.store.cafes, cafes)
    logger.info("cafes_refreshed", fetched=count)
    return count


async def run_refresh_job(ctx: AppContext, job_id: str, fetcher: CafeFetcher | None = None) -> ScrapeJob:
    """QUEUED -> RUNNING -> SUCCESS | FAILED. Re-raises the failure after recording it."""
    jobs = ctx.store.jobs
    job = jobs.get(job_id)
    if job is None:
        raise JobNotFound(f"job {job_id} does not exist")
    if job.job_type is not JobType.REFRESH_CAFES:
        raise ValueError(f"job {job_id} is not a REFRESH_CAFES job")
    if not jobs.transition(job_id, [JobStatus.QUEUED], JobStatus.RUNNING, started_at=utcnow(), error_message=None):
        logger.warning("refresh_job_not_queued", job_id=job_id, status=job.status.value)
        return job
    try:
        count = await refresh_memberships(ctx, fetcher)
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        jobs.transition(job_id, [JobStatus.RUNNING], JobStatus.FAILED, error_message=message, completed_at=utcnow())
        SCRAPE_JOBS_TOTAL.labels(status="failed").inc()
        logger.error("refresh_job_failed", job_id=job_id, error=message)
        raise
    jobs.transition(job_id, [JobStatus.RUNNING], JobStatus.SUCCESS, result_count=count, completed_at=utcnow())
    SCRAPE_JOBS_TOTAL.labels(status="success").inc()
    return jobs.get(job_id) or job


async def _main_async(job_id: Optional[str]) -> None:
    ctx = await bootstrap()
    if job_id:
        await run_refresh_job(ctx, job_id)
    else:
        await refresh_memberships(ctx)


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="cafe-refresh-cafes", description="Refresh joined cafe memberships")
    parser.add_argument("job_id", nargs="?", default=None, help="REFRESH_CAFES job id (optional)")
    args = parser.parse_args(argv)
    try:
        asyncio.run(_main_async(args.job_id))
    except Exception as exc:  # noqa: BLE001
        logger.error("refresh_process_failed", error=str(exc) or type(exc).__name__)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
