"""Trigger-side job operations: create, cancel, read progress.

These are the calls an HTTP API or an operator script makes; the dispatcher never
uses them except ``create_refresh_job`` for the hourly maintenance run.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

import structlog

from .core.errors import JobNotFound
from .progress import clear_job_keys, progress_key, set_cancel_flag
from .runtime.models import JobStatus, JobType, ScrapeJob, utcnow

logger = structlog.get_logger(__name__)

MAX_POSTS_DEFAULT = 50
MAX_POSTS_LIMIT = 300
QUEUED_CANCEL_MESSAGE = "cancelled by user (queued)"


def normalize_tokens(values: Iterable[Any] | None) -> list[str]:
    """Remove inner whitespace, drop blanks, keep order."""
    out: list[str] = []
    for v in values or []:
        token = "".join(str(v or "").split())
        if token:
            out.append(token)
    return out


def clamp_max_posts(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return MAX_POSTS_DEFAULT
    return max(1, min(MAX_POSTS_LIMIT, n))


def optional_minimum(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    return n if n >= 0 else None


def parse_date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def create_scrape_job(
    job_store,
    *,
    keywords: Sequence[str] | None = None,
    direct_urls: Sequence[str] | None = None,
    cafes: Sequence[tuple[str, str]] | None = None,
    include_words: Sequence[str] | None = None,
    exclude_words: Sequence[str] | None = None,
    exclude_boards: Sequence[str] | None = None,
    from_date: Any = None,
    to_date: Any = None,
    min_view_count: Any = None,
    min_comment_count: Any = None,
    use_auto_filter: bool = False,
    max_posts: Any = MAX_POSTS_DEFAULT,
    notify_chat_id: Optional[str] = None,
) -> ScrapeJob:
    """Validate, normalize and enqueue a SCRAPE job (status QUEUED).

    Keyword mode needs at least one keyword and one cafe; direct-URL mode needs at
    least one URL. Supplying both keywords and URLs is rejected.
    """
    kw = normalize_tokens(keywords)
    urls = [u.strip() for u in (direct_urls or []) if u and u.strip()]
    if kw and urls:
        raise ValueError("keywords and direct URLs are mutually exclusive")
    if not kw and not urls:
        raise ValueError("at least one keyword or direct URL is required")
    cafe_pairs = [(str(cid).strip(), (name or "").strip()) for cid, name in (cafes or []) if str(cid or "").strip()]
    if kw and not cafe_pairs:
        raise ValueError("at least one cafe is required for keyword search")

    job = ScrapeJob(
        id="",
        job_type=JobType.SCRAPE,
        status=JobStatus.QUEUED,
        keywords=kw,
        direct_urls=urls,
        include_words=normalize_tokens(include_words),
        exclude_words=normalize_tokens(exclude_words),
        exclude_boards=normalize_tokens(exclude_boards),
        from_date=parse_date(from_date),
        to_date=parse_date(to_date),
        min_view_count=optional_minimum(min_view_count),
        min_comment_count=optional_minimum(min_comment_count),
        use_auto_filter=bool(use_auto_filter),
        max_posts=clamp_max_posts(max_posts),
        cafe_ids=[c for c, _ in cafe_pairs],
        cafe_names=[n or c for c, n in cafe_pairs],
        notify_chat_id=(notify_chat_id or None),
    )
    job_store.create(job)
    logger.info("job_created", job_id=job.id, keywords=len(kw), direct_urls=len(urls), cafes=len(cafe_pairs))
    return job


def create_refresh_job(job_store) -> ScrapeJob:
    job = ScrapeJob(id="", job_type=JobType.REFRESH_CAFES, status=JobStatus.QUEUED)
    job_store.create(job)
    logger.info("refresh_job_created", job_id=job.id)
    return job


def request_cancel(job_store, settings_store, job_id: str) -> str:
    """Cancel a job. Returns ``cancelled``, ``requested`` or ``noop``.

    QUEUED jobs are cancelled directly (never RUNNING, no keys left behind);
    RUNNING jobs get the cooperative cancel flag; terminal jobs are untouched.
    """
    job = job_store.get(job_id)
    if job is None:
        raise JobNotFound(f"job {job_id} does not exist")
    if job.status is JobStatus.QUEUED:
        if job_store.transition(
            job_id, [JobStatus.QUEUED], JobStatus.CANCELLED,
            error_message=QUEUED_CANCEL_MESSAGE, completed_at=utcnow(),
        ):
            clear_job_keys(settings_store, job_id)
            logger.info("job_cancelled_queued", job_id=job_id)
            return "cancelled"
        # started in between: fall through to the running path
        job = job_store.get(job_id) or job
    if job.status is JobStatus.RUNNING:
        set_cancel_flag(settings_store, job_id)
        logger.info("job_cancel_requested", job_id=job_id)
        return "requested"
    return "noop"


def read_progress(settings_store, job_id: str) -> Optional[dict[str, Any]]:
    raw = settings_store.get(progress_key(job_id))
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return {"raw": raw}
    return value if isinstance(value, dict) else {"raw": raw}


__all__ = [
    "MAX_POSTS_DEFAULT",
    "MAX_POSTS_LIMIT",
    "clamp_max_posts",
    "create_refresh_job",
    "create_scrape_job",
    "normalize_tokens",
    "optional_minimum",
    "parse_date",
    "read_progress",
    "request_cancel",
]
