"""Content-hash deduplication against previously stored posts.

Decision table for a post about to be persisted:

- same content hash already stored            -> duplicate: no insert, still delivered to the sink
- same source URL stored with a different hash -> update: insert a new row
- otherwise                                    -> new: insert
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from cafe_scraper.bootstrap import SCRAPE_STORAGE_ATTEMPTS

from .models import ParsedPost

logger = structlog.get_logger(__name__)


class DedupDecision(str, Enum):
    NEW = "new"
    UPDATE = "update"
    DUPLICATE = "duplicate"


@dataclass(slots=True)
class PersistResult:
    decision: DedupDecision
    row_id: Optional[int] = None

    @property
    def inserted(self) -> bool:
        return self.row_id is not None


def classify(post_store, post: ParsedPost) -> DedupDecision:
    if post_store.find_by_hash(post.content_hash):
        return DedupDecision.DUPLICATE
    if post_store.find_by_url(post.source_url):
        return DedupDecision.UPDATE
    return DedupDecision.NEW


def persist_post(post_store, job_id: str, post: ParsedPost) -> PersistResult:
    """Insert unless duplicate. A concurrent insert of the same hash counts as duplicate."""
    decision = classify(post_store, post)
    if decision is DedupDecision.DUPLICATE:
        SCRAPE_STORAGE_ATTEMPTS.labels(backend="sqlite", result="duplicate").inc()
        logger.info("post_duplicate", source_url=post.source_url, hash=post.content_hash[:10])
        return PersistResult(decision=decision)
    row_id = post_store.insert(job_id, post)
    if row_id is None:
        SCRAPE_STORAGE_ATTEMPTS.labels(backend="sqlite", result="duplicate").inc()
        return PersistResult(decision=DedupDecision.DUPLICATE)
    SCRAPE_STORAGE_ATTEMPTS.labels(backend="sqlite", result=decision.value).inc()
    logger.info(
        "post_inserted",
        source_url=post.source_url,
        hash=post.content_hash[:10],
        length=len(post.content_text),
        decision=decision.value,
    )
    return PersistResult(decision=decision, row_id=row_id)


__all__ = ["DedupDecision", "PersistResult", "classify", "persist_post"]
