"""Error taxonomy for the job execution engine + throttled failure registry.

Candidate-scoped errors (``candidate_scoped = True``) are absorbed by the
extractor / collector and only surface as "this candidate produced no post".
Everything else is job-scoped and reaches the dispatcher, which turns it into a
terminal job status.

The registry writes JSON lines to a configurable file (env SCRAPE_FAILURE_LOG,
default scrape_failures.log). Per-process aggregation keeps an in-memory counter
to avoid excessive disk writes for identical signatures. A registry that cannot
be written is reported through structlog and never raises.
"""
from __future__ import annotations

import json
import os
import threading
from collections import Counter
from datetime import datetime, timezone

import structlog

logger = structlog.get_logger(__name__)


class ScrapeError(Exception):
    """Base class of every engine error."""

    candidate_scoped = False


# Job-scoped
class SessionMissing(ScrapeError):
    """No browsing session (file or encrypted store record) is available."""


class SessionInvalid(ScrapeError):
    """Session material exists but cannot be decrypted or lacks cookies/origins."""


class SessionExpired(SessionInvalid):
    """Navigation was redirected to the login page."""


class JobNotFound(ScrapeError):
    pass


class JobCancelled(ScrapeError):
    """Cooperative cancellation observed at a checkpoint."""


class StaleJob(ScrapeError):
    """RUNNING job without progress for longer than the staleness window."""


class CafeResolutionError(ScrapeError):
    """The numeric club id of a cafe could not be resolved."""


# Candidate-scoped
class CandidateError(ScrapeError):
    candidate_scoped = True


class NavigationTimeout(CandidateError):
    pass


class ExtractionTimeout(CandidateError):
    pass


class AccessDenied(CandidateError):
    """Join wall or permission wall detected."""


class ExtractionEmpty(CandidateError):
    """No selector yielded acceptable text across all URL variants."""


class RelevanceMiss(CandidateError):
    """The originating keyword is absent from the extracted text."""


class SearchRequestError(CandidateError):
    """The search endpoint failed for one (cafe, keyword) pair after retries."""


# Batch-scoped
class SinkDeliveryError(ScrapeError):
    """Spreadsheet sink rejected or failed a batch."""


# ------------------------------------------------------------
# Failure registry
# ------------------------------------------------------------
_lock = threading.Lock()
_occurrences: Counter[str] = Counter()


def failure_signature(category: str, exc: BaseException | str) -> str:
    kind = "message" if isinstance(exc, str) else type(exc).__name__
    return f"{category}:{kind}"


def should_record(occurrence: int) -> bool:
    """First three occurrences of a signature, then every tenth."""
    return occurrence <= 3 or occurrence % 10 == 0


def log_scrape_failure(category: str, exc: BaseException | str) -> bool:
    """Append one JSON line for ``exc`` unless its signature is being throttled.

    Returns True when a line was written.
    """
    signature = failure_signature(category, exc)
    with _lock:
        _occurrences[signature] += 1
        occurrence = _occurrences[signature]
    if not should_record(occurrence):
        return False
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "category": category,
        "signature": signature,
        "message": str(exc),
        "occurrences": occurrence,
    }
    path = os.environ.get("SCRAPE_FAILURE_LOG", "scrape_failures.log")
    try:
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=False) + "\n")
    except OSError as write_exc:
        logger.warning("failure_registry_write_failed", path=path, error=str(write_exc), signature=signature)
        return False
    return True
