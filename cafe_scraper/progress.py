"""Progress snapshots, cooperative cancellation and the dispatcher heartbeat.

All three live as keyed records in the settings table, never in process memory,
so any process (dispatcher, job child, trigger API) can inspect them:

- ``scrapeJobProgress:<jobId>``: the single current ``JobProgress`` snapshot (JSON)
- ``scrapeJobCancel:<jobId>``: cancel flag set by a cancel request
- ``workerHeartbeat:queue-worker``: last dispatcher liveness record

Writes are idempotent upserts keyed by job id.
"""
from __future__ import annotations

import os
import socket
import time
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from .core.errors import JobCancelled
from .runtime.models import JobProgress, PairStatus, Stage, utcnow

logger = structlog.get_logger(__name__)

PROGRESS_PREFIX = "scrapeJobProgress:"
CANCEL_PREFIX = "scrapeJobCancel:"
HEARTBEAT_KEY = "workerHeartbeat:queue-worker"
CANCEL_MESSAGE = "cancelled by user"

_TRUTHY = {"1", "true", "yes", "on"}


def progress_key(job_id: str) -> str:
    return f"{PROGRESS_PREFIX}{job_id}"


def cancel_key(job_id: str) -> str:
    return f"{CANCEL_PREFIX}{job_id}"


def set_cancel_flag(settings_store, job_id: str) -> None:
    settings_store.upsert(cancel_key(job_id), "1")


def is_cancel_flag_set(settings_store, job_id: str) -> bool:
    value = settings_store.get(cancel_key(job_id))
    return str(value or "").strip().lower() in _TRUTHY


def clear_job_keys(settings_store, job_id: str) -> None:
    settings_store.delete([progress_key(job_id), cancel_key(job_id)])


def read_snapshot(settings_store, job_id: str) -> Optional[JobProgress]:
    try:
        data = settings_store.get_json(progress_key(job_id))
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return JobProgress.from_dict(data)
    except (TypeError, ValueError):
        return None


def last_progress_at(settings_store, job_id: str) -> Optional[datetime]:
    snap = read_snapshot(settings_store, job_id)
    if snap is None or not snap.updated_at:
        return None
    try:
        return datetime.fromisoformat(snap.updated_at)
    except ValueError:
        return None


# ------------------------------------------------------------
# Progress channel (job side)
# ------------------------------------------------------------
class ProgressChannel:
    """Owner of one job's snapshot. Every write refreshes ``updated_at``."""

    def __init__(self, settings_store, job_id: str, *, keep_done: bool = False):
        self.store = settings_store
        self.job_id = job_id
        self.keep_done = keep_done
        self.snapshot = JobProgress(job_id=job_id)

    def reset(self) -> None:
        """Clear any prior snapshot and cancel flag so a (re)run starts clean."""
        clear_job_keys(self.store, self.job_id)
        self.snapshot = JobProgress(job_id=self.job_id)

    def _write(self) -> JobProgress:
        self.snapshot.updated_at = utcnow().isoformat()
        self.store.upsert_json(progress_key(self.job_id), self.snapshot.to_dict())
        return self.snapshot

    def update(self, **fields: Any) -> JobProgress:
        for name, value in fields.items():
            if not hasattr(self.snapshot, name):
                raise AttributeError(f"unknown progress field: {name}")
            setattr(self.snapshot, name, value)
        return self._write()

    def bump(self, **deltas: int) -> JobProgress:
        for name, delta in deltas.items():
            setattr(self.snapshot, name, getattr(self.snapshot, name) + delta)
        return self._write()

    def pair(self, cafe_id: str, keyword: str, status: PairStatus | None = None, **fields: Any) -> JobProgress:
        pp = self.snapshot.pair(cafe_id, keyword)
        if status is not None:
            pp.status = status
        for name, value in fields.items():
            setattr(pp, name, value)
        return self._write()

    def finish(self, stage: Stage, message: Optional[str] = None) -> None:
        """Write the terminal snapshot; a clean DONE is then removed unless kept."""
        self.snapshot.stage = stage
        self.snapshot.message = message
        self._write()
        if stage is Stage.DONE and not self.keep_done:
            self.store.delete([progress_key(self.job_id)])
        self.store.delete([cancel_key(self.job_id)])

    def is_cancel_requested(self) -> bool:
        return is_cancel_flag_set(self.store, self.job_id)


class CancelToken:
    """Checked at checkpoints; raises ``JobCancelled`` once the flag is set."""

    def __init__(self, channel: ProgressChannel):
        self.channel = channel
        self.cancelled = False

    def check(self) -> None:
        if self.cancelled or self.channel.is_cancel_requested():
            self.cancelled = True
            raise JobCancelled(CANCEL_MESSAGE)


# ------------------------------------------------------------
# Heartbeat (dispatcher side)
# ------------------------------------------------------------
class Heartbeat:
    """Rate-limited liveness record: at most one write per ``interval_s``."""

    def __init__(self, settings_store, interval_s: float = 15.0, clock: Callable[[], float] = time.monotonic):
        self.store = settings_store
        self.interval_s = interval_s
        self._clock = clock
        self._last: Optional[float] = None

    def beat(self, status: str, **extra: Any) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.interval_s:
            return False
        self._last = now
        payload = {
            "at": utcnow().isoformat(),
            "status": status,
            **extra,
            "pid": os.getpid(),
            "host": socket.gethostname(),
        }
        try:
            self.store.upsert_json(HEARTBEAT_KEY, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("heartbeat_write_failed", error=str(exc))
            return False
        return True


__all__ = [
    "CANCEL_MESSAGE",
    "HEARTBEAT_KEY",
    "CancelToken",
    "Heartbeat",
    "ProgressChannel",
    "cancel_key",
    "clear_job_keys",
    "is_cancel_flag_set",
    "last_progress_at",
    "progress_key",
    "read_snapshot",
    "set_cancel_flag",
]
