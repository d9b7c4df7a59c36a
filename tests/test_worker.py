import asyncio
import json
import os
import sys
import textwrap
import time
from collections import Counter
from datetime import timedelta
from pathlib import Path

from cafe_scraper.core import errors
from cafe_scraper.jobs import create_scrape_job
from cafe_scraper.progress import HEARTBEAT_KEY, ProgressChannel, read_snapshot
from cafe_scraper.runtime.models import JobStatus, JobType, Stage, utcnow
from cafe_scraper.worker import Dispatcher, run_with_lock, stale_message, worker_loop

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class RecordingExecutor:
    """Runs a job instantly to SUCCESS and records the order of execution."""

    def __init__(self, ctx):
        self.ctx = ctx
        self.ran = []

    async def __call__(self, job):
        self.ran.append(job.id)
        jobs = self.ctx.store.jobs
        jobs.transition(job.id, [JobStatus.QUEUED], JobStatus.RUNNING, started_at=utcnow())
        jobs.transition(job.id, [JobStatus.RUNNING], JobStatus.SUCCESS, completed_at=utcnow())


def _queued(ctx, keyword="집중"):
    return create_scrape_job(ctx.store.jobs, keywords=[keyword], cafes=[("c", "")])


def _make_running(ctx, job_id, age_minutes):
    then = utcnow() - timedelta(minutes=age_minutes)
    ctx.store.jobs.transition(job_id, [JobStatus.QUEUED], JobStatus.RUNNING, started_at=then, updated_at=then)


async def test_idle_tick_writes_heartbeat(ctx):
    dispatcher = Dispatcher(ctx, job_executor=RecordingExecutor(ctx))
    assert await dispatcher.tick() == "idle"
    assert ctx.store.settings.get_json(HEARTBEAT_KEY)["status"] == "tick"


async def test_jobs_run_oldest_first(ctx):
    first, second = _queued(ctx, "a"), _queued(ctx, "b")
    executor = RecordingExecutor(ctx)
    dispatcher = Dispatcher(ctx, job_executor=executor)
    assert await dispatcher.tick() == "ran"
    assert await dispatcher.tick() == "ran"
    assert await dispatcher.tick() == "idle"
    assert executor.ran == [first.id, second.id]


async def test_running_job_blocks_dispatch(ctx):
    running, waiting = _queued(ctx, "a"), _queued(ctx, "b")
    _make_running(ctx, running.id, age_minutes=0)
    ProgressChannel(ctx.store.settings, running.id).update(stage=Stage.PARSE)
    executor = RecordingExecutor(ctx)
    assert await Dispatcher(ctx, job_executor=executor).tick() == "busy"
    assert executor.ran == []
    assert ctx.store.jobs.get(waiting.id).status is JobStatus.QUEUED


async def test_stale_running_job_is_failed_then_queue_moves(ctx):
    stale, waiting = _queued(ctx, "a"), _queued(ctx, "b")
    _make_running(ctx, stale.id, age_minutes=30)
    executor = RecordingExecutor(ctx)

    assert await Dispatcher(ctx, job_executor=executor).tick() == "ran"

    failed = ctx.store.jobs.get(stale.id)
    assert failed.status is JobStatus.FAILED
    assert failed.error_message.startswith("stale RUNNING job auto-failed by worker")
    assert failed.completed_at is not None
    assert read_snapshot(ctx.store.settings, stale.id).stage is Stage.FAILED
    assert executor.ran == [waiting.id]


async def test_stale_failure_lands_in_failure_registry(ctx, tmp_path, monkeypatch):
    registry = tmp_path / "failures.log"
    monkeypatch.setenv("SCRAPE_FAILURE_LOG", str(registry))
    monkeypatch.setattr(errors, "_occurrences", Counter())
    job = _queued(ctx)
    _make_running(ctx, job.id, age_minutes=30)

    assert Dispatcher(ctx, job_executor=RecordingExecutor(ctx)).fail_stale_jobs() == [job.id]

    record = json.loads(registry.read_text(encoding="utf-8").splitlines()[-1])
    assert record["signature"] == "stale_job:StaleJob"
    assert job.id in record["message"]


async def test_recent_progress_keeps_old_job_alive(ctx):
    job = _queued(ctx)
    _make_running(ctx, job.id, age_minutes=30)
    ProgressChannel(ctx.store.settings, job.id).update(stage=Stage.PARSE)
    dispatcher = Dispatcher(ctx, job_executor=RecordingExecutor(ctx))
    assert dispatcher.fail_stale_jobs() == []
    assert ctx.store.jobs.get(job.id).status is JobStatus.RUNNING
    later = utcnow() + timedelta(minutes=10)
    assert dispatcher.fail_stale_jobs(now=later) == [job.id]


async def test_refresh_runs_when_due(ctx):
    ctx.settings.cafe_refresh_interval_seconds = 3600
    now = [1000.0]
    executor = RecordingExecutor(ctx)
    dispatcher = Dispatcher(ctx, job_executor=executor, clock=lambda: now[0])
    queued = _queued(ctx)

    assert await dispatcher.tick() == "refresh"
    refresh_job = ctx.store.jobs.get(executor.ran[0])
    assert refresh_job.job_type is JobType.REFRESH_CAFES

    assert await dispatcher.tick() == "ran"
    assert executor.ran[1] == queued.id
    assert await dispatcher.tick() == "idle"
    now[0] += 3601
    assert await dispatcher.tick() == "refresh"


async def test_crashed_child_fails_job(ctx):
    job = _queued(ctx)
    dispatcher = Dispatcher(ctx, job_executor=RecordingExecutor(ctx))
    dispatcher.handle_exit(job.id, 3)
    stored = ctx.store.jobs.get(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.started_at is not None
    assert "exited with code 3" in stored.error_message


async def test_clean_exit_or_terminal_job_untouched(ctx):
    job = _queued(ctx)
    dispatcher = Dispatcher(ctx, job_executor=RecordingExecutor(ctx))
    dispatcher.handle_exit(job.id, 0)
    assert ctx.store.jobs.get(job.id).status is JobStatus.QUEUED
    ctx.store.jobs.transition(job.id, [JobStatus.QUEUED], JobStatus.CANCELLED)
    dispatcher.handle_exit(job.id, 1)
    assert ctx.store.jobs.get(job.id).status is JobStatus.CANCELLED


async def test_second_dispatcher_sees_lock_busy(ctx):
    async with run_with_lock(ctx) as first:
        assert first
        async with run_with_lock(ctx) as second:
            assert not second
    async with run_with_lock(ctx) as again:
        assert again


async def test_worker_loop_bounded_ticks(ctx):
    await worker_loop(max_ticks=1, ctx=ctx)
    assert ctx.store.settings.get_json(HEARTBEAT_KEY) is not None


# ------------------------------------------------------------
# Real executors
# ------------------------------------------------------------
STALLED_CHILD = """
import os
import sys
import time
from datetime import timedelta

from cafe_scraper.core.storage import SQLiteStore
from cafe_scraper.runtime.models import JobStatus, utcnow

then = utcnow() - timedelta(minutes=30)
SQLiteStore(os.environ["SQLITE_PATH"]).jobs.transition(
    sys.argv[1], [JobStatus.QUEUED], JobStatus.RUNNING, started_at=then, updated_at=then
)
time.sleep(60)
"""

CRASHING_CHILD = """
import sys

sys.exit(3)
"""


def _child_dispatcher(ctx, tmp_path, monkeypatch, source):
    """Subprocess dispatcher whose child is ``source``; returns it with the list of spawned processes."""
    script = tmp_path / "child_job.py"
    script.write_text(textwrap.dedent(source), encoding="utf-8")
    pythonpath = [str(PROJECT_ROOT), os.environ.get("PYTHONPATH", "")]
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(p for p in pythonpath if p))
    ctx.settings.worker_poll_interval_seconds = 0.5

    spawned = []
    real_exec = asyncio.create_subprocess_exec

    async def spawn(*args, **kwargs):
        proc = await real_exec(*args, **kwargs)
        spawned.append(proc)
        return proc

    monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn)
    dispatcher = Dispatcher(ctx)
    monkeypatch.setattr(dispatcher, "job_command", lambda job_id: [sys.executable, str(script), job_id])
    return dispatcher, spawned


async def test_watchdog_kills_child_whose_job_goes_stale(ctx, tmp_path, monkeypatch):
    job = _queued(ctx)
    dispatcher, spawned = _child_dispatcher(ctx, tmp_path, monkeypatch, STALLED_CHILD)

    started = time.monotonic()
    assert await dispatcher.tick() == "ran"
    assert time.monotonic() - started < 30

    assert len(spawned) == 1
    assert spawned[0].returncode not in (None, 0)
    stored = ctx.store.jobs.get(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == stale_message(ctx.settings.stale_job_minutes)
    assert read_snapshot(ctx.store.settings, job.id).stage is Stage.FAILED


async def test_child_exit_code_fails_queued_job(ctx, tmp_path, monkeypatch):
    job = _queued(ctx)
    dispatcher, spawned = _child_dispatcher(ctx, tmp_path, monkeypatch, CRASHING_CHILD)
    assert await dispatcher.tick() == "ran"
    assert spawned[0].returncode == 3
    stored = ctx.store.jobs.get(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.error_message == "job process exited with code 3"


async def test_inline_executor_runs_job_and_survives_its_failure(ctx):
    ctx.settings.worker_inline = True
    job = _queued(ctx)
    waiting = _queued(ctx, "공부")
    dispatcher = Dispatcher(ctx)

    assert await dispatcher.tick() == "ran"

    stored = ctx.store.jobs.get(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.started_at is not None
    assert "session" in stored.error_message
    assert ctx.store.jobs.get(waiting.id).status is JobStatus.QUEUED
    assert await dispatcher.tick() == "ran"
    assert ctx.store.jobs.get(waiting.id).status is JobStatus.FAILED
