"""Queue dispatcher: single-flight job execution with crash/hang recovery.

Each tick:
1. rate-limited heartbeat
2. stale RUNNING jobs (no progress within ``STALE_JOB_MINUTES``) are failed
3. if any job is RUNNING, return (single-flight)
4. hourly REFRESH_CAFES maintenance run, when due
5. otherwise execute the oldest QUEUED job to completion

Jobs run in a child process (``python -m cafe_scraper.scrape_subprocess <jobId>``)
watched by the dispatcher: a child whose job turns stale is killed and the job
failed; a child exiting non-zero while its job is not terminal gets the job failed
with the exit code. ``WORKER_INLINE`` runs jobs in-process instead.

The FileLock around each tick keeps a second dispatcher on the same host idle.
"""
from __future__ import annotations

import asyncio
import contextlib
import sys
import time
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional

from filelock import FileLock, Timeout

from .bootstrap import WORKER_STALE_JOBS, WORKER_TICKS, AppContext, get_context
from .core.errors import StaleJob, log_scrape_failure
from .jobs import create_refresh_job
from .progress import Heartbeat, ProgressChannel, last_progress_at, read_snapshot
from .runtime.models import JobStatus, ScrapeJob, Stage, utcnow
from .scrape_subprocess import JobRunner

JOB_MODULE = "cafe_scraper.scrape_subprocess"

JobExecutor = Callable[[ScrapeJob], Awaitable[None]]


def stale_message(minutes: float) -> str:
    return f"stale RUNNING job auto-failed by worker (no progress for {minutes:g} minutes)"


class Dispatcher:
    def __init__(
        self,
        ctx: AppContext,
        *,
        job_executor: JobExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx
        self.settings = ctx.settings
        self.jobs = ctx.store.jobs
        self.kv = ctx.store.settings
        self.logger = ctx.logger.bind(component="worker")
        self.heartbeat = Heartbeat(self.kv, self.settings.worker_heartbeat_interval_seconds)
        self._clock = clock
        self._last_refresh_at: Optional[float] = None
        if job_executor is not None:
            self._executor = job_executor
        elif self.settings.worker_inline:
            self._executor = self._run_inline
        else:
            self._executor = self._run_subprocess

    # ------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------
    def last_activity(self, job: ScrapeJob) -> Optional[datetime]:
        stamps = [last_progress_at(self.kv, job.id), job.started_at, job.updated_at]
        known = [s for s in stamps if s is not None]
        return max(known) if known else None

    def is_stale(self, job: ScrapeJob, now: Optional[datetime] = None) -> bool:
        ref = self.last_activity(job)
        if ref is None:
            return True
        now = now or utcnow()
        return now - ref > timedelta(seconds=self.settings.stale_after_seconds)

    def fail_job(self, job_id: str, message: str, *, from_statuses=(JobStatus.RUNNING,)) -> bool:
        ok = self.jobs.transition(job_id, list(from_statuses), JobStatus.FAILED, error_message=message, completed_at=utcnow())
        if ok:
            channel = ProgressChannel(self.kv, job_id)
            channel.snapshot = read_snapshot(self.kv, job_id) or channel.snapshot
            channel.finish(Stage.FAILED, message)
        return ok

    def fail_stale(self, job_id: str) -> bool:
        message = stale_message(self.settings.stale_job_minutes)
        if not self.fail_job(job_id, message):
            return False
        WORKER_STALE_JOBS.inc()
        log_scrape_failure("stale_job", StaleJob(f"job {job_id}: {message}"))
        return True

    def fail_stale_jobs(self, now: Optional[datetime] = None) -> list[str]:
        failed: list[str] = []
        for job in self.jobs.list_by_status(JobStatus.RUNNING, limit=20):
            if not self.is_stale(job, now):
                continue
            if self.fail_stale(job.id):
                failed.append(job.id)
                self.logger.error("stale_job_failed", job_id=job.id, last_activity=str(self.last_activity(job)))
        return failed

    # ------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------
    def _refresh_due(self) -> bool:
        interval = self.settings.cafe_refresh_interval_seconds
        if interval <= 0:
            return False
        now = self._clock()
        if self._last_refresh_at is not None and now - self._last_refresh_at < interval:
            return False
        self._last_refresh_at = now
        return True

    async def tick(self) -> str:
        """One dispatcher step. Returns the outcome label: busy, refresh, ran or idle."""
        self.heartbeat.beat("tick")
        try:
            self.fail_stale_jobs()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("stale_scan_failed", error=str(exc))

        running = self.jobs.count_by_status(JobStatus.RUNNING)
        if running > 0:
            self.heartbeat.beat("busy", running=running)
            return "busy"

        if self._refresh_due():
            job = create_refresh_job(self.jobs)
            self.heartbeat.beat("run_refresh", jobId=job.id)
            self.logger.info("cafe_refresh_started", job_id=job.id)
            await self._execute(job)
            return "refresh"

        queued = self.jobs.list_by_status(JobStatus.QUEUED, order="asc", limit=1)
        if not queued:
            self.heartbeat.beat("idle")
            return "idle"
        job = queued[0]
        self.heartbeat.beat("run_scrape", jobId=job.id)
        self.logger.info("job_dispatched", job_id=job.id, job_type=job.job_type.value)
        await self._execute(job)
        return "ran"

    async def _execute(self, job: ScrapeJob) -> None:
        await self._executor(job)
        after = self.jobs.get(job.id)
        if after is not None:
            self.logger.info("job_finished", job_id=job.id, status=after.status.value)

    # ------------------------------------------------------------
    # Executors
    # ------------------------------------------------------------
    async def _run_inline(self, job: ScrapeJob) -> None:
        try:
            await JobRunner(self.ctx).run(job.id)
        except Exception as exc:  # noqa: BLE001
            # the runner already recorded FAILED
            self.logger.error("inline_job_failed", job_id=job.id, error=str(exc) or type(exc).__name__)

    def job_command(self, job_id: str) -> list[str]:
        return [sys.executable, "-m", JOB_MODULE, job_id]

    async def _run_subprocess(self, job: ScrapeJob) -> None:
        proc = await asyncio.create_subprocess_exec(*self.job_command(job.id))
        self.logger.info("job_process_started", job_id=job.id, pid=proc.pid)
        poll = max(0.5, self.settings.worker_poll_interval_seconds)
        while True:
            try:
                await asyncio.wait_for(proc.wait(), timeout=poll)
                break
            except asyncio.TimeoutError:
                self.heartbeat.beat("running", jobId=job.id, pid=proc.pid)
                current = self.jobs.get(job.id)
                if current is not None and current.status is JobStatus.RUNNING and self.is_stale(current):
                    self.logger.error("job_process_stale_killed", job_id=job.id, pid=proc.pid)
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()
                    await proc.wait()
                    self.fail_stale(job.id)
                    return
        self.handle_exit(job.id, proc.returncode)

    def handle_exit(self, job_id: str, returncode: Optional[int]) -> None:
        if not returncode:
            return
        current = self.jobs.get(job_id)
        if current is None or current.is_terminal:
            return
        message = f"job process exited with code {returncode}"
        if current.status is JobStatus.QUEUED:
            self.jobs.transition(job_id, [JobStatus.QUEUED], JobStatus.RUNNING, started_at=utcnow())
        self.fail_job(job_id, message)
        self.logger.error("job_process_crashed", job_id=job_id, returncode=returncode)


# ------------------------------------------------------------
# Lock + loop
# ------------------------------------------------------------
@contextlib.asynccontextmanager
async def run_with_lock(ctx: AppContext) -> AsyncIterator[bool]:
    lock = FileLock(ctx.settings.lock_file)
    acquired = False
    try:
        lock.acquire(timeout=1)
        acquired = True
    except Timeout:
        ctx.logger.warning("lock_busy", lock=ctx.settings.lock_file)
    try:
        yield acquired
    finally:
        if lock.is_locked:
            lock.release()


async def worker_loop(max_ticks: int | None = None, ctx: AppContext | None = None) -> None:
    ctx = ctx or await get_context()
    logger = ctx.logger.bind(component="worker")
    dispatcher = Dispatcher(ctx)
    logger.info("worker_started", inline=ctx.settings.worker_inline)
    dispatcher.heartbeat.beat("started")
    ticks = 0
    while True:
        async with run_with_lock(ctx) as acquired:
            if acquired:
                try:
                    outcome = await dispatcher.tick()
                    WORKER_TICKS.labels(outcome=outcome).inc()
                except Exception as exc:  # noqa: BLE001
                    WORKER_TICKS.labels(outcome="error").inc()
                    logger.error("worker_tick_failed", error=str(exc) or type(exc).__name__)
            else:
                WORKER_TICKS.labels(outcome="locked").inc()
        ticks += 1
        if max_ticks is not None and ticks >= max_ticks:
            return
        await asyncio.sleep(ctx.settings.worker_poll_interval_seconds)


def main() -> None:
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:  # pragma: no cover
        pass


if __name__ == "__main__":  # pragma: no cover
    main()
