"""Scraping subprocess module: executes exactly one job.

The dispatcher spawns ``python -m cafe_scraper.scrape_subprocess <jobId>`` (or calls
``JobRunner.run`` inline when ``WORKER_INLINE`` is set). Running each job in its own
process bounds the blast radius of a hung browser: the dispatcher can kill the
child and fail the job without restarting itself.

Lifecycle of a SCRAPE job:
    QUEUED -> RUNNING            prior progress snapshot and cancel flag cleared
    RUNNING -> SUCCESS           CSV artifact written, counters recorded
    RUNNING -> CANCELLED         cancel flag observed at a checkpoint
    RUNNING -> FAILED            any other job-scoped error (message recorded)

Persistence:
- without auto filter, each accepted post is persisted and queued for the sheet
  as soon as it passes the filters (streaming)
- with auto filter, accepted posts are buffered; the batch-median clamp and the
  ``maxPosts`` cap are applied when collection ends, in a ``finally`` so that a
  cancelled or failed run still keeps what it gathered
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Optional, Sequence

import structlog

from .bootstrap import (
    SCRAPE_FILTERED_POSTS,
    SCRAPE_JOBS_TOTAL,
    SCRAPE_POSTS_EXTRACTED,
    SCRAPE_STEP_DURATION,
    AppContext,
    bootstrap,
)
from .collector import CafeIdResolver, CandidateCollector, browser_fetch_json, compute_budget
from .core.errors import CafeResolutionError, JobCancelled, JobNotFound, log_scrape_failure
from .core.storage import write_results_csv
from .extractor import ContentExtractor, ExtractTarget
from .progress import CANCEL_MESSAGE, CancelToken, ProgressChannel
from .refresh_cafes import run_refresh_job
from .runtime.dedup import persist_post
from .runtime.filters import (
    cap,
    clamp_by_auto_threshold,
    filter_text,
    is_allowed_by_words,
    passes_list_minimums,
    passes_minimums,
    within_date_range,
)
from .runtime.models import JobStatus, JobType, PairStatus, ParsedPost, ScrapeJob, Stage, utcnow
from .session import StorageState, load_storage_state, open_browser_page
from .sinks import SheetSink, TelegramNotifier, failure_message, success_message
from .utils import jitter_sleep

logger = structlog.get_logger(__name__)


# ------------------------------------------------------------
# Pipeline wiring
# ------------------------------------------------------------
@dataclass(slots=True)
class Pipeline:
    collector: Any
    extractor: Any


PipelineFactory = Callable[[StorageState], AsyncContextManager[Pipeline]]


def browser_pipeline_factory(settings) -> PipelineFactory:
    """Collector + extractor sharing one browser page."""

    @asynccontextmanager
    async def _factory(storage_state: StorageState) -> AsyncIterator[Pipeline]:
        async with open_browser_page(settings, storage_state) as page:
            resolver = CafeIdResolver(settings, page=page)
            collector = CandidateCollector(settings, browser_fetch_json(page, settings.navigation_timeout_ms), resolver)
            yield Pipeline(collector=collector, extractor=ContentExtractor(settings, page))

    return _factory


@dataclass(slots=True)
class RunState:
    final_posts: list[ParsedPost] = field(default_factory=list)
    buffer: list[ParsedPost] = field(default_factory=list)
    saved: int = 0
    collected: int = 0


# ------------------------------------------------------------
# Runner
# ------------------------------------------------------------
class JobRunner:
    def __init__(
        self,
        ctx: AppContext,
        *,
        pipeline_factory: PipelineFactory | None = None,
        session_loader: Callable[[], StorageState] | None = None,
        sheet_sink: SheetSink | None = None,
        notifier: TelegramNotifier | None = None,
    ):
        self.ctx = ctx
        self.settings = ctx.settings
        self.store = ctx.store
        self.pipeline_factory = pipeline_factory or browser_pipeline_factory(ctx.settings)
        self.session_loader = session_loader or (lambda: load_storage_state(ctx.settings, ctx.store.settings))
        self.sheet_sink = sheet_sink
        self.notifier = notifier or TelegramNotifier(ctx.settings)

    async def run(self, job_id: str) -> ScrapeJob:
        """Execute one job to a terminal status. Re-raises job-scoped failures after recording them."""
        job = self.store.jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"job {job_id} does not exist")
        if job.job_type is JobType.REFRESH_CAFES:
            return await run_refresh_job(self.ctx, job_id)
        if job.status is not JobStatus.QUEUED:
            logger.warning("job_not_queued", job_id=job_id, status=job.status.value)
            return job
        if not self.store.jobs.transition(
            job_id, [JobStatus.QUEUED], JobStatus.RUNNING, started_at=utcnow(), error_message=None
        ):
            logger.warning("job_start_lost", job_id=job_id)
            return self.store.jobs.get(job_id) or job

        channel = ProgressChannel(self.store.settings, job_id, keep_done=self.settings.keep_done_progress)
        channel.reset()
        channel.update(stage=Stage.SEARCH, message="started")
        token = CancelToken(channel)
        sink = self.sheet_sink or SheetSink(self.settings)
        state = RunState()
        log = logger.bind(job_id=job_id)
        log.info(
            "job_started",
            keywords=len(job.keywords),
            direct_urls=len(job.direct_urls),
            cafes=len(job.cafe_ids),
            max_posts=job.max_posts,
            auto_filter=job.use_auto_filter,
        )

        try:
            try:
                storage_state = self.session_loader()
                async with self.pipeline_factory(storage_state) as pipeline:
                    if job.url_mode:
                        await self._run_urls(job, pipeline, channel, token, sink, state)
                    else:
                        await self._run_keywords(job, pipeline, channel, token, sink, state)
            finally:
                await self._drain(job, channel, sink, state)
        except JobCancelled:
            self._finalize(job, channel, sink, state, JobStatus.CANCELLED, CANCEL_MESSAGE)
            log.info("job_cancelled", saved=state.saved)
            return self.store.jobs.get(job_id) or job
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            log_scrape_failure("job", exc)
            self._finalize(job, channel, sink, state, JobStatus.FAILED, message)
            log.error("job_failed", error=message, saved=state.saved)
            await self.notifier.notify(job.notify_chat_id, failure_message(job_id, message))
            raise

        self._finalize(job, channel, sink, state, JobStatus.SUCCESS, None)
        log.info("job_succeeded", saved=state.saved, synced=sink.synced, posts=len(state.final_posts))
        await self.notifier.notify(job.notify_chat_id, success_message(job_id, state.saved, sink.synced))
        return self.store.jobs.get(job_id) or job

    # -- stop condition ----------------------------------------------------
    def _full(self, job: ScrapeJob, state: RunState) -> bool:
        if job.use_auto_filter:
            return len(state.buffer) >= job.max_posts
        return len(state.final_posts) >= job.max_posts

    # -- direct URL mode ---------------------------------------------------
    async def _run_urls(self, job, pipeline, channel, token, sink, state) -> None:
        total = len(job.direct_urls)
        for idx, url in enumerate(job.direct_urls):
            if self._full(job, state):
                break
            token.check()
            channel.update(stage=Stage.PARSE, url=url, url_index=idx + 1, url_total=total)
            channel.bump(parse_attempts=1)
            outcome = await pipeline.extractor.extract(ExtractTarget.from_url(url))
            if outcome.post is not None:
                await self._consider(job, outcome.post, "", channel, sink, state)
            if idx < total - 1:
                await jitter_sleep(self.settings.min_sleep_ms, self.settings.max_sleep_ms)

    # -- keyword x cafe mode -----------------------------------------------
    async def _run_keywords(self, job, pipeline, channel, token, sink, state) -> None:
        targets = job.cafe_targets()
        keywords = list(job.keywords)
        budget = compute_budget(
            job.max_posts,
            len(targets),
            len(keywords),
            overfetch=self.settings.candidate_overfetch,
            cap_multiplier=self.settings.cafe_candidate_cap_multiplier,
        )
        for ci, (cafe_id, cafe_name) in enumerate(targets):
            if self._full(job, state):
                break
            channel.update(
                stage=Stage.SEARCH,
                cafe_id=cafe_id,
                cafe_name=cafe_name,
                cafe_index=ci + 1,
                cafe_total=len(targets),
                keyword_total=len(keywords),
            )

            async def before_keyword(keyword: str, ki: int, _cafe=cafe_id) -> None:
                token.check()
                channel.update(keyword=keyword, keyword_index=ki + 1)
                channel.pair(_cafe, keyword, PairStatus.SEARCHING)

            async def after_page(keyword: str, page_num: int, pages_target: int, taken: int, _cafe=cafe_id) -> None:
                channel.pair(_cafe, keyword, pages_scanned=page_num, pages_target=pages_target, candidates=taken)

            try:
                with SCRAPE_STEP_DURATION.labels(step="collect").time():
                    result = await pipeline.collector.collect(
                        cafe_id,
                        keywords,
                        budget,
                        job.exclude_boards,
                        before_keyword=before_keyword,
                        after_page=after_page,
                    )
            except CafeResolutionError as exc:
                logger.warning("cafe_skipped", job_id=job.id, cafe_id=cafe_id, error=str(exc))
                for kw in keywords:
                    channel.pair(cafe_id, kw, PairStatus.FAILED)
                continue

            for kw in keywords:
                status = PairStatus.FAILED if kw in result.failed_keywords else PairStatus.PARSING
                channel.pair(cafe_id, kw, status, candidates=result.per_keyword.get(kw, 0))
            channel.bump(candidates=len(result.candidates))

            for cand in result.candidates:
                if self._full(job, state):
                    break
                token.check()
                pair = channel.snapshot.pair(cafe_id, cand.keyword)
                if not passes_list_minimums(cand, job.min_view_count, job.min_comment_count):
                    SCRAPE_FILTERED_POSTS.labels(reason="list_minimum").inc()
                    channel.pair(cafe_id, cand.keyword, skipped=pair.skipped + 1)
                    continue
                channel.update(stage=Stage.PARSE, keyword=cand.keyword, url=cand.url)
                channel.bump(parse_attempts=1)
                outcome = await pipeline.extractor.extract(ExtractTarget.from_candidate(cand, cafe_id, cafe_name))
                if outcome.post is None:
                    channel.pair(cafe_id, cand.keyword, skipped=pair.skipped + 1)
                else:
                    kept = await self._consider(job, outcome.post, cand.subject, channel, sink, state)
                    if kept:
                        channel.pair(cafe_id, cand.keyword, collected=pair.collected + 1)
                    else:
                        channel.pair(cafe_id, cand.keyword, filtered=pair.filtered + 1)
                await jitter_sleep(self.settings.min_sleep_ms, self.settings.max_sleep_ms)

            for kw in keywords:
                if kw not in result.failed_keywords:
                    channel.pair(cafe_id, kw, PairStatus.DONE)

    # -- filtering & delivery ----------------------------------------------
    async def _consider(self, job, post: ParsedPost, subject: str, channel, sink, state) -> bool:
        """Apply per-post filters; deliver (streaming) or buffer (auto). Returns True when kept."""
        if not is_allowed_by_words(filter_text(post, subject), job.include_words, job.exclude_words):
            SCRAPE_FILTERED_POSTS.labels(reason="words").inc()
            return False
        if not within_date_range(post.published_at, job.from_date, job.to_date):
            SCRAPE_FILTERED_POSTS.labels(reason="date").inc()
            return False
        if job.use_auto_filter:
            state.buffer.append(post)
            state.collected += 1
            channel.update(collected=state.collected)
            return True
        if not passes_minimums(post, job.min_view_count, job.min_comment_count):
            SCRAPE_FILTERED_POSTS.labels(reason="minimum").inc()
            return False
        state.collected += 1
        channel.update(collected=state.collected)
        await self._deliver(job, post, channel, sink, state)
        return True

    async def _deliver(self, job, post: ParsedPost, channel, sink, state) -> None:
        result = persist_post(self.store.posts, job.id, post)
        if result.inserted:
            state.saved += 1
        state.final_posts.append(post)
        SCRAPE_POSTS_EXTRACTED.inc()
        await sink.add(post.to_sheet_row(job.id))
        channel.update(db_synced=state.saved, sheet_synced=sink.synced)

    async def _drain(self, job, channel, sink, state) -> None:
        """Clamp and persist the auto-filter buffer, then force the final sheet flush."""
        if job.use_auto_filter and state.buffer:
            batch = clamp_by_auto_threshold(state.buffer, True, job.min_view_count, job.min_comment_count)
            dropped = len(state.buffer) - len(batch)
            if dropped:
                SCRAPE_FILTERED_POSTS.labels(reason="auto_threshold").inc(dropped)
            state.buffer = []
            for post in cap(batch, job.max_posts):
                await self._deliver(job, post, channel, sink, state)
        await sink.flush()
        channel.update(db_synced=state.saved, sheet_synced=sink.synced)

    def _finalize(self, job, channel, sink, state, status: JobStatus, message: Optional[str]) -> None:
        patch: dict[str, Any] = {
            "result_count": state.saved,
            "sheet_synced": sink.synced,
            "completed_at": utcnow(),
            "error_message": message,
        }
        if status is JobStatus.SUCCESS or state.final_posts:
            try:
                patch["result_path"] = write_results_csv(self.settings.output_dir, job.id, state.final_posts)
            except OSError as exc:
                logger.error("csv_write_failed", job_id=job.id, error=str(exc))
        if not self.store.jobs.transition(job.id, [JobStatus.RUNNING], status, **patch):
            logger.warning("job_finalize_lost", job_id=job.id, status=status.value)
        stage = {JobStatus.SUCCESS: Stage.DONE, JobStatus.CANCELLED: Stage.CANCELLED}.get(status, Stage.FAILED)
        channel.finish(stage, message)
        SCRAPE_JOBS_TOTAL.labels(status=status.value.lower()).inc()


# ------------------------------------------------------------
# CLI
# ------------------------------------------------------------
async def _main_async(job_id: str) -> None:
    ctx = await bootstrap()
    await JobRunner(ctx).run(job_id)


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="cafe-scrape-job", description="Execute one queued scrape job")
    parser.add_argument("job_id", help="id of the job to execute")
    args = parser.parse_args(argv)
    try:
        asyncio.run(_main_async(args.job_id))
    except Exception as exc:  # noqa: BLE001
        logger.error("job_process_failed", job_id=args.job_id, error=str(exc) or type(exc).__name__)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
