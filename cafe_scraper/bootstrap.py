"""Bootstrap module for the cafe scraping subsystem.

Central responsibilities:
- Load and validate settings from environment (.env loaded by the Settings class)
- Configure structured logging (structlog + optional rotating file handler)
- Open the SQLite-backed job / settings / post stores
- Provide a shared context object for the dispatcher and the job runner
- Expose Prometheus metric instruments (counters, histograms)

Design notes:
- Avoid heavy imports at module import time (Playwright is imported lazily by the
  modules that drive a browser)
- Initialization is idempotent: ``get_context()`` memoizes, ``bootstrap(force=True)``
  rebuilds (tests rely on this after changing env vars)
"""
from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog
from prometheus_client import Counter, Histogram
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.storage import SQLiteStore

# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

class Settings(BaseSettings):
    """Application settings loaded from environment.

    Defaults are safe for local development (SQLite file in the working
    directory, sinks disabled until their URL / token is provided).
    """

    app_name: str = Field("cafe-scraper", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(None, alias="LOG_FILE")
    log_max_bytes: int = Field(2_000_000, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(5, alias="LOG_BACKUP_COUNT")

    # Storage
    sqlite_path: str = Field("cafe_scraper.sqlite3", alias="SQLITE_PATH")
    output_dir: str = Field("outputs/scrape-jobs", alias="OUTPUT_DIR")
    lock_file: str = Field(".queue-worker.lock", alias="LOCK_FILE")

    # Session material
    session_file: str = Field("playwright/storage/naver-cafe-session.json", alias="NAVER_CAFE_SESSION_FILE")
    app_auth_secret: str = Field("", alias="APP_AUTH_SECRET")
    storage_state_key: str = Field("naverCafeStorageStateEnc", alias="STORAGE_STATE_KEY")

    # Browser
    playwright_headless: bool = Field(True, alias="PLAYWRIGHT_HEADLESS")
    browser_locale: str = Field("ko-KR", alias="BROWSER_LOCALE")
    user_agent: str = Field(
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        alias="USER_AGENT",
    )
    navigation_timeout_ms: int = Field(35_000, alias="NAVIGATION_TIMEOUT_MS")
    navigation_hard_timeout_ms: int = Field(45_000, alias="NAVIGATION_HARD_TIMEOUT_MS")
    element_timeout_ms: int = Field(15_000, alias="ELEMENT_TIMEOUT_MS")
    body_text_timeout_ms: int = Field(25_000, alias="BODY_TEXT_TIMEOUT_MS")
    parse_timeout_ms: int = Field(90_000, alias="PARSE_TIMEOUT_MS")  # whole candidate, all URL variants
    context_close_timeout_ms: int = Field(20_000, alias="CONTEXT_CLOSE_TIMEOUT_MS")

    # Pacing (randomized delays, no token bucket)
    min_sleep_ms: int = Field(900, alias="MIN_SLEEP_MS")
    max_sleep_ms: int = Field(1500, alias="MAX_SLEEP_MS")
    per_keyword_delay_ms: int = Field(250, alias="PER_KEYWORD_DELAY_MS")
    page_settle_ms: int = Field(1200, alias="PAGE_SETTLE_MS")

    # Candidate collection
    search_page_size: int = Field(50, alias="SEARCH_PAGE_SIZE")
    search_max_pages: int = Field(5, alias="SEARCH_MAX_PAGES")
    search_by: str = Field("1", alias="SEARCH_BY")
    candidate_overfetch: int = Field(1, alias="CANDIDATE_OVERFETCH")
    cafe_candidate_cap_multiplier: int = Field(3, alias="CAFE_CANDIDATE_CAP_MULTIPLIER")

    # Extraction
    max_comments: int = Field(250, alias="MAX_COMMENTS")
    comment_expand_attempts: int = Field(4, alias="COMMENT_EXPAND_ATTEMPTS")
    comment_scroll_steps: int = Field(6, alias="COMMENT_SCROLL_STEPS")
    store_raw_html: bool = Field(False, alias="STORE_RAW_HTML")

    # Dispatcher
    worker_poll_interval_seconds: float = Field(5.0, alias="WORKER_POLL_INTERVAL_SECONDS")
    worker_heartbeat_interval_seconds: float = Field(15.0, alias="WORKER_HEARTBEAT_INTERVAL_SECONDS")
    stale_job_minutes: float = Field(5.0, alias="STALE_JOB_MINUTES")
    cafe_refresh_interval_seconds: int = Field(3600, alias="CAFE_REFRESH_INTERVAL_SECONDS")  # 0 disables
    worker_inline: bool = Field(False, alias="WORKER_INLINE")
    keep_done_progress: bool = Field(False, alias="KEEP_DONE_PROGRESS")

    # Sinks
    gsheet_webhook_url: str | None = Field(None, alias="GSHEET_WEBHOOK_URL")
    sheet_cell_max_chars: int = Field(45_000, alias="SHEET_CELL_MAX_CHARS")
    sheet_flush_every: int = Field(1, alias="SHEET_FLUSH_EVERY")
    telegram_bot_token: str | None = Field(None, alias="TELEGRAM_BOT_TOKEN")
    telegram_default_chat_id: str | None = Field(None, alias="TELEGRAM_DEFAULT_CHAT_ID")
    httpx_timeout: int = Field(20, alias="HTTPX_TIMEOUT")

    @field_validator("search_page_size")
    @classmethod
    def _clamp_page_size(cls, v: int) -> int:  # noqa: D401
        return max(1, min(50, int(v)))

    @property
    def stale_after_seconds(self) -> float:
        return self.stale_job_minutes * 60.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


# ------------------------------------------------------------
# Logging configuration (structlog)
# ------------------------------------------------------------

_SENSITIVE_KEYS = {
    "password",
    "pass",
    "authorization",
    "cookie",
    "cookies",
    "token",
    "secret",
    "app_auth_secret",
    "storage_state",
    "origins",
}


def configure_logging(level: str = "INFO", settings: Settings | None = None) -> None:
    """Configure structured logging with structlog.

    A standard logging handler + structlog processors rendering JSON lines.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    def redact_sensitive(logger, method_name, event_dict):  # noqa: D401
        """Shallow redaction of session material and credentials."""

        def _scrub(value):
            if isinstance(value, dict):
                out = {}
                for k, v in value.items():
                    ks = str(k).lower()
                    if ks in _SENSITIVE_KEYS or any(sk in ks for sk in ("token", "secret", "cookie")):
                        out[k] = "[REDACTED]"
                    else:
                        out[k] = _scrub(v)
                return out
            if isinstance(value, (list, tuple)):
                return [_scrub(v) for v in value]
            return value

        return _scrub(event_dict)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            structlog.processors.add_log_level,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(stream_handler)

    if settings and settings.log_file:
        try:
            log_path = Path(settings.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(file_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set file handler: {e}", file=sys.stderr)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# ------------------------------------------------------------
# Metrics instruments
# ------------------------------------------------------------
SCRAPE_JOBS_TOTAL = Counter(
    "scrape_jobs_total", "Total scrape jobs finished", labelnames=("status",)
)
SCRAPE_POSTS_EXTRACTED = Counter(
    "scrape_posts_extracted_total", "Posts accepted by the extraction + filter pipeline"
)
SCRAPE_CANDIDATES = Counter(
    "scrape_candidates_total", "Article candidates returned by the search endpoint"
)
SCRAPE_FILTERED_POSTS = Counter(
    "scrape_filtered_posts_total", "Candidates or posts rejected before persistence", labelnames=("reason",)
)
SCRAPE_STEP_DURATION = Histogram(
    "scrape_step_duration_seconds", "Duration of internal scrape steps", labelnames=("step",)
)
SCRAPE_STORAGE_ATTEMPTS = Counter(
    "scrape_storage_attempts_total", "Post storage attempts", labelnames=("backend", "result")
)
SHEET_DELIVERIES = Counter(
    "sheet_deliveries_total", "Spreadsheet sink batch deliveries", labelnames=("result",)
)
WORKER_STALE_JOBS = Counter(
    "worker_stale_jobs_total", "RUNNING jobs force-failed by the dispatcher"
)
WORKER_TICKS = Counter(
    "worker_ticks_total", "Dispatcher ticks by outcome", labelnames=("outcome",)
)


# ------------------------------------------------------------
# Context dataclass
# ------------------------------------------------------------
@dataclass(slots=True)
class AppContext:
    settings: Settings
    logger: structlog.BoundLogger
    store: SQLiteStore


_context_singleton: Optional[AppContext] = None
_context_lock = asyncio.Lock()


async def bootstrap(force: bool = False) -> AppContext:
    """Build (or return) the process-wide context."""
    global _context_singleton
    async with _context_lock:
        if _context_singleton is not None and not force:
            return _context_singleton
        settings = Settings()
        configure_logging(settings.log_level, settings)
        logger = structlog.get_logger().bind(component="bootstrap")
        store = SQLiteStore(settings.sqlite_path)
        logger.info(
            "bootstrap_complete",
            sqlite_path=settings.sqlite_path,
            sheet_sink=bool(settings.gsheet_webhook_url),
            telegram=bool(settings.telegram_bot_token),
            inline=settings.worker_inline,
        )
        _context_singleton = AppContext(settings=settings, logger=structlog.get_logger(), store=store)
        return _context_singleton


async def get_context() -> AppContext:
    if _context_singleton is None:
        return await bootstrap()
    return _context_singleton
