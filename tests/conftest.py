import asyncio
import os
from datetime import datetime, timezone

import pytest

from cafe_scraper.bootstrap import bootstrap
from cafe_scraper.runtime.models import ParsedPost

# Keep stray failure-registry writes out of the working tree
os.environ.setdefault("SCRAPE_FAILURE_LOG", os.devnull)


@pytest.fixture
def ctx(tmp_path, monkeypatch):
    """Fresh context on a throwaway SQLite file, no pacing delays, sinks disabled."""
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "jobs.sqlite3"))
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path / "outputs"))
    monkeypatch.setenv("LOCK_FILE", str(tmp_path / "worker.lock"))
    monkeypatch.setenv("NAVER_CAFE_SESSION_FILE", str(tmp_path / "no-session.json"))
    monkeypatch.setenv("APP_AUTH_SECRET", "unit-test-secret")
    for name in (
        "MIN_SLEEP_MS",
        "MAX_SLEEP_MS",
        "PER_KEYWORD_DELAY_MS",
        "PAGE_SETTLE_MS",
        "CAFE_REFRESH_INTERVAL_SECONDS",
        "COMMENT_SCROLL_STEPS",
        "COMMENT_EXPAND_ATTEMPTS",
    ):
        monkeypatch.setenv(name, "0")
    for name in ("GSHEET_WEBHOOK_URL", "TELEGRAM_BOT_TOKEN", "TELEGRAM_DEFAULT_CHAT_ID", "WORKER_INLINE"):
        monkeypatch.delenv(name, raising=False)
    return asyncio.run(bootstrap(force=True))


@pytest.fixture
def make_post():
    def _make(n: int = 1, *, views: int = 0, comments: int = 0, body: str | None = None, **overrides) -> ParsedPost:
        fields = dict(
            source_url=f"https://cafe.naver.com/ca-fe/cafes/100/articles/{n}",
            cafe_id="studycafe",
            cafe_name="공부카페",
            cafe_url="https://cafe.naver.com/studycafe",
            title=f"집중 잘 되는 방법 {n}",
            body_text=body if body is not None else f"집중력 높이는 공부법 공유 {n}",
            view_count=views,
            comment_count=comments,
            published_at=datetime(2024, 5, 1, 4, 45, tzinfo=timezone.utc),
            keyword="집중",
        )
        fields.update(overrides)
        return ParsedPost(**fields)

    return _make
