"""SQLite-backed stores: jobs, key/value settings, posts, cafe memberships.

Every operation opens a short-lived connection; writes are idempotent upserts or
guarded compare-and-set updates, so a crashed process never leaves a lock behind.
Also hosts the CSV artifact writer used for ``resultPath``.
"""
from __future__ import annotations

import csv
import json
import sqlite3
import time
import uuid
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from ..runtime.models import JobStatus, ParsedPost, ScrapeJob


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _str_to_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def ensure_sqlite_schema(path: str):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(path)) as conn, conn:
        conn.execute(
            """CREATE TABLE IF NOT EXISTS scrape_jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            keywords TEXT,
            direct_urls TEXT,
            include_words TEXT,
            exclude_words TEXT,
            exclude_boards TEXT,
            from_date TEXT,
            to_date TEXT,
            min_view_count INTEGER,
            min_comment_count INTEGER,
            use_auto_filter INTEGER NOT NULL DEFAULT 0,
            max_posts INTEGER NOT NULL DEFAULT 50,
            cafe_ids TEXT,
            cafe_names TEXT,
            notify_chat_id TEXT,
            result_count INTEGER NOT NULL DEFAULT 0,
            sheet_synced INTEGER NOT NULL DEFAULT 0,
            result_path TEXT,
            error_message TEXT,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            updated_at TEXT
            )"""
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON scrape_jobs(status, created_at)")
        conn.execute(
            """CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT
            )"""
        )
        conn.execute(
            """CREATE TABLE IF NOT EXISTS scrape_posts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            source_url TEXT NOT NULL,
            cafe_id TEXT,
            cafe_name TEXT,
            cafe_url TEXT,
            title TEXT,
            author_name TEXT,
            published_at TEXT,
            view_count INTEGER,
            like_count INTEGER,
            comment_count INTEGER,
            body_text TEXT,
            comments_text TEXT,
            content_text TEXT,
            content_hash TEXT NOT NULL,
            raw_html TEXT,
            keyword TEXT,
            created_at TEXT
            )"""
        )
        conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_posts_hash ON scrape_posts(content_hash)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_posts_url ON scrape_posts(source_url)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_posts_job ON scrape_posts(job_id)")
        conn.execute(
            """CREATE TABLE IF NOT EXISTS cafe_memberships (
            cafe_id TEXT PRIMARY KEY,
            name TEXT,
            url TEXT,
            updated_at TEXT
            )"""
        )


class _SQLiteTable:
    def __init__(self, path: str):
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn


# ------------------------------------------------------------
# Jobs
# ------------------------------------------------------------
_JSON_LIST_FIELDS = ("keywords", "direct_urls", "include_words", "exclude_words", "exclude_boards", "cafe_ids", "cafe_names")
_DATETIME_FIELDS = ("from_date", "to_date", "created_at", "started_at", "completed_at", "updated_at")
_JOB_COLUMNS = (
    "id", "job_type", "status", *_JSON_LIST_FIELDS, "from_date", "to_date", "min_view_count",
    "min_comment_count", "use_auto_filter", "max_posts", "notify_chat_id", "result_count",
    "sheet_synced", "result_path", "error_message", "created_at", "started_at", "completed_at", "updated_at",
)


def _encode_job_value(column: str, value: Any) -> Any:
    if column in _JSON_LIST_FIELDS:
        return json.dumps(list(value or []), ensure_ascii=False)
    if column in _DATETIME_FIELDS:
        return _dt_to_str(value)
    if column in ("job_type", "status"):
        return getattr(value, "value", value)
    if column == "use_auto_filter":
        return 1 if value else 0
    return value


def _row_to_job(row: sqlite3.Row) -> "ScrapeJob":
    from ..runtime.models import JobStatus, JobType, ScrapeJob

    data: dict[str, Any] = {}
    for column in _JOB_COLUMNS:
        value = row[column]
        if column in _JSON_LIST_FIELDS:
            try:
                value = [str(v) for v in json.loads(value or "[]")]
            except (TypeError, ValueError):
                value = []
        elif column in _DATETIME_FIELDS:
            value = _str_to_dt(value)
        elif column == "job_type":
            value = JobType(value)
        elif column == "status":
            value = JobStatus(value)
        elif column == "use_auto_filter":
            value = bool(value)
        data[column] = value
    return ScrapeJob(**data)


class JobStore(_SQLiteTable):
    """Job records. ``transition`` is the only way status changes."""

    def create(self, job: "ScrapeJob") -> str:
        job.id = job.id or uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        job.created_at = job.created_at or now
        job.updated_at = now
        values = [_encode_job_value(c, getattr(job, c)) for c in _JOB_COLUMNS]
        placeholders = ",".join("?" for _ in _JOB_COLUMNS)
        with closing(self._connect()) as conn, conn:
            conn.execute(f"INSERT INTO scrape_jobs ({','.join(_JOB_COLUMNS)}) VALUES ({placeholders})", values)
        return job.id

    def get(self, job_id: str) -> Optional["ScrapeJob"]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM scrape_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_by_status(self, status: "JobStatus | str", order: str = "asc", limit: int | None = None) -> list["ScrapeJob"]:
        direction = "DESC" if str(order).lower() == "desc" else "ASC"
        sql = f"SELECT * FROM scrape_jobs WHERE status = ? ORDER BY created_at {direction}, rowid {direction}"
        params: list[Any] = [getattr(status, "value", status)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with closing(self._connect()) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_job(r) for r in rows]

    def count_by_status(self, status: "JobStatus | str") -> int:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM scrape_jobs WHERE status = ?", (getattr(status, "value", status),)
            ).fetchone()
        return int(row[0])

    def update(self, job_id: str, **patch: Any) -> None:
        """Patch non-status fields; bumps ``updated_at``."""
        if "status" in patch:
            raise ValueError("status changes go through transition()")
        self._write(job_id, patch, where="id = ?", params=[job_id])

    def transition(self, job_id: str, from_statuses: Iterable["JobStatus | str"], to_status: "JobStatus | str", **patch: Any) -> bool:
        """Compare-and-set the status. Returns False when the job is not in ``from_statuses``."""
        allowed = [getattr(s, "value", s) for s in from_statuses]
        if not allowed:
            return False
        patch["status"] = to_status
        marks = ",".join("?" for _ in allowed)
        return self._write(job_id, patch, where=f"id = ? AND status IN ({marks})", params=[job_id, *allowed]) > 0

    def _write(self, job_id: str, patch: dict[str, Any], *, where: str, params: list[Any]) -> int:
        unknown = set(patch) - set(_JOB_COLUMNS)
        if unknown:
            raise KeyError(f"unknown job fields: {sorted(unknown)}")
        patch = dict(patch)
        patch.setdefault("updated_at", datetime.now(timezone.utc))
        assignments = ", ".join(f"{k} = ?" for k in patch)
        values = [_encode_job_value(k, v) for k, v in patch.items()]
        with closing(self._connect()) as conn, conn:
            cur = conn.execute(f"UPDATE scrape_jobs SET {assignments} WHERE {where}", [*values, *params])
            return cur.rowcount


# ------------------------------------------------------------
# Key/value settings (progress snapshots, cancel flags, heartbeat, session)
# ------------------------------------------------------------
class SettingsStore(_SQLiteTable):
    def get(self, key: str) -> Optional[str]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def upsert(self, key: str, value: str) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT INTO settings(key, value, updated_at) VALUES (?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, value, _now_iso()),
            )

    def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        marks = ",".join("?" for _ in keys)
        with closing(self._connect()) as conn, conn:
            return conn.execute(f"DELETE FROM settings WHERE key IN ({marks})", keys).rowcount

    def get_json(self, key: str) -> Any:
        raw = self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def upsert_json(self, key: str, value: Any) -> None:
        self.upsert(key, json.dumps(value, ensure_ascii=False, default=str))


# ------------------------------------------------------------
# Posts
# ------------------------------------------------------------
class PostStore(_SQLiteTable):
    def find_by_hash(self, content_hash: str) -> Optional[dict[str, Any]]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM scrape_posts WHERE content_hash = ?", (content_hash,)).fetchone()
        return dict(row) if row else None

    def find_by_url(self, source_url: str) -> list[dict[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT id, source_url, content_hash, job_id FROM scrape_posts WHERE source_url = ? ORDER BY id",
                (source_url,),
            ).fetchall()
        return [dict(r) for r in rows]

    def insert(self, job_id: str, post: "ParsedPost") -> Optional[int]:
        """Insert a post; returns the row id, or None when the hash already exists."""
        row = (
            job_id, post.source_url, post.cafe_id, post.cafe_name, post.cafe_url, post.title, post.author_name,
            _dt_to_str(post.published_at), post.view_count, post.like_count, post.comment_count, post.body_text,
            post.comments_text, post.content_text, post.content_hash, post.raw_html, post.keyword, _now_iso(),
        )
        with closing(self._connect()) as conn, conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO scrape_posts (
                job_id, source_url, cafe_id, cafe_name, cafe_url, title, author_name, published_at,
                view_count, like_count, comment_count, body_text, comments_text, content_text,
                content_hash, raw_html, keyword, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                row,
            )
            return cur.lastrowid if cur.rowcount else None

    def count_for_job(self, job_id: str) -> int:
        with closing(self._connect()) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM scrape_posts WHERE job_id = ?", (job_id,)).fetchone()[0])

    def list_for_job(self, job_id: str) -> list[dict[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT * FROM scrape_posts WHERE job_id = ? ORDER BY id", (job_id,)).fetchall()
        return [dict(r) for r in rows]


# ------------------------------------------------------------
# Cafe memberships (refreshed by the REFRESH_CAFES maintenance job)
# ------------------------------------------------------------
class CafeStore(_SQLiteTable):
    def upsert_membership(self, cafe_id: str, name: str, url: str) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT INTO cafe_memberships(cafe_id, name, url, updated_at) VALUES (?,?,?,?) "
                "ON CONFLICT(cafe_id) DO UPDATE SET name = excluded.name, url = excluded.url, updated_at = excluded.updated_at",
                (cafe_id, name, url, _now_iso()),
            )

    def list_memberships(self) -> list[dict[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT cafe_id, name, url, updated_at FROM cafe_memberships ORDER BY name").fetchall()
        return [dict(r) for r in rows]


class SQLiteStore:
    """Bundle of the four tables living in one SQLite file."""

    def __init__(self, path: str):
        self.path = path
        ensure_sqlite_schema(path)
        self.jobs = JobStore(path)
        self.settings = SettingsStore(path)
        self.posts = PostStore(path)
        self.cafes = CafeStore(path)


# ------------------------------------------------------------
# CSV artifact
# ------------------------------------------------------------
_CSV_HEADER = [
    "sourceUrl", "cafeId", "cafeName", "title", "authorName", "publishedAt",
    "viewCount", "likeCount", "commentCount", "contentText",
]


def write_results_csv(output_dir: str, job_id: str, posts: list["ParsedPost"]) -> str:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    file_path = out / f"job-{job_id}-{int(time.time() * 1000)}.csv"
    with open(file_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, quoting=csv.QUOTE_ALL)
        writer.writerow(_CSV_HEADER)
        for p in posts:
            writer.writerow([
                p.source_url, p.cafe_id, p.cafe_name, p.title, p.author_name,
                p.published_at.isoformat() if p.published_at else "",
                p.view_count, p.like_count, p.comment_count,
                " ".join((p.content_text or "").split())[:5000],
            ])
    return str(file_path)
