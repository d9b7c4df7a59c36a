from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from cafe_scraper.core.ids import content_hash


class JobType(str, Enum):
    SCRAPE = "SCRAPE"
    REFRESH_CAFES = "REFRESH_CAFES"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED})


class Stage(str, Enum):
    SEARCH = "SEARCH"
    PARSE = "PARSE"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class PairStatus(str, Enum):
    SEARCHING = "searching"
    PARSING = "parsing"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ScrapeJob:
    """Unit of work; its status field is the job state machine."""

    id: str
    job_type: JobType = JobType.SCRAPE
    status: JobStatus = JobStatus.QUEUED
    keywords: list[str] = field(default_factory=list)
    direct_urls: list[str] = field(default_factory=list)
    include_words: list[str] = field(default_factory=list)
    exclude_words: list[str] = field(default_factory=list)
    exclude_boards: list[str] = field(default_factory=list)
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    min_view_count: Optional[int] = None
    min_comment_count: Optional[int] = None
    use_auto_filter: bool = False
    max_posts: int = 50
    cafe_ids: list[str] = field(default_factory=list)
    cafe_names: list[str] = field(default_factory=list)
    notify_chat_id: Optional[str] = None
    result_count: int = 0
    sheet_synced: int = 0
    result_path: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def url_mode(self) -> bool:
        """Direct URLs take precedence; keyword search drives the job otherwise."""
        return bool(self.direct_urls)

    def cafe_targets(self) -> list[tuple[str, str]]:
        """(cafe_id, cafe_name) pairs; a missing name falls back to the id."""
        out: list[tuple[str, str]] = []
        for i, cafe_id in enumerate(self.cafe_ids):
            name = self.cafe_names[i] if i < len(self.cafe_names) and self.cafe_names[i] else cafe_id
            out.append((cafe_id, name))
        return out


@dataclass(slots=True)
class ArticleCandidate:
    """Search-result reference to a post, not yet content-verified."""

    article_id: int
    url: str
    subject: str
    cafe_numeric_id: str
    keyword: str = ""
    read_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    board_type: str = ""
    board_name: str = ""
    added_at: Optional[datetime] = None


@dataclass(slots=True)
class ParsedPost:
    """Durable output unit. ``content_hash`` is derived on creation."""

    source_url: str
    cafe_id: str
    cafe_name: str
    cafe_url: str
    title: str
    body_text: str
    comments_text: str = ""
    author_name: str = ""
    published_at: Optional[datetime] = None
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    keyword: str = ""
    raw_html: Optional[str] = None
    content_text: str = ""
    content_hash: str = ""

    def __post_init__(self) -> None:
        if not self.content_text:
            self.content_text = join_content(self.body_text, self.comments_text)
        if not self.content_hash:
            self.content_hash = content_hash(self.source_url, self.content_text)

    def to_sheet_row(self, job_id: str) -> dict[str, Any]:
        return {
            "jobId": job_id,
            "sourceUrl": self.source_url,
            "cafeId": self.cafe_id,
            "cafeName": self.cafe_name,
            "cafeUrl": self.cafe_url,
            "title": self.title,
            "authorName": self.author_name,
            "publishedAt": self.published_at.isoformat() if self.published_at else "",
            "viewCount": self.view_count,
            "likeCount": self.like_count,
            "commentCount": self.comment_count,
            "contentText": self.content_text,
        }


def join_content(body_text: str, comments_text: str) -> str:
    body = (body_text or "").strip()
    comments = (comments_text or "").strip()
    if body and comments:
        return f"{body}\n\n[댓글]\n{comments}"
    return body or comments


@dataclass(slots=True)
class PairProgress:
    """Sub-status of one (cafe, keyword) search/parse pair."""

    cafe_id: str
    keyword: str
    status: PairStatus = PairStatus.SEARCHING
    pages_scanned: int = 0
    pages_target: int = 0
    candidates: int = 0
    collected: int = 0
    skipped: int = 0
    filtered: int = 0

    @staticmethod
    def key(cafe_id: str, keyword: str) -> str:
        return f"{cafe_id}::{keyword}"


@dataclass(slots=True)
class JobProgress:
    """Single overwritable progress snapshot of a running job."""

    job_id: str
    stage: Stage = Stage.SEARCH
    updated_at: str = ""
    cafe_id: Optional[str] = None
    cafe_name: Optional[str] = None
    cafe_index: int = 0
    cafe_total: int = 0
    keyword: Optional[str] = None
    keyword_index: int = 0
    keyword_total: int = 0
    url: Optional[str] = None
    url_index: int = 0
    url_total: int = 0
    candidates: int = 0
    parse_attempts: int = 0
    collected: int = 0
    db_synced: int = 0
    sheet_synced: int = 0
    message: Optional[str] = None
    pairs: dict[str, PairProgress] = field(default_factory=dict)

    def pair(self, cafe_id: str, keyword: str) -> PairProgress:
        key = PairProgress.key(cafe_id, keyword)
        if key not in self.pairs:
            self.pairs[key] = PairProgress(cafe_id=cafe_id, keyword=keyword)
        return self.pairs[key]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        data["pairs"] = {
            k: {**asdict(p), "status": p.status.value} for k, p in self.pairs.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobProgress":
        payload = dict(data)
        pairs_raw = payload.pop("pairs", None) or {}
        payload["stage"] = Stage(payload.get("stage") or Stage.SEARCH.value)
        known = {f for f in cls.__dataclass_fields__}  # type: ignore[attr-defined]
        snap = cls(**{k: v for k, v in payload.items() if k in known})
        for key, raw in pairs_raw.items():
            raw = dict(raw)
            raw["status"] = PairStatus(raw.get("status") or PairStatus.SEARCHING.value)
            snap.pairs[key] = PairProgress(**raw)
        return snap
