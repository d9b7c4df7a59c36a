"""Metadata derivation for extracted cafe posts.

Everything here is a pure function over text already read from the page, so the
fallback chains are testable without a browser:

- title: on-page title unless missing or generic, else the search-snippet subject
- publishedAt: ``YYYY.MM.DD. HH:MM`` found in page text, read as KST (UTC+9), stored in UTC
- counts: visible text first, then the search list counts, then (comments only)
  the number of comment blocks actually extracted
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .utils import KST, as_int, normalize_whitespace

_PUBLISHED = re.compile(r"(\d{4})\.\s*(\d{1,2})\.\s*(\d{1,2})\.\s*(\d{1,2}):(\d{2})")
_VIEW = re.compile(r"조회(?:수)?\s*([\d,]+)")
_LIKE = re.compile(r"좋아요\s*([\d,]+)")
_COMMENT = re.compile(r"댓글\s*([\d,]+)")
_TAGS = re.compile(r"<[^>]+>")

_GENERIC_TITLES = {"네이버 카페", "naver 카페", "naver cafe", "카페", "게시글", "제목 없음"}


@dataclass
class PostCounts:
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "view_count": self.view_count,
            "like_count": self.like_count,
            "comment_count": self.comment_count,
        }


@dataclass
class PostMetadata:
    title: str = ""
    author_name: str = ""
    published_at: Optional[datetime] = None
    counts: PostCounts | None = None
    title_source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "author_name": self.author_name,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "title_source": self.title_source,
            **(self.counts or PostCounts()).to_dict(),
        }


def clean_subject(subject: str | None) -> str:
    """Strip search highlight markup (``<b>``, ``<em class=...>``) and entities."""
    return normalize_whitespace(html.unescape(_TAGS.sub("", subject or "")))


def parse_published_at(text: str | None) -> Optional[datetime]:
    m = _PUBLISHED.search(text or "")
    if not m:
        return None
    y, mo, d, hh, mm = (int(g) for g in m.groups())
    try:
        local = datetime(y, mo, d, hh, mm, tzinfo=KST)
    except ValueError:
        return None
    return local.astimezone(timezone.utc)


def parse_counts(text: str | None) -> PostCounts:
    t = text or ""

    def _grab(pattern: re.Pattern[str]) -> int:
        m = pattern.search(t)
        return as_int(m.group(1)) if m else 0

    return PostCounts(view_count=_grab(_VIEW), like_count=_grab(_LIKE), comment_count=_grab(_COMMENT))


def is_generic_title(title: str | None, cafe_name: str | None = None) -> bool:
    t = normalize_whitespace(title)
    if len(t) < 2:
        return True
    low = t.lower()
    if low in _GENERIC_TITLES:
        return True
    if low.endswith(": 네이버 카페") or low.endswith(": naver 카페"):
        return True
    if cafe_name and t == normalize_whitespace(cafe_name):
        return True
    return False


def resolve_title(page_title: str | None, fallback_subject: str | None, cafe_name: str | None = None) -> tuple[str, str]:
    """Return (title, source) where source is ``page``, ``search`` or ``none``."""
    if not is_generic_title(page_title, cafe_name):
        return normalize_whitespace(page_title), "page"
    subject = clean_subject(fallback_subject)
    if subject:
        return subject, "search"
    return normalize_whitespace(page_title), "none"


def resolve_counts(
    text_counts: PostCounts,
    list_counts: PostCounts | None = None,
    comment_blocks: int = 0,
) -> PostCounts:
    """Per dimension: text value, else list-API value, else comment block count."""
    lc = list_counts or PostCounts()
    comment = text_counts.comment_count or lc.comment_count or comment_blocks
    return PostCounts(
        view_count=text_counts.view_count or lc.view_count,
        like_count=text_counts.like_count or lc.like_count,
        comment_count=comment,
    )


def extract_metadata(
    *,
    page_text: str,
    page_title: str = "",
    author_text: str = "",
    date_text: str = "",
    fallback_subject: str = "",
    cafe_name: str = "",
    list_counts: PostCounts | None = None,
    comment_blocks: int = 0,
) -> PostMetadata:
    title, source = resolve_title(page_title, fallback_subject, cafe_name)
    published = parse_published_at(date_text) or parse_published_at(page_text)
    counts = resolve_counts(parse_counts(page_text), list_counts, comment_blocks)
    return PostMetadata(
        title=title,
        author_name=normalize_whitespace(author_text),
        published_at=published,
        counts=counts,
        title_source=source,
    )


__all__ = [
    "PostCounts",
    "PostMetadata",
    "clean_subject",
    "parse_published_at",
    "parse_counts",
    "is_generic_title",
    "resolve_title",
    "resolve_counts",
    "extract_metadata",
]
