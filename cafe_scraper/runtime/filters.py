"""Post filters: word lists, date range, count minimums, auto-threshold clamp, cap.

Word matching is case- and whitespace-insensitive substring matching over the
candidate subject, the extracted title and the content text.

The auto threshold is a per-run statistic: with ``use_auto_filter`` and no explicit
minimum for a dimension, the minimum becomes the median (upper median for even
sizes) of that dimension over the batch being filtered.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from cafe_scraper.utils import compact_lower

from .models import ArticleCandidate, ParsedPost


def is_allowed_by_words(text: str, include_words: Sequence[str], exclude_words: Sequence[str]) -> bool:
    compact = compact_lower(text)
    includes = [compact_lower(w) for w in include_words if compact_lower(w)]
    excludes = [compact_lower(w) for w in exclude_words if compact_lower(w)]
    if includes and not any(w in compact for w in includes):
        return False
    if any(w in compact for w in excludes):
        return False
    return True


def filter_text(post: ParsedPost, subject: str = "") -> str:
    return f"{subject}\n{post.title}\n{post.content_text}"


def within_date_range(published_at: Optional[datetime], from_date: Optional[datetime], to_date: Optional[datetime]) -> bool:
    """Unknown publish dates always pass."""
    if published_at is None:
        return True
    if from_date is not None and published_at < from_date:
        return False
    if to_date is not None and published_at > to_date:
        return False
    return True


def passes_list_minimums(cand: ArticleCandidate, min_view: Optional[int], min_comment: Optional[int]) -> bool:
    """Early filter on search-list counts, before any navigation."""
    if min_view is not None and cand.read_count < min_view:
        return False
    if min_comment is not None and cand.comment_count < min_comment:
        return False
    return True


def passes_minimums(post: ParsedPost, min_view: Optional[int], min_comment: Optional[int]) -> bool:
    if min_view is not None and post.view_count < min_view:
        return False
    if min_comment is not None and post.comment_count < min_comment:
        return False
    return True


def median_threshold(values: Iterable[int]) -> int:
    ordered = sorted(values)
    if not ordered:
        return 0
    return ordered[len(ordered) // 2]


@dataclass(slots=True, frozen=True)
class Thresholds:
    min_view: Optional[int]
    min_comment: Optional[int]

    @property
    def active(self) -> bool:
        return self.min_view is not None or self.min_comment is not None


def effective_thresholds(
    posts: Sequence[ParsedPost],
    use_auto_filter: bool,
    min_view: Optional[int],
    min_comment: Optional[int],
) -> Thresholds:
    if use_auto_filter:
        if min_view is None:
            min_view = median_threshold(p.view_count for p in posts)
        if min_comment is None:
            min_comment = median_threshold(p.comment_count for p in posts)
    return Thresholds(min_view=min_view, min_comment=min_comment)


def clamp_by_auto_threshold(
    posts: Sequence[ParsedPost],
    use_auto_filter: bool,
    min_view: Optional[int],
    min_comment: Optional[int],
) -> list[ParsedPost]:
    if not use_auto_filter and min_view is None and min_comment is None:
        return list(posts)
    th = effective_thresholds(posts, use_auto_filter, min_view, min_comment)
    return [p for p in posts if passes_minimums(p, th.min_view, th.min_comment)]


def cap(posts: Sequence[ParsedPost], max_posts: int) -> list[ParsedPost]:
    return list(posts)[: max(0, max_posts)]


__all__ = [
    "Thresholds",
    "cap",
    "clamp_by_auto_threshold",
    "effective_thresholds",
    "filter_text",
    "is_allowed_by_words",
    "median_threshold",
    "passes_list_minimums",
    "passes_minimums",
    "within_date_range",
]
