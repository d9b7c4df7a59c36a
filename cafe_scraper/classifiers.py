"""Heuristic Korean-text classifiers for cafe pages.

Pure string predicates, no browser dependency:
- join wall: the cafe asks the visitor to join before reading
- permission wall: the visitor's membership tier is too low for the board
- profile/list UI: the page is a member profile or an article list, not a post

``clean_cafe_text`` strips site chrome lines (menu labels, join prompts, member
count banners) so that classification and storage operate on the post itself.
"""
from __future__ import annotations

import re

from .utils import compact_lower

JOIN_WALL_PHRASES = (
    "카페에 가입하면 바로 글을 볼 수 있어요",
    "10초 만에 가입하기",
    "가입해 보세요",
    "멤버와 함께하는",
    "카페 멤버만 볼 수 있습니다",
)

PERMISSION_WALL_PHRASES = (
    "등급이 되시면 읽기가 가능한 게시판입니다",
    "읽기 권한이 없습니다",
    "열람 권한이 없습니다",
    "등급 이상 읽기가 가능",
    "멤버 등급을 확인해 주세요",
    "등업 후 이용",
)

_PROFILE_MARKERS = ("작성글", "작성댓글", "댓글단 글", "좋아요한 글", "가입일", "방문 수", "방문수")
_LIST_HEADER = re.compile(r"제목\s*작성자\s*작성일\s*조회")
_LIST_ROW_DATE = re.compile(r"^\d{4}\.\d{2}\.\d{2}\.?$|^\d{1,2}:\d{2}$")

_DROP_IF_INCLUDES = (
    "본문 바로가기",
    "카페에 가입하면 바로 글을 볼 수 있어요",
    "가입해 보세요",
    "10초 만에 가입하기",
    "멤버와 함께하는",
    "최근 일주일 동안",
)
_DROP_EXACT = frozenset({
    "카페홈",
    "가입",
    "검색",
    "메뉴",
    "앱 열기",
    "기타 기능",
    "쪽지",
    "공유",
    "신고",
    "댓글",
    "전체글",
    "전체서비스",
})
_MEMBER_BANNER = re.compile(r"^\d+(\.\d+)?만명의 멤버")


def _flat(text: str | None) -> str:
    return re.sub(r"\s+", " ", text or "")


def looks_like_join_wall(text: str | None) -> bool:
    t = _flat(text)
    return any(p in t for p in JOIN_WALL_PHRASES)


def looks_like_permission_wall(text: str | None) -> bool:
    t = _flat(text)
    return any(p in t for p in PERMISSION_WALL_PHRASES)


def looks_like_profile_or_list(text: str | None) -> bool:
    """Member profile page or article listing instead of a single post."""
    t = text or ""
    if sum(1 for m in _PROFILE_MARKERS if m in t) >= 2:
        return True
    if _LIST_HEADER.search(_flat(t)):
        return True
    dated_rows = sum(1 for line in t.splitlines() if _LIST_ROW_DATE.match(line.strip()))
    return dated_rows >= 5


def is_access_wall(text: str | None) -> bool:
    return looks_like_join_wall(text) or looks_like_permission_wall(text)


def clean_cafe_text(text: str | None) -> str:
    lines = [l.strip() for l in (text or "").split("\n")]
    kept = []
    for line in lines:
        if not line or line in _DROP_EXACT:
            continue
        if any(p in line for p in _DROP_IF_INCLUDES):
            continue
        if _MEMBER_BANNER.match(line):
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def matches_keyword(text: str | None, keyword: str | None) -> bool:
    """Case- and space-insensitive substring test; an empty keyword always matches."""
    needle = compact_lower(keyword)
    if not needle:
        return True
    return needle in compact_lower(text)


__all__ = [
    "JOIN_WALL_PHRASES",
    "PERMISSION_WALL_PHRASES",
    "looks_like_join_wall",
    "looks_like_permission_wall",
    "looks_like_profile_or_list",
    "is_access_wall",
    "clean_cafe_text",
    "matches_keyword",
]
