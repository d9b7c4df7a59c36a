"""Selector strategies for cafe article pages, with an ordered fallback interpreter.

This module provides resilient CSS selector handling for cafe scraping:
- Ordered selector lists per element type (most specific editor containers first,
  generic document containers last)
- A small interpreter evaluating ``(selector, validator)`` strategies in sequence
  and keeping the longest text that the validator accepts
- Per-selector outcome tracking (accepted / rejected reason) for diagnostics

New site layouts are supported by appending a ``SelectorConfig``; control flow in
the extractor never changes.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import structlog

from .classifiers import looks_like_join_wall, looks_like_permission_wall, looks_like_profile_or_list

logger = structlog.get_logger(__name__)

# A validator returns None when the text is acceptable, otherwise a short reject reason.
Validator = Callable[[str], Optional[str]]


# =============================================================================
# SELECTOR DEFINITIONS - Editable configuration
# =============================================================================

@dataclass(slots=True)
class SelectorConfig:
    """Configuration for a single selector with metadata."""
    css: str
    name: str
    priority: int = 0  # Lower = tried first
    min_expected: int = 0
    is_fallback: bool = False


# Post body: SmartEditor ONE, renderer wrappers, legacy reader, mobile, then generic.
BODY_SELECTORS: list[SelectorConfig] = [
    SelectorConfig("div.se-main-container", "smart_editor_one", priority=0),
    SelectorConfig("div.ContentRenderer", "content_renderer", priority=1),
    SelectorConfig("div.article_viewer", "article_viewer", priority=2),
    SelectorConfig("#tbody", "legacy_tbody", priority=3),
    SelectorConfig("#postContent", "mobile_post_content", priority=4),
    SelectorConfig("div.post_ct", "mobile_post_ct", priority=5),
    SelectorConfig("div.article_container", "article_container", priority=6, is_fallback=True),
    SelectorConfig("#app", "app_root", priority=7, is_fallback=True),
    SelectorConfig("body", "document_body", priority=8, is_fallback=True),
]

COMMENT_ITEM_SELECTORS: list[SelectorConfig] = [
    SelectorConfig("ul.comment_list li.CommentItem", "comment_list_item", priority=0),
    SelectorConfig("li.CommentItem", "comment_item", priority=1),
    SelectorConfig("ul.u_cbox_list li.u_cbox_comment", "cbox_comment", priority=2),
    SelectorConfig("li.comment_item", "mobile_comment_item", priority=3, is_fallback=True),
]

TITLE_SELECTORS: list[SelectorConfig] = [
    SelectorConfig("h3.title_text", "title_text", priority=0),
    SelectorConfig(".ArticleTitle .title_text", "article_title", priority=1),
    SelectorConfig("h2.tit", "mobile_title", priority=2, is_fallback=True),
]

AUTHOR_SELECTORS: list[SelectorConfig] = [
    SelectorConfig(".WriterInfo .nickname", "writer_nickname", priority=0),
    SelectorConfig(".profile_area .nickname", "profile_nickname", priority=1),
    SelectorConfig(".user_info .nick", "mobile_nick", priority=2, is_fallback=True),
]

DATE_SELECTORS: list[SelectorConfig] = [
    SelectorConfig(".article_info .date", "article_info_date", priority=0),
    SelectorConfig(".WriterInfo .date", "writer_info_date", priority=1),
    SelectorConfig("span.date", "span_date", priority=2, is_fallback=True),
]

OPEN_COMMENTS_SELECTORS: list[SelectorConfig] = [
    SelectorConfig("a.button_comment", "button_comment", priority=0),
    SelectorConfig("button.btn_comment", "btn_comment", priority=1, is_fallback=True),
]

LOAD_MORE_COMMENTS_SELECTORS: list[SelectorConfig] = [
    SelectorConfig("a.more_comment", "more_comment", priority=0),
    SelectorConfig("button.comment_more", "comment_more", priority=1),
    SelectorConfig("a.u_cbox_btn_more", "cbox_more", priority=2, is_fallback=True),
]


def ordered(configs: Iterable[SelectorConfig]) -> list[SelectorConfig]:
    return sorted(configs, key=lambda c: c.priority)


# =============================================================================
# VALIDATORS
# =============================================================================

def body_rejection(text: str) -> Optional[str]:
    """Reject empty text and the three non-post page shapes."""
    if not (text or "").strip():
        return "empty"
    if looks_like_join_wall(text):
        return "join_wall"
    if looks_like_permission_wall(text):
        return "permission_wall"
    if looks_like_profile_or_list(text):
        return "profile_list"
    return None


# =============================================================================
# INTERPRETER
# =============================================================================

@dataclass(slots=True)
class SelectionResult:
    text: str = ""
    selector: Optional[str] = None
    rejections: dict[str, int] = field(default_factory=dict)
    last_text: str = ""  # last non-empty text seen, accepted or not

    @property
    def ok(self) -> bool:
        return bool(self.text)

    @property
    def dominant_rejection(self) -> Optional[str]:
        if not self.rejections:
            return None
        return max(self.rejections.items(), key=lambda kv: kv[1])[0]


def pick_longest(
    strategies: Iterable[tuple[SelectorConfig, Validator]],
    texts: dict[str, list[str]],
) -> SelectionResult:
    """Evaluate strategies in order over texts already read per selector css.

    Every matched node is validated; the longest accepted text wins.
    """
    result = SelectionResult()
    for config, validator in strategies:
        for text in texts.get(config.css, []):
            text = (text or "").strip()
            if text:
                result.last_text = text
            reason = validator(text)
            if reason:
                result.rejections[reason] = result.rejections.get(reason, 0) + 1
                continue
            if len(text) > len(result.text):
                result.text = text
                result.selector = config.name
    return result


async def read_texts(frame: Any, configs: Iterable[SelectorConfig], timeout_ms: int, limit: int | None = None) -> dict[str, list[str]]:
    """inner_text of every node matched by each selector; failures yield no texts."""
    out: dict[str, list[str]] = {}
    for config in configs:
        try:
            texts = await asyncio.wait_for(frame.locator(config.css).all_inner_texts(), timeout=timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001
            logger.debug("selector_read_failed", selector=config.name, error=str(exc) or type(exc).__name__)
            texts = []
        if limit is not None:
            texts = texts[:limit]
        out[config.css] = list(texts)
    return out


async def extract_by_strategies(
    frame: Any,
    configs: Iterable[SelectorConfig],
    validator: Validator,
    timeout_ms: int,
) -> SelectionResult:
    configs = ordered(configs)
    texts = await read_texts(frame, configs, timeout_ms)
    result = pick_longest(((c, validator) for c in configs), texts)
    logger.debug(
        "selector_strategies_evaluated",
        selector=result.selector,
        length=len(result.text),
        rejections=result.rejections,
    )
    return result


async def first_text(frame: Any, configs: Iterable[SelectorConfig], timeout_ms: int) -> str:
    """First non-empty text across selectors, in priority order."""
    for config in ordered(configs):
        texts = (await read_texts(frame, [config], timeout_ms, limit=1)).get(config.css) or []
        if texts and texts[0].strip():
            return texts[0].strip()
    return ""


__all__ = [
    "SelectorConfig",
    "SelectionResult",
    "BODY_SELECTORS",
    "COMMENT_ITEM_SELECTORS",
    "TITLE_SELECTORS",
    "AUTHOR_SELECTORS",
    "DATE_SELECTORS",
    "OPEN_COMMENTS_SELECTORS",
    "LOAD_MORE_COMMENTS_SELECTORS",
    "ordered",
    "body_rejection",
    "pick_longest",
    "read_texts",
    "extract_by_strategies",
    "first_text",
]
