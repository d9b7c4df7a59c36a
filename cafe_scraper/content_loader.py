"""Content Loader - lazy-loaded content handling for cafe article pages.

Cafe articles truncate long bodies behind "더보기" toggles and load comments
lazily. Everything here is the same action a reader would do before copying the
page text:

- expand_more_controls: click "더보기/펼쳐/전체 보기/more" toggles (bounded)
- trigger_lazy_load: incremental scroll to the bottom
- load_comments: open the comment pane if hidden, then press "load more" (bounded)
- collect_comment_texts: visible text per comment item, capped

All interactions are best-effort: a failed click or scroll is logged at debug level
and never aborts the extraction.
"""
from __future__ import annotations

import asyncio
import re
from typing import Any

import structlog

from .css_selectors import (
    COMMENT_ITEM_SELECTORS,
    LOAD_MORE_COMMENTS_SELECTORS,
    OPEN_COMMENTS_SELECTORS,
    ordered,
    read_texts,
)

logger = structlog.get_logger(__name__)

EXPAND_PATTERN = re.compile(r"더보기|펼쳐|전체\s*보기|전체\s*글|more", re.I)
_SCROLL_BOTTOM = "() => window.scrollTo(0, document.body.scrollHeight)"
_SCROLL_STEP = "(dy) => window.scrollBy(0, dy)"


# =============================================================================
# EXPANSION
# =============================================================================

async def expand_more_controls(frame: Any, attempts: int = 4, max_clicks: int = 6) -> int:
    """Click expand toggles; returns how many clicks were issued."""
    clicks = 0
    for _ in range(max(0, attempts)):
        candidates = frame.locator("button, a, span").filter(has_text=EXPAND_PATTERN)
        try:
            count = await candidates.count()
        except Exception as exc:  # noqa: BLE001
            logger.debug("expand_count_failed", error=str(exc))
            count = 0
        if count == 0:
            break
        for i in range(min(count, max_clicks)):
            try:
                await candidates.nth(i).click(timeout=1500)
                clicks += 1
            except Exception as exc:  # noqa: BLE001
                logger.debug("expand_click_failed", index=i, error=str(exc))
            await asyncio.sleep(0.2)
        try:
            await frame.evaluate(_SCROLL_BOTTOM)
        except Exception as exc:  # noqa: BLE001
            logger.debug("expand_scroll_failed", error=str(exc))
        await asyncio.sleep(0.4)
    return clicks


# =============================================================================
# LAZY LOAD TRIGGER
# =============================================================================

async def trigger_lazy_load(frame: Any, scroll_count: int = 6, scroll_amount: int = 900, scroll_delay_ms: int = 300) -> None:
    try:
        for _ in range(max(0, scroll_count)):
            await frame.evaluate(_SCROLL_STEP, scroll_amount)
            await asyncio.sleep(scroll_delay_ms / 1000.0)
        await frame.evaluate(_SCROLL_BOTTOM)
    except Exception as exc:  # noqa: BLE001
        logger.debug("trigger_lazy_load_error", error=str(exc))


async def _visible_count(frame: Any, css: str) -> int:
    try:
        return await frame.locator(css).count()
    except Exception:  # noqa: BLE001
        return 0


async def _click_first(frame: Any, css: str) -> bool:
    loc = frame.locator(css).first
    try:
        if await loc.count() == 0:
            return False
        await loc.click(timeout=1500)
        return True
    except Exception as exc:  # noqa: BLE001
        logger.debug("comment_control_click_failed", selector=css, error=str(exc))
        return False


async def load_comments(frame: Any, *, scroll_steps: int = 6, expand_attempts: int = 4) -> None:
    await trigger_lazy_load(frame, scroll_count=scroll_steps)

    has_items = False
    for config in ordered(COMMENT_ITEM_SELECTORS):
        if await _visible_count(frame, config.css) > 0:
            has_items = True
            break
    if not has_items:
        for config in ordered(OPEN_COMMENTS_SELECTORS):
            if await _click_first(frame, config.css):
                await asyncio.sleep(0.6)
                break

    for _ in range(max(0, expand_attempts)):
        clicked = False
        for config in ordered(LOAD_MORE_COMMENTS_SELECTORS):
            if await _click_first(frame, config.css):
                clicked = True
                await asyncio.sleep(0.5)
                break
        if not clicked:
            break


# =============================================================================
# COLLECTION
# =============================================================================

async def collect_comment_texts(frame: Any, *, max_comments: int = 250, timeout_ms: int = 15000) -> list[str]:
    """Texts of the first comment-item selector that matches anything."""
    for config in ordered(COMMENT_ITEM_SELECTORS):
        texts = (await read_texts(frame, [config], timeout_ms, limit=max_comments)).get(config.css) or []
        cleaned = [t.strip() for t in texts if t and t.strip()]
        if cleaned:
            logger.debug("comments_collected", selector=config.name, count=len(cleaned))
            return cleaned[:max_comments]
    return []


def join_comments(texts: list[str]) -> str:
    return "\n\n".join(t.strip() for t in texts if t and t.strip())


__all__ = [
    "EXPAND_PATTERN",
    "expand_more_controls",
    "trigger_lazy_load",
    "load_comments",
    "collect_comment_texts",
    "join_comments",
]
