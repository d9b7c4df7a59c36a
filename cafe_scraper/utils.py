"""Utility functions for the cafe scraping subsystem.

This module groups stateless helpers used by the collector, extractor and runner:
- Jitter sleep (randomized pacing between requests)
- Text normalization (whitespace collapse, case/space-insensitive comparison keys)
- Lenient integer parsing of counters ("1,234", "조회 56")
- Timeout wrapper turning ``asyncio.TimeoutError`` into a domain error
- Retry decorator wrapping Tenacity with standard config
- Korean date parsing for cafe list/article timestamps (KST)

All functions are pure except for those doing async sleeps.
"""
from __future__ import annotations

import asyncio
import random
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

T = TypeVar("T")

KST = timezone(timedelta(hours=9))


# ---------------------------------------------------------------------------
# Sleep jitter
# ---------------------------------------------------------------------------
async def jitter_sleep(min_ms: int, max_ms: int) -> float:
    """Async sleep for a random duration between bounds.

    Returns actual seconds slept (float) to allow instrumentation.
    """
    if max_ms < min_ms:
        max_ms = min_ms
    if max_ms <= 0:
        return 0.0
    duration_ms = random.randint(max(0, min_ms), max_ms)
    seconds = duration_ms / 1000.0
    await asyncio.sleep(seconds)
    return seconds


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------
_WS = re.compile(r"\s+")


def normalize_whitespace(text: str | None) -> str:
    return _WS.sub(" ", text or "").strip()


def compact_lower(text: str | None) -> str:
    """Case- and whitespace-insensitive comparison key ("자유 게시판" == "자유게시판")."""
    return _WS.sub("", text or "").lower()


_DIGITS = re.compile(r"\d[\d,]*")


def as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    m = _DIGITS.search(str(value))
    if not m:
        return default
    try:
        return int(m.group(0).replace(",", ""))
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Timeouts & retries
# ---------------------------------------------------------------------------
async def with_timeout(aw: Awaitable[T], timeout_ms: int, error: Callable[[str], BaseException], label: str) -> T:
    """Await ``aw`` bounded by ``timeout_ms``; raise ``error(label)`` on expiry."""
    try:
        return await asyncio.wait_for(aw, timeout=max(0.001, timeout_ms / 1000.0))
    except asyncio.TimeoutError as exc:
        raise error(f"{label} timed out after {timeout_ms}ms") from exc


def retryable(*exc_types: type[BaseException]):
    """Decorator factory for retry logic with exponential backoff + jitter.

    Example:
        @retryable(httpx.TransportError)
        async def fragile(): ...
    """
    if not exc_types:
        exc_types = (Exception,)  # type: ignore

    def _decorator(fn: Callable[..., Awaitable[Any]]):
        return retry(
            reraise=True,
            stop=stop_after_attempt(3),
            wait=wait_exponential_jitter(multiplier=0.4, max=6, jitter=0.4),
            retry=retry_if_exception_type(exc_types),
        )(fn)

    return _decorator


# ---------------------------------------------------------------------------
# Korean date parsing
# ---------------------------------------------------------------------------
# "2024.05.01. 13:45" on article pages, "2024.05.01." for older list rows,
# "13:45" for rows posted today.
_FULL_DATE = re.compile(r"(\d{4})[.\-/]\s*(\d{1,2})[.\-/]\s*(\d{1,2})\.?(?:\s+(\d{1,2}):(\d{2}))?")
_TIME_ONLY = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def parse_kst_datetime(raw: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse cafe timestamps into UTC.

    Accepts epoch milliseconds, ``YYYY.MM.DD.[ HH:MM]`` or bare ``HH:MM`` (today, KST).
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(float(raw) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(raw).strip()
    if text.isdigit() and len(text) >= 12:
        return parse_kst_datetime(int(text), now)
    m = _FULL_DATE.search(text)
    if m:
        y, mo, d, hh, mm = m.groups()
        try:
            local = datetime(int(y), int(mo), int(d), int(hh or 0), int(mm or 0), tzinfo=KST)
        except ValueError:
            return None
        return local.astimezone(timezone.utc)
    m = _TIME_ONLY.match(text)
    if m:
        today = (now or datetime.now(timezone.utc)).astimezone(KST)
        try:
            local = today.replace(hour=int(m.group(1)), minute=int(m.group(2)), second=0, microsecond=0)
        except ValueError:
            return None
        return local.astimezone(timezone.utc)
    return None


__all__ = [
    "KST",
    "jitter_sleep",
    "normalize_whitespace",
    "compact_lower",
    "as_int",
    "with_timeout",
    "retryable",
    "parse_kst_datetime",
]
