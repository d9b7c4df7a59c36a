"""Candidate collection: cafe id resolution and paginated cafe search.

Responsibilities:
- Resolve a cafe slug to its numeric club id (lightweight HTTP first, browser
  page as fallback, cached per collector instance)
- Page through the mobile search endpoint per keyword, normalizing rows into
  ``ArticleCandidate`` and dropping excluded boards
- Bound work: per-keyword take, per-cafe cap, early stop on a short page
- Merge keywords, order by recency (newest first) and truncate to the cafe cap

Design notes:
- ``fetch_json`` is injected; production binds it to ``page.request.get`` so the
  search call carries the session cookies, tests pass a plain coroutine
- Requests are strictly sequential with jittered pauses between them
"""
from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import structlog

from .bootstrap import SCRAPE_CANDIDATES, SCRAPE_FILTERED_POSTS, Settings
from .core.errors import CafeResolutionError, SearchRequestError
from .core.ids import canonical_article_url, cafe_url, is_numeric_id
from .metadata_extractor import clean_subject
from .runtime.models import ArticleCandidate
from .utils import as_int, compact_lower, jitter_sleep, parse_kst_datetime, retryable

logger = structlog.get_logger(__name__)

SEARCH_API = "https://apis.naver.com/cafe-web/cafe-mobile/CafeMobileWebArticleSearchListV4"

FetchJson = Callable[[str], Awaitable[Any]]
KeywordHook = Callable[[str, int], Awaitable[None]]
PageHook = Callable[[str, int, int, int], Awaitable[None]]

_CLUB_ID_PATTERNS = (
    re.compile(r"clubid=(\d+)", re.I),
    re.compile(r"cafeId=(\d+)", re.I),
    re.compile(r"\"clubId\"\s*:\s*\"?(\d+)", re.I),
    re.compile(r"/cafes/(\d+)/", re.I),
)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ------------------------------------------------------------
# Budgets
# ------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class CollectionBudget:
    max_urls_for_cafe: int
    per_keyword: int
    cafe_cap: int


def compute_budget(
    max_posts: int,
    cafe_count: int,
    keyword_count: int,
    *,
    overfetch: int = 1,
    cap_multiplier: int = 3,
) -> CollectionBudget:
    max_urls = math.ceil(max(1, max_posts) / max(1, cafe_count)) * max(1, overfetch)
    per_keyword = max(1, max_urls // max(1, keyword_count))
    return CollectionBudget(
        max_urls_for_cafe=max_urls,
        per_keyword=per_keyword,
        cafe_cap=max(1, max_posts * max(1, cap_multiplier)),
    )


# ------------------------------------------------------------
# Row normalization
# ------------------------------------------------------------
def search_url(cafe_numeric_id: str, keyword: str, page: int, per_page: int, search_by: str = "1") -> str:
    params = {
        "cafeId": cafe_numeric_id,
        "query": keyword,
        "searchBy": search_by,
        "sortBy": "date",
        "page": page,
        "perPage": per_page,
        "adUnit": "MW_CAFE_BOARD",
        "ad": "true",
    }
    return f"{SEARCH_API}?{urlencode(params)}"


def _article_rows(payload: Any) -> list[Any]:
    try:
        rows = payload["message"]["result"]["articleList"]
    except (KeyError, TypeError):
        return []
    return rows if isinstance(rows, list) else []


def parse_search_rows(payload: Any, cafe_numeric_id: str, keyword: str) -> list[ArticleCandidate]:
    """Normalize one search page. Returns ARTICLE rows only (ads and notices dropped)."""
    out: list[ArticleCandidate] = []
    for row in _article_rows(payload):
        if not isinstance(row, dict) or row.get("type") != "ARTICLE":
            continue
        item = row.get("item") or {}
        article_id = as_int(item.get("articleId"), default=0)
        if not article_id:
            continue
        added_raw = item.get("addDate") or item.get("writeDateTimestamp") or item.get("writeDate")
        out.append(
            ArticleCandidate(
                article_id=article_id,
                url=canonical_article_url(cafe_numeric_id, article_id),
                subject=clean_subject(item.get("subject")),
                cafe_numeric_id=cafe_numeric_id,
                keyword=keyword,
                read_count=as_int(item.get("readCount")),
                like_count=as_int(item.get("likeItCount")),
                comment_count=as_int(item.get("commentCount")),
                board_type=str(item.get("boardType") or "L"),
                board_name=str(item.get("menuName") or ""),
                added_at=parse_kst_datetime(added_raw),
            )
        )
    return out


def is_board_excluded(candidate: ArticleCandidate, exclude_boards: Iterable[str]) -> bool:
    values = [v for v in (compact_lower(candidate.board_type), compact_lower(candidate.board_name)) if v]
    for token in exclude_boards:
        t = compact_lower(token)
        if not t:
            continue
        if any(t == v or t in v for v in values):
            return True
    return False


def sort_by_recency(candidates: list[ArticleCandidate]) -> list[ArticleCandidate]:
    """Newest first; undated rows last; ties keep collection order."""
    return sorted(candidates, key=lambda c: c.added_at or _EPOCH, reverse=True)


# ------------------------------------------------------------
# Cafe id resolution
# ------------------------------------------------------------
def scan_club_id(text: str | None) -> Optional[str]:
    for pattern in _CLUB_ID_PATTERNS:
        m = pattern.search(text or "")
        if m:
            return m.group(1)
    return None


class CafeIdResolver:
    """Maps cafe slugs to numeric club ids; results are cached for the resolver's lifetime."""

    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None, page: Any = None):
        self.settings = settings
        self._client = client
        self._page = page
        self._cache: dict[str, str] = {}

    async def resolve(self, cafe_id: str) -> str:
        cafe_id = (cafe_id or "").strip()
        if is_numeric_id(cafe_id):
            return cafe_id
        if cafe_id in self._cache:
            return self._cache[cafe_id]
        club_id = await self._resolve_lightweight(cafe_id)
        if not club_id and self._page is not None:
            club_id = await self._resolve_in_browser(cafe_id)
        if not club_id:
            raise CafeResolutionError(f"numeric club id not found for cafe {cafe_id}")
        self._cache[cafe_id] = club_id
        logger.info("cafe_id_resolved", cafe_id=cafe_id, club_id=club_id)
        return club_id

    async def _resolve_lightweight(self, cafe_id: str) -> Optional[str]:
        own_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self.settings.httpx_timeout, follow_redirects=True)
        try:
            resp = await client.get(cafe_url(cafe_id), headers={"User-Agent": self.settings.user_agent})
            return scan_club_id(str(resp.url)) or scan_club_id(resp.text)
        except httpx.HTTPError as exc:
            logger.info("cafe_id_lightweight_failed", cafe_id=cafe_id, error=str(exc) or type(exc).__name__)
            return None
        finally:
            if own_client:
                await client.aclose()

    async def _resolve_in_browser(self, cafe_id: str) -> Optional[str]:
        page = self._page
        try:
            await page.goto(cafe_url(cafe_id), wait_until="domcontentloaded", timeout=self.settings.navigation_timeout_ms)
            await asyncio.sleep(self.settings.page_settle_ms / 1000.0)
            for url in [f.url for f in page.frames] + [page.url]:
                club = (parse_qs(urlparse(url).query).get("clubid") or [None])[0]
                if club:
                    return club
            return scan_club_id(await page.content())
        except Exception as exc:  # noqa: BLE001
            logger.warning("cafe_id_browser_failed", cafe_id=cafe_id, error=str(exc) or type(exc).__name__)
            return None


# ------------------------------------------------------------
# Collector
# ------------------------------------------------------------
@dataclass(slots=True)
class CollectionResult:
    cafe_numeric_id: str
    candidates: list[ArticleCandidate] = field(default_factory=list)
    requests: int = 0
    board_filtered: int = 0
    failed_keywords: list[str] = field(default_factory=list)
    per_keyword: dict[str, int] = field(default_factory=dict)


def browser_fetch_json(page: Any, timeout_ms: int) -> FetchJson:
    """Search fetcher bound to the page's request context (session cookies included)."""

    async def _fetch(url: str) -> Any:
        try:
            resp = await asyncio.wait_for(page.request.get(url), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SearchRequestError(f"search request failed: {exc}") from exc
        if not resp.ok:
            raise SearchRequestError(f"search API failed: {resp.status} {url}")
        try:
            return await resp.json()
        except Exception as exc:  # noqa: BLE001
            # login or error pages come back as HTML with status 200
            raise SearchRequestError(f"search API returned a non-JSON body: {url}") from exc

    return _fetch


class CandidateCollector:
    def __init__(self, settings: Settings, fetch_json: FetchJson, resolver: CafeIdResolver):
        self.settings = settings
        self._fetch_json = fetch_json
        self.resolver = resolver

    @retryable(SearchRequestError, asyncio.TimeoutError, httpx.TransportError)
    async def _fetch_page(self, url: str) -> Any:
        return await self._fetch_json(url)

    async def collect(
        self,
        cafe_id: str,
        keywords: list[str],
        budget: CollectionBudget,
        exclude_boards: Iterable[str] = (),
        *,
        before_keyword: KeywordHook | None = None,
        after_page: PageHook | None = None,
    ) -> CollectionResult:
        """Collect candidates for one cafe across keywords, in keyword order."""
        exclude_boards = [b for b in exclude_boards if compact_lower(b)]
        club_id = await self.resolver.resolve(cafe_id)
        result = CollectionResult(cafe_numeric_id=club_id)
        seen: set[int] = set()
        page_size = self.settings.search_page_size
        max_pages = max(1, self.settings.search_max_pages)
        log = logger.bind(cafe_id=cafe_id, club_id=club_id)

        for idx, keyword in enumerate(keywords):
            if before_keyword is not None:
                await before_keyword(keyword, idx)
            taken = 0
            for page_num in range(1, max_pages + 1):
                if taken >= budget.per_keyword:
                    break
                url = search_url(club_id, keyword, page_num, page_size, self.settings.search_by)
                result.requests += 1
                try:
                    payload = await self._fetch_page(url)
                except (SearchRequestError, asyncio.TimeoutError, httpx.TransportError) as exc:
                    log.warning("search_page_failed", keyword=keyword, page=page_num, error=str(exc) or type(exc).__name__)
                    result.failed_keywords.append(keyword)
                    break
                rows = parse_search_rows(payload, club_id, keyword)
                raw_count = len(_article_rows(payload))
                for cand in rows:
                    if cand.article_id in seen:
                        continue
                    seen.add(cand.article_id)
                    if is_board_excluded(cand, exclude_boards):
                        result.board_filtered += 1
                        SCRAPE_FILTERED_POSTS.labels(reason="board").inc()
                        continue
                    result.candidates.append(cand)
                    taken += 1
                    if taken >= budget.per_keyword:
                        break
                if after_page is not None:
                    await after_page(keyword, page_num, max_pages, taken)
                if raw_count < page_size:
                    break
                if taken < budget.per_keyword:
                    await jitter_sleep(self.settings.min_sleep_ms, self.settings.max_sleep_ms)
            result.per_keyword[keyword] = taken
            log.info("keyword_collected", keyword=keyword, taken=taken)
            if idx < len(keywords) - 1:
                await jitter_sleep(self.settings.per_keyword_delay_ms, self.settings.per_keyword_delay_ms)

        result.candidates = sort_by_recency(result.candidates)[: budget.cafe_cap]
        SCRAPE_CANDIDATES.inc(len(result.candidates))
        log.info(
            "candidates_collected",
            candidates=len(result.candidates),
            requests=result.requests,
            board_filtered=result.board_filtered,
        )
        return result


__all__ = [
    "SEARCH_API",
    "CollectionBudget",
    "CollectionResult",
    "CafeIdResolver",
    "CandidateCollector",
    "browser_fetch_json",
    "compute_budget",
    "is_board_excluded",
    "parse_search_rows",
    "scan_club_id",
    "search_url",
    "sort_by_recency",
]
