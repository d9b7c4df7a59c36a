"""Per-candidate content extraction in a live browser page.

Responsibilities:
- Try the article URL variants in order (simplified PC, legacy reader, mobile)
- Pick the frame that actually holds the article
- Expand truncated bodies, load comments, read body text through the selector
  strategy interpreter
- Gate the result: non-empty, not an access wall, not a profile/list page
  (unless comments were extracted), and, in keyword mode, relevant
- Derive title, author, publish time and counts

Design notes:
- Candidate-scoped failures never escape ``extract``; they come back as an
  ``ExtractionOutcome`` with ``post=None`` and a reason
- A redirect to the login page is job-fatal (``SessionExpired``) and propagates
- The page is used strictly sequentially; one extractor per job
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from .bootstrap import SCRAPE_STEP_DURATION, Settings
from .classifiers import clean_cafe_text, is_access_wall, looks_like_profile_or_list, matches_keyword
from .content_loader import collect_comment_texts, expand_more_controls, join_comments, load_comments
from .core.errors import (
    AccessDenied,
    CandidateError,
    ExtractionEmpty,
    ExtractionTimeout,
    NavigationTimeout,
    RelevanceMiss,
    SessionExpired,
    log_scrape_failure,
)
from .core.ids import article_url_variants, cafe_url, canonical_article_url, is_numeric_id, parse_article_ref
from .css_selectors import (
    AUTHOR_SELECTORS,
    BODY_SELECTORS,
    DATE_SELECTORS,
    TITLE_SELECTORS,
    SelectionResult,
    body_rejection,
    extract_by_strategies,
    first_text,
)
from .metadata_extractor import PostCounts, extract_metadata
from .runtime.models import ArticleCandidate, ParsedPost, join_content
from .utils import with_timeout

logger = structlog.get_logger(__name__)

LOGIN_MARKER = "nidlogin"


@dataclass(slots=True)
class ExtractTarget:
    """What to extract: a search candidate or a direct URL, plus cafe context."""

    source_url: str
    cafe_id: str
    cafe_name: str
    club_id: Optional[str] = None
    article_id: Optional[str] = None
    keyword: Optional[str] = None  # None in direct-URL mode: no relevance gate
    fallback_subject: str = ""
    list_counts: PostCounts | None = None

    @classmethod
    def from_candidate(cls, cand: ArticleCandidate, cafe_id: str, cafe_name: str) -> "ExtractTarget":
        return cls(
            source_url=canonical_article_url(cand.cafe_numeric_id, cand.article_id),
            cafe_id=cafe_id,
            cafe_name=cafe_name,
            club_id=cand.cafe_numeric_id,
            article_id=str(cand.article_id),
            keyword=cand.keyword or None,
            fallback_subject=cand.subject,
            list_counts=PostCounts(
                view_count=cand.read_count, like_count=cand.like_count, comment_count=cand.comment_count
            ),
        )

    @classmethod
    def from_url(cls, url: str) -> "ExtractTarget":
        club, article = parse_article_ref(url)
        source = canonical_article_url(club, article) if is_numeric_id(club) and article else url.strip()
        cafe = club or ""
        return cls(source_url=source, cafe_id=cafe, cafe_name=cafe, club_id=club, article_id=article)

    def url_variants(self) -> list[str]:
        if is_numeric_id(self.club_id) and self.article_id:
            return article_url_variants(self.club_id, self.article_id)  # type: ignore[arg-type]
        return [self.source_url]


@dataclass(slots=True)
class PageSnapshot:
    final_url: str
    page_text: str
    body: SelectionResult
    comments: list[str] = field(default_factory=list)
    title: str = ""
    author: str = ""
    date_text: str = ""
    raw_html: Optional[str] = None


@dataclass(slots=True)
class ExtractionOutcome:
    post: Optional[ParsedPost] = None
    reason: Optional[str] = None
    variant: Optional[str] = None
    last_text: str = ""

    @property
    def ok(self) -> bool:
        return self.post is not None


# ------------------------------------------------------------
# Frame selection
# ------------------------------------------------------------
def select_article_frame(page: Any, article_id: Optional[str]) -> Any:
    """ArticleRead frame with the article id, any frame with it, cafe_main/mainFrame, page."""
    frames = list(page.frames)
    if article_id:
        needle = f"articleid={article_id}".lower()
        for f in frames:
            url = (f.url or "").lower()
            if "articleread" in url and needle in url:
                return f
        for f in frames:
            if needle in (f.url or "").lower():
                return f
    for f in frames:
        if "ArticleRead" in (f.url or ""):
            return f
    for name in ("cafe_main", "mainFrame"):
        for f in frames:
            if f.name == name:
                return f
    return page


# ------------------------------------------------------------
# Gates
# ------------------------------------------------------------
def accept_snapshot(snap: PageSnapshot) -> tuple[str, list[str]]:
    """Apply the validity gate; returns (body_text, comments) or raises a candidate error."""
    if is_access_wall(snap.page_text):
        raise AccessDenied("join or permission wall")
    comments = snap.comments
    if snap.body.ok:
        body = clean_cafe_text(snap.body.text)
    elif snap.body.rejections.get("join_wall") or snap.body.rejections.get("permission_wall"):
        raise AccessDenied("join or permission wall")
    elif snap.body.rejections.get("profile_list") and comments:
        body = clean_cafe_text(snap.body.last_text)
    else:
        raise ExtractionEmpty(f"no acceptable body text (rejections={snap.body.rejections})")
    if looks_like_profile_or_list(body) and not comments:
        raise ExtractionEmpty("profile or list page")
    combined = join_content(body, join_comments(comments))
    if not combined.strip():
        raise ExtractionEmpty("empty text")
    if is_access_wall(combined):
        raise AccessDenied("join or permission wall")
    return body, comments


def is_relevant(post: ParsedPost, keyword: Optional[str]) -> bool:
    if not keyword:
        return True
    return matches_keyword(f"{post.title}\n{post.content_text}", keyword)


# ------------------------------------------------------------
# Extractor
# ------------------------------------------------------------
class ContentExtractor:
    def __init__(self, settings: Settings, page: Any):
        self.settings = settings
        self.page = page

    async def extract(self, target: ExtractTarget) -> ExtractionOutcome:
        """Never raises for candidate-scoped conditions; ``SessionExpired`` propagates."""
        log = logger.bind(source_url=target.source_url)
        outcome = ExtractionOutcome()
        try:
            with SCRAPE_STEP_DURATION.labels(step="extract").time():
                outcome = await with_timeout(
                    self._extract_variants(target, outcome),
                    self.settings.parse_timeout_ms,
                    ExtractionTimeout,
                    "parse candidate",
                )
        except ExtractionTimeout as exc:
            outcome.reason = "timeout"
            log_scrape_failure("extraction_timeout", exc)
            log.warning("candidate_timeout", error=str(exc))
        if outcome.post is None:
            if outcome.reason == "access_denied":
                log.info("candidate_access_denied")
            else:
                log.info("candidate_skipped", reason=outcome.reason, last_len=len(outcome.last_text))
        return outcome

    async def _extract_variants(self, target: ExtractTarget, outcome: ExtractionOutcome) -> ExtractionOutcome:
        """Try each URL form in order; a wall on one form does not rule out the next."""
        denied = False
        for url in target.url_variants():
            outcome.variant = url
            try:
                snap = await self._snapshot(url, target.article_id)
                if snap.body.last_text:
                    outcome.last_text = snap.body.last_text
                body, comments = accept_snapshot(snap)
            except SessionExpired:
                raise
            except AccessDenied:
                denied = True
                outcome.reason = "access_denied"
                logger.debug("variant_access_denied", url=url)
                continue
            except CandidateError as exc:
                outcome.reason = _reason_of(exc)
                logger.debug("variant_failed", url=url, reason=outcome.reason, error=str(exc))
                continue
            post = self._build_post(target, snap, body, comments)
            if not is_relevant(post, target.keyword):
                outcome.reason = "relevance"
                logger.info("candidate_irrelevant", keyword=target.keyword, source_url=target.source_url)
                return outcome
            outcome.post = post
            outcome.reason = None
            return outcome
        if denied:
            outcome.reason = "access_denied"
        return outcome

    async def _snapshot(self, url: str, article_id: Optional[str]) -> PageSnapshot:
        s = self.settings
        page = self.page
        try:
            await with_timeout(
                page.goto(url, wait_until="domcontentloaded", timeout=s.navigation_timeout_ms),
                s.navigation_hard_timeout_ms,
                NavigationTimeout,
                "page.goto",
            )
        except NavigationTimeout:
            raise
        except Exception as exc:  # noqa: BLE001
            raise NavigationTimeout(f"navigation failed: {exc}") from exc
        await asyncio.sleep(s.page_settle_ms / 1000.0)
        if LOGIN_MARKER in (page.url or ""):
            raise SessionExpired("cafe session expired: redirected to the login page")

        frame = select_article_frame(page, article_id)
        await expand_more_controls(frame, attempts=s.comment_expand_attempts)
        try:
            page_text = await with_timeout(
                frame.locator("body").inner_text(), s.body_text_timeout_ms, ExtractionTimeout, "body inner_text"
            )
        except ExtractionTimeout:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExtractionEmpty(f"body text unavailable: {exc}") from exc
        page_text = (page_text or "").strip()
        if is_access_wall(page_text):
            raise AccessDenied("join or permission wall")

        body = await extract_by_strategies(frame, BODY_SELECTORS, body_rejection, s.element_timeout_ms)
        comments = await self._comments(frame)
        title = await first_text(frame, TITLE_SELECTORS, s.element_timeout_ms)
        if not title:
            try:
                title = await page.title()
            except Exception:  # noqa: BLE001
                title = ""
        raw_html = None
        if s.store_raw_html:
            try:
                raw_html = await frame.content()
            except Exception as exc:  # noqa: BLE001
                logger.debug("raw_html_failed", error=str(exc))
        return PageSnapshot(
            final_url=page.url,
            page_text=page_text,
            body=body,
            comments=comments,
            title=title,
            author=await first_text(frame, AUTHOR_SELECTORS, s.element_timeout_ms),
            date_text=await first_text(frame, DATE_SELECTORS, s.element_timeout_ms),
            raw_html=raw_html,
        )

    async def _comments(self, frame: Any) -> list[str]:
        s = self.settings
        try:
            await asyncio.wait_for(
                load_comments(frame, scroll_steps=s.comment_scroll_steps, expand_attempts=s.comment_expand_attempts),
                timeout=s.element_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.debug("comment_loading_timeout")
        return await collect_comment_texts(frame, max_comments=s.max_comments, timeout_ms=s.element_timeout_ms)

    def _build_post(self, target: ExtractTarget, snap: PageSnapshot, body: str, comments: list[str]) -> ParsedPost:
        meta = extract_metadata(
            page_text=snap.page_text,
            page_title=snap.title,
            author_text=snap.author,
            date_text=snap.date_text,
            fallback_subject=target.fallback_subject,
            cafe_name=target.cafe_name,
            list_counts=target.list_counts,
            comment_blocks=len(comments),
        )
        counts = meta.counts or PostCounts()
        return ParsedPost(
            source_url=target.source_url,
            cafe_id=target.cafe_id,
            cafe_name=target.cafe_name,
            cafe_url=cafe_url(target.cafe_id) if target.cafe_id else "",
            title=meta.title,
            body_text=body,
            comments_text=join_comments(comments),
            author_name=meta.author_name,
            published_at=meta.published_at,
            view_count=counts.view_count,
            like_count=counts.like_count,
            comment_count=counts.comment_count,
            keyword=target.keyword or "",
            raw_html=snap.raw_html,
        )


def _reason_of(exc: CandidateError) -> str:
    return {
        NavigationTimeout: "navigation_timeout",
        ExtractionTimeout: "extraction_timeout",
        ExtractionEmpty: "empty",
        RelevanceMiss: "relevance",
        AccessDenied: "access_denied",
    }.get(type(exc), "candidate_error")


__all__ = [
    "ContentExtractor",
    "ExtractTarget",
    "ExtractionOutcome",
    "PageSnapshot",
    "accept_snapshot",
    "is_relevant",
    "select_article_frame",
]
