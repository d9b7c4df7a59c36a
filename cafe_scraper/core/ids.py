"""ID, article URL, and hash utilities centralised."""
from __future__ import annotations
import re, hashlib
from urllib.parse import parse_qs, urlparse

CAFE_HOST = "https://cafe.naver.com"
MOBILE_CAFE_HOST = "https://m.cafe.naver.com"

_NUMERIC = re.compile(r"^\d+$")
_ARTICLES_PAT = re.compile(r"/cafes/(\d+)/articles/(\d+)", re.I)
_LEGACY_PAT = re.compile(r"^/([A-Za-z0-9_-]+)/(\d+)/?$")


def is_numeric_id(value: str | None) -> bool:
    return bool(value and _NUMERIC.match(value.strip()))


def cafe_url(cafe_id: str) -> str:
    if is_numeric_id(cafe_id):
        return f"{CAFE_HOST}/ca-fe/cafes/{cafe_id}"
    return f"{CAFE_HOST}/{cafe_id}"


def canonical_article_url(club_id: str, article_id: int | str) -> str:
    """Newer PC article URL, query-less. Used as ``sourceUrl`` for every post."""
    return f"{CAFE_HOST}/ca-fe/cafes/{club_id}/articles/{article_id}"


def article_url_variants(club_id: str, article_id: int | str) -> list[str]:
    """Ordered URL forms for one article: simplified PC, legacy iframe reader, mobile."""
    return [
        canonical_article_url(club_id, article_id),
        f"{CAFE_HOST}/ArticleRead.nhn?clubid={club_id}&articleid={article_id}",
        f"{MOBILE_CAFE_HOST}/ca-fe/web/cafes/{club_id}/articles/{article_id}",
    ]


def parse_article_ref(url: str | None) -> tuple[str | None, str | None]:
    """Return (club_or_cafe_id, article_id) from any supported article URL.

    The first element may be a non-numeric cafe slug for legacy ``/<slug>/<id>`` URLs.
    """
    if not url:
        return None, None
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None, None
    qs = {k.lower(): v for k, v in parse_qs(parsed.query).items()}
    article = (qs.get("articleid") or [None])[0]
    club = (qs.get("clubid") or [None])[0]
    if article:
        return club, article
    m = _ARTICLES_PAT.search(parsed.path)
    if m:
        return m.group(1), m.group(2)
    m = _LEGACY_PAT.match(parsed.path)
    if m:
        return m.group(1), m.group(2)
    return None, None


def content_hash(source_url: str | None, content_text: str | None) -> str:
    blob = f"{source_url or ''}\n{content_text or ''}".encode("utf-8", errors="ignore")
    return hashlib.sha256(blob).hexdigest()
