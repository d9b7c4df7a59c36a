from datetime import datetime, timezone

import pytest

from cafe_scraper.content_loader import collect_comment_texts, join_comments
from cafe_scraper.core.errors import AccessDenied, ExtractionEmpty, SessionExpired
from cafe_scraper.css_selectors import SelectionResult
from cafe_scraper.extractor import (
    ContentExtractor,
    ExtractTarget,
    PageSnapshot,
    accept_snapshot,
    is_relevant,
    select_article_frame,
)
from cafe_scraper.runtime.models import ArticleCandidate

PAGE_TEXT = (
    "공부카페\n집중 공부법 정리\n공부왕\n2024.05.01. 13:45 조회 123\n"
    "집중이 잘 되는 공부법을 정리했습니다. 아침 시간을 활용하세요.\n좋아요 4 댓글 2"
)


class FakeLocator:
    def __init__(self, texts):
        self._texts = texts

    async def all_inner_texts(self):
        return list(self._texts)

    async def inner_text(self):
        return "\n".join(self._texts)

    async def count(self):
        return len(self._texts)

    def filter(self, **kwargs):
        return FakeLocator([])

    def nth(self, index):
        return FakeLocator(self._texts[index:index + 1])

    @property
    def first(self):
        return FakeLocator(self._texts[:1])

    async def click(self, timeout=None):
        return None


class FakePage:
    """Page that doubles as its own article frame.

    ``dom_per_visit`` swaps the DOM on each navigation (the last entry repeats).
    """

    def __init__(self, dom, *, redirect_to=None, fail_goto=False, title="", dom_per_visit=None):
        self.dom = dom
        self.dom_per_visit = dom_per_visit or []
        self.redirect_to = redirect_to
        self.fail_goto = fail_goto
        self._title = title
        self.url = "about:blank"
        self.visited = []
        self.frames = []

    async def goto(self, url, **kwargs):
        self.visited.append(url)
        if self.dom_per_visit:
            self.dom = self.dom_per_visit[min(len(self.visited), len(self.dom_per_visit)) - 1]
        if self.fail_goto:
            raise RuntimeError("net::ERR_CONNECTION_RESET")
        self.url = self.redirect_to or url

    def locator(self, css):
        return FakeLocator(self.dom.get(css, []))

    async def evaluate(self, *args):
        return None

    async def title(self):
        return self._title

    async def content(self):
        return "<html></html>"


class FakeFrame:
    def __init__(self, url, name=""):
        self.url = url
        self.name = name


def _article_dom(page_text=PAGE_TEXT):
    return {
        "body": [page_text],
        "div.se-main-container": ["집중이 잘 되는 공부법을 정리했습니다. 아침 시간을 활용하세요."],
        "ul.comment_list li.CommentItem": ["좋은 글 감사합니다", "저도 해볼게요"],
        "h3.title_text": ["집중 공부법 정리"],
        ".WriterInfo .nickname": ["공부왕"],
        ".article_info .date": ["2024.05.01. 13:45"],
    }


def _candidate(keyword="집중"):
    return ArticleCandidate(
        article_id=55,
        url="https://cafe.naver.com/ca-fe/cafes/100/articles/55",
        subject="집중 공부법",
        cafe_numeric_id="100",
        keyword=keyword,
        read_count=99,
        comment_count=1,
    )


def test_extract_target_from_url_normalizes_legacy_reader():
    target = ExtractTarget.from_url("https://cafe.naver.com/ArticleRead.nhn?clubid=100&articleid=55")
    assert target.source_url == "https://cafe.naver.com/ca-fe/cafes/100/articles/55"
    assert target.keyword is None
    assert len(target.url_variants()) == 3
    slug = ExtractTarget.from_url("https://cafe.naver.com/studycafe/55")
    assert slug.url_variants() == ["https://cafe.naver.com/studycafe/55"]


def test_select_article_frame_prefers_article_reader():
    page = FakePage({})
    main = FakeFrame("https://cafe.naver.com/studycafe", name="cafe_main")
    reader = FakeFrame("https://cafe.naver.com/ArticleRead.nhn?clubid=1&articleid=55")
    page.frames = [main, reader]
    assert select_article_frame(page, "55") is reader
    page.frames = [main]
    assert select_article_frame(page, "55") is main
    page.frames = []
    assert select_article_frame(page, "55") is page


def _snap(body: SelectionResult, comments=(), page_text="본문"):
    return PageSnapshot(final_url="u", page_text=page_text, body=body, comments=list(comments))


def test_accept_snapshot_gates():
    ok = _snap(SelectionResult(text="진짜 본문", selector="x"))
    assert accept_snapshot(ok) == ("진짜 본문", [])

    with pytest.raises(AccessDenied):
        accept_snapshot(_snap(SelectionResult(rejections={"join_wall": 2})))

    with pytest.raises(ExtractionEmpty):
        accept_snapshot(_snap(SelectionResult(rejections={"empty": 3})))

    profile = SelectionResult(rejections={"profile_list": 1}, last_text="제목 작성자 작성일 조회")
    with pytest.raises(ExtractionEmpty):
        accept_snapshot(_snap(profile))
    body, comments = accept_snapshot(_snap(profile, comments=["댓글 하나"]))
    assert comments == ["댓글 하나"]


def test_is_relevant(make_post):
    post = make_post(1)
    assert is_relevant(post, "집중력")
    assert is_relevant(post, None)
    assert not is_relevant(post, "다이어트")


async def test_collect_comment_texts_and_join():
    page = FakePage({"li.CommentItem": [" 첫 댓글 ", "", "둘째 댓글"]})
    texts = await collect_comment_texts(page, max_comments=10, timeout_ms=1000)
    assert texts == ["첫 댓글", "둘째 댓글"]
    assert join_comments(texts) == "첫 댓글\n\n둘째 댓글"


async def test_extract_builds_post_from_page(ctx):
    page = FakePage(_article_dom())
    extractor = ContentExtractor(ctx.settings, page)
    target = ExtractTarget.from_candidate(_candidate(), "studycafe", "공부카페")
    outcome = await extractor.extract(target)
    assert outcome.ok, outcome.reason
    post = outcome.post
    assert post.source_url == "https://cafe.naver.com/ca-fe/cafes/100/articles/55"
    assert post.title == "집중 공부법 정리"
    assert post.author_name == "공부왕"
    assert post.published_at == datetime(2024, 5, 1, 4, 45, tzinfo=timezone.utc)
    assert (post.view_count, post.like_count, post.comment_count) == (123, 4, 2)
    assert "아침 시간을 활용하세요" in post.body_text
    assert post.comments_text == "좋은 글 감사합니다\n\n저도 해볼게요"
    assert "[댓글]" in post.content_text
    assert post.cafe_url == "https://cafe.naver.com/studycafe"
    assert len(page.visited) == 1


async def test_extract_join_wall_is_access_denied(ctx):
    page = FakePage(_article_dom("공부카페\n카페에 가입하면 바로 글을 볼 수 있어요"))
    outcome = await ContentExtractor(ctx.settings, page).extract(
        ExtractTarget.from_candidate(_candidate(), "studycafe", "공부카페")
    )
    assert outcome.post is None
    assert outcome.reason == "access_denied"
    assert len(page.visited) == 3


async def test_join_wall_on_one_url_form_falls_through_to_the_next(ctx):
    wall = _article_dom("공부카페\n카페에 가입하면 바로 글을 볼 수 있어요")
    page = FakePage(wall, dom_per_visit=[wall, _article_dom()])
    outcome = await ContentExtractor(ctx.settings, page).extract(
        ExtractTarget.from_candidate(_candidate(), "studycafe", "공부카페")
    )
    assert outcome.ok, outcome.reason
    assert page.visited[0] == "https://cafe.naver.com/ca-fe/cafes/100/articles/55"
    assert len(page.visited) == 2
    assert "아침 시간을 활용하세요" in outcome.post.body_text


async def test_extract_irrelevant_post_is_skipped(ctx):
    page = FakePage(_article_dom())
    outcome = await ContentExtractor(ctx.settings, page).extract(
        ExtractTarget.from_candidate(_candidate(keyword="다이어트"), "studycafe", "공부카페")
    )
    assert outcome.post is None
    assert outcome.reason == "relevance"


async def test_navigation_failures_try_every_variant(ctx):
    page = FakePage({}, fail_goto=True)
    outcome = await ContentExtractor(ctx.settings, page).extract(
        ExtractTarget.from_candidate(_candidate(), "studycafe", "공부카페")
    )
    assert outcome.post is None
    assert outcome.reason == "navigation_timeout"
    assert len(page.visited) == 3


async def test_login_redirect_is_job_fatal(ctx):
    page = FakePage(_article_dom(), redirect_to="https://nid.naver.com/nidlogin.login?mode=form")
    with pytest.raises(SessionExpired):
        await ContentExtractor(ctx.settings, page).extract(
            ExtractTarget.from_candidate(_candidate(), "studycafe", "공부카페")
        )
