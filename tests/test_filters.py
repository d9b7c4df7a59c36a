from datetime import datetime, timezone

from cafe_scraper.runtime.filters import (
    cap,
    clamp_by_auto_threshold,
    effective_thresholds,
    filter_text,
    is_allowed_by_words,
    median_threshold,
    passes_list_minimums,
    passes_minimums,
    within_date_range,
)
from cafe_scraper.runtime.models import ArticleCandidate


def test_word_filters_are_case_and_space_insensitive():
    text = "스터디 카페에서 Python 공부"
    assert is_allowed_by_words(text, ["스터디카페"], [])
    assert is_allowed_by_words(text, ["java", "PYTHON"], [])
    assert not is_allowed_by_words(text, ["java"], [])
    assert not is_allowed_by_words(text, [], ["카 페"])
    assert is_allowed_by_words(text, [" "], [""])


def test_filter_text_includes_subject_title_and_content(make_post):
    post = make_post(1)
    text = filter_text(post, "검색 제목")
    assert "검색 제목" in text and post.title in text and post.content_text in text


def test_date_range_inclusive_and_unknown_passes():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    end = datetime(2024, 12, 31, tzinfo=timezone.utc)
    assert within_date_range(start, start, end)
    assert within_date_range(None, start, end)
    assert not within_date_range(datetime(2023, 12, 31, tzinfo=timezone.utc), start, end)
    assert not within_date_range(datetime(2025, 1, 1, tzinfo=timezone.utc), None, end)
    assert within_date_range(datetime(2025, 1, 1, tzinfo=timezone.utc), start, None)


def test_minimums(make_post):
    assert passes_minimums(make_post(1, views=10, comments=2), 10, 2)
    assert not passes_minimums(make_post(1, views=9), 10, None)
    cand = ArticleCandidate(1, "u", "s", "1", read_count=5, comment_count=0)
    assert passes_list_minimums(cand, None, None)
    assert not passes_list_minimums(cand, 6, None)
    assert not passes_list_minimums(cand, None, 1)


def test_median_threshold_uses_upper_median():
    assert median_threshold([10, 20, 30, 40, 50]) == 30
    assert median_threshold([40, 10, 30, 20]) == 30
    assert median_threshold([]) == 0


def test_auto_threshold_keeps_posts_at_or_above_median(make_post):
    posts = [make_post(i, views=v) for i, v in enumerate([10, 20, 30, 40, 50])]
    kept = clamp_by_auto_threshold(posts, True, None, None)
    assert [p.view_count for p in kept] == [30, 40, 50]


def test_explicit_minimum_overrides_auto(make_post):
    posts = [make_post(i, views=v, comments=c) for i, (v, c) in enumerate([(10, 5), (20, 0), (30, 1)])]
    th = effective_thresholds(posts, True, 15, None)
    assert (th.min_view, th.min_comment) == (15, 1)
    assert [p.view_count for p in clamp_by_auto_threshold(posts, True, 15, None)] == [30]


def test_no_auto_no_minimums_passes_everything(make_post):
    posts = [make_post(i, views=i) for i in range(3)]
    assert clamp_by_auto_threshold(posts, False, None, None) == posts
    assert not effective_thresholds(posts, False, None, None).active


def test_cap(make_post):
    posts = [make_post(i) for i in range(5)]
    assert len(cap(posts, 3)) == 3
    assert cap(posts, 0) == []
