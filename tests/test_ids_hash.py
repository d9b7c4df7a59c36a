from cafe_scraper.core.ids import (
    article_url_variants,
    cafe_url,
    canonical_article_url,
    content_hash,
    parse_article_ref,
)


def test_content_hash_depends_on_url_and_text():
    h1 = content_hash("https://cafe.naver.com/ca-fe/cafes/1/articles/2", "본문")
    assert h1 == content_hash("https://cafe.naver.com/ca-fe/cafes/1/articles/2", "본문")
    assert h1 != content_hash("https://cafe.naver.com/ca-fe/cafes/1/articles/2", "본문 수정")
    assert h1 != content_hash("https://cafe.naver.com/ca-fe/cafes/1/articles/3", "본문")
    assert len(h1) == 64


def test_cafe_url_forms():
    assert cafe_url("12345") == "https://cafe.naver.com/ca-fe/cafes/12345"
    assert cafe_url("studycafe") == "https://cafe.naver.com/studycafe"


def test_url_variants_order():
    variants = article_url_variants("10", 20)
    assert variants[0] == canonical_article_url("10", 20)
    assert "ArticleRead.nhn?clubid=10&articleid=20" in variants[1]
    assert variants[2].startswith("https://m.cafe.naver.com/")


def test_parse_article_ref_supported_forms():
    assert parse_article_ref("https://cafe.naver.com/ca-fe/cafes/10/articles/20?boardtype=L") == ("10", "20")
    assert parse_article_ref("https://cafe.naver.com/ArticleRead.nhn?clubid=10&articleid=20") == ("10", "20")
    assert parse_article_ref("https://cafe.naver.com/studycafe/20") == ("studycafe", "20")
    assert parse_article_ref("https://cafe.naver.com/studycafe") == (None, None)
    assert parse_article_ref(None) == (None, None)
    assert parse_article_ref("https://m.cafe.naver.com/ca-fe/web/cafes/10/articles/99") == ("10", "99")
