from cafe_scraper.runtime.dedup import DedupDecision, classify, persist_post


def test_new_post_is_inserted(ctx, make_post):
    post = make_post(1)
    assert classify(ctx.store.posts, post) is DedupDecision.NEW
    result = persist_post(ctx.store.posts, "job-a", post)
    assert result.inserted
    assert result.decision is DedupDecision.NEW


def test_same_hash_is_duplicate_and_not_inserted(ctx, make_post):
    persist_post(ctx.store.posts, "job-a", make_post(1))
    again = persist_post(ctx.store.posts, "job-b", make_post(1))
    assert again.decision is DedupDecision.DUPLICATE
    assert not again.inserted
    assert ctx.store.posts.count_for_job("job-b") == 0


def test_changed_content_same_url_is_update(ctx, make_post):
    persist_post(ctx.store.posts, "job-a", make_post(1))
    edited = make_post(1, body="본문이 수정되었습니다")
    assert classify(ctx.store.posts, edited) is DedupDecision.UPDATE
    result = persist_post(ctx.store.posts, "job-b", edited)
    assert result.inserted and result.decision is DedupDecision.UPDATE
    assert len(ctx.store.posts.find_by_url(edited.source_url)) == 2


def test_hash_covers_comments(make_post):
    a = make_post(1)
    b = make_post(1, comments_text="새 댓글")
    assert a.content_hash != b.content_hash
