import json

import pytest

from cafe_scraper.core.errors import JobCancelled
from cafe_scraper.progress import (
    HEARTBEAT_KEY,
    CancelToken,
    Heartbeat,
    ProgressChannel,
    cancel_key,
    is_cancel_flag_set,
    last_progress_at,
    progress_key,
    read_snapshot,
    set_cancel_flag,
)
from cafe_scraper.runtime.models import PairStatus, Stage


def test_snapshot_written_on_every_update(ctx):
    channel = ProgressChannel(ctx.store.settings, "job-1")
    channel.update(stage=Stage.SEARCH, keyword="집중", keyword_index=1)
    channel.bump(candidates=3)
    channel.bump(candidates=2, parse_attempts=1)
    snap = read_snapshot(ctx.store.settings, "job-1")
    assert snap.keyword == "집중"
    assert snap.candidates == 5 and snap.parse_attempts == 1
    assert last_progress_at(ctx.store.settings, "job-1") is not None
    raw = json.loads(ctx.store.settings.get(progress_key("job-1")))
    assert raw["stage"] == "SEARCH"


def test_unknown_field_is_rejected(ctx):
    channel = ProgressChannel(ctx.store.settings, "job-1")
    with pytest.raises(AttributeError):
        channel.update(bogus=1)


def test_pair_progress_round_trips(ctx):
    channel = ProgressChannel(ctx.store.settings, "job-1")
    channel.pair("cafe", "집중", PairStatus.SEARCHING, pages_target=5)
    channel.pair("cafe", "집중", PairStatus.DONE, collected=2)
    pair = read_snapshot(ctx.store.settings, "job-1").pairs["cafe::집중"]
    assert pair.status is PairStatus.DONE
    assert (pair.pages_target, pair.collected) == (5, 2)


def test_reset_clears_previous_snapshot_and_flag(ctx):
    kv = ctx.store.settings
    kv.upsert_json(progress_key("job-1"), {"job_id": "job-1", "collected": 9})
    set_cancel_flag(kv, "job-1")
    channel = ProgressChannel(kv, "job-1")
    channel.reset()
    assert kv.get(progress_key("job-1")) is None
    assert not is_cancel_flag_set(kv, "job-1")


def test_finish_done_removes_snapshot_unless_kept(ctx):
    kv = ctx.store.settings
    ProgressChannel(kv, "a").finish(Stage.DONE)
    assert kv.get(progress_key("a")) is None
    ProgressChannel(kv, "b", keep_done=True).finish(Stage.DONE)
    assert read_snapshot(kv, "b").stage is Stage.DONE


def test_finish_cancelled_keeps_snapshot_drops_flag(ctx):
    kv = ctx.store.settings
    set_cancel_flag(kv, "job-1")
    ProgressChannel(kv, "job-1").finish(Stage.CANCELLED, "cancelled by user")
    snap = read_snapshot(kv, "job-1")
    assert snap.stage is Stage.CANCELLED and snap.message == "cancelled by user"
    assert kv.get(cancel_key("job-1")) is None


def test_cancel_token_raises_once_flag_is_set(ctx):
    kv = ctx.store.settings
    token = CancelToken(ProgressChannel(kv, "job-1"))
    token.check()
    set_cancel_flag(kv, "job-1")
    with pytest.raises(JobCancelled):
        token.check()
    kv.delete([cancel_key("job-1")])
    with pytest.raises(JobCancelled):
        token.check()


def test_corrupt_snapshot_reads_as_none(ctx):
    ctx.store.settings.upsert(progress_key("job-1"), "{not json")
    assert read_snapshot(ctx.store.settings, "job-1") is None
    assert last_progress_at(ctx.store.settings, "job-1") is None


def test_heartbeat_is_rate_limited(ctx):
    now = [100.0]
    hb = Heartbeat(ctx.store.settings, interval_s=15, clock=lambda: now[0])
    assert hb.beat("idle")
    assert not hb.beat("idle")
    now[0] += 16
    assert hb.beat("run_scrape", jobId="x")
    record = ctx.store.settings.get_json(HEARTBEAT_KEY)
    assert record["status"] == "run_scrape" and record["jobId"] == "x"
    assert "pid" in record and "at" in record
