from __future__ import annotations

import asyncio
import warnings
from datetime import datetime, timezone

import pytest

from cafe_scraper import utils
from cafe_scraper.core.errors import ExtractionTimeout


def test_as_int_lenient():
    assert utils.as_int("1,234") == 1234
    assert utils.as_int("조회 56") == 56
    assert utils.as_int(None, default=7) == 7
    assert utils.as_int("없음") == 0
    assert utils.as_int(3.9) == 3


def test_compact_lower():
    assert utils.compact_lower(" 자유 게시판 ") == utils.compact_lower("자유게시판")
    assert utils.normalize_whitespace(" a \n b ") == "a b"


def test_parse_kst_datetime_forms():
    assert utils.parse_kst_datetime("2024.05.01.") == datetime(2024, 4, 30, 15, 0, tzinfo=timezone.utc)
    assert utils.parse_kst_datetime("2024.05.01. 13:45") == datetime(2024, 5, 1, 4, 45, tzinfo=timezone.utc)
    assert utils.parse_kst_datetime(1714538700000) == datetime(2024, 5, 1, 4, 45, tzinfo=timezone.utc)
    assert utils.parse_kst_datetime("") is None
    assert utils.parse_kst_datetime("어제") is None


def test_parse_kst_time_only_is_today_in_kst():
    now = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)  # 2024-05-02 05:00 KST
    assert utils.parse_kst_datetime("09:30", now=now) == datetime(2024, 5, 2, 0, 30, tzinfo=timezone.utc)


async def test_with_timeout_maps_to_domain_error():
    with pytest.raises(ExtractionTimeout):
        await utils.with_timeout(asyncio.sleep(1), 10, ExtractionTimeout, "slow step")
    assert await utils.with_timeout(asyncio.sleep(0, result=5), 1000, ExtractionTimeout, "fast") == 5


async def test_jitter_sleep_zero_bounds_returns_immediately():
    assert await utils.jitter_sleep(0, 0) == 0.0


async def test_retryable_retries_listed_errors_only():
    calls = {"n": 0}

    @utils.retryable(ConnectionError)
    async def flaky():
        calls["n"] += 1
        if calls["n"] < 2:
            raise ConnectionError("reset")
        return "ok"

    assert await flaky() == "ok"
    assert calls["n"] == 2

    @utils.retryable(ConnectionError)
    async def broken():
        calls["n"] += 1
        raise ValueError("not retried")

    calls["n"] = 0
    with pytest.raises(ValueError):
        await broken()
    assert calls["n"] == 1


def test_retryable_builds_without_deprecation_warnings():
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)

        @utils.retryable(ConnectionError)
        async def fetch():
            return "ok"

    assert asyncio.run(fetch()) == "ok"
