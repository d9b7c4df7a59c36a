"""Utility script to enqueue a scrape job into the SQLite job table.

Usage:
  python scripts/enqueue_job.py --keywords "집중;공부" --cafe mycafe:내카페 --max-posts 20
  python scripts/enqueue_job.py --url https://cafe.naver.com/ca-fe/cafes/1/articles/2
  python scripts/enqueue_job.py --cancel <jobId>
  python scripts/enqueue_job.py --progress <jobId>
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Sequence

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from cafe_scraper.bootstrap import bootstrap  # noqa: E402
from cafe_scraper.core.errors import JobNotFound  # noqa: E402
from cafe_scraper.jobs import create_scrape_job, read_progress, request_cancel  # noqa: E402


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(";") if v.strip()]


def _cafe(value: str) -> tuple[str, str]:
    cafe_id, _, name = value.partition(":")
    return cafe_id.strip(), name.strip()


async def main(argv: Sequence[str]) -> int:
    parser = argparse.ArgumentParser(description="Enqueue, cancel or inspect scrape jobs")
    parser.add_argument("--keywords", help="Keywords separated by ;", default=None)
    parser.add_argument("--url", action="append", default=[], help="Direct article URL (repeatable)")
    parser.add_argument("--cafe", action="append", default=[], type=_cafe, help="cafeId[:name] (repeatable)")
    parser.add_argument("--include", default=None, help="Include words separated by ;")
    parser.add_argument("--exclude", default=None, help="Exclude words separated by ;")
    parser.add_argument("--exclude-boards", default=None, help="Board names/types separated by ;")
    parser.add_argument("--from-date", default=None)
    parser.add_argument("--to-date", default=None)
    parser.add_argument("--min-views", default=None)
    parser.add_argument("--min-comments", default=None)
    parser.add_argument("--auto-filter", action="store_true")
    parser.add_argument("--max-posts", default=50)
    parser.add_argument("--chat-id", default=None)
    parser.add_argument("--cancel", metavar="JOB_ID", default=None)
    parser.add_argument("--progress", metavar="JOB_ID", default=None)
    args = parser.parse_args(argv)

    ctx = await bootstrap()
    store = ctx.store

    if args.cancel:
        try:
            outcome = request_cancel(store.jobs, store.settings, args.cancel)
        except JobNotFound as exc:
            print(str(exc), file=sys.stderr)
            return 1
        print(f"cancel {args.cancel}: {outcome}")
        return 0

    if args.progress:
        print(json.dumps(read_progress(store.settings, args.progress), ensure_ascii=False, indent=2))
        return 0

    try:
        job = create_scrape_job(
            store.jobs,
            keywords=_split(args.keywords),
            direct_urls=args.url,
            cafes=args.cafe,
            include_words=_split(args.include),
            exclude_words=_split(args.exclude),
            exclude_boards=_split(args.exclude_boards),
            from_date=args.from_date,
            to_date=args.to_date,
            min_view_count=args.min_views,
            min_comment_count=args.min_comments,
            use_auto_filter=args.auto_filter,
            max_posts=args.max_posts,
            notify_chat_id=args.chat_id,
        )
    except ValueError as exc:
        print(f"invalid job: {exc}", file=sys.stderr)
        return 2
    print(f"job queued: {job.id}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(asyncio.run(main(sys.argv[1:])))
