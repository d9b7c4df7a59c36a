"""Naver cafe scrape job engine.

MODULES:
    - bootstrap: settings, logging, metrics and the shared context
    - jobs: job submission, cancellation requests and progress reads
    - worker: single-flight queue dispatcher
    - scrape_subprocess: one job execution in an isolated process
    - collector: candidate article collection via the cafe search endpoint
    - extractor: per-candidate content extraction in a browser page
    - progress: progress snapshots and the cooperative cancellation channel
    - session: browser session material loading and validation
    - sinks: spreadsheet webhook and Telegram notifications

USAGE:
    from cafe_scraper.jobs import create_scrape_job, request_cancel
    from cafe_scraper.worker import worker_loop
"""

__version__ = "1.0.0"
