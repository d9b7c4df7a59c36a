"""Outbound sinks: spreadsheet webhook rows and Telegram completion notices.

SheetSink
- Posts ``{"postRows": [...]}`` to ``GSHEET_WEBHOOK_URL`` (unset = disabled, sends are no-ops)
- Clamps every text cell to ``SHEET_CELL_MAX_CHARS`` with a ``[TRUNCATED: N chars]`` marker;
  the full text stays in the post store and the CSV artifact
- Buffers rows and flushes every ``SHEET_FLUSH_EVERY`` rows plus a forced final flush
- Transport errors and 5xx are retried (tenacity); a failed batch is logged and
  dropped, never failing the job

TelegramNotifier
- Fire-and-forget ``sendMessage``; every failure is logged and swallowed
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .bootstrap import SHEET_DELIVERIES, Settings
from .core.errors import SinkDeliveryError

logger = structlog.get_logger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class _TransientSheetStatus(Exception):
    pass


def clamp_for_sheet_cell(value: str | None, max_chars: int = 45_000) -> str:
    s = value or ""
    if len(s) <= max_chars:
        return s
    suffix = f"\n\n[TRUNCATED: {len(s)} chars]"
    return s[: max(0, max_chars - len(suffix))] + suffix


def clamp_row(row: dict[str, Any], max_chars: int) -> dict[str, Any]:
    return {k: clamp_for_sheet_cell(v, max_chars) if isinstance(v, str) else v for k, v in row.items()}


class SheetSink:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.url = settings.gsheet_webhook_url
        self.max_chars = settings.sheet_cell_max_chars
        self.flush_every = max(1, settings.sheet_flush_every)
        self._timeout = settings.httpx_timeout
        self._client = client
        self._buffer: list[dict[str, Any]] = []
        self.synced = 0
        self.failed = 0

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(max=10),
        retry=retry_if_exception_type((httpx.TransportError, _TransientSheetStatus)),
        reraise=True,
    )
    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        resp = await client.post(self.url, json=payload)  # type: ignore[arg-type]
        if resp.status_code >= 500:
            raise _TransientSheetStatus(f"{resp.status_code} {resp.text[:200]}")
        return resp

    async def send(self, rows: list[dict[str, Any]]) -> int:
        """Deliver one batch; returns the number of rows delivered."""
        if not rows or not self.enabled:
            return 0
        payload = {"postRows": [clamp_row(r, self.max_chars) for r in rows]}
        own_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        try:
            resp = await self._post(client, payload)
        except (httpx.HTTPError, _TransientSheetStatus) as exc:
            SHEET_DELIVERIES.labels(result="error").inc()
            raise SinkDeliveryError(f"sheet sync failed: {exc}") from exc
        finally:
            if own_client:
                await client.aclose()
        if resp.status_code >= 400:
            SHEET_DELIVERIES.labels(result="error").inc()
            raise SinkDeliveryError(f"sheet sync failed: {resp.status_code} {resp.text[:200]}")
        SHEET_DELIVERIES.labels(result="ok").inc()
        return len(rows)

    async def add(self, row: dict[str, Any]) -> int:
        self._buffer.append(row)
        if len(self._buffer) >= self.flush_every:
            return await self.flush()
        return 0

    async def flush(self) -> int:
        if not self._buffer:
            return 0
        batch, self._buffer = self._buffer, []
        try:
            sent = await self.send(batch)
        except SinkDeliveryError as exc:
            self.failed += len(batch)
            logger.error("sheet_flush_failed", rows=len(batch), error=str(exc))
            return 0
        self.synced += sent
        if sent:
            logger.info("sheet_flushed", rows=sent, total=self.synced)
        return sent


# ------------------------------------------------------------
# Telegram
# ------------------------------------------------------------
def success_message(job_id: str, saved: int, synced: int) -> str:
    return f"스크랩 완료\njobId={job_id}\n저장={saved}개\nSheets 전송={synced}개"


def failure_message(job_id: str, error: str) -> str:
    return f"스크랩 실패\njobId={job_id}\n에러={error}"


class TelegramNotifier:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.token = settings.telegram_bot_token
        self.default_chat_id = settings.telegram_default_chat_id
        self._timeout = settings.httpx_timeout
        self._client = client

    async def notify(self, chat_id: Optional[str], text: str) -> bool:
        chat = chat_id or self.default_chat_id
        if not self.token or not chat:
            return False
        url = f"{TELEGRAM_API}/bot{self.token}/sendMessage"
        body = {"chat_id": chat, "text": text, "disable_web_page_preview": True}
        own_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            resp = await client.post(url, json=body)
            if resp.status_code >= 400:
                logger.warning("telegram_notify_failed", status=resp.status_code, body=resp.text[:200])
                return False
            return True
        except httpx.HTTPError as exc:
            logger.warning("telegram_notify_failed", error=str(exc) or type(exc).__name__)
            return False
        finally:
            if own_client:
                await client.aclose()


__all__ = [
    "SheetSink",
    "TelegramNotifier",
    "clamp_for_sheet_cell",
    "clamp_row",
    "failure_message",
    "success_message",
]
