"""Browser session material: resolution, validation and the Playwright page lifecycle.

Resolution order:
1. ``NAVER_CAFE_SESSION_FILE`` when the file exists (local/dev). The path itself is
   handed to Playwright so refreshed cookies can be written back at the end of a job.
2. The encrypted record stored under ``STORAGE_STATE_KEY`` in the settings table
   (decrypted with ``APP_AUTH_SECRET``).

Either way the material must be a Playwright storage state with ``cookies`` and
``origins`` lists; anything else fails the job before the first navigation.
"""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Union

import structlog
from cryptography.exceptions import InvalidTag

from .core.errors import SessionInvalid, SessionMissing
from .core.secrets import decrypt_string, encrypt_string

logger = structlog.get_logger(__name__)

StorageState = Union[str, dict]

_HIDE_WEBDRIVER = "Object.defineProperty(navigator, 'webdriver', { get: () => false });"


def is_storage_state(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("cookies"), list)
        and isinstance(value.get("origins"), list)
    )


def _validate(value: Any, source: str) -> dict:
    if not is_storage_state(value):
        raise SessionInvalid(f"storage state from {source} is malformed (cookies/origins lists required)")
    return value


def load_storage_state(settings, settings_store) -> StorageState:
    """Return the session file path or a decrypted storage-state dict."""
    session_file = settings.session_file
    if session_file and Path(session_file).is_file():
        try:
            data = json.loads(Path(session_file).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SessionInvalid(f"session file {session_file} is unreadable: {exc}") from exc
        _validate(data, "file")
        logger.info("session_loaded", source="file", path=session_file, cookies=len(data["cookies"]))
        return session_file

    payload = settings_store.get(settings.storage_state_key)
    if not payload:
        raise SessionMissing("no cafe browsing session: upload a storage state or create the session file")
    try:
        plain = decrypt_string(payload, settings.app_auth_secret)
    except (ValueError, InvalidTag) as exc:
        raise SessionInvalid(f"stored session cannot be decrypted: {exc or type(exc).__name__}") from exc
    try:
        data = json.loads(plain)
    except ValueError as exc:
        raise SessionInvalid(f"stored session is not valid JSON: {exc}") from exc
    _validate(data, "store")
    logger.info("session_loaded", source="store", cookies=len(data["cookies"]))
    return data


def store_storage_state(settings, settings_store, state: dict) -> None:
    """Encrypt and upsert a storage state into the settings table."""
    _validate(state, "upload")
    payload = encrypt_string(json.dumps(state, ensure_ascii=False), settings.app_auth_secret)
    settings_store.upsert(settings.storage_state_key, payload)


@asynccontextmanager
async def open_browser_page(settings, storage_state: StorageState) -> AsyncIterator[Any]:
    """Launch Chromium with the session and yield one page.

    On exit a file-mode session is refreshed on disk, then context and browser are
    closed, each bounded by ``CONTEXT_CLOSE_TIMEOUT_MS``.
    """
    from playwright.async_api import async_playwright  # lazy: heavy import

    close_timeout = settings.context_close_timeout_ms / 1000.0
    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=settings.playwright_headless)
        context = await browser.new_context(
            storage_state=storage_state,
            locale=settings.browser_locale,
            viewport={"width": 1366, "height": 900},
            user_agent=settings.user_agent,
        )
        page = await context.new_page()
        page.set_default_timeout(settings.element_timeout_ms)
        await page.add_init_script(_HIDE_WEBDRIVER)
        try:
            yield page
        finally:
            if isinstance(storage_state, str):
                try:
                    await context.storage_state(path=storage_state)
                    logger.info("session_file_refreshed", path=storage_state)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("session_file_refresh_failed", error=str(exc))
            for label, closer in (("context", context.close), ("browser", browser.close)):
                try:
                    await asyncio.wait_for(closer(), timeout=close_timeout)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("browser_close_failed", target=label, error=str(exc) or type(exc).__name__)


__all__ = [
    "StorageState",
    "is_storage_state",
    "load_storage_state",
    "store_storage_state",
    "open_browser_page",
]
