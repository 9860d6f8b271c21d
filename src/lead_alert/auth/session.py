from __future__ import annotations

import base64
import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from lead_alert.errors import AuthError

logger = logging.getLogger(__name__)


def load_session_cookies(storage_path: Path) -> list[dict[str, Any]]:
    """Read cookies from a Playwright storage state file or a bare cookie list."""
    if not storage_path.exists():
        return []
    try:
        data = json.loads(storage_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("could not read session state %s: %s", storage_path, exc)
        return []

    cookies = data.get("cookies", []) if isinstance(data, dict) else data
    if not isinstance(cookies, list):
        return []
    return [cookie for cookie in cookies if isinstance(cookie, dict) and cookie.get("name")]


def cookie_header(cookies: list[dict[str, Any]]) -> str:
    return "; ".join(f"{cookie['name']}={cookie.get('value', '')}" for cookie in cookies)


def is_on_leads_page(current_url: str, leads_url: str) -> bool:
    current = urlparse(current_url)
    expected = urlparse(leads_url)
    return (
        current.netloc.casefold() == expected.netloc.casefold()
        and "/leads" in current.path
        and "/login" not in current.path
    )


def bootstrap_session(
    storage_path: Path,
    *,
    leads_url: str,
    login_url: str | None = None,
    headed: bool = True,
    timeout_ms: int = 300_000,
) -> Path:
    """Open a browser for a manual login and save its storage state once the leads page loads."""
    from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
    from playwright.sync_api import sync_playwright

    storage_path.parent.mkdir(parents=True, exist_ok=True)

    with sync_playwright() as playwright:
        browser = playwright.chromium.launch(headless=not headed, slow_mo=50 if headed else 0)
        context = browser.new_context()
        try:
            page = context.new_page()
            page.goto(login_url or leads_url, wait_until="domcontentloaded", timeout=60_000)
            logger.info("waiting up to %ds for the browser to reach %s", timeout_ms // 1000, leads_url)
            try:
                page.wait_for_url(lambda url: is_on_leads_page(url, leads_url), timeout=timeout_ms)
            except PlaywrightTimeoutError as exc:
                raise AuthError(f"login not completed within {timeout_ms // 1000}s, ended on {page.url}") from exc
            context.storage_state(path=str(storage_path))
        finally:
            context.close()
            browser.close()

    return storage_path


def encode_storage_state_b64(storage_path: Path) -> str:
    return base64.b64encode(storage_path.read_bytes()).decode("utf-8")
