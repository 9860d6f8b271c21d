from __future__ import annotations

import logging
import time
from collections.abc import Callable

from lead_alert.auth.session import is_on_leads_page
from lead_alert.config import Settings
from lead_alert.errors import AuthError

logger = logging.getLogger(__name__)

MAX_QUICK_LOGIN_ATTEMPTS = 3

_EMAIL_SELECTORS = (
    "input[type='email']",
    "input[placeholder*='Email']",
    "input[name='email']",
    "input[id*='email']",
)
_PASSWORD_SELECTORS = (
    "input[type='password']",
    "input[placeholder*='Password']",
    "input[name='password']",
    "input[id*='password']",
)
_SUBMIT_SELECTORS = (
    "button[type='submit']",
    "button:has-text('Log in')",
    "button:has-text('Login')",
    "button:has-text('Sign in')",
    "input[type='submit']",
)


def _first_click(page, selectors: tuple[str, ...], timeout_ms: int = 5_000) -> bool:
    for selector in selectors:
        locator = page.locator(selector)
        if locator.count() > 0:
            locator.first.click(timeout=timeout_ms)
            return True
    return False


def _first_fill(page, selectors: tuple[str, ...], value: str, timeout_ms: int = 5_000) -> bool:
    for selector in selectors:
        locator = page.locator(selector)
        if locator.count() > 0:
            locator.first.fill(value, timeout=timeout_ms)
            return True
    return False


def _login_with_credentials(page, settings: Settings) -> str | None:
    if not _first_fill(page, _EMAIL_SELECTORS, settings.hipages_email):
        return "email input not found on login page"
    if not _first_fill(page, _PASSWORD_SELECTORS, settings.hipages_password):
        return "password input not found on login page"
    if not _first_click(page, _SUBMIT_SELECTORS):
        return "login submit button not found"

    try:
        page.wait_for_load_state("networkidle", timeout=30_000)
    except Exception:
        page.wait_for_timeout(3_000)

    page.goto(settings.leads_url, wait_until="domcontentloaded", timeout=settings.request_timeout_ms)
    if not is_on_leads_page(page.url, settings.leads_url):
        return f"login did not complete, ended on {page.url}"
    return None


class PlaywrightRelogin:
    """Auth hook: refresh the cached browser session when the upstream rejects it."""

    def __init__(self, settings: Settings, *, sleep: Callable[[float], object] = time.sleep):
        # ``sleep`` may return True to signal shutdown (``PollScheduler.wait``).
        self.settings = settings
        self.sleep = sleep
        self.attempts = 0

    def __call__(self) -> None:
        self.attempts += 1
        if self.attempts > MAX_QUICK_LOGIN_ATTEMPTS:
            delay = self.settings.login_retry_delay_ms / 1000.0
            logger.info("login retry count exceeded (%d), waiting %.0fs", self.attempts, delay)
            if self.sleep(delay):
                raise AuthError("login retry wait interrupted by shutdown")

        error = self._login()
        if error:
            raise AuthError(error)
        self.attempts = 0

    def _login(self) -> str | None:
        try:
            from playwright.sync_api import sync_playwright
        except Exception as exc:  # pragma: no cover - import depends on env
            return f"playwright import failed: {exc}"

        settings = self.settings
        context_kwargs = {"user_agent": settings.user_agent}
        if settings.session_state_path.exists():
            context_kwargs["storage_state"] = str(settings.session_state_path)

        try:
            with sync_playwright() as playwright:
                browser = playwright.chromium.launch(headless=True)
                context = browser.new_context(**context_kwargs)
                page = context.new_page()
                page.goto(
                    settings.leads_url,
                    wait_until="domcontentloaded",
                    timeout=settings.request_timeout_ms,
                )

                if not is_on_leads_page(page.url, settings.leads_url):
                    login_error = _login_with_credentials(page, settings)
                    if login_error:
                        context.close()
                        browser.close()
                        return login_error

                settings.session_state_path.parent.mkdir(parents=True, exist_ok=True)
                context.storage_state(path=str(settings.session_state_path))
                context.close()
                browser.close()
        except Exception as exc:  # pragma: no cover - depends on network/browser
            return str(exc)

        logger.info("session refreshed and saved to %s", settings.session_state_path)
        return None
