from __future__ import annotations

import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from lead_alert.auth.session import cookie_header, load_session_cookies
from lead_alert.config import Settings
from lead_alert.errors import AuthError, TransportError
from lead_alert.models import FetchResult

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = (401, 403)


def is_login_redirect(response: httpx.Response) -> bool:
    if not response.is_redirect:
        return False
    return "/login" in response.headers.get("location", "")


def classify_response(response: httpx.Response) -> FetchResult:
    status = response.status_code
    if status in AUTH_STATUS_CODES or is_login_redirect(response):
        return FetchResult(
            payload=None,
            status_code=status,
            error=AuthError(f"session rejected with HTTP {status}"),
        )
    if not response.is_success:
        return FetchResult(
            payload=None,
            status_code=status,
            error=TransportError(f"HTTP error: {status}"),
        )
    return FetchResult(payload=response.content, status_code=status)


@retry(
    stop=stop_after_attempt(2),
    wait=wait_fixed(0.5),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
def _get(client: httpx.Client, url: str, headers: dict[str, str]) -> httpx.Response:
    return client.get(url, headers=headers, follow_redirects=False)


class LeadsDataProvider:
    """Poll the JSON-ish ``leads.data`` endpoint with the cached session cookies."""

    method = "polling"

    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.settings = settings
        self.url = settings.leads_data_url
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.settings.user_agent}
        cookies = load_session_cookies(self.settings.session_state_path)
        if cookies:
            headers["Cookie"] = cookie_header(cookies)
        return headers

    def _request(self, client: httpx.Client) -> FetchResult:
        try:
            response = _get(client, self.url, self._headers())
        except httpx.HTTPError as exc:
            return FetchResult(payload=None, error=TransportError(str(exc) or type(exc).__name__))
        return classify_response(response)

    def fetch_snapshot(self) -> FetchResult:
        if self._client is not None:
            return self._request(self._client)
        timeout = self.settings.request_timeout_ms / 1000.0
        with httpx.Client(timeout=timeout) as client:
            return self._request(client)
