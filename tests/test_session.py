import base64
import json

import pytest

from lead_alert.auth.relogin import PlaywrightRelogin
from lead_alert.auth.session import (
    cookie_header,
    encode_storage_state_b64,
    is_on_leads_page,
    load_session_cookies,
)
from lead_alert.config import Settings
from lead_alert.errors import AuthError
from lead_alert.scheduler import PollScheduler


def test_load_session_cookies_from_playwright_storage_state(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps({"cookies": [{"name": "sid", "value": "1"}, {"value": "nameless"}], "origins": []}),
        encoding="utf-8",
    )

    cookies = load_session_cookies(path)

    assert cookies == [{"name": "sid", "value": "1"}]
    assert cookie_header(cookies) == "sid=1"


def test_load_session_cookies_from_bare_cookie_list(tmp_path) -> None:
    path = tmp_path / "cookies.json"
    path.write_text(json.dumps([{"name": "a", "value": "x"}, {"name": "b", "value": "y"}]), encoding="utf-8")

    assert cookie_header(load_session_cookies(path)) == "a=x; b=y"


def test_load_session_cookies_tolerates_missing_or_corrupt_files(tmp_path) -> None:
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json", encoding="utf-8")

    assert load_session_cookies(tmp_path / "missing.json") == []
    assert load_session_cookies(corrupt) == []


def test_encode_storage_state_b64_round_trips(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_bytes(b'{"cookies": []}')
    assert base64.b64decode(encode_storage_state_b64(path)) == b'{"cookies": []}'


def test_is_on_leads_page() -> None:
    leads_url = "https://tradiecore.hipages.com.au/leads"
    assert is_on_leads_page("https://tradiecore.hipages.com.au/leads?tab=new", leads_url)
    assert not is_on_leads_page("https://auth.hipages.com.au/login?state=abc", leads_url)
    assert not is_on_leads_page("https://tradiecore.hipages.com.au/leads/login", leads_url)


class _ScriptedRelogin(PlaywrightRelogin):
    def __init__(self, settings: Settings, outcomes: list[str | None], sleeps: list[float]):
        super().__init__(settings, sleep=sleeps.append)
        self.outcomes = outcomes

    def _login(self) -> str | None:
        return self.outcomes.pop(0)


def test_relogin_waits_longer_after_repeated_failures() -> None:
    settings = Settings(login_retry_delay_ms=60_000)
    sleeps: list[float] = []
    hook = _ScriptedRelogin(settings, ["bad", "bad", "bad", "bad", None], sleeps)

    errors = 0
    for _ in range(4):
        try:
            hook()
        except AuthError:
            errors += 1
    hook()

    assert errors == 4
    assert sleeps == [60.0, 60.0]
    assert hook.attempts == 0


def test_relogin_wait_is_cut_short_by_shutdown() -> None:
    settings = Settings(login_retry_delay_ms=60_000)
    scheduler = PollScheduler(settings, provider=object())
    hook = _ScriptedRelogin(settings, ["bad", "bad", "bad"], [])
    hook.sleep = scheduler.wait

    for _ in range(3):
        with pytest.raises(AuthError):
            hook()
    scheduler.stop()

    with pytest.raises(AuthError, match="interrupted by shutdown"):
        hook()
    assert hook.outcomes == []
