from __future__ import annotations

import argparse
import logging
import os
import signal
from pathlib import Path

from lead_alert.auth.relogin import PlaywrightRelogin
from lead_alert.auth.session import (
    bootstrap_session,
    encode_storage_state_b64,
    load_session_cookies,
)
from lead_alert.config import (
    RUN_REQUIRED_ENVS,
    Settings,
    assert_required_envs,
    ensure_session_state,
    load_settings,
    mask_secret,
    missing_envs,
)
from lead_alert.errors import AuthError
from lead_alert.providers.lead_cards import LeadCardsProvider
from lead_alert.providers.leads_data import LeadsDataProvider
from lead_alert.scheduler import PollScheduler, SnapshotProvider


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lead-alert")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Poll for new leads and send webhook notifications until stopped")
    subparsers.add_parser("once", help="Take a baseline and one comparison snapshot, then exit")
    subparsers.add_parser("healthcheck", help="Validate config and local session readiness")

    bootstrap_parser = subparsers.add_parser(
        "bootstrap-session",
        help="Open browser, complete login manually, and save Playwright storage state",
    )
    bootstrap_parser.add_argument("--headed", action="store_true", default=True)
    bootstrap_parser.add_argument("--headless", action="store_true", default=False)
    bootstrap_parser.add_argument(
        "--login-url",
        default=None,
        help="Login URL to open for manual authentication (defaults to LEADS_URL)",
    )
    bootstrap_parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Override storage state output path",
    )

    return parser


def _configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_provider(settings: Settings) -> SnapshotProvider:
    if settings.detection_method == "dom_mutation":
        return LeadCardsProvider(settings)
    return LeadsDataProvider(settings)


def _prepare_scheduler() -> PollScheduler:
    settings = load_settings()
    assert_required_envs(RUN_REQUIRED_ENVS)
    try:
        ensure_session_state(settings)
    except Exception as exc:
        # A broken secret is not fatal; the relogin hook will create a fresh session.
        print(f"session state decode failed, fallback to automatic login: {exc}")
    relogin = PlaywrightRelogin(settings)
    scheduler = PollScheduler(settings, build_provider(settings), auth_hook=relogin)
    relogin.sleep = scheduler.wait
    return scheduler


def _cmd_run() -> int:
    scheduler = _prepare_scheduler()

    def _handle_signal(signum, _frame) -> None:
        print(f"received {signal.Signals(signum).name}, shutting down...")
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    print(
        "lead detector started:",
        f"method={scheduler.provider.method}",
        f"webhook={mask_secret(scheduler.settings.webhook_url, visible_prefix=12, visible_suffix=4)}",
    )
    cycles = scheduler.run_forever()
    print(f"lead detector stopped after {cycles} cycles")
    return 0


def _cmd_once() -> int:
    scheduler = _prepare_scheduler()
    first = scheduler.run_cycle()
    second = scheduler.run_cycle() if first.succeeded else first

    print(
        "run summary:",
        f"method={scheduler.provider.method}",
        f"succeeded={second.succeeded}",
        f"new_count={second.new_count}",
        f"notified={second.notified}",
        f"delivered={second.delivered}",
        f"consecutive_failures={second.consecutive_failures}",
    )
    if second.error_message:
        print(f"error: {second.error_message}")
    return 0 if second.succeeded else 1


def _cmd_healthcheck() -> int:
    settings = load_settings()
    missing = missing_envs(RUN_REQUIRED_ENVS)
    if missing:
        print("missing required env vars:", ", ".join(missing))
        return 1

    try:
        state_path = ensure_session_state(settings)
    except Exception as exc:
        state_path = None
        print(f"session state decode failed, fallback to automatic login: {exc}")

    if state_path is None:
        print("session state not provided; automatic login will be used")
    else:
        cookies = load_session_cookies(state_path)
        print(f"session state ready: {state_path} ({len(cookies)} cookies)")
    print(f"extraction rule: {settings.extraction_rule()}")
    print("healthcheck passed")
    return 0


def _cmd_bootstrap(args: argparse.Namespace) -> int:
    settings = load_settings()
    output_path = args.output or settings.session_state_path
    headed = not args.headless if args.headless else args.headed

    print(f"Finish the login in the browser; the session is saved once {settings.leads_url} loads.")
    try:
        saved_path = bootstrap_session(
            output_path,
            leads_url=settings.leads_url,
            login_url=args.login_url,
            headed=headed,
        )
    except AuthError as exc:
        print(f"bootstrap failed: {exc}")
        return 1
    encoded = encode_storage_state_b64(saved_path)

    print(f"saved storage state to: {saved_path}")
    print("optional: set this value as SESSION_STATE_B64 secret for faster startup:")
    print(encoded)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging()

    try:
        if args.command == "run":
            return _cmd_run()
        if args.command == "once":
            return _cmd_once()
        if args.command == "healthcheck":
            return _cmd_healthcheck()
        if args.command == "bootstrap-session":
            return _cmd_bootstrap(args)
    except ValueError as exc:
        print(exc)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
