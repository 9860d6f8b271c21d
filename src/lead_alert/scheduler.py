from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Protocol

from lead_alert.config import Settings
from lead_alert.dedup import Clock, NotificationDeduplicator
from lead_alert.diff import diff_snapshots
from lead_alert.errors import AuthError, DeliveryError, ParseError, TransportError
from lead_alert.models import (
    BackoffState,
    CycleResult,
    FetchResult,
    NewRecordBatch,
    NormalizedSnapshot,
    RawSnapshot,
)
from lead_alert.normalizer import normalize_snapshot
from lead_alert.notifier_webhook import deliver_notification

logger = logging.getLogger(__name__)


class SnapshotProvider(Protocol):
    method: str

    def fetch_snapshot(self) -> FetchResult: ...


AuthHook = Callable[[], None]
Deliverer = Callable[[NewRecordBatch, str, Settings], tuple[bool, DeliveryError | None]]
Jitter = Callable[[float, float], float]


class PollScheduler:
    """Drive fetch -> normalize -> diff -> dedup -> deliver, one cycle at a time.

    All mutable state (baseline snapshot, backoff counter, notification window)
    is owned here and only touched from the thread running the cycles.
    """

    def __init__(
        self,
        settings: Settings,
        provider: SnapshotProvider,
        *,
        auth_hook: AuthHook | None = None,
        deliver: Deliverer = deliver_notification,
        clock: Clock = time.monotonic,
        jitter: Jitter = random.uniform,
    ):
        self.settings = settings
        self.provider = provider
        self.auth_hook = auth_hook
        self.deliver = deliver
        self.rules = settings.normalizer_rules()
        self._clock = clock
        self._jitter = jitter
        self._stop_event = threading.Event()
        self._running = False
        self._init_state()

    def _init_state(self) -> None:
        self.baseline: NormalizedSnapshot | None = None
        self.backoff = BackoffState()
        self.deduplicator = NotificationDeduplicator(
            self.settings.deduplication_window_ms, clock=self._clock
        )
        self.delivery_failures = 0

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def backoff_delay(self, failures: int) -> float:
        delay_ms = min(
            self.settings.base_backoff_delay_ms * (2**failures),
            self.settings.max_backoff_delay_ms,
        )
        jitter_ms = 0.0
        if self.settings.backoff_jitter_ms:
            jitter_ms = self._jitter(0, self.settings.backoff_jitter_ms)
        return (delay_ms + jitter_ms) / 1000.0

    def _fetch(self) -> FetchResult:
        try:
            return self.provider.fetch_snapshot()
        except Exception as exc:  # pragma: no cover - defensive boundary
            logger.exception("snapshot provider raised")
            return FetchResult(payload=None, error=TransportError(f"unexpected error: {exc}"))

    def _refresh_auth(self) -> bool:
        if self.auth_hook is None:
            logger.warning("authentication required but no auth hook configured")
            return False
        try:
            self.auth_hook()
        except AuthError as exc:
            logger.warning("re-login failed: %s", exc)
            return False
        except Exception as exc:
            logger.warning("re-login raised unexpectedly: %s", exc)
            return False
        logger.info("re-login succeeded")
        return True

    def _deliver(self, batch: NewRecordBatch) -> bool:
        try:
            ok, error = self.deliver(batch, self.provider.method, self.settings)
        except Exception as exc:  # pragma: no cover - defensive boundary
            ok, error = False, DeliveryError(f"unexpected error: {exc}")
        if not ok:
            self.delivery_failures += 1
            logger.warning("delivery failed (%d total): %s", self.delivery_failures, error)
        return ok

    def _handle_failure(self, result: FetchResult) -> CycleResult:
        self.backoff.consecutive_failures += 1
        failures = self.backoff.consecutive_failures
        logger.warning("fetch failed (attempt %d): %s", failures, result.error)

        auth_refreshed = False
        if result.auth_required:
            auth_refreshed = self._refresh_auth()

        delay = 0.0 if auth_refreshed else self.backoff_delay(failures)
        logger.info("next fetch in %.2fs", delay)
        return CycleResult(
            succeeded=False,
            new_count=0,
            notified=False,
            delivered=None,
            auth_refreshed=auth_refreshed,
            consecutive_failures=failures,
            next_delay_seconds=delay,
            error_message=str(result.error) if result.error else "empty snapshot",
        )

    def _handle_success(self, result: FetchResult) -> CycleResult:
        raw = RawSnapshot(payload=result.payload or b"", captured_at_utc=result.captured_at_utc)
        current = normalize_snapshot(raw, self.rules)
        batch = diff_snapshots(self.baseline, current, self.settings.ignore_fields)

        notified = False
        delivered: bool | None = None
        if batch.first_observation:
            logger.info("initial leads snapshot stored (%d records)", len(current.records))
        elif not batch:
            logger.debug("no new leads detected")
        elif len(batch) < self.settings.min_new_leads_to_notify:
            logger.info(
                "%d new lead(s) below notify threshold %d",
                len(batch),
                self.settings.min_new_leads_to_notify,
            )
        elif self.deduplicator.should_notify(batch.identities()):
            logger.info("changes detected: %d new lead(s)", len(batch))
            notified = True
            delivered = self._deliver(batch)
        else:
            logger.info("skipping duplicate notification for %s", self.provider.method)

        # The baseline advances regardless of delivery so a failed POST cannot replay.
        self.baseline = current
        self.backoff.consecutive_failures = 0
        return CycleResult(
            succeeded=True,
            new_count=len(batch),
            notified=notified,
            delivered=delivered,
            auth_refreshed=False,
            consecutive_failures=0,
            next_delay_seconds=self.settings.polling_interval_ms / 1000.0,
        )

    def run_cycle(self) -> CycleResult:
        result = self._fetch()
        if not result.ok:
            return self._handle_failure(result)
        try:
            return self._handle_success(result)
        except Exception as exc:
            logger.exception("snapshot processing failed")
            error = ParseError(f"snapshot processing failed: {exc!r}")
            return self._handle_failure(FetchResult(payload=None, error=error))

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early once ``stop()`` is called."""
        return self._stop_event.wait(seconds)

    def run_forever(self, max_cycles: int | None = None) -> int:
        cycles = 0
        self._running = True
        try:
            while not self._stop_event.is_set():
                outcome = self.run_cycle()
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                if self.wait(outcome.next_delay_seconds):
                    break
        finally:
            self._running = False
            if self._stop_event.is_set():
                self._init_state()
        return cycles

    def stop(self) -> None:
        logger.info("stopping lead detector")
        self._stop_event.set()
        if not self._running:
            self._init_state()

    def reset(self) -> None:
        """Re-initialise state after ``stop()`` so the scheduler can run again."""
        self._stop_event.clear()
        self._init_state()
