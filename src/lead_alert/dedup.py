from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from lead_alert.models import NotificationState

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class NotificationDeduplicator:
    """Collapse bursty repeat notifications inside a fixed time window.

    The window is coarse: once it has fully elapsed every remembered identity
    is dropped at once, and while it is active a single already-announced
    identity suppresses the whole batch.
    """

    def __init__(
        self,
        window_ms: int,
        *,
        clock: Clock = time.monotonic,
        state: NotificationState | None = None,
    ):
        self.window_seconds = window_ms / 1000.0
        self.clock = clock
        self.state = state or NotificationState()

    def _window_elapsed(self, now: float) -> bool:
        last = self.state.last_notification_at
        return last is None or now - last >= self.window_seconds

    def should_notify(self, identities: Iterable[str]) -> bool:
        incoming = list(identities)
        now = self.clock()

        if self._window_elapsed(now):
            self.state.recently_notified.clear()
        elif any(identity in self.state.recently_notified for identity in incoming):
            logger.info("suppressing duplicate notification for %d lead(s)", len(incoming))
            return False

        self.state.last_notification_at = now
        self.state.recently_notified.update(incoming)
        return True

    def reset(self) -> None:
        self.state.reset()
