from lead_alert.dedup import NotificationDeduplicator


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: int) -> None:
        self.now += ms / 1000.0


def test_repeat_inside_window_is_suppressed() -> None:
    clock = FakeClock()
    dedup = NotificationDeduplicator(5000, clock=clock)

    assert dedup.should_notify(["A"])
    clock.advance_ms(100)
    assert not dedup.should_notify(["A"])


def test_repeat_after_window_is_allowed() -> None:
    clock = FakeClock()
    dedup = NotificationDeduplicator(5000, clock=clock)

    assert dedup.should_notify(["A"])
    clock.advance_ms(6000)
    assert dedup.should_notify(["A"])


def test_single_overlap_blocks_whole_batch() -> None:
    clock = FakeClock()
    dedup = NotificationDeduplicator(5000, clock=clock)

    assert dedup.should_notify(["A"])
    clock.advance_ms(200)
    assert not dedup.should_notify(["A", "B"])
    assert "B" not in dedup.state.recently_notified


def test_disjoint_batch_inside_window_extends_it() -> None:
    clock = FakeClock()
    dedup = NotificationDeduplicator(5000, clock=clock)

    assert dedup.should_notify(["A"])
    clock.advance_ms(4000)
    assert dedup.should_notify(["B"])
    clock.advance_ms(4000)
    # Window restarted at the "B" notification, so "A" is still remembered.
    assert not dedup.should_notify(["A"])
    assert dedup.state.recently_notified == {"A", "B"}


def test_elapsed_window_clears_state_wholesale() -> None:
    clock = FakeClock()
    dedup = NotificationDeduplicator(5000, clock=clock)

    dedup.should_notify(["A", "B"])
    clock.advance_ms(5000)
    assert dedup.should_notify(["C"])
    assert dedup.state.recently_notified == {"C"}


def test_reset_forgets_everything() -> None:
    clock = FakeClock()
    dedup = NotificationDeduplicator(5000, clock=clock)

    dedup.should_notify(["A"])
    dedup.reset()

    assert dedup.state.last_notification_at is None
    assert dedup.should_notify(["A"])
