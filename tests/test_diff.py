import json

from lead_alert.diff import diff_snapshots, fields_match, records_match
from lead_alert.models import RawSnapshot, Record
from lead_alert.normalizer import normalize_snapshot

IGNORE = ("timestamp", "csrf", "session", "time", "date", "updated_at", "created_at")


def _snapshot(data):
    if isinstance(data, str):
        payload = data.encode("utf-8")
    else:
        payload = json.dumps(data).encode("utf-8")
    return normalize_snapshot(RawSnapshot(payload=payload))


def test_first_poll_is_never_new() -> None:
    current = _snapshot([{"id": "L1"}, {"id": "L2"}])
    batch = diff_snapshots(None, current, IGNORE)

    assert len(batch) == 0
    assert batch.first_observation


def test_new_id_is_detected_in_current_order() -> None:
    baseline = _snapshot([{"id": "L1"}])
    current = _snapshot([{"id": "L3"}, {"id": "L1"}, {"id": "L2"}])

    batch = diff_snapshots(baseline, current, IGNORE)

    assert batch.identities() == ["L3", "L2"]
    assert not batch.first_observation


def test_single_new_lead_scenario() -> None:
    baseline = _snapshot([{"id": "L1"}])
    current = _snapshot([{"id": "L1"}, {"id": "L2"}])
    assert diff_snapshots(baseline, current, IGNORE).identities() == ["L2"]


def test_ignored_timestamp_change_is_not_new() -> None:
    baseline = _snapshot([{"name": "Bob", "location": "X"}])
    current = _snapshot([{"name": "Bob", "location": "X", "timestamp": "2 minutes ago"}])

    assert len(diff_snapshots(baseline, current, IGNORE)) == 0


def test_derived_records_match_on_shared_fields() -> None:
    baseline = _snapshot([{"name": "Bob"}])
    current = _snapshot([{"name": "Bob", "location": "Carlton"}, {"name": "Ann", "location": "Carlton"}])

    batch = diff_snapshots(baseline, current, IGNORE)

    assert batch.identities() == ["Ann|Carlton"]


def test_diff_is_idempotent() -> None:
    baseline = _snapshot([{"id": "L1"}, {"name": "Bob"}])
    current = _snapshot([{"id": "L2"}, {"name": "Bob"}, {"name": "Eve", "job": "Fencing"}])

    first = diff_snapshots(baseline, current, IGNORE)
    second = diff_snapshots(baseline, current, IGNORE)

    assert first == second
    assert first.identities() == ["L2", "Eve|Fencing"]


def test_fields_match_needs_a_shared_compared_field() -> None:
    left = Record(identity="a", fields={"timestamp": "1"}, identity_provided=False)
    right = Record(identity="b", fields={"timestamp": "2", "name": "Bob"}, identity_provided=False)

    assert not fields_match(left, right, IGNORE)
    assert not fields_match(left, right, ())


def test_text_scan_reports_new_identifier() -> None:
    baseline = _snapshot("<div id='lead-aaa'>Bob</div> rendered 10:00:01")
    current = _snapshot("<div id='lead-aaa'>Bob</div><div id='lead-bbb'>Ann</div> rendered 10:00:02")

    batch = diff_snapshots(baseline, current, IGNORE)

    assert batch.identities() == ["lead-bbb"]


def test_text_scan_ignores_boilerplate_churn() -> None:
    baseline = _snapshot("<div id='lead-aaa'>Bob</div> rendered 10:00:01 csrf_token='abc'")
    current = _snapshot("<div id='lead-aaa'>Bob</div> rendered 11:42:09 csrf_token='xyz'")

    assert len(diff_snapshots(baseline, current, IGNORE)) == 0


def test_text_scan_needs_new_identifiers_not_just_changes() -> None:
    baseline = _snapshot("<div id='lead-aaa'>Bob</div>")
    current = _snapshot("<div id='lead-aaa'>Bob, updated description</div>")

    assert len(diff_snapshots(baseline, current, IGNORE)) == 0


def test_provided_id_and_derived_key_compare_on_shared_fields() -> None:
    provided = Record(identity="L1", fields={"id": "L1", "name": "Bob", "location": "X"})
    derived = Record(
        identity="Bob|X",
        fields={"name": "Bob", "location": "X", "timestamp": "just now"},
        identity_provided=False,
    )
    moved = Record(identity="Bob|Y", fields={"name": "Bob", "location": "Y"}, identity_provided=False)

    assert records_match(provided, derived, IGNORE)
    assert records_match(derived, provided, IGNORE)
    assert not records_match(provided, moved, IGNORE)


def test_lead_losing_its_id_is_not_new() -> None:
    baseline = _snapshot([{"id": "L1", "name": "Bob", "location": "X"}])
    current = _snapshot([{"name": "Bob", "location": "X"}, {"name": "Ann", "location": "Y"}])

    assert diff_snapshots(baseline, current, IGNORE).identities() == ["Ann|Y"]


def test_switch_from_text_scan_to_structured_reports_nothing() -> None:
    baseline = _snapshot("<html><div id='lead-aaa'>Bob</div></html>")
    current = _snapshot([{"id": "101"}, {"id": "102"}, {"id": "103"}])

    assert baseline.degraded and not current.degraded
    assert len(diff_snapshots(baseline, current, IGNORE)) == 0


def test_switch_from_structured_to_text_scan_compares_scanned_ids() -> None:
    baseline = _snapshot([{"id": "lead-aaa", "name": "Bob"}])
    current = _snapshot("<div id='lead-aaa'>Bob</div><div id='lead-bbb'>Ann</div>")

    assert not baseline.degraded and current.degraded
    assert diff_snapshots(baseline, current, IGNORE).identities() == ["lead-bbb"]
