from __future__ import annotations

from collections.abc import Iterable

from lead_alert.models import NewRecordBatch, NormalizedSnapshot, Record
from lead_alert.normalizer import extract_lead_ids


def fields_match(baseline: Record, current: Record, ignore_fields: Iterable[str] = ()) -> bool:
    """Compare the fields both records carry; fields missing on either side never discriminate."""
    ignored = set(ignore_fields)
    shared = (baseline.fields.keys() & current.fields.keys()) - ignored
    if not shared:
        return False
    return all(baseline.fields[name] == current.fields[name] for name in shared)


def records_match(baseline: Record, current: Record, ignore_fields: Iterable[str] = ()) -> bool:
    if baseline.identity_provided and current.identity_provided:
        return baseline.identity == current.identity
    if not baseline.identity_provided and not current.identity_provided:
        if baseline.identity == current.identity:
            return True
    return fields_match(baseline, current, ignore_fields)


def _scanned_records(snapshot: NormalizedSnapshot) -> tuple[Record, ...]:
    # Structured identities ("101") and scanned ids ("lead-101") live in different
    # namespaces, so a structured side is rescanned from its text before comparing.
    if snapshot.degraded:
        return snapshot.records
    return tuple(Record(identity=lead_id) for lead_id in extract_lead_ids(snapshot.canonical_text))


def _diff_text_scan(baseline: NormalizedSnapshot, current: NormalizedSnapshot) -> NewRecordBatch:
    # Boilerplate churn alone, or ids reshuffled inside unchanged text, is not news.
    if baseline.canonical_text == current.canonical_text:
        return NewRecordBatch()
    known = {record.identity for record in _scanned_records(baseline)}
    fresh = tuple(record for record in _scanned_records(current) if record.identity not in known)
    return NewRecordBatch(records=fresh)


def diff_snapshots(
    baseline: NormalizedSnapshot | None,
    current: NormalizedSnapshot,
    ignore_fields: Iterable[str] = (),
) -> NewRecordBatch:
    if baseline is None:
        return NewRecordBatch(first_observation=True)

    if baseline.degraded or current.degraded:
        return _diff_text_scan(baseline, current)

    ignored = tuple(ignore_fields)
    provided_ids = {record.identity for record in baseline.records if record.identity_provided}
    fresh: list[Record] = []
    for record in current.records:
        if record.identity_provided and record.identity in provided_ids:
            continue
        if any(records_match(previous, record, ignored) for previous in baseline.records):
            continue
        fresh.append(record)
    return NewRecordBatch(records=tuple(fresh))
