"""Turn raw lead snapshots into ordered, identity-keyed records.

Structured (JSON) payloads are extracted according to an explicit rule:
``DirectArray`` takes every mapping in the top-level array as a record,
``NestedSearch(depth)`` additionally looks inside elements that do not look
like a lead, down to a fixed number of mapping levels.

Anything that is not a JSON array or object degrades to a text scan that only
keeps enough signal to answer "did a new lead id show up".
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from lead_alert.errors import ParseError
from lead_alert.models import RAW_EXCERPT_LIMIT, NormalizedSnapshot, RawSnapshot, Record

logger = logging.getLogger(__name__)

DEFAULT_ID_FIELDS = ("id",)
DEFAULT_IDENTITY_FIELDS = ("name", "title", "location", "address", "job", "type", "category")
KNOWN_FIELDS = frozenset(
    ("id", "name", "title", "description", "location", "address", "job", "type", "category")
)
DOMAIN_TERMS = ("lead", "job", "customer", "client")
IDENTITY_SEPARATOR = "|"

_LEAD_ID_PATTERN = re.compile(r"lead-\w+")
_VOLATILE_PATTERNS = (
    (re.compile(r"\d{2}:\d{2}:\d{2}"), "TIMESTAMP"),
    (re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}"), "DATE"),
    (re.compile(r"\d{4}-\d{2}-\d{2}"), "DATE"),
    (re.compile(r"csrf[^\"']+[\"'][^\"']+[\"']", re.IGNORECASE), "CSRF_TOKEN"),
    (re.compile(r"session[^\"']+[\"'][^\"']+[\"']", re.IGNORECASE), "SESSION_ID"),
)


@dataclass(frozen=True)
class DirectArray:
    pass


@dataclass(frozen=True)
class NestedSearch:
    depth: int = 1


ExtractionRule = Union[DirectArray, NestedSearch]


@dataclass(frozen=True)
class NormalizerRules:
    extraction: ExtractionRule = field(default_factory=NestedSearch)
    id_fields: tuple[str, ...] = DEFAULT_ID_FIELDS
    identity_fields: tuple[str, ...] = DEFAULT_IDENTITY_FIELDS


def strip_volatile(text: str) -> str:
    cleaned = text
    for pattern, replacement in _VOLATILE_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    return cleaned


def extract_lead_ids(text: str) -> list[str]:
    seen: set[str] = set()
    ids: list[str] = []
    for match in _LEAD_ID_PATTERN.findall(text):
        if match not in seen:
            seen.add(match)
            ids.append(match)
    return ids


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, (Mapping, list, tuple))


def looks_like_record(item: Mapping[str, Any]) -> bool:
    if any(key in KNOWN_FIELDS for key in item):
        return True
    # A key like "leads" holding a list is a container of records, not a record.
    return any(
        any(term in str(key).casefold() for term in DOMAIN_TERMS) and _is_scalar(value)
        for key, value in item.items()
    )


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def derive_identity(fields: Mapping[str, str], identity_fields: tuple[str, ...]) -> str:
    parts = [fields[name] for name in identity_fields if fields.get(name)]
    return IDENTITY_SEPARATOR.join(parts)


def _dump_item(item: Mapping[str, Any], *, sort_keys: bool = False) -> str:
    try:
        return json.dumps(item, sort_keys=sort_keys, ensure_ascii=False, default=str)
    except (RecursionError, ValueError):
        # Too deep or circular to serialise whole; fall back to the scalar view.
        flat = {str(key): value for key, value in item.items() if _is_scalar(value)}
        return json.dumps(flat, sort_keys=sort_keys, ensure_ascii=False, default=str)


def _content_digest(item: Mapping[str, Any]) -> str:
    canonical = _dump_item(item, sort_keys=True)
    return f"hash:{hashlib.sha1(canonical.encode('utf-8')).hexdigest()[:16]}"


def build_record(item: Mapping[str, Any], rules: NormalizerRules) -> Record:
    fields = {
        str(key): _stringify(value)
        for key, value in item.items()
        if value is not None and _is_scalar(value)
    }
    excerpt = _dump_item(item)[:RAW_EXCERPT_LIMIT]

    for id_field in rules.id_fields:
        explicit = fields.get(id_field, "").strip()
        if explicit:
            return Record(identity=explicit, fields=fields, raw_excerpt=excerpt, identity_provided=True)

    identity = derive_identity(fields, rules.identity_fields) or _content_digest(item)
    return Record(identity=identity, fields=fields, raw_excerpt=excerpt, identity_provided=False)


def _search_nested(value: Any, depth: int) -> Iterator[Mapping[str, Any]]:
    if isinstance(value, Mapping):
        if looks_like_record(value):
            yield value
            return
        if depth <= 0:
            return
        for child in value.values():
            if not _is_scalar(child):
                yield from _search_nested(child, depth - 1)
    elif isinstance(value, (list, tuple)):
        for child in value:
            yield from _search_nested(child, depth)


def _candidate_items(data: Any, rule: ExtractionRule) -> list[Mapping[str, Any]]:
    if isinstance(rule, DirectArray):
        if not isinstance(data, list):
            raise ParseError("direct extraction expects a top-level array")
        return [item for item in data if isinstance(item, Mapping)]

    if isinstance(data, Mapping):
        data = [data]
    if not isinstance(data, list):
        raise ParseError("nested extraction expects an array or object")
    return list(_search_nested(data, rule.depth))


def _parse_structured(text: str) -> Any:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"payload is not JSON: {exc.msg}") from exc
    except (RecursionError, ValueError) as exc:
        raise ParseError(f"payload could not be decoded: {exc}") from exc
    if _is_scalar(data):
        raise ParseError("payload is a JSON scalar")
    return data


def _text_scan(raw: RawSnapshot, text: str, canonical: str) -> NormalizedSnapshot:
    records = tuple(Record(identity=lead_id) for lead_id in extract_lead_ids(text))
    return NormalizedSnapshot(
        records=records,
        canonical_text=canonical,
        degraded=True,
        captured_at_utc=raw.captured_at_utc,
    )


def normalize_snapshot(raw: RawSnapshot, rules: NormalizerRules | None = None) -> NormalizedSnapshot:
    rules = rules or NormalizerRules()
    text = raw.text()
    canonical = strip_volatile(text)

    try:
        data = _parse_structured(text)
        items = _candidate_items(data, rules.extraction)
        records = tuple(build_record(item, rules) for item in items)
    except (ParseError, RecursionError) as exc:
        logger.debug("falling back to text scan: %s", exc)
        return _text_scan(raw, text, canonical)

    return NormalizedSnapshot(
        records=records,
        canonical_text=canonical,
        degraded=False,
        captured_at_utc=raw.captured_at_utc,
    )
