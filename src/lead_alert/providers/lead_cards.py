from __future__ import annotations

import json
import re

import httpx
from bs4 import BeautifulSoup, Tag

from lead_alert.config import Settings
from lead_alert.models import FetchResult
from lead_alert.providers.leads_data import LeadsDataProvider

_CARD_ATTRS = ("class", "id", "data-testid")
_ID_ATTRS = ("id", "data-id", "data-lead-id")


def _clean_spaces(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def _attr_text(element: Tag, attr: str) -> str:
    value = element.get(attr)
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def _is_lead_card(element: Tag) -> bool:
    return any("lead" in _attr_text(element, attr).casefold() for attr in _CARD_ATTRS)


def _class_contains(*terms: str):
    def matcher(value) -> bool:
        if not value:
            return False
        lowered = value.casefold()
        return any(term in lowered for term in terms)

    return matcher


def _first_text(card: Tag, *candidates) -> str:
    for candidate in candidates:
        if isinstance(candidate, str):
            found = card.find(candidate)
        else:
            found = card.find(class_=candidate)
        if found is not None:
            return _clean_spaces(found.get_text(" ", strip=True))
    return ""


def _card_id(card: Tag) -> str:
    for attr in _ID_ATTRS:
        value = _attr_text(card, attr).strip()
        if value:
            return value
    nested = card.find(attrs={"data-id": True})
    if nested is not None:
        return _attr_text(nested, "data-id").strip()
    return ""


def extract_card(card: Tag) -> dict[str, str]:
    return {
        "id": _card_id(card),
        "name": _first_text(card, "h2", "h3", _class_contains("name", "title")),
        "timestamp": _first_text(card, "time", _class_contains("time", "date")),
        "location": _first_text(card, _class_contains("location", "address")),
        "jobType": _first_text(card, _class_contains("job", "type", "category")),
    }


def _children(element: Tag) -> list[Tag]:
    return element.find_all(True, recursive=False)


def _nested_card_counts(soup: BeautifulSoup) -> dict[int, int]:
    """Count card-like lead elements below every tag in a single bottom-up pass."""
    counts: dict[int, int] = {}
    has_heading: dict[int, bool] = {}
    # Reversed document order visits every child before its parent.
    for element in reversed(soup.find_all(True)):
        total = 0
        heading = False
        for child in _children(element):
            child_heading = has_heading[id(child)]
            heading = heading or child.name in ("h2", "h3") or child_heading
            has_own_id = any(_attr_text(child, attr).strip() for attr in _ID_ATTRS)
            card_like = has_own_id or child_heading
            total += counts[id(child)] + (1 if card_like and _is_lead_card(child) else 0)
        counts[id(element)] = total
        has_heading[id(element)] = heading
    return counts


def parse_lead_cards(html: str, *, limit: int = 80) -> list[dict[str, str]]:
    soup = BeautifulSoup(html, "html.parser")
    counts = _nested_card_counts(soup)
    cards: list[dict[str, str]] = []
    seen: set[tuple[str, str]] = set()

    stack = list(reversed(_children(soup)))
    while stack and len(cards) < limit:
        element = stack.pop()
        # Wrappers holding two or more cards are walked into, never taken as a card.
        if _is_lead_card(element) and counts[id(element)] < 2:
            card = extract_card(element)
            key = (card["id"], card["name"])
            if (card["id"] or card["name"]) and key not in seen:
                seen.add(key)
                cards.append({name: value for name, value in card.items() if value})
                continue
        stack.extend(reversed(_children(element)))

    return cards


class LeadCardsProvider(LeadsDataProvider):
    """Fetch the rendered leads page and re-encode its lead cards as a JSON array."""

    method = "dom_mutation"

    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        super().__init__(settings, client)
        self.url = settings.leads_url

    def fetch_snapshot(self) -> FetchResult:
        result = super().fetch_snapshot()
        if not result.ok or result.payload is None:
            return result
        html = result.payload.decode("utf-8", errors="replace")
        cards = parse_lead_cards(html)
        payload = json.dumps(cards, ensure_ascii=False).encode("utf-8")
        return FetchResult(
            payload=payload,
            status_code=result.status_code,
            captured_at_utc=result.captured_at_utc,
        )
