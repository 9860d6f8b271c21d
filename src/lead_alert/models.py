from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from lead_alert.errors import AuthError, LeadAlertError

RAW_EXCERPT_LIMIT = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RawSnapshot:
    payload: bytes
    captured_at_utc: datetime = field(default_factory=utc_now)

    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Record:
    identity: str
    fields: dict[str, str] = field(default_factory=dict)
    raw_excerpt: str = ""
    identity_provided: bool = True

    def to_payload(self) -> dict[str, str]:
        payload = dict(self.fields)
        if self.identity_provided:
            payload["id"] = self.identity
        else:
            payload["uniqueKey"] = self.identity
        return payload


@dataclass(frozen=True)
class NormalizedSnapshot:
    records: tuple[Record, ...]
    canonical_text: str
    degraded: bool = False
    captured_at_utc: datetime = field(default_factory=utc_now)

    def identities(self) -> list[str]:
        return [record.identity for record in self.records]


@dataclass(frozen=True)
class NewRecordBatch:
    records: tuple[Record, ...] = ()
    first_observation: bool = False

    def __len__(self) -> int:
        return len(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    def identities(self) -> list[str]:
        return [record.identity for record in self.records]


@dataclass
class NotificationState:
    last_notification_at: float | None = None
    recently_notified: set[str] = field(default_factory=set)

    def reset(self) -> None:
        self.last_notification_at = None
        self.recently_notified.clear()


@dataclass
class BackoffState:
    consecutive_failures: int = 0


@dataclass(frozen=True)
class FetchResult:
    payload: bytes | None
    status_code: int | None = None
    error: LeadAlertError | None = None
    captured_at_utc: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.error is None and self.payload is not None

    @property
    def auth_required(self) -> bool:
        return isinstance(self.error, AuthError)


@dataclass(frozen=True)
class CycleResult:
    succeeded: bool
    new_count: int
    notified: bool
    delivered: bool | None
    auth_refreshed: bool
    consecutive_failures: int
    next_delay_seconds: float
    error_message: str | None = None
