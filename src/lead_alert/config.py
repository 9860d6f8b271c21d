from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from typing import Literal, Mapping, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

from lead_alert.normalizer import (
    DEFAULT_ID_FIELDS,
    DEFAULT_IDENTITY_FIELDS,
    DirectArray,
    ExtractionRule,
    NestedSearch,
    NormalizerRules,
)

MODULE_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_SESSION_STATE_PATH = MODULE_ROOT / "data" / "session_state.json"

DEFAULT_LEADS_URL = "https://tradiecore.hipages.com.au/leads"
DEFAULT_LEADS_DATA_URL = (
    "https://tradiecore.hipages.com.au/leads.data?_routes=routes%2F_app%2Fleads%2F_leads"
)
DEFAULT_IGNORE_FIELDS = ("timestamp", "csrf", "session", "time", "date", "updated_at", "created_at")

RUN_REQUIRED_ENVS = (
    "WEBHOOK_URL",
    "HIPAGES_EMAIL",
    "HIPAGES_PASSWORD",
)


class Settings(BaseModel):
    webhook_url: str = ""
    webhook_headers: dict[str, str] = Field(default_factory=dict)
    hipages_email: str = ""
    hipages_password: str = ""
    leads_url: str = DEFAULT_LEADS_URL
    leads_data_url: str = DEFAULT_LEADS_DATA_URL
    detection_method: Literal["polling", "dom_mutation"] = "polling"
    polling_interval_ms: int = Field(default=1_000, ge=0)
    base_backoff_delay_ms: int = Field(default=1_000, ge=0)
    max_backoff_delay_ms: int = Field(default=30_000, ge=0)
    backoff_jitter_ms: int = Field(default=1_000, ge=0)
    delivery_timeout_ms: int = Field(default=10_000, ge=1)
    request_timeout_ms: int = Field(default=30_000, ge=1)
    login_retry_delay_ms: int = Field(default=60_000, ge=0)
    deduplication_window_ms: int = Field(default=5_000, ge=0)
    min_new_leads_to_notify: int = Field(default=1, ge=1)
    ignore_fields: tuple[str, ...] = DEFAULT_IGNORE_FIELDS
    identity_fields: tuple[str, ...] = DEFAULT_IDENTITY_FIELDS
    id_fields: tuple[str, ...] = DEFAULT_ID_FIELDS
    extraction_mode: Literal["direct", "nested"] = "nested"
    extraction_depth: int = Field(default=1, ge=0)
    user_agent: str = "lead-alert-bot/0.1"
    session_state_b64: str = ""
    session_state_path: Path = Field(default=DEFAULT_SESSION_STATE_PATH)

    @field_validator("webhook_url")
    @classmethod
    def _validate_webhook_url(cls, value: str) -> str:
        if value and not value.startswith(("https://", "http://")):
            raise ValueError("WEBHOOK_URL must use http:// or https://")
        return value

    @field_validator("max_backoff_delay_ms")
    @classmethod
    def _validate_backoff_cap(cls, value: int, info) -> int:
        base = info.data.get("base_backoff_delay_ms")
        if base is not None and value < base:
            raise ValueError("MAX_BACKOFF_DELAY_MS must be >= BASE_BACKOFF_DELAY_MS")
        return value

    @field_validator("identity_fields", "id_fields")
    @classmethod
    def _validate_not_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("field list must not be empty")
        return value

    def extraction_rule(self) -> ExtractionRule:
        if self.extraction_mode == "direct":
            return DirectArray()
        return NestedSearch(depth=self.extraction_depth)

    def normalizer_rules(self) -> NormalizerRules:
        return NormalizerRules(
            extraction=self.extraction_rule(),
            id_fields=self.id_fields,
            identity_fields=self.identity_fields,
        )


def _env_value(environ: Mapping[str, str], key: str) -> str:
    return environ.get(key, "").strip()


def _parse_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_headers(value: str) -> dict[str, str]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValueError(f"WEBHOOK_HEADERS_JSON is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("WEBHOOK_HEADERS_JSON must be a JSON object")
    return {str(key): str(val) for key, val in parsed.items()}


def missing_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> list[str]:
    source = os.environ if environ is None else environ
    return [key for key in required if not _env_value(source, key)]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if environ is None else environ
    try:
        payload = {
            "webhook_url": _env_value(source, "WEBHOOK_URL"),
            "webhook_headers": _parse_headers(_env_value(source, "WEBHOOK_HEADERS_JSON")),
            "hipages_email": _env_value(source, "HIPAGES_EMAIL"),
            "hipages_password": _env_value(source, "HIPAGES_PASSWORD"),
            "leads_url": _env_value(source, "LEADS_URL") or DEFAULT_LEADS_URL,
            "leads_data_url": _env_value(source, "LEADS_DATA_URL") or DEFAULT_LEADS_DATA_URL,
            "detection_method": _env_value(source, "DETECTION_METHOD") or "polling",
            "polling_interval_ms": int(_env_value(source, "POLLING_INTERVAL_MS") or "1000"),
            "base_backoff_delay_ms": int(_env_value(source, "BASE_BACKOFF_DELAY_MS") or "1000"),
            "max_backoff_delay_ms": int(_env_value(source, "MAX_BACKOFF_DELAY_MS") or "30000"),
            "backoff_jitter_ms": int(_env_value(source, "BACKOFF_JITTER_MS") or "1000"),
            "delivery_timeout_ms": int(_env_value(source, "DELIVERY_TIMEOUT_MS") or "10000"),
            "request_timeout_ms": int(_env_value(source, "REQUEST_TIMEOUT_MS") or "30000"),
            "login_retry_delay_ms": int(_env_value(source, "LOGIN_RETRY_DELAY_MS") or "60000"),
            "deduplication_window_ms": int(_env_value(source, "DEDUPLICATION_WINDOW_MS") or "5000"),
            "min_new_leads_to_notify": int(_env_value(source, "MIN_NEW_LEADS_TO_NOTIFY") or "1"),
            "ignore_fields": _parse_csv(_env_value(source, "IGNORE_FIELDS")) or DEFAULT_IGNORE_FIELDS,
            "identity_fields": (
                _parse_csv(_env_value(source, "IDENTITY_FIELDS")) or DEFAULT_IDENTITY_FIELDS
            ),
            "id_fields": _parse_csv(_env_value(source, "ID_FIELDS")) or DEFAULT_ID_FIELDS,
            "extraction_mode": _env_value(source, "EXTRACTION_MODE") or "nested",
            "extraction_depth": int(_env_value(source, "EXTRACTION_DEPTH") or "1"),
            "user_agent": _env_value(source, "USER_AGENT") or "lead-alert-bot/0.1",
            "session_state_b64": _env_value(source, "SESSION_STATE_B64"),
            "session_state_path": Path(
                _env_value(source, "SESSION_STATE_PATH") or DEFAULT_SESSION_STATE_PATH
            ),
        }
        return Settings(**payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def assert_required_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> None:
    missing = missing_envs(required, environ)
    if missing:
        keys = ", ".join(missing)
        raise ValueError(f"Missing required environment variables: {keys}")


def ensure_session_state(settings: Settings) -> Path | None:
    encoded = settings.session_state_b64.strip()
    if encoded:
        decoded = base64.b64decode(encoded, validate=True)
        settings.session_state_path.parent.mkdir(parents=True, exist_ok=True)
        settings.session_state_path.write_bytes(decoded)
        return settings.session_state_path
    if settings.session_state_path.exists():
        return settings.session_state_path
    return None


def mask_secret(value: str, visible_prefix: int = 3, visible_suffix: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= visible_prefix + visible_suffix:
        return "*" * len(value)
    hidden = "*" * (len(value) - visible_prefix - visible_suffix)
    return f"{value[:visible_prefix]}{hidden}{value[-visible_suffix:]}"
