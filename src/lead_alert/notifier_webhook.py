from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

import httpx

from lead_alert.config import Settings
from lead_alert.errors import DeliveryError
from lead_alert.models import NewRecordBatch, utc_now

logger = logging.getLogger(__name__)

EVENT_NAME = "new_leads_detected"


def build_payload(batch: NewRecordBatch, method: str, now_utc: datetime | None = None) -> dict[str, Any]:
    timestamp = (now_utc or utc_now()).isoformat().replace("+00:00", "Z")
    return {
        "event": EVENT_NAME,
        "method": method,
        "leads": [record.to_payload() for record in batch.records],
        "timestamp": timestamp,
    }


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def build_headers(configured: dict[str, str], body: bytes) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    headers.update(configured)
    headers["Content-Length"] = str(len(body))
    return headers


def deliver_notification(
    batch: NewRecordBatch,
    method: str,
    settings: Settings,
    *,
    client: httpx.Client | None = None,
    now_utc: datetime | None = None,
) -> tuple[bool, DeliveryError | None]:
    """POST one notification; never retries, the scheduler owns retry policy."""
    body = encode_payload(build_payload(batch, method, now_utc))
    headers = build_headers(settings.webhook_headers, body)
    timeout = settings.delivery_timeout_ms / 1000.0

    try:
        if client is None:
            with httpx.Client(timeout=timeout) as owned:
                response = owned.post(settings.webhook_url, content=body, headers=headers)
        else:
            response = client.post(settings.webhook_url, content=body, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.warning("webhook delivery failed: %s", exc)
        return False, DeliveryError(f"webhook transport error: {exc}")

    logger.info("webhook notification sent: %s", response.status_code)
    if not response.is_success:
        return False, DeliveryError(
            f"webhook returned HTTP {response.status_code}", status_code=response.status_code
        )
    return True, None
