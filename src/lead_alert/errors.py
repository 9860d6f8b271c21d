from __future__ import annotations


class LeadAlertError(Exception):
    """Base class for failures surfaced by the detection cycle."""


class TransportError(LeadAlertError):
    """Network failure, timeout or unexpected upstream status."""


class AuthError(LeadAlertError):
    """Upstream rejected the session (401/403 or redirect to login)."""


class ParseError(LeadAlertError):
    """Snapshot payload is not structured data; never escapes the normalizer."""


class DeliveryError(LeadAlertError):
    """Webhook POST failed or returned a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
