"""Error taxonomy shared by every calendar provider adapter."""

from __future__ import annotations

import re

import httpx


class CalendarIntegrationError(RuntimeError):
    """Base error raised by calendar auth, request and sync helpers."""


class CalendarCredentialError(CalendarIntegrationError):
    """Raised when a stored credential payload is missing or invalid."""


class CalendarTokenRefreshError(CalendarIntegrationError):
    """Raised when a refresh-token exchange fails."""


class CalendarTransportError(CalendarIntegrationError):
    """Raised when the provider could not be reached at all."""


class CalendarRequestError(CalendarIntegrationError):
    """Raised when a provider API request returns a non-2xx status."""

    def __init__(self, *, status_code: int, message: str, provider: str = "calendar") -> None:
        self.status_code = status_code
        self.message = message
        self.provider = provider
        super().__init__(f"{provider} API request failed ({status_code}): {message}")


class CalendarEventNotFoundError(CalendarRequestError):
    """Raised when an operation requires an event that does not exist."""

    def __init__(self, event_id: str, *, provider: str = "calendar") -> None:
        self.event_id = event_id
        super().__init__(
            status_code=404,
            message=f"Event '{event_id}' not found",
            provider=provider,
        )


class CalendarSyncTokenExpiredError(CalendarIntegrationError):
    """Raised when a sync token is expired or invalid; caller should do a full sync."""


class CalendarCapabilityError(CalendarIntegrationError):
    """Raised when a provider does not support the requested operation."""


class DuplicateParticipantError(CalendarIntegrationError, ValueError):
    """Raised when a meeting lists the same participant identity more than once."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Participant '{identity}' appears more than once")


_SECRET_KEYS = r"client_secret|refresh_token|access_token|password|token"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def safe_error_message(response: httpx.Response) -> str:
    """Summarize a provider error body in at most 200 characters."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_credential_values(" ".join(message.split()))[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                error_payload = f"{error_payload}: {description}"
            return redact_credential_values(" ".join(error_payload.split()))[:200]

    raw_text = response.text.strip()
    if raw_text:
        return redact_credential_values(" ".join(raw_text.split()))[:200]
    return "Request failed without an error payload"
