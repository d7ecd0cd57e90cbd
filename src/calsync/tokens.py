"""OAuth token lifecycle: immutable token values, expiry checks and refresh.

``OAuthToken`` is a frozen value. Refreshing never mutates a token; the
``exchange_refresh_token`` grant returns a new one, and ``TokenManager`` writes
it to the connected-calendar record before handing the access token to the
caller.

Refreshes are serialized per credential: every ``TokenManager`` created with
the same ``CredentialRegistry`` and key shares one lock and one current token,
so concurrent calls against an expiring token trigger a single refresh.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import httpx

from calsync.core.metrics import ProviderMetrics
from calsync.errors import CalendarCredentialError, CalendarTokenRefreshError, safe_error_message

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
OFFICE365_OAUTH_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
OFFICE365_OAUTH_SCOPE = "User.Read Calendars.Read Calendars.ReadWrite offline_access"

# A token this close to expiry is treated as already expired.
DEFAULT_EXPIRY_LEEWAY = timedelta(minutes=5)
DEFAULT_EXPIRES_IN_SECONDS = 3600


class ExpiryUnit(StrEnum):
    """Unit of the stored ``expiry_date`` epoch value."""

    milliseconds = "ms"
    seconds = "s"


@dataclass(frozen=True)
class OAuthToken:
    access_token: str | None
    refresh_token: str | None
    expiry: datetime | None = None
    scope: str | None = None
    token_type: str | None = "Bearer"

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        expiry_unit: ExpiryUnit = ExpiryUnit.milliseconds,
    ) -> OAuthToken:
        """Build a token from a stored credential payload.

        Raises CalendarCredentialError when neither an access token nor a
        refresh token is present.
        """
        access_token = _clean(payload.get("access_token"))
        refresh_token = _clean(payload.get("refresh_token"))
        if access_token is None and refresh_token is None:
            raise CalendarCredentialError(
                "Credential payload has neither an access_token nor a refresh_token"
            )
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry=_epoch_to_datetime(payload.get("expiry_date"), expiry_unit),
            scope=_clean(payload.get("scope")),
            token_type=_clean(payload.get("token_type")) or "Bearer",
        )

    def to_payload(self, *, expiry_unit: ExpiryUnit = ExpiryUnit.milliseconds) -> dict[str, Any]:
        expiry_date: int | None = None
        if self.expiry is not None:
            seconds = self.expiry.timestamp()
            expiry_date = int(seconds * 1000) if expiry_unit is ExpiryUnit.milliseconds else int(seconds)
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "token_type": self.token_type,
            "expiry_date": expiry_date,
        }

    def __repr__(self) -> str:
        return f"OAuthToken(expiry={self.expiry!r}, scope={self.scope!r}, token_type={self.token_type!r})"


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _epoch_to_datetime(value: Any, unit: ExpiryUnit) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return None
    try:
        epoch = float(value)
    except ValueError:
        return None
    if unit is ExpiryUnit.milliseconds:
        epoch /= 1000
    return datetime.fromtimestamp(epoch, tz=UTC)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return DEFAULT_EXPIRES_IN_SECONDS


def is_expiring(
    token: OAuthToken,
    now: datetime | None = None,
    *,
    leeway: timedelta = DEFAULT_EXPIRY_LEEWAY,
) -> bool:
    """True when *token* cannot be used safely at *now*.

    A missing access token is always expiring; a missing expiry is trusted.
    """
    if token.access_token is None:
        return True
    if token.expiry is None:
        return False
    current = now or datetime.now(UTC)
    return token.expiry <= current + leeway


async def exchange_refresh_token(
    token: OAuthToken,
    *,
    http_client: httpx.AsyncClient,
    token_url: str,
    client_id: str,
    client_secret: str,
    scope: str | None = None,
    provider: str = "google",
    now: datetime | None = None,
) -> OAuthToken:
    """Exchange *token*'s refresh token for a new access token.

    Returns a new ``OAuthToken``; the refresh token is carried over unless the
    provider rotated it.

    Raises
    ------
    CalendarTokenRefreshError
        If there is no refresh token or the exchange fails.
    """
    if token.refresh_token is None:
        raise CalendarTokenRefreshError(f"{provider} credential has no refresh_token")

    form = {
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": token.refresh_token,
        "grant_type": "refresh_token",
    }
    if scope is not None:
        form["scope"] = scope

    try:
        response = await http_client.post(
            token_url,
            data=form,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )
    except httpx.HTTPError as exc:
        raise CalendarTokenRefreshError(f"{provider} OAuth token refresh request failed: {exc}") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise CalendarTokenRefreshError(
            f"{provider} OAuth token refresh failed "
            f"({response.status_code}): {safe_error_message(response)}"
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise CalendarTokenRefreshError(f"{provider} OAuth token endpoint returned invalid JSON") from exc

    access_token = _clean(payload.get("access_token")) if isinstance(payload, dict) else None
    if access_token is None:
        raise CalendarTokenRefreshError(
            f"{provider} OAuth token response is missing a non-empty access_token"
        )

    expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
    issued_at = now or datetime.now(UTC)
    return OAuthToken(
        access_token=access_token,
        refresh_token=_clean(payload.get("refresh_token")) or token.refresh_token,
        expiry=issued_at + timedelta(seconds=expires_in),
        scope=_clean(payload.get("scope")) or token.scope,
        token_type=_clean(payload.get("token_type")) or token.token_type,
    )


TokenRefresher = Callable[[OAuthToken], Awaitable[OAuthToken]]
TokenPersister = Callable[[OAuthToken], Awaitable[None]]


@dataclass
class _CredentialSlot:
    token: OAuthToken
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class CredentialRegistry:
    """Shared per-credential state so refreshes are serialized across adapters.

    Keys are usually ``(account_address, provider, email)``.
    """

    def __init__(self) -> None:
        self._slots: dict[Hashable, _CredentialSlot] = {}

    def slot(self, key: Hashable, token: OAuthToken) -> _CredentialSlot:
        existing = self._slots.get(key)
        if existing is None:
            existing = _CredentialSlot(token=token)
            self._slots[key] = existing
        elif _is_newer(token, existing.token):
            existing.token = token
        return existing

    def __len__(self) -> int:
        return len(self._slots)


def _is_newer(candidate: OAuthToken, current: OAuthToken) -> bool:
    if candidate.expiry is None or current.expiry is None:
        return False
    return candidate.expiry > current.expiry


class TokenManager:
    """Hands out usable access tokens, refreshing and persisting when needed."""

    def __init__(
        self,
        token: OAuthToken,
        *,
        refresher: TokenRefresher,
        persister: TokenPersister,
        provider: str,
        registry: CredentialRegistry | None = None,
        key: Hashable | None = None,
        clock: Callable[[], datetime] | None = None,
        leeway: timedelta = DEFAULT_EXPIRY_LEEWAY,
    ) -> None:
        if registry is not None and key is not None:
            self._slot = registry.slot(key, token)
        else:
            self._slot = _CredentialSlot(token=token)
        self._refresher = refresher
        self._persister = persister
        self._provider = provider
        self._clock = clock or (lambda: datetime.now(UTC))
        self._leeway = leeway
        self._metrics = ProviderMetrics(provider)

    @property
    def token(self) -> OAuthToken:
        return self._slot.token

    def _usable(self) -> bool:
        return not is_expiring(self._slot.token, self._clock(), leeway=self._leeway)

    async def get_access_token(self, *, rejected_token: str | None = None) -> str:
        """Return an access token that is not known to be expiring.

        Pass *rejected_token* after the provider answered 401 with it; the token
        is then refreshed unless another caller already replaced it.
        """
        if rejected_token is None and self._usable():
            assert self._slot.token.access_token is not None
            return self._slot.token.access_token

        async with self._slot.lock:
            current = self._slot.token
            if rejected_token is None and self._usable():
                assert current.access_token is not None
                return current.access_token
            if rejected_token is not None and current.access_token not in (None, rejected_token):
                return current.access_token

            await self._refresh(current)
            assert self._slot.token.access_token is not None
            return self._slot.token.access_token

    async def _refresh(self, current: OAuthToken) -> None:
        try:
            refreshed = await self._refresher(current)
        except CalendarTokenRefreshError:
            self._metrics.record_token_refresh("error")
            raise
        self._metrics.record_token_refresh("success")
        self._slot.token = refreshed
        await self._persister(refreshed)
        logger.debug("Refreshed %s access token (expires %s)", self._provider, refreshed.expiry)
