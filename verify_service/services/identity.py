"""
Client for the external Identity Provider.

The provider validates a bearer credential and returns the user it belongs
to (GET {base}/auth/v1/user). Its error text is mapped onto the gate's
credential reasons.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import httpx

from verify_service.errors import (
    CredentialError,
    ServerMisconfigured,
    Timeout,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: uuid.UUID
    email: str
    email_confirmed_at: datetime | None = None
    is_admin: bool = False


class IdentityProvider(Protocol):
    async def get_user(self, bearer_token: str) -> Identity: ...


def _parse_ts(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _is_admin(data: dict) -> bool:
    for key in ("user_metadata", "app_metadata"):
        meta = data.get(key) or {}
        if meta.get("is_admin") is True or meta.get("role") == "admin":
            return True
    return False


class HttpIdentityProvider:
    def __init__(
        self,
        base_url: str | None,
        api_key: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = str(base_url).rstrip("/") if base_url else None
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def get_user(self, bearer_token: str) -> Identity:
        if not self._base_url:
            raise ServerMisconfigured("IDENTITY_PROVIDER_URL is not configured")

        headers = {"Authorization": f"Bearer {bearer_token}"}
        if self._api_key:
            headers["apikey"] = self._api_key

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(f"{self._base_url}/auth/v1/user", headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning(f"Identity provider timed out: {exc}")
            raise Timeout("Identity provider did not respond in time") from exc
        except httpx.TransportError as exc:
            logger.warning(f"Identity provider unreachable: {exc}")
            raise UpstreamUnavailable() from exc

        if resp.status_code in (401, 403):
            text = resp.text.lower()
            reason = "token_expired" if "expired" in text else "invalid_token"
            raise CredentialError(reason)
        if resp.status_code >= 500:
            logger.warning(f"Identity provider error {resp.status_code}: {resp.text}")
            raise UpstreamUnavailable()
        if resp.status_code != 200:
            raise CredentialError("invalid_token")

        try:
            data = resp.json()
            return Identity(
                id=uuid.UUID(str(data["id"])),
                email=str(data.get("email") or "").lower(),
                email_confirmed_at=_parse_ts(data.get("email_confirmed_at")),
                is_admin=_is_admin(data),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Identity provider returned an unusable user: {exc}")
            raise UpstreamUnavailable() from exc
