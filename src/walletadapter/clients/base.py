"""Shared HTTP plumbing for downstream service clients.

Every client speaks JSON over httpx and authenticates with a service token
obtained from the authentication service. Failures always surface as
ServicesRequestError with the downstream code preserved.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from walletadapter.errors import ErrorCode, ServicesRequestError
from walletadapter.ledger.models import utcnow

logger = logging.getLogger(__name__)

AUTH_HEADER = "x-auth-token"


def _decode_error(response: httpx.Response) -> ServicesRequestError:
    """Build a ServicesRequestError from a non-2xx downstream response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = body.get("code") or ErrorCode.SERVER_ERR.value
    message = body.get("message") or response.text or f"HTTP {response.status_code}"
    return ServicesRequestError(
        message,
        code=str(code),
        status_code=body.get("statusCode") or response.status_code,
        data=body.get("data"),
    )


async def send_request(
    method: str,
    url: str,
    *,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, turning transport failures into ServicesRequestError."""
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ServicesRequestError(
            f"Request to {url} timed out after {timeout}s",
            code=ErrorCode.TIMEOUT_ERR,
            status_code=504,
        ) from e
    except httpx.HTTPError as e:
        raise ServicesRequestError(
            f"Request to {url} failed: {e}",
            code=ErrorCode.SERVER_ERR,
            status_code=502,
        ) from e


@dataclass
class CachedToken:
    """Service token and the moment it stops being valid."""

    value: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class AuthTokenCache:
    """Process-local cache for the service auth token.

    Readers always see either the previous or a freshly issued token. A refresh
    runs under a lock so concurrent 401s trigger a single round trip.
    """

    TOKEN_PATH = "/services/token"

    def __init__(
        self,
        base_url: str,
        service_id: str,
        service_key: str,
        default_ttl: int = 3600,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_id = service_id
        self.service_key = service_key
        self.default_ttl = default_ttl
        self.timeout = timeout
        self._transport = transport
        self._token: Optional[CachedToken] = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        """Return a valid token, fetching one if the cache is empty or expired."""
        token = self._token
        if token is not None and not token.is_expired():
            return token.value
        return await self.refresh(stale=token.value if token else None)

    async def refresh(self, stale: Optional[str] = None) -> str:
        """Fetch a new token unless another caller already replaced ``stale``."""
        async with self._lock:
            current = self._token
            if current is not None and current.value != stale and not current.is_expired():
                return current.value

            self._token = await self._fetch()
            logger.debug(f"Auth token refreshed, valid until {self._token.expires_at}")
            return self._token.value

    def invalidate(self, token: str) -> None:
        """Drop the cached token if it is still the one given."""
        if self._token is not None and self._token.value == token:
            self._token = None

    def purge_expired(self) -> bool:
        """Remove an expired token from the cache. Returns True if one was removed."""
        if self._token is not None and self._token.is_expired():
            self._token = None
            return True
        return False

    async def _fetch(self) -> CachedToken:
        response = await send_request(
            "POST",
            f"{self.base_url}{self.TOKEN_PATH}",
            timeout=self.timeout,
            transport=self._transport,
            auth=(self.service_id, self.service_key),
        )
        if response.status_code >= 400:
            raise _decode_error(response)

        data = response.json()
        value = data.get("token")
        if not value:
            raise ServicesRequestError(
                "Authentication service returned no token",
                code=ErrorCode.SERVER_ERR,
                status_code=502,
            )
        return CachedToken(value=value, expires_at=self._parse_expiry(data.get("expiresAt")))

    def _parse_expiry(self, raw: Optional[str]) -> datetime:
        if raw:
            try:
                parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
                if parsed.tzinfo is not None:
                    parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
                return parsed
            except ValueError:
                logger.warning(f"Unparseable token expiry {raw!r}, using default lifetime")
        return utcnow() + timedelta(seconds=self.default_ttl)


class ServiceClient:
    """Base class for authenticated JSON clients."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        auth: AuthTokenCache,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Send an authenticated request and return the decoded JSON body.

        A 401 invalidates the cached token and retries once with a fresh one.
        """
        url = f"{self.base_url}{path}"
        token = await self.auth.get_token()

        for attempt in range(2):
            response = await send_request(
                method,
                url,
                timeout=timeout or self.timeout,
                transport=self._transport,
                json=json,
                params=params,
                headers={AUTH_HEADER: token},
            )
            if response.status_code == 401 and attempt == 0:
                logger.info(f"{self.service_name} rejected auth token, refreshing")
                self.auth.invalidate(token)
                token = await self.auth.refresh(stale=token)
                continue
            break

        if response.status_code >= 400:
            error = _decode_error(response)
            logger.warning(
                f"{self.service_name} {method} {path} failed: "
                f"{error.code} ({error.status_code}) {error.message}"
            )
            raise error

        if not response.content:
            return {}
        body = response.json()
        # Some services wrap payloads in the common envelope
        if isinstance(body, dict) and "data" in body and "success" in body:
            return body["data"] or {}
        return body
