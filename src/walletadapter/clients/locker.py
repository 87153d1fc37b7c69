"""Distributed locker service client."""

from dataclasses import dataclass
from typing import Optional

from walletadapter.clients.base import ServiceClient


@dataclass
class Lease:
    """A held lock. ``token`` is required to renew or release it."""

    identifier: str
    token: str
    fence: int = 0
    expires_at: Optional[str] = None


class LockerClient(ServiceClient):
    """Client for the locker service.

    The service rejects an acquire for an identifier somebody else holds with a
    non-2xx response, which surfaces as ServicesRequestError.
    """

    service_name = "locker"

    async def acquire(self, identifier: str, expires_after_ms: int, timeout_ms: int = 0) -> Lease:
        data = await self._request(
            "POST",
            "/locks/acquire",
            json={"identifier": identifier, "expiresAfter": expires_after_ms, "timeout": timeout_ms},
        )
        return self._lease(identifier, data)

    async def renew(self, identifier: str, token: str, expires_after_ms: int) -> Lease:
        data = await self._request(
            "POST",
            "/locks/renew",
            json={"identifier": identifier, "token": token, "expiresAfter": expires_after_ms},
        )
        return self._lease(identifier, data, token)

    async def release(self, identifier: str, token: str) -> None:
        await self._request(
            "POST", "/locks/release", json={"identifier": identifier, "token": token}
        )

    @staticmethod
    def _lease(identifier: str, data: dict, token: str = "") -> Lease:
        return Lease(
            identifier=data.get("identifier", identifier),
            token=data.get("token") or token,
            fence=int(data.get("fence") or 0),
            expires_at=data.get("expiresAt"),
        )
