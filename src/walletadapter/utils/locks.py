"""Distributed locking for the treasury loops.

Every loop takes a named, fenced lease from the locker service before it mutates
anything, so that only one worker in the fleet processes a resource at a time.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from walletadapter.clients.locker import Lease, LockerClient
from walletadapter.errors import LockAcquireError, LockReleaseError, ServicesRequestError

logger = logging.getLogger(__name__)

# Lease lengths in milliseconds
SWEEP_LOCK_MS = 600_000
FLOAT_LOCK_MS = 600_000
BATCH_LOCK_MS = 600_000
TRANSACTION_LOCK_MS = 600_000
SMS_DEDUP_LOCK_MS = 3_600_000

SWEEP_LOCK = "sweep"
FLOAT_LOCK = "float"
INSUFFICIENT_FLOAT_SMS_LOCK = "INSUFFICIENT_BALANCE_FLOAT_SEND_SMS"


def sms_dedup_identifier(asset_symbol: str) -> str:
    """Identifier of the hourly insufficient-float SMS de-dup lock for an asset."""
    return f"{INSUFFICIENT_FLOAT_SMS_LOCK}_{asset_symbol}"


class LockCoordinator:
    """Acquire, renew and release leases on prefixed identifiers.

    Example:
        async with locks.hold(SWEEP_LOCK, SWEEP_LOCK_MS):
            # Only one sweeper runs here at a time
            ...
    """

    def __init__(self, client: LockerClient, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    def _identifier(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def acquire(self, name: str, expires_after_ms: int) -> Lease:
        """Take the lease for ``name``.

        Raises:
            LockAcquireError: the lock is held elsewhere or the locker is unreachable
        """
        identifier = self._identifier(name)
        try:
            lease = await self.client.acquire(identifier, expires_after_ms)
        except ServicesRequestError as e:
            logger.info(f"Could not acquire lock {identifier}: {e.message}")
            raise LockAcquireError(f"Could not acquire lock {identifier}: {e.message}") from e

        logger.debug(f"Lock acquired: {identifier} (fence {lease.fence})")
        return lease

    async def renew(self, lease: Lease, expires_after_ms: int) -> Lease:
        try:
            renewed = await self.client.renew(lease.identifier, lease.token, expires_after_ms)
        except ServicesRequestError as e:
            raise LockAcquireError(f"Could not renew lock {lease.identifier}: {e.message}") from e
        logger.debug(f"Lock renewed: {lease.identifier}")
        return renewed

    async def release(self, lease: Lease) -> None:
        try:
            await self.client.release(lease.identifier, lease.token)
        except ServicesRequestError as e:
            raise LockReleaseError(f"Could not release lock {lease.identifier}: {e.message}") from e
        logger.debug(f"Lock released: {lease.identifier}")

    @asynccontextmanager
    async def hold(self, name: str, expires_after_ms: int) -> AsyncGenerator[Lease, None]:
        """Hold ``name`` for the duration of the block and release it on every exit path.

        A failed release is logged; the lease then simply expires.
        """
        lease = await self.acquire(name, expires_after_ms)
        try:
            yield lease
        finally:
            try:
                await self.release(lease)
            except LockReleaseError as e:
                logger.warning(f"{e.message}; lease will expire after {expires_after_ms}ms")
