"""Process-wide wiring of settings, database and downstream clients."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walletadapter.clients import (
    AuthTokenCache,
    CryptoAdapterClient,
    KeyManagementClient,
    LockerClient,
    NotifierClient,
    OrderBookClient,
)
from walletadapter.config import Settings, get_settings
from walletadapter.ledger.database import get_session_factory
from walletadapter.services.notifications import ColdWalletNotifier
from walletadapter.utils.locks import LockCoordinator


@dataclass
class TreasuryContext:
    """Everything a treasury job needs besides its own database session."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    auth: AuthTokenCache
    key_management: KeyManagementClient
    crypto_adapter: CryptoAdapterClient
    order_book: OrderBookClient
    notifier: NotifierClient
    locks: LockCoordinator

    @property
    def cold_wallet(self) -> ColdWalletNotifier:
        return ColdWalletNotifier(self.notifier, self.locks, self.settings)


def build_context(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> TreasuryContext:
    """Create the clients for the configured services.

    All clients share one auth token cache.
    """
    settings = settings or get_settings()
    timeout = settings.request_timeout

    auth = AuthTokenCache(
        settings.authentication_service_url,
        settings.service_id,
        settings.service_key,
        default_ttl=settings.expire_cache_duration,
        timeout=timeout,
    )
    locker = LockerClient(settings.locker_service_url, auth, timeout=timeout)

    return TreasuryContext(
        settings=settings,
        session_factory=session_factory or get_session_factory(),
        auth=auth,
        key_management=KeyManagementClient(
            settings.key_management_url, auth, timeout=timeout, sign_timeout=settings.sign_timeout
        ),
        crypto_adapter=CryptoAdapterClient(settings.crypto_adapter_url, auth, timeout=timeout),
        order_book=OrderBookClient(settings.order_book_url, auth, timeout=timeout),
        notifier=NotifierClient(settings.notification_service_url, auth, timeout=timeout),
        locks=LockCoordinator(locker, prefix=settings.locker_prefix),
    )
