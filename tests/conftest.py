"""Pytest configuration and fixtures."""

import os
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["SENTRY_ENVIRONMENT"] = "staging"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"

from walletadapter.clients import (
    CryptoAdapterClient,
    KeyManagementClient,
    NotifierClient,
    OrderBookClient,
)
from walletadapter.clients.locker import Lease
from walletadapter.config import Settings
from walletadapter.errors import ErrorCode, ServicesRequestError
from walletadapter.ledger.database import init_db
from walletadapter.ledger.models import (
    ChainTransaction,
    Denomination,
    FloatManagerParam,
    HotWalletAsset,
    Network,
    Transaction,
    TransactionStatus,
    TransactionTag,
    UserAsset,
    utcnow,
)
from walletadapter.ledger.repository import LedgerRepository
from walletadapter.services.notifications import ColdWalletNotifier
from walletadapter.utils.locks import LockCoordinator


class InMemoryLocker:
    """Stands in for the locker service: one holder per identifier, no expiry."""

    def __init__(self):
        self.held: dict[str, str] = {}
        self.acquired: list[str] = []
        self._fence = 0

    async def acquire(self, identifier: str, expires_after_ms: int, timeout_ms: int = 0) -> Lease:
        if identifier in self.held:
            raise ServicesRequestError(
                f"{identifier} is locked", code=ErrorCode.LOCK_ERR, status_code=409
            )
        self._fence += 1
        token = uuid.uuid4().hex
        self.held[identifier] = token
        self.acquired.append(identifier)
        return Lease(identifier=identifier, token=token, fence=self._fence)

    async def renew(self, identifier: str, token: str, expires_after_ms: int) -> Lease:
        if self.held.get(identifier) != token:
            raise ServicesRequestError("lease lost", code=ErrorCode.LOCK_ERR, status_code=409)
        return Lease(identifier=identifier, token=token, fence=self._fence)

    async def release(self, identifier: str, token: str) -> None:
        if self.held.get(identifier) != token:
            raise ServicesRequestError("lease lost", code=ErrorCode.LOCK_ERR, status_code=409)
        del self.held[identifier]


# Scenario float parameters
FLOAT_PARAMS = {
    "min_percent_max_user_balance": Decimal("0.1"),
    "max_percent_max_user_balance": Decimal("0.3"),
    "min_percent_total_user_balance": Decimal("0.075"),
    "average_percent_total_user_balance": Decimal("0.2"),
    "max_percent_total_user_balance": Decimal("0.2"),
    "percent_minimum_trigger_level": Decimal("0.8"),
    "percent_maximum_trigger_level": Decimal("0.3"),
}


class Seeder:
    """Creates committed ledger rows for tests."""

    def __init__(self, repo: LedgerRepository):
        self.repo = repo

    async def _add(self, entity):
        async with self.repo.transaction():
            await self.repo.create(entity)
        return entity

    async def denomination(self, asset_symbol: str, decimals: int = 0, **fields) -> Denomination:
        return await self._add(Denomination(asset_symbol=asset_symbol, decimals=decimals, **fields))

    async def network(self, asset_symbol: str, network: str = "", **fields) -> Network:
        return await self._add(Network(asset_symbol=asset_symbol, network=network, **fields))

    async def hot_wallet(self, asset_symbol: str, address: str, network: str = "") -> HotWalletAsset:
        return await self._add(
            HotWalletAsset(address=address, asset_symbol=asset_symbol, network=network)
        )

    async def float_params(self, asset_symbol: str, network: str = "", **overrides) -> FloatManagerParam:
        values = {**FLOAT_PARAMS, **overrides}
        return await self._add(
            FloatManagerParam(asset_symbol=asset_symbol, network=network, **values)
        )

    async def user_asset(self, denomination: Denomination, balance: Decimal) -> UserAsset:
        return await self._add(
            UserAsset(
                user_id=uuid.uuid4(),
                denomination_id=denomination.id,
                asset_symbol=denomination.asset_symbol,
                decimals=denomination.decimals,
                available_balance=Decimal(balance),
            )
        )

    async def transaction(
        self,
        asset_symbol: str,
        tag: TransactionTag,
        value: Decimal,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        created_at: Optional[datetime] = None,
        **fields,
    ) -> Transaction:
        reference = uuid.uuid4().hex
        return await self._add(
            Transaction(
                transaction_reference=reference,
                payment_reference=f"pay-{reference}",
                value=Decimal(value),
                transaction_tag=tag.value,
                transaction_status=status.value,
                asset_symbol=asset_symbol,
                created_at=created_at or utcnow() - timedelta(minutes=1),
                **fields,
            )
        )

    async def deposit(
        self, asset_symbol: str, value: Decimal, address: str, network: str = ""
    ) -> Transaction:
        """Completed, unswept deposit received on ``address``."""
        chain_tx = await self._add(
            ChainTransaction(
                transaction_hash=uuid.uuid4().hex,
                recipient_address=address,
                asset_symbol=asset_symbol,
                status=True,
            )
        )
        return await self.transaction(
            asset_symbol,
            TransactionTag.DEPOSIT,
            value,
            network=network,
            on_chain_tx_id=chain_tx.id,
        )


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest_asyncio.fixture
async def seed(ledger_repo: LedgerRepository) -> Seeder:
    return Seeder(ledger_repo)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        sentry_environment="staging",
        locker_prefix="test-",
        cold_wallet_email="cold@example.com",
        cold_wallet_email_template_id="tpl-fund",
        cold_wallet_sms_number="+2348000000000",
    )


@pytest.fixture
def locker() -> InMemoryLocker:
    return InMemoryLocker()


@pytest.fixture
def locks(locker: InMemoryLocker, settings: Settings) -> LockCoordinator:
    return LockCoordinator(locker, prefix=settings.locker_prefix)


@pytest.fixture
def key_management():
    return AsyncMock(spec=KeyManagementClient)


@pytest.fixture
def crypto_adapter():
    return AsyncMock(spec=CryptoAdapterClient)


@pytest.fixture
def order_book():
    return AsyncMock(spec=OrderBookClient)


@pytest.fixture
def notifier_client():
    return AsyncMock(spec=NotifierClient)


@pytest.fixture
def cold_wallet(notifier_client, locks, settings) -> ColdWalletNotifier:
    return ColdWalletNotifier(notifier_client, locks, settings)
