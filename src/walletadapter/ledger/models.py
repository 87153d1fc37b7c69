"""SQLAlchemy models for the ledger."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp used for every created/updated column."""
    return datetime.utcnow()


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TimestampedModel(Base):
    """Common id and timestamp columns."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Activity(str, Enum):
    """Deposit/withdrawal activity flag for an asset."""

    ACTIVE = "ACTIVE"
    NONE = "NONE"


class TransactionType(str, Enum):
    OFFCHAIN = "OFFCHAIN"
    ONCHAIN = "ONCHAIN"


class TransactionStatus(str, Enum):
    """Lifecycle of a ledger transaction and its queue row."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    TERMINATED = "TERMINATED"
    REVERSED = "REVERSED"


class TransactionTag(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    TRANSFER = "TRANSFER"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


class ProcessingType(str, Enum):
    SINGLE = "SINGLE"
    BATCH = "BATCH"


class BatchStatus(str, Enum):
    """Status of a UTXO withdrawal batch.

    Transitions: WAIT_MODE -> RETRY_MODE -> PROCESSING -> COMPLETED | TERMINATED
    """

    WAIT_MODE = "WAIT_MODE"
    RETRY_MODE = "RETRY_MODE"
    START_MODE = "START_MODE"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    TERMINATED = "TERMINATED"


class AddressType(str, Enum):
    LEGACY = "Legacy"
    SEGWIT = "Segwit"
    NATIVE_SEGWIT = "Native"


class Denomination(TimestampedModel):
    """Supported crypto asset."""

    __tablename__ = "denominations"

    name: Mapped[str] = mapped_column(String(100), default="")
    asset_symbol: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
    coin_type: Mapped[int] = mapped_column(Integer, default=0)
    is_token: Mapped[bool] = mapped_column(Boolean, default=False)
    main_coin_asset_symbol: Mapped[str] = mapped_column(String(30), default="")
    default_network: Mapped[str] = mapped_column(String(50), default="")
    sweep_fee: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    minimum_sweepable: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    requires_memo: Mapped[bool] = mapped_column(Boolean, default=False)
    is_batchable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_multi_addresses: Mapped[bool] = mapped_column(Boolean, default=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    deposit_activity: Mapped[str] = mapped_column(String(10), default=Activity.ACTIVE.value)
    withdraw_activity: Mapped[str] = mapped_column(String(10), default=Activity.ACTIVE.value)

    @property
    def main_coin(self) -> str:
        """Symbol of the coin that pays fees for this asset."""
        return self.main_coin_asset_symbol or self.asset_symbol


class Network(TimestampedModel):
    """A specific chain variant of a denomination (e.g. USDT on ERC20)."""

    __tablename__ = "networks"
    __table_args__ = (Index("ix_networks_asset_network", "asset_symbol", "network", unique=True),)

    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), nullable=False)
    native_asset: Mapped[str] = mapped_column(String(30), default="")
    native_decimals: Mapped[int] = mapped_column(Integer, default=8)
    coin_type: Mapped[int] = mapped_column(Integer, default=0)
    is_token: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_memo: Mapped[bool] = mapped_column(Boolean, default=False)
    is_batchable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_multi_addresses: Mapped[bool] = mapped_column(Boolean, default=False)
    sweep_fee: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    minimum_sweepable: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    deposit_activity: Mapped[str] = mapped_column(String(10), default=Activity.ACTIVE.value)
    withdraw_activity: Mapped[str] = mapped_column(String(10), default=Activity.ACTIVE.value)


class HotWalletAsset(TimestampedModel):
    """Hot wallet (float) address for one asset on one network.

    Created at bootstrap and never deleted. The last-seen deposit/withdrawal
    timestamps only move forward.
    """

    __tablename__ = "hot_wallet_assets"
    __table_args__ = (
        Index("ix_hot_wallet_assets_asset_network", "asset_symbol", "network", unique=True),
    )

    address: Mapped[str] = mapped_column(String(100), nullable=False)
    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    is_disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    reserved_balance: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    last_deposit_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_withdrawal_created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )


class UserAsset(TimestampedModel):
    """User balance for one denomination (display units)."""

    __tablename__ = "user_assets"
    __table_args__ = (
        Index("ix_user_assets_user_denomination", "user_id", "denomination_id", unique=True),
        CheckConstraint("available_balance >= 0", name="ck_user_assets_available_balance"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    denomination_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, default=8)
    available_balance: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))


class UserAddress(TimestampedModel):
    """Deposit address of a user asset.

    v1 rows carry a per-user ``address``; v2 rows point at a shared
    ``v2_address`` and are told apart by ``memo``.
    """

    __tablename__ = "user_addresses"
    __table_args__ = (Index("ix_user_addresses_v2_address_memo", "v2_address", "memo"),)

    user_asset_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(150), default="", index=True)
    address_type: Mapped[str] = mapped_column(String(20), default=AddressType.LEGACY.value)
    v2_address: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    network: Mapped[str] = mapped_column(String(50), default="")
    is_primary_address: Mapped[bool] = mapped_column(Boolean, default=True)
    sweep_count: Mapped[int] = mapped_column(Integer, default=0)


class UserMemo(TimestampedModel):
    """Globally unique 9-digit memo assigned to a user for shared addresses."""

    __tablename__ = "user_memos"
    __table_args__ = (Index("ix_user_memos_memo", "memo", unique=True),)

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    memo: Mapped[str] = mapped_column(String(9), nullable=False)
    is_primary_address: Mapped[bool] = mapped_column(Boolean, default=True)


class SharedAddress(TimestampedModel):
    """System-owned deposit address shared by all users of a v2 asset."""

    __tablename__ = "shared_addresses"
    __table_args__ = (
        Index("ix_shared_addresses_asset_network", "asset_symbol", "network", unique=True),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    address: Mapped[str] = mapped_column(String(150), nullable=False)
    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), default="")
    coin_type: Mapped[int] = mapped_column(Integer, default=0)


class Transaction(TimestampedModel):
    """Ledger fact for a single movement of value (display units)."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index(
            "ix_transactions_tag_status_swept",
            "transaction_tag",
            "transaction_status",
            "swept_status",
        ),
        Index("ix_transactions_asset_created", "asset_symbol", "created_at"),
    )

    initiator_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    recipient_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    transaction_reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    previous_balance: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    available_balance: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    transaction_type: Mapped[str] = mapped_column(
        String(20), default=TransactionType.OFFCHAIN.value
    )
    transaction_status: Mapped[str] = mapped_column(
        String(20), default=TransactionStatus.PENDING.value
    )
    transaction_tag: Mapped[str] = mapped_column(String(20), nullable=False)
    processing_type: Mapped[str] = mapped_column(String(10), default=ProcessingType.SINGLE.value)
    debit_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    on_chain_tx_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    swept_status: Mapped[bool] = mapped_column(Boolean, default=False)
    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), default="")
    memo: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    @property
    def signed_value(self) -> Decimal:
        """Value as it affects the user balance (negative for outflows)."""
        if self.transaction_tag in (TransactionTag.DEBIT.value, TransactionTag.WITHDRAW.value):
            return -self.value
        return self.value


class TransactionQueue(TimestampedModel):
    """Withdrawal intent waiting to be dispatched on-chain (base units)."""

    __tablename__ = "transaction_queues"
    __table_args__ = (
        Index("ix_transaction_queues_batch_status", "batch_id", "transaction_status"),
    )

    sender: Mapped[str] = mapped_column(String(150), default="")
    recipient: Mapped[str] = mapped_column(String(150), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), default="")
    debit_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    transaction_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    transaction_status: Mapped[str] = mapped_column(
        String(20), default=TransactionStatus.PENDING.value
    )


class BatchRequest(TimestampedModel):
    """UTXO withdrawal batch for one asset/network."""

    __tablename__ = "batch_requests"
    __table_args__ = (
        Index("ix_batch_requests_status_asset", "status", "asset_symbol"),
        # At most one open batch per asset and network
        Index(
            "ux_batch_requests_waiting",
            "asset_symbol",
            "network",
            unique=True,
            sqlite_where=text("status = 'WAIT_MODE'"),
            postgresql_where=text("status = 'WAIT_MODE'"),
        ),
    )

    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), default="")
    status: Mapped[str] = mapped_column(String(20), default=BatchStatus.WAIT_MODE.value)
    date_of_processing: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    date_completed: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    no_of_records: Mapped[int] = mapped_column(Integer, default=0)


class ChainTransaction(TimestampedModel):
    """Broadcast on-chain transaction. Created only once a hash is known."""

    __tablename__ = "chain_transactions"

    transaction_hash: Mapped[str] = mapped_column(String(150), unique=True, nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(150), default="")
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    status: Mapped[bool] = mapped_column(Boolean, default=False)
    block_height: Mapped[int] = mapped_column(Integer, default=0)
    transaction_fee: Mapped[str] = mapped_column(String(100), default="0")
    asset_symbol: Mapped[str] = mapped_column(String(30), default="")


class FloatManagerParam(TimestampedModel):
    """Float band tuning for one asset/network. All values are fractions in [0, 1]."""

    __tablename__ = "float_manager_params"
    __table_args__ = (
        Index("ix_float_manager_params_asset_network", "asset_symbol", "network", unique=True),
    )

    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), default="")
    min_percent_max_user_balance: Mapped[Decimal] = mapped_column(Numeric(10, 6))
    max_percent_max_user_balance: Mapped[Decimal] = mapped_column(Numeric(10, 6))
    min_percent_total_user_balance: Mapped[Decimal] = mapped_column(Numeric(10, 6))
    average_percent_total_user_balance: Mapped[Decimal] = mapped_column(Numeric(10, 6))
    max_percent_total_user_balance: Mapped[Decimal] = mapped_column(Numeric(10, 6))
    percent_minimum_trigger_level: Mapped[Decimal] = mapped_column(Numeric(10, 6))
    percent_maximum_trigger_level: Mapped[Decimal] = mapped_column(Numeric(10, 6))


class FloatManagerRun(TimestampedModel):
    """Append-only audit row written for every asset on every float run (base units)."""

    __tablename__ = "float_manager_runs"
    __table_args__ = (Index("ix_float_manager_runs_asset_created", "asset_symbol", "created_at"),)

    asset_symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    network: Mapped[str] = mapped_column(String(50), default="")
    total_user_balance: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    deposit_sum: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    withdrawal_sum: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    float_on_chain_balance: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    minimum_balance: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    maximum_balance: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    deficit: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    surplus: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    reserved_balance: Mapped[Decimal] = mapped_column(Numeric(78, 0), default=Decimal("0"))
    action: Mapped[str] = mapped_column(Text, default="")
    fund_email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    last_run_time: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
