"""Ledger module: treasury tables and the repository over them."""

from walletadapter.ledger.database import init_db
from walletadapter.ledger.models import (
    BatchRequest,
    BatchStatus,
    ChainTransaction,
    Denomination,
    FloatManagerParam,
    FloatManagerRun,
    HotWalletAsset,
    Network,
    Transaction,
    TransactionQueue,
    TransactionStatus,
    TransactionTag,
    UserAddress,
    UserAsset,
)
from walletadapter.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "BatchRequest",
    "ChainTransaction",
    "Denomination",
    "FloatManagerParam",
    "FloatManagerRun",
    "HotWalletAsset",
    "Network",
    "Transaction",
    "TransactionQueue",
    "UserAddress",
    "UserAsset",
    # Enums
    "BatchStatus",
    "TransactionStatus",
    "TransactionTag",
    # Database
    "init_db",
    "LedgerRepository",
]
