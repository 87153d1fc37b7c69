"""Treasury loops and the ledger services they share."""

from walletadapter.services.batch import BatchService, WithdrawalQueue
from walletadapter.services.batch_processor import BatchProcessor
from walletadapter.services.confirmation import ConfirmationService
from walletadapter.services.float_manager import FloatManager
from walletadapter.services.hot_wallet import HotWalletBootstrap
from walletadapter.services.notifications import ColdWalletNotifier
from walletadapter.services.sweeper import Sweeper
from walletadapter.services.withdrawal_dispatcher import WithdrawalDispatcher

__all__ = [
    "BatchProcessor",
    "BatchService",
    "ColdWalletNotifier",
    "ConfirmationService",
    "FloatManager",
    "HotWalletBootstrap",
    "Sweeper",
    "WithdrawalDispatcher",
    "WithdrawalQueue",
]
