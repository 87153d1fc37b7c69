"""Entry points for the treasury loops.

Each job opens its own database session, so the scheduler and the HTTP
triggers can run them concurrently. Locking across workers is handled inside
the loops themselves.
"""

import logging
from typing import Callable, Optional

from walletadapter.context import TreasuryContext
from walletadapter.errors import LockAcquireError
from walletadapter.ledger.repository import LedgerRepository
from walletadapter.runner import JobRunner
from walletadapter.ledger.models import Transaction
from walletadapter.services.batch import BatchService, ExternalTransfer, WithdrawalQueue
from walletadapter.services.batch_processor import BatchProcessor, BatchReport
from walletadapter.services.confirmation import ConfirmationResult, ConfirmationService
from walletadapter.services.float_manager import FloatManager
from walletadapter.services.hot_wallet import HotWalletBootstrap
from walletadapter.services.sweeper import Sweeper, SweepReport
from walletadapter.services.withdrawal_dispatcher import DispatchReport, WithdrawalDispatcher

logger = logging.getLogger(__name__)


async def run_float_manager(context: TreasuryContext) -> Optional[list]:
    """Run the float manager once. Returns None if another worker holds the lock."""
    async with context.session_factory() as session:
        manager = FloatManager(
            LedgerRepository(session),
            context.crypto_adapter,
            context.order_book,
            context.key_management,
            context.locks,
            context.cold_wallet,
        )
        try:
            return await manager.run()
        except LockAcquireError:
            logger.info("Float manager already running elsewhere, skipping")
            return None


async def run_sweeper(context: TreasuryContext) -> Optional[SweepReport]:
    """Run the sweeper once. Returns None if another worker holds the lock."""
    async with context.session_factory() as session:
        sweeper = Sweeper(
            LedgerRepository(session),
            context.crypto_adapter,
            context.order_book,
            context.key_management,
            context.locks,
            context.settings,
        )
        try:
            report = await sweeper.run()
        except LockAcquireError:
            logger.info("Sweeper already running elsewhere, skipping")
            return None

    if report.swept or report.skipped:
        logger.info(
            f"Sweep finished: {len(report.swept)} swept, {len(report.fee_funded)} fee funded, "
            f"{len(report.skipped)} skipped"
        )
    return report


def sweep_trigger(
    context: TreasuryContext, runner: Optional[JobRunner]
) -> Optional[Callable[[], object]]:
    if runner is None:
        return None
    return lambda: runner.spawn("sweeper", lambda: run_sweeper(context))


async def run_withdrawal_dispatcher(
    context: TreasuryContext, runner: Optional[JobRunner] = None
) -> DispatchReport:
    """Send queued single withdrawals; a short float starts a sweep on ``runner``."""
    async with context.session_factory() as session:
        dispatcher = WithdrawalDispatcher(
            LedgerRepository(session),
            context.key_management,
            context.crypto_adapter,
            context.locks,
            context.cold_wallet,
            trigger_sweep=sweep_trigger(context, runner),
        )
        return await dispatcher.run()


async def run_batch_processor(
    context: TreasuryContext, runner: Optional[JobRunner] = None
) -> BatchReport:
    async with context.session_factory() as session:
        repo = LedgerRepository(session)
        processor = BatchProcessor(
            repo,
            context.key_management,
            context.crypto_adapter,
            context.locks,
            context.cold_wallet,
            BatchService(repo, wait_seconds=context.settings.batch_wait_seconds),
            broadcast_wait_seconds=context.settings.broadcast_wait_seconds,
            trigger_sweep=sweep_trigger(context, runner),
        )
        return await processor.run()


async def external_transfer(context: TreasuryContext, request: ExternalTransfer) -> Transaction:
    """Queue an on-chain payout of a completed debit."""
    async with context.session_factory() as session:
        repo = LedgerRepository(session)
        queue = WithdrawalQueue(
            repo, BatchService(repo, wait_seconds=context.settings.batch_wait_seconds)
        )
        return await queue.external_transfer(request)


async def confirm_transaction(context: TreasuryContext, transaction_hash: str) -> ConfirmationResult:
    """Settle the withdrawals broadcast under ``transaction_hash``.

    Raises:
        NotFoundError: the hash was never recorded
    """
    async with context.session_factory() as session:
        service = ConfirmationService(LedgerRepository(session), context.crypto_adapter)
        return await service.confirm(transaction_hash)


async def bootstrap_hot_wallets(context: TreasuryContext) -> int:
    async with context.session_factory() as session:
        bootstrap = HotWalletBootstrap(
            LedgerRepository(session),
            context.key_management,
            context.crypto_adapter,
            context.settings.service_id,
        )
        created = await bootstrap.run()
    return len(created)


async def purge_auth_cache(context: TreasuryContext) -> None:
    if context.auth.purge_expired():
        logger.debug("Purged expired auth token")
