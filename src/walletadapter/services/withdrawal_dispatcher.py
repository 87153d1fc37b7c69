"""Single withdrawal dispatcher.

Drains pending queue rows that are not part of a UTXO batch: each is signed and
broadcast from the hot wallet, then recorded against its chain transaction.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from walletadapter.clients.crypto_adapter import CryptoAdapterClient
from walletadapter.clients.key_management import (
    KeyManagementClient,
    ProcessType,
    SignTransactionRequest,
)
from walletadapter.errors import LockAcquireError, ServicesRequestError
from walletadapter.ledger.models import (
    Denomination,
    HotWalletAsset,
    Transaction,
    TransactionQueue,
    TransactionStatus,
)
from walletadapter.ledger.repository import LedgerRepository
from walletadapter.services.confirmation import outcome_of, record_broadcast, terminate_withdrawals
from walletadapter.services.notifications import ColdWalletNotifier
from walletadapter.treasury import to_display_units
from walletadapter.utils.locks import TRANSACTION_LOCK_MS, LockCoordinator

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """What one dispatcher run did, keyed by transaction reference."""

    broadcast: list[str] = field(default_factory=list)
    insufficient_float: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    sweep_triggered: bool = False


class WithdrawalDispatcher:
    """Sends queued single-address withdrawals."""

    def __init__(
        self,
        repo: LedgerRepository,
        key_management: KeyManagementClient,
        crypto_adapter: CryptoAdapterClient,
        locks: LockCoordinator,
        notifier: ColdWalletNotifier,
        trigger_sweep: Optional[Callable[[], object]] = None,
    ):
        self.repo = repo
        self.key_management = key_management
        self.crypto_adapter = crypto_adapter
        self.locks = locks
        self.notifier = notifier
        self.trigger_sweep = trigger_sweep

    async def run(self) -> DispatchReport:
        report = DispatchReport()
        queue = await self.repo.fetch_pending_single_queue()
        if queue:
            logger.info(f"Dispatching {len(queue)} queued withdrawal(s)")

        for queued in queue:
            reference = queued.debit_reference
            try:
                await self.dispatch(queued, report)
            except LockAcquireError:
                report.skipped.append(reference)
            except Exception as e:
                logger.error(f"Withdrawal {reference} failed: {e}")
                report.skipped.append(reference)

        return report

    async def dispatch(self, queued: TransactionQueue, report: DispatchReport) -> None:
        """Send one queue row while holding its transaction lock."""
        async with self.locks.hold(str(queued.transaction_id), TRANSACTION_LOCK_MS):
            transaction = await self.repo.get(Transaction, queued.transaction_id)
            reference = transaction.transaction_reference
            if transaction.transaction_status != TransactionStatus.PENDING.value:
                logger.info(f"Withdrawal {reference} is {transaction.transaction_status}, skipping")
                report.skipped.append(reference)
                return

            hot_wallet = await self.repo.get_by_fields(
                HotWalletAsset, asset_symbol=queued.asset_symbol, network=queued.network
            )
            request = SignTransactionRequest(
                from_address=hot_wallet.address,
                to_address=queued.recipient,
                amount=int(queued.value),
                asset_symbol=queued.asset_symbol,
                network=queued.network,
                memo=queued.memo or "",
                process_type=ProcessType.WITHDRAW,
                reference=reference,
            )

            try:
                result = await self.key_management.sign_and_broadcast(request)
            except ServicesRequestError as e:
                await self.handle_failure(e, queued, transaction, report)
                return

            await record_broadcast(
                self.repo,
                transaction_hash=result.transaction_hash,
                asset_symbol=queued.asset_symbol,
                recipient_address=queued.recipient,
                transaction_ids=[transaction.id],
            )
            report.broadcast.append(reference)

    async def handle_failure(
        self,
        error: ServicesRequestError,
        queued: TransactionQueue,
        transaction: Transaction,
        report: DispatchReport,
    ) -> None:
        reference = transaction.transaction_reference

        if error.is_insufficient_float:
            logger.warning(f"Hot wallet cannot cover {queued.asset_symbol} withdrawal {reference}")
            await self.notifier.notify_insufficient_float(
                queued.asset_symbol, await self._display_amount(queued)
            )
            self.request_sweep(report)
            report.insufficient_float.append(reference)
            return

        if error.is_broadcast_rejected:
            logger.error(f"Withdrawal {reference} rejected on broadcast: {error.message}")
            await terminate_withdrawals(self.repo, [transaction.id])
            report.terminated.append(reference)
            return

        # The signer may have broadcast before failing; ask the chain
        await self.reconcile(queued, transaction, report, error)

    async def reconcile(
        self,
        queued: TransactionQueue,
        transaction: Transaction,
        report: DispatchReport,
        error: ServicesRequestError,
    ) -> None:
        reference = transaction.transaction_reference
        try:
            result = await self.crypto_adapter.get_transaction_status(
                queued.asset_symbol, reference=reference
            )
        except ServicesRequestError as e:
            if not e.is_not_found:
                raise
            logger.warning(
                f"Withdrawal {reference} failed before broadcast ({error.code}), left pending"
            )
            report.skipped.append(reference)
            return

        status = outcome_of(result)
        if status is None:
            report.skipped.append(reference)
            return
        if status == TransactionStatus.TERMINATED:
            await terminate_withdrawals(self.repo, [transaction.id])
            report.terminated.append(reference)
            return

        await record_broadcast(
            self.repo,
            transaction_hash=result.transaction_hash,
            asset_symbol=queued.asset_symbol,
            recipient_address=queued.recipient,
            transaction_ids=[transaction.id],
            status=status,
            result=result,
        )
        report.broadcast.append(reference)

    async def _display_amount(self, queued: TransactionQueue) -> Decimal:
        denomination = await self.repo.find_by_fields(Denomination, asset_symbol=queued.asset_symbol)
        decimals = denomination.decimals if denomination is not None else 0
        return to_display_units(queued.value, decimals)
    def request_sweep(self, report: DispatchReport) -> None:
        """Start a sweep to refill the float, at most once per run."""
        if report.sweep_triggered or self.trigger_sweep is None:
            return
        logger.info("Hot wallet float is short, starting a sweep")
        self.trigger_sweep()
        report.sweep_triggered = True
