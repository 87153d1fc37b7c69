"""UTXO batch withdrawal processor.

Batches move WAIT_MODE -> RETRY_MODE -> PROCESSING -> COMPLETED | TERMINATED.
A batch is switched to RETRY_MODE before it is broadcast, so a crash between
broadcast and bookkeeping leaves a RETRY_MODE batch without a chain transaction.
The next run asks the crypto adapter whether anything was broadcast under the
batch reference and records it instead of signing again.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional

from walletadapter.clients.crypto_adapter import CryptoAdapterClient
from walletadapter.clients.key_management import (
    BatchRecipient,
    KeyManagementClient,
    ProcessType,
    SignBatchRequest,
)
from walletadapter.errors import LockAcquireError, ServicesRequestError
from walletadapter.ledger.models import (
    BatchRequest,
    BatchStatus,
    ChainTransaction,
    Denomination,
    HotWalletAsset,
    TransactionStatus,
    utcnow,
)
from walletadapter.ledger.repository import LedgerRepository
from walletadapter.services.batch import BatchService
from walletadapter.services.confirmation import (
    ConfirmationService,
    outcome_of,
    record_broadcast,
    terminate_withdrawals,
)
from walletadapter.services.notifications import ColdWalletNotifier
from walletadapter.treasury import to_display_units
from walletadapter.utils.locks import BATCH_LOCK_MS, LockCoordinator

logger = logging.getLogger(__name__)

ACTIVE_BATCH_STATUSES = (BatchStatus.WAIT_MODE, BatchStatus.RETRY_MODE, BatchStatus.PROCESSING)


@dataclass
class BatchReport:
    """Outcome per batch id for one run."""

    broadcast: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    confirmed: list[str] = field(default_factory=list)
    insufficient_float: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    sweep_triggered: bool = False


class BatchProcessor:
    """Drives UTXO withdrawal batches through sign, broadcast and confirmation."""

    def __init__(
        self,
        repo: LedgerRepository,
        key_management: KeyManagementClient,
        crypto_adapter: CryptoAdapterClient,
        locks: LockCoordinator,
        notifier: ColdWalletNotifier,
        batches: BatchService,
        broadcast_wait_seconds: int = 60,
        trigger_sweep: Optional[Callable[[], object]] = None,
    ):
        self.repo = repo
        self.key_management = key_management
        self.crypto_adapter = crypto_adapter
        self.locks = locks
        self.notifier = notifier
        self.batches = batches
        self.broadcast_wait_seconds = broadcast_wait_seconds
        self.trigger_sweep = trigger_sweep

    async def run(self) -> BatchReport:
        report = BatchReport()
        active = await self.repo.fetch_active_batches(ACTIVE_BATCH_STATUSES)

        for batch in active:
            batch_id = str(batch.id)
            try:
                async with self.locks.hold(batch_id, BATCH_LOCK_MS):
                    await self.process(batch, report)
            except LockAcquireError:
                report.skipped.append(batch_id)
            except Exception as e:
                logger.error(f"Batch {batch_id} failed: {e}")
                report.skipped.append(batch_id)

        return report

    async def process(self, batch: BatchRequest, report: BatchReport) -> None:
        """Advance one batch by a single step."""
        if batch.status == BatchStatus.WAIT_MODE.value:
            if not self.batches.can_process(batch):
                logger.debug(f"Batch {batch.id} still open for additions")
                report.skipped.append(str(batch.id))
                return
            await self.send(batch, report)
        elif batch.status == BatchStatus.RETRY_MODE.value:
            await self.retry(batch, report)
        elif batch.status == BatchStatus.PROCESSING.value:
            await self.confirm(batch, report)

    async def send(self, batch: BatchRequest, report: BatchReport) -> None:
        """Sign and broadcast every pending row of the batch in one transaction."""
        batch_id = str(batch.id)
        queue = await self.repo.fetch_batch_queue(batch.id)
        if not queue:
            logger.debug(f"Batch {batch_id} has no pending withdrawals")
            report.skipped.append(batch_id)
            return

        hot_wallet = await self.repo.get_by_fields(
            HotWalletAsset, asset_symbol=batch.asset_symbol, network=batch.network
        )

        # Close the batch before broadcasting so a crash here is recoverable
        async with self.repo.transaction():
            await self.repo.update(
                batch,
                status=BatchStatus.RETRY_MODE.value,
                no_of_records=len(queue),
                date_of_processing=utcnow(),
            )

        request = SignBatchRequest(
            asset_symbol=batch.asset_symbol,
            network=batch.network,
            change_address=hot_wallet.address,
            origins=[hot_wallet.address],
            recipients=[BatchRecipient(address=q.recipient, value=int(q.value)) for q in queue],
            is_sweep=False,
            process_type=ProcessType.WITHDRAW,
            reference=batch_id,
        )
        transaction_ids = [q.transaction_id for q in queue]

        try:
            result = await self.key_management.sign_batch_and_broadcast(request)
        except ServicesRequestError as e:
            if e.is_insufficient_float:
                total = sum((Decimal(q.value) for q in queue), Decimal("0"))
                await self.notifier.notify_insufficient_float(
                    batch.asset_symbol, await self._display_amount(batch.asset_symbol, total)
                )
                self.request_sweep(report)
                report.insufficient_float.append(batch_id)
                return
            if e.is_broadcast_rejected:
                logger.error(f"Batch {batch_id} rejected on broadcast: {e.message}")
                await terminate_withdrawals(self.repo, transaction_ids, batch)
                report.terminated.append(batch_id)
                return
            raise

        await record_broadcast(
            self.repo,
            transaction_hash=result.transaction_hash,
            asset_symbol=batch.asset_symbol,
            transaction_ids=transaction_ids,
            batch=batch,
        )
        report.broadcast.append(batch_id)

    async def retry(self, batch: BatchRequest, report: BatchReport) -> None:
        """Recover a batch that may have been broadcast without being recorded."""
        batch_id = str(batch.id)
        existing = await self.repo.find_chain_transaction_for_batch(batch.id)
        if existing is not None:
            queue = await self.repo.fetch_batch_queue(batch.id, TransactionStatus.PENDING)
            await record_broadcast(
                self.repo,
                transaction_hash=existing.transaction_hash,
                asset_symbol=batch.asset_symbol,
                transaction_ids=[q.transaction_id for q in queue],
                batch=batch,
            )
            report.recovered.append(batch_id)
            return

        try:
            result = await self.crypto_adapter.get_transaction_status(
                batch.asset_symbol, reference=batch_id
            )
        except ServicesRequestError as e:
            if not e.is_not_found:
                raise
            logger.info(f"Batch {batch_id} was never broadcast, sending again")
            await self.send(batch, report)
            return

        status = outcome_of(result)
        if status is None:
            logger.info(f"Batch {batch_id} broadcast pending without a hash, waiting")
            report.skipped.append(batch_id)
            return

        queue = await self.repo.fetch_batch_queue(batch.id, TransactionStatus.PENDING)
        transaction_ids = [q.transaction_id for q in queue]
        if status == TransactionStatus.TERMINATED:
            logger.warning(f"Batch {batch_id} failed on chain")
            async with self.repo.transaction():
                await self.repo.update_or_create(
                    ChainTransaction,
                    {"asset_symbol": batch.asset_symbol, "batch_id": batch.id, "status": False},
                    transaction_hash=result.transaction_hash or batch_id,
                )
            await terminate_withdrawals(self.repo, transaction_ids, batch)
            report.terminated.append(batch_id)
            return

        # Found on chain: record it and let confirmation complete the batch
        await record_broadcast(
            self.repo,
            transaction_hash=result.transaction_hash,
            asset_symbol=batch.asset_symbol,
            transaction_ids=transaction_ids,
            batch=batch,
            result=result,
        )
        report.recovered.append(batch_id)

    async def confirm(self, batch: BatchRequest, report: BatchReport) -> None:
        """Settle a broadcast batch once it had time to reach the chain."""
        batch_id = str(batch.id)
        if batch.date_of_processing is not None:
            ready_at = batch.date_of_processing + timedelta(seconds=self.broadcast_wait_seconds)
            if utcnow() < ready_at:
                return

        chain_tx = await self.repo.find_chain_transaction_for_batch(batch.id)
        if chain_tx is None:
            logger.error(f"Batch {batch_id} is processing without a chain transaction")
            report.skipped.append(batch_id)
            return

        result = await ConfirmationService(self.repo, self.crypto_adapter).confirm(
            chain_tx.transaction_hash
        )
        if result.updated:
            report.confirmed.append(batch_id)

    def request_sweep(self, report: BatchReport) -> None:
        if report.sweep_triggered or self.trigger_sweep is None:
            return
        logger.info("Hot wallet float is short for a batch, starting a sweep")
        self.trigger_sweep()
        report.sweep_triggered = True

    async def _display_amount(self, asset_symbol: str, amount: Decimal) -> Decimal:
        denomination = await self.repo.find_by_fields(Denomination, asset_symbol=asset_symbol)
        decimals = denomination.decimals if denomination is not None else 0
        return to_display_units(amount, decimals)
