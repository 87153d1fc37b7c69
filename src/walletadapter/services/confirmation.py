"""Recording broadcasts and their on-chain outcome in the ledger.

Once a withdrawal (single or batched) has a transaction hash, the chain
transaction row, the ledger transactions, their queue rows and the batch are
updated together in one database transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from walletadapter.clients.crypto_adapter import BroadcastResult, CryptoAdapterClient
from walletadapter.ledger.models import (
    BatchRequest,
    BatchStatus,
    ChainTransaction,
    Transaction,
    TransactionStatus,
    utcnow,
)
from walletadapter.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

_BATCH_STATUS_FOR = {
    TransactionStatus.PROCESSING: BatchStatus.PROCESSING,
    TransactionStatus.COMPLETED: BatchStatus.COMPLETED,
    TransactionStatus.TERMINATED: BatchStatus.TERMINATED,
}


def outcome_of(result: BroadcastResult) -> Optional[TransactionStatus]:
    """Ledger status implied by a broadcast status, None if nothing is known yet."""
    if result.is_success:
        return TransactionStatus.COMPLETED
    if result.is_failed:
        return TransactionStatus.TERMINATED
    if result.transaction_hash:
        return TransactionStatus.PROCESSING
    return None


async def record_broadcast(
    repo: LedgerRepository,
    *,
    transaction_hash: str,
    asset_symbol: str,
    transaction_ids: list[uuid.UUID],
    status: TransactionStatus = TransactionStatus.PROCESSING,
    recipient_address: str = "",
    batch: Optional[BatchRequest] = None,
    result: Optional[BroadcastResult] = None,
) -> ChainTransaction:
    """Persist a known broadcast and move its withdrawals to ``status`` atomically.

    The chain transaction is keyed by hash, so recording the same broadcast
    twice updates the existing row.
    """
    values = {
        "asset_symbol": asset_symbol,
        "recipient_address": recipient_address,
        "batch_id": batch.id if batch is not None else None,
    }
    if result is not None:
        values.update(
            status=result.is_success,
            block_height=result.block_height,
            transaction_fee=result.transaction_fee,
        )

    async with repo.transaction():
        chain_tx = await repo.update_or_create(
            ChainTransaction, values, transaction_hash=transaction_hash
        )
        await repo.update_withdrawal_status(transaction_ids, status, on_chain_tx_id=chain_tx.id)
        if batch is not None:
            batch_values = {"status": _BATCH_STATUS_FOR[status].value}
            if status == TransactionStatus.PROCESSING:
                batch_values["no_of_records"] = len(transaction_ids)
            else:
                batch_values["date_completed"] = utcnow()
            await repo.update(batch, **batch_values)

    logger.info(
        f"Recorded {asset_symbol} broadcast {transaction_hash} for "
        f"{len(transaction_ids)} withdrawal(s) as {status.value}"
    )
    return chain_tx


async def terminate_withdrawals(
    repo: LedgerRepository,
    transaction_ids: list[uuid.UUID],
    batch: Optional[BatchRequest] = None,
) -> None:
    """Mark withdrawals (and their batch) as terminated without a broadcast."""
    async with repo.transaction():
        await repo.update_withdrawal_status(transaction_ids, TransactionStatus.TERMINATED)
        if batch is not None:
            await repo.update(batch, status=BatchStatus.TERMINATED.value, date_completed=utcnow())


@dataclass
class ConfirmationResult:
    transaction_hash: str
    status: str
    updated: int


class ConfirmationService:
    """Applies the final on-chain outcome of a broadcast to the ledger."""

    def __init__(self, repo: LedgerRepository, crypto_adapter: CryptoAdapterClient):
        self.repo = repo
        self.crypto_adapter = crypto_adapter

    async def confirm(self, transaction_hash: str) -> ConfirmationResult:
        """Refresh a chain transaction and settle the withdrawals that reference it.

        Raises:
            NotFoundError: no chain transaction with this hash
        """
        chain_tx = await self.repo.get_by_fields(ChainTransaction, transaction_hash=transaction_hash)
        result = await self.crypto_adapter.get_transaction_status(
            chain_tx.asset_symbol, transaction_hash=transaction_hash
        )

        status = outcome_of(result)
        if status is None or status == TransactionStatus.PROCESSING:
            logger.info(f"Transaction {transaction_hash} still pending")
            return ConfirmationResult(transaction_hash, result.status, 0)

        transactions = await self.repo.fetch(Transaction, on_chain_tx_id=chain_tx.id)
        batch = None
        if chain_tx.batch_id is not None:
            batch = await self.repo.find_by_fields(BatchRequest, id=chain_tx.batch_id)

        ids = [t.id for t in transactions]
        async with self.repo.transaction():
            await self.repo.update(
                chain_tx,
                status=result.is_success,
                block_height=result.block_height,
                transaction_fee=result.transaction_fee,
            )
            await self.repo.update_withdrawal_status(ids, status)
            if batch is not None:
                await self.repo.update(
                    batch, status=_BATCH_STATUS_FOR[status].value, date_completed=utcnow()
                )

        logger.info(f"Transaction {transaction_hash} confirmed as {status.value} for {len(ids)} row(s)")
        return ConfirmationResult(transaction_hash, result.status, len(ids))
