"""Withdrawal intake: queue rows and UTXO batch assignment."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from walletadapter.errors import ErrorCode, InputError
from walletadapter.ledger.models import (
    Activity,
    BatchRequest,
    BatchStatus,
    Denomination,
    Network,
    ProcessingType,
    Transaction,
    TransactionQueue,
    TransactionStatus,
    TransactionTag,
    TransactionType,
    utcnow,
)
from walletadapter.ledger.repository import LedgerRepository
from walletadapter.treasury import to_base_units, to_integer_units

logger = logging.getLogger(__name__)

# Memo placeholder upstream services send for memo-less debits
NO_MEMO = "NO MEMO"


class BatchService:
    """Keeps exactly one open (WAIT_MODE) batch per asset and network."""

    def __init__(self, repo: LedgerRepository, wait_seconds: int = 120):
        self.repo = repo
        self.wait_seconds = wait_seconds

    async def get_waiting_batch(self, asset_symbol: str, network: str = "") -> BatchRequest:
        """Return the open batch for the pair, opening one if there is none."""
        fields = {
            "asset_symbol": asset_symbol,
            "network": network,
            "status": BatchStatus.WAIT_MODE.value,
        }
        try:
            return await self.repo.find_or_create(BatchRequest, **fields)
        except IntegrityError:
            # Another worker opened it first
            await self.repo.session.rollback()
            logger.info(f"Joined the {asset_symbol} batch opened concurrently")
            return await self.repo.get_by_fields(BatchRequest, **fields)

    async def get_waiting_batch_id(self, asset_symbol: str, network: str = "") -> uuid.UUID:
        batch = await self.get_waiting_batch(asset_symbol, network)
        return batch.id

    def can_process(self, batch: BatchRequest, now: Optional[datetime] = None) -> bool:
        """Whether a waiting batch has been open long enough to close and send."""
        now = now or utcnow()
        return now - batch.created_at >= timedelta(seconds=self.wait_seconds)


@dataclass
class ExternalTransfer:
    """Request to pay a completed debit out on-chain. ``value`` is in display units."""

    debit_reference: str
    transaction_reference: str
    recipient_address: str
    value: Decimal
    network: str = ""
    initiator_id: Optional[uuid.UUID] = None


class WithdrawalQueue:
    """Creates the dispatch queue row for a withdrawal transaction."""

    def __init__(self, repo: LedgerRepository, batches: BatchService):
        self.repo = repo
        self.batches = batches

    async def external_transfer(self, request: ExternalTransfer) -> Transaction:
        """Record an on-chain withdrawal against a completed debit and queue it.

        Raises:
            NotFoundError: the debit reference does not exist
            InputError: withdrawals are off for the asset, the debit is not
                completed, the value exceeds the debit or the reference is taken
        """
        debit = await self.repo.get_by_fields(
            Transaction, transaction_reference=request.debit_reference
        )
        asset_symbol = debit.asset_symbol
        denomination = await self.repo.get_by_fields(Denomination, asset_symbol=asset_symbol)
        network_name = request.network or denomination.default_network
        network = await self.repo.get_by_fields(
            Network, asset_symbol=asset_symbol, network=network_name
        )

        if not is_withdrawal_active(denomination, network):
            raise InputError(
                f"Withdrawals are not active for {asset_symbol} on '{network_name}'",
                code=ErrorCode.WITHDRAWAL_NOT_ACTIVE,
            )
        if debit.transaction_status != TransactionStatus.COMPLETED.value:
            raise InputError(
                f"Debit {debit.transaction_reference} is {debit.transaction_status}",
                code=ErrorCode.INVALID_DEBIT,
            )
        if request.value > debit.value:
            raise InputError(
                f"Value {request.value} exceeds debit of {debit.value}",
                code=ErrorCode.INVALID_DEBIT_AMOUNT,
            )
        taken = await self.repo.find_by_fields(
            Transaction, transaction_reference=request.transaction_reference
        )
        if taken is not None:
            raise InputError(f"Transaction reference {request.transaction_reference} already used")

        batch_id = None
        if network.is_batchable:
            batch_id = await self.batches.get_waiting_batch_id(asset_symbol, network_name)

        async with self.repo.transaction():
            withdrawal = await self.repo.create(
                Transaction(
                    initiator_id=request.initiator_id,
                    recipient_id=debit.recipient_id,
                    transaction_reference=request.transaction_reference,
                    payment_reference=uuid.uuid4().hex,
                    debit_reference=request.debit_reference,
                    memo=debit.memo,
                    transaction_type=TransactionType.ONCHAIN.value,
                    transaction_tag=TransactionTag.WITHDRAW.value,
                    transaction_status=TransactionStatus.PENDING.value,
                    value=request.value,
                    previous_balance=debit.previous_balance,
                    available_balance=debit.available_balance,
                    processing_type=(
                        ProcessingType.BATCH.value if batch_id else ProcessingType.SINGLE.value
                    ),
                    asset_symbol=asset_symbol,
                    network=network_name,
                    batch_id=batch_id,
                )
            )
            await self._create_queue_row(
                withdrawal,
                request.recipient_address,
                to_integer_units(to_base_units(request.value, network.native_decimals)),
                memo=debit.memo if debit.memo and debit.memo != NO_MEMO else None,
                batch_id=batch_id,
                debit_reference=request.debit_reference,
            )

        logger.info(
            f"External transfer {request.transaction_reference} of {request.value} {asset_symbol} "
            f"queued against debit {request.debit_reference}"
        )
        return withdrawal

    async def enqueue(
        self,
        transaction: Transaction,
        recipient: str,
        value: Decimal,
        sender: str = "",
        memo: Optional[str] = None,
    ) -> TransactionQueue:
        """Queue an existing on-chain withdrawal. ``value`` is in base units.

        Withdrawals on batchable networks join the open batch for their asset.
        """
        if transaction.transaction_tag != TransactionTag.WITHDRAW.value:
            raise InputError(f"Transaction {transaction.transaction_reference} is not a withdrawal")

        existing = await self.repo.find_by_fields(TransactionQueue, transaction_id=transaction.id)
        if existing is not None:
            return existing

        network = await self.repo.find_by_fields(
            Network, asset_symbol=transaction.asset_symbol, network=transaction.network
        )
        batch_id = None
        if network is not None and network.is_batchable:
            batch_id = await self.batches.get_waiting_batch_id(
                transaction.asset_symbol, transaction.network
            )

        async with self.repo.transaction():
            if batch_id is not None:
                await self.repo.update(
                    transaction, batch_id=batch_id, processing_type=ProcessingType.BATCH.value
                )
            queued = await self._create_queue_row(
                transaction, recipient, value, sender=sender, memo=memo, batch_id=batch_id
            )

        logger.info(
            f"Queued {transaction.asset_symbol} withdrawal {transaction.transaction_reference}"
            + (f" in batch {batch_id}" if batch_id else "")
        )
        return queued

    async def _create_queue_row(
        self,
        transaction: Transaction,
        recipient: str,
        value: Decimal,
        sender: str = "",
        memo: Optional[str] = None,
        batch_id: Optional[uuid.UUID] = None,
        debit_reference: Optional[str] = None,
    ) -> TransactionQueue:
        return await self.repo.create(
            TransactionQueue(
                sender=sender,
                recipient=recipient,
                value=value,
                memo=memo,
                asset_symbol=transaction.asset_symbol,
                network=transaction.network,
                debit_reference=debit_reference or transaction.transaction_reference,
                transaction_id=transaction.id,
                batch_id=batch_id,
                transaction_status=TransactionStatus.PENDING.value,
            )
        )


def is_withdrawal_active(denomination: Denomination, network: Network) -> bool:
    return (
        denomination.is_enabled
        and denomination.withdraw_activity == Activity.ACTIVE.value
        and network.withdraw_activity == Activity.ACTIVE.value
    )
