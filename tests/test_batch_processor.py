"""Tests for UTXO withdrawal batching."""

from datetime import timedelta
from decimal import Decimal

import pytest

from walletadapter.clients.crypto_adapter import BroadcastResult
from walletadapter.clients.key_management import ProcessType, SignResult
from walletadapter.errors import (
    ErrorCode,
    InputError,
    NotFoundError,
    ServerError,
    ServicesRequestError,
)
from walletadapter.ledger.models import (
    Activity,
    BatchRequest,
    BatchStatus,
    ChainTransaction,
    ProcessingType,
    TransactionQueue,
    TransactionStatus,
    TransactionTag,
    utcnow,
)
from walletadapter.services.batch import BatchService, ExternalTransfer, WithdrawalQueue
from walletadapter.services.batch_processor import BatchProcessor


@pytest.fixture
def batches(ledger_repo):
    return BatchService(ledger_repo, wait_seconds=0)


@pytest.fixture
def processor(ledger_repo, key_management, crypto_adapter, locks, cold_wallet, batches):
    return BatchProcessor(
        ledger_repo,
        key_management,
        crypto_adapter,
        locks,
        cold_wallet,
        batches,
        broadcast_wait_seconds=0,
    )


async def queue_btc(seed, ledger_repo, batches, values=(Decimal("0.5"), Decimal("0.25"))):
    """Queue BTC withdrawals on a batchable network; returns (transactions, queue rows)."""
    await seed.denomination("BTC", decimals=8)
    await seed.network("BTC", "", is_batchable=True)
    await seed.hot_wallet("BTC", "bc1float")
    queue = WithdrawalQueue(ledger_repo, batches)

    transactions, rows = [], []
    for i, value in enumerate(values):
        transaction = await seed.transaction(
            "BTC", TransactionTag.WITHDRAW, value, status=TransactionStatus.PENDING
        )
        transactions.append(transaction)
        rows.append(await queue.enqueue(transaction, f"bc1dest{i}", value * 10**8))
    return transactions, rows


async def set_batch_status(ledger_repo, batch_id, status: BatchStatus) -> BatchRequest:
    batch = await ledger_repo.get(BatchRequest, batch_id)
    async with ledger_repo.transaction():
        await ledger_repo.update(batch, status=status.value)
    return batch


class TestBatchIntake:
    """Tests for queueing withdrawals into batches."""

    @pytest.mark.asyncio
    async def test_single_waiting_batch_per_asset(self, seed, ledger_repo, batches):
        """Test withdrawals of one asset share the one open batch."""
        transactions, rows = await queue_btc(
            seed, ledger_repo, batches, values=(Decimal("0.1"), Decimal("0.2"), Decimal("0.3"))
        )

        waiting = await ledger_repo.fetch(BatchRequest, status=BatchStatus.WAIT_MODE.value)
        assert len(waiting) == 1
        assert {row.batch_id for row in rows} == {waiting[0].id}
        assert all(t.processing_type == ProcessingType.BATCH.value for t in transactions)
        assert all(t.batch_id == waiting[0].id for t in transactions)

    @pytest.mark.asyncio
    async def test_new_batch_after_close(self, seed, ledger_repo, batches):
        """Test a closed batch is replaced by a fresh waiting one."""
        _, rows = await queue_btc(seed, ledger_repo, batches, values=(Decimal("0.1"),))
        await set_batch_status(ledger_repo, rows[0].batch_id, BatchStatus.RETRY_MODE)

        transaction = await seed.transaction(
            "BTC", TransactionTag.WITHDRAW, Decimal("0.4"), status=TransactionStatus.PENDING
        )
        queued = await WithdrawalQueue(ledger_repo, batches).enqueue(
            transaction, "bc1late", Decimal("40000000")
        )

        assert queued.batch_id != rows[0].batch_id
        waiting = await ledger_repo.fetch(BatchRequest, status=BatchStatus.WAIT_MODE.value)
        assert [b.id for b in waiting] == [queued.batch_id]

    @pytest.mark.asyncio
    async def test_second_waiting_batch_rejected(self, ledger_repo):
        """Test the store refuses a second open batch for the same asset and network."""
        async with ledger_repo.transaction():
            first = await ledger_repo.create(BatchRequest(asset_symbol="BTC", network=""))
        first_id = first.id

        with pytest.raises(ServerError):
            async with ledger_repo.transaction():
                await ledger_repo.create(BatchRequest(asset_symbol="BTC", network=""))

        await set_batch_status(ledger_repo, first_id, BatchStatus.RETRY_MODE)
        async with ledger_repo.transaction():
            await ledger_repo.create(BatchRequest(asset_symbol="BTC", network=""))

    @pytest.mark.asyncio
    async def test_concurrently_opened_batch_joined(self, ledger_repo, batches, monkeypatch):
        """Test losing the race to open a batch joins the winner's batch."""
        async with ledger_repo.transaction():
            opened = await ledger_repo.create(BatchRequest(asset_symbol="BTC", network=""))
        opened_id = opened.id

        find_by_fields = ledger_repo.find_by_fields
        calls = []

        async def stale_find(model, **fields):
            calls.append(model)
            if len(calls) == 1:
                return None
            return await find_by_fields(model, **fields)

        monkeypatch.setattr(ledger_repo, "find_by_fields", stale_find)

        assert await batches.get_waiting_batch_id("BTC") == opened_id

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent(self, seed, ledger_repo, batches):
        """Test queueing the same withdrawal twice keeps one row."""
        transactions, rows = await queue_btc(seed, ledger_repo, batches, values=(Decimal("0.1"),))

        again = await WithdrawalQueue(ledger_repo, batches).enqueue(
            transactions[0], "bc1dest0", Decimal("10000000")
        )

        assert again.id == rows[0].id
        assert len(await ledger_repo.fetch(TransactionQueue)) == 1

    @pytest.mark.asyncio
    async def test_only_withdrawals_queued(self, seed, ledger_repo, batches):
        """Test a deposit can not be queued for dispatch."""
        deposit = await seed.transaction("BTC", TransactionTag.DEPOSIT, Decimal("1"))

        with pytest.raises(InputError):
            await WithdrawalQueue(ledger_repo, batches).enqueue(deposit, "bc1x", Decimal("1"))

    @pytest.mark.asyncio
    async def test_can_process_after_wait(self, ledger_repo):
        """Test a batch closes only after the wait window."""
        service = BatchService(ledger_repo, wait_seconds=120)
        batch = await service.get_waiting_batch("BTC")

        assert not service.can_process(batch)
        assert service.can_process(batch, now=batch.created_at + timedelta(seconds=120))


async def seed_debit(seed, status=TransactionStatus.COMPLETED, value=Decimal("2"), **network):
    """A completed ETH debit on a single-dispatch network."""
    await seed.denomination("ETH", decimals=18, default_network="ERC20")
    await seed.network("ETH", "ERC20", native_decimals=18, **network)
    return await seed.transaction("ETH", TransactionTag.DEBIT, value, status=status, memo="NO MEMO")


def transfer_of(debit, value=Decimal("1.5"), reference="ext-1") -> ExternalTransfer:
    return ExternalTransfer(
        debit_reference=debit.transaction_reference,
        transaction_reference=reference,
        recipient_address="0xexternal",
        value=value,
    )


class TestExternalTransfer:
    """Tests for paying completed debits out on-chain."""

    @pytest.mark.asyncio
    async def test_transfer_queued(self, seed, ledger_repo, batches):
        """Test a valid transfer creates a pending withdrawal and its queue row."""
        debit = await seed_debit(seed)

        withdrawal = await WithdrawalQueue(ledger_repo, batches).external_transfer(
            transfer_of(debit)
        )

        assert withdrawal.transaction_tag == TransactionTag.WITHDRAW.value
        assert withdrawal.transaction_status == TransactionStatus.PENDING.value
        assert withdrawal.debit_reference == debit.transaction_reference
        assert withdrawal.network == "ERC20"
        assert withdrawal.processing_type == ProcessingType.SINGLE.value

        queued = await ledger_repo.get_by_fields(TransactionQueue, transaction_id=withdrawal.id)
        assert queued.value == Decimal("1500000000000000000")
        assert queued.recipient == "0xexternal"
        assert queued.debit_reference == debit.transaction_reference
        assert queued.memo is None
        assert queued.batch_id is None

    @pytest.mark.asyncio
    async def test_batchable_network_joins_batch(self, seed, ledger_repo, batches):
        """Test a transfer on a batchable network joins the open batch."""
        debit = await seed_debit(seed, is_batchable=True)

        withdrawal = await WithdrawalQueue(ledger_repo, batches).external_transfer(
            transfer_of(debit)
        )

        waiting = await batches.get_waiting_batch("ETH", "ERC20")
        assert withdrawal.batch_id == waiting.id
        assert withdrawal.processing_type == ProcessingType.BATCH.value

    @pytest.mark.asyncio
    async def test_withdrawal_not_active(self, seed, ledger_repo, batches):
        """Test transfers are refused while withdrawals are switched off."""
        debit = await seed_debit(seed, withdraw_activity=Activity.NONE.value)

        with pytest.raises(InputError) as exc_info:
            await WithdrawalQueue(ledger_repo, batches).external_transfer(transfer_of(debit))

        assert exc_info.value.code == ErrorCode.WITHDRAWAL_NOT_ACTIVE.value
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_debit_must_be_completed(self, seed, ledger_repo, batches):
        """Test a pending debit can not be paid out."""
        debit = await seed_debit(seed, status=TransactionStatus.PENDING)

        with pytest.raises(InputError) as exc_info:
            await WithdrawalQueue(ledger_repo, batches).external_transfer(transfer_of(debit))

        assert exc_info.value.code == ErrorCode.INVALID_DEBIT.value

    @pytest.mark.asyncio
    async def test_value_above_debit_refused(self, seed, ledger_repo, batches):
        """Test the payout may not exceed the debited value."""
        debit = await seed_debit(seed)

        with pytest.raises(InputError) as exc_info:
            await WithdrawalQueue(ledger_repo, batches).external_transfer(
                transfer_of(debit, value=Decimal("2.000000000000000001"))
            )

        assert exc_info.value.code == ErrorCode.INVALID_DEBIT_AMOUNT.value
        assert not await ledger_repo.fetch(TransactionQueue)

    @pytest.mark.asyncio
    async def test_full_debit_value_allowed(self, seed, ledger_repo, batches):
        """Test a payout of exactly the debited value is accepted."""
        debit = await seed_debit(seed)

        withdrawal = await WithdrawalQueue(ledger_repo, batches).external_transfer(
            transfer_of(debit, value=Decimal("2"))
        )

        assert withdrawal.value == Decimal("2")

    @pytest.mark.asyncio
    async def test_unknown_debit(self, seed, ledger_repo, batches):
        """Test an unknown debit reference is not found."""
        await seed_debit(seed)

        with pytest.raises(NotFoundError):
            await WithdrawalQueue(ledger_repo, batches).external_transfer(
                ExternalTransfer("missing", "ext-1", "0xexternal", Decimal("1"))
            )

    @pytest.mark.asyncio
    async def test_reference_reused(self, seed, ledger_repo, batches):
        """Test a transaction reference can only be used once."""
        debit = await seed_debit(seed)
        queue = WithdrawalQueue(ledger_repo, batches)
        await queue.external_transfer(transfer_of(debit, value=Decimal("1")))

        with pytest.raises(InputError):
            await queue.external_transfer(transfer_of(debit, value=Decimal("1")))


class TestBatchSend:
    """Tests for signing and broadcasting waiting batches."""

    @pytest.mark.asyncio
    async def test_waiting_batch_not_ready(
        self, seed, ledger_repo, key_management, crypto_adapter, locks, cold_wallet
    ):
        """Test a batch inside its wait window is left open."""
        batches = BatchService(ledger_repo, wait_seconds=120)
        await queue_btc(seed, ledger_repo, batches)
        processor = BatchProcessor(
            ledger_repo, key_management, crypto_adapter, locks, cold_wallet, batches
        )

        report = await processor.run()

        key_management.sign_batch_and_broadcast.assert_not_awaited()
        assert len(report.skipped) == 1

    @pytest.mark.asyncio
    async def test_batch_broadcast(self, processor, seed, ledger_repo, batches, key_management):
        """Test a ready batch is sent as one transaction and moves to processing."""
        transactions, rows = await queue_btc(seed, ledger_repo, batches)
        batch_id = rows[0].batch_id
        key_management.sign_batch_and_broadcast.return_value = SignResult("btc-batch")

        report = await processor.run()

        request = key_management.sign_batch_and_broadcast.await_args.args[0]
        assert request.origins == ["bc1float"]
        assert request.change_address == "bc1float"
        assert [(r.address, r.value) for r in request.recipients] == [
            ("bc1dest0", 50_000_000),
            ("bc1dest1", 25_000_000),
        ]
        assert request.reference == str(batch_id)
        assert request.process_type == ProcessType.WITHDRAW
        assert not request.is_sweep
        assert report.broadcast == [str(batch_id)]

        batch = await ledger_repo.get(BatchRequest, batch_id)
        assert batch.status == BatchStatus.PROCESSING.value
        assert batch.no_of_records == 2
        assert batch.date_of_processing is not None
        chain_tx = await ledger_repo.get_by_fields(ChainTransaction, batch_id=batch_id)
        assert chain_tx.transaction_hash == "btc-batch"
        for transaction in transactions:
            await ledger_repo.session.refresh(transaction)
            assert transaction.transaction_status == TransactionStatus.PROCESSING.value
            assert transaction.on_chain_tx_id == chain_tx.id

    @pytest.mark.asyncio
    async def test_insufficient_float_keeps_batch_for_retry(
        self, processor, seed, ledger_repo, batches, key_management, crypto_adapter, notifier_client
    ):
        """Test an unfunded batch alerts operators and is resent on a later run."""
        _, rows = await queue_btc(seed, ledger_repo, batches)
        batch_id = rows[0].batch_id
        key_management.sign_batch_and_broadcast.side_effect = ServicesRequestError(
            "insufficient", code=ErrorCode.INSUFFICIENT_FUNDS, status_code=400
        )

        first = await processor.run()

        assert first.insufficient_float == [str(batch_id)]
        batch = await ledger_repo.get(BatchRequest, batch_id)
        assert batch.status == BatchStatus.RETRY_MODE.value
        notifier_client.send_sms.assert_awaited_once()
        assert "0.75" in notifier_client.send_sms.await_args.args[0].message

        key_management.sign_batch_and_broadcast.side_effect = None
        key_management.sign_batch_and_broadcast.return_value = SignResult("btc-batch")
        crypto_adapter.get_transaction_status.side_effect = ServicesRequestError(
            "unknown reference", code=ErrorCode.NOT_FOUND, status_code=404
        )

        second = await processor.run()

        assert second.broadcast == [str(batch_id)]
        assert batch.status == BatchStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_insufficient_float_starts_one_sweep(
        self, seed, ledger_repo, key_management, crypto_adapter, locks, cold_wallet
    ):
        """Test unfunded batches start a single sweep per run."""
        batches = BatchService(ledger_repo, wait_seconds=0)
        await queue_btc(seed, ledger_repo, batches)
        await seed.denomination("LTC", decimals=8)
        await seed.network("LTC", "", is_batchable=True)
        await seed.hot_wallet("LTC", "ltc1float")
        transaction = await seed.transaction(
            "LTC", TransactionTag.WITHDRAW, Decimal("1"), status=TransactionStatus.PENDING
        )
        await WithdrawalQueue(ledger_repo, batches).enqueue(
            transaction, "ltc1dest", Decimal("100000000")
        )
        key_management.sign_batch_and_broadcast.side_effect = ServicesRequestError(
            "insufficient", code=ErrorCode.INSUFFICIENT_FUNDS, status_code=400
        )
        sweeps = []
        processor = BatchProcessor(
            ledger_repo,
            key_management,
            crypto_adapter,
            locks,
            cold_wallet,
            batches,
            broadcast_wait_seconds=0,
            trigger_sweep=lambda: sweeps.append("sweep"),
        )

        report = await processor.run()

        assert len(report.insufficient_float) == 2
        assert report.sweep_triggered
        assert sweeps == ["sweep"]

    @pytest.mark.asyncio
    async def test_rejected_batch_terminated(
        self, processor, seed, ledger_repo, batches, key_management
    ):
        """Test a batch refused on broadcast terminates with all its rows."""
        transactions, rows = await queue_btc(seed, ledger_repo, batches)
        key_management.sign_batch_and_broadcast.side_effect = ServicesRequestError(
            "rejected", code=ErrorCode.TRANSACTION_BROADCAST_FAILED, status_code=400
        )

        report = await processor.run()

        assert report.terminated == [str(rows[0].batch_id)]
        batch = await ledger_repo.get(BatchRequest, rows[0].batch_id)
        assert batch.status == BatchStatus.TERMINATED.value
        for transaction in transactions:
            await ledger_repo.session.refresh(transaction)
            assert transaction.transaction_status == TransactionStatus.TERMINATED.value


class TestBatchRecovery:
    """Tests for batches left in RETRY_MODE by an interrupted run."""

    @pytest.mark.asyncio
    async def test_orphan_broadcast_recovered_then_completed(
        self, processor, seed, ledger_repo, batches, key_management, crypto_adapter
    ):
        """Test a batch found on chain is recorded, then completed, without re-broadcast."""
        transactions, rows = await queue_btc(seed, ledger_repo, batches)
        batch = await set_batch_status(ledger_repo, rows[0].batch_id, BatchStatus.RETRY_MODE)
        crypto_adapter.get_transaction_status.return_value = BroadcastResult(
            "SUCCESS", "btc-orphan", block_height=800_000, transaction_fee="1200"
        )

        first = await processor.run()

        crypto_adapter.get_transaction_status.assert_awaited_once_with(
            "BTC", reference=str(batch.id)
        )
        assert first.recovered == [str(batch.id)]
        chain_tx = await ledger_repo.get_by_fields(ChainTransaction, transaction_hash="btc-orphan")
        assert chain_tx.batch_id == batch.id
        assert chain_tx.status is True
        assert batch.status == BatchStatus.PROCESSING.value
        for transaction, row in zip(transactions, rows):
            await ledger_repo.session.refresh(transaction)
            await ledger_repo.session.refresh(row)
            assert transaction.transaction_status == TransactionStatus.PROCESSING.value
            assert transaction.on_chain_tx_id == chain_tx.id
            assert row.transaction_status == TransactionStatus.PROCESSING.value

        second = await processor.run()

        key_management.sign_batch_and_broadcast.assert_not_awaited()
        assert second.confirmed == [str(batch.id)]
        assert batch.status == BatchStatus.COMPLETED.value
        assert batch.date_completed is not None
        for transaction in transactions:
            await ledger_repo.session.refresh(transaction)
            assert transaction.transaction_status == TransactionStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_failed_orphan_terminated(
        self, processor, seed, ledger_repo, batches, key_management, crypto_adapter
    ):
        """Test a batch whose broadcast failed on chain is terminated."""
        transactions, rows = await queue_btc(seed, ledger_repo, batches)
        batch = await set_batch_status(ledger_repo, rows[0].batch_id, BatchStatus.RETRY_MODE)
        crypto_adapter.get_transaction_status.return_value = BroadcastResult("FAILED", "btc-dead")

        report = await processor.run()

        key_management.sign_batch_and_broadcast.assert_not_awaited()
        assert report.terminated == [str(batch.id)]
        assert batch.status == BatchStatus.TERMINATED.value
        for transaction in transactions:
            await ledger_repo.session.refresh(transaction)
            assert transaction.transaction_status == TransactionStatus.TERMINATED.value

    @pytest.mark.asyncio
    async def test_pending_confirmation_waits(
        self, processor, seed, ledger_repo, batches, key_management, crypto_adapter
    ):
        """Test a processing batch still pending on chain is left as is."""
        _, rows = await queue_btc(seed, ledger_repo, batches)
        key_management.sign_batch_and_broadcast.return_value = SignResult("btc-batch")
        await processor.run()
        crypto_adapter.get_transaction_status.return_value = BroadcastResult("PENDING", "btc-batch")

        report = await processor.run()

        assert report.confirmed == []
        batch = await ledger_repo.get(BatchRequest, rows[0].batch_id)
        assert batch.status == BatchStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_broadcast_wait_respected(
        self, seed, ledger_repo, batches, key_management, crypto_adapter, locks, cold_wallet
    ):
        """Test a freshly broadcast batch is not polled before the wait elapses."""
        await queue_btc(seed, ledger_repo, batches)
        processor = BatchProcessor(
            ledger_repo,
            key_management,
            crypto_adapter,
            locks,
            cold_wallet,
            batches,
            broadcast_wait_seconds=3600,
        )
        key_management.sign_batch_and_broadcast.return_value = SignResult("btc-batch")

        await processor.run()
        await processor.run()

        crypto_adapter.get_transaction_status.assert_not_awaited()
