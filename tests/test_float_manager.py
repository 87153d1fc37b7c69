"""Tests for the float manager loop."""

from datetime import timedelta
from decimal import Decimal

import pytest

from walletadapter.clients.crypto_adapter import OnchainBalance
from walletadapter.clients.key_management import ProcessType, SignResult
from walletadapter.clients.order_book import DepositAddress
from walletadapter.errors import ErrorCode, LockAcquireError, ServicesRequestError
from walletadapter.ledger.models import FloatManagerRun, HotWalletAsset, TransactionTag, utcnow
from walletadapter.services.float_manager import FloatManager


@pytest.fixture
def manager(ledger_repo, crypto_adapter, order_book, key_management, locks, cold_wallet):
    return FloatManager(ledger_repo, crypto_adapter, order_book, key_management, locks, cold_wallet)


async def seed_eth(seed, with_flows: bool = True):
    """ETH with 1000 owed to users (largest balance 200) and no decimals."""
    denomination = await seed.denomination("ETH", decimals=0)
    await seed.float_params("ETH", "ETH")
    for _ in range(5):
        await seed.user_asset(denomination, Decimal("200"))
    hot_wallet = await seed.hot_wallet("ETH", "0xfloat", "ETH")
    if with_flows:
        await seed.transaction("ETH", TransactionTag.DEPOSIT, Decimal("10"))
        await seed.transaction("ETH", TransactionTag.WITHDRAW, Decimal("40"))
    return hot_wallet


class TestFloatDeficit:
    """Tests for the funding path."""

    @pytest.mark.asyncio
    async def test_deficit_with_net_outflow(self, manager, seed, crypto_adapter, notifier_client):
        """Test a low float with net withdrawals asks for funding up to the maximum."""
        await seed_eth(seed)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 50, 0)

        runs = await manager.run()

        assert len(runs) == 1
        run = runs[0]
        assert run.minimum_balance == Decimal("75")
        assert run.maximum_balance == Decimal("260")
        assert run.deficit == Decimal("210")
        assert run.deposit_sum == Decimal("10")
        assert run.withdrawal_sum == Decimal("40")

        notifier_client.send_email.assert_awaited_once()
        email = notifier_client.send_email.await_args.args[0]
        assert email.subject == "Test: Please fund Bundle hot wallet address for ETH"
        assert email.params["amount"] == "210"
        assert email.params["assetSymbol"] == "ETH"
        assert email.recipients[0].email == "cold@example.com"

    @pytest.mark.asyncio
    async def test_balance_at_min_trigger_is_deficit(
        self, manager, seed, crypto_adapter, notifier_client
    ):
        """Test a balance exactly at the minimum trigger takes the funding path."""
        await seed_eth(seed)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 60, 0)

        runs = await manager.run()

        assert runs[0].deficit == Decimal("200")
        notifier_client.send_email.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_same_deficit_reported_once_a_day(
        self, manager, seed, crypto_adapter, notifier_client, ledger_repo
    ):
        """Test an unchanged deficit does not email operators again on the same day."""
        await seed_eth(seed, with_flows=False)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 50, 0)

        first = await manager.run()
        second = await manager.run()

        assert first[0].deficit == Decimal("25")
        assert second[0].deficit == Decimal("25")
        assert "already reported" in second[0].action
        assert notifier_client.send_email.await_count == 1
        assert len(await ledger_repo.fetch(FloatManagerRun, asset_symbol="ETH")) == 2

    @pytest.mark.asyncio
    async def test_failed_email_still_audited(
        self, manager, seed, crypto_adapter, notifier_client, ledger_repo
    ):
        """Test a notifier failure is recorded and does not abort the run."""
        await seed_eth(seed)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 50, 0)
        notifier_client.send_email.side_effect = ServicesRequestError(
            "down", code=ErrorCode.SERVER_ERR, status_code=502
        )

        runs = await manager.run()

        assert "fund email failed" in runs[0].action
        assert not runs[0].fund_email_sent
        assert len(await ledger_repo.fetch(FloatManagerRun)) == 1

    @pytest.mark.asyncio
    async def test_failed_email_retried_next_run(
        self, manager, seed, crypto_adapter, notifier_client
    ):
        """Test a deficit whose email failed is emailed again on the next run."""
        await seed_eth(seed, with_flows=False)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 50, 0)
        notifier_client.send_email.side_effect = [
            ServicesRequestError("down", code=ErrorCode.SERVER_ERR, status_code=502),
            None,
        ]

        first = await manager.run()
        second = await manager.run()
        third = await manager.run()

        assert "fund email failed" in first[0].action
        assert second[0].fund_email_sent
        assert "already reported" in third[0].action
        assert notifier_client.send_email.await_count == 2


class TestFloatSurplus:
    """Tests for the surplus path."""

    @pytest.mark.asyncio
    async def test_surplus_sent_to_brokerage(
        self, manager, seed, crypto_adapter, order_book, key_management, notifier_client
    ):
        """Test a float above the band sends the surplus to the brokerage."""
        await seed_eth(seed)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 500, 0)
        order_book.get_deposit_address.return_value = DepositAddress("0xbrokerage", "")
        key_management.sign_and_broadcast.return_value = SignResult("0xsurplus")

        runs = await manager.run()

        assert runs[0].surplus == Decimal("240")
        key_management.sign_and_broadcast.assert_awaited_once()
        request = key_management.sign_and_broadcast.await_args.args[0]
        assert request.amount == 240
        assert request.from_address == "0xfloat"
        assert request.to_address == "0xbrokerage"
        assert request.process_type == ProcessType.FLOAT
        assert not request.is_sweep

        notifier_client.send_email.assert_awaited_once()
        email = notifier_client.send_email.await_args.args[0]
        assert "withdrawal" in email.subject
        assert "0xbrokerage" in email.content

    @pytest.mark.asyncio
    async def test_surplus_below_trigger_kept(
        self, manager, seed, crypto_adapter, key_management
    ):
        """Test a surplus smaller than the maximum trigger is left in the float."""
        await seed_eth(seed)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 300, 0)

        runs = await manager.run()

        assert runs[0].surplus == Decimal("40")
        assert "no transfer" in runs[0].action
        key_management.sign_and_broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_transfer_audited(
        self, manager, seed, crypto_adapter, order_book, key_management, notifier_client
    ):
        """Test a failed surplus transfer is recorded and sends no email."""
        await seed_eth(seed)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 500, 0)
        order_book.get_deposit_address.return_value = DepositAddress("0xbrokerage", "")
        key_management.sign_and_broadcast.side_effect = ServicesRequestError(
            "signer down", code=ErrorCode.SERVER_ERR, status_code=502
        )

        runs = await manager.run()

        assert "transfer failed" in runs[0].action
        notifier_client.send_email.assert_not_awaited()


class TestFloatMarkers:
    """Tests for the deposit/withdrawal window markers."""

    @pytest.mark.asyncio
    async def test_markers_never_move_backwards(
        self, manager, seed, crypto_adapter, ledger_repo
    ):
        """Test markers advance to the newest row seen and stay put without new rows."""
        await seed_eth(seed)
        crypto_adapter.get_onchain_balance.return_value = OnchainBalance("ETH", 100, 0)

        await manager.run()
        wallet = await ledger_repo.get_by_fields(HotWalletAsset, asset_symbol="ETH")
        first_marker = wallet.last_deposit_created_at
        assert first_marker is not None
        assert wallet.last_withdrawal_created_at is not None

        await manager.run()
        assert wallet.last_deposit_created_at == first_marker

        await seed.transaction(
            "ETH", TransactionTag.DEPOSIT, Decimal("5"), created_at=utcnow() - timedelta(seconds=1)
        )
        runs = await manager.run()
        assert wallet.last_deposit_created_at > first_marker
        assert runs[0].deposit_sum == Decimal("5")

    @pytest.mark.asyncio
    async def test_run_requires_lock(self, manager, locks, seed):
        """Test a second worker can not run while the float lock is held."""
        await seed_eth(seed)
        await locks.acquire("float", 600_000)

        with pytest.raises(LockAcquireError):
            await manager.run()
