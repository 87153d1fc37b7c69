"""Float manager - keeps each hot wallet balance inside its float band.

For every hot wallet asset the manager compares the on-chain balance with a band
derived from user liabilities:

- at or below the minimum trigger it emails cold wallet operators to fund it
- above the maximum it sends the surplus to the brokerage account

Every asset visited gets an append-only FloatManagerRun audit row.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from walletadapter.clients.crypto_adapter import CryptoAdapterClient
from walletadapter.clients.key_management import (
    KeyManagementClient,
    ProcessType,
    SignTransactionRequest,
)
from walletadapter.clients.order_book import OrderBookClient
from walletadapter.errors import ServicesRequestError
from walletadapter.ledger.models import (
    Denomination,
    FloatManagerParam,
    FloatManagerRun,
    HotWalletAsset,
    TransactionTag,
    utcnow,
)
from walletadapter.ledger.repository import LedgerRepository
from walletadapter.services.notifications import ColdWalletNotifier
from walletadapter.treasury import (
    FloatBand,
    float_deficit,
    to_base_units,
    to_display_units,
    to_integer_units,
    total_user_balance,
)
from walletadapter.utils.locks import FLOAT_LOCK, FLOAT_LOCK_MS, LockCoordinator

logger = logging.getLogger(__name__)


@dataclass
class FlowSum:
    """Deposits or withdrawals seen since the last run, in base units."""

    total: Decimal
    last_created_at: Optional[datetime]


class FloatManager:
    """Per-asset control loop over hot wallet balances."""

    def __init__(
        self,
        repo: LedgerRepository,
        crypto_adapter: CryptoAdapterClient,
        order_book: OrderBookClient,
        key_management: KeyManagementClient,
        locks: LockCoordinator,
        notifier: ColdWalletNotifier,
    ):
        self.repo = repo
        self.crypto_adapter = crypto_adapter
        self.order_book = order_book
        self.key_management = key_management
        self.locks = locks
        self.notifier = notifier

    async def run(self) -> list[FloatManagerRun]:
        """Run one pass over all hot wallets while holding the float lock.

        Raises:
            LockAcquireError: another worker is already running the float manager
        """
        runs = []
        async with self.locks.hold(FLOAT_LOCK, FLOAT_LOCK_MS):
            hot_wallets = await self.repo.fetch(HotWalletAsset, is_disabled=False)
            logger.info(f"Float manager checking {len(hot_wallets)} hot wallet(s)")

            for hot_wallet in hot_wallets:
                asset_symbol = hot_wallet.asset_symbol
                try:
                    runs.append(await self.manage(hot_wallet))
                except Exception as e:
                    logger.error(f"Float manager failed for {asset_symbol}: {e}")

        return runs

    async def manage(self, hot_wallet: HotWalletAsset) -> FloatManagerRun:
        """Evaluate one hot wallet, act on it and record the audit row."""
        asset_symbol = hot_wallet.asset_symbol
        denomination = await self.repo.get_by_fields(Denomination, asset_symbol=asset_symbol)
        params = await self.repo.get_by_fields(
            FloatManagerParam, asset_symbol=asset_symbol, network=hot_wallet.network
        )

        balance = await self.crypto_adapter.get_onchain_balance(
            asset_symbol, hot_wallet.address, hot_wallet.network
        )
        onchain = Decimal(balance.balance)

        total_users = total_user_balance(
            await self.repo.sum_amount_field(denomination.id), denomination.decimals
        )
        max_user = to_base_units(
            await self.repo.get_max_user_balance(denomination.id), denomination.decimals
        )
        deposits = await self.flow_since(
            asset_symbol, TransactionTag.DEPOSIT, hot_wallet.last_deposit_created_at, denomination.decimals
        )
        withdrawals = await self.flow_since(
            asset_symbol,
            TransactionTag.WITHDRAW,
            hot_wallet.last_withdrawal_created_at,
            denomination.decimals,
        )

        band = FloatBand.compute(params, total_users, max_user)
        logger.debug(
            f"{asset_symbol}: onchain={onchain} total_users={total_users} max_user={max_user} "
            f"min={band.minimum} max={band.maximum} min_trigger={band.min_trigger} "
            f"max_trigger={band.max_trigger}"
        )

        run = FloatManagerRun(
            asset_symbol=asset_symbol,
            network=hot_wallet.network,
            total_user_balance=to_integer_units(total_users),
            deposit_sum=to_integer_units(deposits.total),
            withdrawal_sum=to_integer_units(withdrawals.total),
            float_on_chain_balance=to_integer_units(onchain),
            minimum_balance=to_integer_units(band.minimum),
            maximum_balance=to_integer_units(band.maximum),
            reserved_balance=hot_wallet.reserved_balance,
            deficit=Decimal("0"),
            surplus=Decimal("0"),
            fund_email_sent=False,
            last_run_time=utcnow(),
        )

        if band.needs_funding(onchain):
            deficit = float_deficit(
                deposits.total, withdrawals.total, band.minimum, band.maximum, onchain
            )
            run.deficit = Decimal(to_integer_units(deficit))
            await self.request_funding(run, denomination)
        elif onchain > band.maximum:
            surplus = band.surplus(onchain)
            run.surplus = Decimal(to_integer_units(surplus))
            if surplus < band.max_trigger:
                run.action = f"surplus {run.surplus} below trigger {band.max_trigger}, no transfer"
            else:
                run.action = await self.release_surplus(hot_wallet, denomination, run.surplus)
        else:
            run.action = "float within band"

        async with self.repo.transaction():
            if deposits.last_created_at is not None:
                hot_wallet.last_deposit_created_at = deposits.last_created_at
            if withdrawals.last_created_at is not None:
                hot_wallet.last_withdrawal_created_at = withdrawals.last_created_at
            await self.repo.create(run)

        logger.info(f"Float manager {asset_symbol}: {run.action}")
        return run

    async def flow_since(
        self,
        asset_symbol: str,
        tag: TransactionTag,
        since: Optional[datetime],
        decimals: int,
    ) -> FlowSum:
        """Sum deposits or withdrawals created after ``since`` (base units)."""
        total, last_created_at = await self.repo.sum_transactions_since(asset_symbol, tag, since)
        return FlowSum(total=to_base_units(total, decimals), last_created_at=last_created_at)

    async def already_notified(self, asset_symbol: str, deficit: Decimal) -> bool:
        """Whether a fund email for this exact deficit was delivered today."""
        runs = await self.repo.fetch_float_runs_on(asset_symbol, utcnow().date())
        return any(r.fund_email_sent and Decimal(r.deficit) == deficit for r in runs)

    async def request_funding(self, run: FloatManagerRun, denomination: Denomination) -> None:
        """Email cold wallet operators for the run's deficit and record the outcome on it."""
        asset_symbol = run.asset_symbol
        deficit = run.deficit
        if deficit <= 0:
            run.action = "float at minimum trigger with no deficit"
            return

        if await self.already_notified(asset_symbol, deficit):
            run.action = f"deficit {deficit} already reported today"
            return

        amount = to_display_units(deficit, denomination.decimals)
        run.fund_email_sent = await self.notifier.send_fund_email(asset_symbol, amount)
        if not run.fund_email_sent:
            run.action = f"deficit {deficit}, fund email failed"
        else:
            run.action = f"deficit {deficit}, fund email sent for {amount} {asset_symbol}"

    async def release_surplus(
        self, hot_wallet: HotWalletAsset, denomination: Denomination, surplus: Decimal
    ) -> str:
        """Send the surplus above the band to the brokerage deposit address."""
        asset_symbol = hot_wallet.asset_symbol
        network = denomination.main_coin_asset_symbol if denomination.is_token else None

        try:
            brokerage = await self.order_book.get_deposit_address(asset_symbol, network)
            result = await self.key_management.sign_and_broadcast(
                SignTransactionRequest(
                    from_address=hot_wallet.address,
                    to_address=brokerage.address,
                    amount=int(surplus),
                    asset_symbol=asset_symbol,
                    network=hot_wallet.network,
                    memo=brokerage.tag,
                    process_type=ProcessType.FLOAT,
                    reference=str(uuid.uuid4()),
                )
            )
        except ServicesRequestError as e:
            logger.error(f"Surplus transfer for {asset_symbol} failed: {e}")
            return f"surplus {surplus}, transfer failed: {e.code}"

        amount = to_display_units(surplus, denomination.decimals)
        await self.notifier.send_withdraw_email(
            asset_symbol, amount, brokerage.address, brokerage.tag
        )
        return f"surplus {surplus} sent to brokerage in {result.transaction_hash}"
