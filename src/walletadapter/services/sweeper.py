"""Deposit sweeper - consolidates confirmed deposits off user addresses.

Completed deposits that were not swept yet are grouped by the address they
landed on. Each group above its asset minimum is moved either to the hot wallet
(when the float is low) or to the brokerage deposit address. BTC deposits are
swept together in one UTXO transaction whose outputs are split between float
and brokerage.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from walletadapter.clients.crypto_adapter import CryptoAdapterClient
from walletadapter.clients.key_management import (
    BatchRecipient,
    KeyManagementClient,
    ProcessType,
    SignBatchRequest,
    SignTransactionRequest,
)
from walletadapter.clients.order_book import OrderBookClient
from walletadapter.config import Settings
from walletadapter.errors import ErrorCode, ServicesRequestError, SweepError
from walletadapter.ledger.models import (
    ChainTransaction,
    Denomination,
    FloatManagerParam,
    HotWalletAsset,
    Transaction,
    TransactionTag,
)
from walletadapter.ledger.repository import LedgerRepository
from walletadapter.treasury import (
    float_deficit,
    sweep_band,
    sweep_split,
    to_base_units,
    to_integer_units,
    total_user_balance,
)
from walletadapter.utils.locks import SWEEP_LOCK, SWEEP_LOCK_MS, LockCoordinator

logger = logging.getLogger(__name__)

# Assets swept as a single multi-origin UTXO transaction
UTXO_ASSETS = frozenset({"BTC"})

# slip-44 coin type of Binance Chain (BEP-2) assets
BNB_TOKEN_SLIP = 714

# Memo attached to BEP-2 fee top-ups so deposits scanners ignore them
SWEEP_FEE_MEMO = "9999999999999"

GROUP_SEPARATOR = "|"


@dataclass
class SweepGroup:
    """Unswept deposits that landed on one user address."""

    address: str
    asset_symbol: str
    network: str
    transactions: list[Transaction] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.address}{GROUP_SEPARATOR}{self.asset_symbol}"

    @property
    def total(self) -> Decimal:
        return sum((Decimal(t.value) for t in self.transactions), Decimal("0"))

    @property
    def first_reference(self) -> str:
        return self.transactions[0].transaction_reference


@dataclass
class SweepDestination:
    address: str
    memo: str = ""
    to_float: bool = False


@dataclass
class SweepReport:
    """What one sweeper run did."""

    swept: list[str] = field(default_factory=list)
    fee_funded: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    transaction_hashes: list[str] = field(default_factory=list)


def is_bep2_token(denomination: Denomination) -> bool:
    return (
        bool(denomination.is_token)
        and denomination.coin_type == BNB_TOKEN_SLIP
        and denomination.asset_symbol != denomination.main_coin
    )


class Sweeper:
    """Moves confirmed deposits to the float or the brokerage."""

    def __init__(
        self,
        repo: LedgerRepository,
        crypto_adapter: CryptoAdapterClient,
        order_book: OrderBookClient,
        key_management: KeyManagementClient,
        locks: LockCoordinator,
        settings: Settings,
    ):
        self.repo = repo
        self.crypto_adapter = crypto_adapter
        self.order_book = order_book
        self.key_management = key_management
        self.locks = locks
        self.settings = settings

    async def run(self) -> SweepReport:
        """Sweep every eligible deposit while holding the sweep lock.

        Raises:
            LockAcquireError: another worker is already sweeping
        """
        report = SweepReport()
        async with self.locks.hold(SWEEP_LOCK, SWEEP_LOCK_MS):
            candidates = await self.repo.fetch_sweep_candidates()
            if not candidates:
                logger.debug("No deposits to sweep")
                return report

            utxo = [c for c in candidates if c.asset_symbol in UTXO_ASSETS]
            singles = [c for c in candidates if c.asset_symbol not in UTXO_ASSETS]
            logger.info(
                f"Sweeping {len(candidates)} deposit(s): "
                f"{len(utxo)} UTXO, {len(singles)} single-address"
            )

            for group in await self.group_candidates(singles):
                await self._guarded(group.key, self.sweep_group(group, report), report)

            utxo_by_asset: dict[str, list[Transaction]] = {}
            for candidate in utxo:
                utxo_by_asset.setdefault(candidate.asset_symbol, []).append(candidate)
            for asset_symbol, transactions in utxo_by_asset.items():
                await self._guarded(
                    asset_symbol, self.sweep_utxo_batch(asset_symbol, transactions, report), report
                )

        return report

    async def _guarded(self, key: str, job, report: SweepReport) -> None:
        """Run one group; failures are logged and the next group still runs."""
        try:
            await job
        except SweepError as e:
            logger.info(f"Sweep skipped for {key}: {e}")
            report.skipped[key] = e.code
        except Exception as e:
            logger.error(f"Sweep failed for {key}: {e}")
            report.skipped[key] = getattr(e, "code", ErrorCode.SERVER_ERR.value)

    async def group_candidates(self, candidates: list[Transaction]) -> list[SweepGroup]:
        """Group deposits by the address they were received on."""
        groups: dict[str, SweepGroup] = {}
        for candidate in candidates:
            chain_tx = await self._chain_transaction(candidate)
            if chain_tx is None:
                logger.warning(
                    f"Deposit {candidate.transaction_reference} has no chain transaction, not sweeping"
                )
                continue
            group = SweepGroup(
                address=chain_tx.recipient_address,
                asset_symbol=candidate.asset_symbol,
                network=candidate.network,
            )
            groups.setdefault(group.key, group).transactions.append(candidate)
        return list(groups.values())

    async def sweep_group(self, group: SweepGroup, report: SweepReport) -> None:
        """Sweep one address for one asset."""
        denomination = await self.repo.get_by_fields(Denomination, asset_symbol=group.asset_symbol)

        total = group.total
        minimum = self.minimum_sweepable(denomination)
        if total < minimum:
            raise SweepError(
                f"{total} {group.asset_symbol} on {group.address} is below minimum sweep {minimum}",
                code=ErrorCode.SWEEP_ERROR_INSUFFICIENT,
            )
        self.check_sweep_fee(denomination, group)

        hot_wallet = await self.repo.get_by_fields(
            HotWalletAsset, asset_symbol=group.asset_symbol, network=group.network
        )
        destination = await self.sweep_destination(hot_wallet, denomination)

        if is_bep2_token(denomination):
            if await self.fund_sweep_fee(denomination, group, report):
                return

        try:
            result = await self.key_management.sign_and_broadcast(
                SignTransactionRequest(
                    from_address=group.address,
                    to_address=destination.address,
                    amount=0,
                    asset_symbol=group.asset_symbol,
                    network=group.network,
                    memo=destination.memo,
                    is_sweep=True,
                    process_type=ProcessType.SWEEP,
                    reference=group.first_reference,
                )
            )
        except ServicesRequestError as e:
            if e.code == ErrorCode.INSUFFICIENT_FUNDS.value:
                # Nothing left on the address to move
                logger.info(f"{group.key} has no spendable funds, marking as swept")
                await self._mark_swept(group.transactions, report)
                return
            raise

        report.transaction_hashes.append(result.transaction_hash)
        await self._mark_swept(group.transactions, report)
        target = "float" if destination.to_float else "brokerage"
        logger.info(f"Swept {total} {group.asset_symbol} from {group.address} to {target}")

    async def sweep_utxo_batch(
        self, asset_symbol: str, candidates: list[Transaction], report: SweepReport
    ) -> None:
        """Sweep all UTXO deposits of an asset in one transaction."""
        total = sum((Decimal(c.value) for c in candidates), Decimal("0"))
        minimum = self.settings.minimum_sweep(asset_symbol)
        if minimum is None:
            raise SweepError(
                f"No minimum sweep configured for {asset_symbol}",
                code=ErrorCode.SWEEP_ERROR_ASSET_NOT_SUPPORTED,
            )
        if total < minimum:
            raise SweepError(
                f"{total} {asset_symbol} is below minimum sweep {minimum}",
                code=ErrorCode.SWEEP_ERROR_INSUFFICIENT,
            )

        origins: list[str] = []
        included: list[Transaction] = []
        for candidate in candidates:
            chain_tx = await self._chain_transaction(candidate)
            if chain_tx is None:
                logger.warning(
                    f"Deposit {candidate.transaction_reference} has no chain transaction, not sweeping"
                )
                continue
            included.append(candidate)
            if chain_tx.recipient_address not in origins:
                origins.append(chain_tx.recipient_address)
        if not included:
            return

        denomination = await self.repo.get_by_fields(Denomination, asset_symbol=asset_symbol)
        network = included[0].network
        hot_wallet = await self.repo.get_by_fields(
            HotWalletAsset, asset_symbol=asset_symbol, network=network
        )
        params = await self.repo.get_by_fields(
            FloatManagerParam, asset_symbol=asset_symbol, network=network
        )

        balance = await self.crypto_adapter.get_onchain_balance(
            asset_symbol, hot_wallet.address, network
        )
        onchain = Decimal(balance.balance)
        total_users = total_user_balance(
            await self.repo.sum_amount_field(denomination.id), denomination.decimals
        )
        band_min, band_max = sweep_band(params, total_users)

        # Read the flow window without moving the float manager's markers
        deposits, _ = await self.repo.sum_transactions_since(
            asset_symbol, TransactionTag.DEPOSIT, hot_wallet.last_deposit_created_at
        )
        withdrawals, _ = await self.repo.sum_transactions_since(
            asset_symbol, TransactionTag.WITHDRAW, hot_wallet.last_withdrawal_created_at
        )
        deficit = float_deficit(
            to_base_units(deposits, denomination.decimals),
            to_base_units(withdrawals, denomination.decimals),
            band_min,
            band_max,
            onchain,
        )

        included_total = sum((Decimal(c.value) for c in included), Decimal("0"))
        fund = Decimal(to_integer_units(to_base_units(included_total, denomination.decimals)))
        float_percent, brokerage_percent = sweep_split(onchain, band_min, deficit, fund)
        if float_percent == 0 and brokerage_percent == 0:
            return

        brokerage = await self.order_book.get_deposit_address(asset_symbol)
        float_amount = to_integer_units(fund * float_percent / 100)
        recipients = []
        if float_percent > 0:
            recipients.append(BatchRecipient(address=hot_wallet.address, value=float_amount))
        if brokerage_percent > 0:
            recipients.append(
                BatchRecipient(address=brokerage.address, value=int(fund) - float_amount)
            )

        result = await self.key_management.sign_batch_and_broadcast(
            SignBatchRequest(
                asset_symbol=asset_symbol,
                network=network,
                change_address=brokerage.address,
                origins=origins,
                recipients=recipients,
                is_sweep=True,
                process_type=ProcessType.SWEEP,
                reference=included[0].transaction_reference,
            )
        )
        report.transaction_hashes.append(result.transaction_hash)
        await self._mark_swept(included, report)
        logger.info(
            f"Swept {len(included)} {asset_symbol} deposit(s) from {len(origins)} address(es): "
            f"{float_percent}% float, {brokerage_percent}% brokerage"
        )

    def minimum_sweepable(self, denomination: Denomination) -> Decimal:
        """Smallest group total worth sweeping for an asset (display units)."""
        if denomination.minimum_sweepable and Decimal(denomination.minimum_sweepable) > 0:
            return Decimal(denomination.minimum_sweepable)
        minimum = self.settings.minimum_sweep(denomination.asset_symbol)
        if minimum is None:
            raise SweepError(
                f"Sweeping {denomination.asset_symbol} is not supported",
                code=ErrorCode.SWEEP_ERROR_ASSET_NOT_SUPPORTED,
            )
        return minimum

    def check_sweep_fee(self, denomination: Denomination, group: SweepGroup) -> None:
        """Refuse a sweep whose own-coin fee is above the allowed share of the group value.

        Token fees are paid in the main coin and are not compared.
        """
        sweep_fee = Decimal(denomination.sweep_fee or 0)
        if sweep_fee <= 0 or denomination.is_token:
            return
        value = to_base_units(group.total, denomination.decimals)
        allowed = self.settings.sweep_fee_percentage_threshold * value
        if sweep_fee > allowed:
            raise SweepError(
                f"Sweep fee {sweep_fee} for {group.key} is above {allowed} "
                f"({self.settings.sweep_fee_percentage_threshold} of {value})",
                code=ErrorCode.SWEEP_ERROR_INSUFFICIENT,
            )

    async def sweep_destination(
        self, hot_wallet: HotWalletAsset, denomination: Denomination
    ) -> SweepDestination:
        """Float address while the float is at or below its minimum, brokerage otherwise."""
        asset_symbol = denomination.asset_symbol
        params = await self.repo.get_by_fields(
            FloatManagerParam, asset_symbol=asset_symbol, network=hot_wallet.network
        )
        balance = await self.crypto_adapter.get_onchain_balance(
            asset_symbol, hot_wallet.address, hot_wallet.network
        )
        total_users = total_user_balance(
            await self.repo.sum_amount_field(denomination.id), denomination.decimals
        )
        minimum, _ = sweep_band(params, total_users)

        if Decimal(balance.balance) <= minimum:
            return SweepDestination(address=hot_wallet.address, to_float=True)

        network = denomination.main_coin_asset_symbol if denomination.is_token else None
        brokerage = await self.order_book.get_deposit_address(asset_symbol, network)
        return SweepDestination(address=brokerage.address, memo=brokerage.tag)

    async def fund_sweep_fee(
        self, denomination: Denomination, group: SweepGroup, report: SweepReport
    ) -> bool:
        """Top up the main coin on a BEP-2 deposit address so the token can move.

        Returns:
            True if a fee transfer was sent and the sweep should wait for it
        """
        main_coin = denomination.main_coin
        balance = await self.crypto_adapter.get_onchain_balance(main_coin, group.address)
        sweep_fee = int(denomination.sweep_fee or 0)
        if balance.balance >= sweep_fee:
            return False

        fee_wallet = await self.repo.find_by_fields(HotWalletAsset, asset_symbol=main_coin)
        if fee_wallet is None:
            fee_wallet = await self.repo.get_by_fields(
                HotWalletAsset, asset_symbol=group.asset_symbol, network=group.network
            )

        await self.key_management.sign_and_broadcast(
            SignTransactionRequest(
                from_address=fee_wallet.address,
                to_address=group.address,
                amount=sweep_fee,
                asset_symbol=main_coin,
                memo=SWEEP_FEE_MEMO,
                process_type=ProcessType.FLOAT,
                reference=f"{main_coin}-{group.first_reference}",
            )
        )
        report.fee_funded.append(group.key)
        logger.info(
            f"Sent {sweep_fee} {main_coin} sweep fee to {group.address}; "
            f"{group.asset_symbol} sweep waits for the next run"
        )
        return True

    async def _chain_transaction(self, candidate: Transaction) -> Optional[ChainTransaction]:
        if candidate.on_chain_tx_id is None:
            return None
        return await self.repo.find_by_fields(ChainTransaction, id=candidate.on_chain_tx_id)

    async def _mark_swept(self, transactions: list[Transaction], report: SweepReport) -> None:
        ids = [t.id for t in transactions]
        async with self.repo.transaction():
            await self.repo.bulk_update_transaction_swept_status(ids)
        report.swept.extend(str(i) for i in ids)
