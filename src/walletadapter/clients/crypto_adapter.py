"""Crypto adapter client: on-chain balances, broadcast status and address webhooks."""

import logging
from dataclasses import dataclass
from typing import Optional

from walletadapter.clients.base import ServiceClient

logger = logging.getLogger(__name__)


class BroadcastStatus:
    """Status strings reported for a broadcast transaction."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass
class OnchainBalance:
    """Balance of an address in base units."""

    asset_symbol: str
    balance: int
    decimals: int


@dataclass
class BroadcastResult:
    """Broadcast status of a transaction looked up by hash or reference."""

    status: str
    transaction_hash: str = ""
    block_height: int = 0
    transaction_fee: str = "0"

    @property
    def is_success(self) -> bool:
        return self.status == BroadcastStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == BroadcastStatus.FAILED


class CryptoAdapterClient(ServiceClient):
    """Client for the crypto adapter service."""

    service_name = "crypto-adapter"

    async def get_onchain_balance(
        self, asset_symbol: str, address: str, network: str = ""
    ) -> OnchainBalance:
        """Get the on-chain balance of an address."""
        data = await self._request(
            "GET",
            "/onchain-balance",
            params={"assetSymbol": asset_symbol, "address": address, "network": network},
        )
        return OnchainBalance(
            asset_symbol=data.get("assetSymbol", asset_symbol),
            balance=int(data.get("balance") or 0),
            decimals=int(data.get("decimals") or 0),
        )

    async def get_transaction_status(
        self,
        asset_symbol: str,
        transaction_hash: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> BroadcastResult:
        """Look up a broadcast by hash or by the reference it was signed with.

        Raises ServicesRequestError (404) when nothing was broadcast.
        """
        params = {"assetSymbol": asset_symbol}
        if transaction_hash:
            params["transactionHash"] = transaction_hash
        if reference:
            params["reference"] = reference
        data = await self._request("GET", "/transaction-status", params=params)
        return BroadcastResult(
            status=str(data.get("status", BroadcastStatus.PENDING)).upper(),
            transaction_hash=data.get("transactionHash") or "",
            block_height=int(data.get("blockHeight") or 0),
            transaction_fee=str(data.get("transactionFee") or "0"),
        )

    async def subscribe_addresses(self, subscriptions: dict[int, list[str]]) -> None:
        """Register addresses for deposit webhooks, keyed by slip-44 coin type."""
        payload = {
            "subscriptions": {str(coin_type): addresses for coin_type, addresses in subscriptions.items()},
        }
        await self._request("POST", "/webhook/register", json=payload)
        logger.info(
            f"Subscribed {sum(len(a) for a in subscriptions.values())} address(es) "
            f"for {len(subscriptions)} coin type(s)"
        )
