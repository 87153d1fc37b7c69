"""Order book (brokerage) client."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from walletadapter.clients.base import ServiceClient


@dataclass
class DepositAddress:
    """Brokerage deposit address with its memo/tag, if any."""

    address: str
    tag: str = ""


@dataclass
class BrokerageWithdrawal:
    id: str
    status: str


class OrderBookClient(ServiceClient):
    """Client for the order book service that fronts the brokerage account."""

    service_name = "order-book"

    async def get_deposit_address(self, asset_symbol: str, network: Optional[str] = None) -> DepositAddress:
        """Get the brokerage deposit address for an asset.

        Tokens are looked up by passing their main coin as ``network``.
        """
        params = {"coin": asset_symbol.lower()}
        if network:
            params["network"] = network.lower()
        data = await self._request("GET", "/deposit-address", params=params)
        return DepositAddress(address=data["address"], tag=data.get("tag") or "")

    async def withdraw_to_hot_wallet(
        self,
        withdraw_order_id: str,
        asset_symbol: str,
        amount: Decimal,
        address: str,
        address_tag: str = "",
        network: str = "",
    ) -> BrokerageWithdrawal:
        """Ask the brokerage to send funds back to a hot wallet address."""
        data = await self._request(
            "POST",
            "/withdraw",
            json={
                "withdrawOrderId": withdraw_order_id,
                "network": network,
                "address": address,
                "addressTag": address_tag,
                "amount": {"value": str(amount), "denomination": asset_symbol.lower()},
            },
        )
        return BrokerageWithdrawal(id=str(data.get("id", "")), status=data.get("status", ""))
