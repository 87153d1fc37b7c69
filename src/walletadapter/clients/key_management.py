"""Key management service client.

Address generation and transaction signing are delegated to the key
management service; it also broadcasts what it signs.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from walletadapter.clients.base import ServiceClient

logger = logging.getLogger(__name__)


class ProcessType:
    """Why a transaction is being sent. Forwarded to the signer for bookkeeping."""

    WITHDRAW = "WITHDRAW"
    FLOAT = "FLOAT"
    SWEEP = "SWEEP"


@dataclass
class GeneratedAddress:
    """Address issued by the key management service."""

    address: str
    address_type: Optional[str] = None


@dataclass
class SignTransactionRequest:
    """Single-address transfer to sign and broadcast. ``amount`` is in base units."""

    from_address: str
    to_address: str
    amount: int
    asset_symbol: str
    process_type: str
    reference: str
    memo: str = ""
    network: str = ""
    is_sweep: bool = False

    def to_payload(self) -> dict:
        return {
            "fromAddress": self.from_address,
            "toAddress": self.to_address,
            "amount": str(self.amount),
            "assetSymbol": self.asset_symbol,
            "network": self.network,
            "memo": self.memo,
            "isSweep": self.is_sweep,
            "processType": self.process_type,
            "reference": self.reference,
        }


@dataclass
class BatchRecipient:
    address: str
    value: int


@dataclass
class SignBatchRequest:
    """UTXO transaction spending ``origins`` to many recipients (base units)."""

    asset_symbol: str
    change_address: str
    origins: list[str]
    recipients: list[BatchRecipient]
    process_type: str
    reference: str
    network: str = ""
    is_sweep: bool = False
    fee_rate: Optional[int] = None

    def to_payload(self) -> dict:
        payload = {
            "assetSymbol": self.asset_symbol,
            "network": self.network,
            "changeAddress": self.change_address,
            "origins": list(self.origins),
            "recipients": [
                {"address": r.address, "value": str(r.value)} for r in self.recipients
            ],
            "isSweep": self.is_sweep,
            "processType": self.process_type,
            "reference": self.reference,
        }
        if self.fee_rate is not None:
            payload["feeRate"] = self.fee_rate
        return payload


@dataclass
class SignResult:
    """Outcome of a successful sign and broadcast."""

    transaction_hash: str
    raw: dict = field(default_factory=dict)


class KeyManagementClient(ServiceClient):
    """Client for the key management service."""

    service_name = "key-management"

    def __init__(self, *args, sign_timeout: float = 120.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.sign_timeout = sign_timeout

    async def generate_address(
        self,
        user_id: str,
        asset_symbol: str,
        address_type: Optional[str] = None,
        network: str = "",
    ) -> GeneratedAddress:
        """Generate a new deposit address for a user."""
        payload = {"userId": user_id, "symbol": asset_symbol, "network": network}
        if address_type:
            payload["addressType"] = address_type
        data = await self._request("POST", "/address/create", json=payload)
        return GeneratedAddress(address=data["address"], address_type=data.get("type"))

    async def generate_all_addresses(
        self, user_id: str, asset_symbol: str, network: str = ""
    ) -> list[GeneratedAddress]:
        """Generate one address per supported address type (e.g. BTC legacy and segwit)."""
        data = await self._request(
            "POST",
            "/address/create/all",
            json={"userId": user_id, "symbol": asset_symbol, "network": network},
        )
        return [
            GeneratedAddress(address=item["address"], address_type=item.get("type"))
            for item in data.get("addresses", [])
        ]

    async def sign_and_broadcast(self, request: SignTransactionRequest) -> SignResult:
        """Sign a single transfer and broadcast it."""
        logger.info(
            f"Signing {request.process_type} {request.amount} {request.asset_symbol} "
            f"to {request.to_address} (ref {request.reference})"
        )
        data = await self._request(
            "POST",
            "/sign-transaction/broadcast",
            json=request.to_payload(),
            timeout=self.sign_timeout,
        )
        return SignResult(transaction_hash=data["transactionHash"], raw=data)

    async def sign_batch_and_broadcast(self, request: SignBatchRequest) -> SignResult:
        """Sign a multi-recipient UTXO transaction and broadcast it."""
        logger.info(
            f"Signing {request.process_type} batch of {len(request.recipients)} "
            f"{request.asset_symbol} outputs (ref {request.reference})"
        )
        data = await self._request(
            "POST",
            "/batch/sign-transaction/broadcast",
            json=request.to_payload(),
            timeout=self.sign_timeout,
        )
        return SignResult(transaction_hash=data["transactionHash"], raw=data)
