"""Clients for the downstream services the treasury loops depend on."""

from walletadapter.clients.base import AuthTokenCache, ServiceClient
from walletadapter.clients.crypto_adapter import BroadcastResult, BroadcastStatus, CryptoAdapterClient
from walletadapter.clients.key_management import (
    BatchRecipient,
    KeyManagementClient,
    ProcessType,
    SignBatchRequest,
    SignTransactionRequest,
)
from walletadapter.clients.locker import Lease, LockerClient
from walletadapter.clients.notifier import EmailRequest, EmailUser, NotifierClient, SmsRequest
from walletadapter.clients.order_book import DepositAddress, OrderBookClient

__all__ = [
    "AuthTokenCache",
    "BatchRecipient",
    "BroadcastResult",
    "BroadcastStatus",
    "CryptoAdapterClient",
    "DepositAddress",
    "EmailRequest",
    "EmailUser",
    "KeyManagementClient",
    "Lease",
    "LockerClient",
    "NotifierClient",
    "OrderBookClient",
    "ProcessType",
    "ServiceClient",
    "SignBatchRequest",
    "SignTransactionRequest",
    "SmsRequest",
]
