"""Error codes and exception types shared across the wallet adapter."""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable error codes exposed to callers and matched on from downstream services."""

    NOT_FOUND = "NOT_FOUND"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
    SERVER_ERR = "SERVER_ERR"
    INPUT_ERR = "INPUT_ERR"
    VALIDATION_ERR = "VALIDATION_ERR"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ASSET_NOT_SUPPORTED = "ASSET_NOT_SUPPORTED"
    DEPOSIT_NOT_ACTIVE = "DEPOSIT_NOT_ACTIVE"
    WITHDRAWAL_NOT_ACTIVE = "WITHDRAWAL_NOT_ACTIVE"
    INVALID_DEBIT = "INVALID_DEBIT"
    INVALID_DEBIT_AMOUNT = "INVALID_DEBIT_AMOUNT"
    BROADCAST_ERR = "BROADCAST_ERR"
    TRANSACTION_BROADCAST_FAILED = "TRANSACTION_BROADCAST_FAILED"
    TRANSACTION_REJECTED_ON_BROADCAST = "TRANSACTION_REJECTED_ON_BROADCAST"
    SWEEP_ERROR_INSUFFICIENT = "SWEEP_ERROR_INSUFFICIENT"
    SWEEP_ERROR_ASSET_NOT_SUPPORTED = "SWEEP_ERROR_ASSET_NOT_SUPPORTED"
    COULD_NOT_SUBSCRIBE_ADDRESS = "COULD_NOT_SUBSCRIBE_ADDRESS"
    TIMEOUT_ERR = "TIMEOUT_ERR"
    LOCK_ERR = "LOCK_ERR"


# Codes that mean the hot wallet cannot cover an outbound transfer
INSUFFICIENT_FLOAT_CODES = frozenset(
    {ErrorCode.INSUFFICIENT_BALANCE.value, ErrorCode.INSUFFICIENT_FUNDS.value}
)

# Codes that mean the network refused the transaction and retrying is pointless
BROADCAST_REJECTED_CODES = frozenset(
    {
        ErrorCode.TRANSACTION_BROADCAST_FAILED.value,
        ErrorCode.TRANSACTION_REJECTED_ON_BROADCAST.value,
    }
)


class WalletAdapterError(Exception):
    """Base class for wallet adapter errors."""

    status_code = 500
    default_code = ErrorCode.SERVER_ERR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if isinstance(code, ErrorCode):
            code = code.value
        self.code = code or self.default_code.value
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(WalletAdapterError):
    """Raised when a record does not exist."""

    status_code = 404
    default_code = ErrorCode.NOT_FOUND


class ServerError(WalletAdapterError):
    """Raised when the store or another internal dependency fails."""

    pass


class InputError(WalletAdapterError):
    """Raised for invalid caller input."""

    status_code = 400
    default_code = ErrorCode.INPUT_ERR


class ServicesRequestError(WalletAdapterError):
    """Typed failure returned by a downstream service.

    The ``code`` is significant: loops branch on it (INSUFFICIENT_BALANCE,
    INSUFFICIENT_FUNDS, ASSET_NOT_SUPPORTED ...).
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        data: Any = None,
    ):
        super().__init__(message, code=code, status_code=status_code)
        self.data = data

    @property
    def is_insufficient_float(self) -> bool:
        return self.code in INSUFFICIENT_FLOAT_CODES

    @property
    def is_broadcast_rejected(self) -> bool:
        return self.code in BROADCAST_REJECTED_CODES

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or self.code in (
            ErrorCode.NOT_FOUND.value,
            ErrorCode.RECORD_NOT_FOUND.value,
        )


class SweepError(WalletAdapterError):
    """Raised when a sweep group cannot be processed."""

    status_code = 400
    default_code = ErrorCode.SWEEP_ERROR_INSUFFICIENT


class LockAcquireError(WalletAdapterError):
    """Raised when a distributed lock is held by someone else."""

    status_code = 409
    default_code = ErrorCode.LOCK_ERR


class LockReleaseError(WalletAdapterError):
    """Raised when a distributed lock could not be released."""

    default_code = ErrorCode.LOCK_ERR
