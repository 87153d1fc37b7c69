"""Utility modules for the wallet adapter."""

from walletadapter.utils.locks import LockCoordinator, sms_dedup_identifier

__all__ = ["LockCoordinator", "sms_dedup_identifier"]
