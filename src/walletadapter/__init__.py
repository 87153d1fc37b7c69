"""Wallet adapter - treasury control plane for a custodial exchange."""

__version__ = "0.1.0"
