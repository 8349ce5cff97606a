"""Custody core: deposit tracking, sweeps and withdrawals across EVM and XRP."""

__version__ = "0.1.0"
