"""
Error Taxonomy — Ledger, Price Feed and Attribution Failures
============================================================

  • LedgerError            — base class for anything the JSON-RPC node reports
  • LedgerConnectionError  — node unreachable; fatal for a discovery/history pass
  • ContractReadError      — eth_call reverted or returned no data
  • PriceFeedError         — price oracle request failed
  • InsufficientDataError  — metrics cannot be computed from the given inputs
  • ConfigError            — invalid configuration value

Per-item failures inside a fan-out batch are never raised to the caller;
they are converted to None / empty results where they happen.
"""


class LedgerError(RuntimeError):
    """Base exception for ledger (JSON-RPC) failures."""


class LedgerConnectionError(LedgerError):
    """Raised when the ledger endpoint cannot be reached at all."""


class ContractReadError(LedgerError):
    """Raised when a contract read reverts or returns an empty payload."""


class PriceFeedError(RuntimeError):
    """Raised when a price oracle request fails."""


class InsufficientDataError(ValueError):
    """Raised when an attribution cannot be computed from the inputs.

    Distinct from a zero-valued result: the caller should present it as
    "no data", not as "data says zero".
    """


class ConfigError(ValueError):
    """Raised for invalid configuration values."""
