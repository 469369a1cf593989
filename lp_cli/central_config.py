"""
Project Configuration — ledger scan settings, price API, version, logging
=========================================================================

Configuration is an explicit value: a LedgerConfig is built once (from
defaults, CLI flags or the environment) and passed to LedgerClient.
Nothing below is read lazily from global state during a scan.

Environment overrides (a local .env file is honoured):
  LP_RPC_URL          JSON-RPC endpoint (default: public 1RPC endpoint)
  LP_CHUNK_SIZE       Max blocks per eth_getLogs window (default: 40000)
  LP_MAX_CHUNKS       Max windows per backward scan (default: 10)
  LP_START_BLOCK      Lowest block a scan may reach (default: 0)
  LP_REQUEST_TIMEOUT  Per-request HTTP timeout in seconds (default: 20)
  LOG_LEVEL           Logging level (default: WARNING)

Source: https://defillama.com/docs/api (coins endpoints)
"""

import logging
import os
import re
from dataclasses import dataclass, replace
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from types import MappingProxyType
from typing import Optional

from dotenv import load_dotenv

from lp_cli.errors import ConfigError
from lp_cli.rpc_helpers import RPC_URLS

load_dotenv()

# Version — single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("lp-cli")
except PackageNotFoundError:
    # Dev / CI: package not installed — read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "LP CLI"

DEFAULT_NETWORK = "base"
DEFAULT_CHUNK_SIZE = 40_000   # conservative eth_getLogs span accepted by public nodes
DEFAULT_MAX_CHUNKS = 10       # how far back a scan walks before giving up
LP_TOKEN_DECIMALS = 18        # Uniswap V2 LP shares are 18-decimal ERC-20s

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Environment variable '{key}' must be an integer, got: {value}")


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Environment variable '{key}' must be a float, got: {value}")


@dataclass(frozen=True)
class LedgerConfig:
    """Settings threaded into LedgerClient at construction."""

    rpc_url: str
    network: str = DEFAULT_NETWORK
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_chunks: int = DEFAULT_MAX_CHUNKS
    start_block: int = 0
    request_timeout: float = 20.0
    lp_decimals: int = LP_TOKEN_DECIMALS

    def __post_init__(self):
        if not self.rpc_url:
            raise ConfigError("rpc_url is required")
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_chunks <= 0:
            raise ConfigError(f"max_chunks must be positive, got {self.max_chunks}")
        if self.start_block < 0:
            raise ConfigError(f"start_block must be non-negative, got {self.start_block}")
        if self.request_timeout <= 0:
            raise ConfigError("request_timeout must be positive")

    @classmethod
    def for_network(cls, network: str = DEFAULT_NETWORK, **overrides) -> "LedgerConfig":
        """Default settings for a supported network, with keyword overrides."""
        if network not in RPC_URLS:
            raise ConfigError(
                f"Unsupported network: {network}. Available: {list(RPC_URLS.keys())}"
            )
        overrides = {k: v for k, v in overrides.items() if v is not None}
        overrides.setdefault("rpc_url", RPC_URLS[network])
        return cls(network=network, **overrides)

    @classmethod
    def from_env(cls, network: str = DEFAULT_NETWORK) -> "LedgerConfig":
        """Network defaults overridden by LP_* environment variables."""
        return cls.for_network(
            network,
            rpc_url=os.getenv("LP_RPC_URL") or None,
            chunk_size=_env_int("LP_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
            max_chunks=_env_int("LP_MAX_CHUNKS", DEFAULT_MAX_CHUNKS),
            start_block=_env_int("LP_START_BLOCK", 0),
            request_timeout=_env_float("LP_REQUEST_TIMEOUT", 20.0),
        )

    def with_overrides(self, **overrides) -> "LedgerConfig":
        """Copy with the given non-None fields replaced (CLI flags)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(frozen=True)
class DefiLlamaAPI:
    """DefiLlama coins API configuration."""

    BASE_URL: str = "https://coins.llama.fi"
    CURRENT_ENDPOINT: str = "/prices/current"
    HISTORICAL_ENDPOINT: str = "/prices/historical"

    TIMEOUT_SECONDS: int = 15

    # Network name → DefiLlama chain slug — immutable mapping
    CHAIN_SLUGS = MappingProxyType(
        {
            "base": "base",
            "ethereum": "ethereum",
            "arbitrum": "arbitrum",
            "polygon": "polygon",
            "optimism": "optimism",
            "bsc": "bsc",
        }
    )

    @staticmethod
    def coin_id(chain: str, address: str) -> str:
        """DefiLlama coin key: '<chain>:<address>'."""
        return f"{chain}:{address.lower()}"

    @classmethod
    def current_prices_url(cls, coins: list[str]) -> str:
        return f"{cls.BASE_URL}{cls.CURRENT_ENDPOINT}/{','.join(coins)}"

    @classmethod
    def historical_price_url(cls, timestamp: int, coins: list[str]) -> str:
        return f"{cls.BASE_URL}{cls.HISTORICAL_ENDPOINT}/{int(timestamp)}/{','.join(coins)}"


def configure_logging(level: Optional[str] = None) -> None:
    """Root logging setup for CLI runs; library modules only create loggers."""
    level_name = (level or os.getenv("LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format=LOG_FORMAT,
    )
