#!/usr/bin/env python3
"""
Constant-Product LP Position Indexer — Wallet Scanner
=====================================================

Discovers the Uniswap V2-style pools a wallet currently provides
liquidity to. There is no on-chain registry of "pools held by a wallet",
so discovery works from the wallet's token receipts:

Flow:
  1. eth_getLogs Transfer(*, wallet)   → every contract that ever credited the wallet
                                         (chunked backward scan, best-effort window)
  2. token0() / token1()               → capability probe: does it look like a pair?
  3. balanceOf(wallet)                 → drop pools the wallet has fully exited
  4. getReserves() / totalSupply()     → current pool state
     name() / symbol() / decimals()    → token metadata (unknown-token sentinel on failure)

Steps 2–4 run concurrently per candidate; one candidate failing never
affects another.

The probe in step 2 is a heuristic: any contract that happens to expose
token0()/token1() is treated as a pool. Its result is reported as a
tri-state (confirmed / rejected / indeterminate) rather than hidden.

Contract References:
  UniswapV2Pair: https://github.com/Uniswap/v2-core/blob/master/contracts/UniswapV2Pair.sol
  ERC-20:        https://eips.ethereum.org/EIPS/eip-20
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

import httpx

from lp_cli.errors import ContractReadError, LedgerError
from lp_cli.ledger_client import LedgerClient, ScanResult
from lp_cli.rpc_helpers import (
    SELECTORS,
    TOPICS,
    ZERO_ADDRESS,
    encode_address as _encode_address,
    encode_topic_address as _encode_topic_address,
    decode_uint as _decode_uint,
    decode_address as _decode_address,
    decode_string as _decode_string,
    is_address as _is_address,
    normalize_symbol as _normalize_symbol,
)

logger = logging.getLogger(__name__)

UNKNOWN_TOKEN_NAME = "Unknown Token"
UNKNOWN_TOKEN_SYMBOL = "???"
DEFAULT_DECIMALS = 18


# ── Data Model ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Token:
    """ERC-20 identity; decimals drive every raw → human conversion."""

    address: str
    symbol: str
    name: str
    decimals: int

    @classmethod
    def unknown(cls, address: str) -> "Token":
        """Sentinel for tokens whose metadata could not be read."""
        return cls(
            address=address.lower(),
            symbol=UNKNOWN_TOKEN_SYMBOL,
            name=UNKNOWN_TOKEN_NAME,
            decimals=DEFAULT_DECIMALS,
        )

    @property
    def is_unknown(self) -> bool:
        return self.name == UNKNOWN_TOKEN_NAME and self.symbol == UNKNOWN_TOKEN_SYMBOL

    def to_units(self, raw: int) -> float:
        return raw / 10**self.decimals


@dataclass(frozen=True)
class Pool:
    """Constant-product pool state at the time it was read."""

    address: str
    token0: Token
    token1: Token
    reserve0_raw: int
    reserve1_raw: int
    total_supply_raw: int
    lp_decimals: int = DEFAULT_DECIMALS

    @property
    def reserve0(self) -> float:
        return self.token0.to_units(self.reserve0_raw)

    @property
    def reserve1(self) -> float:
        return self.token1.to_units(self.reserve1_raw)

    @property
    def total_supply(self) -> float:
        return self.total_supply_raw / 10**self.lp_decimals

    @property
    def k(self) -> float:
        """Invariant k = reserve0 × reserve1 (human units)."""
        return self.reserve0 * self.reserve1

    @property
    def pair(self) -> str:
        return f"{self.token0.symbol}/{self.token1.symbol}"


@dataclass(frozen=True)
class LPPosition:
    """A wallet's LP share in one pool, recomputed from the ledger on every read."""

    pool: Pool
    wallet: str
    lp_balance_raw: int

    @property
    def lp_balance(self) -> float:
        return self.lp_balance_raw / 10**self.pool.lp_decimals

    @property
    def share(self) -> float:
        """balance / totalSupply (0 for an empty pool)."""
        if self.pool.total_supply_raw <= 0:
            return 0.0
        return self.lp_balance_raw / self.pool.total_supply_raw

    @property
    def token0_amount(self) -> float:
        return self.share * self.pool.reserve0

    @property
    def token1_amount(self) -> float:
        return self.share * self.pool.reserve1


class ProbeStatus(Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class PoolProbe:
    """Outcome of the token0()/token1() capability probe."""

    address: str
    status: ProbeStatus
    token0: Optional[str] = None
    token1: Optional[str] = None
    reason: str = ""

    @property
    def confirmed(self) -> bool:
        return self.status is ProbeStatus.CONFIRMED


@dataclass
class DiscoveryResult:
    positions: List[LPPosition] = field(default_factory=list)
    candidates: Set[str] = field(default_factory=set)
    scan: Optional[ScanResult] = None


# ── Position Indexer ────────────────────────────────────────────────────


class PositionIndexer:
    """
    Discovers LP positions held by a wallet.

    Usage:
        indexer = PositionIndexer(LedgerClient(LedgerConfig.for_network("base")))
        positions = await indexer.discover_positions("0x...wallet...")
    """

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger
        self.lp_decimals = ledger.config.lp_decimals

    async def probe_pool(self, address: str) -> PoolProbe:
        """
        Check whether a contract answers token0() and token1().

        CONFIRMED      both calls decode to non-zero addresses
        REJECTED       a call reverted / returned nothing, or a token is 0x0
        INDETERMINATE  transport failure; nothing can be concluded
        """
        try:
            raw0, raw1 = await asyncio.gather(
                self.ledger.call(address, SELECTORS["token0"]),
                self.ledger.call(address, SELECTORS["token1"]),
            )
        except ContractReadError as e:
            return PoolProbe(address, ProbeStatus.REJECTED, reason=str(e))
        except (httpx.HTTPError, LedgerError, ValueError) as e:
            return PoolProbe(address, ProbeStatus.INDETERMINATE, reason=str(e))

        token0 = _decode_address(raw0, 0).lower()
        token1 = _decode_address(raw1, 0).lower()
        if not (_is_address(token0) and _is_address(token1)):
            return PoolProbe(address, ProbeStatus.REJECTED, reason="malformed token address")
        if ZERO_ADDRESS in (token0, token1):
            return PoolProbe(address, ProbeStatus.REJECTED, reason="zero token address")
        return PoolProbe(address, ProbeStatus.CONFIRMED, token0=token0, token1=token1)

    async def fetch_token(self, address: str) -> Token:
        """Read name/symbol/decimals in one batch; unknown-token sentinel on failure."""
        results = await self.ledger.call_batch([
            (address, SELECTORS["name"]),
            (address, SELECTORS["symbol"]),
            (address, SELECTORS["decimals"]),
        ])
        if len(results) != 3 or not all(results):
            return Token.unknown(address)
        try:
            return Token(
                address=address.lower(),
                name=_decode_string(results[0]),
                symbol=_normalize_symbol(_decode_string(results[1])),
                decimals=_decode_uint(results[2], 0),
            )
        except ValueError:
            return Token.unknown(address)

    async def read_balance(self, pool_address: str, wallet: str) -> int:
        """Raw LP share balance of ``wallet`` in ``pool_address``."""
        calldata = SELECTORS["balanceOf"] + _encode_address(wallet)
        result = await self.ledger.call(pool_address, calldata)
        return _decode_uint(result, 0)

    async def read_pool_state(self, address: str, token0: str, token1: str) -> Pool:
        """Reserves, LP supply and token metadata for a confirmed pool."""
        state, meta0, meta1 = await asyncio.gather(
            self.ledger.call_batch([
                (address, SELECTORS["getReserves"]),
                (address, SELECTORS["totalSupply"]),
            ]),
            self.fetch_token(token0),
            self.fetch_token(token1),
        )
        reserves_data, supply_data = state
        if not reserves_data or not supply_data:
            raise ContractReadError(f"Pool state unavailable for {address}")

        return Pool(
            address=address.lower(),
            token0=meta0,
            token1=meta1,
            reserve0_raw=_decode_uint(reserves_data, 0),
            reserve1_raw=_decode_uint(reserves_data, 1),
            total_supply_raw=_decode_uint(supply_data, 0),
            lp_decimals=self.lp_decimals,
        )

    async def read_position(
        self, pool_address: str, wallet: str, probe: Optional[PoolProbe] = None
    ) -> Optional[LPPosition]:
        """
        Full per-candidate pipeline for one pool.

        Returns None when the contract is not a confirmed pool or the wallet
        holds no shares. Read failures after the probe propagate.

        Pass an existing ``probe`` to skip the token0()/token1() reads.
        """
        probe = probe or await self.probe_pool(pool_address)
        if not probe.confirmed:
            logger.debug("Skipping %s: %s (%s)", pool_address, probe.status.value, probe.reason)
            return None

        balance = await self.read_balance(pool_address, wallet)
        if balance == 0:
            return None

        pool = await self.read_pool_state(pool_address, probe.token0, probe.token1)
        return LPPosition(pool=pool, wallet=wallet.lower(), lp_balance_raw=balance)

    async def find_candidate_pools(self, wallet: str) -> DiscoveryResult:
        """Contracts that sent the wallet a Transfer within the scan window."""
        topics = [TOPICS["Transfer"], None, _encode_topic_address(wallet)]
        scan = await self.ledger.chunked_scan(None, topics)
        return DiscoveryResult(candidates={log.address for log in scan.logs}, scan=scan)

    async def discover(self, wallet: str) -> DiscoveryResult:
        """
        Discover every pool where the wallet currently holds LP shares.

        Best-effort: positions whose receipts fall outside the scan window
        are not found (see lp_cli.ledger_client).

        Raises:
            ValueError: Invalid wallet address.
            LedgerConnectionError: Ledger unreachable.
        """
        if not _is_address(wallet):
            raise ValueError(f"Invalid wallet address: {wallet}")

        result = await self.find_candidate_pools(wallet)
        logger.info(
            "Found %d candidate contract(s) for %s", len(result.candidates), wallet
        )

        async def _inspect(candidate: str) -> Optional[LPPosition]:
            try:
                return await self.read_position(candidate, wallet)
            except Exception as e:  # noqa: BLE001
                logger.warning("Position read failed for %s: %s", candidate, e)
                return None

        found = await asyncio.gather(*[_inspect(c) for c in sorted(result.candidates)])
        result.positions = [p for p in found if p is not None]

        # Display order only: largest share first
        result.positions.sort(key=lambda p: -p.share)
        return result

    async def discover_positions(self, wallet: str) -> List[LPPosition]:
        """Positions only; see discover() for scan diagnostics."""
        return (await self.discover(wallet)).positions


def estimate_supply_from_reserves(reserve0_raw: int, reserve1_raw: int) -> int:
    """LP supply implied by the constant-product mint rule: sqrt(r0 × r1) in raw units."""
    if reserve0_raw <= 0 or reserve1_raw <= 0:
        return 0
    return math.isqrt(reserve0_raw * reserve1_raw)
