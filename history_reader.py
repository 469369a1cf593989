#!/usr/bin/env python3
"""
Position History Reader — LP share timeline from on-chain logs
==============================================================

Rebuilds the ordered Add/Remove timeline of one wallet in one
constant-product pool, with the pool's reserve state at each event.

Flow:
  1. eth_getLogs Transfer(*, wallet) and Transfer(wallet, *) on the pool
     (two chunked backward scans, run concurrently)
  2. per distinct block, concurrently:
       eth_getBlockByNumber       → timestamp
       eth_getLogs Sync/Mint/Burn → reserve snapshot + native amounts
       totalSupply() @ block      → LP supply for apportionment
  3. classify, attach reserves and amounts, sort by (block, logIndex)

Underlying amounts:
  - Exact when the transaction carries the pool's own Mint (wallet minted
    from 0x0) or Burn (wallet sent shares to the pool) event.
  - Otherwise APPROXIMATED by linear apportionment
        amount_i = lp_amount / total_supply_at_block × reserve_i
    and flagged ``amounts_exact=False``. Reserves and supply are
    end-of-transaction / end-of-block values, so this is reduced precision.

Scans inherit the early-stop window of lp_cli.ledger_client: events older
than the first non-empty window are not returned.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import httpx

from lp_cli.errors import LedgerError
from lp_cli.ledger_client import LedgerClient, LogRecord, ScanResult
from lp_cli.rpc_helpers import (
    SELECTORS,
    TOPICS,
    ZERO_ADDRESS,
    decode_topic_address,
    decode_uint,
    encode_topic_address,
    is_address,
)
from position_indexer import PositionIndexer, Token, estimate_supply_from_reserves

logger = logging.getLogger(__name__)


class EventKind(Enum):
    ADD = "Add"
    REMOVE = "Remove"


@dataclass(frozen=True)
class LiquidityEvent:
    """One LP share movement into or out of the wallet."""

    kind: EventKind
    pool: str
    transaction_hash: str
    block_number: int
    log_index: int
    timestamp: Optional[int]  # unix seconds; None if the block read failed
    lp_amount_raw: int
    lp_amount: float
    amount0: float
    amount1: float
    reserve0: float
    reserve1: float
    total_supply: Optional[float] = None
    counterparty: str = ""
    amounts_exact: bool = False

    @property
    def k(self) -> float:
        return self.reserve0 * self.reserve1

    @property
    def is_add(self) -> bool:
        return self.kind is EventKind.ADD

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass
class PositionHistory:
    """Reconstructed timeline plus what the scans covered."""

    pool: str
    wallet: str
    token0: Optional[Token] = None
    token1: Optional[Token] = None
    events: List[LiquidityEvent] = field(default_factory=list)
    no_history_found: bool = False
    scans: List[ScanResult] = field(default_factory=list)

    @property
    def add_count(self) -> int:
        return sum(1 for e in self.events if e.kind is EventKind.ADD)

    @property
    def remove_count(self) -> int:
        return sum(1 for e in self.events if e.kind is EventKind.REMOVE)

    @property
    def exact_count(self) -> int:
        return sum(1 for e in self.events if e.amounts_exact)

    @property
    def first_timestamp(self) -> Optional[int]:
        stamps = [e.timestamp for e in self.events if e.timestamp]
        return min(stamps) if stamps else None

    @property
    def last_timestamp(self) -> Optional[int]:
        stamps = [e.timestamp for e in self.events if e.timestamp]
        return max(stamps) if stamps else None


@dataclass
class BlockState:
    """Pool state observed in a single block."""

    block_number: int
    timestamp: Optional[int] = None
    syncs: List[LogRecord] = field(default_factory=list)
    mints: List[LogRecord] = field(default_factory=list)
    burns: List[LogRecord] = field(default_factory=list)
    total_supply_raw: Optional[int] = None


def pick_sync(syncs: List[LogRecord], tx_hash: str) -> Optional[LogRecord]:
    """Last Sync of the same transaction, else the block's last Sync."""
    if not syncs:
        return None
    ordered = sorted(syncs, key=lambda log: log.log_index)
    same_tx = [s for s in ordered if s.transaction_hash == tx_hash]
    return same_tx[-1] if same_tx else ordered[-1]


def pick_native(natives: List[LogRecord], transfer: LogRecord) -> Optional[LogRecord]:
    """Mint/Burn of the same transaction, preferring the first one after the transfer."""
    same_tx = sorted(
        (n for n in natives if n.transaction_hash == transfer.transaction_hash),
        key=lambda log: log.log_index,
    )
    if not same_tx:
        return None
    after = [n for n in same_tx if n.log_index > transfer.log_index]
    return after[0] if after else same_tx[-1]


class HistoryReader:
    """
    Reconstructs the liquidity history of (pool, wallet).

    Usage:
        reader = HistoryReader(LedgerClient(LedgerConfig.for_network("base")))
        history = await reader.reconstruct_history(pool, wallet)
    """

    def __init__(self, ledger: LedgerClient, indexer: Optional[PositionIndexer] = None):
        self.ledger = ledger
        self.indexer = indexer or PositionIndexer(ledger)
        self.lp_decimals = ledger.config.lp_decimals

    async def scan_transfers(
        self, pool: str, wallet: str
    ) -> Tuple[List[LogRecord], List[ScanResult]]:
        """Share transfers into and out of the wallet, de-duplicated.

        Wallet-to-self transfers move no liquidity and are dropped.
        """
        wallet_topic = encode_topic_address(wallet)
        latest = await self.ledger.latest_block()
        scan_in, scan_out = await asyncio.gather(
            self.ledger.chunked_scan(pool, [TOPICS["Transfer"], None, wallet_topic], latest),
            self.ledger.chunked_scan(pool, [TOPICS["Transfer"], wallet_topic], latest),
        )

        unique: Dict[Tuple[str, int], LogRecord] = {}
        for log in scan_in.logs + scan_out.logs:
            if decode_topic_address(log.topics[1]) == decode_topic_address(log.topics[2]):
                continue
            unique.setdefault((log.transaction_hash, log.log_index), log)
        return list(unique.values()), [scan_in, scan_out]

    async def read_block_state(self, pool: str, block_number: int) -> BlockState:
        """Timestamp, Sync/Mint/Burn logs and LP supply for one block; each read may fail alone."""
        state = BlockState(block_number=block_number)

        async def _timestamp():
            try:
                state.timestamp = await self.ledger.block_timestamp(block_number)
            except (httpx.HTTPError, LedgerError, ValueError, KeyError) as e:
                logger.warning("Block %d timestamp unavailable: %s", block_number, e)

        async def _pool_logs():
            topics = [[TOPICS["Sync"], TOPICS["Mint"], TOPICS["Burn"]]]
            try:
                logs = await self.ledger.get_logs(pool, topics, block_number, block_number)
            except (httpx.HTTPError, LedgerError, ValueError, KeyError) as e:
                logger.warning("Pool logs for block %d unavailable: %s", block_number, e)
                return
            for log in logs:
                topic0 = log.topics[0] if log.topics else ""
                if topic0 == TOPICS["Sync"]:
                    state.syncs.append(log)
                elif topic0 == TOPICS["Mint"]:
                    state.mints.append(log)
                elif topic0 == TOPICS["Burn"]:
                    state.burns.append(log)

        async def _supply():
            try:
                raw = await self.ledger.call(pool, SELECTORS["totalSupply"], block=block_number)
                state.total_supply_raw = decode_uint(raw, 0)
            except (httpx.HTTPError, LedgerError, ValueError) as e:
                # Non-archive nodes reject historical state reads
                logger.debug("totalSupply @ %d unavailable: %s", block_number, e)

        await asyncio.gather(_timestamp(), _pool_logs(), _supply())
        return state

    def build_event(
        self,
        transfer: LogRecord,
        wallet: str,
        state: BlockState,
        token0: Token,
        token1: Token,
    ) -> LiquidityEvent:
        """Classify one Transfer and attach reserves plus underlying amounts."""
        wallet = wallet.lower()
        sender = decode_topic_address(transfer.topics[1])
        recipient = decode_topic_address(transfer.topics[2])
        kind = EventKind.ADD if recipient == wallet else EventKind.REMOVE
        counterparty = sender if kind is EventKind.ADD else recipient

        lp_raw = decode_uint(transfer.data, 0)
        sync = pick_sync(state.syncs, transfer.transaction_hash)
        reserve0_raw = decode_uint(sync.data, 0) if sync else 0
        reserve1_raw = decode_uint(sync.data, 1) if sync else 0

        native = None
        if kind is EventKind.ADD and counterparty == ZERO_ADDRESS:
            native = pick_native(state.mints, transfer)
        elif kind is EventKind.REMOVE and counterparty == transfer.address:
            native = pick_native(state.burns, transfer)

        if native is not None:
            amount0_raw = decode_uint(native.data, 0)
            amount1_raw = decode_uint(native.data, 1)
            amount0 = token0.to_units(amount0_raw)
            amount1 = token1.to_units(amount1_raw)
        else:
            supply_raw = state.total_supply_raw or estimate_supply_from_reserves(
                reserve0_raw, reserve1_raw
            )
            share = lp_raw / supply_raw if supply_raw > 0 else 0.0
            amount0 = share * token0.to_units(reserve0_raw)
            amount1 = share * token1.to_units(reserve1_raw)

        lp_scale = 10**self.lp_decimals
        return LiquidityEvent(
            kind=kind,
            pool=transfer.address,
            transaction_hash=transfer.transaction_hash,
            block_number=transfer.block_number,
            log_index=transfer.log_index,
            timestamp=state.timestamp,
            lp_amount_raw=lp_raw,
            lp_amount=lp_raw / lp_scale,
            amount0=amount0,
            amount1=amount1,
            reserve0=token0.to_units(reserve0_raw),
            reserve1=token1.to_units(reserve1_raw),
            total_supply=(
                state.total_supply_raw / lp_scale
                if state.total_supply_raw is not None
                else None
            ),
            counterparty=counterparty,
            amounts_exact=native is not None,
        )

    async def resolve_tokens(self, pool: str) -> Tuple[Token, Token]:
        probe = await self.indexer.probe_pool(pool)
        if not probe.confirmed:
            raise ValueError(
                f"{pool} is not a readable constant-product pool "
                f"({probe.status.value}: {probe.reason})"
            )
        return await asyncio.gather(
            self.indexer.fetch_token(probe.token0),
            self.indexer.fetch_token(probe.token1),
        )

    async def reconstruct_history(
        self,
        pool: str,
        wallet: str,
        token0: Optional[Token] = None,
        token1: Optional[Token] = None,
    ) -> PositionHistory:
        """
        Ordered Add/Remove timeline for ``wallet`` in ``pool``.

        ``no_history_found`` is set when neither scan returned a transfer:
        that means "nothing attributable in the scanned window", not
        "never interacted".

        Raises:
            ValueError: Invalid address, or the pool cannot be identified.
            LedgerConnectionError: Ledger unreachable.
        """
        for label, value in (("pool", pool), ("wallet", wallet)):
            if not is_address(value):
                raise ValueError(f"Invalid {label} address: {value}")
        pool = pool.lower()

        if token0 is None or token1 is None:
            token0, token1 = await self.resolve_tokens(pool)

        transfers, scans = await self.scan_transfers(pool, wallet)
        history = PositionHistory(
            pool=pool, wallet=wallet.lower(), token0=token0, token1=token1, scans=scans
        )
        if not transfers:
            history.no_history_found = True
            return history

        blocks = sorted({t.block_number for t in transfers})
        states = await asyncio.gather(*[self.read_block_state(pool, b) for b in blocks])
        by_block = {s.block_number: s for s in states}

        events = [
            self.build_event(t, wallet, by_block[t.block_number], token0, token1)
            for t in transfers
        ]
        events.sort(key=lambda e: e.sort_key)
        history.events = events

        logger.info(
            "%s in %s: %d add(s), %d remove(s), %d with exact amounts",
            wallet,
            pool,
            history.add_count,
            history.remove_count,
            history.exact_count,
        )
        return history
