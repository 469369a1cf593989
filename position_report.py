#!/usr/bin/env python3
"""
Position Report — end-to-end attribution for one (pool, wallet)
===============================================================

  PositionIndexer.probe_pool         → pool identity (tri-state)
  PositionIndexer.read_position      → live share, reserves, tokens
  HistoryReader.reconstruct_history  → Add/Remove timeline
  derive_entry(mode)                 → entry baseline
  PriceFeedClient                    → current (+ historical) USD prices
  compute_metrics                    → IL / fees / net PnL

Returns the CLI's status-dict shape:
  {"status": "success", ...}
  {"status": "error", "reason": "not_a_pool" | "pool_unreadable"
                                 | "position_unavailable" | "no_position"
                                 | "no_history" | "no_prices"
                                 | "insufficient_data", "message": ...}

Entry-time prices and the per-event timeline are extras; missing
historical prices never fail the report.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from lp_cli.central_config import DEFAULT_NETWORK, LedgerConfig
from lp_cli.errors import (
    InsufficientDataError,
    LedgerConnectionError,
    LedgerError,
    PriceFeedError,
)
from lp_cli.ledger_client import LedgerClient
from lp_cli.price_feed import PriceFeedClient
from lp_cli.rpc_helpers import is_address
from attribution_math import (
    BaselineMode,
    CurrentSnapshot,
    compute_metrics,
    derive_entry,
    period_breakdown,
    position_timeline,
)
from history_reader import HistoryReader
from position_indexer import PositionIndexer, ProbeStatus

logger = logging.getLogger(__name__)


def _error(reason: str, message: str, **extra) -> Dict[str, Any]:
    return {"status": "error", "reason": reason, "message": message, **extra}


async def analyze_position(
    pool: str,
    wallet: str,
    network: str = DEFAULT_NETWORK,
    mode: BaselineMode = BaselineMode.FULL_HISTORY,
    ledger: Optional[LedgerClient] = None,
    price_feed: Optional[PriceFeedClient] = None,
    include_timeline: bool = True,
) -> Dict[str, Any]:
    """
    Attribution report for ``wallet``'s LP position in ``pool``.

    Raises:
        ValueError: Invalid pool/wallet address.
        LedgerConnectionError: Ledger unreachable.
    """
    for label, value in (("pool", pool), ("wallet", wallet)):
        if not is_address(value):
            raise ValueError(f"Invalid {label} address: {value}")

    ledger = ledger or LedgerClient(LedgerConfig.from_env(network))
    price_feed = price_feed or PriceFeedClient(network)
    indexer = PositionIndexer(ledger)
    reader = HistoryReader(ledger, indexer)

    probe = await indexer.probe_pool(pool)
    if probe.status is ProbeStatus.REJECTED:
        return _error("not_a_pool", f"{pool} is not a constant-product pool ({probe.reason})")
    if probe.status is ProbeStatus.INDETERMINATE:
        return _error("pool_unreadable", f"Could not read pool {pool}: {probe.reason}")

    try:
        position = await indexer.read_position(pool, wallet, probe=probe)
    except LedgerConnectionError:
        raise
    except (httpx.HTTPError, LedgerError) as e:
        return _error("position_unavailable", f"Position read failed for {pool}: {e}")
    if position is None:
        return _error("no_position", f"No LP balance for {wallet} in {pool}")

    token0, token1 = position.pool.token0, position.pool.token1
    history = await reader.reconstruct_history(pool, wallet, token0=token0, token1=token1)
    if history.no_history_found or not history.events:
        return _error(
            "no_history",
            "No liquidity events found in the scanned block window",
            position=position,
            history=history,
        )

    try:
        quotes = await price_feed.get_current_prices([token0.address, token1.address])
    except PriceFeedError as e:
        return _error("no_prices", str(e), position=position, history=history)
    quote0, quote1 = quotes.get(token0.address), quotes.get(token1.address)
    if quote0 is None or quote1 is None:
        missing = [t.symbol for t, q in ((token0, quote0), (token1, quote1)) if q is None]
        return _error(
            "no_prices",
            f"No current price for {', '.join(missing)}",
            position=position,
            history=history,
        )

    entry = derive_entry(history.events, mode)
    logger.debug("Entry baseline (%s): %s", mode.value, entry)

    # Historical prices: entry timestamp plus every event timestamp
    stamps = {e.timestamp for e in history.events if e.timestamp}
    if entry is not None and entry.timestamp:
        stamps.add(entry.timestamp)
    prices0, prices1 = {}, {}
    if stamps:
        prices0, prices1 = await asyncio.gather(
            price_feed.get_historical_prices(token0.address, stamps),
            price_feed.get_historical_prices(token1.address, stamps),
        )

    entry_prices = None
    if entry is not None and entry.timestamp:
        p0, p1 = prices0.get(entry.timestamp), prices1.get(entry.timestamp)
        if p0 is not None and p1 is not None:
            entry_prices = (p0, p1)

    current = CurrentSnapshot.from_position(position, quote0.price, quote1.price)
    try:
        metrics = compute_metrics(entry, current, entry_prices=entry_prices)
    except InsufficientDataError as e:
        return _error(
            "insufficient_data",
            f"Unable to calculate entry state: {e}",
            position=position,
            history=history,
            entry=entry,
        )

    timeline, periods = [], []
    if include_timeline:
        timeline = position_timeline(history.events, entry, prices0, prices1)
        periods = period_breakdown(timeline)

    return {
        "status": "success",
        "network": network,
        "mode": mode,
        "position": position,
        "history": history,
        "entry": entry,
        "current": current,
        "metrics": metrics,
        "prices": {token0.address: quote0.price, token1.address: quote1.price},
        "entry_prices": entry_prices,
        "timeline": timeline,
        "periods": periods,
        "modes_differ": len(history.events) > 1,
    }
