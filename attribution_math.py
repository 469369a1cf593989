#!/usr/bin/env python3
"""
Attribution Math — IL / fees / PnL for constant-product LP positions
====================================================================

Splits the change in an LP position's value, measured against simply
holding the entry tokens (HODL), into pure impermanent loss and earned
trading fees.

FORMULA SOURCES:
────────────────
1. Impermanent Loss — Constant-Product Math
   https://pintail.medium.com/uniswap-a-good-deal-for-liquidity-providers-104c0b6816f2
   multiplier(r) = 2·√r / (1 + r),   r = price ratio now / price ratio at entry
   (price ratio = reserve1 / reserve0)

2. Uniswap V2 Core Whitepaper §2.2 (LP share = balance / totalSupply)
   https://uniswap.org/whitepaper.pdf

Decomposition (all at CURRENT prices):
  HODL value      = entry amounts × prices
  Position value  = share × reserves × prices
  Pure IL         = HODL × (multiplier − 1)           ≤ 0
  Fees earned     = Position − HODL × multiplier
  Net PnL         = Position − HODL  = Pure IL + Fees  (exact identity)

Percentages are fractions of HODL value (0.05 = 5%).
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from lp_cli.errors import InsufficientDataError
from history_reader import EventKind, LiquidityEvent
from position_indexer import LPPosition

SECONDS_PER_DAY = 86_400
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY


# ── Data Model ───────────────────────────────────────────────────────────


class BaselineMode(Enum):
    FULL_HISTORY = "full"
    SINCE_LAST_ACTION = "last"


@dataclass(frozen=True)
class EntryBaseline:
    """Assumed starting point of the position (never stored)."""

    token0_amount: float
    token1_amount: float
    k: float
    timestamp: Optional[int]
    mode: BaselineMode
    add_count: int = 0
    remove_count: int = 0
    action: Optional[EventKind] = None  # since-last-action only

    @property
    def price_ratio(self) -> Optional[float]:
        """token1 per token0 implied by the entry amounts."""
        if self.token0_amount <= 0:
            return None
        return self.token1_amount / self.token0_amount


@dataclass(frozen=True)
class CurrentSnapshot:
    """Live exposure: LP share of live reserves plus live USD prices."""

    lp_balance: float
    total_supply: float
    reserve0: float
    reserve1: float
    price0: float
    price1: float

    @classmethod
    def from_position(
        cls, position: LPPosition, price0: float, price1: float
    ) -> "CurrentSnapshot":
        return cls(
            lp_balance=position.lp_balance,
            total_supply=position.pool.total_supply,
            reserve0=position.pool.reserve0,
            reserve1=position.pool.reserve1,
            price0=price0,
            price1=price1,
        )

    @property
    def share(self) -> float:
        if self.total_supply <= 0:
            return 0.0
        return self.lp_balance / self.total_supply

    @property
    def token0_amount(self) -> float:
        return self.share * self.reserve0

    @property
    def token1_amount(self) -> float:
        return self.share * self.reserve1

    @property
    def price_ratio(self) -> float:
        if self.reserve0 <= 0:
            return 0.0
        return self.reserve1 / self.reserve0


@dataclass(frozen=True)
class Metrics:
    """Attribution result. All-or-nothing: never partially filled."""

    position_value: float
    hodl_value: float
    net_pnl: float
    net_pnl_percent: float
    pure_il: float
    pure_il_percent: float
    fees_earned: float
    fees_earned_percent: float
    current_token0: float
    current_token1: float
    token0_change: float
    token1_change: float
    time_in_pool: int  # seconds
    days_in_pool: float
    realized_apy: Optional[float]
    il_multiplier: float
    price_ratio_change: float
    user_share: float
    # Present only when prices at the entry timestamp are known
    entry_value_usd: Optional[float] = None
    hodl_pnl: Optional[float] = None
    lp_pnl: Optional[float] = None


# ── Constant-Product Math ────────────────────────────────────────────────


class ConstantProductMath:
    """Pure x·y=k formulas."""

    @staticmethod
    def il_multiplier(price_ratio_change: float) -> float:
        """
        LP value / HODL value for a price-ratio change r, ignoring fees.

        2·√r / (1 + r) for r > 0; 1 (no loss) for degenerate r ≤ 0.
        Always ≤ 1, equal to 1 only at r = 1.
        """
        if price_ratio_change <= 0 or not math.isfinite(price_ratio_change):
            return 1.0
        return (2 * math.sqrt(price_ratio_change)) / (1 + price_ratio_change)

    @staticmethod
    def pure_il_percent(price_ratio_change: float) -> float:
        """multiplier − 1, as a fraction (−0.0572 = −5.72%)."""
        return ConstantProductMath.il_multiplier(price_ratio_change) - 1

    @staticmethod
    def price_ratio_change(entry_ratio: Optional[float], current_ratio: float) -> float:
        if not entry_ratio or entry_ratio <= 0:
            return 0.0
        return current_ratio / entry_ratio


il_multiplier = ConstantProductMath.il_multiplier
pure_il_percent = ConstantProductMath.pure_il_percent


def _safe_fraction(value: float, base: float) -> float:
    return value / base if base > 0 else 0.0


def annualized_return(net_pnl_percent: float, elapsed_seconds: float) -> Optional[float]:
    """
    Compounded yearly return: (1 + |net%|)^(1/years) − 1, signed like net%.

    None when elapsed time is ≤ 0 or the result is not a finite float
    (very short holding periods overflow).
    """
    years = elapsed_seconds / SECONDS_PER_YEAR
    if years <= 0:
        return None
    try:
        apy = math.pow(1 + abs(net_pnl_percent), 1 / years) - 1
    except OverflowError:
        return None
    if not math.isfinite(apy):
        return None
    return apy if net_pnl_percent >= 0 else -apy


# ── Entry Baselines ──────────────────────────────────────────────────────


def full_history_entry(events: Sequence[LiquidityEvent]) -> Optional[EntryBaseline]:
    """
    Net of every Add minus every Remove.

    - token amounts are clamped at 0 (Removes can exceed the Adds the
      scan window captured)
    - k is the LP-amount weighted mean over Adds (weight 1 for a zero amount)
    - timestamp is the earliest Add
    """
    if not events:
        return None

    in0 = in1 = out0 = out1 = 0.0
    weighted_k = 0.0
    total_weight = 0.0
    first_ts: Optional[int] = None
    adds = removes = 0

    for event in events:
        if event.kind is EventKind.ADD:
            in0 += event.amount0
            in1 += event.amount1
            weight = event.lp_amount or 1
            weighted_k += (event.k or 0) * weight
            total_weight += weight
            adds += 1
            if event.timestamp and (first_ts is None or event.timestamp < first_ts):
                first_ts = event.timestamp
        else:
            out0 += event.amount0
            out1 += event.amount1
            removes += 1

    return EntryBaseline(
        token0_amount=max(in0 - out0, 0.0),
        token1_amount=max(in1 - out1, 0.0),
        k=weighted_k / total_weight if total_weight > 0 else 0.0,
        timestamp=first_ts,
        mode=BaselineMode.FULL_HISTORY,
        add_count=adds,
        remove_count=removes,
    )


def since_last_action_entry(events: Sequence[LiquidityEvent]) -> Optional[EntryBaseline]:
    """The most recent event alone; earlier history is ignored."""
    if not events:
        return None
    last = max(events, key=lambda e: (e.block_number, e.log_index))
    return EntryBaseline(
        token0_amount=last.amount0 or 0.0,
        token1_amount=last.amount1 or 0.0,
        k=last.k or 0.0,
        timestamp=last.timestamp,
        mode=BaselineMode.SINCE_LAST_ACTION,
        add_count=1 if last.kind is EventKind.ADD else 0,
        remove_count=1 if last.kind is EventKind.REMOVE else 0,
        action=last.kind,
    )


_ENTRY_STRATEGIES: Dict[
    BaselineMode, Callable[[Sequence[LiquidityEvent]], Optional[EntryBaseline]]
] = {
    BaselineMode.FULL_HISTORY: full_history_entry,
    BaselineMode.SINCE_LAST_ACTION: since_last_action_entry,
}


def derive_entry(
    events: Sequence[LiquidityEvent], mode: BaselineMode = BaselineMode.FULL_HISTORY
) -> Optional[EntryBaseline]:
    """Entry baseline for the selected policy (None if there are no events)."""
    return _ENTRY_STRATEGIES[mode](events)


# ── Metrics ──────────────────────────────────────────────────────────────


def compute_metrics(
    entry: Optional[EntryBaseline],
    current: CurrentSnapshot,
    now: Optional[int] = None,
    entry_prices: Optional[Sequence[float]] = None,
) -> Metrics:
    """
    IL / fee / PnL attribution of ``current`` against ``entry``.

    Args:
        entry: Baseline from derive_entry()
        current: Live share, reserves and prices
        now: Unix seconds used for time-in-pool (default: wall clock)
        entry_prices: (price0, price1) at the entry timestamp, if known

    Raises:
        InsufficientDataError: Missing baseline, non-positive entry amounts,
            or non-finite current prices.
    """
    if entry is None:
        raise InsufficientDataError("No entry baseline")
    if entry.token0_amount <= 0 or entry.token1_amount <= 0:
        raise InsufficientDataError(
            f"Entry amounts must be positive "
            f"(token0={entry.token0_amount}, token1={entry.token1_amount})"
        )
    for price in (current.price0, current.price1):
        if price is None or not math.isfinite(price):
            raise InsufficientDataError("Current prices unavailable")

    current0 = current.token0_amount
    current1 = current.token1_amount
    position_value = current0 * current.price0 + current1 * current.price1
    hodl_value = entry.token0_amount * current.price0 + entry.token1_amount * current.price1

    ratio_change = ConstantProductMath.price_ratio_change(entry.price_ratio, current.price_ratio)
    multiplier = ConstantProductMath.il_multiplier(ratio_change)
    pure_il = hodl_value * (multiplier - 1)
    fees_earned = position_value - hodl_value * multiplier
    net_pnl = position_value - hodl_value
    net_pnl_percent = _safe_fraction(net_pnl, hodl_value)

    if now is None:
        now = int(time.time())
    time_in_pool = max(now - entry.timestamp, 0) if entry.timestamp else 0
    realized_apy = annualized_return(net_pnl_percent, time_in_pool) if entry.timestamp else None

    entry_value_usd = hodl_pnl = lp_pnl = None
    if entry_prices is not None and all(
        p is not None and math.isfinite(p) for p in entry_prices
    ):
        p0, p1 = entry_prices
        entry_value_usd = entry.token0_amount * p0 + entry.token1_amount * p1
        hodl_pnl = hodl_value - entry_value_usd
        lp_pnl = position_value - entry_value_usd

    return Metrics(
        position_value=position_value,
        hodl_value=hodl_value,
        net_pnl=net_pnl,
        net_pnl_percent=net_pnl_percent,
        pure_il=pure_il,
        pure_il_percent=multiplier - 1,
        fees_earned=fees_earned,
        fees_earned_percent=_safe_fraction(fees_earned, hodl_value),
        current_token0=current0,
        current_token1=current1,
        token0_change=current0 - entry.token0_amount,
        token1_change=current1 - entry.token1_amount,
        time_in_pool=time_in_pool,
        days_in_pool=time_in_pool / SECONDS_PER_DAY,
        realized_apy=realized_apy,
        il_multiplier=multiplier,
        price_ratio_change=ratio_change,
        user_share=current.share,
        entry_value_usd=entry_value_usd,
        hodl_pnl=hodl_pnl,
        lp_pnl=lp_pnl,
    )


# ── Timeline & Period Breakdown ──────────────────────────────────────────


@dataclass(frozen=True)
class TimelinePoint:
    """Cumulative attribution right after one liquidity event."""

    timestamp: int
    block_number: int
    lp_balance: float
    metrics: Metrics

    @property
    def pure_il(self) -> float:
        return self.metrics.pure_il

    @property
    def fees_earned(self) -> float:
        return self.metrics.fees_earned

    @property
    def net_pnl(self) -> float:
        return self.metrics.net_pnl


@dataclass(frozen=True)
class PeriodChange:
    """IL / fees attributable to one period between snapshots."""

    date: str
    timestamp: int
    pure_il: float
    fees_earned: float
    net_change: float
    cumulative_il: float
    cumulative_fees: float
    cumulative_net: float


def position_timeline(
    events: Sequence[LiquidityEvent],
    entry: EntryBaseline,
    prices0: Mapping[int, Optional[float]],
    prices1: Mapping[int, Optional[float]],
) -> List[TimelinePoint]:
    """
    Attribution snapshot after each event at or after the entry timestamp.

    The wallet's LP balance is replayed from the events. Points lacking a
    timestamp, the LP supply at that block or a historical price are skipped.
    """
    points: List[TimelinePoint] = []
    balance = 0.0
    for event in sorted(events, key=lambda e: (e.block_number, e.log_index)):
        balance += event.lp_amount if event.kind is EventKind.ADD else -event.lp_amount
        balance = max(balance, 0.0)

        if not event.timestamp or event.total_supply is None:
            continue
        if entry.timestamp and event.timestamp < entry.timestamp:
            continue
        price0 = prices0.get(event.timestamp)
        price1 = prices1.get(event.timestamp)
        if price0 is None or price1 is None:
            continue

        snapshot = CurrentSnapshot(
            lp_balance=balance,
            total_supply=event.total_supply,
            reserve0=event.reserve0,
            reserve1=event.reserve1,
            price0=price0,
            price1=price1,
        )
        try:
            metrics = compute_metrics(entry, snapshot, now=event.timestamp)
        except InsufficientDataError:
            continue
        points.append(TimelinePoint(event.timestamp, event.block_number, balance, metrics))
    return points


def period_breakdown(snapshots: Sequence[TimelinePoint]) -> List[PeriodChange]:
    """Cumulative snapshots → per-period deltas (the first period is its own total)."""
    periods: List[PeriodChange] = []
    previous: Optional[TimelinePoint] = None
    for snap in snapshots:
        il = snap.pure_il - previous.pure_il if previous else snap.pure_il
        fees = snap.fees_earned - previous.fees_earned if previous else snap.fees_earned
        periods.append(
            PeriodChange(
                date=datetime.fromtimestamp(snap.timestamp, tz=timezone.utc).strftime("%Y-%m-%d"),
                timestamp=snap.timestamp,
                pure_il=il,
                fees_earned=fees,
                net_change=il + fees,
                cumulative_il=snap.pure_il,
                cumulative_fees=snap.fees_earned,
                cumulative_net=snap.net_pnl,
            )
        )
        previous = snap
    return periods
