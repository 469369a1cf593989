"""
LP CLI — Command Implementations
================================

All CLI command handlers live here, keeping run.py as a thin
argparse dispatcher. Each public function corresponds to a
subcommand (info, list, history, report).

Async handlers return True on success so run.py can map the
outcome to an exit code.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from lp_cli.central_config import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_CHUNKS,
    PROJECT_NAME,
    PROJECT_VERSION,
    LedgerConfig,
)
from lp_cli.errors import ConfigError, LedgerConnectionError
from lp_cli.rpc_helpers import RPC_URLS

ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


# ── Formatting Helpers ───────────────────────────────────────────────────


def _fmt_usd(value: float | None) -> str:
    if value is None:
        return "$--"
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def _fmt_pct(value: float | None) -> str:
    """Fraction → signed percent (0.0512 → +5.12%)."""
    if value is None:
        return "--%"
    return f"{value * 100:+.2f}%"


def _fmt_ts(ts: int | None) -> str:
    if not ts:
        return "unknown"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _valid_address(value: str | None, kind: str) -> bool:
    if value and ADDRESS_RE.fullmatch(value):
        return True
    print(f"❌ Invalid {kind} address. Must be 42 hex characters starting with 0x.")
    return False


def _build_config(
    network: str, chunk_size: int | None = None, max_chunks: int | None = None
) -> LedgerConfig | None:
    """Environment settings overridden by CLI flags; None (after printing) if invalid."""
    try:
        return LedgerConfig.from_env(network).with_overrides(
            chunk_size=chunk_size, max_chunks=max_chunks
        )
    except ConfigError as e:
        print(f"❌ Configuration error: {e}")
        return None


def _print_scan_note(scans) -> None:
    """Make the best-effort scan window visible to the user."""
    if not scans:
        return
    lowest = min((s.lowest_block for s in scans if s.lowest_block is not None), default=None)
    failed = sum(s.failed_chunks for s in scans)
    if not all(s.exhausted for s in scans) and lowest is not None:
        print(f"\n  ℹ️  Scanned back to block {lowest:,}; older activity is not included.")
    if failed:
        print(f"  ⚠️  {failed} block window(s) failed and were treated as empty.")


# ── Commands ─────────────────────────────────────────────────────────────


def cmd_info() -> None:
    """Display system and architecture information."""
    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print("🔗 Protocol   : Uniswap V2 & constant-product forks (x·y=k)")
    print(f"🌐 On-Chain   : {', '.join(n.title() for n in RPC_URLS)}")
    print("📡 Prices     : DefiLlama coins API (current + historical, free, no key)")
    print(f"🧱 Log scan   : {DEFAULT_CHUNK_SIZE:,} blocks × up to {DEFAULT_MAX_CHUNKS} windows")
    print()
    print("📁 Files:")
    print("   run.py                — CLI entry point")
    print("   position_indexer.py   — Wallet LP position discovery")
    print("   history_reader.py     — Add/Remove timeline from Transfer/Sync/Mint/Burn logs")
    print("   attribution_math.py   — IL / fees / PnL attribution")
    print("   position_report.py    — End-to-end report for one position")
    print("   lp_cli/               — RPC helpers, ledger + price clients, config, errors")
    print()
    print("⚙️  Environment:")
    print("   LP_RPC_URL, LP_CHUNK_SIZE, LP_MAX_CHUNKS, LP_START_BLOCK,")
    print("   LP_REQUEST_TIMEOUT, LOG_LEVEL  (a local .env file is honoured)")
    print()
    print("🔗 Quick Start:")
    print("   python run.py list    0xWALLET --network base")
    print("   python run.py history --pool 0xPOOL --wallet 0xWALLET")
    print("   python run.py report  --pool 0xPOOL --wallet 0xWALLET --mode last")
    print()
    print("📚 References:")
    print("   Uniswap V2 Whitepaper : https://uniswap.org/whitepaper.pdf")
    print("   DefiLlama API         : https://defillama.com/docs/api")


async def cmd_list(
    wallet: str,
    network: str = "base",
    chunk_size: int | None = None,
    max_chunks: int | None = None,
) -> bool:
    """List LP positions currently held by a wallet."""
    from lp_cli.ledger_client import LedgerClient
    from position_indexer import PositionIndexer

    if not _valid_address(wallet, "wallet"):
        return False
    config = _build_config(network, chunk_size, max_chunks)
    if config is None:
        return False

    print(f"\n🔄 Scanning LP share transfers on {network.title()}...")
    indexer = PositionIndexer(LedgerClient(config))
    try:
        result = await indexer.discover(wallet)
    except LedgerConnectionError as e:
        print(f"\n❌ {e}")
        return False

    print(f"\n{'=' * 65}")
    print(f"  LP Positions — {network.title()}")
    print(f"  👛 Wallet: {wallet}")
    print(f"{'=' * 65}")

    if not result.positions:
        print("  No LP positions found in the scanned window.")
        print(f"  ({len(result.candidates)} candidate contract(s) checked)")
        _print_scan_note([result.scan] if result.scan else [])
        return True

    for i, p in enumerate(result.positions, 1):
        print(f"\n    {i}. {p.pool.pair}")
        if p.pool.token0.is_unknown or p.pool.token1.is_unknown:
            print("       ⚠️  Token metadata unavailable; amounts assume 18 decimals")
        print(f"       Pool     : {p.pool.address}")
        print(f"       LP       : {p.lp_balance:,.8f} ({p.share * 100:.4f}% of supply)")
        print(f"       {p.pool.token0.symbol:<9}: {p.token0_amount:,.6f}")
        print(f"       {p.pool.token1.symbol:<9}: {p.token1_amount:,.6f}")

    print(f"\n{'=' * 65}")
    print(f"  Total: {len(result.positions)} position(s)")
    _print_scan_note([result.scan] if result.scan else [])

    first = result.positions[0]
    print("\n  💡 Attribution report for a position:")
    print(
        f"     python run.py report --pool {first.pool.address} --wallet {wallet} --network {network}"
    )
    return True


async def cmd_history(
    pool: str,
    wallet: str,
    network: str = "base",
    chunk_size: int | None = None,
    max_chunks: int | None = None,
) -> bool:
    """Print the Add/Remove timeline of a wallet in one pool."""
    from lp_cli.ledger_client import LedgerClient
    from history_reader import HistoryReader

    if not (_valid_address(pool, "pool") and _valid_address(wallet, "wallet")):
        return False
    config = _build_config(network, chunk_size, max_chunks)
    if config is None:
        return False

    print(f"\n📜 Reading liquidity history on {network.title()}...")
    reader = HistoryReader(LedgerClient(config))
    try:
        history = await reader.reconstruct_history(pool, wallet)
    except LedgerConnectionError as e:
        print(f"\n❌ {e}")
        return False
    except ValueError as e:
        print(f"\n❌ {e}")
        return False

    pair = f"{history.token0.symbol}/{history.token1.symbol}"
    print(f"\n{'=' * 65}")
    print(f"  {pair} — {history.pool}")
    print(f"{'=' * 65}")

    if history.no_history_found:
        print("  No LP transfers found for this wallet in the scanned window.")
        _print_scan_note(history.scans)
        return True

    for e in history.events:
        icon = "🟢" if e.is_add else "🔴"
        exact = "" if e.amounts_exact else " ≈"
        print(f"\n  {icon} {e.kind.value:<6} block {e.block_number:,}  {_fmt_ts(e.timestamp)}")
        print(f"       LP       : {e.lp_amount:,.8f}")
        print(f"       Amounts  : {e.amount0:,.6f} {history.token0.symbol} + "
              f"{e.amount1:,.6f} {history.token1.symbol}{exact}")
        print(f"       Reserves : {e.reserve0:,.4f} / {e.reserve1:,.4f}")
        print(f"       Tx       : {e.transaction_hash}")

    print(f"\n{'=' * 65}")
    print(f"  {history.add_count} add(s), {history.remove_count} remove(s)")
    if history.first_timestamp:
        print(f"  Span: {_fmt_ts(history.first_timestamp)} → {_fmt_ts(history.last_timestamp)}")
    if history.exact_count < len(history.events):
        print("  ≈ amounts apportioned from LP share × reserves (approximate)")
    _print_scan_note(history.scans)
    return True


async def cmd_report(
    pool: str,
    wallet: str,
    network: str = "base",
    mode: str = "full",
    chunk_size: int | None = None,
    max_chunks: int | None = None,
) -> bool:
    """IL / fees / PnL attribution for one position."""
    from attribution_math import BaselineMode
    from lp_cli.ledger_client import LedgerClient
    from position_report import analyze_position

    if not (_valid_address(pool, "pool") and _valid_address(wallet, "wallet")):
        return False
    config = _build_config(network, chunk_size, max_chunks)
    if config is None:
        return False
    baseline = BaselineMode(mode)

    print(f"\n🧮 Analyzing position on {network.title()} ({baseline.name.lower()})...")
    try:
        result = await analyze_position(
            pool, wallet, network=network, mode=baseline, ledger=LedgerClient(config)
        )
    except LedgerConnectionError as e:
        print(f"\n❌ {e}")
        return False

    if result["status"] != "success":
        print(f"\n❌ {result['message']}")
        if "history" in result:
            _print_scan_note(result["history"].scans)
        return False

    position = result["position"]
    entry = result["entry"]
    m = result["metrics"]
    t0, t1 = position.pool.token0.symbol, position.pool.token1.symbol

    print(f"\n{'=' * 65}")
    print(f"  {position.pool.pair} — {position.pool.address}")
    print(f"  👛 Wallet: {wallet}")
    print(f"{'=' * 65}")
    print(f"  📥 Entry ({baseline.name.lower()}): {entry.token0_amount:,.6f} {t0} + "
          f"{entry.token1_amount:,.6f} {t1}  @ {_fmt_ts(entry.timestamp)}")
    print(f"  📦 Now   : {m.current_token0:,.6f} {t0} + {m.current_token1:,.6f} {t1}")
    print(f"  🔁 Change: {m.token0_change:+,.6f} {t0} / {m.token1_change:+,.6f} {t1}")
    print()
    print(f"  💰 Position value : {_fmt_usd(m.position_value)}")
    print(f"  🤲 HODL value     : {_fmt_usd(m.hodl_value)}")
    print(f"  📉 Pure IL        : {_fmt_usd(m.pure_il)} ({_fmt_pct(m.pure_il_percent)})")
    print(f"  💸 Fees earned    : {_fmt_usd(m.fees_earned)} ({_fmt_pct(m.fees_earned_percent)})")
    print(f"  ⚖️  Net vs HODL    : {_fmt_usd(m.net_pnl)} ({_fmt_pct(m.net_pnl_percent)})")
    if m.entry_value_usd is not None:
        print(f"  🏁 Entry value    : {_fmt_usd(m.entry_value_usd)}")
        print(f"     LP PnL         : {_fmt_usd(m.lp_pnl)}")
        print(f"     HODL PnL       : {_fmt_usd(m.hodl_pnl)}")
    print(f"  ⏱️  Time in pool   : {m.days_in_pool:,.1f} days")
    print(f"  📈 Realized APY   : {_fmt_pct(m.realized_apy)}")
    print(f"  📐 Price ratio Δ  : {m.price_ratio_change:.4f}x (IL multiplier {m.il_multiplier:.6f})")

    if result["periods"]:
        print("\n  Per-event breakdown:")
        for p in result["periods"]:
            print(f"    {p.date}  IL {_fmt_usd(p.pure_il):>12}  fees {_fmt_usd(p.fees_earned):>12}"
                  f"  net {_fmt_usd(p.net_change):>12}")

    history = result["history"]
    if history.exact_count < len(history.events):
        print("\n  ≈ Some entry amounts are apportioned from LP share × reserves (approximate).")
    if result["modes_differ"]:
        other = "last" if baseline.value == "full" else "full"
        print(f"  💡 Multiple events found: compare with --mode {other}")
    _print_scan_note(history.scans)
    return True
