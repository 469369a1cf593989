#!/usr/bin/env python3
"""
LP CLI -- Constant-Product LP Position Analyzer
===============================================

Finds a wallet's Uniswap V2-style LP positions, rebuilds their
Add/Remove history from on-chain logs and splits performance versus
holding into impermanent loss and earned fees.

Usage:
  python run.py list    <wallet> --network <net>                 Discover LP positions
  python run.py history --pool <0x…> --wallet <0x…>              Add/Remove timeline
  python run.py report  --pool <0x…> --wallet <0x…> --mode full  IL / fees / PnL (whole history)
  python run.py report  --pool <0x…> --wallet <0x…> --mode last  IL / fees / PnL (since last action)
  python run.py info                                             System overview

Sources:
  Uniswap V2 Whitepaper : https://uniswap.org/whitepaper.pdf
  DefiLlama API         : https://defillama.com/docs/api
"""

import sys
import asyncio
import argparse
from pathlib import Path

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lp_cli.central_config import (  # noqa: E402
    DEFAULT_NETWORK,
    PROJECT_VERSION,
    configure_logging,
)
from lp_cli.rpc_helpers import RPC_URLS  # noqa: E402
from lp_cli.commands import (  # noqa: E402
    cmd_info,
    cmd_list,
    cmd_history,
    cmd_report,
)


# ── CLI Parser ────────────────────────────────────────────────────────────


def _add_scan_args(p: argparse.ArgumentParser) -> None:
    """Flags shared by every command that scans the ledger."""
    p.add_argument(
        "--network",
        type=str,
        default=DEFAULT_NETWORK,
        choices=list(RPC_URLS.keys()),
        help=f"Network (default: {DEFAULT_NETWORK})",
    )
    p.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Blocks per eth_getLogs window (default: 40000 or LP_CHUNK_SIZE)",
    )
    p.add_argument(
        "--max-chunks",
        type=int,
        default=None,
        help="Windows scanned backward before giving up (default: 10 or LP_MAX_CHUNKS)",
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lp-cli",
        description=f"LP CLI v{PROJECT_VERSION} — Constant-Product LP Position Analyzer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py list    0xWALLET                               Scan Base for LP positions
  python run.py list    0xWALLET --network ethereum --max-chunks 25
  python run.py history --pool 0xPOOL --wallet 0xWALLET          Add/Remove timeline
  python run.py report  --pool 0xPOOL --wallet 0xWALLET          Full-history attribution
  python run.py report  --pool 0xPOOL --wallet 0xWALLET --mode last
  python run.py info                                             System overview

Scan window:
  Logs are read backward from the latest block in windows of --chunk-size
  blocks, for at most --max-chunks windows, stopping at the first window
  with a match. Older activity is not seen; raise --max-chunks or set
  LP_START_BLOCK to widen the search.
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"LP CLI v{PROJECT_VERSION}"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Debug logging to stderr"
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    list_p = sub.add_parser("list", help="List LP positions held by a wallet")
    list_p.add_argument("wallet", help="Wallet address (0x…)")
    _add_scan_args(list_p)

    history_p = sub.add_parser("history", help="Add/Remove timeline for one pool")
    history_p.add_argument("--pool", type=str, required=True, help="Pool address (0x…)")
    history_p.add_argument("--wallet", type=str, required=True, help="Wallet address (0x…)")
    _add_scan_args(history_p)

    report_p = sub.add_parser("report", help="IL / fees / PnL attribution for one position")
    report_p.add_argument("--pool", type=str, required=True, help="Pool address (0x…)")
    report_p.add_argument("--wallet", type=str, required=True, help="Wallet address (0x…)")
    report_p.add_argument(
        "--mode",
        type=str,
        default="full",
        choices=["full", "last"],
        help="Entry baseline: full history or since last action (default: full)",
    )
    _add_scan_args(report_p)

    sub.add_parser("info", help="System & architecture info")

    return parser


# ── Main ──────────────────────────────────────────────────────────────────


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging("DEBUG" if args.verbose else None)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "info":
        cmd_info()
        return 0

    if args.command == "list":
        ok = asyncio.run(
            cmd_list(
                wallet=args.wallet,
                network=args.network,
                chunk_size=args.chunk_size,
                max_chunks=args.max_chunks,
            )
        )
        return 0 if ok else 1

    if args.command == "history":
        ok = asyncio.run(
            cmd_history(
                pool=args.pool,
                wallet=args.wallet,
                network=args.network,
                chunk_size=args.chunk_size,
                max_chunks=args.max_chunks,
            )
        )
        return 0 if ok else 1

    if args.command == "report":
        ok = asyncio.run(
            cmd_report(
                pool=args.pool,
                wallet=args.wallet,
                network=args.network,
                mode=args.mode,
                chunk_size=args.chunk_size,
                max_chunks=args.max_chunks,
            )
        )
        return 0 if ok else 1

    parser.print_help()
    return 0


def entrypoint() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)


if __name__ == "__main__":
    entrypoint()
