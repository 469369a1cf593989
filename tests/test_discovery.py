"""
Position Discovery Tests
========================

PositionIndexer against an in-memory ledger:
  - candidate pools from Transfer(*, wallet) logs
  - tri-state capability probe
  - zero-balance exclusion, per-candidate failure isolation
  - token metadata sentinel, share/amount math
"""

import asyncio

import httpx
import pytest

from lp_cli.errors import LedgerConnectionError
from position_indexer import (
    LPPosition,
    Pool,
    PositionIndexer,
    ProbeStatus,
    Token,
    estimate_supply_from_reserves,
)

from ledger_fakes import (
    E18,
    OTHER,
    POOL,
    TOKEN0,
    TOKEN1,
    WALLET,
    ZERO,
    FakeLedger,
    transfer_log,
)

POOL2 = "0x" + "f6" * 20


def _ledger_with_pool(balance=10 * E18, total_supply=100 * E18):
    ledger = FakeLedger(latest=1000)
    ledger.add_pool(
        POOL, reserve0=10 * E18, reserve1=20_000 * 10**6, total_supply=total_supply
    )
    ledger.add_token(TOKEN0, "WETH", 18, "Wrapped Ether")
    ledger.add_token(TOKEN1, "USDC", 6, "USD Coin")
    ledger.set_balance(POOL, WALLET, balance)
    ledger.logs.append(transfer_log(POOL, ZERO, WALLET, balance, block=990))
    return ledger


class TestTokenAndPool:
    def test_unknown_token_sentinel(self):
        token = Token.unknown("0xABC")
        assert token.name == "Unknown Token"
        assert token.symbol == "???"
        assert token.decimals == 18
        assert token.address == "0xabc"
        assert token.is_unknown

    def test_pool_converts_with_token_decimals(self):
        pool = Pool(
            address=POOL,
            token0=Token(TOKEN0, "WETH", "Wrapped Ether", 18),
            token1=Token(TOKEN1, "USDC", "USD Coin", 6),
            reserve0_raw=10 * E18,
            reserve1_raw=20_000 * 10**6,
            total_supply_raw=100 * E18,
        )
        assert pool.reserve0 == pytest.approx(10)
        assert pool.reserve1 == pytest.approx(20_000)
        assert pool.k == pytest.approx(200_000)
        assert pool.pair == "WETH/USDC"

    def test_position_share_and_amounts(self):
        pool = Pool(POOL, Token.unknown(TOKEN0), Token.unknown(TOKEN1), 10 * E18, 40 * E18, 100 * E18)
        position = LPPosition(pool=pool, wallet=WALLET, lp_balance_raw=25 * E18)
        assert position.share == pytest.approx(0.25)
        assert position.token0_amount == pytest.approx(2.5)
        assert position.token1_amount == pytest.approx(10)

    def test_empty_pool_share_is_zero(self):
        pool = Pool(POOL, Token.unknown(TOKEN0), Token.unknown(TOKEN1), 0, 0, 0)
        assert LPPosition(pool=pool, wallet=WALLET, lp_balance_raw=5).share == 0.0

    def test_estimate_supply_from_reserves(self):
        assert estimate_supply_from_reserves(4, 9) == 6
        assert estimate_supply_from_reserves(0, 9) == 0


class TestProbePool:
    def test_confirmed(self):
        ledger = _ledger_with_pool()
        probe = asyncio.run(PositionIndexer(ledger).probe_pool(POOL))
        assert probe.status is ProbeStatus.CONFIRMED
        assert (probe.token0, probe.token1) == (TOKEN0, TOKEN1)

    def test_revert_is_rejected(self):
        ledger = FakeLedger()
        probe = asyncio.run(PositionIndexer(ledger).probe_pool(OTHER))
        assert probe.status is ProbeStatus.REJECTED
        assert not probe.confirmed

    def test_zero_token_is_rejected(self):
        ledger = FakeLedger()
        ledger.add_pool(POOL, token0=ZERO)
        probe = asyncio.run(PositionIndexer(ledger).probe_pool(POOL))
        assert probe.status is ProbeStatus.REJECTED
        assert "zero" in probe.reason

    def test_transport_error_is_indeterminate(self):
        ledger = _ledger_with_pool()
        ledger.set_call(POOL, "0x0dfe1681", httpx.ConnectError("connection reset"))
        probe = asyncio.run(PositionIndexer(ledger).probe_pool(POOL))
        assert probe.status is ProbeStatus.INDETERMINATE


class TestFetchToken:
    def test_reads_metadata(self):
        ledger = _ledger_with_pool()
        token = asyncio.run(PositionIndexer(ledger).fetch_token(TOKEN1))
        assert (token.symbol, token.name, token.decimals) == ("USDC", "USD Coin", 6)

    def test_failure_yields_unknown(self):
        ledger = FakeLedger()
        token = asyncio.run(PositionIndexer(ledger).fetch_token(TOKEN0))
        assert token.is_unknown
        assert token.decimals == 18


class TestDiscoverPositions:
    def test_finds_position(self):
        ledger = _ledger_with_pool()
        positions = asyncio.run(PositionIndexer(ledger).discover_positions(WALLET))
        assert len(positions) == 1
        p = positions[0]
        assert p.pool.address == POOL
        assert p.share == pytest.approx(0.1)
        assert p.token0_amount == pytest.approx(1.0)
        assert p.token1_amount == pytest.approx(2_000)
        assert p.pool.token1.symbol == "USDC"

    def test_zero_balance_pool_excluded(self):
        ledger = _ledger_with_pool()
        ledger.set_balance(POOL, WALLET, 0)
        positions = asyncio.run(PositionIndexer(ledger).discover_positions(WALLET))
        assert positions == []

    def test_non_pool_candidate_excluded(self):
        ledger = _ledger_with_pool()
        ledger.logs.append(transfer_log(OTHER, ZERO, WALLET, 5, block=991))
        result = asyncio.run(PositionIndexer(ledger).discover(WALLET))
        assert result.candidates == {POOL, OTHER}
        assert [p.pool.address for p in result.positions] == [POOL]

    def test_metadata_failure_keeps_position(self):
        ledger = _ledger_with_pool()
        del ledger.state[(TOKEN1, "0x95d89b41")]
        positions = asyncio.run(PositionIndexer(ledger).discover_positions(WALLET))
        assert len(positions) == 1
        assert positions[0].pool.token1.is_unknown

    def test_failing_candidate_does_not_affect_others(self):
        ledger = _ledger_with_pool()
        ledger.add_pool(POOL2)
        ledger.set_balance(POOL2, WALLET, E18)
        ledger.set_call(POOL2, "0x0902f1ac", httpx.ReadTimeout("timed out"))
        ledger.logs.append(transfer_log(POOL2, ZERO, WALLET, E18, block=995))
        positions = asyncio.run(PositionIndexer(ledger).discover_positions(WALLET))
        assert [p.pool.address for p in positions] == [POOL]

    def test_sorted_by_share_descending(self):
        ledger = _ledger_with_pool(balance=E18)
        ledger.add_pool(POOL2, total_supply=2 * E18)
        ledger.set_balance(POOL2, WALLET, E18)
        ledger.logs.append(transfer_log(POOL2, ZERO, WALLET, E18, block=995))
        positions = asyncio.run(PositionIndexer(ledger).discover_positions(WALLET))
        assert [p.pool.address for p in positions] == [POOL2, POOL]

    def test_nothing_in_window(self):
        ledger = _ledger_with_pool()
        ledger.logs = []
        result = asyncio.run(PositionIndexer(ledger).discover(WALLET))
        assert result.positions == []
        assert result.scan.chunks_scanned == ledger.config.max_chunks

    def test_invalid_wallet(self):
        with pytest.raises(ValueError, match="Invalid wallet"):
            asyncio.run(PositionIndexer(FakeLedger()).discover_positions("0x123"))

    def test_unreachable_ledger_propagates(self):
        ledger = _ledger_with_pool()
        ledger.unreachable = True
        with pytest.raises(LedgerConnectionError):
            asyncio.run(PositionIndexer(ledger).discover_positions(WALLET))
