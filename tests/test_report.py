"""
Position Report Tests
=====================

analyze_position end to end against an in-memory ledger and a stub
price feed: success shape, both baseline modes and every error reason.
"""

import asyncio

import httpx
import pytest

from attribution_math import BaselineMode
from history_reader import EventKind
from lp_cli.errors import PriceFeedError
from lp_cli.price_feed import TokenQuote
from lp_cli.rpc_helpers import SELECTORS, encode_address
from position_report import analyze_position

from ledger_fakes import (
    E18,
    POOL,
    TOKEN0,
    TOKEN1,
    WALLET,
    ZERO,
    FakeLedger,
    burn_log,
    mint_log,
    sync_log,
    transfer_log,
    tx,
)

T0 = 1_700_000_000


class StubPriceFeed:
    """Fixed prices; historical lookups answer for every timestamp."""

    def __init__(self, current=None, historical=None, fail=False):
        self.current = {TOKEN0: 2_000.0, TOKEN1: 1.0} if current is None else current
        self.historical = {TOKEN0: 2_000.0, TOKEN1: 1.0} if historical is None else historical
        self.fail = fail

    async def get_current_prices(self, addresses):
        if self.fail:
            raise PriceFeedError("Price request failed: 503")
        return {
            a: TokenQuote(address=a, price=self.current[a])
            for a in addresses
            if a in self.current
        }

    async def get_historical_prices(self, address, timestamps):
        return {ts: self.historical.get(address) for ts in timestamps}


def _ledger(balance=10 * E18):
    ledger = FakeLedger(latest=1000)
    ledger.add_pool(POOL, reserve0=10 * E18, reserve1=20_000 * E18, total_supply=100 * E18)
    ledger.add_token(TOKEN0, "WETH")
    ledger.add_token(TOKEN1, "DAI")
    ledger.set_balance(POOL, WALLET, balance)
    ledger.timestamps = {b: T0 + b * 2 for b in range(901, 1001)}
    return ledger


def _add(ledger, block, lp, amount0, amount1):
    h = tx(block)
    ledger.logs += [
        transfer_log(POOL, ZERO, WALLET, lp, block, log_index=0, tx_hash=h),
        sync_log(POOL, 10 * E18, 20_000 * E18, block, log_index=1, tx_hash=h),
        mint_log(POOL, amount0, amount1, block, log_index=2, tx_hash=h),
    ]
    ledger.set_supply_at(POOL, block, 100 * E18)


def _remove(ledger, block, lp, amount0, amount1):
    h = tx(block)
    ledger.logs += [
        transfer_log(POOL, WALLET, POOL, lp, block, log_index=0, tx_hash=h),
        transfer_log(POOL, POOL, ZERO, lp, block, log_index=1, tx_hash=h),
        sync_log(POOL, 10 * E18, 20_000 * E18, block, log_index=2, tx_hash=h),
        burn_log(POOL, amount0, amount1, block, log_index=3, tx_hash=h),
    ]


def _analyze(ledger, feed=None, mode=BaselineMode.FULL_HISTORY):
    return asyncio.run(
        analyze_position(POOL, WALLET, mode=mode, ledger=ledger, price_feed=feed or StubPriceFeed())
    )


class TestAnalyzePositionSuccess:
    def test_unchanged_pool_breaks_even(self):
        ledger = _ledger()
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        result = _analyze(ledger)

        assert result["status"] == "success"
        assert result["mode"] is BaselineMode.FULL_HISTORY
        m = result["metrics"]
        assert m.position_value == pytest.approx(4_000)
        assert m.hodl_value == pytest.approx(4_000)
        assert m.net_pnl == pytest.approx(0, abs=1e-6)
        assert m.il_multiplier == pytest.approx(1.0)
        assert m.user_share == pytest.approx(0.1)
        assert result["prices"] == {TOKEN0: 2_000.0, TOKEN1: 1.0}

    def test_entry_prices_and_timeline(self):
        ledger = _ledger()
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        result = _analyze(ledger)

        assert result["entry"].timestamp == T0 + 910 * 2
        assert result["entry_prices"] == (2_000.0, 1.0)
        assert result["metrics"].entry_value_usd == pytest.approx(4_000)
        assert len(result["timeline"]) == 1
        assert len(result["periods"]) == 1
        assert result["modes_differ"] is False

    def test_fee_growth_attributed(self):
        ledger = _ledger()
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        # Reserves grew 2% at an unchanged price
        ledger.add_pool(POOL, reserve0=102 * E18 // 10, reserve1=20_400 * E18, total_supply=100 * E18)
        m = _analyze(ledger)["metrics"]
        assert m.fees_earned == pytest.approx(80)
        assert m.pure_il == pytest.approx(0, abs=1e-6)

    def test_missing_historical_prices_do_not_fail(self):
        ledger = _ledger()
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        result = _analyze(ledger, StubPriceFeed(historical={}))
        assert result["status"] == "success"
        assert result["entry_prices"] is None
        assert result["timeline"] == []
        assert result["metrics"].entry_value_usd is None

    def test_since_last_action(self):
        ledger = _ledger(balance=15 * E18)
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        _add(ledger, 950, 5 * E18, E18 // 2, 1_000 * E18)
        full = _analyze(ledger)
        last = _analyze(ledger, mode=BaselineMode.SINCE_LAST_ACTION)

        assert full["entry"].token0_amount == pytest.approx(1.5)
        assert last["entry"].token0_amount == pytest.approx(0.5)
        assert last["entry"].action is EventKind.ADD
        assert last["entry"].timestamp == T0 + 950 * 2
        assert full["modes_differ"] is True


class TestAnalyzePositionErrors:
    def test_no_position(self):
        ledger = _ledger(balance=0)
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        result = _analyze(ledger)
        assert result["status"] == "error"
        assert result["reason"] == "no_position"

    def test_no_history(self):
        result = _analyze(_ledger())
        assert result["reason"] == "no_history"
        assert result["history"].no_history_found is True

    def test_price_feed_failure(self):
        ledger = _ledger()
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        result = _analyze(ledger, StubPriceFeed(fail=True))
        assert result["reason"] == "no_prices"
        assert "503" in result["message"]

    def test_missing_current_price(self):
        ledger = _ledger()
        _add(ledger, 910, 10 * E18, E18, 2_000 * E18)
        result = _analyze(ledger, StubPriceFeed(current={TOKEN0: 2_000.0}))
        assert result["reason"] == "no_prices"
        assert "DAI" in result["message"]

    def test_only_removes_is_insufficient_data(self):
        ledger = _ledger()
        _remove(ledger, 950, E18, E18 // 10, 200 * E18)
        result = _analyze(ledger)
        assert result["reason"] == "insufficient_data"
        assert result["entry"].token0_amount == 0

    @pytest.mark.parametrize("pool, wallet", [
        ("0xpool", WALLET),
        (POOL, "not-a-wallet"),
    ])
    def test_invalid_address(self, pool, wallet):
        with pytest.raises(ValueError, match="Invalid"):
            asyncio.run(analyze_position(pool, wallet, ledger=_ledger(), price_feed=StubPriceFeed()))


class TestAnalyzePositionReadFailures:
    """Unreadable ledger state is reported, never raised or mistaken for a zero balance."""

    def test_not_a_pool(self):
        ledger = _ledger()
        del ledger.state[(POOL, SELECTORS["token0"])]
        result = _analyze(ledger)
        assert result["status"] == "error"
        assert result["reason"] == "not_a_pool"

    def test_token_read_timeout_is_pool_unreadable(self):
        ledger = _ledger()
        ledger.set_call(POOL, SELECTORS["token0"], httpx.ReadTimeout("timed out"))
        result = _analyze(ledger)
        assert result["reason"] == "pool_unreadable"
        assert "timed out" in result["message"]

    def test_balance_transport_error(self):
        ledger = _ledger()
        ledger.set_call(
            POOL, SELECTORS["balanceOf"] + encode_address(WALLET), httpx.ConnectError("boom")
        )
        result = _analyze(ledger)
        assert result["status"] == "error"
        assert result["reason"] == "position_unavailable"
        assert "boom" in result["message"]

    def test_reserves_unreadable(self):
        ledger = _ledger()
        ledger.set_call(POOL, SELECTORS["getReserves"], httpx.ReadTimeout("timed out"))
        result = _analyze(ledger)
        assert result["reason"] == "position_unavailable"
