"""
In-memory ledger for offline tests.

FakeLedger subclasses LedgerClient and replaces only the network-facing
reads, so chunked_scan and the call_batch contract run unchanged.
"""

from typing import Dict, List, Optional, Set, Tuple, Union

import httpx

from lp_cli.central_config import LedgerConfig
from lp_cli.errors import ContractReadError, LedgerConnectionError, LedgerError
from lp_cli.ledger_client import LedgerClient, LogRecord
from lp_cli.rpc_helpers import (
    SELECTORS,
    TOPICS,
    encode_address,
    encode_topic_address,
    encode_uint256,
)

POOL = "0x" + "a1" * 20
WALLET = "0x" + "b2" * 20
OTHER = "0x" + "c3" * 20
TOKEN0 = "0x" + "d4" * 20
TOKEN1 = "0x" + "e5" * 20
ZERO = "0x" + "0" * 40

E18 = 10**18


def abi_string(value: str) -> str:
    data = value.encode().hex()
    padded = data + "0" * (-len(data) % 64)
    return encode_uint256(32) + encode_uint256(len(value)) + padded


def tx(n: int) -> str:
    return "0x" + format(n, "064x")


def transfer_log(pool, sender, recipient, value, block, log_index=0, tx_hash=None) -> LogRecord:
    return LogRecord(
        address=pool.lower(),
        topics=(TOPICS["Transfer"], encode_topic_address(sender), encode_topic_address(recipient)),
        data=encode_uint256(value),
        block_number=block,
        transaction_hash=tx_hash or tx(block),
        log_index=log_index,
    )


def sync_log(pool, reserve0, reserve1, block, log_index=0, tx_hash=None) -> LogRecord:
    return LogRecord(
        address=pool.lower(),
        topics=(TOPICS["Sync"],),
        data=encode_uint256(reserve0) + encode_uint256(reserve1),
        block_number=block,
        transaction_hash=tx_hash or tx(block),
        log_index=log_index,
    )


def mint_log(pool, amount0, amount1, block, log_index=0, tx_hash=None, sender=OTHER) -> LogRecord:
    return LogRecord(
        address=pool.lower(),
        topics=(TOPICS["Mint"], encode_topic_address(sender)),
        data=encode_uint256(amount0) + encode_uint256(amount1),
        block_number=block,
        transaction_hash=tx_hash or tx(block),
        log_index=log_index,
    )


def burn_log(pool, amount0, amount1, block, log_index=0, tx_hash=None, to=WALLET) -> LogRecord:
    return LogRecord(
        address=pool.lower(),
        topics=(TOPICS["Burn"], encode_topic_address(OTHER), encode_topic_address(to)),
        data=encode_uint256(amount0) + encode_uint256(amount1),
        block_number=block,
        transaction_hash=tx_hash or tx(block),
        log_index=log_index,
    )


def _topic_matches(wanted, actual: Tuple[str, ...]) -> bool:
    for i, rule in enumerate(wanted):
        if rule is None:
            continue
        if i >= len(actual):
            return False
        options = rule if isinstance(rule, list) else [rule]
        if actual[i] not in [o.lower() for o in options]:
            return False
    return True


class FakeLedger(LedgerClient):
    """LedgerClient backed by dictionaries instead of JSON-RPC."""

    def __init__(self, config: Optional[LedgerConfig] = None, latest: int = 1000):
        super().__init__(config or LedgerConfig(rpc_url="http://fake", chunk_size=100, max_chunks=5))
        self.latest = latest
        self.logs: List[LogRecord] = []
        self.state: Dict[Tuple[str, str], Union[str, Exception]] = {}
        self.historical: Dict[Tuple[str, str, int], Union[str, Exception]] = {}
        self.timestamps: Dict[int, int] = {}
        self.failing_windows: Set[Tuple[int, int]] = set()
        self.queries: List[Tuple[int, int]] = []
        self.unreachable = False

    # ── setup helpers ────────────────────────────────────────────────────

    def set_call(self, address: str, calldata: str, result: Union[str, Exception]) -> None:
        self.state[(address.lower(), calldata)] = result

    def add_pool(
        self,
        pool: str = POOL,
        token0: str = TOKEN0,
        token1: str = TOKEN1,
        reserve0: int = 10 * E18,
        reserve1: int = 20_000 * E18,
        total_supply: int = 100 * E18,
    ) -> None:
        self.set_call(pool, SELECTORS["token0"], encode_address(token0))
        self.set_call(pool, SELECTORS["token1"], encode_address(token1))
        self.set_call(
            pool, SELECTORS["getReserves"],
            encode_uint256(reserve0) + encode_uint256(reserve1) + encode_uint256(0),
        )
        self.set_call(pool, SELECTORS["totalSupply"], encode_uint256(total_supply))

    def add_token(self, address: str, symbol: str, decimals: int = 18, name: str = "") -> None:
        self.set_call(address, SELECTORS["name"], abi_string(name or f"{symbol} Token"))
        self.set_call(address, SELECTORS["symbol"], abi_string(symbol))
        self.set_call(address, SELECTORS["decimals"], encode_uint256(decimals))

    def set_balance(self, pool: str, wallet: str, balance: int) -> None:
        self.set_call(pool, SELECTORS["balanceOf"] + encode_address(wallet), encode_uint256(balance))

    def set_supply_at(self, pool: str, block: int, supply: int) -> None:
        self.historical[(pool.lower(), SELECTORS["totalSupply"], block)] = encode_uint256(supply)

    # ── LedgerClient overrides ──────────────────────────────────────────

    async def latest_block(self) -> int:
        if self.unreachable:
            raise LedgerConnectionError("Ledger unreachable at http://fake")
        return self.latest

    async def call(self, address: str, calldata: str, block="latest") -> str:
        if block == "latest":
            result = self.state.get((address.lower(), calldata))
        else:
            result = self.historical.get((address.lower(), calldata, block))
        if result is None:
            raise ContractReadError("RPC error: execution reverted")
        if isinstance(result, Exception):
            raise result
        return result

    async def call_batch(self, calls) -> List[str]:
        results = []
        for to, data in calls:
            try:
                results.append(await self.call(to, data))
            except (httpx.HTTPError, LedgerError):
                results.append("")
        return results

    async def block_timestamp(self, block_number: int) -> int:
        if block_number not in self.timestamps:
            raise LedgerError(f"Block {block_number} not found")
        return self.timestamps[block_number]

    async def get_logs(self, address, topics, from_block, to_block) -> List[LogRecord]:
        self.queries.append((from_block, to_block))
        if (from_block, to_block) in self.failing_windows:
            raise httpx.ReadTimeout("timed out")
        return [
            log
            for log in self.logs
            if from_block <= log.block_number <= to_block
            and (address is None or log.address == address.lower())
            and _topic_matches(topics, log.topics)
        ]
