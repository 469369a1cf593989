"""
Ledger Client — bounded-range log queries and point contract reads
==================================================================

Wraps the JSON-RPC primitives in rpc_helpers with an explicit
LedgerConfig (endpoint, window width, window limit, timeout).

Chunked scan policy
───────────────────
Public nodes cap eth_getLogs to a block span, so history is read in
windows of ``chunk_size`` blocks walking BACKWARD from the latest block:

    [latest - chunk_size + 1, latest], [.. , previous_from - 1], ...

The walk stops when
  (a) ``max_chunks`` windows have been issued,
  (b) the window containing ``start_block`` has been read, or
  (c) a window returned at least one log (that window is finished first,
      nothing older is read).

Rule (c) favours cheap discovery of recent activity. Activity older than
the first non-empty window, or beyond the window limit, is NOT returned:
callers must treat scan results as best-effort. ``ScanResult.exhausted``
tells whether the walk reached ``start_block``.

A window that errors (provider error, timeout) counts as empty and is
not retried. Only the initial latest-block read is fatal.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from lp_cli.central_config import LedgerConfig
from lp_cli.errors import LedgerConnectionError, LedgerError
from lp_cli.rpc_helpers import (
    TopicFilter,
    eth_block_number,
    eth_call,
    eth_call_batch,
    eth_get_block,
    eth_get_logs,
    strip_0x,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogRecord:
    """One decoded-envelope event log (payload still ABI-encoded)."""

    address: str
    topics: Tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> "LogRecord":
        return cls(
            address=raw["address"].lower(),
            topics=tuple(t.lower() for t in raw.get("topics", [])),
            data=strip_0x(raw.get("data", "0x")),
            block_number=int(raw["blockNumber"], 16),
            transaction_hash=raw.get("transactionHash", "").lower(),
            log_index=int(raw.get("logIndex", "0x0"), 16),
        )

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass
class ScanResult:
    """Logs found by a chunked scan plus what the scan actually covered."""

    logs: List[LogRecord] = field(default_factory=list)
    chunks_scanned: int = 0
    failed_chunks: int = 0
    lowest_block: Optional[int] = None
    highest_block: Optional[int] = None
    exhausted: bool = False  # reached start_block


class LedgerClient:
    """
    Read-only access to one EVM ledger.

    Usage:
        ledger = LedgerClient(LedgerConfig.for_network("base"))
        scan = await ledger.chunked_scan(pool, [TOPICS["Transfer"], None, wallet_topic])
    """

    def __init__(self, config: LedgerConfig):
        self.config = config
        self.rpc_url = config.rpc_url

    # ── Point reads ──────────────────────────────────────────────────────

    async def latest_block(self) -> int:
        """Latest block height. Failure here means the ledger is unreachable."""
        try:
            return await eth_block_number(self.rpc_url, timeout=self.config.request_timeout)
        except (httpx.HTTPError, LedgerError, ValueError) as e:
            raise LedgerConnectionError(f"Ledger unreachable at {self.rpc_url}: {e}") from e

    async def call(
        self, address: str, calldata: str, block: Union[int, str] = "latest"
    ) -> str:
        """eth_call; raises ContractReadError on revert/empty, httpx errors on transport."""
        return await eth_call(
            self.rpc_url, address, calldata, block=block, timeout=self.config.request_timeout
        )

    async def call_batch(self, calls: List[Tuple[str, str]]) -> List[str]:
        """Batched eth_call at latest; failed members come back as ""."""
        try:
            results = await eth_call_batch(
                self.rpc_url, calls, timeout=self.config.request_timeout
            )
            if len(results) == len(calls):
                return results
            logger.debug("Batch returned %d of %d results", len(results), len(calls))
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Batch call failed: %s", e)

        # Fallback to sequential calls if batch not supported
        results = []
        for to, data in calls:
            try:
                results.append(await self.call(to, data))
            except (httpx.HTTPError, LedgerError, ValueError):
                results.append("")
        return results

    async def block_timestamp(self, block_number: int) -> int:
        """Unix timestamp (seconds) of a block."""
        block = await eth_get_block(
            self.rpc_url, block_number, timeout=self.config.request_timeout
        )
        return int(block["timestamp"], 16)

    async def get_logs(
        self,
        address: Optional[str],
        topics: TopicFilter,
        from_block: int,
        to_block: int,
    ) -> List[LogRecord]:
        """Logs for one inclusive window; the caller keeps the span within node limits."""
        raw_logs = await eth_get_logs(
            self.rpc_url,
            address,
            topics,
            from_block,
            to_block,
            timeout=self.config.request_timeout,
        )
        return [LogRecord.from_rpc(raw) for raw in raw_logs]

    # ── Chunked scan ─────────────────────────────────────────────────────

    async def chunked_scan(
        self,
        address: Optional[str],
        topics: TopicFilter,
        latest: Optional[int] = None,
    ) -> ScanResult:
        """
        Walk backward from the latest block in fixed windows (see module doc).

        Args:
            address: Emitting contract, or None to match every contract
            topics: Positional topic filter
            latest: Upper bound to start from; fetched when omitted

        Returns:
            ScanResult with logs in (block, logIndex) order.

        Raises:
            LedgerConnectionError: If the latest block cannot be read.
        """
        if latest is None:
            latest = await self.latest_block()

        start = self.config.start_block
        size = self.config.chunk_size
        result = ScanResult(highest_block=latest)
        to_block = latest

        while to_block >= start and result.chunks_scanned < self.config.max_chunks:
            from_block = max(to_block - size + 1, start)
            try:
                logs = await self.get_logs(address, topics, from_block, to_block)
            except (httpx.HTTPError, LedgerError, ValueError, KeyError) as e:
                logger.warning(
                    "Log query failed for blocks %d-%d: %s", from_block, to_block, e
                )
                logs = []
                result.failed_chunks += 1

            result.logs.extend(logs)
            result.chunks_scanned += 1
            result.lowest_block = from_block
            to_block = from_block - 1

            if result.logs:
                break

        result.exhausted = result.lowest_block is not None and result.lowest_block <= start
        result.logs.sort(key=lambda log: log.sort_key)
        logger.debug(
            "Scanned %d chunk(s) [%s..%s] for %s: %d log(s), %d failed",
            result.chunks_scanned,
            result.lowest_block,
            result.highest_block,
            address or "*",
            len(result.logs),
            result.failed_chunks,
        )
        return result
