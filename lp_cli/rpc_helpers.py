#!/usr/bin/env python3
"""
RPC Helpers — Shared ABI Encoding/Decoding and JSON-RPC Client
===============================================================

Low-level EVM interaction primitives used by the ledger client, the
position indexer and the history reader:

  • ABI encoding/decoding (uint256, address, string, event topics)
  • JSON-RPC client (eth_call, eth_call_batch, eth_blockNumber,
    eth_getLogs, eth_getBlockByNumber)
  • Uniswap V2 pair selectors and event topics

All constants reference the Ethereum ABI specification:
  https://docs.soliditylang.org/en/latest/abi-spec.html

Terminology:
  • Word:   32 bytes = 256 bits = 64 hex characters
  • Slot:   Position of a 32-byte word in an ABI response
  • Topic:  Indexed event field (topic0 = keccak256 of the event signature)
"""

from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from lp_cli.errors import ContractReadError, LedgerError

# ── ABI Word Constants ──────────────────────────────────────────────────
# Ethereum ABI spec: https://docs.soliditylang.org/en/latest/abi-spec.html

ABI_WORD_BYTES = 32          # 1 ABI word = 32 bytes
ABI_WORD_HEX = 64            # 32 bytes × 2 hex chars = 64 hex characters
ADDRESS_BYTES = 20            # Ethereum address = 20 bytes
ADDRESS_HEX = 40              # 20 bytes × 2 = 40 hex characters
ADDRESS_PAD_HEX = 24          # Left padding in a 32-byte slot = 64 - 40 = 24 hex chars

ZERO_ADDRESS = "0x" + "0" * ADDRESS_HEX

# ── Common Token Symbol Normalization ───────────────────────────────────
# Some on-chain symbols use non-standard Unicode or suffixes.

SYMBOL_MAP = {
    "USD₮0": "USDT",
    "USD₮": "USDT",
    "USDT0": "USDT",
}


def normalize_symbol(raw_symbol: str) -> str:
    """Normalize on-chain token symbol to common name."""
    cleaned = raw_symbol.strip().strip("\x00")
    return SYMBOL_MAP.get(cleaned, cleaned)


# ── Public RPC Endpoints via 1RPC.io ────────────────────────────────────
# Free tier, no API key. Override per run with LP_RPC_URL.
# Networks: https://docs.1rpc.io/using-the-web3-api/networks

RPC_URLS: dict[str, str] = {
    "base": "https://1rpc.io/base",
    "ethereum": "https://1rpc.io/eth",
    "arbitrum": "https://1rpc.io/arb",
    "polygon": "https://1rpc.io/matic",
    "optimism": "https://1rpc.io/op",
    "bsc": "https://1rpc.io/bnb",
}


# ── ABI Function Selectors ──────────────────────────────────────────────
# First 4 bytes of keccak256(function_signature).

SELECTORS: dict[str, str] = {
    # UniswapV2Pair (pool identity + state)
    "token0":       "0x0dfe1681",  # token0()
    "token1":       "0xd21220a7",  # token1()
    "getReserves":  "0x0902f1ac",  # getReserves()

    # ERC-20 (LP share token and underlying tokens)
    "totalSupply":  "0x18160ddd",  # totalSupply()
    "balanceOf":    "0x70a08231",  # balanceOf(address)
    "name":         "0x06fdde03",  # name()
    "symbol":       "0x95d89b41",  # symbol()
    "decimals":     "0x313ce567",  # decimals()
}


# ── Event Topics ────────────────────────────────────────────────────────
# topic0 = keccak256(event_signature).
# Ref: https://github.com/Uniswap/v2-core/blob/master/contracts/UniswapV2Pair.sol

TOPICS: dict[str, str] = {
    # Transfer(address indexed from, address indexed to, uint256 value)
    "Transfer": "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
    # Sync(uint112 reserve0, uint112 reserve1)
    "Sync":     "0x1c411e9a96e071241c2f21f7726b17ae89e3cab4c78be50e062b03a9fffbbad1",
    # Mint(address indexed sender, uint256 amount0, uint256 amount1)
    "Mint":     "0x4c209b5fc8ad50758f13e2e1088ba56a560dff690a1c6fef26394f4c03821c4f",
    # Burn(address indexed sender, uint256 amount0, uint256 amount1, address indexed to)
    "Burn":     "0xdccd412f0b1252819cb1fd330b93224ca42612892bb3f4f789976e6d81936496",
}

# A topic filter entry: exact topic, OR-set of topics, or None (wildcard).
TopicFilter = List[Union[str, List[str], None]]


# ── Address Validation ──────────────────────────────────────────────────

def is_address(value: str) -> bool:
    """True for a 0x-prefixed 20-byte hex string.

    >>> is_address('0xC36442b4a4522E871399CD717aBDD847Ab11FE88')
    True
    """
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


# ── ABI Encoding ────────────────────────────────────────────────────────

def encode_uint256(value: int) -> str:
    """ABI-encode a uint256 as 32-byte hex (no 0x prefix).

    >>> encode_uint256(1)
    '0000000000000000000000000000000000000000000000000000000000000001'
    """
    return format(value, f'0{ABI_WORD_HEX}x')


def encode_address(addr: str) -> str:
    """ABI-encode an address as 32 bytes (left-padded, no 0x prefix).

    >>> encode_address('0xC36442b4a4522E871399CD717aBDD847Ab11FE88')
    '000000000000000000000000c36442b4a4522e871399cd717abdd847ab11fe88'
    """
    return addr.lower().replace("0x", "").zfill(ABI_WORD_HEX)


def encode_topic_address(addr: str) -> str:
    """Encode an address as an indexed event topic (0x + 32 bytes)."""
    return "0x" + encode_address(addr)


def encode_block(block: Union[int, str]) -> str:
    """Block identifier for JSON-RPC: hex quantity or a tag like 'latest'."""
    if isinstance(block, int):
        return hex(block)
    return block


# ── ABI Decoding ────────────────────────────────────────────────────────

def strip_0x(hex_data: str) -> str:
    return hex_data[2:] if hex_data.startswith("0x") else hex_data


def decode_uint(hex_data: str, slot: int = 0) -> int:
    """Decode uint256 from ABI response at 32-byte slot offset.

    Args:
        hex_data: Hex string (without 0x prefix).
        slot: Which 32-byte word to read (0-indexed).
    """
    start = slot * ABI_WORD_HEX
    return int(hex_data[start:start + ABI_WORD_HEX], 16)


def decode_address(hex_data: str, slot: int = 0) -> str:
    """Decode address (last 20 bytes of 32-byte slot).

    Args:
        hex_data: Hex string (without 0x prefix).
        slot: Which 32-byte word to read (0-indexed).
    """
    start = slot * ABI_WORD_HEX
    return "0x" + hex_data[start + ADDRESS_PAD_HEX:start + ABI_WORD_HEX]


def decode_topic_address(topic: str) -> str:
    """Decode an indexed address topic (0x + 64 hex) to a lowercase address."""
    return "0x" + strip_0x(topic)[-ADDRESS_HEX:].lower()


def decode_string(hex_data: str) -> str:
    """Decode ABI-encoded dynamic string return value.

    Handles both standard dynamic strings (offset + length + data)
    and non-standard bytes32 returns from some token contracts.
    """
    try:
        offset = decode_uint(hex_data, 0)
        word_offset = offset // ABI_WORD_BYTES
        length = decode_uint(hex_data, word_offset)
        start_byte = (word_offset + 1) * ABI_WORD_HEX
        hex_str = hex_data[start_byte:start_byte + length * 2]
        return bytes.fromhex(hex_str).decode("utf-8").strip("\x00")
    except (ValueError, UnicodeDecodeError):
        # Fallback: Some tokens return bytes32 instead of string
        try:
            raw = bytes.fromhex(hex_data[:ABI_WORD_HEX])
            return raw.decode("utf-8").strip("\x00").strip()
        except (ValueError, UnicodeDecodeError):
            return "UNK"


# ── JSON-RPC Client ─────────────────────────────────────────────────────

async def _rpc_request(
    rpc_url: str, method: str, params: list, timeout: float
) -> Any:
    """POST a single JSON-RPC request and return its ``result`` field.

    Raises:
        LedgerError: If the node answers with a JSON-RPC error object.
        httpx.HTTPError: On transport failures (propagated unchanged).
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payload)
        result = resp.json()
    if "error" in result:
        error = result["error"]
        message = error.get("message", error) if isinstance(error, dict) else error
        raise LedgerError(f"RPC error: {message}")
    return result.get("result")


async def eth_call(
    rpc_url: str,
    to: str,
    data: str,
    block: Union[int, str] = "latest",
    timeout: float = 20,
) -> str:
    """
    Execute eth_call on an EVM node.

    Args:
        rpc_url: JSON-RPC endpoint URL (e.g. https://1rpc.io/base)
        to: Contract address (0x...)
        data: ABI-encoded calldata (0x + selector + params)
        block: Block number or tag; historical numbers need an archive node
        timeout: HTTP timeout in seconds

    Returns:
        Hex response string (without 0x prefix).

    Raises:
        ContractReadError: If the call reverts or returns an empty response.
    """
    try:
        raw = await _rpc_request(
            rpc_url, "eth_call", [{"to": to, "data": data}, encode_block(block)], timeout
        )
    except LedgerError as e:
        raise ContractReadError(str(e)) from e
    if not raw or raw == "0x" or len(raw) < 4:
        raise ContractReadError("Empty response — contract may not implement this call")
    return raw[2:]  # strip 0x prefix


async def eth_call_batch(
    rpc_url: str, calls: List[Tuple[str, str]], timeout: float = 20
) -> List[str]:
    """
    Batch multiple eth_call requests into a single HTTP request.

    Args:
        rpc_url: JSON-RPC endpoint URL
        calls: List of (contract_address, calldata) tuples
        timeout: HTTP timeout in seconds

    Returns:
        List of hex result strings (without 0x prefix), in same order as calls.
        Failed members come back as "".
    """
    payloads = []
    for i, (to, data) in enumerate(calls):
        payloads.append({
            "jsonrpc": "2.0",
            "id": i + 1,
            "method": "eth_call",
            "params": [{"to": to, "data": data}, "latest"],
        })

    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payloads)
        results = resp.json()

    # Sort by id and extract results
    if isinstance(results, list):
        results.sort(key=lambda r: r.get("id", 0))
        return [r.get("result", "0x")[2:] if "result" in r else "" for r in results]
    # Single result (some RPCs don't support batch)
    return [results.get("result", "0x")[2:]]


async def eth_block_number(rpc_url: str, timeout: float = 10) -> int:
    """Get the latest block number from an EVM node."""
    result = await _rpc_request(rpc_url, "eth_blockNumber", [], timeout)
    return int(result, 16)


async def eth_get_logs(
    rpc_url: str,
    address: Optional[str],
    topics: TopicFilter,
    from_block: int,
    to_block: int,
    timeout: float = 20,
) -> List[Dict[str, Any]]:
    """
    Fetch raw event logs for an inclusive block range.

    Args:
        rpc_url: JSON-RPC endpoint URL
        address: Emitting contract, or None for every contract
        topics: Positional topic filter (None = wildcard, list = OR-set)
        from_block / to_block: Inclusive range; nodes cap its width

    Returns:
        List of raw log objects as returned by the node.
    """
    log_filter: Dict[str, Any] = {
        "fromBlock": hex(from_block),
        "toBlock": hex(to_block),
        "topics": topics,
    }
    if address:
        log_filter["address"] = address
    result = await _rpc_request(rpc_url, "eth_getLogs", [log_filter], timeout)
    return result or []


async def eth_get_block(
    rpc_url: str, block_number: int, timeout: float = 10
) -> Dict[str, Any]:
    """Fetch a block header (without transactions).

    Raises:
        LedgerError: If the node does not know the block.
    """
    result = await _rpc_request(
        rpc_url, "eth_getBlockByNumber", [hex(block_number), False], timeout
    )
    if not result:
        raise LedgerError(f"Block {block_number} not found")
    return result
