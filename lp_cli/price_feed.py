#!/usr/bin/env python3
"""
Price Feed — DefiLlama coins API client
=======================================
Based on the official documentation: https://defillama.com/docs/api

Endpoints:
  GET /prices/current/{chain:address,...}
  GET /prices/historical/{timestamp}/{chain:address,...}

A coin missing from the response is an UNKNOWN price, not an error.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import httpx

from lp_cli.central_config import DEFAULT_NETWORK, DefiLlamaAPI
from lp_cli.errors import PriceFeedError

logger = logging.getLogger(__name__)


# ── Rate Limiter (CWE-770 mitigation) ────────────────────────────────────


class _RateLimiter:
    """Token-bucket rate limiter to respect API limits.

    CWE-770: Allocation of Resources Without Limits or Throttling.
    """

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        now = time.monotonic()
        # Purge timestamps outside the current window
        self._timestamps = [t for t in self._timestamps if now - t < self._period]
        if len(self._timestamps) >= self._max:
            # Wait until the oldest request expires
            sleep_time = self._period - (now - self._timestamps[0]) + 0.1
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
        self._timestamps.append(time.monotonic())


# Shared rate limiter (module-level singleton)
_llama_limiter = _RateLimiter(max_requests=250, period_seconds=60)


@dataclass(frozen=True)
class TokenQuote:
    """Current USD quote for one token."""

    address: str
    price: float
    symbol: str = ""
    decimals: Optional[int] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class HistoricalQuote:
    """USD quote at (roughly) a requested unix timestamp."""

    address: str
    price: float
    timestamp: int
    symbol: str = ""


class PriceFeedClient:
    """DefiLlama price oracle client for one network."""

    def __init__(self, network: str = DEFAULT_NETWORK, timeout: Optional[float] = None):
        if network not in DefiLlamaAPI.CHAIN_SLUGS:
            raise ValueError(
                f"Unsupported network: {network}. "
                f"Available: {list(DefiLlamaAPI.CHAIN_SLUGS.keys())}"
            )
        self.network = network
        self.chain = DefiLlamaAPI.CHAIN_SLUGS[network]
        self.timeout = timeout or DefiLlamaAPI.TIMEOUT_SECONDS

    async def _get_coins(self, url: str) -> Dict[str, dict]:
        """GET a coins endpoint and return its ``coins`` mapping."""
        await _llama_limiter.acquire()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, verify=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PriceFeedError(f"Price request failed: {e}") from e
        return data.get("coins", {}) or {}

    def _address_of(self, coin_key: str) -> Optional[str]:
        chain, _, address = coin_key.partition(":")
        if chain != self.chain or not address:
            return None
        return address.lower()

    async def get_current_prices(self, addresses: Iterable[str]) -> Dict[str, TokenQuote]:
        """
        Current USD prices keyed by lowercase token address.

        Tokens DefiLlama does not know are simply absent from the result.

        Raises:
            PriceFeedError: On transport failure or a non-2xx response.
        """
        unique = sorted({a.lower() for a in addresses if a})
        if not unique:
            return {}

        coins = [DefiLlamaAPI.coin_id(self.chain, a) for a in unique]
        payload = await self._get_coins(DefiLlamaAPI.current_prices_url(coins))

        quotes = {}
        for key, value in payload.items():
            address = self._address_of(key)
            price = value.get("price")
            if address is None or price is None:
                continue
            quotes[address] = TokenQuote(
                address=address,
                price=float(price),
                symbol=value.get("symbol", ""),
                decimals=value.get("decimals"),
                confidence=value.get("confidence"),
            )

        missing = set(unique) - set(quotes)
        if missing:
            logger.info("No current price for %s", ", ".join(sorted(missing)))
        return quotes

    async def get_historical_price(
        self, address: str, timestamp: int
    ) -> Optional[HistoricalQuote]:
        """
        USD price closest to ``timestamp`` (unix seconds), or None if unknown.

        Raises:
            PriceFeedError: On transport failure or a non-2xx response.
        """
        coin = DefiLlamaAPI.coin_id(self.chain, address)
        payload = await self._get_coins(DefiLlamaAPI.historical_price_url(timestamp, [coin]))
        entry = payload.get(coin)
        if not entry or entry.get("price") is None:
            return None
        return HistoricalQuote(
            address=address.lower(),
            price=float(entry["price"]),
            timestamp=int(entry.get("timestamp", timestamp)),
            symbol=entry.get("symbol", ""),
        )

    async def get_historical_prices(
        self, address: str, timestamps: Iterable[int]
    ) -> Dict[int, Optional[float]]:
        """
        Fan-out historical lookups for one token: {timestamp: price | None}.

        A failed lookup yields None for that timestamp only.
        """
        unique: List[int] = sorted({int(ts) for ts in timestamps if ts})

        async def _one(ts: int) -> Optional[float]:
            try:
                quote = await self.get_historical_price(address, ts)
            except PriceFeedError as e:
                logger.warning("Historical price lookup failed for %s @ %d: %s", address, ts, e)
                return None
            return quote.price if quote else None

        prices = await asyncio.gather(*[_one(ts) for ts in unique])
        return dict(zip(unique, prices))
