#!/usr/bin/env python3
"""
Market data providers for Base chain DEX pairs.

GeckoTerminal is primary (network-scoped search + real hourly OHLCV);
DexScreener is the fallback (global search filtered to the chain, best
liquidity first). Provider failures and "no match" both mean "no data for
this pair this cycle"; they never abort a tick.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

import indicators

LOG = logging.getLogger(__name__)

GECKO_BASE = "https://api.geckoterminal.com/api/v2"
DEXSCREENER_BASE = "https://api.dexscreener.com/latest/dex"
DEFAULT_NETWORK = "base"
DEFAULT_HTTP_TIMEOUT_SEC = 10.0
DEFAULT_CACHE_TTL_SEC = 30.0
DEFAULT_OHLCV_LIMIT = 48
MAX_CONTEXT_PAIRS = 5


def _safe_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class MarketSnapshot:
    pair: str
    price_usd: float
    price_change: Dict[str, Optional[float]] = field(default_factory=dict)
    volume_24h: Optional[float] = None
    liquidity: Optional[float] = None
    recent_closes: List[float] = field(default_factory=list)
    source: str = ""
    address: str = ""


class MarketDataProvider(abc.ABC):
    name = "provider"

    @abc.abstractmethod
    async def search_instrument(self, label: str) -> Optional[MarketSnapshot]:
        """Best match for ``label`` (e.g. "WETH/USDC"), or None."""
        raise NotImplementedError

    async def get_price(self, label: str) -> Optional[float]:
        snap = await self.search_instrument(label)
        if snap is None or snap.price_usd <= 0:
            return None
        return snap.price_usd


class _HttpProvider(MarketDataProvider):
    def __init__(
        self,
        base_url: str,
        *,
        network: str = DEFAULT_NETWORK,
        timeout_sec: float = DEFAULT_HTTP_TIMEOUT_SEC,
        cache_ttl_sec: float = DEFAULT_CACHE_TTL_SEC,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.network = network
        self.timeout_sec = float(timeout_sec)
        self.cache_ttl_sec = float(cache_ttl_sec)
        self._session = session
        self._cache: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], Tuple[float, Any]] = {}

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self.base_url}{path}"
        key = (url, tuple(sorted((str(k), str(v)) for k, v in (params or {}).items())))
        hit = self._cache.get(key)
        now = time.monotonic()
        if hit and now - hit[0] < self.cache_ttl_sec:
            return hit[1]

        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.get(url, params=params, headers=headers, timeout=timeout) as resp:
                if resp.status != 200:
                    raise RuntimeError(f"{self.name} HTTP {resp.status} ({url})")
                data = await resp.json(content_type=None)
        finally:
            if owns_session:
                await session.close()

        self._cache[key] = (now, data)
        return data


def _pair_tokens(label: str) -> List[str]:
    return [t.strip().upper() for t in label.split("/") if t.strip()]


class GeckoTerminalProvider(_HttpProvider):
    name = "geckoterminal"

    def __init__(self, base_url: str = GECKO_BASE, *, ohlcv_limit: int = DEFAULT_OHLCV_LIMIT, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.ohlcv_limit = int(ohlcv_limit)

    async def search_pools(self, query: str) -> List[Dict[str, Any]]:
        data = await self._get_json(
            "/search/pools",
            params={"query": query, "network": self.network, "sort": "h24_volume_usd_liquidity_desc"},
            headers={"Accept": "application/json;version=20230302"},
        )
        pools: List[Dict[str, Any]] = []
        for item in (data or {}).get("data") or []:
            attr = item.get("attributes") or {}
            pc = attr.get("price_change_percentage") or {}
            volume = attr.get("volume_usd") or {}
            price = _safe_float(attr.get("base_token_price_usd")) or 0.0
            if price <= 0:
                continue
            pools.append(
                {
                    "address": str(attr.get("address") or ""),
                    "name": str(attr.get("name") or ""),
                    "price_usd": price,
                    "price_change": {k: _safe_float(pc.get(k)) for k in ("m5", "h1", "h6", "h24")},
                    "volume_24h": _safe_float(volume.get("h24")),
                    "liquidity": _safe_float(attr.get("reserve_in_usd")),
                }
            )
        return pools

    async def pool_price_series(self, address: str) -> List[float]:
        """Hourly closes, oldest first."""
        data = await self._get_json(
            f"/networks/{self.network}/pools/{address}/ohlcv/hour",
            params={"limit": self.ohlcv_limit, "currency": "usd"},
            headers={"Accept": "application/json;version=20230302"},
        )
        rows = (((data or {}).get("data") or {}).get("attributes") or {}).get("ohlcv_list") or []
        closes = [float(row[4]) for row in rows if isinstance(row, (list, tuple)) and len(row) >= 5]
        closes.reverse()
        return closes

    async def search_instrument(self, label: str) -> Optional[MarketSnapshot]:
        pools = await self.search_pools(label.replace("/", " "))
        if not pools:
            return None
        tokens = _pair_tokens(label)
        pool = next((p for p in pools if all(t in p["name"].upper() for t in tokens)), None)
        if pool is None:
            LOG.debug("No %s pool matches both tokens of %s", self.name, label)
            return None
        closes: List[float] = []
        if pool["address"]:
            try:
                closes = await self.pool_price_series(pool["address"])
            except Exception as exc:
                LOG.warning("OHLCV unavailable for %s (%s), indicators will be skipped: %s", label, pool["address"], exc)
        return MarketSnapshot(
            pair=label,
            price_usd=pool["price_usd"],
            price_change=pool["price_change"],
            volume_24h=pool["volume_24h"],
            liquidity=pool["liquidity"],
            recent_closes=closes,
            source=self.name,
            address=pool["address"],
        )


class DexScreenerProvider(_HttpProvider):
    name = "dexscreener"

    def __init__(self, base_url: str = DEXSCREENER_BASE, **kwargs: Any):
        super().__init__(base_url, **kwargs)

    async def search_pairs(self, query: str) -> List[Dict[str, Any]]:
        data = await self._get_json("/search", params={"q": query})
        return list((data or {}).get("pairs") or [])

    async def search_instrument(self, label: str) -> Optional[MarketSnapshot]:
        # Global search; the chain hint narrows results before the chainId filter.
        results = await self.search_pairs(f"{label.replace('/', ' ')} {self.network}")
        on_chain = [p for p in results if p.get("chainId") == self.network]
        if not on_chain:
            return None
        on_chain.sort(key=lambda p: _safe_float((p.get("liquidity") or {}).get("usd")) or 0.0, reverse=True)
        best = on_chain[0]
        price = _safe_float(best.get("priceUsd")) or 0.0
        if price <= 0:
            return None
        pc = best.get("priceChange") or {}
        return MarketSnapshot(
            pair=label,
            price_usd=price,
            price_change={k: _safe_float(pc.get(k)) for k in ("m5", "h1", "h6", "h24")},
            volume_24h=_safe_float((best.get("volume") or {}).get("h24")),
            liquidity=_safe_float((best.get("liquidity") or {}).get("usd")),
            source=self.name,
            address=str(best.get("pairAddress") or ""),
        )


class FallbackMarketData(MarketDataProvider):
    """Try providers in order; the first non-empty answer wins."""

    name = "fallback"

    def __init__(self, providers: Sequence[MarketDataProvider]):
        self.providers = list(providers)

    async def search_instrument(self, label: str) -> Optional[MarketSnapshot]:
        for provider in self.providers:
            try:
                snap = await provider.search_instrument(label)
            except Exception as exc:
                LOG.warning("%s failed for %s: %s", provider.name, label, exc)
                continue
            if snap is not None and snap.price_usd > 0:
                return snap
            LOG.info("%s found no data for %s", provider.name, label)
        return None


def provider_from_config(config: Dict[str, Any]) -> FallbackMarketData:
    md = ((config or {}).get("config") or {}).get("market_data") or {}
    common = {
        "network": str(md.get("network") or DEFAULT_NETWORK),
        "timeout_sec": float(md.get("http_timeout_sec") or DEFAULT_HTTP_TIMEOUT_SEC),
        "cache_ttl_sec": float(md.get("cache_ttl_sec") or DEFAULT_CACHE_TTL_SEC),
    }
    return FallbackMarketData(
        [
            GeckoTerminalProvider(
                str(md.get("gecko_base_url") or GECKO_BASE),
                ohlcv_limit=int(md.get("ohlcv_limit") or DEFAULT_OHLCV_LIMIT),
                **common,
            ),
            DexScreenerProvider(str(md.get("dexscreener_base_url") or DEXSCREENER_BASE), **common),
        ]
    )


async def fetch_market_context(
    provider: MarketDataProvider,
    pairs: Sequence[str],
    *,
    with_indicators: bool = True,
    limit: int = MAX_CONTEXT_PAIRS,
) -> List[Dict[str, Any]]:
    """Market context rows for up to ``limit`` pairs; pairs without data are skipped."""
    out: List[Dict[str, Any]] = []
    for pair in list(pairs)[:limit]:
        try:
            snap = await provider.search_instrument(pair)
        except Exception as exc:
            LOG.warning("Market data failed for %s: %s", pair, exc)
            continue
        if snap is None or snap.price_usd <= 0:
            continue
        row: Dict[str, Any] = {
            "pair": pair,
            "price_usd": snap.price_usd,
            "price_change": dict(snap.price_change),
            "volume_24h": snap.volume_24h,
            "liquidity": snap.liquidity,
            "source": snap.source,
            "address": snap.address,
        }
        if with_indicators:
            row["indicators"] = indicators.summarize(snap.recent_closes, snap.price_usd)
        out.append(row)
    return out
