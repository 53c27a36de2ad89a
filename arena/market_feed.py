"""
market_feed.py — Market snapshots for arena agents.

Pulls live spot prices, 24h change and 24h volume from CoinGecko (free, no
API key) and turns them into per-pair snapshots. Falls back to Geometric
Brownian Motion (GBM) simulation when the API is unavailable, so a match
keeps ticking offline.

Key features:
  - CoinGecko free-tier integration with 24h change + volume
  - Rate limiting: max 1 request per 10 seconds
  - TTL cache for per-symbol quotes
  - Cross pairs (ETH/WBTC) derived from the two USD legs
  - tick_movement: % move since the previous snapshot of the same pair

Usage:
    feed = MarketFeed()
    snap = await feed.get_snapshot("ETH/USDC")
    snaps = await feed.get_snapshots(["ETH/USDC", "WBTC/USDC"])
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
from loguru import logger


# ─── Constants ────────────────────────────────────────────────────────────────

COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"
RATE_LIMIT_INTERVAL = 10.0          # minimum seconds between API calls
CACHE_TTL = 10.0                    # seconds before cached quote expires
DEFAULT_TIMEOUT = 8.0               # HTTP request timeout
GBM_STEP_SECONDS = 12.0             # simulated time per fallback step

# Mapping from symbol → CoinGecko coin ID
SYMBOL_TO_COINGECKO: Dict[str, str] = {
    "ETH":   "ethereum",
    "BTC":   "bitcoin",
    "SOL":   "solana",
    "LINK":  "chainlink",
    "ARB":   "arbitrum",
}

# Wrapped/stable tokens quoted through their underlying asset
SYMBOL_ALIASES: Dict[str, str] = {
    "WETH": "ETH",
    "WBTC": "BTC",
}

STABLES = frozenset({"USDC", "USDT", "DAI", "USD"})

# Starting prices for GBM simulation (approximate USD)
GBM_BASE_PRICES: Dict[str, float] = {
    "ETH":    3_200.0,
    "BTC":   65_000.0,
    "SOL":      180.0,
    "LINK":      18.0,
    "ARB":        1.8,
}

GBM_BASE_VOLUME: Dict[str, float] = {
    "ETH":  15_000_000_000.0,
    "BTC":  30_000_000_000.0,
    "SOL":   3_000_000_000.0,
    "LINK":    500_000_000.0,
    "ARB":     400_000_000.0,
}

GBM_DRIFT = 0.05   # annualised drift
GBM_SIGMA = 0.80   # annualised volatility


def split_pair(pair: str) -> tuple[str, str]:
    """'ETH/USDC' → ('ETH', 'USDC') with wrapped tokens normalised."""
    if "/" not in pair:
        raise ValueError(f"Invalid pair: {pair}")
    base, quote = pair.upper().split("/", 1)
    return SYMBOL_ALIASES.get(base, base), SYMBOL_ALIASES.get(quote, quote)


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class Quote:
    """USD quote for one asset."""
    symbol:     str
    price:      float
    change_pct: float               # 24h percent change
    volume:     float               # 24h USD volume
    source:     str                 # "coingecko" | "gbm"
    timestamp:  float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValueError(f"Price must be positive, got {self.price}")


@dataclass
class MarketSnapshot:
    """What an agent sees about one trading pair on one tick."""
    pair:          str
    price:         float
    change_pct:    float
    volume:        float
    tick_movement: float            # % move since previous snapshot of this pair
    source:        str
    timestamp:     float = field(default_factory=time.time)

    @property
    def trend(self) -> str:
        if self.change_pct > 0.5:
            return "bullish"
        if self.change_pct < -0.5:
            return "bearish"
        return "neutral"

    def to_dict(self) -> dict:
        return {
            "pair": self.pair,
            "price": round(self.price, 6),
            "change_pct": round(self.change_pct, 4),
            "volume": round(self.volume, 2),
            "tick_movement": round(self.tick_movement, 4),
            "source": self.source,
        }


@dataclass
class FeedStatus:
    api_available:  bool = False
    request_count:  int = 0
    fallback_count: int = 0
    error_count:    int = 0


# ─── GBM Price Simulator ──────────────────────────────────────────────────────

class GBMSimulator:
    """
    Geometric Brownian Motion price simulator used as API fallback.

    dS = S * (mu * dt + sigma * dW)
    """

    def __init__(self, dt_seconds: float = GBM_STEP_SECONDS, rng: Optional[random.Random] = None) -> None:
        self._prices: Dict[str, float] = dict(GBM_BASE_PRICES)
        self._opens: Dict[str, float] = dict(GBM_BASE_PRICES)
        self._dt = dt_seconds / (365.25 * 24 * 3600)
        self._rng = rng or random.Random()

    def next_quote(self, symbol: str) -> Quote:
        base = self._prices.get(symbol, 100.0)
        drift = GBM_DRIFT * self._dt
        shock = GBM_SIGMA * math.sqrt(self._dt) * self._rng.gauss(0, 1)
        price = base * math.exp(drift + shock)
        self._prices[symbol] = price
        opened = self._opens.setdefault(symbol, base)
        return Quote(
            symbol=symbol,
            price=price,
            change_pct=(price / opened - 1) * 100,
            volume=GBM_BASE_VOLUME.get(symbol, 50_000_000.0) * self._rng.uniform(0.8, 1.2),
            source="gbm",
        )

    def set_base(self, symbol: str, price: float) -> None:
        """Seed the simulator with a known price (e.g. from a successful API call)."""
        if price > 0:
            self._prices[symbol] = price
            self._opens.setdefault(symbol, price)


# ─── Rate Limiter ─────────────────────────────────────────────────────────────

class RateLimiter:
    """Minimum-interval limiter for API calls."""

    def __init__(self, min_interval: float = RATE_LIMIT_INTERVAL) -> None:
        self._min_interval = min_interval
        self._last_call: float = 0.0

    def can_call(self) -> bool:
        return (time.time() - self._last_call) >= self._min_interval

    def record_call(self) -> None:
        self._last_call = time.time()


# ─── Quote Cache ──────────────────────────────────────────────────────────────

class QuoteCache:
    """Simple TTL cache for USD quotes."""

    def __init__(self, ttl: float = CACHE_TTL) -> None:
        self._ttl = ttl
        self._store: Dict[str, Quote] = {}

    def get(self, symbol: str) -> Optional[Quote]:
        quote = self._store.get(symbol)
        if quote is None:
            return None
        if (time.time() - quote.timestamp) > self._ttl:
            return None
        return quote

    def set(self, quote: Quote) -> None:
        self._store[quote.symbol] = quote

    def size(self) -> int:
        return len(self._store)


# ─── Main MarketFeed ──────────────────────────────────────────────────────────

class MarketFeed:
    """
    Market-data adapter used by the tick engine.

    Architecture:
        CoinGecko HTTP API → RateLimiter → QuoteCache → pair snapshots
                                     ↓ (on error)
                               GBM Simulator
    """

    def __init__(
        self,
        rate_limit: float = RATE_LIMIT_INTERVAL,
        cache_ttl:  float = CACHE_TTL,
        timeout:    float = DEFAULT_TIMEOUT,
        offline:    bool = False,
        rng:        Optional[random.Random] = None,
    ) -> None:
        self._timeout = timeout
        self._offline = offline
        self._limiter = RateLimiter(rate_limit)
        self._cache   = QuoteCache(cache_ttl)
        self._gbm     = GBMSimulator(rng=rng)
        self._status  = FeedStatus()
        self._last_pair_price: Dict[str, float] = {}

    # ── CoinGecko Fetch ───────────────────────────────────────────────────────

    async def _fetch_coingecko(self, symbols: List[str]) -> Dict[str, Quote]:
        """
        Fetch quotes from the CoinGecko simple/price endpoint.

        Returns a mapping of symbol → Quote. On any error, returns {}.
        """
        coin_ids = [SYMBOL_TO_COINGECKO[s] for s in symbols if s in SYMBOL_TO_COINGECKO]
        if not coin_ids:
            return {}

        self._limiter.record_call()
        self._status.request_count += 1

        params = {
            "ids":                 ",".join(coin_ids),
            "vs_currencies":       "usd",
            "include_24hr_change": "true",
            "include_24hr_vol":    "true",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(COINGECKO_URL, params=params)
                resp.raise_for_status()
                data = resp.json()

            id_to_sym = {v: k for k, v in SYMBOL_TO_COINGECKO.items()}
            result: Dict[str, Quote] = {}
            for coin_id, vals in data.items():
                sym = id_to_sym.get(coin_id)
                if sym and "usd" in vals:
                    result[sym] = Quote(
                        symbol=sym,
                        price=float(vals["usd"]),
                        change_pct=float(vals.get("usd_24h_change") or 0.0),
                        volume=float(vals.get("usd_24h_vol") or 0.0),
                        source="coingecko",
                    )
                    self._gbm.set_base(sym, result[sym].price)

            self._status.api_available = True
            return result

        except Exception as exc:
            self._status.api_available = False
            self._status.error_count += 1
            logger.warning(f"CoinGecko fetch failed: {exc}")
            return {}

    # ── USD quotes ────────────────────────────────────────────────────────────

    async def get_quotes(self, symbols: List[str]) -> Dict[str, Quote]:
        """
        Return USD quotes for the given symbols.

        Priority per symbol: valid cache entry, one batched CoinGecko call
        (if the rate limit allows), then GBM fallback.
        """
        result: Dict[str, Quote] = {}
        missing: List[str] = []

        for sym in dict.fromkeys(symbols):
            cached = self._cache.get(sym)
            if cached is not None:
                result[sym] = cached
            else:
                missing.append(sym)

        fetched: Dict[str, Quote] = {}
        if missing and not self._offline and self._limiter.can_call():
            fetched = await self._fetch_coingecko(missing)

        for sym in missing:
            if sym in fetched:
                self._cache.set(fetched[sym])
                result[sym] = fetched[sym]
            else:
                self._status.fallback_count += 1
                result[sym] = self._gbm.next_quote(sym)

        return result

    # ── Pair snapshots ────────────────────────────────────────────────────────

    async def get_snapshot(self, pair: str) -> MarketSnapshot:
        snaps = await self.get_snapshots([pair])
        return snaps[pair]

    async def get_snapshots(self, pairs: List[str]) -> Dict[str, MarketSnapshot]:
        """Fetch every USD leg needed for `pairs` once, then derive each pair."""
        legs: List[str] = []
        for pair in pairs:
            base, quote = split_pair(pair)
            legs.append(base)
            if quote not in STABLES:
                legs.append(quote)

        quotes = await self.get_quotes(legs)
        return {pair: self._derive(pair, quotes) for pair in pairs}

    def _derive(self, pair: str, quotes: Dict[str, Quote]) -> MarketSnapshot:
        base, quote = split_pair(pair)
        b = quotes[base]
        if quote in STABLES:
            price, change, volume, source = b.price, b.change_pct, b.volume, b.source
        else:
            q = quotes[quote]
            price = b.price / q.price
            # Cross-rate change from the two USD legs
            change = ((1 + b.change_pct / 100) / (1 + q.change_pct / 100) - 1) * 100
            volume = min(b.volume, q.volume)
            source = b.source if b.source == q.source else "mixed"

        previous = self._last_pair_price.get(pair)
        movement = (price / previous - 1) * 100 if previous else 0.0
        self._last_pair_price[pair] = price

        return MarketSnapshot(
            pair=pair,
            price=price,
            change_pct=change,
            volume=volume,
            tick_movement=movement,
            source=source,
        )

    # ── Status ────────────────────────────────────────────────────────────────

    @property
    def status(self) -> FeedStatus:
        return self._status

    def is_live(self) -> bool:
        return self._status.api_available

    def cache_size(self) -> int:
        return self._cache.size()
