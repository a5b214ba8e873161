"""Market price lookups with a per-pair TTL cache."""
from __future__ import annotations

import json
import logging
import os
import threading
import time
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

LOGGER = logging.getLogger("paperhands.pricing")

COINGECKO_IDS = {"BTC": "bitcoin", "ETH": "ethereum", "USDC": "usd-coin", "USDT": "tether"}


class PriceUnavailable(Exception):
    pass


@dataclass(frozen=True)
class PriceQuote:
    base: str
    quote: str
    price: float
    cached: bool = False
    stale: bool = False

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"price": self.price, "currency": self.quote, "cached": self.cached}
        if self.stale:
            payload["stale"] = True
        return payload


class PriceCache:
    """Caches prices per asset pair and falls back to stale values on feed errors.

    ``fetcher(base, quote)`` returns the live price. A cached entry younger than
    ``ttl`` seconds is served without calling the fetcher. If the fetcher fails
    and an older entry exists for the pair, that entry is returned flagged as
    stale; with nothing cached the failure surfaces as ``PriceUnavailable``.
    """

    def __init__(
        self,
        fetcher: Callable[[str, str], float],
        *,
        ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fetcher = fetcher
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, float]] = {}  # pair -> (fetched_at, price)
        self._lock = threading.Lock()

    def get(self, base: str, quote: str) -> PriceQuote:
        pair = (base.upper(), quote.upper())
        now = self.clock()
        with self._lock:
            entry = self._entries.get(pair)
        if entry and now - entry[0] < self.ttl:
            return PriceQuote(pair[0], pair[1], entry[1], cached=True)
        try:
            price = float(self.fetcher(*pair))
        except Exception as exc:
            if entry:
                LOGGER.warning("Price feed for %s/%s failed (%s), serving stale price", pair[0], pair[1], exc)
                return PriceQuote(pair[0], pair[1], entry[1], cached=True, stale=True)
            raise PriceUnavailable(f"unable to fetch {pair[0]}/{pair[1]} price: {exc}") from exc
        with self._lock:
            self._entries[pair] = (now, price)
        LOGGER.info("Fetched %s/%s price: %s", pair[0], pair[1], price)
        return PriceQuote(pair[0], pair[1], price)

    def invalidate(self, base: Optional[str] = None, quote: Optional[str] = None) -> None:
        with self._lock:
            if base is None or quote is None:
                self._entries.clear()
            else:
                self._entries.pop((base.upper(), quote.upper()), None)


class CoinGeckoPriceFeed:
    """Reads spot prices from the CoinGecko ``simple/price`` endpoint."""

    def __init__(self, endpoint: Optional[str] = None) -> None:
        self.endpoint = endpoint or os.getenv("PRICE_FEED_URL", "https://api.coingecko.com/api/v3/simple/price")
        self.timeout = int(os.getenv("PRICE_FEED_TIMEOUT", "10"))

    def __call__(self, base: str, quote: str) -> float:
        coin = COINGECKO_IDS.get(base.upper(), base.lower())
        currency = quote.lower()
        query = urllib.parse.urlencode({"ids": coin, "vs_currencies": currency})
        with urllib.request.urlopen(f"{self.endpoint}?{query}", timeout=self.timeout) as response:
            payload = json.loads(response.read().decode("utf-8"))
        return float(payload[coin][currency])


def build_price_cache() -> PriceCache:
    return PriceCache(CoinGeckoPriceFeed(), ttl=float(os.getenv("PRICE_CACHE_TTL", "60")))


__all__ = ["CoinGeckoPriceFeed", "PriceCache", "PriceQuote", "PriceUnavailable", "build_price_cache"]
