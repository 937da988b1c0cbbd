"""
Relay Engine — Community Market Client
───────────────────────────────────────
Read-only calls against the community marketplace JSON endpoints.
Returns normalised dicts; never writes to any store.

Every request path:
    populator (dedupe + MARKET_DATA cache)
      → request queue (one at a time, ~3.5s apart, 429 cooldown)
        → resilient_fetch (timeout + retries for network/5xx)
          → httpx

429 is deliberately not retried by the inner retrier so the queue's
long randomized cooldown handles it.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from relay_engine.alerts.models import ItemRef, PriceQuote
from relay_engine.cache.populator import DedupingPopulator
from relay_engine.cache.regions import MARKET_TTL, CacheRegion
from relay_engine.errors import is_rate_limited
from relay_engine.resilience.request_queue import RequestQueue
from relay_engine.resilience.retry import TIMEOUTS, resilient_fetch, should_retry

log = logging.getLogger("relay.market")

MARKET_HEADERS = {
    "Accept":           "application/json, text/javascript, */*; q=0.01",
    "Accept-Language":  "en-US,en;q=0.9",
    "User-Agent":       "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Referer":          "https://steamcommunity.com/market/",
    "Origin":           "https://steamcommunity.com",
    "X-Requested-With": "XMLHttpRequest",
}

IMAGE_BASE = "https://steamcommunity-a.akamaihd.net/economy/image/"

# sort_by → (column, direction)
SORTS = {
    "popularity": ("popular", "desc"),
    "price_asc":  ("price", "asc"),
    "price_desc": ("price", "desc"),
    "name_asc":   ("name", "asc"),
    "name_desc":  ("name", "desc"),
}

_NON_PRICE_RE     = re.compile(r"[^0-9.,]")
_DECIMAL_COMMA_RE = re.compile(r",(?=\d{2}$)")


# ══════════════════════════════════════════════════════════════
# PRICE TEXT
# ══════════════════════════════════════════════════════════════

def normalize_price_text(text: Optional[str]) -> Optional[str]:
    """'S$25.50' → '$25.50'; anything else passes through."""
    if not text or not isinstance(text, str):
        return None
    return re.sub(r"^S\$", "$", text)


def parse_price_text(text: Optional[str]) -> float:
    """'$1,234.56' → 1234.56, '12,34€' → 12.34, garbage → 0.0"""
    if not text or not isinstance(text, str):
        return 0.0
    cleaned = _DECIMAL_COMMA_RE.sub(".", _NON_PRICE_RE.sub("", text)).replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def _icon_url(icon: Optional[str]) -> Optional[str]:
    return f"{IMAGE_BASE}{icon}/128fx128f" if icon else None


def normalize_listing(r: dict, fallback_appid: int) -> dict:
    asset     = r.get("asset_description") or {}
    appid     = r.get("appid") or fallback_appid
    hash_name = r.get("hash_name") or r.get("name")
    app_data  = asset.get("app_data") or r.get("app_data") or {}
    return {
        "id":              f"{appid}_{quote(hash_name or '')}",
        "appid":           appid,
        "name":            r.get("name"),
        "hash_name":       hash_name,
        "icon_url":        _icon_url(asset.get("icon_url") or asset.get("icon_url_large")),
        "sell_listings":   r.get("sell_listings") or 0,
        "sell_price_text": normalize_price_text(r.get("sell_price_text")),
        "sale_price_text": normalize_price_text(r.get("sale_price_text")),
        "app_name":        app_data.get("app_name"),
    }


def _retryable(err: BaseException) -> bool:
    return not is_rate_limited(err) and should_retry(err)


# ══════════════════════════════════════════════════════════════
# CLIENT
# ══════════════════════════════════════════════════════════════

class MarketClient:

    def __init__(
        self,
        http: httpx.AsyncClient,
        queue: RequestQueue,
        populator: DedupingPopulator,
        timeout: float = TIMEOUTS["steam_market"],
        retry: Optional[Dict[str, Any]] = None,
    ):
        self.http      = http
        self.queue     = queue
        self.populator = populator
        self.timeout   = timeout
        # RetryPolicy field overrides for the inner retrier
        self.retry     = {"should_retry": _retryable, **(retry or {})}

    async def _get(self, path: str, params: dict) -> Any:
        async def attempt():
            r = await self.http.get(path, params=params)
            r.raise_for_status()
            return r.json()

        return await self.queue.enqueue(
            lambda: resilient_fetch(
                attempt, timeout=self.timeout, context=f"Market {path}", **self.retry,
            )
        )

    def _cached(self, key: str, loader, ttl_key: str):
        return self.populator.get_or_set_deduped(
            CacheRegion.MARKET_DATA, key, loader, MARKET_TTL[ttl_key],
        )

    # ── Endpoints ─────────────────────────────────────────────

    async def price_overview(self, appid: int, hash_name: str, currency: int = 1) -> dict:
        async def load():
            data = await self._get("/priceoverview/", {
                "appid": appid, "currency": currency, "market_hash_name": hash_name,
            })
            return {
                "success":      bool(data.get("success")),
                "lowest_price": data.get("lowest_price"),
                "median_price": data.get("median_price"),
                "volume":       data.get("volume"),
            }

        return await self._cached(f"price_{appid}_{hash_name}_{currency}", load, "price_overview")

    async def price_history(self, appid: int, hash_name: str, currency: int = 1) -> dict:
        async def load():
            data = await self._get("/pricehistory/", {
                "appid": appid, "market_hash_name": hash_name, "currency": currency,
            })
            return {"success": bool(data.get("success")), "prices": data.get("prices") or []}

        return await self._cached(f"history_{appid}_{hash_name}_{currency}", load, "price_history")

    async def search(self, appid: int, query: str = "", start: int = 0, count: int = 10,
                     sort_by: str = "popularity") -> dict:
        column, direction = SORTS.get(sort_by, SORTS["popularity"])
        params = {
            "appid":               appid,
            "query":               query,
            "start":               start,
            "count":               count,
            "norender":            1,
            "search_descriptions": 0,
            "sort_column":         column,
            "sort_dir":            direction,
            "currency":            1,
        }

        async def load():
            data = await self._get("/search/render/", params)
            results = [normalize_listing(r, appid) for r in data.get("results") or []]
            return {"total": data.get("total_count") or 0, "results": results}

        key = "search_page_" + json.dumps(
            {"appid": appid, "query": query, "start": start, "count": count, "sort": sort_by},
            sort_keys=True,
        )
        return await self._cached(key, load, "search_page")

    async def trending(self, appid: int = 730, count: int = 15) -> dict:
        """Most expensive listings of the popular page."""
        async def load():
            page = await self.search(appid, start=0, count=count)
            ranked: List[dict] = sorted(
                page["results"],
                key=lambda r: parse_price_text(r["sale_price_text"] or r["sell_price_text"]),
                reverse=True,
            )
            return {"total": page["total"], "results": ranked[:count]}

        return await self._cached(f"trending_{appid}_{count}", load, "trending")

    # ── Pricing function for the alert scheduler ──────────────

    async def lookup_price(self, ref: ItemRef) -> PriceQuote:
        try:
            overview = await self.price_overview(ref.appid, ref.hash_name)
        except Exception as e:
            log.warning(f"Price lookup failed for {ref}: {e}")
            return PriceQuote(success=False)

        if not overview.get("success"):
            return PriceQuote(success=False)

        price = (parse_price_text(overview.get("median_price"))
                 or parse_price_text(overview.get("lowest_price")))
        return PriceQuote(success=price > 0, price=price or None)
