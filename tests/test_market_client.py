import asyncio

import httpx
import pytest

from conftest import FAST_QUEUE, FAST_RETRY
from relay_engine.alerts.models import ItemRef
from relay_engine.cache import CacheRegion, DedupingPopulator, TieredCache
from relay_engine.market import MarketClient, normalize_price_text, parse_price_text
from relay_engine.resilience import RequestQueue
from relay_engine.runtime import build_market_http


class Market:
    """Scripted marketplace: path → list of responses consumed in order (last one repeats)."""

    def __init__(self, routes):
        self.routes = {path: list(responses) for path, responses in routes.items()}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/market", "", 1)
        responses = self.routes[path]
        scripted = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(scripted, Exception):
            raise scripted
        status, body = scripted
        return httpx.Response(status, json=body)


def client_for(market: Market):
    cache = TieredCache()
    http = build_market_http(transport=httpx.MockTransport(market))
    client = MarketClient(http, RequestQueue(FAST_QUEUE), DedupingPopulator(cache), retry=FAST_RETRY)
    return client, cache


OVERVIEW = {"success": True, "lowest_price": "$9.10", "median_price": "$9.00", "volume": "1,204"}


@pytest.mark.parametrize("text, expected", [
    ("$1,234.56", 1234.56),
    ("12,34€", 12.34),
    ("S$25.50", 25.50),
    ("", 0.0),
    (None, 0.0),
    ("free", 0.0),
])
def test_parse_price_text(text, expected):
    assert parse_price_text(text) == expected


def test_normalize_price_text():
    assert normalize_price_text("S$25.50") == "$25.50"
    assert normalize_price_text("$3.10") == "$3.10"
    assert normalize_price_text("") is None


@pytest.mark.asyncio
async def test_price_overview_is_cached_and_deduped():
    market = Market({"/priceoverview/": [(200, OVERVIEW)]})
    client, cache = client_for(market)

    results = await asyncio.gather(*(client.price_overview(730, "Glove Case") for _ in range(3)))
    assert all(r == {"success": True, "lowest_price": "$9.10", "median_price": "$9.00",
                     "volume": "1,204"} for r in results)
    assert len(market.requests) == 1
    assert market.requests[0].url.params["market_hash_name"] == "Glove Case"
    assert cache.has(CacheRegion.MARKET_DATA, "price_730_Glove Case_1")

    await client.price_overview(730, "Glove Case")
    assert len(market.requests) == 1
    await client.http.aclose()


@pytest.mark.asyncio
async def test_server_errors_are_retried():
    market = Market({"/pricehistory/": [(503, {}), (200, {"success": True, "prices": [["Jun 01", 1.0, "5"]]})]})
    client, _ = client_for(market)

    history = await client.price_history(730, "Glove Case")
    assert history == {"success": True, "prices": [["Jun 01", 1.0, "5"]]}
    assert len(market.requests) == 2
    await client.http.aclose()


@pytest.mark.asyncio
async def test_rate_limit_goes_to_the_queue_not_the_retrier():
    market = Market({"/priceoverview/": [(429, {}), (200, OVERVIEW)]})
    client, _ = client_for(market)

    overview = await client.price_overview(730, "Glove Case")
    assert overview["success"] is True
    assert len(market.requests) == 2
    assert client.queue.stats()["last_rate_limit"] is not None
    await client.http.aclose()


@pytest.mark.asyncio
async def test_client_error_is_not_cached():
    market = Market({"/priceoverview/": [(400, {}), (200, OVERVIEW)]})
    client, cache = client_for(market)

    with pytest.raises(httpx.HTTPStatusError):
        await client.price_overview(730, "Bad Name")
    assert len(market.requests) == 1
    assert not cache.has(CacheRegion.MARKET_DATA, "price_730_Bad Name_1")
    await client.http.aclose()


@pytest.mark.asyncio
async def test_search_normalises_listings():
    page = {
        "total_count": 2,
        "results": [
            {"name": "Glove Case", "hash_name": "Glove Case", "sell_listings": 90,
             "sell_price_text": "S$4.10", "asset_description": {"icon_url": "abc"}},
            {"name": "Clutch Case", "sell_price_text": "$0.50", "appid": 730},
        ],
    }
    market = Market({"/search/render/": [(200, page)]})
    client, _ = client_for(market)

    result = await client.search(730, query="case", count=2)
    assert result["total"] == 2
    first, second = result["results"]
    assert first["sell_price_text"] == "$4.10"
    assert first["icon_url"].endswith("abc/128fx128f")
    assert first["id"] == "730_Glove%20Case"
    assert second["hash_name"] == "Clutch Case"
    assert second["sell_listings"] == 0
    assert market.requests[0].url.params["sort_column"] == "popular"
    await client.http.aclose()


@pytest.mark.asyncio
async def test_trending_sorts_by_price():
    page = {
        "total_count": 3,
        "results": [
            {"name": "A", "sell_price_text": "$1.00"},
            {"name": "B", "sell_price_text": "$30.00"},
            {"name": "C", "sale_price_text": "$5.00"},
        ],
    }
    market = Market({"/search/render/": [(200, page)]})
    client, cache = client_for(market)

    trending = await client.trending(730, count=3)
    assert [r["name"] for r in trending["results"]] == ["B", "C", "A"]
    assert cache.has(CacheRegion.MARKET_DATA, "trending_730_3")
    await client.http.aclose()


@pytest.mark.asyncio
async def test_lookup_price_prefers_median():
    market = Market({"/priceoverview/": [(200, OVERVIEW)]})
    client, _ = client_for(market)

    quote = await client.lookup_price(ItemRef(730, "Glove Case"))
    assert (quote.success, quote.price) == (True, 9.0)
    await client.http.aclose()


@pytest.mark.asyncio
async def test_lookup_price_falls_back_to_lowest_and_swallows_errors():
    market = Market({"/priceoverview/": [(200, {"success": True, "lowest_price": "$2.50"})]})
    client, _ = client_for(market)
    quote = await client.lookup_price(ItemRef(730, "Sticker"))
    assert (quote.success, quote.price) == (True, 2.5)
    await client.http.aclose()

    market = Market({"/priceoverview/": [(404, {})]})
    client, _ = client_for(market)
    quote = await client.lookup_price(ItemRef(730, "Nothing"))
    assert quote.success is False
    assert quote.price is None
    await client.http.aclose()
