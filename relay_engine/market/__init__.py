from relay_engine.market.client import (
    MARKET_HEADERS, MarketClient, normalize_price_text, parse_price_text,
)
