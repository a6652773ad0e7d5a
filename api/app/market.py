import asyncio
import logging
import random
from datetime import datetime, timezone

import httpx

from .guardrails import RateLimiter, TTLCache
from .settings import settings

logger = logging.getLogger(__name__)

MARKET_DATA_CACHE_KEY = "market-data-expanded"
YAHOO_LIMITER_KEY = "yahoo-finance"

STOCK_SYMBOLS = [
    "AAPL", "MSFT", "GOOGL", "AMZN", "META", "NVDA", "TSLA",
    "JPM", "BAC", "WFC",
    "JNJ", "UNH", "PFE",
    "WMT", "COST", "PG",
    "BRK-B", "XOM",
    "SPY", "QQQ", "DIA", "IWM",
]

INDEX_NAMES = {
    "^GSPC": "S&P 500",
    "^IXIC": "Nasdaq Comp.",
    "^DJI": "Dow Jones",
    "^RUT": "Russell 2000",
    "^VIX": "VIX",
    "^FTSE": "FTSE 100",
    "^N225": "Nikkei 225",
    "^HSI": "Hang Seng",
}
INDEX_SYMBOLS = list(INDEX_NAMES)

CRYPTO_SYMBOLS = [
    "BTC-USD", "ETH-USD", "USDT-USD", "BNB-USD", "SOL-USD",
    "USDC-USD", "XRP-USD", "ADA-USD", "DOGE-USD", "MATIC-USD",
    "DOT-USD", "SHIB-USD", "LTC-USD", "LINK-USD", "AVAX-USD",
    "UNI-USD", "XLM-USD", "XMR-USD", "ATOM-USD", "ALGO-USD",
]

FALLBACK_SECTORS = ["Technology", "Financials", "Healthcare", "Consumer", "Energy", "Crypto"]


class MarketDataUnavailableError(Exception):
    pass


async def _fetch_quotes(symbols: list[str]) -> list[dict]:
    params = {"symbols": ",".join(symbols)}
    headers = {"User-Agent": "Mozilla/5.0 (portfolio-guardrails)"}

    # Retry on 5xx only; 4xx means the upstream rejected us outright
    delays = [0.5, 1.0]
    async with httpx.AsyncClient(timeout=15.0, headers=headers) as client:
        for delay in [0.0] + delays:
            if delay:
                await asyncio.sleep(delay)

            r = await client.get(settings.yahoo_quote_url, params=params)
            if 500 <= r.status_code < 600:
                continue
            r.raise_for_status()

            # consent and captcha pages come back as 200 HTML
            try:
                body = r.json()
            except ValueError as e:
                raise MarketDataUnavailableError("Yahoo Finance returned a non-JSON response.") from e
            quote_response = body.get("quoteResponse") if isinstance(body, dict) else None
            if not isinstance(quote_response, dict):
                raise MarketDataUnavailableError("Unexpected Yahoo Finance response shape.")

            result = quote_response.get("result") or []
            return [q for q in result if isinstance(q, dict) and q.get("symbol")]

    raise MarketDataUnavailableError("Yahoo Finance temporarily unavailable.")


def _round2(value) -> float:
    return round(float(value or 0), 2)


def build_snapshot(quotes: list[dict]) -> dict:
    """Split raw quotes into stocks, indices, crypto and per-sector averages."""
    stocks, indices, crypto = [], [], []
    for quote in quotes:
        symbol = quote["symbol"]
        name = quote.get("shortName") or quote.get("longName") or symbol
        common = {
            "symbol": symbol,
            "name": name,
            "price": _round2(quote.get("regularMarketPrice")),
            "change": _round2(quote.get("regularMarketChange")),
            "changePercent": _round2(quote.get("regularMarketChangePercent")),
        }

        if symbol in INDEX_NAMES:
            indices.append({
                "name": INDEX_NAMES[symbol],
                "value": common["price"],
                "change": common["changePercent"],
            })
        elif symbol in CRYPTO_SYMBOLS:
            crypto.append({
                **common,
                "marketCap": quote.get("marketCap"),
                "volume24h": quote.get("volume24Hr", quote.get("regularMarketVolume")),
            })
        else:
            sector = quote.get("sector") or ("ETF" if quote.get("quoteType") == "ETF" else "N/A")
            stocks.append({
                **common,
                "sector": sector,
                "marketCap": quote.get("marketCap"),
                "volume": quote.get("regularMarketVolume"),
                "peRatio": quote.get("trailingPE", quote.get("forwardPE")),
            })

    totals: dict[str, list[float]] = {}
    for stock in stocks:
        if stock["sector"] not in ("N/A", "ETF"):
            totals.setdefault(stock["sector"], []).append(stock["changePercent"])
    sectors = [
        {"name": name, "performance": f"{sum(changes) / len(changes):.2f}"}
        for name, changes in totals.items()
    ]

    return {
        "stocks": stocks,
        "indices": indices,
        "crypto": crypto,
        "sectors": sectors or simulated_sectors(),
    }


def simulated_sectors(rng: random.Random | None = None) -> list[dict]:
    rng = rng or random
    return [{"name": name, "performance": f"{rng.uniform(-2, 2):.2f}"} for name in FALLBACK_SECTORS]


def simulated_snapshot(rng: random.Random | None = None) -> dict:
    rng = rng or random
    stocks = [
        {
            "symbol": s,
            "name": f"{s} Name",
            "sector": "Simulated Sector",
            "price": round(rng.uniform(50, 550), 2),
            "change": round(rng.uniform(-5, 5), 2),
            "changePercent": round(rng.uniform(-2.5, 2.5), 2),
        }
        for s in STOCK_SYMBOLS
    ]
    indices = [
        {
            "name": INDEX_NAMES[s],
            "value": round(rng.uniform(1000, 11000), 2),
            "change": round(rng.uniform(-1, 1), 2),
        }
        for s in INDEX_SYMBOLS
    ]
    crypto = [
        {
            "symbol": s,
            "name": s.replace("-USD", ""),
            "price": round(rng.uniform(100, 50100), 2),
            "change": round(rng.uniform(-500, 500), 2),
            "changePercent": round(rng.uniform(-5, 5), 2),
        }
        for s in CRYPTO_SYMBOLS
    ]
    return {"stocks": stocks, "indices": indices, "crypto": crypto, "sectors": simulated_sectors(rng)}


async def fetch_live_snapshot(limiter: RateLimiter) -> dict:
    """Fetch a fresh snapshot from Yahoo Finance, respecting the shared upstream limit."""
    if not limiter.can_make_request(YAHOO_LIMITER_KEY):
        wait = limiter.get_time_until_next_slot(YAHOO_LIMITER_KEY)
        raise MarketDataUnavailableError(f"Yahoo Finance rate limit reached; next slot in {wait}s.")

    limiter.track_request(YAHOO_LIMITER_KEY)
    try:
        quotes = await _fetch_quotes(STOCK_SYMBOLS + INDEX_SYMBOLS + CRYPTO_SYMBOLS)
    except httpx.HTTPError as e:
        raise MarketDataUnavailableError(f"Yahoo Finance request failed: {e}") from e

    if not quotes:
        raise MarketDataUnavailableError("Yahoo Finance returned no quotes.")
    return build_snapshot(quotes)


async def get_market_snapshot(cache: TTLCache, limiter: RateLimiter) -> tuple[dict, bool]:
    """
    Return (snapshot, from_cache).

    A cache hit is served as-is. On a miss the live data is fetched, or
    simulated data is generated when the upstream is unavailable, and the
    result is cached either way.
    """
    cached = cache.get(MARKET_DATA_CACHE_KEY)
    if cached is not None:
        logger.info("Using cached market data (expires in %ss)", cache.get_remaining_ttl(MARKET_DATA_CACHE_KEY))
        return cached, True

    logger.info("Cache miss, fetching fresh market data")
    api_error = None
    try:
        snapshot = await fetch_live_snapshot(limiter)
        is_simulated = False
    except MarketDataUnavailableError as e:
        logger.warning("Falling back to simulated market data: %s", e)
        snapshot = simulated_snapshot()
        is_simulated = True
        api_error = "Failed to fetch live data from Yahoo Finance, showing simulated data."

    response = {
        **snapshot,
        "isSimulated": is_simulated,
        "apiError": api_error,
        "lastUpdated": datetime.now(timezone.utc).isoformat(),
    }
    cache.set(MARKET_DATA_CACHE_KEY, response)
    logger.info(
        "Market data ready: %s stocks, %s indices, %s crypto, simulated=%s",
        len(response["stocks"]), len(response["indices"]), len(response["crypto"]), is_simulated,
    )
    return response, False
