import unittest
from unittest.mock import AsyncMock, patch

import httpx

from api.app import market
from api.app.guardrails import RateLimitConfig, RateLimiter, TTLCache
from api.app.market import MARKET_DATA_CACHE_KEY, build_snapshot, get_market_snapshot, simulated_snapshot


class ManualClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


QUOTES = [
    {"symbol": "AAPL", "shortName": "Apple Inc.", "regularMarketPrice": 190.123, "regularMarketChange": 1.456,
     "regularMarketChangePercent": 0.771, "sector": "Technology", "marketCap": 3_000_000_000_000},
    {"symbol": "MSFT", "longName": "Microsoft Corporation", "regularMarketPrice": 410.0, "regularMarketChange": -2.0,
     "regularMarketChangePercent": -0.49, "sector": "Technology"},
    {"symbol": "SPY", "shortName": "SPDR S&P 500", "regularMarketPrice": 500.0, "quoteType": "ETF"},
    {"symbol": "^GSPC", "shortName": "S&P 500", "regularMarketPrice": 5100.456, "regularMarketChangePercent": 0.337},
    {"symbol": "BTC-USD", "shortName": "Bitcoin USD", "regularMarketPrice": 65000.5, "regularMarketVolume": 123},
]


class BuildSnapshotTests(unittest.TestCase):
    def test_quotes_are_split_by_kind(self):
        snap = build_snapshot(QUOTES)
        self.assertEqual([s["symbol"] for s in snap["stocks"]], ["AAPL", "MSFT", "SPY"])
        self.assertEqual(snap["indices"], [{"name": "S&P 500", "value": 5100.46, "change": 0.34}])
        self.assertEqual(snap["crypto"][0]["symbol"], "BTC-USD")
        self.assertEqual(snap["crypto"][0]["volume24h"], 123)

    def test_prices_rounded_and_names_resolved(self):
        aapl, msft, spy = build_snapshot(QUOTES)["stocks"]
        self.assertEqual(aapl["price"], 190.12)
        self.assertEqual(aapl["change"], 1.46)
        self.assertEqual(msft["name"], "Microsoft Corporation")
        self.assertEqual(spy["sector"], "ETF")

    def test_sector_performance_is_average_excluding_etfs(self):
        sectors = build_snapshot(QUOTES)["sectors"]
        self.assertEqual(sectors, [{"name": "Technology", "performance": "0.14"}])

    def test_sectors_fall_back_when_none_known(self):
        sectors = build_snapshot([{"symbol": "SPY", "quoteType": "ETF"}])["sectors"]
        self.assertEqual(len(sectors), len(market.FALLBACK_SECTORS))

    def test_simulated_snapshot_covers_all_symbols(self):
        snap = simulated_snapshot()
        self.assertEqual(len(snap["stocks"]), len(market.STOCK_SYMBOLS))
        self.assertEqual(len(snap["indices"]), len(market.INDEX_SYMBOLS))
        self.assertEqual(len(snap["crypto"]), len(market.CRYPTO_SYMBOLS))


class MarketSnapshotTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = ManualClock()
        self.cache = TTLCache(ttl_seconds=30, clock=self.clock)
        self.limiter = RateLimiter(RateLimitConfig(max_requests=2, window_ms=60_000), clock=self.clock)

    async def test_miss_fetches_then_hit_serves_cache(self):
        fetch = AsyncMock(return_value=QUOTES)
        with patch.object(market, "_fetch_quotes", fetch):
            first, from_cache = await get_market_snapshot(self.cache, self.limiter)
            self.assertFalse(from_cache)
            self.assertFalse(first["isSimulated"])
            self.assertIsNone(first["apiError"])

            self.clock.now = 29_999
            second, from_cache = await get_market_snapshot(self.cache, self.limiter)
            self.assertTrue(from_cache)
            self.assertEqual(second, first)

        fetch.assert_awaited_once()
        self.assertEqual(self.limiter.get_remaining_requests(market.YAHOO_LIMITER_KEY), 1)

    async def test_expired_cache_refetches(self):
        fetch = AsyncMock(return_value=QUOTES)
        with patch.object(market, "_fetch_quotes", fetch):
            await get_market_snapshot(self.cache, self.limiter)
            self.clock.now = 30_000
            _, from_cache = await get_market_snapshot(self.cache, self.limiter)

        self.assertFalse(from_cache)
        self.assertEqual(fetch.await_count, 2)

    async def test_upstream_error_falls_back_to_simulated_and_caches(self):
        fetch = AsyncMock(side_effect=httpx.ConnectError("boom"))
        with patch.object(market, "_fetch_quotes", fetch):
            data, _ = await get_market_snapshot(self.cache, self.limiter)

        self.assertTrue(data["isSimulated"])
        self.assertIn("simulated", data["apiError"])
        self.assertEqual(self.cache.get(MARKET_DATA_CACHE_KEY), data)

    async def test_exhausted_upstream_limit_skips_fetch(self):
        self.limiter.track_request(market.YAHOO_LIMITER_KEY)
        self.limiter.track_request(market.YAHOO_LIMITER_KEY)
        fetch = AsyncMock(return_value=QUOTES)
        with patch.object(market, "_fetch_quotes", fetch):
            data, _ = await get_market_snapshot(self.cache, self.limiter)

        fetch.assert_not_awaited()
        self.assertTrue(data["isSimulated"])

    async def test_empty_quote_list_is_treated_as_unavailable(self):
        with patch.object(market, "_fetch_quotes", AsyncMock(return_value=[])):
            data, _ = await get_market_snapshot(self.cache, self.limiter)
        self.assertTrue(data["isSimulated"])


class MalformedUpstreamTests(unittest.IsolatedAsyncioTestCase):
    """Real _fetch_quotes against a mock transport."""

    def setUp(self):
        self.clock = ManualClock()
        self.cache = TTLCache(ttl_seconds=30, clock=self.clock)
        self.limiter = RateLimiter(RateLimitConfig(max_requests=5, window_ms=60_000), clock=self.clock)

    def _patch_client(self, handler):
        real_client = httpx.AsyncClient

        def factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            return real_client(*args, **kwargs)

        return patch.object(market.httpx, "AsyncClient", side_effect=factory)

    async def test_html_page_falls_back_to_simulated(self):
        def handler(request):
            return httpx.Response(200, text="<html>consent</html>", headers={"Content-Type": "text/html"})

        with self._patch_client(handler):
            data, from_cache = await get_market_snapshot(self.cache, self.limiter)

        self.assertFalse(from_cache)
        self.assertTrue(data["isSimulated"])
        self.assertIn("simulated", data["apiError"])

    async def test_unexpected_json_shape_falls_back_to_simulated(self):
        for body in ([1, 2, 3], {"quoteResponse": "nope"}, "text"):
            self.cache.clear()
            with self._patch_client(lambda request, body=body: httpx.Response(200, json=body)):
                data, _ = await get_market_snapshot(self.cache, self.limiter)
            self.assertTrue(data["isSimulated"], body)

    async def test_valid_body_is_parsed(self):
        body = {"quoteResponse": {"result": [QUOTES[0], "junk", {"regularMarketPrice": 1}]}}
        with self._patch_client(lambda request: httpx.Response(200, json=body)):
            data, _ = await get_market_snapshot(self.cache, self.limiter)

        self.assertFalse(data["isSimulated"])
        self.assertEqual([s["symbol"] for s in data["stocks"]], ["AAPL"])


if __name__ == "__main__":
    unittest.main()
