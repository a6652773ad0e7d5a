import logging
import re
from datetime import datetime
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

import httpx

from .settings import settings

logger = logging.getLogger(__name__)

EASTERN = ZoneInfo("America/New_York")
TICKER_RE = re.compile(r"^[A-Z]{1,5}$")


class FirecrawlError(Exception):
    pass


class FirecrawlNotConfiguredError(FirecrawlError):
    pass


def market_status(now: datetime | None = None) -> dict:
    """Approximate US equity market hours: weekdays 9:30-16:00 Eastern."""
    et = (now or datetime.now(tz=EASTERN)).astimezone(EASTERN)
    is_weekend = et.weekday() >= 5
    after_open = et.hour > 9 or (et.hour == 9 and et.minute >= 30)
    before_close = et.hour < 16
    is_open = not is_weekend and after_open and before_close
    return {
        "isOpen": is_open,
        "message": "The market is currently open." if is_open else "The market is currently closed.",
    }


def target_url_for(query: str) -> str:
    symbol = query.strip().upper()
    if symbol == "^GSPC" or "s&p 500" in query.lower():
        return "https://finance.yahoo.com/quote/%5EGSPC"
    if TICKER_RE.match(symbol):
        return f"https://finance.yahoo.com/quote/{symbol}"
    return f"https://www.google.com/search?q=latest+financial+news+for+{quote_plus(query)}"


def build_payload(query: str) -> dict:
    prompt = (
        "Extract key financial data (like price, change, volume if available) and briefly summarize "
        f'the recent news or sentiment regarding "{query}" from this page. Present the result clearly. '
        "If the page mentions market status (open/closed), include that too."
    )
    return {"url": target_url_for(query), "extract": {"prompt": prompt}, "formats": ["extract"]}


async def scrape(query: str) -> dict:
    if not settings.firecrawl_api_key:
        raise FirecrawlNotConfiguredError("Firecrawl API key is not configured.")

    payload = build_payload(query)
    logger.info("Requesting Firecrawl extract for %s", payload["url"])
    headers = {"Authorization": f"Bearer {settings.firecrawl_api_key}"}
    try:
        async with httpx.AsyncClient(timeout=60.0, headers=headers) as client:
            r = await client.post(settings.firecrawl_api_url, json=payload)
            r.raise_for_status()
            body = r.json()
    except httpx.HTTPError as e:
        raise FirecrawlError(f"Firecrawl request failed: {e}") from e
    except ValueError as e:
        raise FirecrawlError("Firecrawl returned a non-JSON response.") from e

    if not isinstance(body, dict):
        raise FirecrawlError("Unexpected Firecrawl response shape.")
    if not body.get("success", True):
        raise FirecrawlError(body.get("error") or "Firecrawl reported a failure.")

    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise FirecrawlError("Unexpected Firecrawl response shape.")
    return {
        "url": payload["url"],
        "extract": data.get("extract"),
        "metadata": data.get("metadata"),
    }
