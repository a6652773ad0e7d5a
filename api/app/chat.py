import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

import openai
from openai import AsyncOpenAI

from .guardrails import RateLimiter
from .settings import settings

logger = logging.getLogger(__name__)

OPENAI_LIMITER_KEY = "openai"

BASE_SUGGESTIONS = [
    "What are the best tech stocks to invest in?",
    "How is the S&P 500 performing today?",
    "Explain market volatility",
    "Should I invest in index funds?",
    "How do rising interest rates affect the stock market?",
    "What's a good portfolio allocation for a 30-year-old?",
    "Compare AAPL and MSFT stocks",
    "What are the risks of cryptocurrency investments?",
]

_client: Optional[AsyncOpenAI] = None


class ChatProviderError(Exception):
    pass


class ChatProviderRateLimitedError(ChatProviderError):
    pass


def get_openai() -> Optional[AsyncOpenAI]:
    """Return a shared OpenAI client, or None when no API key is configured."""
    global _client
    if _client is not None:
        return _client

    if not settings.openai_api_key:
        return None

    _client = AsyncOpenAI(api_key=settings.openai_api_key)
    return _client


class ChatHistoryStore:
    """Per-user conversation kept in memory, trimmed to the last max_context messages."""

    def __init__(self, max_context: int = 10):
        self.max_context = max_context
        self._history: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def append(self, user_id: str, role: str, content: str) -> None:
        with self._lock:
            messages = self._history.setdefault(user_id, [])
            messages.append({"role": role, "content": content})
            if len(messages) > self.max_context:
                del messages[:-self.max_context]

    def get(self, user_id: str) -> List[dict]:
        with self._lock:
            return list(self._history.get(user_id, []))

    def clear(self) -> None:
        with self._lock:
            self._history.clear()


def _signed(value: float) -> str:
    return f"+{value:.2f}" if value >= 0 else f"{value:.2f}"


def _number(entry: dict, field: str) -> Optional[float]:
    value = entry.get(field)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _entries(data: dict, field: str) -> List[dict]:
    value = data.get(field)
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def format_market_context(data: dict) -> str:
    """
    Render market data as prompt text.

    The data may come from the client, so entries without a name or price
    are skipped and missing changes read as zero.
    """
    if not isinstance(data, dict):
        data = {}

    stock_lines = []
    for stock in _entries(data, "stocks")[:5]:
        price = _number(stock, "price")
        if not stock.get("symbol") or price is None:
            continue
        change = _number(stock, "change") or 0.0
        change_percent = _number(stock, "changePercent") or 0.0
        stock_lines.append(
            f"{stock['symbol']}: ${price:.2f} ({_signed(change)}, {_signed(change_percent)}%)"
        )

    index_lines = []
    for index in _entries(data, "indices"):
        value = _number(index, "value")
        if not index.get("name") or value is None:
            continue
        index_lines.append(f"{index['name']}: {value:.2f} ({_signed(_number(index, 'change') or 0.0)}%)")

    lines = []
    if stock_lines:
        lines.append("Current stock prices:")
        lines.extend(stock_lines)
    if index_lines:
        if lines:
            lines.append("")
        lines.append("Current market indices:")
        lines.extend(index_lines)

    source = "is simulated" if data.get("isSimulated") else "from Yahoo Finance"
    as_of = data.get("lastUpdated") or "an unknown time"
    lines.append("")
    lines.append(f"Data {source}, as of {as_of}")
    return "\n".join(lines)


def generate_suggestions(data: dict) -> List[str]:
    suggestions = list(BASE_SUGGESTIONS)
    for stock in _entries(data, "stocks")[:3]:
        if stock.get("symbol"):
            suggestions.append(f"Tell me about {stock['symbol']} stock")
    return suggestions


def build_messages(history: List[dict], market_context: str) -> List[dict]:
    system = (
        "You are a helpful AI financial assistant with expertise in stock markets, investing, "
        f"and financial planning. Today is {datetime.now().strftime('%Y-%m-%d')}.\n\n"
        f"{market_context}\n\n"
        "Provide concise and accurate responses to user inquiries. If asked about specific stocks "
        "or market performance, reference the market data provided above. If the user asks about "
        "a stock or market not in the data, explain that you don't have real-time data for that "
        "specific entity."
    )
    return [{"role": "system", "content": system}, *history]


async def complete_chat(messages: List[dict], limiter: RateLimiter) -> str:
    """Send the conversation to OpenAI under the shared credential's rate limit."""
    client = get_openai()
    if client is None:
        raise ChatProviderError("OpenAI API key is not configured.")

    if not limiter.acquire(OPENAI_LIMITER_KEY):
        raise ChatProviderRateLimitedError("OpenAI rate limit exceeded. Please try again later.")

    try:
        completion = await client.chat.completions.create(
            model=settings.openai_model,
            messages=messages,
            temperature=0.7,
            max_tokens=500,
        )
    except openai.RateLimitError as e:
        raise ChatProviderRateLimitedError("OpenAI rate limit exceeded. Please try again later.") from e
    except openai.OpenAIError as e:
        raise ChatProviderError(str(e)) from e

    reply = completion.choices[0].message.content if completion.choices else None
    if not reply:
        raise ChatProviderError("Empty response from OpenAI")
    return reply
