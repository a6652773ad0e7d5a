import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .chat import (
    ChatHistoryStore,
    ChatProviderError,
    ChatProviderRateLimitedError,
    build_messages,
    complete_chat,
    format_market_context,
    generate_suggestions,
)
from .chess import NoLegalMovesError, sample_size, select_move
from .firecrawl import FirecrawlError, FirecrawlNotConfiguredError, market_status, scrape
from .guardrails import RateLimitConfig, RateLimiter, TTLCache
from .market import get_market_snapshot
from .redis_limiter import RateLimitDecision, build_rate_limit_backend
from .schemas import (
    ChatHistoryResponse,
    ChatReply,
    ChatRequest,
    FirecrawlRequest,
    MarketDataResponse,
    MoveRequest,
    MoveResponse,
)
from .settings import settings

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.version)

chat_rate_limiter = RateLimiter(RateLimitConfig(settings.chat_rate_limit, settings.rate_limit_window_ms))
yahoo_finance_rate_limiter = RateLimiter(RateLimitConfig(settings.yahoo_finance_rate_limit, settings.rate_limit_window_ms))
openai_rate_limiter = RateLimiter(RateLimitConfig(settings.openai_rate_limit, settings.rate_limit_window_ms))
firecrawl_rate_limiter = build_rate_limit_backend(
    settings.redis_url,
    max_requests=settings.firecrawl_rate_limit,
    window_seconds=settings.firecrawl_window_seconds,
    key_prefix="ratelimit:firecrawl",
)
market_data_cache = TTLCache(ttl_seconds=settings.market_data_ttl_seconds)
chat_history = ChatHistoryStore(max_context=settings.chat_max_context)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "127.0.0.1"


def _rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset),
    }


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/market/data", response_model=MarketDataResponse)
async def market_data():
    snapshot, from_cache = await get_market_snapshot(market_data_cache, yahoo_finance_rate_limiter)
    return {**snapshot, "fromCache": from_cache}


@app.post("/market/chat", response_model=ChatReply)
async def market_chat(req: ChatRequest):
    if not req.message:
        return JSONResponse(status_code=400, content={"error": "Message is required"})
    if not req.user_id:
        return JSONResponse(status_code=400, content={"error": "User ID is required"})

    user_id = req.user_id
    if not chat_rate_limiter.acquire(user_id):
        wait_time = chat_rate_limiter.get_time_until_next_slot(user_id)
        logger.warning("Chat rate limit exceeded for user %s (wait %ss)", user_id, wait_time)
        return JSONResponse(
            status_code=429,
            content={
                "error": f"Rate limit exceeded. Please wait {wait_time} seconds before sending another message.",
                "rateLimited": True,
                "waitTime": wait_time,
            },
        )

    market = req.market_data
    if market is None:
        market, _ = await get_market_snapshot(market_data_cache, yahoo_finance_rate_limiter)

    try:
        market_context = format_market_context(market)
        chat_history.append(user_id, "user", req.message)
        messages = build_messages(chat_history.get(user_id), market_context)
        reply = await complete_chat(messages, openai_rate_limiter)
    except ChatProviderRateLimitedError as e:
        logger.warning("OpenAI rate limited: %s", e)
        return JSONResponse(status_code=429, content={"error": str(e), "rateLimited": True})
    except ChatProviderError as e:
        logger.error("Chat provider failure: %s", e)
        return JSONResponse(status_code=500, content={"error": "Failed to generate response", "details": str(e)})
    except Exception as e:
        logger.exception("Unexpected chat failure")
        return JSONResponse(status_code=500, content={"error": "Failed to generate response", "details": str(e)})

    chat_history.append(user_id, "assistant", reply)
    return {"message": reply}


@app.get("/market/chat", response_model=ChatHistoryResponse)
async def market_chat_history(user_id: str = Query("", alias="userId", max_length=200)):
    user_id = user_id.strip()
    if not user_id:
        return JSONResponse(status_code=400, content={"error": "User ID is required"})

    history = chat_history.get(user_id)
    rate_limit_key = f"suggestions-{user_id}"
    if not chat_rate_limiter.acquire(rate_limit_key):
        return {"chatHistory": history, "suggestions": [], "error": "Rate limit exceeded for suggestions"}

    market, _ = await get_market_snapshot(market_data_cache, yahoo_finance_rate_limiter)
    return {"chatHistory": history, "suggestions": generate_suggestions(market)}


@app.post("/financial-assistant/firecrawl")
async def firecrawl_research(req: FirecrawlRequest, request: Request):
    ip = _client_ip(request)
    decision = firecrawl_rate_limiter.limit(ip)
    headers = _rate_limit_headers(decision)
    if not decision.success:
        logger.warning("Rate limit exceeded for IP: %s", ip)
        return PlainTextResponse("Too Many Requests", status_code=429, headers=headers)

    status = market_status()
    try:
        result = await scrape(req.query)
    except FirecrawlNotConfiguredError:
        logger.error("Firecrawl API key is not configured")
        raise HTTPException(status_code=500, detail="Internal Server Configuration Error", headers=headers)
    except FirecrawlError as e:
        logger.warning("Firecrawl failure: %s", e)
        raise HTTPException(status_code=502, detail="Financial research service is temporarily unavailable.", headers=headers)

    return JSONResponse(
        content={**result, "marketStatus": status["message"], "isMarketOpen": status["isOpen"]},
        headers=headers,
    )


@app.post("/chess-ai/move", response_model=MoveResponse)
def chess_ai_move(req: MoveRequest):
    scored = [(m.move, m.score) for m in req.moves]
    try:
        move = select_move(scored, req.ai_level)
    except NoLegalMovesError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"move": move, "aiLevel": req.ai_level, "candidates": sample_size(req.ai_level, len(scored))}
