from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = "Portfolio Guardrails API"
    version: str = "0.3.0"
    log_level: str = "INFO"

    # Sliding-window limits (requests per window)
    rate_limit_window_ms: int = 60_000
    chat_rate_limit: int = 30
    yahoo_finance_rate_limit: int = 10
    openai_rate_limit: int = 20

    # Firecrawl route uses the distributed limiter when redis_url is set
    firecrawl_rate_limit: int = 3
    firecrawl_window_seconds: int = 60
    redis_url: str | None = None

    market_data_ttl_seconds: int = 30
    yahoo_quote_url: str = "https://query1.finance.yahoo.com/v7/finance/quote"

    openai_api_key: str | None = None
    openai_model: str = "gpt-3.5-turbo"
    chat_max_context: int = 10

    firecrawl_api_key: str | None = None
    firecrawl_api_url: str = "https://api.firecrawl.dev/v1/scrape"

settings = Settings()
