from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Literal, Optional
import string


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(CamelModel):
    message: str = Field("", max_length=4000)
    user_id: str = Field("", alias="userId", max_length=200)
    market_data: Optional[Dict[str, Any]] = Field(None, alias="marketData")

    @field_validator("message", "user_id")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator("user_id")
    @classmethod
    def user_id_must_be_printable(cls, v: str) -> str:
        if any(ch not in string.printable for ch in v):
            raise ValueError("User ID contains non-printable characters.")
        return v


class ChatReply(BaseModel):
    message: str


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatHistoryResponse(CamelModel):
    chat_history: List[ChatMessage] = Field(alias="chatHistory")
    suggestions: List[str]
    error: Optional[str] = None


class FirecrawlRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=300)

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Query cannot be empty.")
        return v


class ScoredMove(BaseModel):
    move: Any
    score: float


class MoveRequest(CamelModel):
    moves: List[ScoredMove] = Field(default_factory=list)
    ai_level: int = Field(8, alias="aiLevel", ge=1, le=10)


class MoveResponse(CamelModel):
    move: Any
    ai_level: int = Field(alias="aiLevel")
    candidates: int


class IndexQuote(BaseModel):
    name: str
    value: float
    change: float


class SectorPerformance(BaseModel):
    name: str
    performance: str


class MarketDataResponse(CamelModel):
    stocks: List[Dict[str, Any]]
    indices: List[IndexQuote]
    crypto: List[Dict[str, Any]]
    sectors: List[SectorPerformance]
    is_simulated: bool = Field(alias="isSimulated")
    api_error: Optional[str] = Field(None, alias="apiError")
    last_updated: str = Field(alias="lastUpdated")
    from_cache: bool = Field(False, alias="fromCache")
