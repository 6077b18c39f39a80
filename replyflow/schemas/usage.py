from typing import Optional

from pydantic import BaseModel


class TokenUsage(BaseModel):
    """One AI call attempt, successful or not."""

    model: str
    call_site: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    success: bool = True
    provider: Optional[str] = None
    user_id: Optional[str] = None


class UsageEntry(BaseModel):
    id: str
    timestamp: int
    model: str
    call_site: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    success: bool = True
    provider: Optional[str] = None
    user_id: Optional[str] = None


class DailyUsage(BaseModel):
    date: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0
    failures: int = 0
    cost_usd: float = 0.0


class UsageTotals(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0
    failures: int = 0
    cost_usd: float = 0.0
