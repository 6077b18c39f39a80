from typing import Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    status: str = "ok"
    processed: int = 0
    outcomes: list[Optional[str]] = Field(default_factory=list)
    message: Optional[str] = None
