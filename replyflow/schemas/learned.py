from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class LearnedKind(str, Enum):
    INTENT = "intent"
    KNOWLEDGE = "knowledge"
    SCRIPT = "script"


class LearnedItem(BaseModel):
    """An intent trigger, knowledge document or reusable script learned from an admin correction.

    `title` is the intent name, document title or script name.
    `content` is the response template, document body or admin reply.
    """

    id: str
    kind: LearnedKind
    title: str = ""
    content: str = ""
    triggers: list[str] = Field(default_factory=list)
    source_question: str = ""
    source_answer: str = ""
    intent_id: Optional[str] = None
    confidence: float = 0.0
    enabled: bool = True
    hit_count: int = 0
    created_at: int = 0
    created_by: str = "auto"


class LearnedData(BaseModel):
    intents: list[LearnedItem] = Field(default_factory=list)
    knowledge: list[LearnedItem] = Field(default_factory=list)
    scripts: list[LearnedItem] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.intents or self.knowledge or self.scripts)

    def for_resolver(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class MissEntry(BaseModel):
    question: str
    count: int = 0
    examples: list[str] = Field(default_factory=list)
    last_seen_at: int = 0


class QAReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class QALogEntry(BaseModel):
    id: str
    user_id: str = ""
    question: str
    answer: str
    layer: Optional[int] = None
    layer_name: Optional[str] = None
    review_status: QAReviewStatus = QAReviewStatus.PENDING
    reviewed_by: Optional[str] = None
    created_at: int = 0


class LearnedStats(BaseModel):
    intents: int = 0
    knowledge: int = 0
    scripts: int = 0
    enabled: int = 0
    total_hits: int = 0
    misses: int = 0


class CorrectionAction(str, Enum):
    INTENT = "intent"
    KNOWLEDGE = "knowledge"
    SCRIPT = "script"
    NONE = "none"


class CorrectionDecision(BaseModel):
    action: CorrectionAction = CorrectionAction.NONE
    confidence: float = 0.0
    reasoning: str = ""
    title: str = ""
    content: str = ""
    triggers: list[str] = Field(default_factory=list)
    intent_id: Optional[str] = None
    source: Literal["llm", "manual"] = "llm"
