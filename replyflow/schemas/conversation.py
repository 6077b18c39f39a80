from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from replyflow.schemas.events import Channel


class MessageRole(str, Enum):
    CUSTOMER = "customer"
    BOT = "bot"
    ADMIN = "admin"
    SYSTEM = "system"


class Message(BaseModel):
    id: str
    role: MessageRole
    content: str = ""
    timestamp: int
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    pipeline_layer: Optional[int] = None
    pipeline_layer_name: Optional[str] = None
    sent_by: Optional[str] = None


class Conversation(BaseModel):
    tenant_id: str
    user_id: str
    display_name: str = ""
    picture_url: Optional[str] = None
    source: Channel = Channel.LINE
    state: str = "normal"
    bot_enabled: bool = True
    pinned: bool = False
    pinned_reason: Optional[str] = None
    pinned_at: Optional[int] = None
    assigned_admin: Optional[str] = None
    last_message: str = ""
    last_message_at: int = 0
    last_message_role: Optional[MessageRole] = None
    unread_count: int = 0
    created_at: int = 0

    @classmethod
    def from_hash(cls, tenant_id: str, user_id: str, raw: dict[str, str]) -> "Conversation":
        """Build from a Redis hash, where every value is a string and empty means unset."""
        data: dict[str, Any] = {"tenant_id": tenant_id, "user_id": user_id}
        for name, value in raw.items():
            if name not in cls.model_fields or value == "":
                continue
            if name in ("bot_enabled", "pinned"):
                data[name] = value == "1"
            else:
                data[name] = value
        return cls.model_validate(data)


def encode_hash_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def encode_hash(fields: dict[str, Any]) -> dict[str, str]:
    return {name: encode_hash_value(value) for name, value in fields.items()}


class FollowUp(BaseModel):
    user_id: str
    needs_followup: bool
    reason: str = ""
    suggested_message: str = ""
    priority: Literal["high", "medium", "low"] = "medium"
    category: Literal["unanswered", "purchase_intent", "support_pending", "cold_lead", "completed"] = "cold_lead"
    display_name: str = ""
    last_message_at: int = 0
    analyzed_at: int = 0


class PurchaseIntent(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    PURCHASED = "purchased"


class CustomerStage(str, Enum):
    LEAD = "lead"
    PROSPECT = "prospect"
    CUSTOMER = "customer"
    CHURNED = "churned"


class CRMProfile(BaseModel):
    tenant_id: str
    user_id: str
    display_name: str = ""
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    interested_products: list[str] = Field(default_factory=list)
    budget: Optional[str] = None
    purchase_intent: Optional[PurchaseIntent] = None
    province: Optional[str] = None
    occupation: Optional[str] = None
    stage: CustomerStage = CustomerStage.LEAD
    tags: list[str] = Field(default_factory=list)
    note: Optional[str] = None
    manual_fields: list[str] = Field(default_factory=list)
    extracted_by: Optional[Literal["ai", "manual"]] = None
    extracted_at: Optional[int] = None
    updated_by: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0


class AdminAction(str, Enum):
    SEND = "send"
    SEND_MEDIA = "send_media"
    TOGGLE_BOT = "toggle_bot"
    PIN = "pin"
    UNPIN = "unpin"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    GLOBAL_TOGGLE_BOT = "global_toggle_bot"
    SEND_FOLLOWUP = "send_followup"
    DISMISS_FOLLOWUP = "dismiss_followup"
    DELETE_CONVERSATION = "delete_conversation"
    SAVE_CRM = "save_crm"
    REVIEW_QA = "review_qa"
    TOGGLE_LEARNED = "toggle_learned"
    DELETE_LEARNED = "delete_learned"
    RECORD_CORRECTION = "record_correction"
    UPDATE_BUSINESS_HOURS = "update_business_hours"


class AdminActivityEntry(BaseModel):
    id: str
    username: str
    action: AdminAction
    user_id: Optional[str] = None
    detail: Optional[str] = None
    timestamp: int


class AdminStats(BaseModel):
    username: str
    sent: int = 0
    toggle_bot: int = 0
    pin: int = 0
    total: int = 0
    last_active: int = 0
