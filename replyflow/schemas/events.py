from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Channel(str, Enum):
    LINE = "line"
    FACEBOOK = "facebook"


class EventKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    POSTBACK = "postback"
    FOLLOW = "follow"


class InboundEvent(BaseModel):
    """Channel-agnostic inbound event handed to the orchestrator."""

    tenant_id: str
    channel: Channel
    external_user_id: str
    kind: EventKind
    text: Optional[str] = None
    attachment_url: Optional[str] = None
    delivery_token: str = ""
    reply_token: Optional[str] = None
    postback_data: Optional[str] = None
    timestamp: Optional[int] = None


class ChannelProfile(BaseModel):
    display_name: str = ""
    picture_url: Optional[str] = None
