from typing import Any, Optional

from pydantic import BaseModel


class LineSource(BaseModel):
    type: str = "user"
    userId: Optional[str] = None
    groupId: Optional[str] = None
    roomId: Optional[str] = None


class LineMessage(BaseModel):
    id: str
    type: str  # text, image, video, audio, file, location, sticker
    text: Optional[str] = None
    contentProvider: Optional[dict[str, Any]] = None


class LinePostback(BaseModel):
    data: str = ""
    params: Optional[dict[str, Any]] = None


class LineEvent(BaseModel):
    type: str  # message, follow, unfollow, postback, ...
    timestamp: Optional[int] = None
    replyToken: Optional[str] = None
    webhookEventId: Optional[str] = None
    source: Optional[LineSource] = None
    message: Optional[LineMessage] = None
    postback: Optional[LinePostback] = None


class LineWebhookBody(BaseModel):
    destination: Optional[str] = None
    events: list[LineEvent] = []
