from typing import Any, Optional

from pydantic import BaseModel


class FacebookParticipant(BaseModel):
    id: str


class FacebookAttachment(BaseModel):
    type: str  # image, video, audio, file, template, fallback
    payload: Optional[dict[str, Any]] = None


class FacebookMessage(BaseModel):
    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False
    attachments: list[FacebookAttachment] = []


class FacebookPostback(BaseModel):
    title: Optional[str] = None
    payload: Optional[str] = None
    mid: Optional[str] = None


class FacebookMessaging(BaseModel):
    sender: FacebookParticipant
    recipient: Optional[FacebookParticipant] = None
    timestamp: Optional[int] = None
    message: Optional[FacebookMessage] = None
    postback: Optional[FacebookPostback] = None


class FacebookEntry(BaseModel):
    id: Optional[str] = None
    time: Optional[int] = None
    messaging: list[FacebookMessaging] = []


class FacebookWebhookBody(BaseModel):
    object: str = "page"
    entry: list[FacebookEntry] = []
