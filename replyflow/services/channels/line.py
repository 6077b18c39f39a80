import base64
import hashlib
import hmac
import re
from typing import Mapping, Optional

import httpx

from replyflow.logging_config import get_logger
from replyflow.schemas.events import Channel, ChannelProfile, EventKind, InboundEvent
from replyflow.schemas.line import LineWebhookBody
from replyflow.services.channels.base import ChannelAdapter
from replyflow.services.result import Result

logger = get_logger("channels.line")

API_BASE = "https://api.line.me/v2/bot"
CONTENT_BASE = "https://api-data.line.me/v2/bot"

_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1")
_ITALIC_RE = re.compile(r"(?<![\w*])\*(?!\s)(.+?)(?<!\s)\*(?![\w*])")
_CODE_RE = re.compile(r"`{1,3}([^`]*)`{1,3}")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)]+)\)")
_BULLET_RE = re.compile(r"^\s*[*+]\s+", re.MULTILINE)


def strip_markdown(text: str) -> str:
    """LINE renders plain text only."""
    text = _LINK_RE.sub(r"\1 (\2)", text or "")
    text = _BOLD_RE.sub(r"\2", text)
    text = _ITALIC_RE.sub(r"\1", text)
    text = _CODE_RE.sub(r"\1", text)
    text = _HEADING_RE.sub("", text)
    text = _BULLET_RE.sub("- ", text)
    return text.strip()


class LineAdapter(ChannelAdapter):
    channel = Channel.LINE
    max_text_length = 5000

    def __init__(self, channel_secret: str, access_token: str, timeout_seconds: float = 10.0):
        super().__init__(timeout_seconds)
        self.channel_secret = channel_secret
        self.access_token = access_token

    @property
    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        signature = headers.get("x-line-signature") or ""
        if not self.channel_secret or not signature:
            return False
        digest = hmac.new(self.channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("utf-8")
        return hmac.compare_digest(expected, signature)

    def parse_events(self, tenant_id: str, payload: dict) -> list[InboundEvent]:
        body = LineWebhookBody.model_validate(payload)
        events: list[InboundEvent] = []

        for item in body.events:
            user_id = item.source.userId if item.source else None
            if not user_id:
                continue

            base = {
                "tenant_id": tenant_id,
                "channel": Channel.LINE,
                "external_user_id": user_id,
                "delivery_token": item.replyToken or item.webhookEventId or "",
                "reply_token": item.replyToken,
                "timestamp": item.timestamp,
            }

            if item.type == "follow":
                events.append(InboundEvent(kind=EventKind.FOLLOW, **base))
            elif item.type == "postback" and item.postback:
                events.append(InboundEvent(kind=EventKind.POSTBACK, postback_data=item.postback.data, **base))
            elif item.type == "message" and item.message:
                if item.message.type == "text":
                    events.append(InboundEvent(kind=EventKind.TEXT, text=item.message.text or "", **base))
                elif item.message.type == "image":
                    url = f"{CONTENT_BASE}/message/{item.message.id}/content"
                    events.append(InboundEvent(kind=EventKind.IMAGE, attachment_url=url, **base))
                else:
                    logger.debug(f"Skipping LINE message type {item.message.type}")
            else:
                logger.debug(f"Skipping LINE event type {item.type}")

        return events

    async def _fetch_profile_once(self, user_id: str) -> Optional[ChannelProfile]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(f"{API_BASE}/profile/{user_id}", headers=self._auth_headers)
        if response.status_code != 200:
            logger.warning(f"LINE profile fetch failed: {response.status_code}")
            return None
        data = response.json()
        return ChannelProfile(display_name=data.get("displayName") or "", picture_url=data.get("pictureUrl"))

    def _text_message(self, text: str) -> dict:
        return {"type": "text", "text": self.prepare_text(strip_markdown(text))}

    async def reply(self, event: InboundEvent, text: str) -> Result[dict]:
        """Reply API first; an expired or missing reply token falls back to push."""
        if event.reply_token:
            result = await self._post(
                f"{API_BASE}/message/reply",
                {"replyToken": event.reply_token, "messages": [self._text_message(text)]},
                self._auth_headers,
            )
            if result.ok or result.error_code != "channel_error":
                return result
            logger.info("LINE reply token rejected, falling back to push")
        return await self.push(event.external_user_id, text)

    async def push(self, user_id: str, text: str = "", image_url: Optional[str] = None) -> Result[dict]:
        messages = []
        if image_url:
            messages.append({"type": "image", "originalContentUrl": image_url, "previewImageUrl": image_url})
        if text:
            messages.append(self._text_message(text))
        if not messages:
            return Result.failure("Nothing to send", "empty_message")
        return await self._post(f"{API_BASE}/message/push", {"to": user_id, "messages": messages}, self._auth_headers)
