import hashlib
import hmac
from typing import Mapping, Optional

import httpx

from replyflow.logging_config import get_logger
from replyflow.schemas.events import Channel, ChannelProfile, EventKind, InboundEvent
from replyflow.schemas.facebook import FacebookWebhookBody
from replyflow.services.channels.base import ChannelAdapter
from replyflow.services.result import Result

logger = get_logger("channels.facebook")

GRAPH_BASE = "https://graph.facebook.com/v19.0"


class FacebookAdapter(ChannelAdapter):
    channel = Channel.FACEBOOK
    max_text_length = 2000

    def __init__(
        self,
        page_access_token: str,
        verify_token: str = "",
        app_secret: str = "",
        timeout_seconds: float = 10.0,
    ):
        super().__init__(timeout_seconds)
        self.page_access_token = page_access_token
        self.verify_token = verify_token
        self.app_secret = app_secret

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Webhook subscription handshake. Returns the challenge to echo, or None to reject."""
        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            return challenge or ""
        return None

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.app_secret:
            return True
        signature = headers.get("x-hub-signature-256") or ""
        if not signature.startswith("sha256="):
            return False
        expected = hmac.new(self.app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature[len("sha256=") :])

    def parse_events(self, tenant_id: str, payload: dict) -> list[InboundEvent]:
        body = FacebookWebhookBody.model_validate(payload)
        if body.object != "page":
            return []

        events: list[InboundEvent] = []
        for entry in body.entry:
            for messaging in entry.messaging:
                base = {
                    "tenant_id": tenant_id,
                    "channel": Channel.FACEBOOK,
                    "external_user_id": messaging.sender.id,
                    "timestamp": messaging.timestamp,
                }

                if messaging.postback:
                    token = messaging.postback.mid or f"postback:{messaging.sender.id}:{messaging.timestamp}"
                    events.append(
                        InboundEvent(
                            kind=EventKind.POSTBACK,
                            postback_data=messaging.postback.payload,
                            text=messaging.postback.title,
                            delivery_token=token,
                            **base,
                        )
                    )
                    continue

                message = messaging.message
                if message is None or message.is_echo:
                    continue

                if message.text:
                    events.append(
                        InboundEvent(kind=EventKind.TEXT, text=message.text, delivery_token=message.mid or "", **base)
                    )
                    continue

                image = next((item for item in message.attachments if item.type == "image"), None)
                if image is not None:
                    url = (image.payload or {}).get("url")
                    events.append(
                        InboundEvent(
                            kind=EventKind.IMAGE, attachment_url=url, delivery_token=message.mid or "", **base
                        )
                    )

        return events

    async def _fetch_profile_once(self, user_id: str) -> Optional[ChannelProfile]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(
                f"{GRAPH_BASE}/{user_id}",
                params={"fields": "name,profile_pic", "access_token": self.page_access_token},
            )
        if response.status_code != 200:
            logger.warning(f"Facebook profile fetch failed: {response.status_code}")
            return None
        data = response.json()
        return ChannelProfile(display_name=data.get("name") or "", picture_url=data.get("profile_pic"))

    def _messages_url(self) -> str:
        return f"{GRAPH_BASE}/me/messages?access_token={self.page_access_token}"

    async def reply(self, event: InboundEvent, text: str) -> Result[dict]:
        return await self.push(event.external_user_id, text)

    async def push(self, user_id: str, text: str = "", image_url: Optional[str] = None) -> Result[dict]:
        if image_url:
            result = await self._post(
                self._messages_url(),
                {
                    "recipient": {"id": user_id},
                    "messaging_type": "RESPONSE",
                    "message": {"attachment": {"type": "image", "payload": {"url": image_url, "is_reusable": True}}},
                },
            )
            if not result.ok or not text:
                return result
        if not text:
            return Result.failure("Nothing to send", "empty_message")
        return await self._post(
            self._messages_url(),
            {"recipient": {"id": user_id}, "messaging_type": "RESPONSE", "message": {"text": self.prepare_text(text)}},
        )

    async def send_typing(self, user_id: str, on: bool = True) -> Result[dict]:
        return await self._post(
            self._messages_url(),
            {"recipient": {"id": user_id}, "sender_action": "typing_on" if on else "typing_off"},
        )
