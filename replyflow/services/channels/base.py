from abc import ABC, abstractmethod
from typing import Mapping, Optional

import httpx

from replyflow.logging_config import get_logger
from replyflow.schemas.events import Channel, ChannelProfile, InboundEvent
from replyflow.services.result import Result

logger = get_logger("channels")


class ChannelAdapter(ABC):
    """Uniform surface over one external messaging channel."""

    channel: Channel
    max_text_length: int = 2000

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the channel's HMAC signature over the raw request body."""

    @abstractmethod
    def parse_events(self, tenant_id: str, payload: dict) -> list[InboundEvent]:
        """Normalize a webhook payload. Events this service does not handle are dropped."""

    @abstractmethod
    async def _fetch_profile_once(self, user_id: str) -> Optional[ChannelProfile]:
        pass

    @abstractmethod
    async def reply(self, event: InboundEvent, text: str) -> Result[dict]:
        pass

    @abstractmethod
    async def push(self, user_id: str, text: str = "", image_url: Optional[str] = None) -> Result[dict]:
        pass

    def prepare_text(self, text: str) -> str:
        text = (text or "").strip()
        if len(text) > self.max_text_length:
            text = text[: self.max_text_length - 1] + "…"
        return text

    async def fetch_profile(self, user_id: str) -> Optional[ChannelProfile]:
        """Profile lookup with a single retry on transport errors. None on failure."""
        for attempt in (1, 2):
            try:
                return await self._fetch_profile_once(user_id)
            except httpx.TransportError as exc:
                logger.warning(
                    "Profile fetch transport error",
                    extra={"context": {"channel": self.channel.value, "attempt": attempt, "error": str(exc)}},
                )
            except Exception as exc:
                logger.warning(
                    "Profile fetch failed",
                    extra={"context": {"channel": self.channel.value, "error": str(exc)}},
                )
                return None
        return None

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> Result[dict]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, json=payload, headers=headers or {})
        except httpx.HTTPError as exc:
            logger.error(
                "Channel send transport error",
                extra={"context": {"channel": self.channel.value, "error": str(exc) or type(exc).__name__}},
            )
            return Result.failure(str(exc) or type(exc).__name__, "transport_error")

        if response.status_code >= 400:
            logger.error(
                "Channel send rejected",
                extra={
                    "context": {
                        "channel": self.channel.value,
                        "status": response.status_code,
                        "body": response.text[:500],
                    }
                },
            )
            return Result.failure(response.text[:500], "channel_error", status_code=response.status_code)

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        return Result.success(data)
