from html import escape
from typing import Optional

import httpx

from replyflow.logging_config import get_logger

logger = get_logger("telegram_service")


class TelegramService:
    """Sends admin notifications through a tenant's Telegram bot."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str, timeout_seconds: float = 10.0):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout_seconds = timeout_seconds

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, json=data or {})
                return response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}")
            return {"ok": False, "error": str(e)}

    async def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: str = "HTML",
    ) -> dict:
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        if reply_markup:
            data["reply_markup"] = reply_markup
        return await self._make_request("sendMessage", data)


def format_escalation_notification(
    tenant_name: str,
    channel: str,
    display_name: str,
    user_id: str,
    customer_message: str,
    reason: str,
) -> str:
    return (
        f"🔔 <b>{escape(tenant_name)}</b>: customer needs a human\n\n"
        f"<b>Customer:</b> {escape(display_name or user_id)} ({escape(channel)})\n"
        f"<b>Reason:</b> {escape(reason)}\n"
        f"<b>Message:</b> {escape(customer_message[:500])}"
    )
