from typing import Literal, Optional

from pydantic import BaseModel, Field

WEEKDAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

DEFAULT_OFF_HOURS_MESSAGE = (
    "We are currently outside business hours (09:00-18:00). "
    "Our team will get back to you on the next business day, "
    "but you can still ask general questions."
)


class BusinessHoursSchedule(BaseModel):
    day: str
    open: str = "09:00"
    close: str = "18:00"
    active: bool = True


def _default_schedule() -> list[BusinessHoursSchedule]:
    return [BusinessHoursSchedule(day=day) for day in WEEKDAYS]


class BusinessHoursConfig(BaseModel):
    enabled: bool = True
    timezone: str = "Asia/Bangkok"
    off_hours_message: str = DEFAULT_OFF_HOURS_MESSAGE
    # annotate: keep answering and tell the model it is off hours
    # offline: reply with off_hours_message only
    off_hours_mode: Literal["annotate", "offline"] = "annotate"
    schedule: list[BusinessHoursSchedule] = Field(default_factory=_default_schedule)


class ChannelCredentials(BaseModel):
    line_channel_secret: str = ""
    line_channel_access_token: str = ""
    facebook_page_access_token: str = ""
    facebook_verify_token: str = ""
    facebook_app_secret: str = ""


class TenantConfig(BaseModel):
    """Everything a single turn needs to know about a tenant, resolved once per request."""

    tenant_id: str
    name: str = ""
    credentials: ChannelCredentials = Field(default_factory=ChannelCredentials)
    notify_bot_token: Optional[str] = None
    notify_chat_id: Optional[str] = None
    resolver_url: Optional[str] = None

    system_prompt: str = "You are a helpful customer service assistant. Answer briefly and politely."
    default_fallback_message: str = "Thank you for your message. Our team will get back to you shortly."
    welcome_message: str = "Hello! How can we help you today?"
    escalation_notice: str = "Customer requested a human agent."
    auto_pin_ack_message: str = "Thank you for your message. An agent will follow up with you shortly."
    cancel_phrases: list[str] = Field(default_factory=lambda: ["cancel", "never mind", "talk to bot"])
    provider_order: list[str] = Field(default_factory=list)
    business_hours: BusinessHoursConfig = Field(default_factory=BusinessHoursConfig)

    deferred_layer_threshold: Optional[int] = None
    returning_gap_seconds: Optional[int] = None
    rate_limit_messages: Optional[int] = None
    rate_limit_window_seconds: Optional[int] = None
    learning_confidence_threshold: Optional[float] = None

    def matches_cancel_phrase(self, text: Optional[str]) -> bool:
        normalized = " ".join((text or "").lower().split())
        if not normalized:
            return False
        return any(normalized == phrase.lower().strip() for phrase in self.cancel_phrases if phrase.strip())
