from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from replyflow.logging_config import get_logger
from replyflow.schemas.tenant import BusinessHoursConfig

logger = get_logger("business_hours")


@dataclass
class BusinessHoursStatus:
    is_open: bool
    day_name: str
    current_time: str


def _to_minutes(value: str) -> int:
    hours, _, minutes = value.partition(":")
    return int(hours) * 60 + int(minutes or 0)


def check_business_hours(config: BusinessHoursConfig, now: Optional[datetime] = None) -> BusinessHoursStatus:
    """Whether `now` falls inside today's window in the configured timezone.

    A disabled config is always open. A window whose close is before its open
    runs past midnight (e.g. 20:00-02:00).
    """
    try:
        tz = ZoneInfo(config.timezone)
    except Exception:
        logger.warning(f"Unknown timezone {config.timezone}, using UTC")
        tz = timezone.utc

    local = (now or datetime.now(timezone.utc)).astimezone(tz)
    day_name = local.strftime("%A")
    current_time = local.strftime("%H:%M")

    if not config.enabled:
        return BusinessHoursStatus(True, day_name, current_time)

    today = next((item for item in config.schedule if item.day.lower() == day_name.lower()), None)
    if today is None or not today.active:
        return BusinessHoursStatus(False, day_name, current_time)

    minutes = local.hour * 60 + local.minute
    open_at, close_at = _to_minutes(today.open), _to_minutes(today.close)
    if open_at <= close_at:
        is_open = open_at <= minutes < close_at
    else:
        is_open = minutes >= open_at or minutes < close_at

    return BusinessHoursStatus(is_open, day_name, current_time)


async def get_business_hours(store, tenant_id: str, default: BusinessHoursConfig) -> BusinessHoursConfig:
    """Admin-saved config from the store, else the tenant profile default."""
    try:
        raw = await store.get_business_hours_raw(tenant_id)
    except Exception as exc:
        logger.warning("Business hours lookup failed", extra={"context": {"tenant_id": tenant_id, "error": str(exc)}})
        return default
    if not raw:
        return default
    try:
        return BusinessHoursConfig.model_validate(raw)
    except ValueError:
        logger.warning("Stored business hours invalid, using default", extra={"context": {"tenant_id": tenant_id}})
        return default
