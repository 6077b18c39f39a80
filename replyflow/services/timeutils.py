import time
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def now_ms() -> int:
    return int(time.time() * 1000)


def local_date(tz_name: str, ts_ms: Optional[int] = None) -> str:
    """YYYY-MM-DD in the given timezone; daily aggregates roll over at local midnight."""
    moment = datetime.fromtimestamp((ts_ms if ts_ms is not None else now_ms()) / 1000, tz=timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d")


def recent_dates(tz_name: str, days: int, ts_ms: Optional[int] = None) -> list[str]:
    """Local dates for the last `days` days, newest first."""
    moment = datetime.fromtimestamp((ts_ms if ts_ms is not None else now_ms()) / 1000, tz=timezone.utc)
    local = moment.astimezone(ZoneInfo(tz_name))
    return [(local - timedelta(days=offset)).strftime("%Y-%m-%d") for offset in range(max(days, 1))]


def format_gap(gap_ms: int) -> str:
    """Human-readable gap, e.g. '3h 20m' or '2d 4h'."""
    minutes = max(gap_ms, 0) // 60000
    days, minutes = divmod(minutes, 1440)
    hours, minutes = divmod(minutes, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def local_day_bounds(tz_name: str, date: str) -> tuple[int, int]:
    """[start, end) of a local YYYY-MM-DD day, in epoch ms."""
    tz = ZoneInfo(tz_name)
    start = datetime.strptime(date, "%Y-%m-%d").replace(tzinfo=tz)
    end = start + timedelta(days=1)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)
