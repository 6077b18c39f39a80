from datetime import datetime, timezone

import pytest

from replyflow.schemas.tenant import BusinessHoursConfig, BusinessHoursSchedule
from replyflow.services.business_hours import check_business_hours, get_business_hours
from replyflow.services.conversation_store import ConversationStore

# 2024-01-01 is a Monday; Bangkok is UTC+7
MONDAY_10AM_BANGKOK = datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)
MONDAY_7PM_BANGKOK = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestCheckBusinessHours:
    def test_open_inside_window(self):
        status = check_business_hours(BusinessHoursConfig(), MONDAY_10AM_BANGKOK)

        assert status.is_open is True
        assert status.day_name == "Monday"
        assert status.current_time == "10:00"

    def test_closed_after_close(self):
        assert check_business_hours(BusinessHoursConfig(), MONDAY_7PM_BANGKOK).is_open is False

    def test_disabled_is_always_open(self):
        assert check_business_hours(BusinessHoursConfig(enabled=False), MONDAY_7PM_BANGKOK).is_open is True

    def test_inactive_day_is_closed(self):
        config = BusinessHoursConfig(schedule=[BusinessHoursSchedule(day="Monday", active=False)])

        assert check_business_hours(config, MONDAY_10AM_BANGKOK).is_open is False

    def test_day_names_are_case_insensitive(self):
        config = BusinessHoursConfig(schedule=[BusinessHoursSchedule(day="monday")])

        assert check_business_hours(config, MONDAY_10AM_BANGKOK).is_open is True

    def test_window_past_midnight(self):
        config = BusinessHoursConfig(schedule=[BusinessHoursSchedule(day="Monday", open="18:00", close="02:00")])

        assert check_business_hours(config, MONDAY_7PM_BANGKOK).is_open is True
        assert check_business_hours(config, MONDAY_10AM_BANGKOK).is_open is False

    def test_unknown_timezone_falls_back_to_utc(self):
        config = BusinessHoursConfig(timezone="Mars/Olympus")

        status = check_business_hours(config, MONDAY_10AM_BANGKOK)

        assert status.current_time == "03:00"
        assert status.is_open is False


class TestGetBusinessHours:
    @pytest.mark.asyncio
    async def test_stored_config_wins(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.set_business_hours_raw("shop", BusinessHoursConfig(off_hours_mode="offline").model_dump())

        config = await get_business_hours(store, "shop", BusinessHoursConfig(enabled=False))

        assert config.enabled is True
        assert config.off_hours_mode == "offline"

    @pytest.mark.asyncio
    async def test_default_when_nothing_stored(self, fake_redis):
        default = BusinessHoursConfig(enabled=False)

        assert await get_business_hours(ConversationStore(fake_redis), "shop", default) is default

    @pytest.mark.asyncio
    async def test_invalid_stored_config_uses_default(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.set_business_hours_raw("shop", {"off_hours_mode": "sleep"})
        default = BusinessHoursConfig(enabled=False)

        assert await get_business_hours(store, "shop", default) is default
