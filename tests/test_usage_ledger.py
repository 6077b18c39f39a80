import pytest

from replyflow.schemas.usage import TokenUsage
from replyflow.services.timeutils import local_date
from replyflow.services.usage_ledger import UsageLedger, calc_cost_usd


@pytest.fixture
def ledger(fake_redis):
    return UsageLedger(fake_redis)


class TestCost:
    def test_known_model(self):
        assert calc_cost_usd("gpt-4o-mini", 1_000_000, 1_000_000) == pytest.approx(0.75)

    def test_unknown_model_uses_default_pricing(self):
        assert calc_cost_usd("mystery", 1_000_000, 0) == pytest.approx(0.15)


class TestLogUsage:
    @pytest.mark.asyncio
    async def test_rolls_up_daily_and_total(self, ledger):
        await ledger.log_usage("shop", TokenUsage(model="gpt-4o-mini", call_site="line_reply", prompt_tokens=100, completion_tokens=20))
        await ledger.log_usage("shop", TokenUsage(model="gpt-4o-mini", call_site="line_reply", prompt_tokens=50, completion_tokens=10))

        totals = await ledger.get_usage_totals("shop")
        daily = await ledger.get_daily_usage("shop", days=1)

        assert totals.calls == 2
        assert totals.prompt_tokens == 150
        assert totals.total_tokens == 180
        assert len(daily) == 1
        assert daily[0].model == "gpt-4o-mini"
        assert daily[0].calls == 2

    @pytest.mark.asyncio
    async def test_failed_attempt_counts_as_failure(self, ledger):
        await ledger.log_usage("shop", TokenUsage(model="gpt-4o", call_site="line_reply", success=False, provider="openai"))

        totals = await ledger.get_usage_totals("shop")
        log = await ledger.get_usage_log("shop")

        assert totals.calls == 1
        assert totals.failures == 1
        assert log[0].success is False
        assert log[0].provider == "openai"

    @pytest.mark.asyncio
    async def test_by_model(self, ledger):
        await ledger.log_usage("shop", TokenUsage(model="gpt-4o-mini", call_site="learn", prompt_tokens=10))
        await ledger.log_usage("shop", TokenUsage(model="claude-haiku-4-5", call_site="learn", prompt_tokens=30))

        by_model = await ledger.get_usage_by_model("shop", days=1)

        assert set(by_model) == {"gpt-4o-mini", "claude-haiku-4-5"}
        assert by_model["claude-haiku-4-5"].prompt_tokens == 30

    @pytest.mark.asyncio
    async def test_usage_for_date(self, ledger):
        await ledger.log_usage("shop", TokenUsage(model="gpt-4o-mini", call_site="crm_extract", prompt_tokens=10, completion_tokens=5))

        totals = await ledger.get_usage_for_date("shop", local_date("Asia/Bangkok"))

        assert totals.total_tokens == 15

    @pytest.mark.asyncio
    async def test_log_is_newest_first(self, ledger):
        first = await ledger.log_usage("shop", TokenUsage(model="gpt-4o-mini", call_site="a"), timestamp=1_700_000_000_000)
        second = await ledger.log_usage("shop", TokenUsage(model="gpt-4o-mini", call_site="b"), timestamp=1_700_000_001_000)

        log = await ledger.get_usage_log("shop")

        assert [entry.id for entry in log] == [second.id, first.id]
