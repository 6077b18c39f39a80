import pytest

from replyflow.schemas.conversation import AdminAction, MessageRole
from replyflow.schemas.usage import TokenUsage
from replyflow.services.conversation_store import ConversationStore, new_message
from replyflow.services.digest_service import build_daily_digest, get_chat_summary
from replyflow.services.fallback_chain import FallbackChain, ProviderSlot
from replyflow.services.learned_store import LearnedStore
from replyflow.services.timeutils import local_day_bounds
from replyflow.services.usage_ledger import UsageLedger
from conftest import FakeProvider


@pytest.fixture
def stores(fake_redis):
    return ConversationStore(fake_redis), LearnedStore(fake_redis), UsageLedger(fake_redis)


class TestDailyDigest:
    @pytest.mark.asyncio
    async def test_rolls_up_counters_usage_and_misses(self, stores):
        store, learned_store, ledger = stores
        await store.incr_daily_counter("shop", "inbound", 3)
        await store.incr_daily_counter("shop", "replied")
        await ledger.log_usage("shop", TokenUsage(model="gpt-4o-mini", call_site="line_reply", prompt_tokens=10))
        await learned_store.track_miss("shop", "do you ship abroad?")
        await store.log_admin_activity("shop", "nok", AdminAction.SEND)

        digest = await build_daily_digest(store, learned_store, ledger, "shop")

        assert digest["counters"] == {"inbound": 3, "replied": 1}
        assert digest["usage"]["calls"] == 1
        assert digest["top_misses"][0]["question"] == "do you ship abroad?"
        assert digest["admins"][0]["username"] == "nok"
        assert digest["pending_followups"] == 0

    @pytest.mark.asyncio
    async def test_admin_activity_is_limited_to_the_digest_day(self, stores):
        store, learned_store, ledger = stores
        await store.log_admin_activity("shop", "nok", AdminAction.SEND)

        digest = await build_daily_digest(store, learned_store, ledger, "shop", date="2020-01-01")

        assert digest["admins"] == []

    def test_day_bounds_follow_local_midnight(self):
        start, end = local_day_bounds("Asia/Bangkok", "2024-01-01")

        # 2024-01-01 00:00 in Bangkok is 2023-12-31 17:00 UTC
        assert start == 1704042000000
        assert end - start == 24 * 3600 * 1000

    @pytest.mark.asyncio
    async def test_cached_until_forced(self, stores):
        store, learned_store, ledger = stores
        first = await build_daily_digest(store, learned_store, ledger, "shop")
        await store.incr_daily_counter("shop", "inbound")

        cached = await build_daily_digest(store, learned_store, ledger, "shop")
        rebuilt = await build_daily_digest(store, learned_store, ledger, "shop", force=True)

        assert cached == first
        assert rebuilt["counters"] == {"inbound": 1}


class TestChatSummary:
    @pytest.mark.asyncio
    async def test_summary_cached_until_new_message(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.get_or_create_conversation("shop", "U1")
        await store.add_message("shop", "U1", new_message(MessageRole.CUSTOMER, "I want a sofa"))
        provider = FakeProvider("fake", reply="- wants a sofa")
        chain = FallbackChain([ProviderSlot("fake", provider, "m")])

        first = await get_chat_summary(store, chain, "shop", "U1")
        second = await get_chat_summary(store, chain, "shop", "U1")

        assert first["summary"] == "- wants a sofa"
        assert second == first
        assert len(provider.calls) == 1

        await store.add_message(
            "shop", "U1", new_message(MessageRole.CUSTOMER, "blue please").model_copy(update={"timestamp": first["last_message_at"] + 1})
        )
        await get_chat_summary(store, chain, "shop", "U1")
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_missing_conversation(self, fake_redis):
        chain = FallbackChain([])

        assert await get_chat_summary(ConversationStore(fake_redis), chain, "shop", "nobody") is None
