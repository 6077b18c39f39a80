import pytest

from replyflow.schemas.conversation import AdminAction, CRMProfile, FollowUp, MessageRole
from replyflow.schemas.events import Channel
from replyflow.services.conversation_store import ConversationStore, new_message
from replyflow.services.state_machine import ConversationState


@pytest.fixture
def store(fake_redis):
    return ConversationStore(fake_redis)


class TestConversations:
    @pytest.mark.asyncio
    async def test_create_uses_defaults(self, store):
        conversation = await store.get_or_create_conversation("shop", "U1", source=Channel.FACEBOOK)

        assert conversation.display_name == "U1"
        assert conversation.source == Channel.FACEBOOK
        assert conversation.state == ConversationState.NORMAL.value
        assert conversation.bot_enabled is True
        assert conversation.pinned is False
        assert conversation.created_at > 0

    @pytest.mark.asyncio
    async def test_profile_only_overwritten_by_non_empty_values(self, store):
        await store.get_or_create_conversation("shop", "U1", display_name="Somchai", picture_url="https://a/p.jpg")
        again = await store.get_or_create_conversation("shop", "U1")

        assert again.display_name == "Somchai"
        assert again.picture_url == "https://a/p.jpg"

        renamed = await store.get_or_create_conversation("shop", "U1", display_name="Som")
        assert renamed.display_name == "Som"

    @pytest.mark.asyncio
    async def test_existing_control_fields_survive_upsert(self, store):
        await store.get_or_create_conversation("shop", "U1")
        await store.toggle_bot("shop", "U1", False)

        conversation = await store.get_or_create_conversation("shop", "U1", display_name="Somchai")

        assert conversation.bot_enabled is False
        assert conversation.state == ConversationState.MANUAL.value

    @pytest.mark.asyncio
    async def test_missing_conversation(self, store):
        assert await store.get_conversation("shop", "nobody") is None

    @pytest.mark.asyncio
    async def test_list_is_newest_activity_first(self, store):
        for user_id in ("U1", "U2"):
            await store.get_or_create_conversation("shop", user_id)
        await store.add_message("shop", "U1", _message("first", 1000))
        await store.add_message("shop", "U2", _message("second", 2000))

        conversations = await store.list_conversations("shop")

        assert [c.user_id for c in conversations] == ["U2", "U1"]
        assert await store.count_conversations("shop") == 2

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, store, fake_redis):
        await store.get_or_create_conversation("shop", "U1")
        await store.add_message("shop", "U1", _message("hi", 1000))

        assert await store.delete_conversation("shop", "U1") is True
        assert await store.get_conversation("shop", "U1") is None
        assert await store.get_messages("shop", "U1") == []
        assert await store.delete_conversation("shop", "U1") is False


def _message(content: str, timestamp: int, role: MessageRole = MessageRole.CUSTOMER):
    return new_message(role, content).model_copy(update={"timestamp": timestamp})


class TestMessages:
    @pytest.mark.asyncio
    async def test_log_is_capped_keeping_newest_in_order(self, store):
        await store.get_or_create_conversation("shop", "U1")
        for index in range(600):
            await store.add_message("shop", "U1", _message(f"m{index}", 1000 + index))

        messages = await store.get_messages("shop", "U1")

        assert len(messages) == 500
        assert messages[0].content == "m100"
        assert messages[-1].content == "m599"
        assert await store.count_messages("shop", "U1") == 500

    @pytest.mark.asyncio
    async def test_limit_returns_most_recent(self, store):
        for index in range(5):
            await store.add_message("shop", "U1", _message(f"m{index}", 1000 + index))

        messages = await store.get_messages("shop", "U1", limit=2)

        assert [m.content for m in messages] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_customer_message_updates_summary_and_unread(self, store):
        await store.get_or_create_conversation("shop", "U1")
        await store.add_message("shop", "U1", _message("hello there", 1234))

        conversation = await store.get_conversation("shop", "U1")

        assert conversation.last_message == "hello there"
        assert conversation.last_message_at == 1234
        assert conversation.last_message_role == MessageRole.CUSTOMER
        assert conversation.unread_count == 1

    @pytest.mark.asyncio
    async def test_system_message_leaves_summary_alone(self, store):
        await store.get_or_create_conversation("shop", "U1")
        await store.add_message("shop", "U1", _message("hello", 1000))
        await store.add_message("shop", "U1", _message("escalated", 2000, MessageRole.SYSTEM))

        conversation = await store.get_conversation("shop", "U1")

        assert conversation.last_message == "hello"
        assert conversation.last_message_at == 1000

    @pytest.mark.asyncio
    async def test_image_preview(self, store):
        await store.get_or_create_conversation("shop", "U1")
        await store.add_message("shop", "U1", new_message(MessageRole.CUSTOMER, "", image_url="https://a/i.jpg"))

        assert (await store.get_conversation("shop", "U1")).last_message == "[image]"

    @pytest.mark.asyncio
    async def test_mark_read_resets_unread(self, store):
        await store.get_or_create_conversation("shop", "U1")
        await store.add_message("shop", "U1", _message("hello", 1000))
        await store.mark_read("shop", "U1")

        assert (await store.get_conversation("shop", "U1")).unread_count == 0


class TestControl:
    @pytest.mark.asyncio
    async def test_pin_is_idempotent_and_keeps_pin_time(self, store):
        await store.get_or_create_conversation("shop", "U1")
        first = await store.pin_conversation("shop", "U1", "vip")
        second = await store.pin_conversation("shop", "U1", "vip")

        assert first.pinned_at == second.pinned_at
        conversation = await store.get_conversation("shop", "U1")
        assert conversation.pinned is True
        assert conversation.pinned_reason == "vip"

    @pytest.mark.asyncio
    async def test_unpin(self, store):
        await store.get_or_create_conversation("shop", "U1")
        await store.pin_conversation("shop", "U1", "vip")
        await store.unpin_conversation("shop", "U1")

        conversation = await store.get_conversation("shop", "U1")
        assert conversation.pinned is False
        assert conversation.pinned_at is None

    @pytest.mark.asyncio
    async def test_assign_and_unassign(self, store):
        await store.get_or_create_conversation("shop", "U1")
        await store.assign("shop", "U1", "nok")
        assert (await store.get_conversation("shop", "U1")).assigned_admin == "nok"

        await store.unassign("shop", "U1")
        assert (await store.get_conversation("shop", "U1")).assigned_admin is None

    @pytest.mark.asyncio
    async def test_global_bot_defaults_on(self, store):
        assert await store.get_global_bot_enabled("shop") is True

        await store.set_global_bot_enabled("shop", False)
        assert await store.get_global_bot_enabled("shop") is False


class TestFollowups:
    @pytest.mark.asyncio
    async def test_sorted_by_priority_then_wait(self, store):
        await store.set_followup("shop", FollowUp(user_id="U1", needs_followup=True, priority="low", last_message_at=1))
        await store.set_followup("shop", FollowUp(user_id="U2", needs_followup=True, priority="high", last_message_at=9))
        await store.set_followup("shop", FollowUp(user_id="U3", needs_followup=True, priority="high", last_message_at=5))
        await store.set_followup("shop", FollowUp(user_id="U4", needs_followup=False))

        followups = await store.get_followups("shop")

        assert [f.user_id for f in followups] == ["U3", "U2", "U1"]

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.set_followup("shop", FollowUp(user_id="U1", needs_followup=True))
        await store.clear_followup("shop", "U1")

        assert await store.get_followup("shop", "U1") is None
        assert await store.get_followups("shop") == []


class TestActivity:
    @pytest.mark.asyncio
    async def test_newest_first_with_username_filter(self, store):
        await store.log_admin_activity("shop", "nok", AdminAction.SEND, user_id="U1", detail="hi")
        await store.log_admin_activity("shop", "ploy", AdminAction.PIN, user_id="U2")

        entries = await store.get_admin_activity("shop")
        only_nok = await store.get_admin_activity("shop", username="nok")

        assert len(entries) == 2
        assert [e.username for e in only_nok] == ["nok"]
        assert only_nok[0].detail == "hi"

    @pytest.mark.asyncio
    async def test_stats_per_admin(self, store):
        await store.log_admin_activity("shop", "nok", AdminAction.SEND)
        await store.log_admin_activity("shop", "nok", AdminAction.SEND_MEDIA)
        await store.log_admin_activity("shop", "nok", AdminAction.PIN)
        await store.log_admin_activity("shop", "ploy", AdminAction.TOGGLE_BOT)

        stats = {item.username: item for item in await store.get_admin_stats("shop")}

        assert stats["nok"].sent == 2
        assert stats["nok"].pin == 1
        assert stats["nok"].total == 3
        assert stats["ploy"].toggle_bot == 1


class TestCRM:
    @pytest.mark.asyncio
    async def test_put_and_list(self, store):
        await store.put_crm_profile(CRMProfile(tenant_id="shop", user_id="U1", phone="0812345678", updated_at=10))

        assert (await store.get_crm_profile("shop", "U1")).phone == "0812345678"
        assert [p.user_id for p in await store.list_crm_profiles("shop")] == ["U1"]


class TestDailyCounters:
    @pytest.mark.asyncio
    async def test_counter_failure_is_swallowed(self, store, fake_redis):
        fake_redis.fail_pipelines = True

        await store.incr_daily_counter("shop", "inbound")

        assert await fake_redis.keys("stats:*") == []
