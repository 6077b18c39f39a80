import json

import pytest

from replyflow.schemas.learned import CorrectionAction, CorrectionDecision, LearnedKind, QAReviewStatus
from replyflow.services.fallback_chain import FallbackChain, ProviderSlot
from replyflow.services.learned_store import LearnedStore
from replyflow.services.learning_service import (
    apply_correction,
    extract_json_object,
    parse_correction_decision,
    process_correction,
)
from conftest import FakeProvider


def _chain(reply):
    return FallbackChain([ProviderSlot("fake", FakeProvider("fake", reply=reply), "fake-model")])


def _knowledge_reply(confidence):
    return json.dumps(
        {
            "action": "knowledge",
            "confidence": confidence,
            "reasoning": "shipping fact",
            "knowledge": {"title": "Shipping time", "triggers": ["ship", "delivery"], "content": "2-3 days nationwide"},
        }
    )


class TestExtractJsonObject:
    def test_code_fence(self):
        assert extract_json_object('```json\n{"action": "none"}\n```') == {"action": "none"}

    def test_surrounding_prose(self):
        assert extract_json_object('Sure! {"a": 1} hope that helps') == {"a": 1}

    def test_garbage(self):
        assert extract_json_object("no json here") is None
        assert extract_json_object("{not json}") is None


class TestParseCorrectionDecision:
    def test_intent_fields(self):
        decision = parse_correction_decision(
            json.dumps(
                {
                    "action": "intent",
                    "confidence": 0.9,
                    "intent": {
                        "intentId": "new",
                        "intentName": "ask_price",
                        "triggers": ["price", "how much"],
                        "responseTemplate": "From 990 baht",
                    },
                }
            )
        )

        assert decision.action == CorrectionAction.INTENT
        assert decision.title == "ask_price"
        assert decision.content == "From 990 baht"
        assert decision.intent_id is None

    def test_unknown_action_becomes_none(self):
        assert parse_correction_decision('{"action": "dance", "confidence": 1}').action == CorrectionAction.NONE

    def test_confidence_is_clamped(self):
        assert parse_correction_decision('{"action": "none", "confidence": 7}').confidence == 1.0
        assert parse_correction_decision('{"action": "none", "confidence": "high"}').confidence == 0.0


class TestApplyCorrection:
    @pytest.mark.asyncio
    async def test_below_threshold_saves_nothing(self, fake_redis):
        store = LearnedStore(fake_redis)
        decision = CorrectionDecision(action=CorrectionAction.SCRIPT, confidence=0.59, title="t", content="c")

        item = await apply_correction(store, "shop", decision, 0.6, "question", "answer")

        assert item is None
        assert (await store.get_all_learned_data("shop")).is_empty()

    @pytest.mark.asyncio
    async def test_above_threshold_saves_one_item_of_decided_kind(self, fake_redis):
        store = LearnedStore(fake_redis)
        decision = CorrectionDecision(action=CorrectionAction.SCRIPT, confidence=0.61, title="t", content="c")

        item = await apply_correction(store, "shop", decision, 0.6, "question", "answer", created_by="nok")
        data = await store.get_all_learned_data("shop")

        assert item.kind == LearnedKind.SCRIPT
        assert item.enabled is True
        assert item.created_by == "nok"
        assert [saved.id for saved in data.scripts] == [item.id]
        assert data.intents == [] and data.knowledge == []

    @pytest.mark.asyncio
    async def test_none_action_saves_nothing(self, fake_redis):
        store = LearnedStore(fake_redis)

        item = await apply_correction(store, "shop", CorrectionDecision(confidence=1.0), 0.6, "q", "a")

        assert item is None

    @pytest.mark.asyncio
    async def test_missing_fields_fall_back_to_question_and_answer(self, fake_redis):
        store = LearnedStore(fake_redis)
        decision = CorrectionDecision(action=CorrectionAction.KNOWLEDGE, confidence=0.9)

        item = await apply_correction(store, "shop", decision, 0.6, "Do you ship abroad?", "Only within Thailand.")

        assert item.title == "Do you ship abroad?"
        assert item.content == "Only within Thailand."
        assert item.triggers == ["Do you ship abroad?"]


class TestProcessCorrection:
    @pytest.mark.asyncio
    async def test_learns_knowledge_and_logs_rejected_answer(self, fake_redis, tenant):
        store = LearnedStore(fake_redis)

        item = await process_correction(
            store, _chain(_knowledge_reply(0.85)), tenant, "How long is shipping?", "I don't know", "2-3 days", 0.6
        )

        assert item.kind == LearnedKind.KNOWLEDGE
        assert item.title == "Shipping time"
        assert item.triggers == ["ship", "delivery"]
        qa_log = await store.get_qa_log("shop")
        assert qa_log[0].review_status == QAReviewStatus.REJECTED
        assert await store.count_misses("shop") == 1

    @pytest.mark.asyncio
    async def test_low_confidence_analysis_saves_nothing(self, fake_redis, tenant):
        store = LearnedStore(fake_redis)

        item = await process_correction(
            store, _chain(_knowledge_reply(0.59)), tenant, "How long is shipping?", "?", "2-3 days", 0.6
        )

        assert item is None
        assert (await store.get_all_learned_data("shop")).is_empty()

    @pytest.mark.asyncio
    async def test_providers_down_saves_nothing(self, fake_redis, tenant):
        store = LearnedStore(fake_redis)

        item = await process_correction(store, _chain(None), tenant, "How long is shipping?", "?", "2-3 days", 0.6)

        assert item is None

    @pytest.mark.asyncio
    async def test_too_short_is_skipped(self, fake_redis, tenant):
        store = LearnedStore(fake_redis)
        provider = FakeProvider("fake", reply=_knowledge_reply(0.9))
        chain = FallbackChain([ProviderSlot("fake", provider, "m")])

        assert await process_correction(store, chain, tenant, "?", "bot", "ok then", 0.6) is None
        assert provider.calls == []
