import json

import pytest

from replyflow.schemas.conversation import CRMProfile, CustomerStage, MessageRole, PurchaseIntent
from replyflow.services.conversation_store import ConversationStore, new_message
from replyflow.services.crm_service import (
    apply_manual_update,
    extract_crm_profile,
    has_meaningful_data,
    merge_crm_profile,
    normalize_extraction,
    should_extract,
)
from replyflow.services.fallback_chain import FallbackChain, ProviderSlot
from conftest import FakeProvider

NOW = 1_700_000_000_000


def _extracted(**fields):
    base = {
        "name": None,
        "phone": None,
        "email": None,
        "budget": None,
        "province": None,
        "occupation": None,
        "interested_products": [],
        "purchase_intent": None,
        "stage": None,
    }
    base.update(fields)
    return base


class TestShouldExtract:
    def test_enough_customer_messages(self):
        messages = [new_message(MessageRole.CUSTOMER, f"m{i}") for i in range(3)]

        assert should_extract(messages, 3) is True
        assert should_extract(messages, 4) is False

    def test_phone_number_signal(self):
        assert should_extract([new_message(MessageRole.CUSTOMER, "call 0812345678")], 5) is True

    def test_purchase_signal_in_thai(self):
        assert should_extract([new_message(MessageRole.CUSTOMER, "สนใจครับ")], 5) is True


class TestNormalizeExtraction:
    def test_maps_camel_case_and_drops_invalid_enums(self):
        result = normalize_extraction(
            {"name": "Somchai", "interestedProducts": "Sofa", "purchaseIntent": "boiling", "stage": "prospect", "email": "null"}
        )

        assert result["name"] == "Somchai"
        assert result["interested_products"] == ["Sofa"]
        assert result["purchase_intent"] is None
        assert result["stage"] == "prospect"
        assert result["email"] is None

    def test_meaningful_data(self):
        assert has_meaningful_data(_extracted()) is False
        assert has_meaningful_data(_extracted(province="Bangkok")) is True


class TestMerge:
    def test_contact_fields_keep_existing_values(self):
        existing = CRMProfile(tenant_id="shop", user_id="U1", phone="0811111111", created_at=1)

        merged = merge_crm_profile(existing, _extracted(phone="0899999999", name="Som"), "shop", "U1", now=NOW)

        assert merged.phone == "0811111111"
        assert merged.name == "Som"
        assert merged.created_at == 1

    def test_manual_fields_are_never_overwritten(self):
        existing = apply_manual_update(None, {"budget": "50k"}, "shop", "U1", "nok", now=NOW)

        merged = merge_crm_profile(existing, _extracted(budget="10k", province="Chiang Mai"), "shop", "U1", now=NOW)

        assert merged.budget == "50k"
        assert merged.province == "Chiang Mai"

    def test_null_never_erases(self):
        existing = CRMProfile(tenant_id="shop", user_id="U1", province="Phuket", purchase_intent=PurchaseIntent.WARM)

        merged = merge_crm_profile(existing, _extracted(), "shop", "U1", now=NOW)

        assert merged.province == "Phuket"
        assert merged.purchase_intent == PurchaseIntent.WARM

    def test_merge_is_idempotent(self):
        extracted = _extracted(name="Som", budget="20k", interested_products=["Sofa"], stage="prospect")

        once = merge_crm_profile(None, extracted, "shop", "U1", display_name="Somchai", now=NOW)
        twice = merge_crm_profile(once, extracted, "shop", "U1", display_name="Somchai", now=NOW)

        assert once == twice
        assert once.stage == CustomerStage.PROSPECT
        assert once.extracted_by == "ai"


class TestManualUpdate:
    def test_marks_fields_manual_and_clearing_releases_them(self):
        profile = apply_manual_update(None, {"phone": "0812345678", "tags": ["vip"]}, "shop", "U1", "nok", now=NOW)
        assert profile.manual_fields == ["phone", "tags"]
        assert profile.updated_by == "nok"

        cleared = apply_manual_update(profile, {"phone": ""}, "shop", "U1", "nok", now=NOW)
        assert cleared.manual_fields == ["tags"]

    def test_unknown_fields_are_ignored(self):
        profile = apply_manual_update(None, {"created_at": 5, "note": "call after 6pm"}, "shop", "U1", "nok", now=NOW)

        assert profile.note == "call after 6pm"
        assert profile.created_at == NOW


class TestExtractCrmProfile:
    @pytest.mark.asyncio
    async def test_extracts_and_stores(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.get_or_create_conversation("shop", "U1", display_name="Somchai")
        await store.add_message("shop", "U1", new_message(MessageRole.CUSTOMER, "My name is Som, phone 0812345678"))
        provider = FakeProvider("fake", reply=json.dumps({"name": "Som", "phone": "0812345678", "purchaseIntent": "hot"}))
        chain = FallbackChain([ProviderSlot("fake", provider, "m")])

        profile = await extract_crm_profile(store, chain, "shop", "U1", min_customer_messages=3)

        assert profile.phone == "0812345678"
        assert profile.display_name == "Somchai"
        assert (await store.get_crm_profile("shop", "U1")).name == "Som"

    @pytest.mark.asyncio
    async def test_skips_without_signal(self, fake_redis):
        store = ConversationStore(fake_redis)
        await store.get_or_create_conversation("shop", "U1")
        await store.add_message("shop", "U1", new_message(MessageRole.CUSTOMER, "hello"))
        provider = FakeProvider("fake", reply="{}")

        profile = await extract_crm_profile(
            store, FallbackChain([ProviderSlot("fake", provider, "m")]), "shop", "U1", min_customer_messages=3
        )

        assert profile is None
        assert provider.calls == []
