import re
from typing import Any, Optional

from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import CRMProfile, CustomerStage, Message, MessageRole, PurchaseIntent
from replyflow.services.conversation_store import ConversationStore
from replyflow.services.fallback_chain import FallbackChain
from replyflow.services.learning_service import extract_json_object
from replyflow.services.timeutils import now_ms

logger = get_logger("crm_service")

PHONE_RE = re.compile(r"0[0-9]{8,9}")
NAME_SIGNAL_RE = re.compile(r"ชื่อ|เรียกว่า|ผม|ดิฉัน|ชื่อว่า|my name is|i am|i'm|call me", re.IGNORECASE)
PURCHASE_SIGNAL_RE = re.compile(r"สนใจ|อยากได้|ต้องการ|ราคา|ซื้อ|สั่ง|price|buy|order|interested", re.IGNORECASE)

CONTACT_FIELDS = ("name", "phone", "email")
SCALAR_FIELDS = ("budget", "province", "occupation", "purchase_intent")
MANUAL_FIELDS = (*CONTACT_FIELDS, *SCALAR_FIELDS, "stage", "interested_products", "tags", "note")
EXTRACTION_WINDOW = 30

EXTRACT_SYSTEM_PROMPT = """You extract customer profile data for a CRM from a chat transcript.
Return JSON only, using null for anything the customer did not say:
{
  "name": "customer's real name (not the chat display name)",
  "phone": "phone number",
  "email": "email",
  "interestedProducts": ["product"],
  "budget": "stated budget",
  "purchaseIntent": "hot|warm|cold|purchased",
  "province": "province or city",
  "occupation": "occupation",
  "stage": "lead|prospect|customer|churned"
}
Rules: only use what the customer said, never guess.
hot = asking price or ready to buy, warm = interested, cold = just asking, purchased = already bought."""


def should_extract(messages: list[Message], min_customer_messages: int) -> bool:
    """Cheap gate before spending an LLM call on profile extraction."""
    customer_texts = [message.content for message in messages if message.role == MessageRole.CUSTOMER]
    if len(customer_texts) >= min_customer_messages:
        return True
    text = " ".join(customer_texts)
    return bool(PHONE_RE.search(text) or NAME_SIGNAL_RE.search(text) or PURCHASE_SIGNAL_RE.search(text))


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value if value and value.lower() not in ("null", "none") else None


def normalize_extraction(raw: dict) -> dict:
    """Map the model's camelCase JSON onto profile fields, dropping invalid enum values."""
    products = raw.get("interestedProducts") or raw.get("interested_products") or []
    if not isinstance(products, list):
        products = [products]

    intent = _clean(raw.get("purchaseIntent") or raw.get("purchase_intent"))
    stage = _clean(raw.get("stage"))
    return {
        "name": _clean(raw.get("name")),
        "phone": _clean(raw.get("phone")),
        "email": _clean(raw.get("email")),
        "budget": _clean(raw.get("budget")),
        "province": _clean(raw.get("province")),
        "occupation": _clean(raw.get("occupation")),
        "interested_products": [str(item).strip() for item in products if item and str(item).strip()],
        "purchase_intent": intent if intent in {item.value for item in PurchaseIntent} else None,
        "stage": stage if stage in {item.value for item in CustomerStage} else None,
    }


def has_meaningful_data(extracted: dict) -> bool:
    keys = ("name", "phone", "email", "budget", "province", "occupation", "interested_products")
    return any(extracted.get(key) for key in keys)


def merge_crm_profile(
    existing: Optional[CRMProfile],
    extracted: dict,
    tenant_id: str,
    user_id: str,
    display_name: str = "",
    now: Optional[int] = None,
) -> CRMProfile:
    """Merge an AI extraction into the stored profile.

    Contact fields keep any existing value. Fields an admin set by hand are never
    replaced. Everything else takes the extracted value when it is non-null.
    A null from the model never erases anything, so re-running is idempotent.
    """
    now = now or now_ms()
    base = existing.model_dump() if existing else {}
    manual = set(existing.manual_fields) if existing else set()
    merged: dict[str, Any] = dict(base)

    for field in CONTACT_FIELDS:
        merged[field] = base.get(field) or extracted.get(field)

    for field in SCALAR_FIELDS:
        current = base.get(field)
        if field in manual and current is not None:
            continue
        merged[field] = extracted.get(field) if extracted.get(field) is not None else current

    if extracted.get("interested_products") and "interested_products" not in manual:
        merged["interested_products"] = extracted["interested_products"]

    if not ("stage" in manual and base.get("stage")):
        merged["stage"] = extracted.get("stage") or base.get("stage") or CustomerStage.LEAD.value

    merged.update(
        tenant_id=tenant_id,
        user_id=user_id,
        display_name=display_name or base.get("display_name") or "",
        tags=base.get("tags") or [],
        manual_fields=sorted(manual),
        created_at=base.get("created_at") or now,
        extracted_by="ai",
        extracted_at=now,
        updated_by="auto",
        updated_at=now,
    )
    return CRMProfile.model_validate(merged)


def apply_manual_update(
    existing: Optional[CRMProfile],
    updates: dict,
    tenant_id: str,
    user_id: str,
    username: str,
    now: Optional[int] = None,
) -> CRMProfile:
    """An admin edit always wins; edited non-null fields become protected from AI merges."""
    now = now or now_ms()
    base = existing.model_dump() if existing else {"tenant_id": tenant_id, "user_id": user_id}
    manual = set(existing.manual_fields) if existing else set()

    for field, value in updates.items():
        if field not in MANUAL_FIELDS:
            continue
        base[field] = value
        if value not in (None, "", []):
            manual.add(field)
        else:
            manual.discard(field)

    base.update(
        tenant_id=tenant_id,
        user_id=user_id,
        manual_fields=sorted(manual),
        created_at=base.get("created_at") or now,
        extracted_by="manual",
        updated_by=username,
        updated_at=now,
    )
    return CRMProfile.model_validate(base)


def build_transcript(messages: list[Message], display_name: str) -> str:
    labels = {MessageRole.CUSTOMER: f"Customer ({display_name})", MessageRole.ADMIN: "Admin", MessageRole.BOT: "Bot"}
    return "\n".join(
        f"[{labels[message.role]}]: {message.content}"
        for message in messages[-EXTRACTION_WINDOW:]
        if message.role in labels and message.content
    )


async def extract_crm_profile(
    store: ConversationStore,
    chain: FallbackChain,
    tenant_id: str,
    user_id: str,
    min_customer_messages: int,
) -> Optional[CRMProfile]:
    """Background job: LLM extraction merged into the stored profile."""
    conversation = await store.get_conversation(tenant_id, user_id)
    if conversation is None:
        return None
    messages = await store.get_messages(tenant_id, user_id, limit=EXTRACTION_WINDOW)
    if not should_extract(messages, min_customer_messages):
        return None

    transcript = build_transcript(messages, conversation.display_name)
    result = await chain.first_success(
        f"Extract CRM data from this conversation:\n\n{transcript}",
        [],
        EXTRACT_SYSTEM_PROMPT,
        call_site="crm_extract",
        temperature=0.1,
        max_tokens=400,
        json_mode=True,
        user_id=user_id,
    )
    if result is None:
        return None

    raw = extract_json_object(result.text)
    if raw is None:
        logger.warning("Unparseable CRM extraction", extra={"context": {"tenant_id": tenant_id, "user_id": user_id}})
        return None

    extracted = normalize_extraction(raw)
    if not has_meaningful_data(extracted):
        return None

    existing = await store.get_crm_profile(tenant_id, user_id)
    profile = merge_crm_profile(existing, extracted, tenant_id, user_id, conversation.display_name)
    await store.put_crm_profile(profile)
    logger.info("CRM profile extracted", extra={"context": {"tenant_id": tenant_id, "user_id": user_id}})
    return profile
