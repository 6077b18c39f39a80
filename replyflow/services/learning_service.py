import json
import re
from typing import Optional

from replyflow.logging_config import get_logger
from replyflow.schemas.learned import (
    CorrectionAction,
    CorrectionDecision,
    LearnedItem,
    LearnedKind,
    QAReviewStatus,
)
from replyflow.schemas.tenant import TenantConfig
from replyflow.services.fallback_chain import FallbackChain
from replyflow.services.learned_store import LearnedStore

logger = get_logger("learning_service")

MIN_QUESTION_LENGTH = 2
MIN_ANSWER_LENGTH = 2
MAX_TRIGGERS = 10

_FENCE_RE = re.compile(r"```(?:json)?")
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

ANALYSIS_SYSTEM_PROMPT = (
    "You are a training assistant for a customer service chatbot. "
    "You decide what the bot should learn from a human correction. "
    "Respond with raw JSON only."
)


def build_analysis_prompt(
    business_name: str,
    question: str,
    bot_answer: str,
    admin_answer: str,
    existing_intents: list[str],
) -> str:
    intents = "\n".join(f"- {name}" for name in existing_intents) or "(none)"
    return f"""A human admin of "{business_name}" corrected the bot's response.

CUSTOMER QUESTION:
"{question}"

BOT RESPONSE (incorrect or insufficient):
"{bot_answer}"

ADMIN CORRECTION (the right answer):
"{admin_answer}"

EXISTING INTENT NAMES:
{intents}

Respond with one JSON object:
{{
  "action": "intent" | "knowledge" | "script" | "none",
  "confidence": 0.0-1.0,
  "reasoning": "short explanation",
  "intent": {{"intentId": "existing id or 'new'", "intentName": "...", "triggers": ["..."], "responseTemplate": "..."}},
  "knowledge": {{"title": "...", "triggers": ["..."], "content": "..."}},
  "script": {{"name": "...", "triggers": ["..."], "adminReply": "..."}}
}}

Rules:
- "intent" when the bot did not recognize the topic at all
- "knowledge" for facts, policy or technical detail the bot did not know
- "script" for a reusable sales or service reply
- "none" for one-off personal answers, escalations or contact exchanges
- triggers are short phrases (1-4 words) a customer is likely to type
- only fill the object that matches "action"
- answers must be complete and ready to send to a customer"""


def extract_json_object(text: str) -> Optional[dict]:
    """First JSON object in a model reply, tolerating code fences and surrounding prose."""
    cleaned = _FENCE_RE.sub("", text or "").strip()
    match = _OBJECT_RE.search(cleaned)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def parse_correction_decision(text: str) -> Optional[CorrectionDecision]:
    data = extract_json_object(text)
    if data is None:
        return None

    try:
        action = CorrectionAction(str(data.get("action", "none")).lower())
    except ValueError:
        action = CorrectionAction.NONE

    try:
        confidence = min(max(float(data.get("confidence", 0.0)), 0.0), 1.0)
    except (TypeError, ValueError):
        confidence = 0.0

    payload = data.get(action.value) if action != CorrectionAction.NONE else None
    payload = payload if isinstance(payload, dict) else {}

    if action == CorrectionAction.INTENT:
        title, content = payload.get("intentName"), payload.get("responseTemplate")
    elif action == CorrectionAction.KNOWLEDGE:
        title, content = payload.get("title"), payload.get("content")
    elif action == CorrectionAction.SCRIPT:
        title, content = payload.get("name"), payload.get("adminReply")
    else:
        title, content = None, None

    triggers = payload.get("triggers") or []
    if not isinstance(triggers, list):
        triggers = [str(triggers)]

    intent_id = payload.get("intentId")
    return CorrectionDecision(
        action=action,
        confidence=confidence,
        reasoning=str(data.get("reasoning") or ""),
        title=str(title or ""),
        content=str(content or ""),
        triggers=[str(trigger) for trigger in triggers][:MAX_TRIGGERS],
        intent_id=intent_id if intent_id and intent_id != "new" else None,
    )


async def analyze_correction(
    chain: FallbackChain,
    tenant: TenantConfig,
    question: str,
    bot_answer: str,
    admin_answer: str,
    existing_intents: list[str],
) -> Optional[CorrectionDecision]:
    prompt = build_analysis_prompt(tenant.name or tenant.tenant_id, question, bot_answer, admin_answer, existing_intents)
    result = await chain.first_success(
        prompt,
        [],
        ANALYSIS_SYSTEM_PROMPT,
        call_site="learn",
        temperature=0.2,
        max_tokens=800,
        json_mode=True,
    )
    if result is None:
        return None
    decision = parse_correction_decision(result.text)
    if decision is None:
        logger.warning("Unparseable correction analysis", extra={"context": {"tenant_id": tenant.tenant_id}})
    return decision


async def apply_correction(
    learned_store: LearnedStore,
    tenant_id: str,
    decision: CorrectionDecision,
    threshold: float,
    question: str,
    admin_answer: str,
    created_by: str = "auto",
) -> Optional[LearnedItem]:
    """Persist exactly one enabled learned entity, or nothing below the confidence threshold."""
    if decision.action == CorrectionAction.NONE:
        logger.info("Correction not worth learning", extra={"context": {"tenant_id": tenant_id}})
        return None
    if decision.confidence < threshold:
        logger.info(
            "Correction discarded below confidence threshold",
            extra={"context": {"tenant_id": tenant_id, "confidence": decision.confidence, "threshold": threshold}},
        )
        return None

    return await learned_store.save_item(
        tenant_id,
        LearnedKind(decision.action.value),
        title=decision.title or question[:80],
        content=decision.content or admin_answer,
        triggers=decision.triggers or [question[:60]],
        source_question=question,
        source_answer=admin_answer,
        confidence=decision.confidence,
        intent_id=decision.intent_id,
        created_by=created_by,
    )


async def process_correction(
    learned_store: LearnedStore,
    chain: FallbackChain,
    tenant: TenantConfig,
    question: str,
    bot_answer: str,
    admin_answer: str,
    threshold: float,
    user_id: str = "",
    admin_username: str = "auto",
) -> Optional[LearnedItem]:
    """Background job behind every recorded admin correction."""
    question = (question or "").strip()
    admin_answer = (admin_answer or "").strip()
    if len(question) < MIN_QUESTION_LENGTH or len(admin_answer) < MIN_ANSWER_LENGTH:
        logger.info("Correction too short to learn from", extra={"context": {"tenant_id": tenant.tenant_id}})
        return None

    await learned_store.track_miss(tenant.tenant_id, question)
    await learned_store.log_qa(
        tenant.tenant_id,
        question,
        bot_answer or "",
        user_id=user_id,
        review_status=QAReviewStatus.REJECTED,
    )

    existing = [item.title for item in await learned_store.get_items(tenant.tenant_id, LearnedKind.INTENT)]
    decision = await analyze_correction(chain, tenant, question, bot_answer, admin_answer, existing)
    if decision is None:
        return None

    return await apply_correction(
        learned_store,
        tenant.tenant_id,
        decision,
        threshold,
        question,
        admin_answer,
        created_by=admin_username,
    )
