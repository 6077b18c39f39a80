from typing import Optional

from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import Conversation, FollowUp, Message, MessageRole
from replyflow.services.conversation_store import ConversationStore
from replyflow.services.fallback_chain import FallbackChain
from replyflow.services.learning_service import extract_json_object
from replyflow.services.timeutils import now_ms

logger = get_logger("followup_service")

HOUR_MS = 3_600_000
ANALYSIS_WINDOW = 20
MIN_IDLE_MS = HOUR_MS

PURCHASE_KEYWORDS = ("ราคา", "ซื้อ", "สั่ง", "จ่าย", "โอน", "สนใจ", "price", "buy", "order", "pay")
SUPPORT_KEYWORDS = ("ซ่อม", "เคลม", "เสีย", "ปัญหา", "repair", "broken", "warranty", "refund")

PRIORITIES = {"high", "medium", "low"}
CATEGORIES = {"unanswered", "purchase_intent", "support_pending", "cold_lead", "completed"}

ANALYSIS_SYSTEM_PROMPT = "You review customer service chats and decide whether a human should follow up. Respond with raw JSON only."


def build_analysis_prompt(messages: list[Message], conversation: Conversation, business_name: str, now: int) -> str:
    labels = {MessageRole.CUSTOMER: "Customer", MessageRole.BOT: "Bot", MessageRole.ADMIN: "Admin"}
    transcript = "\n".join(
        f"[{labels[message.role]}] {message.content}"
        for message in messages[-ANALYSIS_WINDOW:]
        if message.role in labels
    )
    hours = round((now - conversation.last_message_at) / HOUR_MS)
    last_role = conversation.last_message_role.value if conversation.last_message_role else "unknown"
    return f"""Business: {business_name}
Customer: {conversation.display_name}
Last message from: {last_role}
Hours since last message: {hours}

=== Conversation ===
{transcript}
=== End ===

Return JSON:
{{
  "needsFollowup": true or false,
  "reason": "short reason",
  "suggestedMessage": "polite follow-up message to send",
  "priority": "high" | "medium" | "low",
  "category": "unanswered" | "purchase_intent" | "support_pending" | "cold_lead" | "completed"
}}

unanswered: the customer asked and got no useful answer (high)
purchase_intent: interested in buying but not closed (high)
support_pending: an unresolved problem or repair (high)
cold_lead: idle for over 24 hours after showing interest (medium)
completed: nothing left to do (needsFollowup false)"""


def parse_followup(text: str, conversation: Conversation, now: int) -> Optional[FollowUp]:
    data = extract_json_object(text)
    if data is None:
        return None
    priority = data.get("priority") if data.get("priority") in PRIORITIES else "medium"
    category = data.get("category") if data.get("category") in CATEGORIES else "cold_lead"
    return FollowUp(
        user_id=conversation.user_id,
        needs_followup=bool(data.get("needsFollowup")),
        reason=str(data.get("reason") or ""),
        suggested_message=str(data.get("suggestedMessage") or ""),
        priority=priority,
        category=category,
        display_name=conversation.display_name,
        last_message_at=conversation.last_message_at,
        analyzed_at=now,
    )


def _customer_mentions(messages: list[Message], keywords: tuple[str, ...]) -> bool:
    return any(
        message.role == MessageRole.CUSTOMER and any(keyword in message.content.lower() for keyword in keywords)
        for message in messages
    )


def rule_based_followup(messages: list[Message], conversation: Conversation, business_name: str, now: int) -> FollowUp:
    hours = (now - conversation.last_message_at) / HOUR_MS
    last = messages[-1] if messages else None
    common = {
        "user_id": conversation.user_id,
        "display_name": conversation.display_name,
        "last_message_at": conversation.last_message_at,
        "analyzed_at": now,
    }

    if conversation.last_message_role == MessageRole.CUSTOMER and hours > 1:
        return FollowUp(
            needs_followup=True,
            reason=f"Customer has been waiting {round(hours)}h without a reply",
            suggested_message="Sorry for the late reply! Is there anything else we can help you with?",
            priority="high" if hours > 24 else "medium",
            category="unanswered",
            **common,
        )
    if _customer_mentions(messages, PURCHASE_KEYWORDS) and hours > 24:
        return FollowUp(
            needs_followup=True,
            reason="Customer showed purchase interest but went quiet for over 24h",
            suggested_message="Hi! Are you still interested? We'd be happy to help you complete your order.",
            priority="high",
            category="purchase_intent",
            **common,
        )
    if _customer_mentions(messages, SUPPORT_KEYWORDS) and hours > 4 and conversation.last_message_role != MessageRole.ADMIN:
        return FollowUp(
            needs_followup=True,
            reason="Customer reported a problem that no admin has handled yet",
            suggested_message="Sorry for the trouble. Our team will contact you shortly to sort this out.",
            priority="high",
            category="support_pending",
            **common,
        )
    if hours > 48 and (last is None or last.role != MessageRole.ADMIN):
        return FollowUp(
            needs_followup=True,
            reason=f"Conversation idle for {round(hours)}h",
            suggested_message=f"Hi from {business_name}! Is there anything else we can help you with?",
            priority="low",
            category="cold_lead",
            **common,
        )
    return FollowUp(needs_followup=False, reason="No follow-up needed", priority="low", category="completed", **common)


async def analyze_conversation(
    chain: Optional[FallbackChain],
    conversation: Conversation,
    messages: list[Message],
    business_name: str,
    now: Optional[int] = None,
) -> FollowUp:
    """LLM analysis first, rule-based when no provider answers."""
    now = now or now_ms()
    if not messages:
        return FollowUp(
            user_id=conversation.user_id,
            needs_followup=False,
            reason="No messages",
            priority="low",
            category="completed",
            display_name=conversation.display_name,
            last_message_at=conversation.last_message_at,
            analyzed_at=now,
        )

    if chain is not None and chain.slots:
        result = await chain.first_success(
            build_analysis_prompt(messages, conversation, business_name, now),
            [],
            ANALYSIS_SYSTEM_PROMPT,
            call_site="followup",
            temperature=0.3,
            max_tokens=512,
            json_mode=True,
            user_id=conversation.user_id,
        )
        if result is not None:
            parsed = parse_followup(result.text, conversation, now)
            if parsed is not None:
                return parsed

    return rule_based_followup(messages, conversation, business_name, now)


async def run_followup_scan(
    store: ConversationStore,
    chain: Optional[FallbackChain],
    tenant_id: str,
    business_name: str,
    limit: int = 50,
) -> int:
    """Analyze recent idle conversations and store those that need a follow-up."""
    now = now_ms()
    flagged = 0
    for conversation in await store.list_conversations(tenant_id, limit=limit):
        if now - conversation.last_message_at < MIN_IDLE_MS:
            continue
        messages = await store.get_messages(tenant_id, conversation.user_id, limit=ANALYSIS_WINDOW)
        followup = await analyze_conversation(chain, conversation, messages, business_name, now)
        if followup.needs_followup:
            await store.set_followup(tenant_id, followup)
            flagged += 1
        else:
            await store.clear_followup(tenant_id, conversation.user_id)

    logger.info("Follow-up scan finished", extra={"context": {"tenant_id": tenant_id, "flagged": flagged}})
    return flagged
