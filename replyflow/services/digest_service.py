from typing import Optional

from replyflow.config import Settings, settings
from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import MessageRole
from replyflow.services.conversation_store import ConversationStore
from replyflow.services.fallback_chain import FallbackChain
from replyflow.services.learned_store import LearnedStore
from replyflow.services.timeutils import local_date, local_day_bounds, now_ms
from replyflow.services.usage_ledger import UsageLedger

logger = get_logger("digest_service")

TOP_MISSES = 10
SUMMARY_WINDOW = 40

SUMMARY_SYSTEM_PROMPT = (
    "Summarize this customer service conversation for a human agent in 3-5 short bullet points: "
    "what the customer wants, what was answered, and what is still open."
)


async def build_daily_digest(
    store: ConversationStore,
    learned_store: LearnedStore,
    ledger: UsageLedger,
    tenant_id: str,
    date: Optional[str] = None,
    config: Settings = settings,
    force: bool = False,
) -> dict:
    """Daily roll-up for the dashboard, cached for `digest_ttl_seconds`."""
    today = local_date(config.usage_timezone)
    date = date or today

    if not force:
        cached = await store.get_cached_digest(tenant_id, date)
        if cached is not None:
            return cached

    counters = await store.get_daily_counters(tenant_id, date)
    usage = await ledger.get_usage_for_date(tenant_id, date)
    misses = await learned_store.get_top_misses(tenant_id, limit=TOP_MISSES)
    followups = await store.get_followups(tenant_id)
    day_start, day_end = local_day_bounds(config.usage_timezone, date)
    admin_stats = await store.get_admin_stats(tenant_id, since=day_start, until=day_end - 1)

    digest = {
        "tenant_id": tenant_id,
        "date": date,
        "generated_at": now_ms(),
        "counters": counters,
        "usage": usage.model_dump(),
        "top_misses": [miss.model_dump() for miss in misses],
        "pending_followups": len(followups),
        "admins": [item.model_dump() for item in admin_stats],
        "learned": (await learned_store.get_stats(tenant_id)).model_dump(),
    }
    await store.cache_digest(tenant_id, date, digest)
    logger.info("Daily digest built", extra={"context": {"tenant_id": tenant_id, "date": date}})
    return digest


async def get_chat_summary(
    store: ConversationStore,
    chain: FallbackChain,
    tenant_id: str,
    user_id: str,
    refresh: bool = False,
) -> Optional[dict]:
    """Cached LLM summary of one conversation; rebuilt when new messages arrived."""
    conversation = await store.get_conversation(tenant_id, user_id)
    if conversation is None:
        return None

    cached = await store.get_chat_summary(tenant_id, user_id)
    if cached and not refresh and cached.get("last_message_at") == conversation.last_message_at:
        return cached

    messages = await store.get_messages(tenant_id, user_id, limit=SUMMARY_WINDOW)
    transcript = "\n".join(
        f"[{message.role.value}] {message.content}"
        for message in messages
        if message.role != MessageRole.SYSTEM and message.content
    )
    if not transcript:
        return None

    result = await chain.first_success(
        transcript, [], SUMMARY_SYSTEM_PROMPT, call_site="chat_summary", temperature=0.3, max_tokens=400, user_id=user_id
    )
    if result is None:
        return cached

    summary = {
        "summary": result.text,
        "last_message_at": conversation.last_message_at,
        "generated_at": now_ms(),
        "model": result.model,
    }
    await store.save_chat_summary(tenant_id, user_id, summary)
    return summary
