"""Conversation state transitions applied to the store, with their side effects.

The transition functions in state_machine compute the new control fields;
this module persists them in a single HSET and writes the system message.
"""

from typing import Optional

from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import Conversation, MessageRole
from replyflow.schemas.tenant import TenantConfig
from replyflow.services import state_machine
from replyflow.services.conversation_store import ConversationStore, new_message
from replyflow.services.result import Result
from replyflow.services.state_machine import ControlState, InvalidTransitionError
from replyflow.services.telegram_service import TelegramService, format_escalation_notification
from replyflow.services.timeutils import format_gap, now_ms

logger = get_logger("state_service")


async def notify_admin(
    tenant: TenantConfig,
    conversation: Conversation,
    customer_message: str,
    reason: str,
) -> Result[dict]:
    """Best-effort Telegram notification. Never raises."""
    if not tenant.notify_bot_token or not tenant.notify_chat_id:
        logger.warning(
            "Admin notification not configured",
            extra={"context": {"tenant_id": tenant.tenant_id, "user_id": conversation.user_id}},
        )
        return Result.failure("Notification channel not configured", "not_configured")

    text = format_escalation_notification(
        tenant.name or tenant.tenant_id,
        conversation.source.value,
        conversation.display_name,
        conversation.user_id,
        customer_message,
        reason,
    )
    try:
        response = await TelegramService(tenant.notify_bot_token).send_message(tenant.notify_chat_id, text)
    except Exception as exc:
        logger.error(
            "Admin notification failed",
            extra={"context": {"tenant_id": tenant.tenant_id, "user_id": conversation.user_id, "error": str(exc)}},
        )
        return Result.failure(str(exc), "notify_error")

    if not response.get("ok"):
        logger.warning(
            "Admin notification rejected",
            extra={"context": {"tenant_id": tenant.tenant_id, "response": str(response)[:300]}},
        )
        return Result.failure(str(response.get("description") or response.get("error")), "notify_rejected")
    return Result.success(response)


async def _apply(
    store: ConversationStore,
    conversation: Conversation,
    updated: ControlState,
    note: str,
) -> ControlState:
    await store.save_control_state(conversation.tenant_id, conversation.user_id, updated)
    await store.add_message(conversation.tenant_id, conversation.user_id, new_message(MessageRole.SYSTEM, note))
    return updated


async def escalate_conversation(
    store: ConversationStore,
    tenant: TenantConfig,
    conversation: Conversation,
    customer_message: str,
    reason: Optional[str] = None,
) -> Result[ControlState]:
    """NORMAL/AUTO_PINNED -> ESCALATED: pin, disable the bot, notify an admin.

    The notification attempt and its outcome are always recorded in the
    system message, whether or not it reached the admin.
    """
    reason = reason or tenant.escalation_notice
    current = ControlState.from_conversation(conversation)
    try:
        updated = state_machine.escalate(current, reason, now_ms())
    except InvalidTransitionError as e:
        return Result.failure(str(e), "invalid_state")

    await store.save_control_state(conversation.tenant_id, conversation.user_id, updated)
    notified = await notify_admin(tenant, conversation, customer_message, reason)
    outcome = "sent" if notified.ok else f"failed ({notified.error_code})"
    await store.add_message(
        conversation.tenant_id,
        conversation.user_id,
        new_message(MessageRole.SYSTEM, f"Escalated to admin: {reason}. Admin notification {outcome}."),
    )
    await store.incr_daily_counter(conversation.tenant_id, "escalated")

    logger.info(
        "Conversation escalated",
        extra={
            "context": {
                "tenant_id": conversation.tenant_id,
                "user_id": conversation.user_id,
                "notified": notified.ok,
            }
        },
    )
    result = Result.success(updated)
    result.details["notified"] = notified.ok
    return result


async def cancel_escalation(store: ConversationStore, conversation: Conversation) -> Result[ControlState]:
    """Bot-disabled -> NORMAL after a cancel phrase: re-enable the bot and unpin."""
    current = ControlState.from_conversation(conversation)
    try:
        updated = state_machine.cancel_escalation(current)
    except InvalidTransitionError as e:
        return Result.failure(str(e), "invalid_state")

    await _apply(store, conversation, updated, "Customer cancelled the escalation. Bot re-enabled.")
    logger.info(
        "Escalation cancelled",
        extra={"context": {"tenant_id": conversation.tenant_id, "user_id": conversation.user_id}},
    )
    return Result.success(updated)


async def auto_pin(store: ConversationStore, conversation: Conversation, gap_ms: int) -> Result[ControlState]:
    """NORMAL -> AUTO_PINNED for a returning customer whose topic was not recognized."""
    reason = f"Returning customer after {format_gap(gap_ms)}, topic not recognized"
    current = ControlState.from_conversation(conversation)
    try:
        updated = state_machine.auto_pin(current, reason, now_ms())
    except InvalidTransitionError as e:
        return Result.failure(str(e), "invalid_state")

    await _apply(store, conversation, updated, f"Auto-pinned: {reason}.")
    await store.incr_daily_counter(conversation.tenant_id, "auto_pinned")
    logger.info(
        "Conversation auto-pinned",
        extra={"context": {"tenant_id": conversation.tenant_id, "user_id": conversation.user_id, "gap_ms": gap_ms}},
    )
    return Result.success(updated)


async def admin_takeover(store: ConversationStore, tenant_id: str, user_id: str) -> Result[ControlState]:
    """An admin message switches the bot off until someone turns it back on."""
    current = await store.get_control_state(tenant_id, user_id)
    try:
        updated = state_machine.admin_takeover(current)
    except InvalidTransitionError as e:
        return Result.failure(str(e), "invalid_state")
    if updated != current:
        await store.save_control_state(tenant_id, user_id, updated)
    return Result.success(updated)
