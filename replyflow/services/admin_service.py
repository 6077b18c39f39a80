"""Admin-initiated actions. Every mutation is written to the activity log."""

from typing import Callable, Optional

from replyflow.config import Settings, settings
from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import AdminAction, CRMProfile, Message, MessageRole
from replyflow.schemas.learned import LearnedItem, QAReviewStatus
from replyflow.schemas.tenant import BusinessHoursConfig, TenantConfig
from replyflow.services import state_service
from replyflow.services.background import BackgroundDispatcher
from replyflow.services.channels.base import ChannelAdapter
from replyflow.services.conversation_store import ConversationStore, new_message
from replyflow.services.crm_service import apply_manual_update
from replyflow.services.fallback_chain import FallbackChain
from replyflow.services.learned_store import LearnedStore
from replyflow.services.learning_service import process_correction
from replyflow.services.result import Result
from replyflow.services.state_machine import ControlState
from replyflow.services.tenant_service import effective

logger = get_logger("admin_service")

DETAIL_PREVIEW = 200


class AdminService:
    def __init__(
        self,
        store: ConversationStore,
        learned_store: LearnedStore,
        dispatcher: BackgroundDispatcher,
        chain_factory: Callable[[TenantConfig], FallbackChain],
        config: Settings = settings,
    ):
        self.store = store
        self.learned_store = learned_store
        self.dispatcher = dispatcher
        self.chain_factory = chain_factory
        self.config = config

    async def _log(self, tenant_id: str, username: str, action: AdminAction, user_id: Optional[str] = None, detail: str = ""):
        await self.store.log_admin_activity(tenant_id, username, action, user_id=user_id, detail=detail[:DETAIL_PREVIEW])

    # Messaging

    async def send(
        self,
        tenant: TenantConfig,
        adapter: ChannelAdapter,
        user_id: str,
        username: str,
        text: str = "",
        image_url: Optional[str] = None,
        correction_of: Optional[str] = None,
        action: Optional[AdminAction] = None,
    ) -> Result[Message]:
        """Push an admin message. It is stored only once the channel confirms delivery.

        A successful send switches the bot off for the conversation. When
        `correction_of` names a bot message, the correction feeds the learning loop.
        """
        tenant_id = tenant.tenant_id
        conversation = await self.store.get_conversation(tenant_id, user_id)
        if conversation is None:
            return Result.failure("Conversation not found", "not_found")

        sent = await adapter.push(user_id, text, image_url)
        if not sent.ok:
            logger.warning(
                "Admin message not delivered",
                extra={"context": {"tenant_id": tenant_id, "user_id": user_id, "error": sent.error}},
            )
            return Result.failure(sent.error or "Send failed", "send_failed", **sent.details)

        message = await self.store.add_message(
            tenant_id,
            user_id,
            new_message(MessageRole.ADMIN, text, image_url=image_url, sent_by=username),
        )
        await state_service.admin_takeover(self.store, tenant_id, user_id)
        await self.store.clear_followup(tenant_id, user_id)
        await self._log(
            tenant_id,
            username,
            action or (AdminAction.SEND_MEDIA if image_url else AdminAction.SEND),
            user_id,
            text or image_url or "",
        )

        if correction_of and text:
            await self.trigger_learning(tenant, user_id, username, correction_of, text)
        return Result.success(message)

    async def _find_correction_pair(self, tenant_id: str, user_id: str, bot_message_id: str) -> Optional[tuple[str, str]]:
        """The corrected bot message and the customer question right before it."""
        messages = await self.store.get_messages(tenant_id, user_id)
        for index, message in enumerate(messages):
            if message.id != bot_message_id:
                continue
            question = next(
                (m.content for m in reversed(messages[:index]) if m.role == MessageRole.CUSTOMER and m.content),
                None,
            )
            if question is None:
                return None
            return question, message.content
        return None

    async def trigger_learning(
        self, tenant: TenantConfig, user_id: str, username: str, bot_message_id: str, admin_answer: str
    ) -> bool:
        pair = await self._find_correction_pair(tenant.tenant_id, user_id, bot_message_id)
        if pair is None:
            logger.info(
                "Correction target not found",
                extra={"context": {"tenant_id": tenant.tenant_id, "message_id": bot_message_id}},
            )
            return False
        question, bot_answer = pair
        return await self.record_correction(tenant, username, question, bot_answer, admin_answer, user_id)

    async def record_correction(
        self,
        tenant: TenantConfig,
        username: str,
        question: str,
        bot_answer: str,
        admin_answer: str,
        user_id: str = "",
    ) -> bool:
        await self._log(tenant.tenant_id, username, AdminAction.RECORD_CORRECTION, user_id or None, question)
        self.dispatcher.dispatch(
            process_correction(
                self.learned_store,
                self.chain_factory(tenant),
                tenant,
                question,
                bot_answer,
                admin_answer,
                effective(tenant, "learning_confidence_threshold", self.config),
                user_id=user_id,
                admin_username=username,
            ),
            name="learn_from_correction",
            context={"tenant_id": tenant.tenant_id, "user_id": user_id},
        )
        return True

    # Conversation control

    async def toggle_bot(self, tenant_id: str, user_id: str, username: str, enabled: bool) -> Result[ControlState]:
        if await self.store.get_conversation(tenant_id, user_id) is None:
            return Result.failure("Conversation not found", "not_found")
        control = await self.store.toggle_bot(tenant_id, user_id, enabled)
        await self._log(tenant_id, username, AdminAction.TOGGLE_BOT, user_id, "on" if enabled else "off")
        return Result.success(control)

    async def pin(self, tenant_id: str, user_id: str, username: str, reason: Optional[str] = None) -> Result[ControlState]:
        if await self.store.get_conversation(tenant_id, user_id) is None:
            return Result.failure("Conversation not found", "not_found")
        control = await self.store.pin_conversation(tenant_id, user_id, reason)
        await self._log(tenant_id, username, AdminAction.PIN, user_id, reason or "")
        return Result.success(control)

    async def unpin(self, tenant_id: str, user_id: str, username: str) -> Result[ControlState]:
        if await self.store.get_conversation(tenant_id, user_id) is None:
            return Result.failure("Conversation not found", "not_found")
        control = await self.store.unpin_conversation(tenant_id, user_id)
        await self._log(tenant_id, username, AdminAction.UNPIN, user_id)
        return Result.success(control)

    async def assign(self, tenant_id: str, user_id: str, username: str, admin: Optional[str]) -> Result[None]:
        if await self.store.get_conversation(tenant_id, user_id) is None:
            return Result.failure("Conversation not found", "not_found")
        if admin:
            await self.store.assign(tenant_id, user_id, admin)
            await self._log(tenant_id, username, AdminAction.ASSIGN, user_id, admin)
        else:
            await self.store.unassign(tenant_id, user_id)
            await self._log(tenant_id, username, AdminAction.UNASSIGN, user_id)
        return Result.success()

    async def delete_conversation(self, tenant_id: str, user_id: str, username: str) -> Result[None]:
        if not await self.store.delete_conversation(tenant_id, user_id):
            return Result.failure("Conversation not found", "not_found")
        await self._log(tenant_id, username, AdminAction.DELETE_CONVERSATION, user_id)
        return Result.success()

    # Tenant-wide settings

    async def set_global_bot(self, tenant_id: str, username: str, enabled: bool) -> None:
        await self.store.set_global_bot_enabled(tenant_id, enabled)
        await self._log(tenant_id, username, AdminAction.GLOBAL_TOGGLE_BOT, detail="on" if enabled else "off")

    async def update_business_hours(self, tenant_id: str, username: str, hours: BusinessHoursConfig) -> BusinessHoursConfig:
        await self.store.set_business_hours_raw(tenant_id, hours.model_dump())
        await self._log(tenant_id, username, AdminAction.UPDATE_BUSINESS_HOURS, detail="enabled" if hours.enabled else "disabled")
        return hours

    # CRM, follow-ups, learned data

    async def save_crm(self, tenant_id: str, user_id: str, username: str, updates: dict) -> CRMProfile:
        existing = await self.store.get_crm_profile(tenant_id, user_id)
        profile = apply_manual_update(existing, updates, tenant_id, user_id, username)
        if not profile.display_name:
            conversation = await self.store.get_conversation(tenant_id, user_id)
            if conversation is not None:
                profile = profile.model_copy(update={"display_name": conversation.display_name})
        await self.store.put_crm_profile(profile)
        await self._log(tenant_id, username, AdminAction.SAVE_CRM, user_id, ", ".join(sorted(updates)))
        return profile

    async def dismiss_followup(self, tenant_id: str, user_id: str, username: str) -> None:
        await self.store.clear_followup(tenant_id, user_id)
        await self._log(tenant_id, username, AdminAction.DISMISS_FOLLOWUP, user_id)

    async def set_learned_enabled(self, tenant_id: str, username: str, item: LearnedItem, enabled: bool) -> bool:
        updated = await self.learned_store.set_enabled(tenant_id, item.kind, item.id, enabled)
        if updated:
            await self._log(tenant_id, username, AdminAction.TOGGLE_LEARNED, detail=f"{item.kind.value}:{item.id}")
        return updated

    async def delete_learned(self, tenant_id: str, username: str, item: LearnedItem) -> bool:
        deleted = await self.learned_store.delete_item(tenant_id, item.kind, item.id)
        if deleted:
            await self._log(tenant_id, username, AdminAction.DELETE_LEARNED, detail=f"{item.kind.value}:{item.id}")
        return deleted

    async def review_qa(self, tenant_id: str, username: str, entry_id: str, status: QAReviewStatus) -> bool:
        updated = await self.learned_store.set_review_status(tenant_id, entry_id, status, reviewed_by=username)
        if updated:
            await self._log(tenant_id, username, AdminAction.REVIEW_QA, detail=f"{entry_id}:{status.value}")
        return updated
