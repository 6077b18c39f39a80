"""Per-event decision pipeline.

Gates run in a fixed order, each short-circuiting the rest:
idempotency, rate limit, business hours, tenant bot switch, conversation bot switch.
A bot message is stored only after the channel confirmed the send.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from replyflow.config import Settings, settings
from replyflow.logging_config import bind_logger, get_logger
from replyflow.schemas.conversation import Conversation, Message, MessageRole
from replyflow.schemas.events import EventKind, InboundEvent
from replyflow.schemas.learned import LearnedData, LearnedKind
from replyflow.schemas.resolver import HistoryItem, ResolverResult
from replyflow.schemas.tenant import TenantConfig
from replyflow.services import state_service
from replyflow.services.alert_service import alert_error, alert_warning
from replyflow.services.background import BackgroundDispatcher
from replyflow.services.business_hours import check_business_hours, get_business_hours
from replyflow.services.channels.base import ChannelAdapter
from replyflow.services.conversation_store import ConversationStore, new_message
from replyflow.services.crm_service import extract_crm_profile, should_extract
from replyflow.services.fallback_chain import (
    FallbackChain,
    UsageRecorder,
    build_history_messages,
    build_provider_slots,
    build_system_prompt,
)
from replyflow.services.guard_service import IdempotencyResult, check_idempotency, is_rate_limited
from replyflow.services.learned_store import LearnedStore
from replyflow.services.resolver import (
    DeferringResolver,
    HttpPipelineResolver,
    PipelineResolver,
    deferred_result,
    is_deferred,
)
from replyflow.services.result import Result
from replyflow.services.state_machine import ConversationState
from replyflow.services.tenant_service import effective
from replyflow.services.timeutils import now_ms
from replyflow.services.usage_ledger import UsageLedger

logger = get_logger("orchestrator")

CRM_EXTRACTION_COOLDOWN_SECONDS = 600
FALLBACK_LAYER_NAME = "ai_fallback"
DEFAULT_MESSAGE_LAYER_NAME = "default_message"


class TurnStatus(str, Enum):
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    IGNORED = "ignored"
    STORED_ONLY = "stored_only"
    OFFLINE = "offline"
    GLOBAL_BOT_OFF = "global_bot_off"
    BOT_DISABLED = "bot_disabled"
    WELCOMED = "welcomed"
    REPLIED = "replied"
    ESCALATED = "escalated"
    AUTO_PINNED = "auto_pinned"
    SEND_FAILED = "send_failed"


@dataclass
class TurnOutcome:
    status: TurnStatus
    reply_text: Optional[str] = None
    final_layer: Optional[int] = None
    state: Optional[str] = None
    used_fallback: bool = False
    carousel_product_ids: Optional[list[int]] = None


class Orchestrator:
    def __init__(
        self,
        redis_client,
        dispatcher: BackgroundDispatcher,
        config: Settings = settings,
        resolver_factory: Optional[Callable[[TenantConfig], PipelineResolver]] = None,
        chain_factory: Optional[Callable[[TenantConfig], FallbackChain]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.redis = redis_client
        self.dispatcher = dispatcher
        self.config = config
        self.store = ConversationStore(redis_client, config)
        self.learned_store = LearnedStore(redis_client, config)
        self.ledger = UsageLedger(redis_client, config)
        self.resolver_factory = resolver_factory or self._default_resolver
        self.chain_factory = chain_factory or self._default_chain
        self.clock = clock

    # Collaborators

    def _default_resolver(self, tenant: TenantConfig) -> PipelineResolver:
        if tenant.resolver_url:
            return HttpPipelineResolver(tenant.resolver_url, self.config.resolver_timeout_seconds)
        return DeferringResolver(effective(tenant, "deferred_layer_threshold", self.config))

    def _default_chain(self, tenant: TenantConfig) -> FallbackChain:
        order = tenant.provider_order or self.config.default_provider_order
        return FallbackChain(
            build_provider_slots(order, self.config),
            usage_recorder=self.usage_recorder(tenant.tenant_id),
            timeout_seconds=self.config.provider_timeout_seconds,
        )

    def usage_recorder(self, tenant_id: str) -> UsageRecorder:
        """Usage telemetry is written in the background, never on the reply path."""

        def record(usage) -> None:
            self.dispatcher.dispatch(
                self.ledger.log_usage(tenant_id, usage),
                name="usage_log",
                context={"tenant_id": tenant_id, "call_site": usage.call_site},
            )

        return record

    # Entry point

    async def handle_event(self, event: InboundEvent, tenant: TenantConfig, adapter: ChannelAdapter) -> TurnOutcome:
        log = bind_logger(logger, tenant.tenant_id, event.external_user_id, delivery_token=event.delivery_token)
        deadline = time.monotonic() + self.config.reply_budget_seconds
        tenant_id, user_id = tenant.tenant_id, event.external_user_id

        idempotency = await check_idempotency(self.redis, tenant_id, event.delivery_token, self.config.dedup_ttl_seconds)
        if idempotency == IdempotencyResult.DUPLICATE:
            log.info("Duplicate delivery suppressed")
            await self.store.incr_daily_counter(tenant_id, "duplicate")
            return TurnOutcome(TurnStatus.DUPLICATE)

        if await is_rate_limited(
            self.redis,
            tenant_id,
            user_id,
            effective(tenant, "rate_limit_messages", self.config),
            effective(tenant, "rate_limit_window_seconds", self.config),
        ):
            log.info("Rate limited, event dropped")
            await self.store.incr_daily_counter(tenant_id, "rate_limited")
            return TurnOutcome(TurnStatus.RATE_LIMITED)

        conversation = await self._load_conversation(event, adapter)

        if event.kind == EventKind.FOLLOW:
            return await self._welcome(event, tenant, adapter, conversation, log)

        if event.kind == EventKind.POSTBACK:
            await self.store.add_message(
                tenant_id,
                user_id,
                new_message(MessageRole.CUSTOMER, event.text or event.postback_data or "[postback]"),
            )
            return await self._welcome(event, tenant, adapter, conversation, log)

        if event.kind == EventKind.IMAGE:
            await self.store.add_message(
                tenant_id, user_id, new_message(MessageRole.CUSTOMER, "", image_url=event.attachment_url)
            )
            await self.store.incr_daily_counter(tenant_id, "inbound")
            log.info("Image stored for admin review")
            return TurnOutcome(TurnStatus.STORED_ONLY, state=conversation.state)

        text = (event.text or "").strip()
        if not text:
            return TurnOutcome(TurnStatus.IGNORED)

        previous_message_at = conversation.last_message_at
        customer_message = await self.store.add_message(tenant_id, user_id, new_message(MessageRole.CUSTOMER, text))
        await self.store.incr_daily_counter(tenant_id, "inbound")

        if not conversation.bot_enabled and tenant.matches_cancel_phrase(text):
            cancelled = await state_service.cancel_escalation(self.store, conversation)
            if cancelled.ok:
                conversation = self._with_control(conversation, cancelled.value)

        hours = await get_business_hours(self.store, tenant_id, tenant.business_hours)
        hours_status = check_business_hours(hours, self.clock())
        off_hours_note = None
        if not hours_status.is_open:
            if hours.off_hours_mode == "offline":
                log.info("Outside business hours, sending offline message")
                sent = await self._deliver(event, adapter, hours.off_hours_message, None, "off_hours", log)
                status = TurnStatus.OFFLINE if sent.ok else TurnStatus.SEND_FAILED
                return TurnOutcome(status, reply_text=hours.off_hours_message, state=conversation.state)
            off_hours_note = hours.off_hours_message

        if not await self.store.get_global_bot_enabled(tenant_id):
            log.info("Tenant bot switched off")
            return TurnOutcome(TurnStatus.GLOBAL_BOT_OFF, state=conversation.state)

        if not conversation.bot_enabled:
            log.info("Conversation bot disabled, leaving for admin")
            return TurnOutcome(TurnStatus.BOT_DISABLED, state=conversation.state)

        typing = getattr(adapter, "send_typing", None)
        if typing is not None:
            self.dispatcher.dispatch(typing(user_id), name="typing_indicator", context={"tenant_id": tenant_id})

        history = [
            message
            for message in await self.store.get_messages(tenant_id, user_id, limit=self.config.history_window + 1)
            if message.id != customer_message.id
        ][-self.config.history_window :]
        threshold = effective(tenant, "deferred_layer_threshold", self.config)
        result = await self._resolve(text, history, tenant, threshold, log)

        if result.is_admin_escalation:
            return await self._escalate(event, tenant, adapter, conversation, text, result, log)

        if result.is_cancel_escalation and conversation.pinned:
            await self.store.unpin_conversation(tenant_id, user_id)

        if is_deferred(result, threshold):
            self.dispatcher.dispatch(
                self.learned_store.track_miss(tenant_id, text),
                name="track_miss",
                context={"tenant_id": tenant_id},
            )

            gap_ms = now_ms() - previous_message_at if previous_message_at else 0
            returning_gap_ms = effective(tenant, "returning_gap_seconds", self.config) * 1000
            if previous_message_at and gap_ms > returning_gap_ms:
                pinned = await state_service.auto_pin(self.store, conversation, gap_ms)
                if pinned.ok:
                    sent = await self._deliver(
                        event, adapter, tenant.auto_pin_ack_message, result.trace.final_layer, "auto_pin_ack", log
                    )
                    status = TurnStatus.AUTO_PINNED if sent.ok else TurnStatus.SEND_FAILED
                    return TurnOutcome(
                        status,
                        reply_text=tenant.auto_pin_ack_message,
                        final_layer=result.trace.final_layer,
                        state=ConversationState.AUTO_PINNED.value,
                    )

            chain = self.chain_factory(tenant)
            chain_result = await chain.reply(
                text,
                build_history_messages(history, self.config.history_window),
                build_system_prompt(tenant.system_prompt, off_hours_note),
                tenant.default_fallback_message,
                call_site=f"{event.channel.value}_reply",
                deadline=deadline,
                user_id=user_id,
            )
            await self.store.incr_daily_counter(tenant_id, "fallback")
            reply_text = chain_result.text
            layer_name = DEFAULT_MESSAGE_LAYER_NAME if chain_result.used_default else FALLBACK_LAYER_NAME
            used_fallback = True
        else:
            reply_text = result.content or tenant.default_fallback_message
            layer_name = result.trace.final_layer_name
            used_fallback = False
            self._count_learned_hits(tenant_id, result)

        sent = await self._deliver(event, adapter, reply_text, result.trace.final_layer, layer_name, log)
        if not sent.ok:
            return TurnOutcome(
                TurnStatus.SEND_FAILED, reply_text=reply_text, final_layer=result.trace.final_layer, used_fallback=used_fallback
            )

        await self.store.incr_daily_counter(tenant_id, "replied")
        self.dispatcher.dispatch(
            self.learned_store.log_qa(
                tenant_id,
                text,
                reply_text,
                user_id=user_id,
                layer=result.trace.final_layer,
                layer_name=layer_name,
            ),
            name="qa_log",
            context={"tenant_id": tenant_id},
        )
        await self._maybe_extract_crm(tenant, user_id, [*history, customer_message])

        return TurnOutcome(
            TurnStatus.REPLIED,
            reply_text=reply_text,
            final_layer=result.trace.final_layer,
            state=conversation.state,
            used_fallback=used_fallback,
            carousel_product_ids=result.carousel_product_ids,
        )

    async def handle_events(
        self, events: list[InboundEvent], tenant: TenantConfig, adapter: ChannelAdapter
    ) -> list[Optional[TurnOutcome]]:
        """Process one webhook delivery. A failing event never stops the others; its slot is None."""
        outcomes: list[Optional[TurnOutcome]] = []
        for event in events:
            try:
                outcomes.append(await self.handle_event(event, tenant, adapter))
            except Exception as exc:
                context = {
                    "tenant_id": tenant.tenant_id,
                    "user_id": event.external_user_id,
                    "channel": event.channel.value,
                    "error": str(exc) or type(exc).__name__,
                }
                logger.error("Event processing failed", extra={"context": context}, exc_info=True)
                self.dispatcher.dispatch(alert_error("Event processing failed", context), name="ops_alert")
                outcomes.append(None)
        return outcomes

    # Steps

    async def _load_conversation(self, event: InboundEvent, adapter: ChannelAdapter) -> Conversation:
        """Get-or-create; the channel profile is only fetched when we have no name yet."""
        tenant_id, user_id = event.tenant_id, event.external_user_id
        existing = await self.store.get_conversation(tenant_id, user_id)
        display_name, picture_url = "", None

        if existing is None or not existing.display_name or existing.display_name == user_id:
            try:
                profile = await asyncio.wait_for(
                    adapter.fetch_profile(user_id), timeout=self.config.channel_timeout_seconds * 2
                )
            except asyncio.TimeoutError:
                profile = None
            if profile is not None:
                display_name, picture_url = profile.display_name, profile.picture_url

        return await self.store.get_or_create_conversation(
            tenant_id, user_id, display_name=display_name, picture_url=picture_url, source=event.channel
        )

    async def _resolve(self, text: str, history: list[Message], tenant: TenantConfig, threshold: int, log) -> ResolverResult:
        """A resolver that fails or times out is treated as having deferred."""
        try:
            learned = await self.learned_store.get_enabled_learned_data(tenant.tenant_id)
        except Exception as exc:
            log.warning("Learned data unavailable", context={"error": str(exc)})
            learned = LearnedData()

        history_items = [
            HistoryItem(role=message.role.value, content=message.content)
            for message in history
            if message.role != MessageRole.SYSTEM and message.content
        ]
        resolver = self.resolver_factory(tenant)
        try:
            return await asyncio.wait_for(
                resolver.resolve(text, history_items, tenant, learned),
                timeout=self.config.resolver_timeout_seconds,
            )
        except Exception as exc:
            log.warning("Resolver failed, deferring to AI fallback", context={"error": str(exc) or type(exc).__name__})
            return deferred_result(threshold)

    async def _deliver(
        self,
        event: InboundEvent,
        adapter: ChannelAdapter,
        text: str,
        layer: Optional[int],
        layer_name: Optional[str],
        log,
    ) -> Result[dict]:
        """Send, then store the bot message only if the channel accepted it."""
        try:
            sent = await asyncio.wait_for(adapter.reply(event, text), timeout=self.config.channel_timeout_seconds)
        except Exception as exc:
            sent = Result.failure(str(exc) or type(exc).__name__, "timeout")

        if not sent.ok:
            log.error("Reply not delivered", context={"error": sent.error, "error_code": sent.error_code})
            await self.store.incr_daily_counter(event.tenant_id, "send_failed")
            self.dispatcher.dispatch(
                alert_warning(
                    "Channel rejected a reply",
                    {"tenant_id": event.tenant_id, "channel": event.channel.value, "error": sent.error},
                ),
                name="ops_alert",
            )
            return sent

        await self.store.add_message(
            event.tenant_id,
            event.external_user_id,
            new_message(MessageRole.BOT, text, pipeline_layer=layer, pipeline_layer_name=layer_name),
        )
        return sent

    async def _welcome(
        self,
        event: InboundEvent,
        tenant: TenantConfig,
        adapter: ChannelAdapter,
        conversation: Conversation,
        log,
    ) -> TurnOutcome:
        if not await self.store.get_global_bot_enabled(tenant.tenant_id):
            return TurnOutcome(TurnStatus.GLOBAL_BOT_OFF, state=conversation.state)
        if not conversation.bot_enabled:
            return TurnOutcome(TurnStatus.BOT_DISABLED, state=conversation.state)
        sent = await self._deliver(event, adapter, tenant.welcome_message, None, "welcome", log)
        status = TurnStatus.WELCOMED if sent.ok else TurnStatus.SEND_FAILED
        return TurnOutcome(status, reply_text=tenant.welcome_message, state=conversation.state)

    async def _escalate(
        self,
        event: InboundEvent,
        tenant: TenantConfig,
        adapter: ChannelAdapter,
        conversation: Conversation,
        text: str,
        result: ResolverResult,
        log,
    ) -> TurnOutcome:
        escalated = await state_service.escalate_conversation(self.store, tenant, conversation, text)
        if not escalated.ok:
            log.warning("Escalation rejected", context={"error": escalated.error})

        reply_text = result.content or tenant.auto_pin_ack_message
        sent = await self._deliver(event, adapter, reply_text, result.trace.final_layer, "escalation", log)
        return TurnOutcome(
            TurnStatus.ESCALATED if sent.ok else TurnStatus.SEND_FAILED,
            reply_text=reply_text,
            final_layer=result.trace.final_layer,
            state=ConversationState.ESCALATED.value,
        )

    def _count_learned_hits(self, tenant_id: str, result: ResolverResult) -> None:
        """Resolver steps that used a learned entity carry learned_kind and learned_id."""
        for step in result.trace.steps:
            kind, item_id = step.get("learned_kind"), step.get("learned_id")
            if not kind or not item_id:
                continue
            try:
                learned_kind = LearnedKind(kind)
            except ValueError:
                continue
            self.dispatcher.dispatch(
                self.learned_store.increment_hit(tenant_id, learned_kind, str(item_id)),
                name="learned_hit",
                context={"tenant_id": tenant_id, "id": item_id},
            )

    async def _maybe_extract_crm(self, tenant: TenantConfig, user_id: str, messages: list[Message]) -> None:
        if not should_extract(messages, self.config.crm_min_customer_messages):
            return
        try:
            claimed = await self.redis.set(
                f"crmextract:{tenant.tenant_id}:{user_id}", "1", ex=CRM_EXTRACTION_COOLDOWN_SECONDS, nx=True
            )
        except Exception as exc:
            logger.warning("CRM extraction cooldown unavailable", extra={"context": {"error": str(exc)}})
            return
        if not claimed:
            return
        self.dispatcher.dispatch(
            extract_crm_profile(
                self.store,
                self.chain_factory(tenant),
                tenant.tenant_id,
                user_id,
                self.config.crm_min_customer_messages,
            ),
            name="crm_extract",
            context={"tenant_id": tenant.tenant_id, "user_id": user_id},
        )

    @staticmethod
    def _with_control(conversation: Conversation, control) -> Conversation:
        return conversation.model_copy(update=control.as_fields())
