"""Conversation, message, follow-up, CRM and admin-activity records in Redis.

A conversation is a Redis hash so every mutation is a field-level HSET or
HINCRBY. There is no whole-record read-modify-write, so concurrent handlers
touching disjoint fields never clobber each other.
"""

import json
from typing import Any, Optional
from uuid import uuid4

from replyflow.config import Settings, settings
from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import (
    AdminAction,
    AdminActivityEntry,
    AdminStats,
    Conversation,
    CRMProfile,
    FollowUp,
    Message,
    MessageRole,
    encode_hash,
)
from replyflow.schemas.events import Channel
from replyflow.services import state_machine
from replyflow.services.state_machine import ControlState
from replyflow.services.timeutils import local_date, now_ms

logger = get_logger("conversation_store")

PREVIEW_LENGTH = 200
DAILY_COUNTER_TTL_SECONDS = 90 * 86400

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def conv_key(tenant_id: str, user_id: str) -> str:
    return f"conv:{tenant_id}:{user_id}"


def conv_index_key(tenant_id: str) -> str:
    return f"convs:{tenant_id}"


def messages_key(tenant_id: str, user_id: str) -> str:
    return f"msgs:{tenant_id}:{user_id}"


def _preview(message: Message) -> str:
    if message.content:
        return message.content[:PREVIEW_LENGTH]
    if message.image_url:
        return "[image]"
    if message.video_url:
        return "[video]"
    if message.file_url:
        return f"[file] {message.file_name or ''}".strip()
    return ""


def new_message(role: MessageRole, content: str, **fields: Any) -> Message:
    return Message(id=uuid4().hex, role=role, content=content, timestamp=now_ms(), **fields)


class ConversationStore:
    def __init__(self, redis_client, config: Settings = settings):
        self.redis = redis_client
        self.config = config

    # Conversations

    async def get_or_create_conversation(
        self,
        tenant_id: str,
        user_id: str,
        display_name: str = "",
        picture_url: Optional[str] = None,
        source: Channel = Channel.LINE,
    ) -> Conversation:
        """Upsert on read. Profile fields are only overwritten by non-empty values that differ."""
        key = conv_key(tenant_id, user_id)
        defaults = encode_hash(
            {
                "created_at": now_ms(),
                "display_name": display_name or user_id,
                "source": source,
                "state": state_machine.ConversationState.NORMAL,
                "bot_enabled": True,
                "pinned": False,
                "unread_count": 0,
                "last_message_at": 0,
            }
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            for field, value in defaults.items():
                pipe.hsetnx(key, field, value)
            pipe.hgetall(key)
            results = await pipe.execute()
        raw = results[-1]

        updates: dict[str, str] = {}
        if display_name and raw.get("display_name") != display_name:
            updates["display_name"] = display_name
        if picture_url and raw.get("picture_url") != picture_url:
            updates["picture_url"] = picture_url
        if updates:
            await self.redis.hset(key, mapping=updates)
            raw.update(updates)

        return Conversation.from_hash(tenant_id, user_id, raw)

    async def get_conversation(self, tenant_id: str, user_id: str) -> Optional[Conversation]:
        raw = await self.redis.hgetall(conv_key(tenant_id, user_id))
        if not raw:
            return None
        return Conversation.from_hash(tenant_id, user_id, raw)

    async def list_conversations(self, tenant_id: str, offset: int = 0, limit: int = 50) -> list[Conversation]:
        """Newest activity first."""
        user_ids = await self.redis.zrevrange(conv_index_key(tenant_id), offset, offset + limit - 1)
        if not user_ids:
            return []
        async with self.redis.pipeline(transaction=False) as pipe:
            for user_id in user_ids:
                pipe.hgetall(conv_key(tenant_id, user_id))
            rows = await pipe.execute()
        return [
            Conversation.from_hash(tenant_id, user_id, raw) for user_id, raw in zip(user_ids, rows) if raw
        ]

    async def count_conversations(self, tenant_id: str) -> int:
        return int(await self.redis.zcard(conv_index_key(tenant_id)))

    async def delete_conversation(self, tenant_id: str, user_id: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(
                conv_key(tenant_id, user_id),
                messages_key(tenant_id, user_id),
                f"followup:{tenant_id}:{user_id}",
                f"crm:{tenant_id}:{user_id}",
                f"chatsummary:{tenant_id}:{user_id}",
            )
            pipe.zrem(conv_index_key(tenant_id), user_id)
            pipe.zrem(f"followups:{tenant_id}", user_id)
            pipe.zrem(f"crms:{tenant_id}", user_id)
            results = await pipe.execute()
        return bool(results[0])

    # Messages

    async def add_message(self, tenant_id: str, user_id: str, message: Message) -> Message:
        """Append, trim to the cap and refresh the summary fields in one MULTI block."""
        key = conv_key(tenant_id, user_id)
        list_key = messages_key(tenant_id, user_id)
        cap = self.config.message_log_cap

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.rpush(list_key, message.model_dump_json(exclude_none=True))
            pipe.ltrim(list_key, -cap, -1)
            if message.role != MessageRole.SYSTEM:
                pipe.hset(
                    key,
                    mapping=encode_hash(
                        {
                            "last_message": _preview(message),
                            "last_message_at": message.timestamp,
                            "last_message_role": message.role,
                        }
                    ),
                )
                pipe.zadd(conv_index_key(tenant_id), {user_id: message.timestamp})
            if message.role == MessageRole.CUSTOMER:
                pipe.hincrby(key, "unread_count", 1)
            await pipe.execute()

        return message

    async def get_messages(self, tenant_id: str, user_id: str, limit: Optional[int] = None) -> list[Message]:
        """Oldest first. With `limit`, only the most recent `limit` messages."""
        start = -limit if limit else 0
        raw_messages = await self.redis.lrange(messages_key(tenant_id, user_id), start, -1)
        messages: list[Message] = []
        for raw in raw_messages:
            try:
                messages.append(Message.model_validate_json(raw))
            except ValueError:
                logger.warning(
                    "Skipping unreadable message",
                    extra={"context": {"tenant_id": tenant_id, "user_id": user_id}},
                )
        return messages

    async def count_messages(self, tenant_id: str, user_id: str) -> int:
        return int(await self.redis.llen(messages_key(tenant_id, user_id)))

    # Control fields

    async def get_control_state(self, tenant_id: str, user_id: str) -> ControlState:
        conversation = await self.get_conversation(tenant_id, user_id)
        if conversation is None:
            return ControlState()
        return ControlState.from_conversation(conversation)

    async def save_control_state(self, tenant_id: str, user_id: str, control: ControlState) -> None:
        await self.redis.hset(conv_key(tenant_id, user_id), mapping=encode_hash(control.as_fields()))

    async def toggle_bot(self, tenant_id: str, user_id: str, enabled: bool) -> ControlState:
        current = await self.get_control_state(tenant_id, user_id)
        updated = state_machine.enable_bot(current) if enabled else state_machine.disable_bot(current)
        await self.save_control_state(tenant_id, user_id, updated)
        return updated

    async def pin_conversation(self, tenant_id: str, user_id: str, reason: Optional[str] = None) -> ControlState:
        current = await self.get_control_state(tenant_id, user_id)
        updated = state_machine.pin(current, reason, now_ms())
        await self.save_control_state(tenant_id, user_id, updated)
        return updated

    async def unpin_conversation(self, tenant_id: str, user_id: str) -> ControlState:
        current = await self.get_control_state(tenant_id, user_id)
        updated = state_machine.unpin(current)
        await self.save_control_state(tenant_id, user_id, updated)
        return updated

    async def assign(self, tenant_id: str, user_id: str, admin: str) -> None:
        await self.redis.hset(conv_key(tenant_id, user_id), "assigned_admin", admin)

    async def unassign(self, tenant_id: str, user_id: str) -> None:
        await self.redis.hset(conv_key(tenant_id, user_id), "assigned_admin", "")

    async def mark_read(self, tenant_id: str, user_id: str) -> None:
        await self.redis.hset(conv_key(tenant_id, user_id), "unread_count", "0")

    # Tenant-wide switches

    async def get_global_bot_enabled(self, tenant_id: str) -> bool:
        return (await self.redis.get(f"globalbot:{tenant_id}")) != "0"

    async def set_global_bot_enabled(self, tenant_id: str, enabled: bool) -> None:
        await self.redis.set(f"globalbot:{tenant_id}", "1" if enabled else "0")

    async def get_business_hours_raw(self, tenant_id: str) -> Optional[dict]:
        raw = await self.redis.get(f"bizhours:{tenant_id}")
        return json.loads(raw) if raw else None

    async def set_business_hours_raw(self, tenant_id: str, config: dict) -> None:
        await self.redis.set(f"bizhours:{tenant_id}", json.dumps(config, ensure_ascii=False))

    # Follow-ups

    async def set_followup(self, tenant_id: str, followup: FollowUp) -> None:
        ttl = self.config.followup_ttl_days * 86400
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(f"followup:{tenant_id}:{followup.user_id}", followup.model_dump_json(), ex=ttl)
            pipe.zadd(f"followups:{tenant_id}", {followup.user_id: followup.analyzed_at or now_ms()})
            await pipe.execute()

    async def get_followup(self, tenant_id: str, user_id: str) -> Optional[FollowUp]:
        raw = await self.redis.get(f"followup:{tenant_id}:{user_id}")
        return FollowUp.model_validate_json(raw) if raw else None

    async def get_followups(self, tenant_id: str) -> list[FollowUp]:
        """Open follow-ups, highest priority first, then the longest-waiting."""
        user_ids = await self.redis.zrevrange(f"followups:{tenant_id}", 0, -1)
        if not user_ids:
            return []
        rows = await self.redis.mget([f"followup:{tenant_id}:{user_id}" for user_id in user_ids])

        followups: list[FollowUp] = []
        expired: list[str] = []
        for user_id, raw in zip(user_ids, rows):
            if raw is None:
                expired.append(user_id)
                continue
            followup = FollowUp.model_validate_json(raw)
            if followup.needs_followup:
                followups.append(followup)
        if expired:
            await self.redis.zrem(f"followups:{tenant_id}", *expired)

        followups.sort(key=lambda item: (PRIORITY_ORDER.get(item.priority, 1), item.last_message_at))
        return followups

    async def clear_followup(self, tenant_id: str, user_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(f"followup:{tenant_id}:{user_id}")
            pipe.zrem(f"followups:{tenant_id}", user_id)
            await pipe.execute()

    # Admin activity

    async def log_admin_activity(
        self,
        tenant_id: str,
        username: str,
        action: AdminAction,
        user_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> AdminActivityEntry:
        entry = AdminActivityEntry(
            id=uuid4().hex,
            username=username,
            action=action,
            user_id=user_id,
            detail=detail,
            timestamp=now_ms(),
        )
        index_key = f"activity:{tenant_id}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(f"activity:{tenant_id}:{entry.id}", entry.model_dump_json(), ex=self.config.activity_ttl_days * 86400)
            pipe.zadd(index_key, {entry.id: entry.timestamp})
            pipe.zremrangebyrank(index_key, 0, -(self.config.activity_log_cap + 1))
            await pipe.execute()
        return entry

    async def get_admin_activity(
        self,
        tenant_id: str,
        since: Optional[int] = None,
        until: Optional[int] = None,
        username: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[AdminActivityEntry]:
        """Newest first within [since, until] (epoch ms)."""
        index_key = f"activity:{tenant_id}"
        ids = await self.redis.zrevrangebyscore(
            index_key,
            until if until is not None else "+inf",
            since if since is not None else "-inf",
        )
        if not ids:
            return []
        rows = await self.redis.mget([f"activity:{tenant_id}:{entry_id}" for entry_id in ids])

        entries = [AdminActivityEntry.model_validate_json(raw) for raw in rows if raw]
        if username:
            entries = [entry for entry in entries if entry.username == username]
        return entries[offset : offset + limit]

    async def get_admin_stats(
        self, tenant_id: str, since: Optional[int] = None, until: Optional[int] = None
    ) -> list[AdminStats]:
        entries = await self.get_admin_activity(tenant_id, since=since, until=until, limit=self.config.activity_log_cap)
        stats: dict[str, AdminStats] = {}
        for entry in entries:
            item = stats.setdefault(entry.username, AdminStats(username=entry.username))
            item.total += 1
            if entry.action in (AdminAction.SEND, AdminAction.SEND_MEDIA, AdminAction.SEND_FOLLOWUP):
                item.sent += 1
            elif entry.action in (AdminAction.TOGGLE_BOT, AdminAction.GLOBAL_TOGGLE_BOT):
                item.toggle_bot += 1
            elif entry.action == AdminAction.PIN:
                item.pin += 1
            item.last_active = max(item.last_active, entry.timestamp)
        return sorted(stats.values(), key=lambda item: item.last_active, reverse=True)

    # CRM profiles

    async def get_crm_profile(self, tenant_id: str, user_id: str) -> Optional[CRMProfile]:
        raw = await self.redis.get(f"crm:{tenant_id}:{user_id}")
        return CRMProfile.model_validate_json(raw) if raw else None

    async def put_crm_profile(self, profile: CRMProfile) -> CRMProfile:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(f"crm:{profile.tenant_id}:{profile.user_id}", profile.model_dump_json())
            pipe.zadd(f"crms:{profile.tenant_id}", {profile.user_id: profile.updated_at})
            await pipe.execute()
        return profile

    async def list_crm_profiles(self, tenant_id: str, offset: int = 0, limit: int = 50) -> list[CRMProfile]:
        user_ids = await self.redis.zrevrange(f"crms:{tenant_id}", offset, offset + limit - 1)
        if not user_ids:
            return []
        rows = await self.redis.mget([f"crm:{tenant_id}:{user_id}" for user_id in user_ids])
        return [CRMProfile.model_validate_json(raw) for raw in rows if raw]

    # Daily counters, digest and summary caches

    async def incr_daily_counter(self, tenant_id: str, counter: str, amount: int = 1) -> None:
        key = f"stats:{tenant_id}:{local_date(self.config.usage_timezone)}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hincrby(key, counter, amount)
                pipe.expire(key, DAILY_COUNTER_TTL_SECONDS)
                await pipe.execute()
        except Exception as exc:
            logger.warning(
                "Daily counter update failed",
                extra={"context": {"tenant_id": tenant_id, "counter": counter, "error": str(exc)}},
            )

    async def get_daily_counters(self, tenant_id: str, date: str) -> dict[str, int]:
        raw = await self.redis.hgetall(f"stats:{tenant_id}:{date}")
        return {name: int(value) for name, value in raw.items()}

    async def get_cached_digest(self, tenant_id: str, date: str) -> Optional[dict]:
        raw = await self.redis.get(f"digest:{tenant_id}:{date}")
        return json.loads(raw) if raw else None

    async def cache_digest(self, tenant_id: str, date: str, digest: dict) -> None:
        await self.redis.set(
            f"digest:{tenant_id}:{date}",
            json.dumps(digest, ensure_ascii=False),
            ex=self.config.digest_ttl_seconds,
        )

    async def get_chat_summary(self, tenant_id: str, user_id: str) -> Optional[dict]:
        raw = await self.redis.get(f"chatsummary:{tenant_id}:{user_id}")
        return json.loads(raw) if raw else None

    async def save_chat_summary(self, tenant_id: str, user_id: str, summary: dict) -> None:
        await self.redis.set(
            f"chatsummary:{tenant_id}:{user_id}",
            json.dumps(summary, ensure_ascii=False),
            ex=self.config.chat_summary_ttl_seconds,
        )
