"""Learned intents, knowledge and scripts, plus the miss tracker and Q&A review log."""

import json
import re
from typing import Optional
from uuid import uuid4

from replyflow.config import Settings, settings
from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import encode_hash
from replyflow.schemas.learned import (
    LearnedData,
    LearnedItem,
    LearnedKind,
    LearnedStats,
    MissEntry,
    QALogEntry,
    QAReviewStatus,
)
from replyflow.services.timeutils import now_ms

logger = get_logger("learned_store")

MAX_NORMALIZED_QUESTION_LENGTH = 100

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_question(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", (text or "").lower()).strip()[:MAX_NORMALIZED_QUESTION_LENGTH]


def item_key(kind: LearnedKind, tenant_id: str, item_id: str) -> str:
    return f"learned:{kind.value}:{tenant_id}:{item_id}"


def index_key(kind: LearnedKind, tenant_id: str) -> str:
    return f"learned:{kind.value}:{tenant_id}"


def _item_from_hash(raw: dict[str, str]) -> LearnedItem:
    data = dict(raw)
    data["triggers"] = json.loads(data.get("triggers") or "[]")
    data["enabled"] = data.get("enabled", "1") == "1"
    for optional in ("intent_id",):
        if data.get(optional) == "":
            data.pop(optional)
    return LearnedItem.model_validate(data)


class LearnedStore:
    def __init__(self, redis_client, config: Settings = settings):
        self.redis = redis_client
        self.config = config

    @property
    def learned_ttl(self) -> int:
        return self.config.learned_ttl_days * 86400

    # Learned entities

    async def save_item(
        self,
        tenant_id: str,
        kind: LearnedKind,
        *,
        title: str,
        content: str,
        triggers: list[str],
        source_question: str = "",
        source_answer: str = "",
        confidence: float = 0.0,
        intent_id: Optional[str] = None,
        created_by: str = "auto",
        enabled: bool = True,
    ) -> LearnedItem:
        item = LearnedItem(
            id=uuid4().hex[:12],
            kind=kind,
            title=title,
            content=content,
            triggers=[trigger.strip() for trigger in triggers if trigger and trigger.strip()],
            source_question=source_question,
            source_answer=source_answer,
            intent_id=intent_id,
            confidence=confidence,
            enabled=enabled,
            hit_count=0,
            created_at=now_ms(),
            created_by=created_by,
        )
        fields = item.model_dump(mode="json")
        fields["triggers"] = json.dumps(item.triggers, ensure_ascii=False)

        key = item_key(kind, tenant_id, item.id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=encode_hash(fields))
            pipe.expire(key, self.learned_ttl)
            pipe.zadd(index_key(kind, tenant_id), {item.id: item.created_at})
            await pipe.execute()

        logger.info(
            "Learned item saved",
            extra={"context": {"tenant_id": tenant_id, "kind": kind.value, "id": item.id, "confidence": confidence}},
        )
        return item

    async def save_intent(self, tenant_id: str, **fields) -> LearnedItem:
        return await self.save_item(tenant_id, LearnedKind.INTENT, **fields)

    async def save_knowledge(self, tenant_id: str, **fields) -> LearnedItem:
        return await self.save_item(tenant_id, LearnedKind.KNOWLEDGE, **fields)

    async def save_script(self, tenant_id: str, **fields) -> LearnedItem:
        return await self.save_item(tenant_id, LearnedKind.SCRIPT, **fields)

    async def get_item(self, tenant_id: str, kind: LearnedKind, item_id: str) -> Optional[LearnedItem]:
        raw = await self.redis.hgetall(item_key(kind, tenant_id, item_id))
        return _item_from_hash(raw) if raw else None

    async def get_items(self, tenant_id: str, kind: LearnedKind) -> list[LearnedItem]:
        """Newest first. Index entries whose hash has expired are pruned."""
        ids = await self.redis.zrevrange(index_key(kind, tenant_id), 0, -1)
        if not ids:
            return []
        async with self.redis.pipeline(transaction=False) as pipe:
            for item_id in ids:
                pipe.hgetall(item_key(kind, tenant_id, item_id))
            rows = await pipe.execute()

        items: list[LearnedItem] = []
        expired: list[str] = []
        for item_id, raw in zip(ids, rows):
            if not raw:
                expired.append(item_id)
                continue
            items.append(_item_from_hash(raw))
        if expired:
            await self.redis.zrem(index_key(kind, tenant_id), *expired)
        return items

    async def get_enabled_learned_data(self, tenant_id: str) -> LearnedData:
        intents = await self.get_items(tenant_id, LearnedKind.INTENT)
        knowledge = await self.get_items(tenant_id, LearnedKind.KNOWLEDGE)
        scripts = await self.get_items(tenant_id, LearnedKind.SCRIPT)
        return LearnedData(
            intents=[item for item in intents if item.enabled],
            knowledge=[item for item in knowledge if item.enabled],
            scripts=[item for item in scripts if item.enabled],
        )

    async def get_all_learned_data(self, tenant_id: str) -> LearnedData:
        return LearnedData(
            intents=await self.get_items(tenant_id, LearnedKind.INTENT),
            knowledge=await self.get_items(tenant_id, LearnedKind.KNOWLEDGE),
            scripts=await self.get_items(tenant_id, LearnedKind.SCRIPT),
        )

    async def increment_hit(self, tenant_id: str, kind: LearnedKind, item_id: str) -> Optional[int]:
        key = item_key(kind, tenant_id, item_id)
        if not await self.redis.exists(key):
            return None
        return int(await self.redis.hincrby(key, "hit_count", 1))

    async def set_enabled(self, tenant_id: str, kind: LearnedKind, item_id: str, enabled: bool) -> bool:
        key = item_key(kind, tenant_id, item_id)
        if not await self.redis.exists(key):
            return False
        await self.redis.hset(key, "enabled", "1" if enabled else "0")
        return True

    async def delete_item(self, tenant_id: str, kind: LearnedKind, item_id: str) -> bool:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(item_key(kind, tenant_id, item_id))
            pipe.zrem(index_key(kind, tenant_id), item_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    # Miss tracker

    async def track_miss(self, tenant_id: str, question: str) -> Optional[str]:
        normalized = normalize_question(question)
        if not normalized:
            return None

        ttl = self.config.miss_ttl_days * 86400
        ranking_key = f"learnmiss:{tenant_id}"
        detail_key = f"learnmiss:{tenant_id}:{normalized}"
        examples_key = f"learnmiss:{tenant_id}:{normalized}:examples"
        example = (question or "").strip()[:300]

        existing = await self.redis.lrange(examples_key, 0, -1)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zincrby(ranking_key, 1, normalized)
            pipe.expire(ranking_key, ttl)
            pipe.hincrby(detail_key, "count", 1)
            pipe.hset(detail_key, "last_seen_at", str(now_ms()))
            pipe.expire(detail_key, ttl)
            if example and example not in existing:
                pipe.rpush(examples_key, example)
                pipe.ltrim(examples_key, 0, self.config.miss_max_examples - 1)
            pipe.expire(examples_key, ttl)
            await pipe.execute()
        return normalized

    async def get_top_misses(self, tenant_id: str, limit: int = 50) -> list[MissEntry]:
        ranked = await self.redis.zrevrange(f"learnmiss:{tenant_id}", 0, limit - 1, withscores=True)
        entries: list[MissEntry] = []
        for normalized, score in ranked:
            detail = await self.redis.hgetall(f"learnmiss:{tenant_id}:{normalized}")
            examples = await self.redis.lrange(f"learnmiss:{tenant_id}:{normalized}:examples", 0, -1)
            entries.append(
                MissEntry(
                    question=normalized,
                    count=int(score),
                    examples=examples,
                    last_seen_at=int(detail.get("last_seen_at") or 0),
                )
            )
        return entries

    async def count_misses(self, tenant_id: str) -> int:
        return int(await self.redis.zcard(f"learnmiss:{tenant_id}"))

    # Q&A review log

    async def log_qa(
        self,
        tenant_id: str,
        question: str,
        answer: str,
        user_id: str = "",
        layer: Optional[int] = None,
        layer_name: Optional[str] = None,
        review_status: QAReviewStatus = QAReviewStatus.PENDING,
    ) -> QALogEntry:
        entry = QALogEntry(
            id=uuid4().hex,
            user_id=user_id,
            question=question,
            answer=answer,
            layer=layer,
            layer_name=layer_name,
            review_status=review_status,
            created_at=now_ms(),
        )
        ring_key = f"qalog:{tenant_id}"
        entry_key = f"qa:{tenant_id}:{entry.id}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(entry_key, mapping=encode_hash(entry.model_dump(mode="json")))
            pipe.expire(entry_key, self.config.qa_ttl_days * 86400)
            pipe.lpush(ring_key, entry.id)
            pipe.ltrim(ring_key, 0, self.config.qa_log_cap - 1)
            await pipe.execute()
        return entry

    async def get_qa_log(
        self, tenant_id: str, status: Optional[QAReviewStatus] = None, limit: int = 50
    ) -> list[QALogEntry]:
        """Newest first."""
        ids = await self.redis.lrange(f"qalog:{tenant_id}", 0, -1)
        entries: list[QALogEntry] = []
        for entry_id in ids:
            raw = await self.redis.hgetall(f"qa:{tenant_id}:{entry_id}")
            if not raw:
                continue
            entry = QALogEntry.model_validate({k: v for k, v in raw.items() if v != ""})
            if status and entry.review_status != status:
                continue
            entries.append(entry)
            if len(entries) >= limit:
                break
        return entries

    async def get_qa_entry(self, tenant_id: str, entry_id: str) -> Optional[QALogEntry]:
        raw = await self.redis.hgetall(f"qa:{tenant_id}:{entry_id}")
        if not raw:
            return None
        return QALogEntry.model_validate({k: v for k, v in raw.items() if v != ""})

    async def set_review_status(
        self, tenant_id: str, entry_id: str, status: QAReviewStatus, reviewed_by: Optional[str] = None
    ) -> bool:
        key = f"qa:{tenant_id}:{entry_id}"
        if not await self.redis.exists(key):
            return False
        await self.redis.hset(key, mapping={"review_status": status.value, "reviewed_by": reviewed_by or ""})
        return True

    async def get_stats(self, tenant_id: str) -> LearnedStats:
        data = await self.get_all_learned_data(tenant_id)
        everything = data.intents + data.knowledge + data.scripts
        return LearnedStats(
            intents=len(data.intents),
            knowledge=len(data.knowledge),
            scripts=len(data.scripts),
            enabled=sum(1 for item in everything if item.enabled),
            total_hits=sum(item.hit_count for item in everything),
            misses=await self.count_misses(tenant_id),
        )
