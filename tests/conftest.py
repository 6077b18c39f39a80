import fnmatch
import time
from typing import Any, Optional
from unittest.mock import Mock

import pytest

from replyflow.schemas.events import Channel, ChannelProfile, EventKind, InboundEvent
from replyflow.schemas.tenant import BusinessHoursConfig, ChannelCredentials, TenantConfig
from replyflow.services.channels.base import ChannelAdapter
from replyflow.services.llm.base import LLMProvider, LLMResponse, ProviderError
from replyflow.services.result import Result


def _bounds(length: int, start: int, end: int) -> Optional[tuple[int, int]]:
    """Redis inclusive range semantics, negative indexes counting from the end."""
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = length + end
    end = min(end, length - 1)
    if start > end:
        return None
    return start, end


def _score(value: Any) -> float:
    if value in ("+inf", "inf"):
        return float("inf")
    if value == "-inf":
        return float("-inf")
    return float(value)


class FakePipeline:
    """Queues commands and runs them in order on execute(), like a MULTI block."""

    def __init__(self, redis: "FakeRedis", transaction: bool = True):
        self._redis = redis
        self.transaction = transaction
        self._queue: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        if not hasattr(self._redis, name):
            raise AttributeError(name)

        def queue(*args, **kwargs):
            self._queue.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list:
        if self._redis.fail_pipelines:
            raise ConnectionError("pipeline unavailable")
        results = []
        queued, self._queue = self._queue, []
        for name, args, kwargs in queued:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        return results

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self._queue = []


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the service uses (decode_responses=True)."""

    def __init__(self):
        self.data: dict[str, Any] = {}
        self.expiry: dict[str, float] = {}
        self.fail_pipelines = False

    # Keyspace

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.time():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    def _get(self, key: str, default_factory=None):
        if self._alive(key):
            return self.data[key]
        if default_factory is None:
            return None
        value = default_factory()
        self.data[key] = value
        return value

    def _drop_if_empty(self, key: str) -> None:
        if key in self.data and not self.data[key] and self.data[key] != "":
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    async def keys(self, pattern: str = "*") -> list[str]:
        return [key for key in list(self.data) if self._alive(key) and fnmatch.fnmatch(key, pattern)]

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._alive(key):
            return False
        self.expiry[key] = time.time() + seconds
        return True

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        if key not in self.expiry:
            return -1
        return int(self.expiry[key] - time.time())

    # Strings

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False):
        if nx and self._alive(key):
            return None
        self.data[key] = str(value)
        self.expiry.pop(key, None)
        if ex:
            self.expiry[key] = time.time() + ex
        return True

    async def get(self, key: str) -> Optional[str]:
        value = self._get(key)
        return value if isinstance(value, str) else None

    async def mget(self, keys, *more: str) -> list[Optional[str]]:
        names = list(keys) if isinstance(keys, (list, tuple)) else [keys, *more]
        return [await self.get(name) for name in names]

    async def incrby(self, key: str, amount: int = 1) -> int:
        value = int(self._get(key) or 0) + amount
        self.data[key] = str(value)
        return value

    async def incr(self, key: str) -> int:
        return await self.incrby(key, 1)

    # Hashes

    async def hset(self, key: str, field: Optional[str] = None, value: Any = None, mapping: Optional[dict] = None) -> int:
        target = self._get(key, dict)
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = 0
        for name, item in items.items():
            if name not in target:
                added += 1
            target[name] = str(item)
        return added

    async def hsetnx(self, key: str, field: str, value: Any) -> int:
        target = self._get(key, dict)
        if field in target:
            return 0
        target[field] = str(value)
        return 1

    async def hget(self, key: str, field: str) -> Optional[str]:
        return (self._get(key) or {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._get(key) or {})

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        target = self._get(key, dict)
        value = int(target.get(field, 0)) + amount
        target[field] = str(value)
        return value

    async def hdel(self, key: str, *fields: str) -> int:
        target = self._get(key) or {}
        removed = sum(1 for name in fields if target.pop(name, None) is not None)
        self._drop_if_empty(key)
        return removed

    # Lists

    async def rpush(self, key: str, *values: Any) -> int:
        target = self._get(key, list)
        target.extend(str(value) for value in values)
        return len(target)

    async def lpush(self, key: str, *values: Any) -> int:
        target = self._get(key, list)
        for value in values:
            target.insert(0, str(value))
        return len(target)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        target = self._get(key) or []
        bounds = _bounds(len(target), start, end)
        return list(target[bounds[0] : bounds[1] + 1]) if bounds else []

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        target = self._get(key)
        if target is None:
            return True
        bounds = _bounds(len(target), start, end)
        self.data[key] = list(target[bounds[0] : bounds[1] + 1]) if bounds else []
        self._drop_if_empty(key)
        return True

    async def llen(self, key: str) -> int:
        return len(self._get(key) or [])

    # Sorted sets

    def _ranked(self, key: str) -> list[tuple[str, float]]:
        return sorted((self._get(key) or {}).items(), key=lambda item: (item[1], item[0]))

    async def zadd(self, key: str, mapping: dict) -> int:
        target = self._get(key, dict)
        added = sum(1 for member in mapping if member not in target)
        for member, score in mapping.items():
            target[str(member)] = float(score)
        return added

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        target = self._get(key, dict)
        target[member] = target.get(member, 0.0) + amount
        return target[member]

    async def zscore(self, key: str, member: str) -> Optional[float]:
        return (self._get(key) or {}).get(member)

    async def zcard(self, key: str) -> int:
        return len(self._get(key) or {})

    async def zrem(self, key: str, *members: str) -> int:
        target = self._get(key) or {}
        removed = sum(1 for member in members if target.pop(member, None) is not None)
        self._drop_if_empty(key)
        return removed

    def _slice(self, ranked: list, start: int, end: int, withscores: bool):
        bounds = _bounds(len(ranked), start, end)
        picked = ranked[bounds[0] : bounds[1] + 1] if bounds else []
        return [(member, score) for member, score in picked] if withscores else [member for member, _ in picked]

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False):
        return self._slice(self._ranked(key), start, end, withscores)

    async def zrevrange(self, key: str, start: int, end: int, withscores: bool = False):
        return self._slice(list(reversed(self._ranked(key))), start, end, withscores)

    async def zrevrangebyscore(self, key: str, max: Any, min: Any, start: Optional[int] = None, num: Optional[int] = None):
        high, low = _score(max), _score(min)
        members = [member for member, score in reversed(self._ranked(key)) if low <= score <= high]
        if start is not None and num is not None:
            members = members[start : start + num]
        return members

    async def zremrangebyrank(self, key: str, start: int, end: int) -> int:
        ranked = self._ranked(key)
        bounds = _bounds(len(ranked), start, end)
        if not bounds:
            return 0
        target = self.data[key]
        doomed = ranked[bounds[0] : bounds[1] + 1]
        for member, _ in doomed:
            target.pop(member, None)
        self._drop_if_empty(key)
        return len(doomed)

    # Sets

    async def sadd(self, key: str, *members: Any) -> int:
        target = self._get(key, set)
        added = sum(1 for member in members if str(member) not in target)
        target.update(str(member) for member in members)
        return added

    async def smembers(self, key: str) -> "set[str]":
        return set(self._get(key) or set())


class FakeAdapter(ChannelAdapter):
    """Records sends instead of calling a channel API."""

    channel = Channel.LINE
    max_text_length = 5000

    def __init__(self, fail_sends: bool = False, profile: Optional[ChannelProfile] = None):
        super().__init__(timeout_seconds=1.0)
        self.fail_sends = fail_sends
        self.profile = profile or ChannelProfile(display_name="Somchai", picture_url="https://example.com/p.jpg")
        self.replies: list[tuple[str, str]] = []
        self.pushes: list[tuple[str, str, Optional[str]]] = []

    def verify_signature(self, body: bytes, headers) -> bool:
        return True

    def parse_events(self, tenant_id: str, payload: dict) -> list[InboundEvent]:
        return []

    async def _fetch_profile_once(self, user_id: str) -> Optional[ChannelProfile]:
        return self.profile

    async def reply(self, event: InboundEvent, text: str) -> Result[dict]:
        if self.fail_sends:
            return Result.failure("channel rejected message", "channel_error", status_code=400)
        self.replies.append((event.external_user_id, text))
        return Result.success({})

    async def push(self, user_id: str, text: str = "", image_url: Optional[str] = None) -> Result[dict]:
        if self.fail_sends:
            return Result.failure("channel rejected message", "channel_error", status_code=400)
        self.pushes.append((user_id, text, image_url))
        return Result.success({})


class FakeProvider(LLMProvider):
    """Returns a canned reply, or fails with ProviderError."""

    def __init__(self, name: str, reply: Optional[str] = None, prompt_tokens: int = 100, completion_tokens: int = 20):
        self.name = name
        self.reply = reply
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls: list[dict] = []

    async def generate(
        self,
        messages,
        system_prompt=None,
        model=None,
        temperature=0.7,
        max_tokens=1000,
        timeout_seconds=12.0,
        json_mode=False,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "system_prompt": system_prompt, "model": model})
        if self.reply is None:
            raise ProviderError(self.name, "upstream unavailable", status_code=503)
        return LLMResponse(
            content=self.reply,
            model=model or "fake-model",
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.delenv("ALERT_BOT_TOKEN", raising=False)
    monkeypatch.delenv("ALERT_CHAT_ID", raising=False)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def tenant():
    return TenantConfig(
        tenant_id="shop",
        name="Test Shop",
        credentials=ChannelCredentials(
            line_channel_secret="line-secret",
            line_channel_access_token="line-token",
            facebook_page_access_token="fb-token",
            facebook_verify_token="fb-verify",
            facebook_app_secret="fb-secret",
        ),
        default_fallback_message="Our team will reply soon.",
        welcome_message="Welcome!",
        auto_pin_ack_message="Welcome back, an admin will help you.",
        business_hours=BusinessHoursConfig(enabled=False),
    )


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


def make_event(
    text: str = "hello",
    user_id: str = "U1",
    token: str = "tok-1",
    kind: EventKind = EventKind.TEXT,
    tenant_id: str = "shop",
    **fields,
) -> InboundEvent:
    return InboundEvent(
        tenant_id=tenant_id,
        channel=Channel.LINE,
        external_user_id=user_id,
        kind=kind,
        text=text if kind == EventKind.TEXT else None,
        delivery_token=token,
        reply_token=token,
        **fields,
    )
