"""Per-call token and cost accounting with daily, per-model and all-time rollups."""

from typing import Optional
from uuid import uuid4

from replyflow.config import Settings, settings
from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import encode_hash
from replyflow.schemas.usage import DailyUsage, TokenUsage, UsageEntry, UsageTotals
from replyflow.services.timeutils import local_date, now_ms, recent_dates

logger = get_logger("usage_ledger")

# USD per 1M tokens (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4.1": (2.0, 8.0),
    "gpt-4.1-mini": (0.4, 1.6),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-haiku-4-5": (0.8, 4.0),
    "claude-opus-4-5": (15.0, 75.0),
}
DEFAULT_PRICING_MODEL = "gpt-4o-mini"

MICRO = 1_000_000


def calc_cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    input_price, output_price = MODEL_PRICING.get(model, MODEL_PRICING[DEFAULT_PRICING_MODEL])
    return (prompt_tokens * input_price + completion_tokens * output_price) / MICRO


def _to_micro(cost_usd: float) -> int:
    return int(round(cost_usd * MICRO))


def _aggregate_fields(raw: dict[str, str]) -> dict:
    return {
        "prompt_tokens": int(raw.get("prompt_tokens", 0)),
        "completion_tokens": int(raw.get("completion_tokens", 0)),
        "total_tokens": int(raw.get("total_tokens", 0)),
        "calls": int(raw.get("calls", 0)),
        "failures": int(raw.get("failures", 0)),
        "cost_usd": int(raw.get("cost_usd_micro", 0)) / MICRO,
    }


class UsageLedger:
    def __init__(self, redis_client, config: Settings = settings):
        self.redis = redis_client
        self.config = config

    def _daily_key(self, tenant_id: str, date: str, model: str) -> str:
        return f"usage:daily:{tenant_id}:{date}:{model}"

    async def log_usage(self, tenant_id: str, usage: TokenUsage, timestamp: Optional[int] = None) -> UsageEntry:
        timestamp = timestamp or now_ms()
        total_tokens = usage.prompt_tokens + usage.completion_tokens
        cost = calc_cost_usd(usage.model, usage.prompt_tokens, usage.completion_tokens)
        entry = UsageEntry(
            id=uuid4().hex,
            timestamp=timestamp,
            model=usage.model,
            call_site=usage.call_site,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=total_tokens,
            cost_usd=cost,
            success=usage.success,
            provider=usage.provider,
            user_id=usage.user_id,
        )

        date = local_date(self.config.usage_timezone, timestamp)
        daily_key = self._daily_key(tenant_id, date, usage.model)
        models_key = f"usage:models:{tenant_id}:{date}"
        total_key = f"usage:total:{tenant_id}"
        entry_key = f"usage:entry:{tenant_id}:{entry.id}"
        log_key = f"usage:log:{tenant_id}"
        daily_ttl = self.config.usage_daily_ttl_days * 86400
        counters = {
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": total_tokens,
            "calls": 1,
            "failures": 0 if usage.success else 1,
            "cost_usd_micro": _to_micro(cost),
        }

        async with self.redis.pipeline(transaction=True) as pipe:
            for field, amount in counters.items():
                pipe.hincrby(daily_key, field, amount)
                pipe.hincrby(total_key, field, amount)
            pipe.expire(daily_key, daily_ttl)
            pipe.sadd(models_key, usage.model)
            pipe.expire(models_key, daily_ttl)
            pipe.hset(entry_key, mapping=encode_hash(entry.model_dump(mode="json")))
            pipe.expire(entry_key, self.config.usage_entry_ttl_days * 86400)
            pipe.zadd(log_key, {entry.id: timestamp})
            pipe.zremrangebyrank(log_key, 0, -(self.config.usage_log_cap + 1))
            await pipe.execute()

        return entry

    async def get_daily_usage(self, tenant_id: str, days: int = 7) -> list[DailyUsage]:
        """Per (date, model) aggregates, newest date first."""
        rows: list[DailyUsage] = []
        for date in recent_dates(self.config.usage_timezone, days):
            models = sorted(await self.redis.smembers(f"usage:models:{tenant_id}:{date}"))
            for model in models:
                raw = await self.redis.hgetall(self._daily_key(tenant_id, date, model))
                if raw:
                    rows.append(DailyUsage(date=date, model=model, **_aggregate_fields(raw)))
        return rows

    async def get_usage_for_date(self, tenant_id: str, date: str) -> UsageTotals:
        totals = UsageTotals()
        for model in await self.redis.smembers(f"usage:models:{tenant_id}:{date}"):
            raw = await self.redis.hgetall(self._daily_key(tenant_id, date, model))
            fields = _aggregate_fields(raw)
            for name, value in fields.items():
                setattr(totals, name, getattr(totals, name) + value)
        return totals

    async def get_usage_totals(self, tenant_id: str) -> UsageTotals:
        raw = await self.redis.hgetall(f"usage:total:{tenant_id}")
        return UsageTotals(**_aggregate_fields(raw))

    async def get_usage_by_model(self, tenant_id: str, days: int = 30) -> dict[str, UsageTotals]:
        by_model: dict[str, UsageTotals] = {}
        for row in await self.get_daily_usage(tenant_id, days):
            totals = by_model.setdefault(row.model, UsageTotals())
            totals.prompt_tokens += row.prompt_tokens
            totals.completion_tokens += row.completion_tokens
            totals.total_tokens += row.total_tokens
            totals.calls += row.calls
            totals.failures += row.failures
            totals.cost_usd += row.cost_usd
        return by_model

    async def get_usage_log(self, tenant_id: str, limit: int = 100) -> list[UsageEntry]:
        """Most recent calls first; entries past their TTL are skipped."""
        ids = await self.redis.zrevrange(f"usage:log:{tenant_id}", 0, limit - 1)
        entries: list[UsageEntry] = []
        for entry_id in ids:
            raw = await self.redis.hgetall(f"usage:entry:{tenant_id}:{entry_id}")
            if raw:
                entries.append(UsageEntry.model_validate({k: v for k, v in raw.items() if v != ""}))
        return entries
