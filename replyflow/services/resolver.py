"""Client side of the external Pipeline Resolver (intent/knowledge matching)."""

from typing import Optional, Protocol

import httpx

from replyflow.logging_config import get_logger
from replyflow.schemas.learned import LearnedData
from replyflow.schemas.resolver import HistoryItem, PipelineTrace, ResolverResult
from replyflow.schemas.tenant import TenantConfig

logger = get_logger("resolver")

AI_FALLBACK_LAYER_NAME = "ai_fallback"


class ResolverError(Exception):
    pass


class PipelineResolver(Protocol):
    async def resolve(
        self,
        message: str,
        history: list[HistoryItem],
        tenant: TenantConfig,
        learned: LearnedData,
    ) -> ResolverResult: ...


def is_deferred(result: ResolverResult, threshold: int) -> bool:
    """A final layer at or past the threshold means no confident match."""
    return result.trace.final_layer >= threshold


def deferred_result(threshold: int) -> ResolverResult:
    return ResolverResult(
        content="",
        trace=PipelineTrace(final_layer=threshold, final_layer_name=AI_FALLBACK_LAYER_NAME),
    )


class DeferringResolver:
    """Used when a tenant has no resolver: every message goes to the AI fallback chain."""

    def __init__(self, threshold: int):
        self.threshold = threshold

    async def resolve(
        self,
        message: str,
        history: list[HistoryItem],
        tenant: TenantConfig,
        learned: LearnedData,
    ) -> ResolverResult:
        return deferred_result(self.threshold)


class HttpPipelineResolver:
    def __init__(self, url: str, timeout_seconds: float = 5.0, api_key: Optional[str] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key

    async def resolve(
        self,
        message: str,
        history: list[HistoryItem],
        tenant: TenantConfig,
        learned: LearnedData,
    ) -> ResolverResult:
        payload = {
            "message": message,
            "history": [item.model_dump() for item in history],
            "tenant_id": tenant.tenant_id,
            "business_name": tenant.name,
            "learned_data": learned.for_resolver(),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ResolverError(f"Resolver unreachable: {exc}") from exc

        if response.status_code != 200:
            raise ResolverError(f"Resolver error {response.status_code}: {response.text[:200]}")

        try:
            return ResolverResult.model_validate(response.json())
        except ValueError as exc:
            raise ResolverError(f"Resolver returned invalid payload: {exc}") from exc
