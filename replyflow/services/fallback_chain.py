"""Ordered multi-provider completion with a first-success-wins combinator.

Provider order comes from configuration (`"anthropic:claude-sonnet-4-20250514,openai:gpt-4o-mini"`).
Each attempt has its own timeout, bounded by the caller's remaining reply budget.
Usage is recorded for every attempted provider, including failed attempts.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from replyflow.config import Settings, settings
from replyflow.logging_config import get_logger
from replyflow.schemas.conversation import Message, MessageRole
from replyflow.schemas.usage import TokenUsage
from replyflow.services.llm import AnthropicProvider, LLMProvider, OpenAIProvider

logger = get_logger("fallback_chain")

UsageRecorder = Callable[[TokenUsage], None]


@dataclass
class ProviderSlot:
    name: str
    provider: LLMProvider
    model: str

    @property
    def label(self) -> str:
        return f"{self.name}:{self.model}"


@dataclass
class ChainResult:
    text: str
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    used_default: bool = False
    attempts: List[str] = field(default_factory=list)


def parse_provider_order(raw: Iterable[str] | str) -> list[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    return [entry.strip() for entry in raw if entry and entry.strip()]


def build_provider_slots(order: Iterable[str] | str, config: Settings = settings) -> list[ProviderSlot]:
    """Instantiate providers in the configured order. Entries without an API key are skipped."""
    slots: list[ProviderSlot] = []
    for entry in parse_provider_order(order):
        name, _, model = entry.partition(":")
        name = name.strip().lower()
        if name == "openai":
            if not config.openai_api_key:
                logger.warning("Skipping provider without API key", extra={"context": {"provider": entry}})
                continue
            provider: LLMProvider = OpenAIProvider(config.openai_api_key)
            slots.append(ProviderSlot(name, provider, model or provider.default_model))
        elif name == "anthropic":
            if not config.anthropic_api_key:
                logger.warning("Skipping provider without API key", extra={"context": {"provider": entry}})
                continue
            provider = AnthropicProvider(config.anthropic_api_key)
            slots.append(ProviderSlot(name, provider, model or provider.default_model))
        else:
            logger.warning("Unknown provider in order", extra={"context": {"provider": entry}})
    return slots


def build_history_messages(history: Iterable[Message], limit: int) -> list[dict]:
    """Map stored messages onto chat roles; system notes are not shown to the model."""
    turns = [item for item in history if item.role != MessageRole.SYSTEM and item.content]
    turns = turns[-limit:] if limit else turns
    return [
        {"role": "user" if item.role == MessageRole.CUSTOMER else "assistant", "content": item.content}
        for item in turns
    ]


def build_system_prompt(base_prompt: str, off_hours_note: Optional[str] = None) -> str:
    if not off_hours_note:
        return base_prompt
    return f"{base_prompt}\n\n[Business hours] {off_hours_note}"


class FallbackChain:
    def __init__(
        self,
        slots: list[ProviderSlot],
        usage_recorder: Optional[UsageRecorder] = None,
        timeout_seconds: float = 12.0,
    ):
        self.slots = slots
        self.usage_recorder = usage_recorder
        self.timeout_seconds = timeout_seconds

    def _record(self, usage: TokenUsage) -> None:
        if self.usage_recorder is None:
            return
        try:
            self.usage_recorder(usage)
        except Exception as exc:
            logger.warning("Usage recording failed", extra={"context": {"error": str(exc)}})

    async def first_success(
        self,
        message: str,
        history: list[dict],
        system_prompt: str,
        call_site: str,
        deadline: Optional[float] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        json_mode: bool = False,
        user_id: Optional[str] = None,
    ) -> Optional[ChainResult]:
        """Return the first non-empty completion, or None if every provider failed.

        `deadline` is a time.monotonic() value; no attempt is started after it passes.
        """
        attempts: list[str] = []
        messages = [*history, {"role": "user", "content": message}]

        for slot in self.slots:
            timeout = self.timeout_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        "Reply budget exhausted before next provider",
                        extra={"context": {"call_site": call_site, "skipped": slot.label}},
                    )
                    break
                timeout = min(timeout, remaining)

            attempts.append(slot.label)
            try:
                response = await asyncio.wait_for(
                    slot.provider.generate(
                        messages,
                        system_prompt=system_prompt,
                        model=slot.model,
                        temperature=temperature,
                        max_tokens=max_tokens,
                        timeout_seconds=timeout,
                        json_mode=json_mode,
                    ),
                    timeout=timeout,
                )
            except Exception as exc:
                self._record(
                    TokenUsage(model=slot.model, call_site=call_site, success=False, provider=slot.name, user_id=user_id)
                )
                logger.warning(
                    "Provider attempt failed",
                    extra={
                        "context": {
                            "call_site": call_site,
                            "provider": slot.label,
                            "error": str(exc) or type(exc).__name__,
                        }
                    },
                )
                continue

            text = (response.content or "").strip()
            self._record(
                TokenUsage(
                    model=slot.model,
                    call_site=call_site,
                    prompt_tokens=response.prompt_tokens,
                    completion_tokens=response.completion_tokens,
                    success=bool(text),
                    provider=slot.name,
                    user_id=user_id,
                )
            )
            if not text:
                logger.warning(
                    "Provider returned empty completion",
                    extra={"context": {"call_site": call_site, "provider": slot.label}},
                )
                continue

            return ChainResult(
                text=text,
                provider=slot.name,
                model=slot.model,
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
                attempts=attempts,
            )

        logger.warning("All providers failed", extra={"context": {"call_site": call_site, "attempts": attempts}})
        return None

    async def reply(
        self,
        message: str,
        history: list[dict],
        system_prompt: str,
        default_message: str,
        call_site: str,
        deadline: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> ChainResult:
        """Like first_success, but falls back to `default_message` and never raises."""
        try:
            result = await self.first_success(
                message, history, system_prompt, call_site, deadline=deadline, user_id=user_id
            )
        except Exception as exc:
            logger.error("Fallback chain crashed", extra={"context": {"call_site": call_site, "error": str(exc)}})
            result = None

        if result is None:
            return ChainResult(text=default_message, used_default=True)
        return result
