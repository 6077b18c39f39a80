from typing import List, Optional

import httpx

from replyflow.logging_config import get_logger
from replyflow.services.llm.base import LLMProvider, LLMResponse, ProviderError

logger = get_logger("llm.anthropic")

ANTHROPIC_VERSION = "2023-06-01"


def merge_consecutive_roles(messages: List[dict]) -> List[dict]:
    """The Messages API requires alternating roles starting with a user turn."""
    merged: List[dict] = []
    for message in messages:
        role = "assistant" if message.get("role") == "assistant" else "user"
        content = message.get("content") or ""
        if not content:
            continue
        if merged and merged[-1]["role"] == role:
            merged[-1]["content"] = f"{merged[-1]['content']}\n{content}"
        else:
            merged.append({"role": role, "content": content})
    while merged and merged[0]["role"] != "user":
        merged.pop(0)
    return merged


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider."""

    name = "anthropic"

    def __init__(self, api_key: str, default_model: str = "claude-sonnet-4-20250514"):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.anthropic.com/v1/messages"

    async def generate(
        self,
        messages: List[dict],
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": merge_consecutive_roles(messages),
        }
        if system_prompt:
            payload["system"] = system_prompt

        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        logger.debug(f"Anthropic request: model={model}, messages_count={len(payload['messages'])}")
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                self.base_url,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code != 200:
            logger.error(f"Anthropic error: {response.status_code} {response.text[:500]}")
            raise ProviderError(self.name, response.text[:500], response.status_code)

        data = response.json()
        content = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        )
        usage = data.get("usage") or {}

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            prompt_tokens=int(usage.get("input_tokens", 0)),
            completion_tokens=int(usage.get("output_tokens", 0)),
        )
