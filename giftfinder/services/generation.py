# =============================================
# File: giftfinder/services/generation.py
# Purpose: Chat-model client (OpenAI) with per-model retry + cost accounting
# =============================================
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

from loguru import logger
from openai import AsyncOpenAI

from ..utils.prompting import to_messages
from ..utils.retry import exponential_backoff, is_transient_error, with_retry
from .schemas import GenerationCost

# USD per 1K tokens: (input, output)
CHAT_PRICE_PER_1K: Dict[str, Tuple[float, float]] = {
    "gpt-4": (0.03, 0.06),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-3.5-turbo": (0.0005, 0.0015),
}


@dataclass
class Completion:
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ChatModelClient(Protocol):
    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion: ...


def _price_for(model: str) -> Tuple[float, float]:
    if model in CHAT_PRICE_PER_1K:
        return CHAT_PRICE_PER_1K[model]
    # Dated snapshots, e.g. gpt-4-turbo-2024-04-09
    for name in sorted(CHAT_PRICE_PER_1K, key=len, reverse=True):
        if model.startswith(name):
            return CHAT_PRICE_PER_1K[name]
    return (0.0, 0.0)


def calculate_generation_cost(model: str, prompt_tokens: int, completion_tokens: int) -> GenerationCost:
    inp, out = _price_for(model)
    cost = (prompt_tokens / 1000.0) * inp + (completion_tokens / 1000.0) * out
    return GenerationCost(
        model=model,
        prompt_tokens=int(prompt_tokens),
        completion_tokens=int(completion_tokens),
        total_tokens=int(prompt_tokens + completion_tokens),
        cost_usd=round(cost, 6),
    )


class OpenAIChatClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_s: float = 30.0,
        client: Any = None,
    ):
        # SDK retries off: RecommendationGenerator owns the retry policy
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0, timeout=timeout_s)

    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        resp = await self._client.chat.completions.create(
            model=model,
            messages=to_messages(system_prompt, user_prompt),
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        text = (resp.choices[0].message.content or "").strip()
        usage = getattr(resp, "usage", None)
        return Completion(
            text=text,
            model=getattr(resp, "model", None) or model,
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )


async def complete_with_retry(
    client: ChatModelClient,
    model: str,
    system_prompt: str,
    user_prompt: str,
    temperature: float = 0.7,
    max_tokens: int = 2000,
    max_attempts: int = 3,
    initial_delay_s: float = 1.0,
    max_delay_s: float = 10.0,
    sleep=asyncio.sleep,
) -> Completion:
    """
    Retry one model on transient failures (5xx, 429, timeouts); anything else
    propagates on the first attempt.
    """
    # attempt n waits initial * 2**(n-1): 1s, 2s, 4s ... capped
    backoff = exponential_backoff(initial_delay_s / 2.0, cap=max_delay_s)
    completion = await with_retry(
        lambda: client.complete(model, system_prompt, user_prompt, temperature, max_tokens),
        max_attempts=max_attempts,
        backoff=backoff,
        should_retry=is_transient_error,
        sleep=sleep,
        label=f"chat[{model}]",
    )
    logger.info(
        f"[generation] {model} ok: {completion.prompt_tokens} prompt / {completion.completion_tokens} completion tokens"
    )
    return completion
