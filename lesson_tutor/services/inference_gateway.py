"""
Client for the external text-inference provider.

Each call is hedged: ``hedge_width`` identical chat-completion requests race and
the first one that succeeds wins. The losers are left to finish on their own
since providers cannot cancel a generation mid-flight. A failed round is retried
with capped exponential backoff, and when every round fails ``generate`` returns
an unsuccessful ``GenerationResult`` instead of raising.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from openai import AsyncOpenAI

from lesson_tutor.config import settings

logger = logging.getLogger(__name__)

# Strong references to abandoned hedge requests so they are not garbage-collected mid-flight.
_abandoned: set[asyncio.Future] = set()


@dataclass(frozen=True)
class GenerationResult:
    text: str
    success: bool
    provider: str


class EmptyCompletionError(Exception):
    pass


class HedgeExhaustedError(Exception):
    def __init__(self, errors: list[BaseException]):
        super().__init__("; ".join(repr(e) for e in errors) or "no requests were made")
        self.errors = errors


def _release(task: asyncio.Future) -> None:
    _abandoned.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned hedge request failed: %r", exc)


def _abandon(tasks) -> None:
    for task in tasks:
        _abandoned.add(task)
        task.add_done_callback(_release)


class InferenceGateway:
    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        *,
        fast_client: Optional[AsyncOpenAI] = None,
        fast_model: Optional[str] = None,
        max_attempts: int = 3,
        hedge_width: int = 2,
        backoff_base: float = 1.0,
        backoff_cap: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        provider_name: str = "groq",
    ):
        self.client = client
        self.model = model
        self.fast_client = fast_client
        self.fast_model = fast_model or model
        self.max_attempts = max_attempts
        self.hedge_width = hedge_width
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.provider_name = provider_name
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_cap)

    async def generate(
        self,
        messages: list[dict],
        max_tokens: int = 200,
        temperature: float = 0.0,
    ) -> GenerationResult:
        if self.fast_client is not None:
            try:
                text = await self._complete_once(self.fast_client, self.fast_model, messages, max_tokens, temperature)
                return GenerationResult(text=text, success=True, provider="fast")
            except Exception as e:
                logger.warning("Fast inference provider failed, falling back to hedged provider: %r", e)

        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.debug("Inference attempt %d: racing %d requests", attempt, self.hedge_width)
                text = await self._hedged(messages, max_tokens, temperature)
                return GenerationResult(text=text, success=True, provider=self.provider_name)
            except HedgeExhaustedError as e:
                logger.error("All hedged inference requests failed (attempt %d/%d): %s", attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_delay(attempt))

        return GenerationResult(text="", success=False, provider=f"{self.provider_name}_failed")

    async def _hedged(self, messages, max_tokens, temperature) -> str:
        pending = {
            asyncio.ensure_future(self._complete_once(self.client, self.model, messages, max_tokens, temperature))
            for _ in range(self.hedge_width)
        }
        errors: list[BaseException] = []
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is None:
                    _abandon(pending)
                    return task.result()
                errors.append(exc)
        raise HedgeExhaustedError(errors)

    async def _complete_once(self, client, model, messages, max_tokens, temperature) -> str:
        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        text = response.choices[0].message.content if response.choices else None
        if not text:
            raise EmptyCompletionError(f"Empty completion from {model}")
        return text


def build_gateway() -> InferenceGateway:
    # SDK-level retries are off; retrying is the gateway's job.
    client = AsyncOpenAI(
        api_key=settings.inference_api_key,
        base_url=settings.inference_base_url,
        timeout=settings.inference_timeout,
        max_retries=0,
    )
    fast_client = None
    if settings.fast_inference_api_key:
        fast_client = AsyncOpenAI(
            api_key=settings.fast_inference_api_key,
            base_url=settings.fast_inference_base_url,
            timeout=settings.inference_timeout,
            max_retries=0,
        )
    return InferenceGateway(
        client,
        settings.inference_model,
        fast_client=fast_client,
        fast_model=settings.fast_inference_model,
        max_attempts=settings.hedge_attempts,
        hedge_width=settings.hedge_width,
        backoff_base=settings.hedge_backoff_base,
        backoff_cap=settings.hedge_backoff_cap,
    )
