import asyncio
from typing import AsyncIterator, Dict, List

from openai import AsyncOpenAI, OpenAIError

from .exceptions import GenerationError
from .logging_config import logger


def build_async_client(settings) -> AsyncOpenAI:
    if not settings.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not set. Put it in env or .env (server-side only).")
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.GENERATION_TIMEOUT_S)


class OpenAIGenerator:
    """Chat completions against the OpenAI API."""

    provider = "openai"

    def __init__(self, client: AsyncOpenAI, model_name: str = "gpt-4o-mini",
                 temperature: float = 0.2, max_tokens: int = 2000):
        self.client = client
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def complete(self, messages: List[Dict]) -> str:
        logger.info("Sent request to OpenAI API", model=self.model_name, messages=len(messages))
        try:
            res = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            raise GenerationError(f"OpenAI completion failed: {e}") from e
        return res.choices[0].message.content or ""

    async def stream(self, messages: List[Dict]) -> AsyncIterator[str]:
        logger.info("Sent streaming request to OpenAI API", model=self.model_name, messages=len(messages))
        try:
            stream_response = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
            )
            async for chunk in stream_response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if delta:
                    yield delta
        except (OpenAIError, asyncio.TimeoutError) as e:
            raise GenerationError(f"OpenAI stream failed: {e}") from e
