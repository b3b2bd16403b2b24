import asyncio
import json
from typing import AsyncIterator, Dict, List

import aiohttp

from .exceptions import GenerationError
from .logging_config import logger


class OllamaGenerator:
    """Chat completions against a local Ollama server."""

    provider = "ollama"

    def __init__(self, base_url: str = "http://ollama:11434", model_name: str = "qwen2.5:7b",
                 temperature: float = 0.2, max_tokens: int = 2000):
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _payload(self, messages: List[Dict], stream: bool) -> Dict:
        return {
            "model": self.model_name,
            "messages": messages,
            "stream": stream,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }

    async def complete(self, messages: List[Dict]) -> str:
        parts = []
        async for delta in self.stream(messages):
            parts.append(delta)
        return "".join(parts)

    async def stream(self, messages: List[Dict]) -> AsyncIterator[str]:
        """
        Stream chat completion tokens from Ollama.
        Yields the text of each message delta.
        """
        logger.info("Sent request to Ollama model", model=self.model_name, messages=len(messages))
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.base_url}/api/chat",
                    json=self._payload(messages, stream=True),
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.content:
                        line = line.decode().strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            logger.warning("Skipping malformed Ollama line", line=line[:80])
                            continue
                        if "error" in data:
                            raise GenerationError(f"Ollama error: {data['error']}")
                        text = (data.get("message") or {}).get("content")
                        if text:
                            yield text
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GenerationError(f"Ollama request failed: {e}") from e


async def _ollama_up(base_url: str, timeout_sec: int = 60) -> bool:
    """Wait until Ollama /api/tags is reachable (up to timeout_sec)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_sec
    async with aiohttp.ClientSession() as session:
        while loop.time() < deadline:
            try:
                async with session.get(f"{base_url}/api/tags", timeout=aiohttp.ClientTimeout(total=3)) as r:
                    if r.ok:
                        return True
            except (aiohttp.ClientError, asyncio.TimeoutError):
                pass
            await asyncio.sleep(1.0)
    return False


async def ensure_ollama_model(base_url: str, name: str, timeout_sec: int = 90) -> bool:
    """
    Make sure the configured Ollama model is present, pulling it if needed.
    Returns False when Ollama is unreachable or the pull fails; the API
    still starts and the first request surfaces the error.
    """
    base_url = base_url.rstrip("/")
    if not await _ollama_up(base_url, timeout_sec=timeout_sec):
        logger.warning("Ollama not reachable; skipping model pre-pull", url=base_url)
        return False

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base_url}/api/tags", timeout=aiohttp.ClientTimeout(total=5)) as r:
                r.raise_for_status()
                data = await r.json()
            if any((m.get("name") or "").startswith(name) for m in data.get("models", [])):
                return True

            logger.info("Pulling missing Ollama model", model=name)
            async with session.post(
                f"{base_url}/api/pull",
                json={"name": name, "stream": False},
                timeout=aiohttp.ClientTimeout(total=600),
            ) as r:
                r.raise_for_status()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning("Failed to pull Ollama model", model=name, error=str(e))
        return False
    return True
