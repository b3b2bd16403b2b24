"""
Model service for LLM provider management.
Handles model resolution and builds the generation client.
"""
from typing import Tuple

DEFAULT_PROVIDER = "openai"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

PROVIDERS = ("openai", "ollama")


def resolve_model(model_string: str = None) -> Tuple[str, str]:
    """
    Resolve a model string to provider and model name.

    Args:
        model_string: Format "provider:model_name" (e.g., "openai:gpt-4o-mini")
                     or None for default

    Returns:
        Tuple of (provider, model_name)

    Examples:
        >>> resolve_model("openai:gpt-4o-mini")
        ('openai', 'gpt-4o-mini')

        >>> resolve_model("ollama:qwen2.5:7b")
        ('ollama', 'qwen2.5:7b')

        >>> resolve_model(None)
        ('openai', 'gpt-4o-mini')
    """
    if not model_string:
        return DEFAULT_PROVIDER, DEFAULT_OPENAI_MODEL

    provider, sep, model_name = model_string.partition(":")
    if not sep or provider not in PROVIDERS or not model_name:
        # Fallback to default if format is unexpected
        return DEFAULT_PROVIDER, DEFAULT_OPENAI_MODEL
    return provider, model_name


def build_generator(settings):
    """Construct the generation client named by settings.LLM_MODEL."""
    provider, model_name = resolve_model(settings.LLM_MODEL)
    if provider == "ollama":
        from ..ollama_client import OllamaGenerator
        return OllamaGenerator(
            base_url=settings.OLLAMA_URL,
            model_name=model_name,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
        )

    from ..openai_client import OpenAIGenerator, build_async_client
    return OpenAIGenerator(
        build_async_client(settings),
        model_name=model_name,
        temperature=settings.LLM_TEMPERATURE,
        max_tokens=settings.LLM_MAX_TOKENS,
    )
