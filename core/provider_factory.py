"""Build a provider from merged configuration."""

from core.gemini_interface import GeminiInterface
from core.provider_base import BaseProvider, ProviderError
from core.server_interface import ServerInterface


def create_provider(config: dict) -> BaseProvider:
    """Instantiate the configured backend.

    Raises:
        ProviderError: unknown provider name or missing credentials.
    """
    name = (config.get("provider") or "llamacpp").lower()
    common = dict(
        model=config.get("model"),
        temperature=config.get("temperature", 0.7),
        top_p=config.get("top_p", 0.9),
        top_k=config.get("top_k", 40),
        max_tokens=config.get("max_tokens", 2048),
        timeout_seconds=config.get("timeout", 60),
    )
    if name in ("llamacpp", "llama.cpp", "llama"):
        return ServerInterface(endpoint=config.get("endpoint") or "http://127.0.0.1:8080", **common)
    if name == "gemini":
        return GeminiInterface(api_key=config.get("api_key"), **common)
    raise ProviderError("parley", f"Unknown provider: {name!r} (expected llamacpp or gemini)")
