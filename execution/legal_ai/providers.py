"""
External Model Providers

Closed set of model providers a firm may plug its own API key into (BYOK),
with the capability table the settings screen and key validation read from.
Adding a provider means adding an enum member and a table entry.
"""

from enum import Enum
from dataclasses import dataclass


class Provider(str, Enum):
    """Supported external model providers."""
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"
    OLLAMA = "ollama"


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static facts about a provider."""
    display_name: str
    docs_url: str
    models: tuple[str, ...]
    key_prefix: str = ""
    min_key_length: int = 20
    requires_key: bool = True

    def to_dict(self) -> dict:
        return {
            "display_name": self.display_name,
            "docs_url": self.docs_url,
            "models": list(self.models),
            "requires_key": self.requires_key,
        }


PROVIDER_CAPABILITIES = {
    Provider.OPENAI: ProviderCapabilities(
        display_name="OpenAI",
        docs_url="https://platform.openai.com/docs/api-reference",
        models=("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"),
        key_prefix="sk-",
        min_key_length=21,
    ),
    Provider.OPENROUTER: ProviderCapabilities(
        display_name="OpenRouter",
        docs_url="https://openrouter.ai/docs",
        models=(
            "openai/gpt-4o",
            "openai/gpt-4o-mini",
            "anthropic/claude-3.5-sonnet",
            "anthropic/claude-3-opus",
            "google/gemini-pro-1.5",
            "meta-llama/llama-3.1-70b-instruct",
            "deepseek/deepseek-chat",
        ),
        key_prefix="sk-or-",
        min_key_length=31,
    ),
    Provider.DEEPSEEK: ProviderCapabilities(
        display_name="DeepSeek",
        docs_url="https://platform.deepseek.com/docs",
        models=("deepseek-chat", "deepseek-coder"),
        min_key_length=21,
    ),
    Provider.OLLAMA: ProviderCapabilities(
        display_name="Ollama (Local)",
        docs_url="https://github.com/ollama/ollama/blob/main/docs/api.md",
        models=("llama3", "mistral", "codellama", "phi3"),
        min_key_length=0,
        requires_key=False,
    ),
}


def parse_provider(value) -> Provider:
    """
    Coerce a raw provider value into a Provider.

    Raises:
        ValueError: If the value does not name a supported provider
    """
    if isinstance(value, Provider):
        return value
    try:
        return Provider(str(value).strip().lower())
    except ValueError:
        supported = ", ".join(p.value for p in Provider)
        raise ValueError(f"Unsupported provider '{value}' (supported: {supported})") from None


def get_capabilities(provider) -> ProviderCapabilities:
    """Capability table entry for a provider."""
    return PROVIDER_CAPABILITIES[parse_provider(provider)]


def get_supported_models(provider) -> list[str]:
    return list(get_capabilities(provider).models)
