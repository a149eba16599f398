"""
chatusage - Auxiliary Model Clients

Completion clients used by conversation summarization, selected by the
provider prefix of the configured model id.
"""

from typing import Dict, Optional

from .base import AdapterConfig, CompletionClient
from .anthropic_adapter import AnthropicCompletionClient
from .openai_adapter import OpenAICompletionClient
from .stub_adapter import StubCompletionClient


def split_model_id(model: str) -> tuple:
    """Split "provider/model" into its parts; bare ids default to anthropic."""
    if "/" in model:
        provider, name = model.split("/", 1)
        return provider.lower(), name
    return "anthropic", model


def create_completion_client(
    model: str,
    provider_keys: Optional[Dict[str, Optional[str]]] = None,
    timeout: int = 30,
) -> CompletionClient:
    """
    Build the completion client for a model id.

    Raises:
        ValueError: On an unknown provider or a missing API key
    """
    provider, name = split_model_id(model)
    keys = provider_keys or {}

    if provider == "stub":
        return StubCompletionClient(model=name)

    clients = {
        "anthropic": AnthropicCompletionClient,
        "openai": OpenAICompletionClient,
    }
    client_cls = clients.get(provider)
    if client_cls is None:
        raise ValueError(f"Unsupported summary model provider: {provider}")

    api_key = keys.get(provider)
    if not api_key:
        raise ValueError(f"No API key configured for provider: {provider}")

    return client_cls(AdapterConfig(api_key=api_key, timeout=timeout), name)


__all__ = [
    "AdapterConfig",
    "CompletionClient",
    "AnthropicCompletionClient",
    "OpenAICompletionClient",
    "StubCompletionClient",
    "create_completion_client",
    "split_model_id",
]
