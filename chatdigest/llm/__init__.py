"""LLM provider registry and task routing."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatdigest.llm.base import BaseLLMProvider

PROVIDERS: dict[str, type[BaseLLMProvider]] = {}

_provider_instances: dict[str, BaseLLMProvider] = {}


def register_provider(name: str):
    """Decorator to register an LLM provider."""

    def decorator(cls):
        PROVIDERS[name] = cls
        return cls

    return decorator


def get_provider_for_task(config: dict, task: str) -> tuple[BaseLLMProvider, str]:
    """Return the provider instance for ``task`` and the model it should use."""
    from chatdigest.config import get_llm_task_config

    task_cfg = get_llm_task_config(config, task)
    provider_type = task_cfg["provider_type"]
    provider_name = task_cfg["provider_name"]

    # One instance per configured provider
    if provider_name not in _provider_instances:
        if provider_type not in PROVIDERS:
            raise ValueError(f"Unknown LLM provider type: {provider_type}")
        cls = PROVIDERS[provider_type]
        _provider_instances[provider_name] = cls(
            api_key=task_cfg["api_key"],
            base_url=task_cfg["base_url"],
            default_model=task_cfg["model"],
            max_retries=task_cfg["max_retries"],
            timeout=task_cfg["timeout"],
            json_mode=task_cfg["json_mode"],
        )

    return _provider_instances[provider_name], task_cfg["model"]


def reset_providers() -> None:
    _provider_instances.clear()


# Import implementations to trigger registration
from chatdigest.llm.anthropic_provider import AnthropicProvider  # noqa: E402, F401
from chatdigest.llm.openai_compat import OpenAICompatibleProvider  # noqa: E402, F401
