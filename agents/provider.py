"""Agent provider: builds PydanticAI model instances from ``provider/model`` names."""

from __future__ import annotations

import logging

from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from config.llm_config import LLMConfig
from config.settings import get_settings

logger = logging.getLogger(__name__)

# Provider prefix → (base_url, settings_key_attr) for OpenAI-compatible endpoints
_PROVIDER_MAP: dict[str, tuple[str, str]] = {
    "dashscope": ("https://dashscope.aliyuncs.com/compatible-mode/v1", "dashscope_api_key"),
}


def create_model(model_name: str | None = None) -> Model:
    """Build a PydanticAI model instance.

    Parses the ``"provider/model"`` format (e.g. ``"openai/gpt-4.1"``,
    ``"anthropic/claude-sonnet-4-5"``) and creates the appropriate model.

    - ``anthropic/*`` → native :class:`AnthropicModel`
    - ``gemini/*`` → native :class:`GoogleModel`
    - ``dashscope/*`` → :class:`OpenAIChatModel` via Alibaba's compatible endpoint
    - ``openai/*`` or bare name → :class:`OpenAIChatModel` with OpenAI API

    Args:
        model_name: Model identifier in ``"provider/model"`` format.
                    Defaults to ``settings.default_model``.
    """
    settings = get_settings()
    name = model_name or settings.default_model

    if "/" in name:
        prefix, model_id = name.split("/", 1)

        if prefix == "anthropic":
            from pydantic_ai.models.anthropic import AnthropicModel
            from pydantic_ai.providers.anthropic import AnthropicProvider

            provider = AnthropicProvider(api_key=settings.anthropic_api_key)
            return AnthropicModel(model_id, provider=provider)

        if prefix == "gemini":
            from pydantic_ai.models.google import GoogleModel
            from pydantic_ai.providers.google import GoogleProvider

            provider = GoogleProvider(api_key=settings.gemini_api_key)
            return GoogleModel(model_id, provider=provider)

        if prefix in _PROVIDER_MAP:
            base_url, key_attr = _PROVIDER_MAP[prefix]
            provider = OpenAIProvider(api_key=getattr(settings, key_attr, ""), base_url=base_url)
            return OpenAIChatModel(model_id, provider=provider)

    model_id = name.split("/", 1)[1] if name.startswith("openai/") else name
    provider = OpenAIProvider(api_key=settings.openai_api_key)
    return OpenAIChatModel(model_id, provider=provider)


def get_model_for_role(role: str) -> str:
    """Map a drill agent role to its configured model name.

    Role → Settings field:
    - chat    → drill_model
    - plan    → plan_model
    - summary → summary_model
    """
    settings = get_settings()
    return {
        "chat": settings.drill_model,
        "plan": settings.plan_model,
        "summary": settings.summary_model,
    }.get(role, settings.default_model)


def resolve_model_settings(agent_config: LLMConfig) -> ModelSettings:
    """Layer an agent's :class:`LLMConfig` over the global .env defaults."""
    merged = get_settings().get_default_llm_config().merge(agent_config)
    return merged.to_model_settings()
