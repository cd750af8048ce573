"""Tests for agents/provider.py: model creation, role mapping and settings."""

from pydantic_ai.models.openai import OpenAIChatModel

from agents.provider import create_model, get_model_for_role, resolve_model_settings
from config.llm_config import LLMConfig
from config.settings import get_settings


# ── create_model ──────────────────────────────────────────────


def test_create_model_default():
    model = create_model()
    assert isinstance(model, OpenAIChatModel)
    assert model.model_name == "gpt-4.1"


def test_create_model_bare_name():
    model = create_model("gpt-4o")
    assert isinstance(model, OpenAIChatModel)
    assert model.model_name == "gpt-4o"


def test_create_model_anthropic():
    from pydantic_ai.models.anthropic import AnthropicModel

    model = create_model("anthropic/claude-sonnet-4-5")
    assert isinstance(model, AnthropicModel)


def test_create_model_dashscope():
    model = create_model("dashscope/qwen-turbo-latest")
    assert isinstance(model, OpenAIChatModel)
    assert model.model_name == "qwen-turbo-latest"
    assert model.client.api_key
    assert "dashscope" in str(model.client.base_url)


def test_create_model_gemini():
    from pydantic_ai.models.google import GoogleModel

    model = create_model("gemini/gemini-2.5-flash")
    assert isinstance(model, GoogleModel)
    assert model.model_name == "gemini-2.5-flash"


# ── Roles ─────────────────────────────────────────────────────


def test_model_for_role():
    settings = get_settings()
    assert get_model_for_role("chat") == settings.drill_model
    assert get_model_for_role("plan") == settings.plan_model
    assert get_model_for_role("summary") == settings.summary_model


def test_unknown_role_falls_back_to_default():
    assert get_model_for_role("nonexistent") == get_settings().default_model


def test_every_role_builds_a_model():
    for role in ("chat", "plan", "summary"):
        assert create_model(get_model_for_role(role)) is not None


# ── Model settings ────────────────────────────────────────────


def test_agent_config_layered_over_env_defaults(monkeypatch):
    monkeypatch.setenv("TEMPERATURE", "0.9")
    monkeypatch.setenv("SEED", "7")
    get_settings.cache_clear()

    resolved = resolve_model_settings(LLMConfig(temperature=0.2, max_tokens=512))

    assert resolved["temperature"] == 0.2  # agent wins
    assert resolved["seed"] == 7  # env default kept
    assert resolved["max_tokens"] == 512
    assert "model" not in resolved
