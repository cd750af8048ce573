"""Reusable LLM generation parameters.

LLMConfig is a standalone Pydantic model that can be:
- embedded in Settings as the global default,
- declared per-agent for task-specific tuning (chat vs. plan vs. summary),
- passed per-call for one-off overrides.

Priority chain (low → high):
    .env global defaults  →  Agent-level LLMConfig  →  per-call overrides
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_ai.settings import ModelSettings


class LLMConfig(BaseModel):
    """LLM generation parameters shared by the drill agents.

    All fields are optional.  ``None`` means "use the model's default".
    """

    model: str | None = Field(default=None, description="provider/model identifier")
    max_tokens: int | None = Field(default=None, description="Max tokens to generate")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    seed: int | None = Field(default=None, description="Random seed for reproducibility")
    timeout: float | None = Field(default=None, description="Per-request timeout in seconds")

    def merge(self, overrides: LLMConfig) -> LLMConfig:
        """Return a new LLMConfig: *self* as base, *overrides* wins on non-None fields."""
        base = self.model_dump(exclude_none=True)
        base.update(overrides.model_dump(exclude_none=True))
        return LLMConfig(**base)

    def to_model_settings(self) -> ModelSettings:
        """Convert to a PydanticAI ``ModelSettings`` mapping (model name excluded)."""
        settings: ModelSettings = {}
        for field in ("max_tokens", "temperature", "top_p", "seed", "timeout"):
            val = getattr(self, field)
            if val is not None:
                settings[field] = val  # type: ignore[literal-required]
        return settings
