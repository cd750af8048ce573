"""DrillPlanner: turns topic content + focus into an ordered phase plan.

Uses PydanticAI with ``output_type=DrillPlanDraft`` for validated structured
output.  Phase ids coming back from the model are normalised into unique
kebab-case slugs before the plan is stored.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field
from pydantic_ai import Agent

from agents.provider import create_model, get_model_for_role, resolve_model_settings
from config.llm_config import LLMConfig
from config.prompts.drill_plan import build_drill_plan_prompt
from models.drill import CustomFocus, DrillPhase, DrillPlan, NoFocus, PriorSessionFocus
from services.concurrency import llm_slot

logger = logging.getLogger(__name__)

PLANNER_LLM_CONFIG = LLMConfig(temperature=0.2, max_tokens=2048)


class PhaseDraft(BaseModel):
    id: str = Field(description="Unique kebab-case slug derived from the title")
    title: str = Field(description="Short descriptive title (3-5 words)")


class DrillPlanDraft(BaseModel):
    """Model output for plan generation."""

    phases: list[PhaseDraft] = Field(min_length=1, max_length=6)


# Module-level agent, reused across requests; the model is chosen per run.
_planner_agent: Agent[None, DrillPlanDraft] = Agent(
    output_type=DrillPlanDraft,
    instructions="You design concise, well-ordered tutoring plans.",
    retries=2,
    defer_model_check=True,
)


def get_planner_agent() -> Agent[None, DrillPlanDraft]:
    return _planner_agent


_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """``"Light-Dependent Reactions!"`` → ``"light-dependent-reactions"``."""
    return _NON_SLUG_RE.sub("-", text.lower()).strip("-")


def normalize_phases(draft: DrillPlanDraft) -> list[DrillPhase]:
    """Slugify ids (falling back to the title) and de-duplicate with ``-2``, ``-3``…"""
    phases: list[DrillPhase] = []
    seen: set[str] = set()
    for index, item in enumerate(draft.phases, start=1):
        title = item.title.strip() or f"Phase {index}"
        base = slugify(item.id) or slugify(title) or f"phase-{index}"
        slug = base
        suffix = 2
        while slug in seen:
            slug = f"{base}-{suffix}"
            suffix += 1
        seen.add(slug)
        phases.append(DrillPhase(id=slug, title=title))
    return phases


async def generate_drill_plan(
    topic_content: str,
    focus_selection: NoFocus | CustomFocus | PriorSessionFocus | None,
    model: str | None = None,
) -> DrillPlan:
    """Ask the model for a plan and return it with every phase ``incomplete``.

    Errors propagate; the calling workflow step owns the retry policy.
    """
    prompt = build_drill_plan_prompt(topic_content, focus_selection)
    async with llm_slot():
        result = await _planner_agent.run(
            prompt,
            model=create_model(model or get_model_for_role("plan")),
            model_settings=resolve_model_settings(PLANNER_LLM_CONFIG),
        )
    phases = normalize_phases(result.output)
    logger.info("Generated drill plan with %d phases: %s", len(phases), [p.id for p in phases])
    return DrillPlan.from_phases(phases)
