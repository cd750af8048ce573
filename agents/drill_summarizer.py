"""DrillSummarizer: rates each plan phase and proposes next focus areas."""

from __future__ import annotations

import logging

from pydantic_ai import Agent

from agents.provider import create_model, get_model_for_role, resolve_model_settings
from config.llm_config import LLMConfig
from config.prompts.drill_summary import build_drill_summary_prompt
from models.drill import CompletionData, DrillSession, PhaseRating
from services.concurrency import llm_slot

logger = logging.getLogger(__name__)

SUMMARY_LLM_CONFIG = LLMConfig(temperature=0.2, max_tokens=1024)

_summary_agent: Agent[None, CompletionData] = Agent(
    output_type=CompletionData,
    instructions="You evaluate tutoring sessions fairly and concisely.",
    retries=2,
    defer_model_check=True,
)


def get_summary_agent() -> Agent[None, CompletionData]:
    return _summary_agent


def align_ratings(completion: CompletionData, session: DrillSession) -> CompletionData:
    """Keep exactly one rating per plan phase, in plan order.

    Ratings for unknown phases are dropped; phases the model skipped are
    rated ``incomplete``.
    """
    plan = session.drill_plan
    if plan is None:
        return completion.model_copy(update={"phases_ratings": []})
    by_id = {r.phase_id: r for r in completion.phases_ratings}
    ratings = [
        by_id.get(phase.id) or PhaseRating(phase_id=phase.id, rating="incomplete")
        for phase in plan.phases
    ]
    return completion.model_copy(update={"phases_ratings": ratings})


async def summarize_drill_session(
    session: DrillSession,
    topic_content: str,
    model: str | None = None,
) -> CompletionData:
    prompt = build_drill_summary_prompt(topic_content, session.chat_events, session.drill_plan)
    async with llm_slot():
        result = await _summary_agent.run(
            prompt,
            model=create_model(model or get_model_for_role("summary")),
            model_settings=resolve_model_settings(SUMMARY_LLM_CONFIG),
        )
    completion = align_ratings(result.output, session)
    logger.info(
        "Summarized session %s: %s",
        session.id,
        {r.phase_id: r.rating for r in completion.phases_ratings},
    )
    return completion
