"""DrillAgent: Socratic tutor chat with interruptible phase-completion tool.

One invocation streams the tutor's reply for a single student turn:

1. Builds the system prompt from the in-flight session (plan progress, turn
   pacing) on every model request, so a phase completed mid-run is visible
   to the follow-up request.
2. Iterates the PydanticAI graph with ``Agent.iter()``; text parts are
   forwarded token-by-token to the :class:`DeltaPublisher`.
3. A tool call closes the current message segment (``complete`` is published
   before the tool runs); text after the tool becomes a new segment with a
   new message id.
4. Stops after ``max_steps`` model requests.

Tools live in :mod:`tools.drill_tools` and mutate ``DrillDeps.session``
(the in-flight copy) besides persisting through the store.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Sequence

from pydantic import BaseModel, Field
from pydantic_ai import Agent, RunContext
from pydantic_ai.messages import (
    ModelMessage,
    PartDeltaEvent,
    PartStartEvent,
    TextPart,
    TextPartDelta,
    ToolCallPart,
)
from pydantic_core import to_jsonable_python

from agents.provider import create_model, get_model_for_role, resolve_model_settings
from config.llm_config import LLMConfig
from config.prompts.drill import build_drill_system_prompt
from config.settings import get_settings
from models.drill import DrillSession, Topic, generate_event_id
from services.concurrency import llm_slot
from services.delta_publisher import DeltaPublisher
from services.metrics import get_metrics_collector
from services.session_store import DrillSessionStore
from tools.registry import TOOLSET_DRILL, get_tools

logger = logging.getLogger(__name__)

# Short conversational replies; the prompt already asks for 1-2 sentences.
DRILL_LLM_CONFIG = LLMConfig(temperature=0.4, max_tokens=1024)


# ── Agent Dependencies ──────────────────────────────────────


@dataclass
class DrillDeps:
    """Shared mutable state for one streaming invocation.

    ``session`` is the in-flight copy the tools update in place; it is never
    treated as durable truth (the engine re-reads the store afterwards).
    """

    session: DrillSession
    topic: Topic
    publisher: DeltaPublisher
    store: DrillSessionStore
    turn_number: int
    target_turns: int
    turn_id: str = ""
    completed_phases: list[str] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.session.id


# ── Turn Output ──────────────────────────────────────────────


class MessageSegment(BaseModel):
    """One assistant message produced between tool boundaries."""

    message_id: str
    content: str


class DrillTurnResult(BaseModel):
    """What a streaming invocation produced, in model-call order."""

    segments: list[MessageSegment] = Field(default_factory=list)
    # JSON form of the new ModelMessages (user prompt, responses, tool returns)
    new_messages: list[dict[str, Any]] = Field(default_factory=list)
    completed_phases: list[str] = Field(default_factory=list)
    model_requests: int = 0
    stopped_by_budget: bool = False


# ── Agent ────────────────────────────────────────────────────


@lru_cache
def get_drill_agent() -> Agent[DrillDeps, str]:
    """Build the chat agent once tools are registered.

    No model is bound here; it is chosen per run so tests can override it.
    """
    import tools.drill_tools  # noqa: F401  populate registry

    agent: Agent[DrillDeps, str] = Agent(
        deps_type=DrillDeps,
        toolsets=[get_tools([TOOLSET_DRILL])],
        model_settings=resolve_model_settings(DRILL_LLM_CONFIG),
        defer_model_check=True,
    )

    @agent.instructions
    def drill_instructions(ctx: RunContext[DrillDeps]) -> str:
        deps = ctx.deps
        return build_drill_system_prompt(
            topic_content=deps.topic.content,
            focus_selection=deps.session.focus_selection,
            drill_plan=deps.session.drill_plan,
            turn_number=deps.turn_number,
            target_turns=deps.target_turns,
        )

    return agent


def _text_from_event(event: Any) -> str:
    if isinstance(event, PartStartEvent) and isinstance(event.part, TextPart):
        return event.part.content
    if isinstance(event, PartDeltaEvent) and isinstance(event.delta, TextPartDelta):
        return event.delta.content_delta
    return ""


async def stream_drill_turn(
    deps: DrillDeps,
    user_prompt: str,
    message_history: Sequence[ModelMessage],
    *,
    max_steps: int | None = None,
    model_name: str | None = None,
) -> DrillTurnResult:
    """Stream one tutor reply, publishing deltas as they arrive.

    Args:
        deps: In-flight session state plus the publisher/store the tools use.
        user_prompt: The student's message (or the session kickoff prompt).
        message_history: Stored transcript preceding this turn.
        max_steps: Model request budget; defaults to ``settings.drill_max_steps``.
        model_name: Override for ``settings.drill_model``.

    Returns:
        Segments to persist plus the new transcript entries.
    """
    settings = get_settings()
    budget = max_steps or settings.drill_max_steps
    publisher = deps.publisher
    agent = get_drill_agent()
    model = create_model(model_name or get_model_for_role("chat"))

    result = DrillTurnResult()
    segment_id = generate_event_id()
    segment_parts: list[str] = []
    token_count = 0
    pending_request: ModelMessage | None = None
    started = time.monotonic()

    async def close_segment() -> None:
        nonlocal segment_id, segment_parts
        text = "".join(segment_parts)
        if text:
            await publisher.complete(segment_id)
            result.segments.append(MessageSegment(message_id=segment_id, content=text))
        segment_id = generate_event_id()
        segment_parts = []

    async with llm_slot(), agent.iter(
        user_prompt,
        message_history=list(message_history),
        deps=deps,
        model=model,
    ) as run:
        async for node in run:
            if Agent.is_model_request_node(node):
                if result.model_requests >= budget:
                    # Keep the pending tool returns so the transcript stays well-formed.
                    pending_request = node.request
                    result.stopped_by_budget = True
                    break
                result.model_requests += 1
                async with node.stream(run.ctx) as request_stream:
                    async for event in request_stream:
                        text = _text_from_event(event)
                        if not text:
                            continue
                        token_count += 1
                        segment_parts.append(text)
                        await publisher.push(segment_id, text)
            elif Agent.is_call_tools_node(node):
                if any(isinstance(p, ToolCallPart) for p in node.model_response.parts):
                    # Boundary: finish the pre-tool message before the tool runs.
                    await close_segment()
        new_messages = run.all_messages()[len(message_history):]
        if pending_request is not None and (not new_messages or new_messages[-1] != pending_request):
            new_messages.append(pending_request)

    await close_segment()
    result.new_messages = to_jsonable_python(new_messages)
    result.completed_phases = list(deps.completed_phases)

    get_metrics_collector().record_stream(
        tokens_in=token_count,
        deltas_out=publisher.delta_count,
        events_out=publisher.event_count,
    )
    logger.info(json.dumps({
        "event": "drill_turn_end",
        "session_id": deps.session_id,
        "turn_id": deps.turn_id,
        "segments": len(result.segments),
        "model_requests": result.model_requests,
        "stopped_by_budget": result.stopped_by_budget,
        "completed_phases": result.completed_phases,
        "tokens_in": token_count,
        "deltas_out": publisher.delta_count,
        "total_latency_ms": round((time.monotonic() - started) * 1000, 1),
    }, ensure_ascii=False))
    return result
