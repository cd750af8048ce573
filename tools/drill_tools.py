"""Drill tool registrations: the tutor's only side-effecting action."""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic_ai import RunContext

from agents.drill_agent import DrillDeps
from models.drill import PhaseStatus, generate_event_id
from tools.registry import TOOLSET_DRILL, register_tool

logger = logging.getLogger(__name__)


def _ok(data: dict[str, Any]) -> dict[str, Any]:
    return {"status": "ok", **data}


def _error(reason: str, **extra: Any) -> dict[str, Any]:
    return {"status": "error", "reason": reason, **extra}


@register_tool(toolset=TOOLSET_DRILL)
async def mark_phase_complete(ctx: RunContext[DrillDeps], phase_id: str) -> dict[str, Any]:
    """Mark a drill plan phase as complete once the student has demonstrated understanding of it.

    Args:
        phase_id: The id of the phase to mark complete, exactly as shown in the plan.
    """
    deps = ctx.deps
    plan = deps.session.drill_plan
    if plan is None or not plan.phases:
        return _error("This session has no drill plan.")

    phase_id = phase_id.strip()
    if not plan.has_phase(phase_id):
        return _error(
            f"Unknown phase id {phase_id!r}.",
            valid_phase_ids=[p.id for p in plan.phases],
        )
    if plan.status_of(phase_id) == PhaseStatus.COMPLETE:
        return _ok({"phase_id": phase_id, "already_complete": True})

    event_id = generate_event_id()
    flipped: list[bool] = []
    stored = await deps.store.mutate(
        deps.session_id, lambda s: flipped.append(s.complete_phase(phase_id, event_id))
    )
    # Keep the in-flight copy in step with what was written.
    deps.session.drill_plan = stored.drill_plan
    deps.session.session_data.chat_events = stored.session_data.chat_events
    if not flipped[0]:
        return _ok({"phase_id": phase_id, "already_complete": True})
    deps.completed_phases.append(phase_id)
    await deps.publisher.phase_complete(phase_id)

    logger.info(json.dumps({
        "event": "phase_complete",
        "session_id": deps.session_id,
        "phase_id": phase_id,
        "turn_id": deps.turn_id,
    }))

    next_phase = stored.drill_plan.current_phase() if stored.drill_plan else None
    if next_phase is None:
        return _ok({"phase_id": phase_id, "next_phase": None, "hint": "All phases are complete. Wrap up the session."})
    return _ok({
        "phase_id": phase_id,
        "next_phase": {"id": next_phase.id, "title": next_phase.title},
        "hint": f"Move on to '{next_phase.title}'.",
    })
