"""Plan generator workflow: runs once per session, then opens the chat."""

from __future__ import annotations

import logging
import uuid

from pydantic import BaseModel

from agents.drill_planner import generate_drill_plan
from models.drill import DrillPlan, DrillSession, SessionStatus
from services.session_store import get_session_store, get_topic_store
from services.workflow_runtime import (
    WorkflowContext,
    get_workflow_runtime,
    register_step,
    register_workflow,
)
from workflows.drill_message import (
    WORKFLOW_NAME as MESSAGE_WORKFLOW,
    DrillMessageInput,
    message_workflow_id,
)

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "generate_drill_plan"


class DrillPlanInput(BaseModel):
    session_id: str
    owner_id: str


class PlanSource(BaseModel):
    topic_content: str
    # Already planned (re-trigger after success, or a resumed run)
    existing_plan: DrillPlan | None = None


def plan_workflow_id(session_id: str) -> str:
    return f"drill-plan:{session_id}"


def kickoff_turn_id(session_id: str) -> str:
    """Deterministic so a replayed plan workflow never opens the chat twice."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, plan_workflow_id(session_id)))


# ── Steps ────────────────────────────────────────────────────


@register_step("load_session_and_topic", output_type=PlanSource)
async def load_session_and_topic(session_id: str, owner_id: str) -> PlanSource:
    session = await get_session_store().require(session_id, owner_id)
    topic = await get_topic_store().require(session.topic_id, owner_id)
    return PlanSource(
        topic_content=topic.content,
        existing_plan=session.drill_plan,
    )


@register_step("generate_plan", output_type=DrillPlan, retries_allowed=True)
async def generate_plan(session_id: str, owner_id: str, topic_content: str) -> DrillPlan:
    session = await get_session_store().require(session_id, owner_id)
    return await generate_drill_plan(topic_content, session.focus_selection)


@register_step("store_plan", output_type=bool)
async def store_plan(session_id: str, plan: DrillPlan) -> bool:
    """Attach the plan and mark the session ready.  Returns False if already ready."""

    def apply(session: DrillSession) -> None:
        if session.drill_plan is None:
            session.drill_plan = plan
        if session.status == SessionStatus.PREPARING:
            changed.append(session.advance_status(SessionStatus.READY))

    changed: list[bool] = []
    await get_session_store().mutate(session_id, apply)
    return bool(changed and changed[0])


# ── Workflow ─────────────────────────────────────────────────


@register_workflow(WORKFLOW_NAME, input_type=DrillPlanInput)
async def generate_drill_plan_workflow(ctx: WorkflowContext, inp: DrillPlanInput) -> None:
    source: PlanSource = await ctx.run_step(load_session_and_topic, inp.session_id, inp.owner_id)

    plan = source.existing_plan
    if plan is None:
        plan = await ctx.run_step(generate_plan, inp.session_id, inp.owner_id, source.topic_content)
    newly_ready = await ctx.run_step(store_plan, inp.session_id, plan)
    logger.info(
        "Drill plan stored for %s (%d phases, newly_ready=%s)",
        inp.session_id, len(plan.phases), newly_ready,
    )

    turn_id = kickoff_turn_id(inp.session_id)
    ctx.start_child(
        MESSAGE_WORKFLOW,
        DrillMessageInput(
            session_id=inp.session_id,
            owner_id=inp.owner_id,
            turn_message_id=turn_id,
            user_message=None,
        ),
        workflow_id=message_workflow_id(inp.session_id, turn_id),
    )


def start_drill_plan(session_id: str, owner_id: str) -> str:
    return get_workflow_runtime().start_workflow(
        WORKFLOW_NAME,
        DrillPlanInput(session_id=session_id, owner_id=owner_id),
        workflow_id=plan_workflow_id(session_id),
    )
