"""Conversation step engine: one durable workflow per drill turn.

Steps, in order (each output recorded and replayed on resume):

1. ``load_context``: fetch the session, verify the owner, fetch the topic.
2. ``record_user_turn``: append the student's message (skipped when the
   tutor opens the session).  Idempotent by turn id.
3. ``stream_response``: run the tutor agent, streaming deltas to the
   session channel.  Retried on transient provider failures; a retry
   re-streams from scratch.
4. ``reconcile_session``: re-apply phase completions the tools reported
   but a concurrent write lost; records only the re-applied phase ids.
5. ``persist_assistant_turn``: append the assistant segments and the
   transcript entries in one read-modify-write against the latest stored
   copy, so a resume never writes back a stale snapshot.
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel

from agents.drill_agent import DrillDeps, DrillTurnResult, stream_drill_turn
from config.prompts.drill import KICKOFF_PROMPT
from config.settings import get_settings
from errors.exceptions import InvalidRequestError
from models.drill import DrillSession, SessionStatus, Topic
from services.broadcast import get_broadcast_hub
from services.delta_publisher import DeltaPublisher
from services.session_store import get_session_store, get_topic_store
from services.workflow_runtime import (
    WorkflowContext,
    get_workflow_runtime,
    register_step,
    register_workflow,
)

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "process_drill_message"


class DrillMessageInput(BaseModel):
    session_id: str
    owner_id: str
    turn_message_id: str
    # None → the tutor speaks first
    user_message: str | None = None


class TurnContext(BaseModel):
    session: DrillSession
    topic: Topic


def message_workflow_id(session_id: str, turn_message_id: str) -> str:
    return f"drill-message:{session_id}:{turn_message_id}"


# ── Steps ────────────────────────────────────────────────────


@register_step("load_context", output_type=TurnContext)
async def load_context(session_id: str, owner_id: str) -> TurnContext:
    session = await get_session_store().require(session_id, owner_id)
    if session.status != SessionStatus.READY:
        raise InvalidRequestError(
            f"Session {session_id} is '{session.status.value}', not accepting messages"
        )
    topic = await get_topic_store().require(session.topic_id)
    return TurnContext(session=session, topic=topic)


@register_step("record_user_turn", output_type=int)
async def record_user_turn(session_id: str, turn_message_id: str, message: str) -> int:
    """Append the user ChatEvent; returns the user turn count afterwards."""
    session = await get_session_store().mutate(
        session_id, lambda s: s.append_chat_message(turn_message_id, "user", message)
    )
    return session.user_turn_count()


@register_step("stream_response", output_type=DrillTurnResult, retries_allowed=True)
async def stream_response(
    session_id: str,
    owner_id: str,
    topic: Topic,
    turn_message_id: str,
    user_message: str | None,
    turn_number: int,
) -> DrillTurnResult:
    store = get_session_store()
    # Fresh read on every attempt so a retry sees phases an earlier attempt completed.
    session = await store.require(session_id, owner_id)
    history = session.load_model_messages()

    async with DeltaPublisher(get_broadcast_hub(), session_id) as publisher:
        deps = DrillDeps(
            session=session,
            topic=topic,
            publisher=publisher,
            store=store,
            turn_number=turn_number,
            target_turns=get_settings().drill_target_turns,
            turn_id=turn_message_id,
        )
        return await stream_drill_turn(
            deps,
            user_message if user_message is not None else KICKOFF_PROMPT,
            history,
        )


def _apply_completions(session: DrillSession, completed_phases: list[str]) -> list[str]:
    """Complete any reported phase the stored copy still shows incomplete."""
    if session.drill_plan is None:
        return []
    return [
        phase_id for phase_id in completed_phases
        if session.drill_plan.has_phase(phase_id) and session.complete_phase(phase_id)
    ]


@register_step("reconcile_session", output_type=list[str])
async def reconcile_session(session_id: str, completed_phases: list[str]) -> list[str]:
    """Returns the phase ids that had to be re-applied."""
    reapplied: list[str] = []

    def apply(session: DrillSession) -> None:
        reapplied.extend(_apply_completions(session, completed_phases))

    if completed_phases:
        await get_session_store().mutate(session_id, apply)
    if reapplied:
        logger.warning("Re-applied lost phase completions %s on session %s", reapplied, session_id)
    return reapplied


@register_step("persist_assistant_turn", output_type=int)
async def persist_assistant_turn(
    session_id: str, turn_message_id: str, result: DrillTurnResult
) -> int:
    """Write segments and transcript onto the latest copy; returns segments appended."""
    appended = 0

    def apply(session: DrillSession) -> None:
        nonlocal appended
        _apply_completions(session, result.completed_phases)
        appended = sum(
            1 for seg in result.segments
            if session.append_chat_message(seg.message_id, "assistant", seg.content)
        )
        session.extend_model_messages(turn_message_id, result.new_messages)

    await get_session_store().mutate(session_id, apply)
    return appended


# ── Workflow ─────────────────────────────────────────────────


@register_workflow(
    WORKFLOW_NAME,
    input_type=DrillMessageInput,
    single_flight_key=lambda inp: inp.session_id,
)
async def process_drill_message(ctx: WorkflowContext, inp: DrillMessageInput) -> None:
    context: TurnContext = await ctx.run_step(load_context, inp.session_id, inp.owner_id)

    turn_number = context.session.user_turn_count()
    if inp.user_message is not None:
        turn_number = await ctx.run_step(
            record_user_turn, inp.session_id, inp.turn_message_id, inp.user_message
        )

    result: DrillTurnResult = await ctx.run_step(
        stream_response,
        inp.session_id,
        inp.owner_id,
        context.topic,
        inp.turn_message_id,
        inp.user_message,
        turn_number,
    )
    await ctx.run_step(reconcile_session, inp.session_id, result.completed_phases)
    appended = await ctx.run_step(
        persist_assistant_turn, inp.session_id, inp.turn_message_id, result
    )

    logger.info(json.dumps({
        "event": "drill_message_done",
        "workflow_id": ctx.workflow_id,
        "session_id": inp.session_id,
        "turn_number": turn_number,
        "kickoff": inp.user_message is None,
        "segments_appended": appended,
        "completed_phases": result.completed_phases,
    }))


def start_drill_message(inp: DrillMessageInput) -> str:
    """Fire-and-forget one turn; returns the workflow id."""
    return get_workflow_runtime().start_workflow(
        WORKFLOW_NAME,
        inp,
        workflow_id=message_workflow_id(inp.session_id, inp.turn_message_id),
    )
