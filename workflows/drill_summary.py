"""Summarization workflow: rates a finished drill and suggests next focus areas."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from agents.drill_summarizer import summarize_drill_session
from errors.exceptions import InvalidRequestError
from models.drill import CompletionData, DrillSession, SessionStatus
from services.session_store import get_session_store, get_topic_store
from services.workflow_runtime import (
    WorkflowContext,
    get_workflow_runtime,
    register_step,
    register_workflow,
)

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "summarize_drill_session"


class DrillSummaryInput(BaseModel):
    session_id: str
    owner_id: str


def summary_workflow_id(session_id: str) -> str:
    return f"drill-summary:{session_id}"


@register_step("load_finished_session", output_type=DrillSession)
async def load_finished_session(session_id: str, owner_id: str) -> DrillSession:
    session = await get_session_store().require(session_id, owner_id)
    if session.status not in (SessionStatus.CHAT_COMPLETED, SessionStatus.COMPLETED):
        raise InvalidRequestError(f"Session {session_id} has not been finished")
    return session


@register_step("generate_summary", output_type=CompletionData, retries_allowed=True)
async def generate_summary(session: DrillSession) -> CompletionData:
    topic = await get_topic_store().require(session.topic_id)
    return await summarize_drill_session(session, topic.content)


@register_step("store_completion", output_type=bool)
async def store_completion(session_id: str, completion: CompletionData) -> bool:
    def apply(session: DrillSession) -> None:
        session.completion_data = completion
        session.advance_status(SessionStatus.COMPLETED)

    await get_session_store().mutate(session_id, apply)
    return True


@register_workflow(WORKFLOW_NAME, input_type=DrillSummaryInput)
async def summarize_drill_session_workflow(ctx: WorkflowContext, inp: DrillSummaryInput) -> None:
    session: DrillSession = await ctx.run_step(load_finished_session, inp.session_id, inp.owner_id)
    if session.completion_data is not None:
        logger.info("Session %s already summarized", inp.session_id)
        return
    completion = await ctx.run_step(generate_summary, session)
    await ctx.run_step(store_completion, inp.session_id, completion)


def start_drill_summary(session_id: str, owner_id: str) -> str:
    return get_workflow_runtime().start_workflow(
        WORKFLOW_NAME,
        DrillSummaryInput(session_id=session_id, owner_id=owner_id),
        workflow_id=summary_workflow_id(session_id),
    )
