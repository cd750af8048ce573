"""End-to-end tests for the drill workflows with scripted models.

The tutor, planner and summarizer agents are driven by PydanticAI
``FunctionModel`` so every scenario is deterministic:

- plan generation opens the chat with a tutor message (no user event)
- a student turn streams deltas + one complete and persists one reply
- a mid-reply ``mark_phase_complete`` splits the reply in two and
  publishes ``phase-complete`` before the second segment
- the model request budget stops a tool loop with a well-formed transcript
"""

from __future__ import annotations

import json

import pytest
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models.function import AgentInfo, DeltaToolCall, FunctionModel

from agents.drill_agent import DrillTurnResult, get_drill_agent
from agents.drill_planner import get_planner_agent
from agents.drill_summarizer import get_summary_agent
from config.prompts.drill import KICKOFF_PROMPT
from errors.exceptions import InvalidRequestError
from models.drill import (
    CompletionData,
    DrillSession,
    PhaseCompleteEvent,
    PhaseStatus,
    SessionStatus,
)
from services.broadcast import session_channel
from services.metrics import get_metrics_collector
from workflows.drill_message import (
    DrillMessageInput,
    message_workflow_id,
    persist_assistant_turn,
    record_user_turn,
)
from workflows.drill_plan import DrillPlanInput, kickoff_turn_id, plan_workflow_id
from workflows.drill_summary import DrillSummaryInput, summary_workflow_id

OWNER = "user-1"


# ── Scripted models ──────────────────────────────────────────


def _has_tool_return(message: ModelMessage) -> bool:
    return isinstance(message, ModelRequest) and any(
        isinstance(p, ToolReturnPart) for p in message.parts
    )


def _text_model(*chunks: str) -> FunctionModel:
    async def stream_fn(messages: list[ModelMessage], info: AgentInfo):
        for chunk in chunks:
            yield chunk

    return FunctionModel(stream_function=stream_fn)


def _tool_then_text_model(phase_id: str, before: list[str], after: list[str], seen: list) -> FunctionModel:
    """First request: text then ``mark_phase_complete``.  Follow-up: text only."""

    async def stream_fn(messages: list[ModelMessage], info: AgentInfo):
        seen.append(messages[-1])
        if _has_tool_return(messages[-1]):
            for chunk in after:
                yield chunk
            return
        for chunk in before:
            yield chunk
        yield {0: DeltaToolCall(
            name="mark_phase_complete",
            json_args=json.dumps({"phase_id": phase_id}),
            tool_call_id="call-1",
        )}

    return FunctionModel(stream_function=stream_fn)


def _plan_model(phases: list[dict]) -> FunctionModel:
    def plan_fn(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        return ModelResponse(parts=[ToolCallPart(info.output_tools[0].name, {"phases": phases})])

    return FunctionModel(plan_fn)


async def _collect(sub) -> list[dict]:
    events = []
    while (payload := await sub.get(timeout=0.01)) is not None:
        events.append(json.loads(payload))
    return events


async def _send(runtime, session_id: str, message: str | None, turn_id: str) -> str:
    return await runtime.run_workflow(
        "process_drill_message",
        DrillMessageInput(
            session_id=session_id,
            owner_id=OWNER,
            turn_message_id=turn_id,
            user_message=message,
        ),
        workflow_id=message_workflow_id(session_id, turn_id),
    )


# ── Scenario A: plan generation + kickoff ────────────────────


class TestPlanAndKickoff:
    @pytest.mark.asyncio
    async def test_plan_then_tutor_opens(self, runtime, sessions, seed_topic, hub):
        session = DrillSession(topic_id=seed_topic.id, owner_id=OWNER)
        await sessions.save(session)
        sub = await hub.subscribe(session_channel(session.id))

        phases = [
            {"id": "Light Reactions", "title": "Light Reactions"},
            {"id": "calvin cycle", "title": "Calvin Cycle"},
            {"id": "", "title": "Apply to Crops"},
        ]
        with get_planner_agent().override(model=_plan_model(phases)), \
                get_drill_agent().override(model=_text_model("Hi! ", "What do plants need for photosynthesis?")):
            await runtime.run_workflow(
                "generate_drill_plan",
                DrillPlanInput(session_id=session.id, owner_id=OWNER),
                workflow_id=plan_workflow_id(session.id),
            )
            await runtime.drain()

        stored = await sessions.get(session.id)
        assert stored.status == SessionStatus.READY
        assert [p.id for p in stored.drill_plan.phases] == ["light-reactions", "calvin-cycle", "apply-to-crops"]
        assert all(p.status == PhaseStatus.INCOMPLETE for p in stored.drill_plan.plan_progress.values())

        # Tutor speaks first: exactly one assistant event, no user event before it
        messages = stored.chat_messages()
        assert len(messages) == 1
        assert messages[0].event_data.role == "assistant"
        assert messages[0].event_data.content == "Hi! What do plants need for photosynthesis?"

        # The kickoff prompt lives only in the model transcript
        transcript = stored.load_model_messages()
        first = transcript[0]
        assert isinstance(first, ModelRequest)
        assert any(isinstance(p, UserPromptPart) and p.content == KICKOFF_PROMPT for p in first.parts)
        assert stored.session_data.transcript_turn_ids == [kickoff_turn_id(session.id)]

        events = await _collect(sub)
        assert events[-1] == {"type": "complete", "messageId": messages[0].id}

    @pytest.mark.asyncio
    async def test_existing_plan_not_regenerated(self, runtime, sessions, seed_topic, sample_plan):
        session = DrillSession(topic_id=seed_topic.id, owner_id=OWNER, drill_plan=sample_plan)
        await sessions.save(session)

        def refuse(messages, info):
            raise AssertionError("planner should not be called")

        with get_planner_agent().override(model=FunctionModel(refuse)), \
                get_drill_agent().override(model=_text_model("Hello.")):
            await runtime.run_workflow(
                "generate_drill_plan",
                DrillPlanInput(session_id=session.id, owner_id=OWNER),
                workflow_id=plan_workflow_id(session.id),
            )
            await runtime.drain()

        stored = await sessions.get(session.id)
        assert stored.status == SessionStatus.READY
        assert [p.id for p in stored.drill_plan.phases] == ["phase-1", "phase-2", "phase-3"]

    @pytest.mark.asyncio
    async def test_rerun_does_not_open_chat_twice(self, runtime, sessions, seed_topic):
        session = DrillSession(topic_id=seed_topic.id, owner_id=OWNER)
        await sessions.save(session)
        plan = _plan_model([{"id": "a", "title": "A"}])

        with get_planner_agent().override(model=plan), \
                get_drill_agent().override(model=_text_model("Hello.")):
            for _ in range(2):
                await runtime.run_workflow(
                    "generate_drill_plan",
                    DrillPlanInput(session_id=session.id, owner_id=OWNER),
                    workflow_id=plan_workflow_id(session.id),
                )
                await runtime.drain()

        assert len((await sessions.get(session.id)).chat_messages()) == 1


# ── Scenario B: a student turn ───────────────────────────────


class TestStudentTurn:
    @pytest.mark.asyncio
    async def test_streams_and_persists_one_reply(self, runtime, sessions, ready_session, hub):
        sub = await hub.subscribe(session_channel(ready_session.id))

        with get_drill_agent().override(model=_text_model("Good ", "start. ", "Where does it happen?")):
            await _send(runtime, ready_session.id, "What is photosynthesis?", "turn-1")

        stored = await sessions.get(ready_session.id)
        messages = stored.chat_messages()
        assert [(m.id, m.event_data.role) for m in messages[:1]] == [("turn-1", "user")]
        assert messages[0].event_data.content == "What is photosynthesis?"
        assistant = [m for m in messages if m.event_data.role == "assistant"]
        assert len(assistant) == 1
        assert assistant[0].event_data.content == "Good start. Where does it happen?"

        events = await _collect(sub)
        deltas = [e for e in events if e["type"] == "delta"]
        completes = [e for e in events if e["type"] == "complete"]
        assert deltas
        assert all(d["messageId"] == assistant[0].id for d in deltas)
        assert "".join(d["content"] for d in deltas) == "Good start. Where does it happen?"
        assert completes == [{"type": "complete", "messageId": assistant[0].id}]
        assert events[-1]["type"] == "complete"

    @pytest.mark.asyncio
    async def test_rerun_of_finished_turn_is_noop(self, runtime, sessions, ready_session):
        with get_drill_agent().override(model=_text_model("Reply.")):
            await _send(runtime, ready_session.id, "Hi", "turn-1")
            await _send(runtime, ready_session.id, "Hi", "turn-1")
        stored = await sessions.get(ready_session.id)
        assert len(stored.chat_messages()) == 2

    @pytest.mark.asyncio
    async def test_turn_number_reaches_prompt(self, runtime, ready_session):
        seen_instructions: list[str] = []

        async def stream_fn(messages, info):
            seen_instructions.append(messages[-1].instructions or "")
            yield "Ok."

        with get_drill_agent().override(model=FunctionModel(stream_function=stream_fn)):
            await _send(runtime, ready_session.id, "First answer", "turn-1")
            await _send(runtime, ready_session.id, "Second answer", "turn-2")

        assert "You are on turn 1 of 20" in seen_instructions[0]
        assert "You are on turn 2 of 20" in seen_instructions[1]

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, runtime, sessions, ready_session, hub):
        sub = await hub.subscribe(session_channel(ready_session.id))
        attempts = 0

        async def stream_fn(messages, info):
            nonlocal attempts
            attempts += 1
            yield "Partial "
            if attempts == 1:
                raise ConnectionError("provider reset the connection")
            yield "answer."

        with get_drill_agent().override(model=FunctionModel(stream_function=stream_fn)):
            await _send(runtime, ready_session.id, "Hi", "turn-1")

        assert attempts == 2
        stored = await sessions.get(ready_session.id)
        assistant = [m for m in stored.chat_messages() if m.event_data.role == "assistant"]
        assert [m.event_data.content for m in assistant] == ["Partial answer."]

        completes = [e for e in await _collect(sub) if e["type"] == "complete"]
        assert completes == [{"type": "complete", "messageId": assistant[0].id}]
        breakdown = get_metrics_collector().snapshot()["steps"]["stream_response"]["status_breakdown"]
        assert breakdown == {"retry": 1, "ok": 1}

    @pytest.mark.asyncio
    async def test_not_ready_session_rejected(self, runtime, sessions, seed_topic):
        session = DrillSession(topic_id=seed_topic.id, owner_id=OWNER)
        await sessions.save(session)
        with pytest.raises(InvalidRequestError):
            await _send(runtime, session.id, "Hi", "turn-1")

    @pytest.mark.asyncio
    async def test_persist_is_idempotent(self, runtime, sessions, ready_session):
        with get_drill_agent().override(model=_text_model("Reply.")):
            await _send(runtime, ready_session.id, "Hi", "turn-1")
        record = await runtime.store.get(message_workflow_id(ready_session.id, "turn-1"))
        result = DrillTurnResult.model_validate(record.steps["2:stream_response"])
        stored = await sessions.get(ready_session.id)
        transcript_len = len(stored.session_data.model_messages)

        assert await persist_assistant_turn(ready_session.id, "turn-1", result) == 0
        again = await sessions.get(ready_session.id)
        assert len(again.chat_messages()) == 2
        assert len(again.session_data.model_messages) == transcript_len

    @pytest.mark.asyncio
    async def test_resumed_persist_keeps_later_writes(self, runtime, sessions, ready_session, monkeypatch):
        original_save = sessions.save

        async def failing_save(session):
            if any(m.event_data.role == "assistant" for m in session.chat_messages()):
                raise ConnectionError("store went away")
            await original_save(session)

        monkeypatch.setattr(sessions, "save", failing_save)
        with get_drill_agent().override(model=_text_model("Reply.")):
            with pytest.raises(ConnectionError):
                await _send(runtime, ready_session.id, "Hi", "turn-1")
            monkeypatch.setattr(sessions, "save", original_save)

            # Another write lands before the failed turn is resumed.
            await record_user_turn(ready_session.id, "turn-2", "Next question")
            await _send(runtime, ready_session.id, "Hi", "turn-1")

        stored = await sessions.get(ready_session.id)
        messages = [(m.id, m.event_data.role, m.event_data.content) for m in stored.chat_messages()]
        assert ("turn-2", "user", "Next question") in messages
        assert [c for _, role, c in messages if role == "assistant"] == ["Reply."]
        assert "turn-1" in stored.session_data.transcript_turn_ids


# ── Scenario C: phase completion mid-reply ───────────────────


class TestPhaseCompletion:
    @pytest.mark.asyncio
    async def test_tool_call_splits_reply(self, runtime, sessions, ready_session, hub):
        sub = await hub.subscribe(session_channel(ready_session.id))
        seen: list[ModelMessage] = []
        model = _tool_then_text_model(
            "phase-1",
            before=["Exactly, ", "ATP and NADPH."],
            after=["Next: ", "what does the Calvin cycle make?"],
            seen=seen,
        )

        with get_drill_agent().override(model=model):
            await _send(runtime, ready_session.id, "They make ATP and NADPH", "turn-1")

        stored = await sessions.get(ready_session.id)
        assert stored.drill_plan.status_of("phase-1") == PhaseStatus.COMPLETE
        assert stored.drill_plan.status_of("phase-2") == PhaseStatus.INCOMPLETE

        assistant = [m for m in stored.chat_messages() if m.event_data.role == "assistant"]
        assert [m.event_data.content for m in assistant] == [
            "Exactly, ATP and NADPH.",
            "Next: what does the Calvin cycle make?",
        ]
        phase_events = [e for e in stored.chat_events if isinstance(e, PhaseCompleteEvent)]
        assert [e.event_data.phase_id for e in phase_events] == ["phase-1"]

        events = await _collect(sub)
        first_id, second_id = assistant[0].id, assistant[1].id
        phase_idx = events.index({"type": "phase-complete", "phaseId": "phase-1"})
        first_complete = events.index({"type": "complete", "messageId": first_id})
        second_complete = events.index({"type": "complete", "messageId": second_id})
        assert first_complete < phase_idx < second_complete
        assert all(
            e["messageId"] == second_id
            for e in events[phase_idx + 1:]
            if e["type"] == "delta"
        )

        # The follow-up request already sees the updated plan
        assert "1. [complete] Light Reactions" in (seen[-1].instructions or "")

    @pytest.mark.asyncio
    async def test_unknown_phase_id_reported_to_model(self, runtime, sessions, ready_session, hub):
        sub = await hub.subscribe(session_channel(ready_session.id))
        seen: list[ModelMessage] = []
        model = _tool_then_text_model("phase-99", before=[], after=["Let's continue."], seen=seen)

        with get_drill_agent().override(model=model):
            await _send(runtime, ready_session.id, "Done?", "turn-1")

        tool_return = next(p for p in seen[-1].parts if isinstance(p, ToolReturnPart))
        assert tool_return.content["status"] == "error"
        assert tool_return.content["valid_phase_ids"] == ["phase-1", "phase-2", "phase-3"]

        stored = await sessions.get(ready_session.id)
        assert all(p.status == PhaseStatus.INCOMPLETE for p in stored.drill_plan.plan_progress.values())
        assert not any(e["type"] == "phase-complete" for e in await _collect(sub))
        # No pre-tool text, so only the post-tool segment is persisted
        assistant = [m for m in stored.chat_messages() if m.event_data.role == "assistant"]
        assert [m.event_data.content for m in assistant] == ["Let's continue."]

    @pytest.mark.asyncio
    async def test_already_complete_is_noop(self, runtime, sessions, ready_session, hub):
        await sessions.mutate(ready_session.id, lambda s: s.complete_phase("phase-1", "evt-0"))
        sub = await hub.subscribe(session_channel(ready_session.id))
        seen: list[ModelMessage] = []
        model = _tool_then_text_model("phase-1", before=["Yes."], after=["Moving on."], seen=seen)

        with get_drill_agent().override(model=model):
            await _send(runtime, ready_session.id, "Again", "turn-1")

        tool_return = next(p for p in seen[-1].parts if isinstance(p, ToolReturnPart))
        assert tool_return.content == {"status": "ok", "phase_id": "phase-1", "already_complete": True}
        stored = await sessions.get(ready_session.id)
        assert len([e for e in stored.chat_events if isinstance(e, PhaseCompleteEvent)]) == 1
        assert not any(e["type"] == "phase-complete" for e in await _collect(sub))


# ── Model request budget ─────────────────────────────────────


class TestStepBudget:
    @pytest.mark.asyncio
    async def test_tool_loop_stops_after_budget(self, runtime, sessions, ready_session):
        calls = 0

        async def stream_fn(messages, info):
            nonlocal calls
            calls += 1
            done = sum(1 for m in messages if _has_tool_return(m))
            yield f"Step {done + 1}. "
            yield {0: DeltaToolCall(
                name="mark_phase_complete",
                json_args=json.dumps({"phase_id": f"phase-{done + 1}"}),
                tool_call_id=f"call-{done + 1}",
            )}

        with get_drill_agent().override(model=FunctionModel(stream_function=stream_fn)):
            await _send(runtime, ready_session.id, "Go", "turn-1")

        assert calls == 2
        record = await runtime.store.get(message_workflow_id(ready_session.id, "turn-1"))
        result = record.steps["2:stream_response"]
        assert result["model_requests"] == 2
        assert result["stopped_by_budget"] is True
        assert result["completed_phases"] == ["phase-1", "phase-2"]

        stored = await sessions.get(ready_session.id)
        assert stored.drill_plan.status_of("phase-2") == PhaseStatus.COMPLETE
        assert stored.drill_plan.status_of("phase-3") == PhaseStatus.INCOMPLETE
        assistant = [m.event_data.content for m in stored.chat_messages() if m.event_data.role == "assistant"]
        assert assistant == ["Step 1. ", "Step 2. "]

        # Every tool call in the transcript has its return
        transcript = stored.load_model_messages()
        assert _has_tool_return(transcript[-1])
        returned = {
            p.tool_call_id for m in transcript if isinstance(m, ModelRequest)
            for p in m.parts if isinstance(p, ToolReturnPart)
        }
        called = {
            p.tool_call_id for m in transcript if isinstance(m, ModelResponse)
            for p in m.parts if isinstance(p, ToolCallPart)
        }
        assert called == returned == {"call-1", "call-2"}


# ── Summary ──────────────────────────────────────────────────


def _summary_model(payload: dict) -> FunctionModel:
    def summary_fn(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        return ModelResponse(parts=[ToolCallPart(info.output_tools[0].name, payload)])

    return FunctionModel(summary_fn)


class TestSummary:
    @pytest.mark.asyncio
    async def test_summary_aligned_to_plan(self, runtime, sessions, ready_session):
        def finish(s: DrillSession) -> None:
            s.append_chat_message("a1", "assistant", "What makes ATP?")
            s.append_chat_message("u1", "user", "Light reactions")
            s.advance_status(SessionStatus.CHAT_COMPLETED)

        await sessions.mutate(ready_session.id, finish)
        payload = {
            "phasesRatings": [
                {"phaseId": "phase-2", "rating": "weak"},
                {"phaseId": "phase-1", "rating": "strong"},
                {"phaseId": "made-up", "rating": "so-so"},
            ],
            "nextFocusAreas": ["Calvin cycle inputs", "RuBisCO role"],
        }

        with get_summary_agent().override(model=_summary_model(payload)):
            await runtime.run_workflow(
                "summarize_drill_session",
                DrillSummaryInput(session_id=ready_session.id, owner_id=OWNER),
                workflow_id=summary_workflow_id(ready_session.id),
            )

        stored = await sessions.get(ready_session.id)
        assert stored.status == SessionStatus.COMPLETED
        ratings = [(r.phase_id, r.rating) for r in stored.completion_data.phases_ratings]
        assert ratings == [("phase-1", "strong"), ("phase-2", "weak"), ("phase-3", "incomplete")]
        assert stored.completion_data.next_focus_areas == ["Calvin cycle inputs", "RuBisCO role"]

    @pytest.mark.asyncio
    async def test_unfinished_session_rejected(self, runtime, ready_session):
        with pytest.raises(InvalidRequestError):
            await runtime.run_workflow(
                "summarize_drill_session",
                DrillSummaryInput(session_id=ready_session.id, owner_id=OWNER),
            )

    @pytest.mark.asyncio
    async def test_already_summarized_skips_model(self, runtime, sessions, ready_session):
        def done(s: DrillSession) -> None:
            s.advance_status(SessionStatus.COMPLETED)
            s.completion_data = CompletionData(phases_ratings=[], next_focus_areas=["a", "b"])

        await sessions.mutate(ready_session.id, done)

        def refuse(messages, info):
            raise AssertionError("summarizer should not be called")

        with get_summary_agent().override(model=FunctionModel(refuse)):
            await runtime.run_workflow(
                "summarize_drill_session",
                DrillSummaryInput(session_id=ready_session.id, owner_id=OWNER),
            )

