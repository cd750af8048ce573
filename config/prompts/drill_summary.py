"""Drill summary prompt: rate each phase and suggest next focus areas."""

from __future__ import annotations

from config.prompts.templating import interpolate_prompt_variables
from models.drill import ChatMessageEvent, DrillPlan, PhaseCompleteEvent

DRILL_SUMMARY_PROMPT = """\
You are evaluating a tutoring drill session. The student was quizzed about a \
learning topic through a series of conversational phases.

<topic_content>
{{topicContent}}
</topic_content>

<drill_phases>
{{drillPhasesDescription}}
</drill_phases>

<conversation_history>
{{conversationHistory}}
</conversation_history>

## Instructions

Evaluate the student's performance in this drill session and provide:

1. **Phase Ratings**: For each phase in the drill plan, rate the student's understanding:
   - **strong**: solid understanding, answered correctly with minimal help
   - **so-so**: partial understanding, needed some hints or made minor errors
   - **weak**: struggled significantly, needed substantial help or made major errors
   - **incomplete**: the phase was not covered or barely touched

2. **Next Focus Areas**: Identify 2-3 concept areas the student should work on next:
   - Specific concepts from the topic content where the student showed weakness
   - Concise names (3-6 words each)

Base your evaluation strictly on the conversation history provided."""


def format_conversation_history(events: list[ChatMessageEvent | PhaseCompleteEvent]) -> str:
    lines: list[str] = []
    for event in events:
        match event:
            case ChatMessageEvent(event_data=data):
                speaker = "Student" if data.role == "user" else "Tutor"
                lines.append(f"{speaker}: {data.content}")
            case PhaseCompleteEvent():
                continue
    if not lines:
        return "(No conversation recorded)"
    return "\n\n".join(lines)


def format_phases_description(plan: DrillPlan | None) -> str:
    if plan is None or not plan.phases:
        return "(No drill plan)"
    return "\n".join(
        f"{i}. {phase.title} (id: {phase.id}, status: {plan.status_of(phase.id).value})"
        for i, phase in enumerate(plan.phases, start=1)
    )


def build_drill_summary_prompt(
    topic_content: str,
    events: list[ChatMessageEvent | PhaseCompleteEvent],
    plan: DrillPlan | None,
) -> str:
    return interpolate_prompt_variables(DRILL_SUMMARY_PROMPT, {
        "topicContent": topic_content,
        "drillPhasesDescription": format_phases_description(plan),
        "conversationHistory": format_conversation_history(events),
    })
