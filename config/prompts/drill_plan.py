"""Drill plan prompt: turn topic content + focus into 3-4 conversational phases."""

from __future__ import annotations

from config.prompts.templating import interpolate_prompt_variables
from models.drill import CustomFocus, NoFocus, PriorSessionFocus

DRILL_PLAN_PROMPT = """\
You are designing a lesson plan for a tutoring drill session. The student will be \
quizzed about a learning topic through a series of conversational phases.

<topic_content>
{{topicContent}}
</topic_content>

{{focusSection}}

## Instructions

Create a drill plan with 3-4 phases that will guide the tutoring conversation.

{{phaseGuidelines}}

### Output Format

For each phase, provide:
- **id**: A unique kebab-case slug derived from the title (e.g. "light-dependent-reactions")
- **title**: A short, descriptive title (3-5 words)"""

CUSTOM_FOCUS_SECTION = """\
## Focus Area

The student wants to focus specifically on: {{focusSelectionValue}}

Tailor the phases to this focus area while still covering it thoroughly."""

PRIOR_FOCUS_SECTION = """\
## Focus Areas from Previous Drill

The student wants to work on these areas identified in a previous drill session:

<focus_areas>
{{focusAreas}}
</focus_areas>

Create phases that directly address these focus areas. Each phase should target \
one or more of them."""

_SHARED_GUIDELINES = """\
3. **Final Phase**: The last phase MUST be an application phase that asks the student \
to apply their knowledge to a specific situation or problem
4. **Distinct Concepts**: Each phase covers a different concept; avoid overlap between phases
5. **Specific Concepts**: Each phase targets a narrow, specific concept; avoid broad phrasing"""

EVERYTHING_GUIDELINES = f"""\
### Phase Guidelines

1. **Coverage**: The phases together cover the key concepts of the topic content
2. **Progression**: Order phases from foundational concepts to more advanced ones
{_SHARED_GUIDELINES}"""

CUSTOM_FOCUS_GUIDELINES = f"""\
### Phase Guidelines

1. **Focus Alignment**: Every phase relates directly to the student's focus area
2. **Different Aspects**: Each phase covers a different aspect of the focus area
{_SHARED_GUIDELINES}"""

PRIOR_FOCUS_GUIDELINES = f"""\
### Phase Guidelines

1. **Address Focus Areas**: Each phase targets one or more of the listed focus areas
2. **Complete Coverage**: All listed focus areas are addressed across the phases
{_SHARED_GUIDELINES}"""


def build_drill_plan_prompt(
    topic_content: str,
    focus_selection: NoFocus | CustomFocus | PriorSessionFocus | None,
) -> str:
    """Build the plan-generation prompt for a topic and focus."""
    focus_section = ""
    guidelines = EVERYTHING_GUIDELINES
    if isinstance(focus_selection, CustomFocus):
        focus_section = interpolate_prompt_variables(
            CUSTOM_FOCUS_SECTION, {"focusSelectionValue": focus_selection.value}
        )
        guidelines = CUSTOM_FOCUS_GUIDELINES
    elif isinstance(focus_selection, PriorSessionFocus):
        areas = "\n".join(
            f"{i}. {area}" for i, area in enumerate(focus_selection.focus_areas, start=1)
        )
        focus_section = interpolate_prompt_variables(PRIOR_FOCUS_SECTION, {"focusAreas": areas})
        guidelines = PRIOR_FOCUS_GUIDELINES

    return interpolate_prompt_variables(DRILL_PLAN_PROMPT, {
        "topicContent": topic_content,
        "focusSection": focus_section,
        "phaseGuidelines": guidelines,
    })
