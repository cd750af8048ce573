"""Durable drill workflows.  Importing this package registers every workflow and step."""

from __future__ import annotations

from services.workflow_runtime import get_workflow_runtime
from workflows.drill_message import (  # noqa: F401
    DrillMessageInput,
    message_workflow_id,
    start_drill_message,
)
from workflows.drill_plan import plan_workflow_id, start_drill_plan  # noqa: F401
from workflows.drill_summary import start_drill_summary  # noqa: F401


def reply_in_flight(session_id: str) -> bool:
    """True while this process is still producing a tutor reply for the session."""
    running = get_workflow_runtime().running_ids()
    turn_prefix = message_workflow_id(session_id, "")
    return plan_workflow_id(session_id) in running or any(
        wid.startswith(turn_prefix) for wid in running
    )
