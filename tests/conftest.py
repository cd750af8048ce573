"""Shared pytest fixtures for drill service tests.

Provides:
- fresh in-memory stores, broadcast hub and workflow runtime per test
  (installed into the module singletons, so app code picks them up)
- ``seed_topic`` / ``ready_session`` factories
- dummy provider keys so model construction never needs real credentials
"""

from __future__ import annotations

import os

os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("DASHSCOPE_API_KEY", "test-dashscope-key")
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")

import pytest

# Populate the tool + workflow registries at test startup
import tools.drill_tools  # noqa: E402, F401
import workflows  # noqa: E402, F401
from config.settings import get_settings  # noqa: E402
from models.drill import (  # noqa: E402
    DrillPhase,
    DrillPlan,
    DrillSession,
    SessionStatus,
    Topic,
)
from services import auth, broadcast, concurrency, datastream, session_store, workflow_runtime  # noqa: E402
from services.broadcast import InMemoryBroadcastHub  # noqa: E402
from services.metrics import get_metrics_collector  # noqa: E402
from services.session_store import InMemoryDrillSessionStore, InMemoryTopicStore  # noqa: E402
from services.workflow_runtime import InMemoryWorkflowStore, WorkflowRuntime  # noqa: E402

OWNER = "user-1"

TOPIC_CONTENT = """\
# Photosynthesis

Plants convert light energy into chemical energy.  The light-dependent
reactions happen in the thylakoid membranes and produce ATP and NADPH.
The Calvin cycle uses them in the stroma to fix CO2 into sugar."""


@pytest.fixture(autouse=True)
def _fresh_singletons(monkeypatch):
    get_settings.cache_clear()
    get_metrics_collector().reset()
    auth.clear_auth_cache()
    datastream.reset_stream_registry()
    concurrency.reset_concurrency_limits()
    monkeypatch.setattr(session_store, "_session_store", InMemoryDrillSessionStore())
    monkeypatch.setattr(session_store, "_topic_store", InMemoryTopicStore())
    monkeypatch.setattr(broadcast, "_hub", InMemoryBroadcastHub())
    monkeypatch.setattr(
        workflow_runtime,
        "_runtime",
        WorkflowRuntime(InMemoryWorkflowStore(), default_max_attempts=3, default_interval_s=0.0),
    )
    yield
    get_settings.cache_clear()


@pytest.fixture
def sessions() -> InMemoryDrillSessionStore:
    return session_store.get_session_store()


@pytest.fixture
def topics() -> InMemoryTopicStore:
    return session_store.get_topic_store()


@pytest.fixture
def hub() -> InMemoryBroadcastHub:
    return broadcast.get_broadcast_hub()


@pytest.fixture
def runtime() -> WorkflowRuntime:
    return workflow_runtime.get_workflow_runtime()


@pytest.fixture
def sample_plan() -> DrillPlan:
    return DrillPlan.from_phases([
        DrillPhase(id="phase-1", title="Light Reactions"),
        DrillPhase(id="phase-2", title="Calvin Cycle"),
        DrillPhase(id="phase-3", title="Apply to Crops"),
    ])


@pytest.fixture
async def seed_topic(topics) -> Topic:
    topic = Topic(id="topic-1", owner_id=OWNER, title="Photosynthesis", content=TOPIC_CONTENT)
    await topics.save(topic)
    return topic


@pytest.fixture
async def ready_session(sessions, seed_topic, sample_plan) -> DrillSession:
    session = DrillSession(
        id="drill-test00000001",
        topic_id=seed_topic.id,
        owner_id=OWNER,
        status=SessionStatus.READY,
        drill_plan=sample_plan,
    )
    await sessions.save(session)
    return session
