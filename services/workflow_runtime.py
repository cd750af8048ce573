"""Durable workflow runtime: named steps, recorded outputs, replay on resume.

Workflows and steps are plain async functions registered by name at import
time.  Running a workflow records its input and every completed step's JSON
output under the workflow id.  Re-running the same workflow id (after a crash,
or on an explicit re-trigger) replays recorded step outputs instead of
executing those steps again, so only unfinished work is redone.

Only names and JSON data are persisted, never closures.  A workflow body
must therefore be deterministic in the sequence of steps it calls for a
given input and given step outputs.

Retry policy is per step: ``retries_allowed`` steps are retried at a fixed
interval up to ``max_attempts``; a :class:`DrillError` that is not
``retryable`` fails immediately.  Exhausted retries raise
:class:`UpstreamUnavailableError`.

Usage::

    @register_step("load_context")
    async def load_context(session_id: str) -> SessionSnapshot: ...

    @register_workflow("process_drill_message", input_type=DrillMessageInput)
    async def process_drill_message(ctx: WorkflowContext, inp: DrillMessageInput) -> None:
        snapshot = await ctx.run_step(load_context, inp.session_id)

    get_workflow_runtime().start_workflow("process_drill_message", inp)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, Field, TypeAdapter

from errors.exceptions import DrillError, UpstreamUnavailableError, WorkflowError
from services.metrics import get_metrics_collector

logger = logging.getLogger(__name__)

WorkflowStatus = Literal["pending", "succeeded", "failed"]


# ── Registry ─────────────────────────────────────────────────


@dataclass
class RegisteredStep:
    """Metadata for a registered step."""

    name: str
    func: Callable[..., Awaitable[Any]]
    adapter: TypeAdapter
    retries_allowed: bool = False
    max_attempts: int | None = None  # None → settings.step_max_attempts
    interval_s: float | None = None  # None → settings.step_retry_interval_s


@dataclass
class RegisteredWorkflow:
    """Metadata for a registered workflow."""

    name: str
    func: Callable[..., Awaitable[None]]
    input_type: type[BaseModel]
    # Maps input → key; invocations sharing a key run one at a time.
    single_flight_key: Callable[[Any], str] | None = None


_steps: dict[str, RegisteredStep] = {}
_workflows: dict[str, RegisteredWorkflow] = {}


def register_step(
    name: str | None = None,
    *,
    output_type: Any = None,
    retries_allowed: bool = False,
    max_attempts: int | None = None,
    interval_s: float | None = None,
):
    """Decorator to register an async function as a durable step.

    The function stays directly callable; ``WorkflowContext.run_step`` adds
    recording, replay and retries.  ``output_type`` drives JSON round-tripping
    of the recorded output (``None`` for steps that return nothing).
    """

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        step_name = name or func.__name__
        if step_name in _steps and _steps[step_name].func is not func:
            raise WorkflowError(f"Step {step_name!r} registered twice")
        _steps[step_name] = RegisteredStep(
            name=step_name,
            func=func,
            adapter=TypeAdapter(output_type if output_type is not None else type(None)),
            retries_allowed=retries_allowed,
            max_attempts=max_attempts,
            interval_s=interval_s,
        )
        func.__step_name__ = step_name  # type: ignore[attr-defined]
        return func

    return decorator


def register_workflow(
    name: str,
    *,
    input_type: type[BaseModel],
    single_flight_key: Callable[[Any], str] | None = None,
):
    """Decorator to register ``async def wf(ctx, input) -> None`` as a workflow."""

    def decorator(func: Callable[..., Awaitable[None]]) -> Callable[..., Awaitable[None]]:
        if name in _workflows and _workflows[name].func is not func:
            raise WorkflowError(f"Workflow {name!r} registered twice")
        _workflows[name] = RegisteredWorkflow(
            name=name,
            func=func,
            input_type=input_type,
            single_flight_key=single_flight_key,
        )
        return func

    return decorator


def get_step(step: str | Callable[..., Any]) -> RegisteredStep:
    name = step if isinstance(step, str) else getattr(step, "__step_name__", None)
    if name is None or name not in _steps:
        raise WorkflowError(f"Unknown step: {step!r}")
    return _steps[name]


def get_workflow(name: str) -> RegisteredWorkflow:
    if name not in _workflows:
        raise WorkflowError(f"Unknown workflow: {name!r}")
    return _workflows[name]


def get_step_names() -> list[str]:
    return list(_steps)


def get_workflow_names() -> list[str]:
    return list(_workflows)


# ── Persistence ──────────────────────────────────────────────


class WorkflowRecord(BaseModel):
    """Durable state of one workflow invocation."""

    workflow_id: str
    name: str
    input: dict[str, Any]
    status: WorkflowStatus = "pending"
    error: str | None = None
    # step key ("{seq}:{name}") → JSON output
    steps: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class WorkflowStore(ABC):
    """Abstract workflow log: implement for different backends."""

    @abstractmethod
    async def get(self, workflow_id: str) -> WorkflowRecord | None:
        ...

    @abstractmethod
    async def create(self, record: WorkflowRecord) -> bool:
        """Insert *record*; returns False if the id already exists."""
        ...

    @abstractmethod
    async def record_step(self, workflow_id: str, step_key: str, output: Any) -> None:
        ...

    @abstractmethod
    async def set_status(
        self, workflow_id: str, status: WorkflowStatus, error: str | None = None
    ) -> None:
        ...

    @abstractmethod
    async def list_pending(self) -> list[WorkflowRecord]:
        ...


class InMemoryWorkflowStore(WorkflowStore):
    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def get(self, workflow_id: str) -> WorkflowRecord | None:
        data = self._records.get(workflow_id)
        return WorkflowRecord.model_validate_json(data) if data is not None else None

    async def create(self, record: WorkflowRecord) -> bool:
        if record.workflow_id in self._records:
            return False
        self._records[record.workflow_id] = record.model_dump_json()
        return True

    async def _update(self, workflow_id: str, fn: Callable[[WorkflowRecord], None]) -> None:
        record = await self.get(workflow_id)
        if record is None:
            raise WorkflowError(f"Unknown workflow id: {workflow_id}")
        fn(record)
        record.updated_at = time.time()
        self._records[workflow_id] = record.model_dump_json()

    async def record_step(self, workflow_id: str, step_key: str, output: Any) -> None:
        await self._update(workflow_id, lambda r: r.steps.__setitem__(step_key, output))

    async def set_status(
        self, workflow_id: str, status: WorkflowStatus, error: str | None = None
    ) -> None:
        def apply(r: WorkflowRecord) -> None:
            r.status = status
            r.error = error

        await self._update(workflow_id, apply)

    async def list_pending(self) -> list[WorkflowRecord]:
        records = [WorkflowRecord.model_validate_json(d) for d in self._records.values()]
        return sorted((r for r in records if r.status == "pending"), key=lambda r: r.created_at)


class RedisWorkflowStore(WorkflowStore):
    """Redis-backed workflow log.

    ``wf:{id}`` holds the record header, ``wf:{id}:steps`` a hash of step
    outputs, and ``wf:pending`` the ids still to finish.
    """

    _PREFIX = "wf:"
    _PENDING = "wf:pending"

    def __init__(self, redis_url: str) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(redis_url, decode_responses=True)

    def _key(self, workflow_id: str) -> str:
        return f"{self._PREFIX}{workflow_id}"

    async def get(self, workflow_id: str) -> WorkflowRecord | None:
        header = await self._redis.get(self._key(workflow_id))
        if header is None:
            return None
        record = WorkflowRecord.model_validate_json(header)
        raw_steps = await self._redis.hgetall(f"{self._key(workflow_id)}:steps")
        record.steps = {k: json.loads(v) for k, v in raw_steps.items()}
        return record

    async def create(self, record: WorkflowRecord) -> bool:
        header = record.model_copy(update={"steps": {}}).model_dump_json()
        created = await self._redis.set(self._key(record.workflow_id), header, nx=True)
        if created and record.status == "pending":
            await self._redis.sadd(self._PENDING, record.workflow_id)
        return bool(created)

    async def record_step(self, workflow_id: str, step_key: str, output: Any) -> None:
        await self._redis.hset(f"{self._key(workflow_id)}:steps", step_key, json.dumps(output))

    async def set_status(
        self, workflow_id: str, status: WorkflowStatus, error: str | None = None
    ) -> None:
        header = await self._redis.get(self._key(workflow_id))
        if header is None:
            raise WorkflowError(f"Unknown workflow id: {workflow_id}")
        record = WorkflowRecord.model_validate_json(header)
        record.status = status
        record.error = error
        record.updated_at = time.time()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(workflow_id), record.model_dump_json())
            if status == "pending":
                pipe.sadd(self._PENDING, workflow_id)
            else:
                pipe.srem(self._PENDING, workflow_id)
            await pipe.execute()

    async def list_pending(self) -> list[WorkflowRecord]:
        ids = await self._redis.smembers(self._PENDING)
        records = [r for r in [await self.get(i) for i in ids] if r is not None]
        return sorted(records, key=lambda r: r.created_at)

    async def close(self) -> None:
        await self._redis.aclose()


# ── Execution ────────────────────────────────────────────────


def _log(event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, ensure_ascii=False, default=str))


def _ms_since(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)


@dataclass
class WorkflowContext:
    """Handle passed to a running workflow body."""

    runtime: WorkflowRuntime
    workflow_id: str
    name: str
    recorded: dict[str, Any] = field(default_factory=dict)
    _seq: int = 0

    async def run_step(self, step: str | Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run *step* once for this workflow, replaying a recorded output if present."""
        registered = get_step(step)
        key = f"{self._seq}:{registered.name}"
        self._seq += 1

        if key in self.recorded:
            _log("step_replayed", workflow_id=self.workflow_id, step=key)
            get_metrics_collector().record_step(step=registered.name, status="replayed", latency_ms=0.0)
            return registered.adapter.validate_python(self.recorded[key])

        output = await self.runtime.execute_step(registered, self.workflow_id, args, kwargs)
        encoded = registered.adapter.dump_python(output, mode="json")
        await self.runtime.store.record_step(self.workflow_id, key, encoded)
        self.recorded[key] = encoded
        return output

    def start_child(self, name: str, inp: BaseModel, workflow_id: str) -> str:
        """Fire-and-forget another workflow.  Use a deterministic id so replay won't fork."""
        return self.runtime.start_workflow(name, inp, workflow_id=workflow_id)


class WorkflowRuntime:
    """Runs registered workflows against a :class:`WorkflowStore`."""

    def __init__(
        self,
        store: WorkflowStore,
        *,
        default_max_attempts: int = 3,
        default_interval_s: float = 2.0,
        single_flight: bool = True,
    ) -> None:
        self.store = store
        self.default_max_attempts = default_max_attempts
        self.default_interval_s = default_interval_s
        self.single_flight = single_flight
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._flight_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -- steps --

    async def execute_step(
        self,
        step: RegisteredStep,
        workflow_id: str,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        attempts = (step.max_attempts or self.default_max_attempts) if step.retries_allowed else 1
        interval = step.interval_s if step.interval_s is not None else self.default_interval_s
        metrics = get_metrics_collector()

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                output = await step.func(*args, **kwargs)
            except DrillError as exc:
                if not exc.retryable or not step.retries_allowed:
                    metrics.record_step(step=step.name, status="error", latency_ms=_ms_since(started))
                    raise
                last_exc: Exception = exc
            except Exception as exc:
                if not step.retries_allowed:
                    metrics.record_step(step=step.name, status="error", latency_ms=_ms_since(started))
                    raise
                last_exc = exc
            else:
                metrics.record_step(step=step.name, status="ok", latency_ms=_ms_since(started))
                return output

            metrics.record_step(step=step.name, status="retry", latency_ms=_ms_since(started))
            if attempt < attempts:
                logger.warning(json.dumps({
                    "event": "step_retry",
                    "workflow_id": workflow_id,
                    "step": step.name,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error": f"{type(last_exc).__name__}: {last_exc}",
                }, ensure_ascii=False))
                await asyncio.sleep(interval)

        raise UpstreamUnavailableError(step.name, attempts, str(last_exc)) from last_exc

    # -- workflows --

    async def run_workflow(
        self, name: str, inp: BaseModel | dict[str, Any], *, workflow_id: str | None = None
    ) -> str:
        """Run (or resume) a workflow to completion.  Returns the workflow id."""
        wf = get_workflow(name)
        parsed = wf.input_type.model_validate(inp)
        workflow_id = workflow_id or f"{name}:{uuid.uuid4().hex[:12]}"

        record = await self.store.get(workflow_id)
        if record is None:
            record = WorkflowRecord(
                workflow_id=workflow_id,
                name=name,
                input=parsed.model_dump(mode="json"),
            )
            if not await self.store.create(record):
                record = await self.store.get(workflow_id) or record
        elif record.name != name:
            raise WorkflowError(f"Workflow id {workflow_id} belongs to {record.name!r}")

        if record.status == "succeeded":
            _log("workflow_already_done", workflow_id=workflow_id, workflow=name)
            return workflow_id
        if record.status == "failed":
            await self.store.set_status(workflow_id, "pending")
        # A stored input wins over the caller's copy on resume.
        parsed = wf.input_type.model_validate(record.input)

        if self.single_flight and wf.single_flight_key is not None:
            async with self._flight_locks[f"{name}:{wf.single_flight_key(parsed)}"]:
                await self._run_body(wf, workflow_id, parsed, record.steps)
        else:
            await self._run_body(wf, workflow_id, parsed, record.steps)
        return workflow_id

    async def _run_body(
        self,
        wf: RegisteredWorkflow,
        workflow_id: str,
        parsed: BaseModel,
        recorded: dict[str, Any],
    ) -> None:
        ctx = WorkflowContext(runtime=self, workflow_id=workflow_id, name=wf.name, recorded=dict(recorded))
        started = time.monotonic()
        _log("workflow_start", workflow_id=workflow_id, workflow=wf.name, replayable_steps=len(recorded))
        try:
            await wf.func(ctx, parsed)
        except Exception as exc:
            await self.store.set_status(workflow_id, "failed", error=f"{type(exc).__name__}: {exc}")
            logger.error(json.dumps({
                "event": "workflow_failed",
                "workflow_id": workflow_id,
                "workflow": wf.name,
                "error": f"{type(exc).__name__}: {exc}",
                "elapsed_ms": round((time.monotonic() - started) * 1000, 1),
            }, ensure_ascii=False))
            raise
        await self.store.set_status(workflow_id, "succeeded")
        _log(
            "workflow_end",
            workflow_id=workflow_id,
            workflow=wf.name,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )

    def start_workflow(
        self, name: str, inp: BaseModel | dict[str, Any], *, workflow_id: str | None = None
    ) -> str:
        """Fire-and-forget: schedule the workflow and return its id immediately.

        Starting an id that is already running in this process is a no-op.
        """
        get_workflow(name)
        workflow_id = workflow_id or f"{name}:{uuid.uuid4().hex[:12]}"
        if workflow_id in self._tasks:
            return workflow_id

        task = asyncio.create_task(self.run_workflow(name, inp, workflow_id=workflow_id))
        self._tasks[workflow_id] = task

        def _done(t: asyncio.Task[None]) -> None:
            self._tasks.pop(workflow_id, None)
            if not t.cancelled() and t.exception() is not None:
                # Already logged as workflow_failed; keep the traceback at debug.
                logger.debug("Background workflow %s failed", workflow_id, exc_info=t.exception())

        task.add_done_callback(_done)
        return workflow_id

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def running_ids(self) -> list[str]:
        """Ids of background workflows running in this process."""
        return list(self._tasks)

    async def drain(self) -> None:
        """Wait until no background workflow is running (including ones they start)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def recover_pending(self) -> list[str]:
        """Resume every workflow left ``pending`` by a previous process."""
        resumed = []
        for record in await self.store.list_pending():
            if record.name not in _workflows:
                logger.warning("Skipping pending workflow %s: %r not registered", record.workflow_id, record.name)
                continue
            resumed.append(self.start_workflow(record.name, record.input, workflow_id=record.workflow_id))
        if resumed:
            _log("workflows_recovered", count=len(resumed), workflow_ids=resumed)
        return resumed

    async def shutdown(self) -> None:
        """Cancel in-flight tasks; their records stay ``pending`` for recovery."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()


# ── Module-level Singleton ───────────────────────────────────

_runtime: WorkflowRuntime | None = None


def get_workflow_runtime() -> WorkflowRuntime:
    """Get the singleton workflow runtime."""
    global _runtime
    if _runtime is None:
        from config.settings import get_settings

        settings = get_settings()
        if settings.store_type == "redis" and settings.redis_url:
            store: WorkflowStore = RedisWorkflowStore(settings.redis_url)
        else:
            store = InMemoryWorkflowStore()
        _runtime = WorkflowRuntime(
            store,
            default_max_attempts=settings.step_max_attempts,
            default_interval_s=settings.step_retry_interval_s,
            single_flight=settings.drill_single_flight,
        )
        logger.info("Initialized WorkflowRuntime (%s)", type(store).__name__)
    return _runtime


def reset_workflow_runtime() -> None:
    """Drop the singleton (tests)."""
    global _runtime
    _runtime = None
