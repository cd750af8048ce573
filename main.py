"""FastAPI entry point for the drill tutor service."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from errors.exceptions import DrillError
from services.broadcast import close_broadcast_hub
from services.concurrency import ConcurrencyLimitMiddleware
from services.datastream import get_stream_registry, reset_stream_registry
from services.middleware import RequestIdMiddleware
from services.session_store import RedisDrillSessionStore, close_stores, get_session_store
from services.workflow_runtime import get_workflow_runtime

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ── Populate workflow + tool registries (must happen before startup recovery) ──
import workflows  # noqa: E402, F401  registers workflows/steps via decorators
import tools.drill_tools  # noqa: E402, F401  registers tools via @register_tool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: start/stop shared resources."""
    reset_stream_registry()

    store = get_session_store()
    if isinstance(store, RedisDrillSessionStore):
        if await store.ping():
            logger.info("Redis connection verified")
        else:
            logger.warning("Redis connection failed; sessions may not persist")

    runtime = get_workflow_runtime()
    if settings.workflow_recovery_enabled:
        await runtime.recover_pending()

    yield

    # Streams first so clients reconnect elsewhere while workflows wind down.
    await get_stream_registry().close_all()
    await runtime.shutdown()
    await close_broadcast_hub()
    await close_stores()


app = FastAPI(
    title="Drill Tutor Agents",
    description="Socratic drill tutoring with durable workflows and live token streaming",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware stack (outermost first) ─────────────────────────
# Order matters: CORS → RequestId → ConcurrencyLimit → route handler
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(ConcurrencyLimitMiddleware)


@app.exception_handler(DrillError)
async def drill_error_handler(request: Request, exc: DrillError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request %s failed: %s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Register routers ────────────────────────────────────────
from api.drill import router as drill_router  # noqa: E402
from api.drill_stream import router as drill_stream_router  # noqa: E402
from api.health import router as health_router  # noqa: E402

app.include_router(health_router)
app.include_router(drill_router)
app.include_router(drill_stream_router)


if __name__ == "__main__":
    if settings.debug:
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=settings.service_port,
            reload=True,
        )
    else:
        # In-memory stores are per process; run one worker unless store_type=redis.
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=settings.service_port,
            workers=4 if settings.store_type == "redis" else 1,
            timeout_keep_alive=120,
        )
