"""Gunicorn configuration for the drill tutor service.

Usage:
    gunicorn main:app -c deploy/gunicorn.conf.py

Sessions, workflow records and the broadcast hub live in process memory
unless ``STORE_TYPE=redis``; in that mode every worker would see its own
state, so the worker count is pinned to 1.
"""

import multiprocessing
import os

# ─── Server socket ──────────────────────────────────────────────

bind = os.getenv("BIND", "0.0.0.0:5000")
backlog = 2048

# ─── Worker processes ───────────────────────────────────────────
#
# One async worker per core when Redis backs sessions and pub/sub.
# A delta published by a workflow in worker A must reach an SSE
# subscriber in worker B, which only the Redis hub provides.

_shared_state = os.getenv("STORE_TYPE", "memory") == "redis"
workers = int(os.getenv("WORKERS", min(multiprocessing.cpu_count(), 4))) if _shared_state else 1
worker_class = "uvicorn.workers.UvicornWorker"

# ─── Timeouts ───────────────────────────────────────────────────
#
# A drill reply streams for 5-60s; SSE connections stay open for the
# whole session and are kept alive by heartbeats.

timeout = 180
graceful_timeout = 30  # open streams are closed on shutdown; workflows stay resumable
keepalive = 120

# ─── Worker recycling ──────────────────────────────────────────

max_requests = 3000 if _shared_state else 0  # recycling would drop in-memory sessions
max_requests_jitter = 500

# ─── Logging ────────────────────────────────────────────────────

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
access_log_format = (
    '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" %(D)sμs'
)

# ─── Process naming ─────────────────────────────────────────────

proc_name = "drill-tutor"

# ─── Server hooks ───────────────────────────────────────────────


def on_starting(server):
    server.log.info(
        "Starting drill tutor: workers=%d, store=%s, timeout=%ds, bind=%s",
        workers,
        "redis" if _shared_state else "memory",
        timeout,
        bind,
    )


def worker_exit(server, worker):
    server.log.info("Worker exit (pid: %s)", worker.pid)
