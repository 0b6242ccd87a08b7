from __future__ import annotations

import json
import os
from typing import Any, Dict

from redis import Redis

from quizgen.logging_config import get_logger

logger = get_logger(__name__)

PROGRESS_REDIS_URL = os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2")
PROGRESS_TTL_SECONDS = int(os.getenv("PROGRESS_TTL_SECONDS", 86400))
_progress_client: Redis | None = None


def progress_client() -> Redis:
    """Shared Redis client for progress snapshots, created on first use."""
    global _progress_client
    if _progress_client is None:
        _progress_client = Redis.from_url(PROGRESS_REDIS_URL, decode_responses=True)
    return _progress_client


def job_key(job_id: str) -> str:
    return f"quizgen:job:{job_id}"


def progress_channel(job_id: str) -> str:
    return f"quizgen:progress:{job_id}"


def build_snapshot(doc_id: str | None, status: str, current_step: str, progress: float | int = 0, step_progress: float | int = 0, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {
        "doc_id": doc_id,
        "status": status,
        "current_step": current_step,
        "progress": progress,
        "step_progress": step_progress,
    }
    if extra:
        snapshot.update(extra)
    return snapshot


def emit_progress(
    job_id: str | None,
    doc_id: str | None,
    status: str,
    current_step: str,
    progress: float | int = 0,
    step_progress: float | int = 0,
    extra: Dict[str, Any] | None = None,
    client: Redis | None = None,
) -> None:
    """Write the snapshot to the job hash (with expiry) and publish it on the job channel."""
    if not job_id:
        return

    snapshot = build_snapshot(doc_id, status, current_step, progress, step_progress, extra)
    key = job_key(job_id)
    pipe = (client or progress_client()).pipeline()
    pipe.hset(key, mapping={name: str(value) for name, value in snapshot.items() if value is not None})
    pipe.expire(key, PROGRESS_TTL_SECONDS)
    pipe.publish(progress_channel(job_id), json.dumps(snapshot, default=str))
    pipe.execute()
    logger.debug("Progress emitted | job=%s status=%s progress=%s", job_id, status, progress)


def read_progress(job_id: str, client: Redis | None = None) -> Dict[str, str]:
    return (client or progress_client()).hgetall(job_key(job_id)) or {}
