from __future__ import annotations

from typing import Any, Dict, Optional

from celery_app import celery_app  # type: ignore
from quizgen.logging_config import get_logger, set_pipeline_level
from quizgen.utils.errors import InvalidRequestError
from quizgen.workflow.cache import QuestionCache
from quizgen.workflow.orchestrator import GenerationOrchestrator, PipelineState
from quizgen.workflow.utils.progress import emit_progress
from quizgen.workflow.utils.request_models import default_settings
from quizgen.workflow.utils.settings import normalize_settings

logger = get_logger(__name__)

STATE_PROGRESS = {
    PipelineState.INIT: 0,
    PipelineState.PLANNED: 15,
    PipelineState.EXTRACTED: 30,
    PipelineState.STRATEGY_SELECTED: 40,
    PipelineState.GENERATING: 50,
    PipelineState.ERROR: 60,
    PipelineState.FALLBACK: 65,
    PipelineState.SCORING: 80,
    PipelineState.NORMALIZING: 90,
    PipelineState.DONE: 100,
}

_PAYLOAD_KEYS = {"text", "content", "doc_id", "job_id", "request"}
_worker_cache: Optional[QuestionCache] = None


def worker_cache(max_entries: int) -> QuestionCache:
    """Cache shared by every task executed in this worker process."""
    global _worker_cache
    if _worker_cache is None:
        _worker_cache = QuestionCache(max_entries)
    return _worker_cache


class GenerationTaskService:
    """Encapsulates the question generation Celery task logic."""

    def __init__(self, settings: dict, orchestrator: Optional[GenerationOrchestrator] = None):
        self.settings = normalize_settings(settings or {})
        if self.settings.get("log_level"):
            set_pipeline_level(self.settings["log_level"])
        if orchestrator is None:
            resolved = default_settings(override=self.settings)
            orchestrator = GenerationOrchestrator(resolved, cache=worker_cache(resolved.cache_max_entries))
        self.orchestrator = orchestrator

    def generate_questions(self, payload: dict) -> dict:
        if "text" not in payload and "content" not in payload:
            raise ValueError("text is required for generate_questions_task")
        text = payload.get("text", payload.get("content")) or ""
        doc_id = payload.get("doc_id")
        job_id = payload.get("job_id") or self.settings.get("job_id")
        request: Dict[str, Any] = payload.get("request") or {key: value for key, value in payload.items() if key not in _PAYLOAD_KEYS}
        logger.info("GenQ start | job=%s doc=%s chars=%s", job_id, doc_id, len(text))

        def on_state(state: PipelineState, details: Dict[str, Any]) -> None:
            emit_progress(
                job_id=job_id,
                doc_id=doc_id,
                status=state.value.upper(),
                current_step=state.value,
                progress=STATE_PROGRESS.get(state, 0),
                extra={**details, "process": "generate_questions"},
            )

        try:
            result = self.orchestrator.generate_sync(text, request, progress_cb=on_state if job_id else None)
        except InvalidRequestError as exc:
            emit_progress(job_id=job_id, doc_id=doc_id, status="FAILED", current_step="validate_request", progress=100, extra={"error": str(exc), "process": "generate_questions"})
            logger.warning("GenQ rejected | job=%s doc=%s error=%s", job_id, doc_id, exc)
            raise

        logger.info("GenQ done | job=%s doc=%s count=%s cache_hit=%s padded=%s", job_id, doc_id, len(result.questions), result.cache_hit, result.padded)
        return {"doc_id": doc_id, "job_id": job_id, "count": len(result.questions), **result.to_dict()}


@celery_app.task(name="quizgen.generate_questions")
def generate_questions_task(payload: dict, settings: dict) -> dict:
    """Generate a question set for the given document text."""
    return GenerationTaskService(settings).generate_questions(payload)
