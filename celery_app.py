from __future__ import annotations

import os

from celery import Celery

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", BROKER_URL)
QUEUE_NAME = os.getenv("QUIZGEN_QUEUE", "quizgen")
ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "").lower() in {"1", "true", "yes"}
HARD_TIME_LIMIT = int(os.getenv("CELERY_TASK_TIME_LIMIT", "600"))

celery_app = Celery("quizgen", broker=BROKER_URL, backend=RESULT_BACKEND, include=["quizgen.task.generation"])

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_default_queue=QUEUE_NAME,
    task_routes={"quizgen.*": {"queue": QUEUE_NAME}},
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_time_limit=HARD_TIME_LIMIT,
    task_soft_time_limit=max(1, HARD_TIME_LIMIT - 30),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),
    task_always_eager=ALWAYS_EAGER,
    task_eager_propagates=True,
)
