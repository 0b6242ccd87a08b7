from __future__ import annotations

import math
import os
import uuid
from enum import Enum
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, Field, ValidationError, model_validator

from quizgen.utils.errors import InvalidRequestError
from quizgen.utils.types import QuestionType
from quizgen.workflow.utils.settings import normalize_request_payload

MIXED = "mixed"

DISTRIBUTIONS: Dict[str, Dict[QuestionType, float]] = {
    "mixed": {QuestionType.MULTIPLE_CHOICE: 0.5, QuestionType.FILL_BLANK: 0.3, QuestionType.ESSAY: 0.2},
    "exam": {QuestionType.MULTIPLE_CHOICE: 0.6, QuestionType.FILL_BLANK: 0.25, QuestionType.ESSAY: 0.15},
    "practice": {QuestionType.MULTIPLE_CHOICE: 0.4, QuestionType.FILL_BLANK: 0.35, QuestionType.ESSAY: 0.25},
}

BATCH_PRESETS: Dict[str, List[Tuple[QuestionType, int, int]]] = {
    "small": [(QuestionType.MULTIPLE_CHOICE, 10, 1), (QuestionType.FILL_BLANK, 6, 2), (QuestionType.ESSAY, 4, 2)],
    "medium": [(QuestionType.MULTIPLE_CHOICE, 15, 1), (QuestionType.FILL_BLANK, 10, 2), (QuestionType.ESSAY, 5, 2)],
    "large": [(QuestionType.MULTIPLE_CHOICE, 20, 1), (QuestionType.FILL_BLANK, 12, 2), (QuestionType.ESSAY, 8, 2)],
    "xlarge": [(QuestionType.MULTIPLE_CHOICE, 25, 1), (QuestionType.FILL_BLANK, 15, 2), (QuestionType.ESSAY, 10, 3)],
}


class GenerationMode(str, Enum):
    FAST = "fast"
    STANDARD = "standard"
    BATCH = "batch"


class BatchSpec(BaseModel):
    question_type: QuestionType = Field(..., description="Question type produced by this batch")
    count: int = Field(..., gt=0, description="Number of questions for this batch")
    difficulty: int = Field(1, ge=1, le=3, description="Difficulty band (1 basic, 2 application, 3 analysis)")

    @model_validator(mode="before")
    @classmethod
    def _coerce_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("question_type") is not None:
            data = dict(data)
            data["question_type"] = QuestionType.from_value(data["question_type"])
        return data


class GenerationRequest(BaseModel):
    question_type: str = Field(MIXED, description="mixed | multiple-choice | fill-blank | essay")
    count: int | None = Field(None, gt=0, description="Number of questions to return (sum of batches in batch mode)")
    difficulty: int = Field(1, ge=1, le=3, description="Difficulty band (1 basic, 2 application, 3 analysis)")
    fast_mode: bool = Field(True, description="Route most questions through templates")
    use_cache: bool = Field(True, description="Reuse results for an identical fingerprint")
    distribution: str = Field(MIXED, description="Type split used when question_type is mixed")
    batches: List[BatchSpec] | None = Field(None, description="Independent type/count/difficulty tuples (batch mode)")
    timeout: float | None = Field(None, gt=0, description="Hard wall-clock limit in seconds")

    @model_validator(mode="after")
    def _check_shape(self) -> "GenerationRequest":
        if self.question_type != MIXED:
            self.question_type = QuestionType.from_value(self.question_type).value
        if self.distribution not in DISTRIBUTIONS:
            raise ValueError(f"Unknown distribution: {self.distribution}")
        if self.batches:
            total = sum(batch.count for batch in self.batches)
            if self.count is None:
                self.count = total
            elif self.count != total:
                raise ValueError("count must equal the sum of batch counts")
        elif self.count is None:
            raise ValueError("count is required")
        return self

    @property
    def mode(self) -> GenerationMode:
        if self.batches:
            return GenerationMode.BATCH
        return GenerationMode.FAST if self.fast_mode else GenerationMode.STANDARD

    def plan(self) -> List[BatchSpec]:
        """Expand the request into per-type work items."""
        if self.batches:
            return list(self.batches)
        if self.question_type == MIXED:
            counts = distribute(self.count or 0, DISTRIBUTIONS[self.distribution])
            return [BatchSpec(question_type=qtype, count=count, difficulty=self.difficulty) for qtype, count in counts.items() if count > 0]
        return [BatchSpec(question_type=QuestionType.from_value(self.question_type), count=self.count, difficulty=self.difficulty)]

    def cache_params(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"use_cache", "timeout"})

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> "GenerationRequest":
        if name not in BATCH_PRESETS:
            raise InvalidRequestError(f"Unknown batch preset: {name}")
        batches = [{"question_type": qtype, "count": count, "difficulty": difficulty} for qtype, count, difficulty in BATCH_PRESETS[name]]
        return coerce_request({**overrides, "batches": batches})


def distribute(total: int, weights: Dict[QuestionType, float]) -> Dict[QuestionType, int]:
    """Split ``total`` by ``weights`` with largest-remainder rounding so the parts sum to ``total``."""
    order = list(weights)
    raw = {qtype: total * weights[qtype] for qtype in order}
    counts = {qtype: int(math.floor(raw[qtype])) for qtype in order}
    remainder = total - sum(counts.values())
    ranked = sorted(order, key=lambda qtype: (-(raw[qtype] - counts[qtype]), order.index(qtype)))
    for qtype in ranked[:remainder]:
        counts[qtype] += 1
    return counts


def coerce_request(payload: GenerationRequest | Dict[str, Any]) -> GenerationRequest:
    if isinstance(payload, GenerationRequest):
        return payload
    try:
        return GenerationRequest.model_validate(normalize_request_payload(payload or {}))
    except (ValidationError, ValueError) as exc:
        raise InvalidRequestError(f"Invalid generation request: {exc}") from exc


def default_settings(*, override: dict | None = None) -> SimpleNamespace:
    prefix = os.getenv("CACHE_KEY_PREFIX_CHARS")
    settings = SimpleNamespace(
        job_id=str(uuid.uuid4()),
        max_chunk_size=int(os.getenv("MAX_CHUNK_SIZE", 1000)),
        chunk_overlap=int(os.getenv("CHUNK_OVERLAP", 200)),
        min_chunk_size=int(os.getenv("MIN_CHUNK_SIZE", 100)),
        max_concepts=int(os.getenv("MAX_CONCEPTS", 20)),
        concept_frequency_threshold=int(os.getenv("CONCEPT_FREQUENCY_THRESHOLD", 2)),
        template_ratio=float(os.getenv("TEMPLATE_RATIO", 0.7)),
        batch_size=int(os.getenv("GENERATION_BATCH_SIZE", 10)),
        max_concurrent_batches=int(os.getenv("MAX_CONCURRENT_BATCHES", 3)),
        call_timeout=float(os.getenv("EXTERNAL_CALL_TIMEOUT", 30)),
        fast_timeout=float(os.getenv("FAST_MODE_TIMEOUT", 15)),
        standard_timeout=float(os.getenv("STANDARD_MODE_TIMEOUT", 45)),
        batch_timeout=float(os.getenv("BATCH_MODE_TIMEOUT", 90)),
        retry_attempts=int(os.getenv("EXTERNAL_RETRY_ATTEMPTS", 3)),
        retry_delay=float(os.getenv("EXTERNAL_RETRY_DELAY", 1.0)),
        cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", 100)),
        cache_prefix_chars=int(prefix) if prefix else None,
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        temperature=float(os.getenv("OPENAI_TEMPERATURE", 0.3)),
        max_tokens=int(os.getenv("OPENAI_MAX_TOKENS", 2048)),
    )
    if override:
        for key, val in override.items():
            setattr(settings, key, val)
    return settings
