from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from enum import Enum
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from quizgen.logging_config import get_logger
from quizgen.utils.errors import InvalidTransition
from quizgen.utils.types import Document, Provenance, ProcessedDocument, Question, QuestionType, normalize_term
from quizgen.workflow.cache import QuestionCache, build_fingerprint
from quizgen.workflow.chunking import ChunkPlanner
from quizgen.workflow.concepts import ConceptExtractor
from quizgen.workflow.fallback import fallback_questions
from quizgen.workflow.formula import FormulaNormalizer
from quizgen.workflow.heuristics import HeuristicGenerator
from quizgen.workflow.llm import CONTENT_LIMIT, ExternalRequest, LLMQuestionGenerator
from quizgen.workflow.normalization import TextNormalizer
from quizgen.workflow.quality import QualityScorer
from quizgen.workflow.templates import TemplateGenerator
from quizgen.workflow.utils.request_models import BatchSpec, GenerationMode, GenerationRequest, coerce_request, default_settings

logger = get_logger(__name__)


class PipelineState(str, Enum):
    INIT = "init"
    PLANNED = "planned"
    EXTRACTED = "extracted"
    STRATEGY_SELECTED = "strategy_selected"
    GENERATING = "generating"
    SCORING = "scoring"
    NORMALIZING = "normalizing"
    DONE = "done"
    ERROR = "error"
    FALLBACK = "fallback"


TRANSITIONS: Dict[PipelineState, Set[PipelineState]] = {
    PipelineState.INIT: {PipelineState.PLANNED, PipelineState.NORMALIZING},
    PipelineState.PLANNED: {PipelineState.EXTRACTED},
    PipelineState.EXTRACTED: {PipelineState.STRATEGY_SELECTED},
    PipelineState.STRATEGY_SELECTED: {PipelineState.GENERATING},
    PipelineState.GENERATING: {PipelineState.SCORING, PipelineState.ERROR},
    PipelineState.ERROR: {PipelineState.FALLBACK},
    PipelineState.FALLBACK: {PipelineState.SCORING},
    PipelineState.SCORING: {PipelineState.NORMALIZING},
    PipelineState.NORMALIZING: {PipelineState.DONE},
    PipelineState.DONE: set(),
}

STRATEGY_EXTERNAL = "external"
STRATEGY_OFFLINE = "offline"
STRATEGY_CACHE = "cache"

ProgressCallback = Callable[[PipelineState, Dict[str, Any]], None]


@dataclass
class BatchReport:
    label: str
    question_type: str
    difficulty: int
    requested: int
    source: str
    produced: int = 0
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "question_type": self.question_type,
            "difficulty": self.difficulty,
            "requested": self.requested,
            "source": self.source,
            "produced": self.produced,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class _WorkUnit:
    slot: int
    spec: BatchSpec
    count: int
    content: str
    report: BatchReport


@dataclass
class GenerationRun:
    """Mutable state of one request as it moves through the state machine."""

    fingerprint: str
    request: GenerationRequest
    progress_cb: Optional[ProgressCallback] = None
    state: PipelineState = PipelineState.INIT
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.INIT])
    slots: Dict[int, List[Question]] = field(default_factory=dict)
    reports: List[BatchReport] = field(default_factory=list)
    template_offsets: Dict[QuestionType, int] = field(default_factory=dict)
    heuristic_used: Set[Tuple[QuestionType, str]] = field(default_factory=set)
    timed_out: bool = False
    used_fixed_fallback: bool = False

    def advance(self, target: PipelineState, **details: Any) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Illegal pipeline transition: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)
        logger.info("Pipeline state | fingerprint=%s state=%s", self.fingerprint[:8], target.value)
        if self.progress_cb:
            try:
                self.progress_cb(target, {"fingerprint": self.fingerprint, "step": len(self.history), **details})
            except Exception:
                logger.warning("Progress callback failed; continuing", exc_info=True)

    def collect(self, slot: int, questions: Sequence[Question]) -> None:
        self.slots.setdefault(slot, []).extend(questions)

    def produced(self, slot: int) -> int:
        return len(self.slots.get(slot, []))

    @property
    def collected(self) -> List[Question]:
        return [question for slot in sorted(self.slots) for question in self.slots[slot]]

    @property
    def failed(self) -> bool:
        return self.timed_out or any(report.error for report in self.reports)


@dataclass
class GenerationResult:
    questions: List[Question]
    fingerprint: str
    cache_hit: bool = False
    mode: str = GenerationMode.FAST.value
    strategy: str = STRATEGY_OFFLINE
    states: List[str] = field(default_factory=list)
    batch_reports: List[BatchReport] = field(default_factory=list)
    padded: int = 0
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questions": [question.to_dict() for question in self.questions],
            "fingerprint": self.fingerprint,
            "cache_hit": self.cache_hit,
            "mode": self.mode,
            "strategy": self.strategy,
            "states": list(self.states),
            "batches": [report.to_dict() for report in self.batch_reports],
            "padded": self.padded,
            "timed_out": self.timed_out,
        }


def _half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class GenerationOrchestrator:
    """Runs text through planning, extraction, generation, scoring and formula normalization.

    Collaborators are injectable. The cache is owned by the orchestrator instance, so
    a fresh orchestrator (or a fresh ``QuestionCache``) gives an isolated cache.
    """

    def __init__(
        self,
        settings: Optional[SimpleNamespace] = None,
        *,
        cache: Optional[QuestionCache] = None,
        planner: Optional[ChunkPlanner] = None,
        extractor: Optional[ConceptExtractor] = None,
        templates: Optional[TemplateGenerator] = None,
        heuristics: Optional[HeuristicGenerator] = None,
        external: Optional[LLMQuestionGenerator] = None,
        normalizer: Optional[FormulaNormalizer] = None,
        text_normalizer: Optional[TextNormalizer] = None,
    ) -> None:
        self.settings = settings or default_settings()
        s = self.settings
        self.cache = cache if cache is not None else QuestionCache(s.cache_max_entries)
        self.planner = planner or ChunkPlanner(s.max_chunk_size, s.chunk_overlap, s.min_chunk_size)
        self.extractor = extractor or ConceptExtractor(max_concepts=s.max_concepts, frequency_threshold=s.concept_frequency_threshold)
        self.templates = templates or TemplateGenerator()
        self.heuristics = heuristics or HeuristicGenerator()
        self.external = external or LLMQuestionGenerator(
            api_key=s.openai_api_key or None,
            model=s.openai_model,
            max_attempts=s.retry_attempts,
            base_delay=s.retry_delay,
            temperature=s.temperature,
            max_tokens=s.max_tokens,
        )
        self.formula = normalizer or FormulaNormalizer()
        self.text_normalizer = text_normalizer or TextNormalizer()

    # ------------------------------------------------------------------ admin
    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Question cache cleared")

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()

    # ------------------------------------------------------------ document prep
    def process_document(self, text: str) -> ProcessedDocument:
        document = self.text_normalizer.build_document(text)
        chunks = self.planner.plan(document.text)
        extraction = self.extractor.extract(chunks)
        logger.info(
            "Document processed | chars=%s complexity=%s chunks=%s concepts=%s",
            document.length,
            document.complexity,
            len(chunks),
            len(extraction.concepts),
        )
        return ProcessedDocument(document=document, chunks=chunks, extraction=extraction)

    def _mode_timeout(self, mode: GenerationMode) -> float:
        return {
            GenerationMode.FAST: self.settings.fast_timeout,
            GenerationMode.STANDARD: self.settings.standard_timeout,
            GenerationMode.BATCH: self.settings.batch_timeout,
        }[mode]

    # ------------------------------------------------------------------- entry
    def generate_sync(
        self,
        source: str | ProcessedDocument,
        request: GenerationRequest | Dict[str, Any],
        progress_cb: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        return asyncio.run(self.generate(source, request, progress_cb=progress_cb))

    async def generate(
        self,
        source: str | ProcessedDocument,
        request: GenerationRequest | Dict[str, Any],
        progress_cb: Optional[ProgressCallback] = None,
    ) -> GenerationResult:
        req = coerce_request(request)
        prepared = source if isinstance(source, ProcessedDocument) else None
        text = prepared.document.text if prepared else self.text_normalizer.preprocess(source)
        fingerprint = build_fingerprint(text, req.cache_params(), self.settings.cache_prefix_chars)
        document = prepared.document if prepared else Document(text=text)
        run = GenerationRun(fingerprint=fingerprint, request=req, progress_cb=progress_cb)
        logger.info(
            "Generation start | fingerprint=%s mode=%s count=%s type=%s complexity=%s",
            fingerprint[:8],
            req.mode.value,
            req.count,
            req.question_type,
            document.complexity,
        )

        if req.use_cache:
            cached = self.cache.get(fingerprint)
            if cached is not None:
                logger.info("Cache hit | fingerprint=%s questions=%s", fingerprint[:8], len(cached))
                run.advance(PipelineState.NORMALIZING, cache_hit=True)
                questions = self.formula.normalize_questions(cached)
                run.advance(PipelineState.DONE, questions=len(questions))
                return self._result(run, questions, cache_hit=True, strategy=STRATEGY_CACHE)

        chunks = prepared.chunks if prepared else self.planner.plan(text)
        run.advance(PipelineState.PLANNED, chunks=len(chunks))
        extraction = prepared.extraction if prepared else self.extractor.extract(chunks)
        run.advance(PipelineState.EXTRACTED, concepts=len(extraction.concepts))
        processed = ProcessedDocument(document=document, chunks=chunks, extraction=extraction)

        strategy = STRATEGY_EXTERNAL if self.external.is_active else STRATEGY_OFFLINE
        plan = req.plan()
        run.advance(PipelineState.STRATEGY_SELECTED, strategy=strategy, mode=req.mode.value)

        run.advance(PipelineState.GENERATING)
        timeout = req.timeout or self._mode_timeout(req.mode)
        try:
            await asyncio.wait_for(self._run_mode(run, processed, plan, strategy), timeout=timeout)
        except asyncio.TimeoutError:
            run.timed_out = True
            logger.warning("Generation timed out | fingerprint=%s timeout=%ss collected=%s", fingerprint[:8], timeout, len(run.collected))

        if run.failed:
            run.advance(PipelineState.ERROR, timed_out=run.timed_out)
            run.advance(PipelineState.FALLBACK)
            self._cover_shortfall(run, processed, plan)

        run.advance(PipelineState.SCORING, candidates=len(run.collected))
        key_terms = [key_term.term for key_term in extraction.metadata.top_terms]
        scorer = QualityScorer.for_document(extraction.concepts, text, key_terms=key_terms)
        questions = scorer.refine(run.collected, req.count)
        for number, question in enumerate(questions, start=1):
            question.id = f"{fingerprint[:8]}-{number:03d}"

        if req.use_cache and not run.timed_out and not run.used_fixed_fallback:
            self.cache.set(fingerprint, questions)
        elif req.use_cache:
            logger.info("Result not cached | fingerprint=%s timed_out=%s fixed_fallback=%s", fingerprint[:8], run.timed_out, run.used_fixed_fallback)

        run.advance(PipelineState.NORMALIZING)
        questions = self.formula.normalize_questions(questions)
        run.advance(PipelineState.DONE, questions=len(questions))
        return self._result(run, questions, cache_hit=False, strategy=strategy)

    def _result(self, run: GenerationRun, questions: List[Question], *, cache_hit: bool, strategy: str) -> GenerationResult:
        padded = sum(1 for question in questions if question.provenance is Provenance.FALLBACK)
        logger.info(
            "Generation done | fingerprint=%s questions=%s cache_hit=%s padded=%s timed_out=%s",
            run.fingerprint[:8],
            len(questions),
            cache_hit,
            padded,
            run.timed_out,
        )
        return GenerationResult(
            questions=questions,
            fingerprint=run.fingerprint,
            cache_hit=cache_hit,
            mode=run.request.mode.value,
            strategy=strategy,
            states=[state.value for state in run.history],
            batch_reports=list(run.reports),
            padded=padded,
            timed_out=run.timed_out,
        )

    # ------------------------------------------------------------------ modes
    async def _run_mode(self, run: GenerationRun, processed: ProcessedDocument, plan: List[BatchSpec], strategy: str) -> None:
        mode = run.request.mode
        source = STRATEGY_EXTERNAL if strategy == STRATEGY_EXTERNAL else Provenance.HEURISTIC.value
        units: List[_WorkUnit] = []

        if mode is GenerationMode.FAST:
            for slot, spec in enumerate(plan):
                template_count = min(spec.count, _half_up(spec.count * self.settings.template_ratio))
                if template_count:
                    report = BatchReport(f"{spec.question_type.value}-tpl", spec.question_type.value, spec.difficulty, template_count, Provenance.TEMPLATE.value)
                    questions = self._template_fill(run, processed, spec.question_type, template_count, spec.difficulty)
                    run.collect(slot, questions)
                    report.produced = len(questions)
                    run.reports.append(report)
                remaining = spec.count - template_count
                if remaining:
                    units.append(self._unit(run, processed, slot, spec, remaining, f"{spec.question_type.value}-ext", source, 0))
        elif mode is GenerationMode.STANDARD:
            batch_size = max(1, int(self.settings.batch_size))
            sequence = 0
            for slot, spec in enumerate(plan):
                for offset in range(0, spec.count, batch_size):
                    count = min(batch_size, spec.count - offset)
                    label = f"{spec.question_type.value}-{offset // batch_size + 1}"
                    units.append(self._unit(run, processed, slot, spec, count, label, source, sequence))
                    sequence += 1
        else:
            for slot, spec in enumerate(plan):
                label = f"batch-{slot + 1}-{spec.question_type.value}"
                units.append(self._unit(run, processed, slot, spec, spec.count, label, source, slot))

        if units:
            await self._run_units(run, processed, plan, units, strategy)

    def _unit(self, run: GenerationRun, processed: ProcessedDocument, slot: int, spec: BatchSpec, count: int, label: str, source: str, sequence: int) -> _WorkUnit:
        report = BatchReport(label, spec.question_type.value, spec.difficulty, count, source)
        run.reports.append(report)
        return _WorkUnit(slot=slot, spec=spec, count=count, content=self._batch_content(processed, sequence), report=report)

    @staticmethod
    def _batch_content(processed: ProcessedDocument, sequence: int) -> str:
        if processed.chunks:
            return processed.chunks[sequence % len(processed.chunks)].with_context()
        return processed.document.text[:CONTENT_LIMIT]

    async def _run_units(self, run: GenerationRun, processed: ProcessedDocument, plan: List[BatchSpec], units: List[_WorkUnit], strategy: str) -> None:
        semaphore = asyncio.Semaphore(max(1, int(self.settings.max_concurrent_batches)))

        async def guarded(unit: _WorkUnit) -> None:
            async with semaphore:
                needed = min(unit.count, unit.spec.count - run.produced(unit.slot))
                if needed <= 0:
                    unit.report.skipped = True
                    logger.info("Batch skipped | label=%s reason=target reached", unit.report.label)
                    return
                if strategy == STRATEGY_EXTERNAL:
                    questions = await self._external_batch(processed, unit, needed)
                else:
                    questions = self._offline_batch(run, processed, unit, needed)
                accepted = questions[: max(0, unit.spec.count - run.produced(unit.slot))]
                run.collect(unit.slot, accepted)
                unit.report.produced = len(accepted)

        results = await asyncio.gather(*(guarded(unit) for unit in units), return_exceptions=True)
        for unit, outcome in zip(units, results):
            if isinstance(outcome, BaseException):
                unit.report.error = f"{type(outcome).__name__}: {outcome}"
                logger.warning("Batch failed | label=%s error=%s", unit.report.label, unit.report.error, exc_info=outcome)
        logger.info(
            "Batches settled | total=%s failed=%s skipped=%s collected=%s",
            len(units),
            sum(1 for unit in units if unit.report.error),
            sum(1 for unit in units if unit.report.skipped),
            len(run.collected),
        )

    async def _external_batch(self, processed: ProcessedDocument, unit: _WorkUnit, count: int) -> List[Question]:
        extraction = processed.extraction
        spec = unit.spec
        prompt = self.external.build_prompt(spec.question_type, count, extraction.concepts, unit.content, spec.difficulty)
        options = ExternalRequest(
            question_type=spec.question_type,
            count=count,
            difficulty=spec.difficulty,
            timeout=self.settings.call_timeout,
            batch_label=unit.report.label,
            concepts=extraction.concepts,
            key_terms=[key_term.term for key_term in extraction.metadata.top_terms],
        )
        return await self.external.generate(prompt, options)

    def _offline_batch(self, run: GenerationRun, processed: ProcessedDocument, unit: _WorkUnit, count: int) -> List[Question]:
        spec = unit.spec
        pool = [concept for concept in processed.extraction.concepts if (spec.question_type, concept.key) not in run.heuristic_used]
        questions = self.heuristics.generate(spec.question_type, count, pool, spec.difficulty)
        for question in questions:
            for point in question.knowledge_points:
                run.heuristic_used.add((spec.question_type, normalize_term(point)))
        missing = count - len(questions)
        if missing > 0:
            questions = questions + self._template_fill(run, processed, spec.question_type, missing, spec.difficulty)
        return questions

    def _template_fill(self, run: GenerationRun, processed: ProcessedDocument, question_type: QuestionType, count: int, difficulty: int) -> List[Question]:
        start = run.template_offsets.get(question_type, 0)
        questions = self.templates.generate(
            question_type,
            count,
            processed.extraction.concepts,
            difficulty,
            start=start,
            graph=processed.extraction.graph,
        )
        run.template_offsets[question_type] = start + len(questions)
        return questions

    # --------------------------------------------------------------- fallback
    def _cover_shortfall(self, run: GenerationRun, processed: ProcessedDocument, plan: List[BatchSpec]) -> None:
        """Fill each plan slot's shortfall with templates, then with the fixed fallback set."""
        for slot, spec in enumerate(plan):
            missing = spec.count - run.produced(slot)
            if missing <= 0:
                continue
            try:
                filled = self._template_fill(run, processed, spec.question_type, missing, spec.difficulty)
            except Exception:
                logger.warning("Template fallback failed | type=%s missing=%s", spec.question_type.value, missing, exc_info=True)
                filled = []
            run.collect(slot, filled)
            remaining = missing - len(filled)
            if remaining > 0:
                run.used_fixed_fallback = True
                run.collect(slot, fallback_questions(spec.question_type, remaining, difficulty=spec.difficulty))
            logger.info(
                "Shortfall covered | type=%s missing=%s templates=%s fixed=%s",
                spec.question_type.value,
                missing,
                len(filled),
                max(0, remaining),
            )
