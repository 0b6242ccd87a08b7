import asyncio
import json
import pathlib
import re
import sys

import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from quizgen.utils.errors import InvalidRequestError, InvalidTransition
from quizgen.utils.types import Provenance
from quizgen.workflow.cache import QuestionCache
from quizgen.workflow.llm import LLMQuestionGenerator
from quizgen.workflow.orchestrator import GenerationOrchestrator, GenerationRun, PipelineState
from quizgen.workflow.utils.request_models import coerce_request, default_settings

SAMPLE = (
    "Chapter 1 Energy in living things\n\n"
    "Photosynthesis is the process by which green plants convert light energy into chemical energy. "
    "Photosynthesis needs light, water and carbon dioxide.\n"
    "Chlorophyll has a green pigment that absorbs light.\n"
    "The Calvin cycle is used to fix carbon dioxide into sugars.\n"
    "Light intensity affects the rate of photosynthesis in most plants.\n"
    "Cellular respiration is divided into glycolysis, the Krebs cycle and oxidative phosphorylation.\n"
    "Glucose is a simple sugar that stores chemical energy for the cell.\n"
)

REQUEST_LINE = re.compile(r"Write exactly (\d+) (.+?) questions targeting")


class FakeTransport:
    """Answers generation prompts with well-formed items; can fail on demand."""

    def __init__(self, fail_when=None, delay=0.0):
        self.fail_when = fail_when
        self.delay = delay
        self.calls = 0
        self.serial = 0

    async def __call__(self, system, prompt, temperature, max_tokens):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_when is not None and self.fail_when(prompt):
            raise RuntimeError("service unavailable")
        count, label = REQUEST_LINE.search(prompt).groups()
        items = [self._item(label) for _ in range(int(count))]
        return "Here you go:\n" + json.dumps({"questions": items})

    def _item(self, label):
        self.serial += 1
        number = self.serial
        base = {"explanation": "The material states this directly in the first chapter.", "knowledge_points": ["photosynthesis"]}
        if label.startswith("multiple-choice"):
            return {
                **base,
                "question": f"Which statement about photosynthesis is correct (variant {number})?",
                "options": ["It converts light energy", "It melts rock", "It produces metal", "It stops growth"],
                "correct_answer": 0,
            }
        if label.startswith("fill-in-the-blank"):
            return {**base, "question": f"Variant {number}: plants convert ______ energy into chemical energy.", "answer": "light"}
        return {
            **base,
            "question": f"Explain how photosynthesis supports life (variant {number}).",
            "sample_answer": "Plants capture light energy and store it as sugar that other organisms eat.",
            "key_points": ["light capture", "sugar storage"],
        }


def make_orchestrator(external=None, **overrides):
    settings = default_settings(override={"retry_delay": 0.0, "cache_prefix_chars": None, **overrides})
    return GenerationOrchestrator(
        settings,
        cache=QuestionCache(10),
        external=external or LLMQuestionGenerator(api_key="sk-dummy"),
    )


def external(transport):
    return LLMQuestionGenerator(transport=transport, base_delay=0.0)


def always_fail(prompt):
    return True


@pytest.mark.parametrize(
    "request_payload,expected",
    [
        ({"count": 10}, 10),
        ({"count": 7, "fast_mode": False}, 7),
        ({"count": 4, "question_type": "essay"}, 4),
        ({"count": 13, "distribution": "exam", "fastMode": False}, 13),
        ({"batches": [{"type": "mc", "count": 3}, {"type": "fill", "count": 2, "difficulty": 2}]}, 5),
    ],
)
def test_returns_exactly_the_requested_count(request_payload, expected):
    orchestrator = make_orchestrator(external(FakeTransport()))

    result = orchestrator.generate_sync(SAMPLE, request_payload)

    assert len(result.questions) == expected
    assert result.cache_hit is False


def test_question_ids_are_unique_and_fingerprinted():
    result = make_orchestrator(external(FakeTransport())).generate_sync(SAMPLE, {"count": 8})

    ids = [question.id for question in result.questions]
    assert len(set(ids)) == 8
    assert all(question_id.startswith(result.fingerprint[:8]) for question_id in ids)


def test_offline_run_walks_the_happy_path():
    result = make_orchestrator().generate_sync(SAMPLE, {"count": 6})

    assert result.strategy == "offline"
    assert result.states == ["init", "planned", "extracted", "strategy_selected", "generating", "scoring", "normalizing", "done"]
    assert result.timed_out is False


def test_offline_standard_mode_uses_heuristics():
    result = make_orchestrator().generate_sync(SAMPLE, {"count": 3, "question_type": "mc", "fast_mode": False})

    assert len(result.questions) == 3
    assert Provenance.HEURISTIC in {question.provenance for question in result.questions}


def test_repeat_request_is_served_from_cache():
    transport = FakeTransport()
    orchestrator = make_orchestrator(external(transport))
    request = {"count": 5, "question_type": "mc"}

    first = orchestrator.generate_sync(SAMPLE, request)
    calls = transport.calls
    second = orchestrator.generate_sync(SAMPLE, request)

    assert calls > 0
    assert transport.calls == calls
    assert second.cache_hit is True
    assert second.strategy == "cache"
    assert second.states == ["init", "normalizing", "done"]
    assert second.to_dict()["questions"] == first.to_dict()["questions"]
    assert orchestrator.cache_stats()["hits"] == 1


def test_processed_document_shares_cache_with_raw_text():
    orchestrator = make_orchestrator()
    orchestrator.generate_sync(SAMPLE, {"count": 4})

    processed = orchestrator.process_document(SAMPLE)
    result = orchestrator.generate_sync(processed, {"count": 4})

    assert result.cache_hit is True


def test_use_cache_false_bypasses_cache():
    orchestrator = make_orchestrator()
    orchestrator.generate_sync(SAMPLE, {"count": 4, "use_cache": False})

    assert len(orchestrator.cache) == 0

    orchestrator.generate_sync(SAMPLE, {"count": 4})
    result = orchestrator.generate_sync(SAMPLE, {"count": 4, "use_cache": False})
    assert result.cache_hit is False


def test_failing_adapter_falls_back_to_templates():
    orchestrator = make_orchestrator(external(FakeTransport(fail_when=always_fail)))

    result = orchestrator.generate_sync(SAMPLE, {"count": 6, "question_type": "mc", "fast_mode": False})

    assert len(result.questions) == 6
    assert {question.provenance for question in result.questions} <= {Provenance.TEMPLATE, Provenance.FALLBACK}
    assert "error" in result.states and "fallback" in result.states
    assert all(report.error for report in result.batch_reports)


def test_empty_text_with_failing_adapter_uses_fixed_set():
    orchestrator = make_orchestrator(external(FakeTransport(fail_when=always_fail)))

    result = orchestrator.generate_sync("", {"count": 4, "question_type": "mc", "fast_mode": False})

    assert len(result.questions) == 4
    assert {question.provenance for question in result.questions} == {Provenance.FALLBACK}
    assert result.padded == 4
    assert len(orchestrator.cache) == 0


def test_failed_batch_does_not_sink_its_siblings():
    transport = FakeTransport(fail_when=lambda prompt: "essay (open answer)" in prompt)
    orchestrator = make_orchestrator(external(transport))
    request = {"batches": [{"type": "multiple-choice", "count": 3}, {"type": "essay", "count": 2}]}

    result = orchestrator.generate_sync(SAMPLE, request)

    reports = {report.label: report for report in result.batch_reports}
    assert reports["batch-1-multiple-choice"].produced == 3
    assert reports["batch-1-multiple-choice"].error is None
    assert reports["batch-2-essay"].error
    assert len(result.questions) == 5
    assert sum(1 for question in result.questions if question.provenance is Provenance.EXTERNAL) == 3
    assert "fallback" in result.states


def test_timeout_returns_partial_set_without_caching():
    orchestrator = make_orchestrator(external(FakeTransport(delay=5.0)))

    result = orchestrator.generate_sync(SAMPLE, {"count": 5, "question_type": "mc", "timeout": 0.2})

    assert result.timed_out is True
    assert len(result.questions) == 5
    assert "error" in result.states
    assert len(orchestrator.cache) == 0


def test_progress_callback_sees_every_transition():
    seen = []
    result = make_orchestrator().generate_sync(SAMPLE, {"count": 3}, progress_cb=lambda state, details: seen.append(state.value))

    assert seen == result.states[1:]


def test_broken_progress_callback_does_not_abort_run():
    def explode(state, details):
        raise RuntimeError("listener down")

    result = make_orchestrator().generate_sync(SAMPLE, {"count": 3}, progress_cb=explode)

    assert len(result.questions) == 3


def test_zero_count_is_rejected():
    with pytest.raises(InvalidRequestError):
        make_orchestrator().generate_sync(SAMPLE, {"count": 0})


def test_illegal_transition_is_rejected():
    run = GenerationRun(fingerprint="0" * 64, request=coerce_request({"count": 1}))

    with pytest.raises(InvalidTransition):
        run.advance(PipelineState.DONE)
    run.advance(PipelineState.PLANNED)
    with pytest.raises(InvalidTransition):
        run.advance(PipelineState.ERROR)


def test_clear_cache_resets_entries():
    orchestrator = make_orchestrator()
    orchestrator.generate_sync(SAMPLE, {"count": 2})
    orchestrator.clear_cache()

    assert orchestrator.cache_stats()["entries"] == 0
