from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from openai import AsyncOpenAI
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_incrementing

from quizgen.logging_config import get_logger
from quizgen.utils.errors import ExternalServiceFailure, ParseFailure
from quizgen.utils.types import (
    Concept,
    EssayBody,
    FillBlankBody,
    MultipleChoiceBody,
    Provenance,
    Question,
    QuestionType,
)
from quizgen.workflow.quality import QualityScorer
from quizgen.workflow.templates import clamp_difficulty, scoring_criteria

logger = get_logger(__name__)

# (system prompt, user prompt, temperature, max tokens) -> raw completion text
Transport = Callable[[str, str, float, int], Awaitable[str]]

SYSTEM_PROMPT = "You write assessment questions for learners. Reply with strict JSON only."
CONTENT_LIMIT = 3000
CONCEPT_LIMIT = 15
OPTION_PREFIX = re.compile(r"^\s*(?:[A-Da-d][.)、:：]|\([A-Da-d]\))\s*")

TYPE_LABELS = {
    QuestionType.MULTIPLE_CHOICE: "multiple-choice",
    QuestionType.FILL_BLANK: "fill-in-the-blank",
    QuestionType.ESSAY: "essay (open answer)",
}
DIFFICULTY_LABELS = {1: "basic recall", 2: "application", 3: "analysis"}

TYPE_RULES = {
    QuestionType.MULTIPLE_CHOICE: (
        "- exactly 4 distinct options, exactly one of them correct\n"
        '- "correct_answer" is the 0-based index of the correct option\n'
        "- distractors must be plausible but clearly wrong to someone who understood the material\n"
    ),
    QuestionType.FILL_BLANK: (
        '- the question contains exactly one blank written as "______"\n'
        '- "answer" is the word or short phrase that fills the blank\n'
    ),
    QuestionType.ESSAY: (
        '- "sample_answer" is a model answer of 3-6 sentences\n'
        '- "key_points" lists 2-4 points a good answer must cover\n'
    ),
}

TYPE_SCHEMAS = {
    QuestionType.MULTIPLE_CHOICE: (
        '{"type": "multiple-choice", "question": "...", "options": ["...", "...", "...", "..."], '
        '"correct_answer": 0, "explanation": "...", "knowledge_points": ["..."]}'
    ),
    QuestionType.FILL_BLANK: (
        '{"type": "fill-blank", "question": "... ______ ...", "answer": "...", '
        '"explanation": "...", "knowledge_points": ["..."]}'
    ),
    QuestionType.ESSAY: (
        '{"type": "essay", "question": "...", "sample_answer": "...", "key_points": ["...", "..."], '
        '"explanation": "...", "knowledge_points": ["..."]}'
    ),
}


@dataclass
class ExternalRequest:
    """Per-call options for :meth:`LLMQuestionGenerator.generate`."""

    question_type: QuestionType
    count: int
    difficulty: int = 1
    timeout: float = 30.0
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    batch_label: str = "batch"
    concepts: Sequence[Concept] = field(default_factory=list)
    key_terms: Sequence[str] = field(default_factory=list)


def _extract_json(content: str) -> Any:
    """Return the first embedded JSON object (or list of objects) in ``content``."""
    text = content or ""
    decoder = json.JSONDecoder()
    for index, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            payload, _end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
        if isinstance(payload, list) and payload and all(isinstance(item, dict) for item in payload):
            return payload
    return None


def _pick(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, "", []):
            return value
    return None


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(entry).strip() for entry in value if str(entry).strip()]


class LLMQuestionGenerator:
    """Generates questions through an external chat-completion service.

    Uses ``AsyncOpenAI`` when an API key is available, or any injected async ``transport``.
    Without either it stays inactive and every call fails fast.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        dummy_key: str = "sk-dummy",
        *,
        transport: Optional[Transport] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        client: Optional[Any] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ) -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", dummy_key)
        self.model = model
        self.dummy_key = dummy_key
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.calls = 0
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._client: Optional[Any] = client
        if client is None and transport is None and self.api_key and self.api_key != self.dummy_key:
            self._client = AsyncOpenAI(api_key=self.api_key)

    @property
    def is_active(self) -> bool:
        return self._transport is not None or self._client is not None

    def build_prompt(
        self,
        question_type: QuestionType | str,
        count: int,
        concepts: Sequence[Concept],
        content: str,
        difficulty: int = 1,
    ) -> str:
        qtype = QuestionType.from_value(question_type)
        level = clamp_difficulty(difficulty)
        concept_lines = "\n".join(
            f"- {concept.term}: {concept.definition}" if concept.definition else f"- {concept.term}"
            for concept in list(concepts)[:CONCEPT_LIMIT]
        ) or "- (none extracted; rely on the material)"
        excerpt = (content or "")[:CONTENT_LIMIT]
        return (
            "You transform study material into HIGH-QUALITY assessment questions for learners.\n"
            f"Write exactly {count} {TYPE_LABELS[qtype]} questions targeting {DIFFICULTY_LABELS[level]}.\n\n"
            "EVERY QUESTION MUST:\n"
            "- focus on exactly one concept from the material\n"
            "- be self-contained and unambiguous\n"
            "- use only facts present in the material\n"
            "- include an explanation of why the answer is correct\n\n"
            f"TYPE RULES:\n{TYPE_RULES[qtype]}\n"
            f"KEY CONCEPTS:\n{concept_lines}\n\n"
            "OUTPUT FORMAT (STRICT JSON ONLY):\n"
            f'{{"questions": [{TYPE_SCHEMAS[qtype]}]}}\n\n'
            f"STUDY MATERIAL:\n{excerpt}"
        )

    async def generate(self, prompt: str, options: ExternalRequest) -> List[Question]:
        if not self.is_active:
            raise ExternalServiceFailure("External generator is not configured with a valid API key or transport.")
        try:
            return await asyncio.wait_for(self._generate_with_retry(prompt, options), timeout=options.timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalServiceFailure(f"External generation timed out after {options.timeout}s") from exc

    async def _generate_with_retry(self, prompt: str, options: ExternalRequest) -> List[Question]:
        temperature = options.temperature if options.temperature is not None else self.temperature
        max_tokens = options.max_tokens or self.max_tokens

        def log_failure(retry_state: RetryCallState) -> None:
            logger.warning(
                "External generation attempt failed | batch=%s attempt=%s/%s error=%s",
                options.batch_label,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.outcome.exception() if retry_state.outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception_type(ExternalServiceFailure),
            after=log_failure,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    questions = await self._attempt(prompt, options, temperature, max_tokens)
                    logger.info(
                        "External batch parsed | batch=%s attempt=%s questions=%s",
                        options.batch_label,
                        attempt.retry_state.attempt_number,
                        len(questions),
                    )
        except ExternalServiceFailure as exc:
            raise ExternalServiceFailure(f"External generation failed after {self.max_attempts} attempts: {exc}") from exc
        return questions

    async def _attempt(self, prompt: str, options: ExternalRequest, temperature: float, max_tokens: int) -> List[Question]:
        content = await self._complete(prompt, temperature, max_tokens)
        payload = _extract_json(content)
        if payload is None:
            raise ExternalServiceFailure("Response contained no JSON payload")
        questions = self.parse_questions(payload, options)
        if not questions:
            raise ExternalServiceFailure("Response contained no usable questions")
        scorer = QualityScorer(options.concepts, options.key_terms)
        return [scorer.score(question) for question in questions]

    async def _complete(self, prompt: str, temperature: float, max_tokens: int) -> str:
        self.calls += 1
        try:
            if self._transport is not None:
                return await self._transport(SYSTEM_PROMPT, prompt, temperature, max_tokens) or ""
            response = await self._client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                max_tokens=max_tokens,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
            choices = getattr(response, "choices", None) or []
            if not choices:
                raise ExternalServiceFailure("Response contained no choices")
            return choices[0].message.content or ""
        except ExternalServiceFailure:
            raise
        except Exception as exc:
            raise ExternalServiceFailure(f"External generation request failed: {exc}") from exc

    def parse_questions(self, payload: Any, options: ExternalRequest) -> List[Question]:
        if isinstance(payload, dict):
            items = payload.get("questions")
            if items is None and _pick(payload, "question", "prompt"):
                items = [payload]
        else:
            items = payload
        if not isinstance(items, list):
            return []

        questions: List[Question] = []
        for index, item in enumerate(items):
            try:
                questions.append(self.parse_item(item, options, index))
            except ParseFailure as exc:
                logger.warning("Skipping malformed external item | batch=%s index=%s reason=%s", options.batch_label, index, exc)
        return questions

    def parse_item(self, item: Any, options: ExternalRequest, index: int) -> Question:
        if not isinstance(item, dict):
            raise ParseFailure("item is not an object")
        prompt = str(_pick(item, "question", "prompt") or "").strip()
        if len(prompt) < 5:
            raise ParseFailure("question text missing or too short")

        qtype = options.question_type
        if isinstance(body_type := item.get("type"), str):
            try:
                declared = QuestionType.from_value(body_type)
            except ValueError as exc:
                raise ParseFailure(f"unknown question type {body_type!r}") from exc
            if declared is not qtype:
                raise ParseFailure(f"expected {qtype.value}, got {declared.value}")

        if qtype is QuestionType.MULTIPLE_CHOICE:
            body = self._choice_body(item)
        elif qtype is QuestionType.FILL_BLANK:
            body = self._blank_body(item, prompt)
        else:
            body = self._essay_body(item, options.difficulty)

        return Question(
            id=f"ext-{options.batch_label}-{index + 1}",
            prompt=prompt,
            body=body,
            explanation=str(item.get("explanation") or "").strip(),
            difficulty=clamp_difficulty(options.difficulty),
            provenance=Provenance.EXTERNAL,
            knowledge_points=_string_list(_pick(item, "knowledge_points", "knowledgePoints", "tags")),
        )

    @staticmethod
    def _choice_body(item: Dict[str, Any]) -> MultipleChoiceBody:
        options = [OPTION_PREFIX.sub("", option) for option in _string_list(_pick(item, "options", "choices"))]
        if len(options) < 2 or len(set(option.lower() for option in options)) != len(options):
            raise ParseFailure("multiple-choice item needs at least two distinct options")
        answer = _pick(item, "correct_answer", "correctAnswer", "answer")
        if isinstance(answer, list) and len(answer) == 1:
            answer = answer[0]
        if isinstance(answer, bool):
            raise ParseFailure("correct answer must be an index, letter or option text")
        if isinstance(answer, int):
            correct_index = answer
        elif isinstance(answer, str) and len(answer.strip()) == 1 and answer.strip().upper() in "ABCDEF":
            correct_index = "ABCDEF".index(answer.strip().upper())
        elif isinstance(answer, str) and answer.strip().isdigit():
            correct_index = int(answer.strip())
        elif isinstance(answer, str):
            lowered = [option.lower() for option in options]
            target = OPTION_PREFIX.sub("", answer).strip().lower()
            correct_index = lowered.index(target) if target in lowered else -1
        else:
            correct_index = -1
        if not 0 <= correct_index < len(options):
            raise ParseFailure("correct answer does not point at an option")
        return MultipleChoiceBody(options=options, correct_index=correct_index)

    @staticmethod
    def _blank_body(item: Dict[str, Any], prompt: str) -> FillBlankBody:
        if "__" not in prompt:
            raise ParseFailure("fill-blank question has no blank")
        answers = _string_list(_pick(item, "answer", "correct_answer", "correctAnswer"))
        if not answers:
            raise ParseFailure("fill-blank item has no answer")
        acceptable = _string_list(_pick(item, "acceptable_answers", "acceptableAnswers"))
        return FillBlankBody(answer=answers[0], acceptable_answers=list(dict.fromkeys(answers + acceptable)))

    @staticmethod
    def _essay_body(item: Dict[str, Any], difficulty: int) -> EssayBody:
        sample = _pick(item, "sample_answer", "sampleAnswer", "answer", "correct_answer")
        if not isinstance(sample, str) or not sample.strip():
            raise ParseFailure("essay item has no sample answer")
        return EssayBody(
            sample_answer=sample.strip(),
            key_points=_string_list(_pick(item, "key_points", "keyPoints")),
            scoring_criteria=_string_list(_pick(item, "scoring_criteria", "scoringCriteria")) or scoring_criteria(difficulty),
        )
