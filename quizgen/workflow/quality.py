from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Optional, Sequence

from quizgen.logging_config import get_logger
from quizgen.utils.types import Concept, EssayBody, FillBlankBody, MultipleChoiceBody, Question, normalize_term
from quizgen.workflow.chunking import tokenize_terms
from quizgen.workflow.fallback import filler_question

logger = get_logger(__name__)


def _question_key(prompt: str) -> str:
    return " ".join((prompt or "").split())


class QualityScorer:
    """Scores, deduplicates and ranks candidate questions, padding any shortfall."""

    RELEVANCE_TERM_LIMIT = 10
    FREE_PICK_RATIO = 0.7

    def __init__(
        self,
        concepts: Sequence[Concept] = (),
        key_terms: Sequence[str] = (),
        *,
        min_question_length: int = 10,
        min_explanation_length: int = 20,
        min_option_length: int = 2,
    ) -> None:
        self.concepts = list(concepts)
        self.key_terms = [term.lower() for term in key_terms][: self.RELEVANCE_TERM_LIMIT]
        self.min_question_length = min_question_length
        self.min_explanation_length = min_explanation_length
        self.min_option_length = min_option_length

    def quality_score(self, question: Question) -> float:
        score = 0.5
        if len(question.prompt or "") > self.min_question_length:
            score += 0.2
        if len(question.explanation or "") > self.min_explanation_length:
            score += 0.2
        if question.knowledge_points:
            score += 0.1

        body = question.body
        if isinstance(body, MultipleChoiceBody):
            if len(body.options) == 4 and all(len(option or "") >= self.min_option_length for option in body.options):
                score += 0.1
            if 0 <= body.correct_index < len(body.options):
                score += 0.1
        elif isinstance(body, FillBlankBody):
            if len((body.answer or "").strip()) > 1:
                score += 0.2
        elif isinstance(body, EssayBody):
            if len(body.sample_answer or "") > 20:
                score += 0.1
            if body.key_points:
                score += 0.1
        return round(min(1.0, score), 4)

    def relevance_score(self, question: Question) -> float:
        haystack = self._searchable_text(question)
        term_hits = sum(1 for term in self.key_terms if term in haystack)
        concept_hits = sum(1 for concept in self.concepts if concept.term.lower() in haystack)
        score = 0.5 + min(0.3, 0.1 * term_hits) + min(0.2, 0.1 * concept_hits)
        return round(min(1.0, score), 4)

    @staticmethod
    def _searchable_text(question: Question) -> str:
        parts = [question.prompt, question.explanation, *question.knowledge_points]
        body = question.body
        if isinstance(body, MultipleChoiceBody):
            parts.extend(body.options)
        elif isinstance(body, FillBlankBody):
            parts.append(body.answer)
        else:
            parts.append(body.sample_answer)
        return " ".join(part for part in parts if part).lower()

    def score(self, question: Question) -> Question:
        question.quality_score = self.quality_score(question)
        question.relevance_score = self.relevance_score(question)
        return question

    def dedupe(self, questions: Iterable[Question]) -> List[Question]:
        seen = set()
        unique: List[Question] = []
        for question in questions:
            key = _question_key(question.prompt)
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(question)
        return unique

    def refine(self, questions: Iterable[Question], target_count: int) -> List[Question]:
        if target_count <= 0:
            return []
        candidates = list(questions)
        unique = [self.score(question) for question in self.dedupe(candidates)]
        unique.sort(key=lambda item: item.quality_score + item.relevance_score, reverse=True)
        available = len(unique)
        unique = self.cover_knowledge_points(unique, target_count)

        shortfall = target_count - len(unique)
        if shortfall > 0:
            logger.info("Padding question set | requested=%s available=%s padding=%s", target_count, len(unique), shortfall)
            seen = {_question_key(question.prompt) for question in unique}
            index = 0
            while len(unique) < target_count:
                filler = filler_question(index, self.concepts)
                index += 1
                key = _question_key(filler.prompt)
                if key in seen:
                    continue
                seen.add(key)
                unique.append(self.score(filler))
        logger.info("Questions refined | candidates=%s unique=%s returned=%s", len(candidates), available, target_count)
        return unique[:target_count]

    def cover_knowledge_points(self, ranked: Sequence[Question], target_count: int) -> List[Question]:
        """Select up to ``target_count`` questions from ``ranked`` (best first), spreading them over knowledge points.

        The first ``FREE_PICK_RATIO`` of the target is taken in rank order; after that a question is only
        picked early if it covers a knowledge point nothing selected so far covers. Leftovers fill any gap
        in rank order.
        """
        covered = set()
        selected: List[Question] = []
        for question in ranked:
            if len(selected) >= target_count:
                break
            points = {normalize_term(point) for point in question.knowledge_points} - {""}
            if points - covered or len(selected) < target_count * self.FREE_PICK_RATIO:
                selected.append(question)
                covered.update(points)
        if len(selected) < target_count:
            chosen = {id(question) for question in selected}
            selected.extend([question for question in ranked if id(question) not in chosen][: target_count - len(selected)])
        return selected

    @classmethod
    def for_document(cls, concepts: Sequence[Concept], text: Optional[str] = None, key_terms: Sequence[str] = ()) -> "QualityScorer":
        terms = list(key_terms) or [term for term, _ in Counter(tokenize_terms(text or "")).most_common(cls.RELEVANCE_TERM_LIMIT)]
        return cls(concepts=concepts, key_terms=terms)
