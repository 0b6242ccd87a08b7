from __future__ import annotations

from typing import Dict, List, Sequence

from quizgen.logging_config import get_logger
from quizgen.utils.types import (
    Concept,
    ConceptType,
    EssayBody,
    FillBlankBody,
    MultipleChoiceBody,
    Provenance,
    Question,
    QuestionType,
)
from quizgen.workflow.templates import GENERIC_DISTRACTORS, BAND_BY_DIFFICULTY, blank_out, clamp_difficulty, scoring_criteria, trim_sentence

logger = get_logger(__name__)

STATEMENT_PROMPTS: Dict[ConceptType, str] = {
    ConceptType.DEFINITION: "Which statement best defines {term}?",
    ConceptType.PROPERTY: "Which property is attributed to {term}?",
    ConceptType.RELATIONSHIP: "How is {term} connected to other ideas in the material?",
    ConceptType.APPLICATION: "What is {term} used for?",
    ConceptType.CLASSIFICATION: "How is {term} divided or composed?",
}

ESSAY_PROMPTS: Dict[ConceptType, str] = {
    ConceptType.DEFINITION: "Define {term} in your own words and explain why the definition matters.",
    ConceptType.PROPERTY: "Describe the characteristics of {term} and how they can be observed.",
    ConceptType.RELATIONSHIP: "Explain the relationship described for {term} and its consequences.",
    ConceptType.APPLICATION: "Discuss the applications of {term} and give a concrete example.",
    ConceptType.CLASSIFICATION: "Describe the categories or components of {term} and how they differ.",
}


class HeuristicGenerator:
    """Synthesises questions straight from the statements the extractor matched in the source.

    Only concepts found by a pattern rule (they carry both a statement and its sentence)
    are eligible, and each yields at most one question per call.
    """

    def generate(self, question_type: QuestionType | str, count: int, concepts: Sequence[Concept], difficulty: int = 1) -> List[Question]:
        qtype = QuestionType.from_value(question_type)
        level = clamp_difficulty(difficulty)
        pool = [concept for concept in concepts or [] if concept.type in STATEMENT_PROMPTS and concept.definition and concept.context]
        questions: List[Question] = []
        for position, concept in enumerate(pool):
            if len(questions) >= count:
                break
            if qtype is QuestionType.MULTIPLE_CHOICE:
                question = self._statement_choice(concept, pool, position, level)
            elif qtype is QuestionType.FILL_BLANK:
                question = self._cloze(concept, level)
            else:
                question = self._essay(concept, level)
            if question is not None:
                questions.append(question)
        logger.info("Heuristic questions built | type=%s requested=%s built=%s eligible=%s", qtype.value, count, len(questions), len(pool))
        return questions

    @staticmethod
    def _statement_choice(concept: Concept, pool: Sequence[Concept], position: int, level: int) -> Question:
        correct = trim_sentence(concept.definition)
        seen = {correct.lower()}
        options: List[str] = []
        for other in list(pool[position + 1 :]) + list(pool[:position]):
            statement = trim_sentence(other.definition)
            if statement and statement.lower() not in seen:
                options.append(statement)
                seen.add(statement.lower())
            if len(options) == 3:
                break
        values = {"concept": concept.term, "field": "this subject", "related": "the surrounding topics"}
        for generic in GENERIC_DISTRACTORS[BAND_BY_DIFFICULTY[level]]:
            if len(options) == 3:
                break
            statement = generic.format(**values)
            if statement.lower() not in seen:
                options.append(statement)
                seen.add(statement.lower())
        correct_index = (position + 1) % 4
        options.insert(correct_index, correct)
        return Question(
            id=f"heu-{QuestionType.MULTIPLE_CHOICE.value}-{position + 1}",
            prompt=STATEMENT_PROMPTS[concept.type].format(term=concept.term),
            body=MultipleChoiceBody(options=options, correct_index=correct_index),
            explanation=f"The source states: {trim_sentence(concept.context, 240)}.",
            difficulty=level,
            provenance=Provenance.HEURISTIC,
            knowledge_points=[concept.term],
        )

    @staticmethod
    def _cloze(concept: Concept, level: int) -> Question | None:
        cloze = blank_out(trim_sentence(concept.context, 240), concept.term)
        if cloze is None:
            return None
        return Question(
            id=f"heu-{QuestionType.FILL_BLANK.value}-{concept.key.replace(' ', '-')}",
            prompt=f"Complete the statement: {cloze}.",
            body=FillBlankBody(answer=concept.term, acceptable_answers=list(dict.fromkeys([concept.term, concept.term.lower()]))),
            explanation=f"The original statement reads: {trim_sentence(concept.context, 240)}.",
            difficulty=level,
            provenance=Provenance.HEURISTIC,
            knowledge_points=[concept.term],
        )

    @staticmethod
    def _essay(concept: Concept, level: int) -> Question:
        statement = trim_sentence(concept.definition)
        return Question(
            id=f"heu-{QuestionType.ESSAY.value}-{concept.key.replace(' ', '-')}",
            prompt=ESSAY_PROMPTS[concept.type].format(term=concept.term),
            body=EssayBody(
                sample_answer=f"{trim_sentence(concept.context, 240)}. Building on this, {concept.term} can be explained through {statement}.",
                key_points=[f"{concept.term}: {statement}", f"Evidence from the material for {concept.term}"],
                scoring_criteria=scoring_criteria(level),
            ),
            explanation=f"The answer should build on the statement about {concept.term} in the material.",
            difficulty=level,
            provenance=Provenance.HEURISTIC,
            knowledge_points=[concept.term],
        )
