from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence

from quizgen.logging_config import get_logger
from quizgen.utils.types import (
    Concept,
    EssayBody,
    FillBlankBody,
    KnowledgeGraph,
    MultipleChoiceBody,
    Provenance,
    Question,
    QuestionType,
)

logger = get_logger(__name__)

BLANK = "______"
BAND_BY_DIFFICULTY = {1: "basic", 2: "application", 3: "analysis"}

TEMPLATES: Dict[QuestionType, Dict[str, List[str]]] = {
    QuestionType.MULTIPLE_CHOICE: {
        "basic": [
            "Which of the following best describes {concept}?",
            "What is the main idea behind {concept}?",
            "Which statement about {concept} is correct?",
        ],
        "application": [
            "When applying {concept} in {field}, which statement holds?",
            "A learner needs to use {concept} in practice. Which description should guide them?",
            "Which option correctly explains how {concept} is used in {field}?",
        ],
        "analysis": [
            "Which statement best captures how {concept} relates to {related}?",
            "Which analysis of {concept} is most accurate?",
            "Why is {concept} significant in {field}?",
        ],
    },
    QuestionType.FILL_BLANK: {
        "basic": [
            BLANK + " is described as follows: {definition}.",
            "Fill in the blank: {cloze}",
            "The term " + BLANK + " is closely associated with {related}.",
        ],
        "application": [
            "In {field}, " + BLANK + " is applied when working with this idea: {definition}.",
            "Fill in the blank: {cloze}",
            "To reason about {related}, a learner would rely on " + BLANK + ".",
        ],
        "analysis": [
            "The concept of " + BLANK + " connects to {related} as follows: {definition}.",
            "Fill in the blank: {cloze}",
            "Understanding " + BLANK + " is essential for analysing {field}.",
        ],
    },
    QuestionType.ESSAY: {
        "basic": [
            "Explain what {concept} means and give an example from {field}.",
            "Describe the key features of {concept}.",
            "Summarise the role of {concept} in {field}.",
        ],
        "application": [
            "How would you apply {concept} to a practical problem in {field}? Explain your reasoning.",
            "Describe a situation where {concept} would be useful and explain why.",
            "Explain how {concept} can be used together with {related}.",
        ],
        "analysis": [
            "Analyse the relationship between {concept} and {related}.",
            "Evaluate the strengths and limitations of {concept}.",
            "Discuss how {concept} shapes our understanding of {field}.",
        ],
    },
}

GENERIC_DISTRACTORS: Dict[str, List[str]] = {
    "basic": [
        "{concept} is only a label for a chapter and carries no meaning of its own.",
        "{concept} refers to a fixed numerical constant.",
        "{concept} is unrelated to the rest of the material.",
        "{concept} is a historical anecdote rather than a concept.",
    ],
    "application": [
        "{concept} can only be used when no other method is available.",
        "{concept} applies exclusively to situations outside {field}.",
        "Using {concept} never changes the outcome of a problem.",
        "{concept} must be memorised but is never applied.",
    ],
    "analysis": [
        "{concept} contradicts every other idea in {field}.",
        "{concept} has no dependence on {related}.",
        "The importance of {concept} is purely coincidental.",
        "{concept} is a special case that cannot be generalised.",
    ],
}


def clamp_difficulty(difficulty: int) -> int:
    try:
        value = int(difficulty)
    except (TypeError, ValueError):
        return 1
    return min(3, max(1, value))


BASE_SCORING_CRITERIA = (
    "Accuracy of content (30 points)",
    "Clarity of reasoning (25 points)",
    "Completeness of the answer (25 points)",
    "Clarity of expression (20 points)",
)
BONUS_SCORING_CRITERIA = {
    1: (),
    2: ("Appropriateness of examples (bonus 10 points)",),
    3: ("Depth of analysis (bonus 10 points)", "Critical thinking (bonus 10 points)"),
}


def scoring_criteria(difficulty: int) -> List[str]:
    """Essay marking rubric; harder bands add bonus criteria on top of the base ones."""
    return list(BASE_SCORING_CRITERIA) + list(BONUS_SCORING_CRITERIA[clamp_difficulty(difficulty)])


def trim_sentence(text: Optional[str], limit: int = 160) -> str:
    cleaned = " ".join((text or "").split()).rstrip(".。!?！？;； ")
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[:limit].rsplit(" ", 1)[0].rstrip(",，;； ") + "..."


def blank_out(sentence: Optional[str], term: str) -> Optional[str]:
    """Replace the first occurrence of ``term`` in ``sentence`` with a blank."""
    if not sentence or not term:
        return None
    pattern = re.compile(re.escape(term), re.IGNORECASE)
    if not pattern.search(sentence):
        return None
    return pattern.sub(BLANK, " ".join(sentence.split()), count=1)


class TemplateGenerator:
    """Fills fixed question templates with extracted concepts, round-robin and without external calls."""

    OPTION_COUNT = 4

    def __init__(self, field: str = "this subject", templates: Optional[Dict[QuestionType, Dict[str, List[str]]]] = None) -> None:
        self.field = field
        self.templates = templates or TEMPLATES

    def generate(
        self,
        question_type: QuestionType | str,
        count: int,
        concepts: Sequence[Concept],
        difficulty: int = 1,
        *,
        start: int = 0,
        graph: Optional[KnowledgeGraph] = None,
    ) -> List[Question]:
        qtype = QuestionType.from_value(question_type)
        level = clamp_difficulty(difficulty)
        band = BAND_BY_DIFFICULTY[level]
        pool = list(concepts or [])
        if count <= 0:
            return []
        if not pool:
            logger.warning("Template generation skipped | type=%s reason=empty concept pool", qtype.value)
            return []

        templates = self.templates[qtype][band]
        questions: List[Question] = []
        for offset in range(count):
            position = start + offset
            concept = pool[position % len(pool)]
            template = templates[position % len(templates)]
            values = self._placeholders(concept, pool, position, graph)
            prompt = template.format(**values)
            question_id = f"tpl-{qtype.value}-{band}-{position + 1}"
            if qtype is QuestionType.MULTIPLE_CHOICE:
                question = self._multiple_choice(question_id, prompt, concept, pool, position, band, values)
            elif qtype is QuestionType.FILL_BLANK:
                question = self._fill_blank(question_id, prompt, concept, values)
            else:
                question = self._essay(question_id, prompt, concept, values, level)
            question.difficulty = level
            questions.append(question)
        logger.info("Template questions built | type=%s band=%s count=%s pool=%s", qtype.value, band, len(questions), len(pool))
        return questions

    def _placeholders(self, concept: Concept, pool: Sequence[Concept], position: int, graph: Optional[KnowledgeGraph]) -> Dict[str, str]:
        definition = trim_sentence(concept.definition) or trim_sentence(concept.context) or f"a key idea in {self.field}"
        related = self._related_label(concept, pool, position, graph)
        cloze = blank_out(concept.context, concept.term) or f"The key term discussed in connection with {related} is {BLANK}."
        return {
            "concept": concept.term,
            "definition": definition,
            "context": trim_sentence(concept.context) or definition,
            "related": related,
            "field": self.field,
            "cloze": cloze,
        }

    @staticmethod
    def _related_label(concept: Concept, pool: Sequence[Concept], position: int, graph: Optional[KnowledgeGraph]) -> str:
        if graph is not None:
            for node_id in graph.related(concept.key, limit=1):
                node = graph.node(node_id)
                if node is not None:
                    return node.label
        if len(pool) > 1:
            return pool[(position + 1) % len(pool)].term
        return "the surrounding topics"

    def _multiple_choice(
        self,
        question_id: str,
        prompt: str,
        concept: Concept,
        pool: Sequence[Concept],
        position: int,
        band: str,
        values: Dict[str, str],
    ) -> Question:
        correct = values["definition"]
        seen = {correct.lower()}
        distractors: List[str] = []
        for step in range(1, len(pool)):
            other = pool[(position + step) % len(pool)]
            statement = trim_sentence(other.definition)
            if other.key == concept.key or not statement or statement.lower() in seen:
                continue
            distractors.append(statement)
            seen.add(statement.lower())
            if len(distractors) == self.OPTION_COUNT - 1:
                break
        for generic in GENERIC_DISTRACTORS[band]:
            if len(distractors) == self.OPTION_COUNT - 1:
                break
            statement = generic.format(**values)
            if statement.lower() in seen:
                continue
            distractors.append(statement)
            seen.add(statement.lower())

        correct_index = position % self.OPTION_COUNT
        options = list(distractors)
        options.insert(correct_index, correct)
        return Question(
            id=question_id,
            prompt=prompt,
            body=MultipleChoiceBody(options=options, correct_index=correct_index),
            explanation=f"The material describes {concept.term} as: {correct}.",
            provenance=Provenance.TEMPLATE,
            knowledge_points=[concept.term],
        )

    @staticmethod
    def _fill_blank(question_id: str, prompt: str, concept: Concept, values: Dict[str, str]) -> Question:
        variants = list(dict.fromkeys([concept.term, concept.term.lower()]))
        return Question(
            id=question_id,
            prompt=prompt,
            body=FillBlankBody(answer=concept.term, acceptable_answers=variants),
            explanation=f"The missing term is {concept.term}, described in the material as: {values['definition']}.",
            provenance=Provenance.TEMPLATE,
            knowledge_points=[concept.term],
        )

    @staticmethod
    def _essay(question_id: str, prompt: str, concept: Concept, values: Dict[str, str], level: int) -> Question:
        sample = (
            f"{concept.term} can be understood as {values['definition']}. "
            f"A complete answer explains this meaning, illustrates it with an example from {values['field']}, "
            f"and relates it to {values['related']}."
        )
        key_points = [
            f"Meaning of {concept.term}",
            f"Example or application of {concept.term}",
            f"Connection between {concept.term} and {values['related']}",
        ]
        return Question(
            id=question_id,
            prompt=prompt,
            body=EssayBody(sample_answer=sample, key_points=key_points, scoring_criteria=scoring_criteria(level)),
            explanation=f"A strong answer should cover the meaning of {concept.term} and how it fits into {values['field']}.",
            provenance=Provenance.TEMPLATE,
            knowledge_points=[concept.term],
        )
