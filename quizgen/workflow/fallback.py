from __future__ import annotations

import dataclasses
from typing import Dict, List, Sequence

from quizgen.utils.types import (
    Concept,
    EssayBody,
    FillBlankBody,
    MultipleChoiceBody,
    Provenance,
    Question,
    QuestionType,
)
from quizgen.workflow.templates import scoring_criteria

FALLBACK_SET: Dict[QuestionType, List[dict]] = {
    QuestionType.MULTIPLE_CHOICE: [
        {
            "prompt": "What is the most effective first step when studying new material?",
            "options": [
                "Memorise every sentence word for word",
                "Skim the headings and summary to build an overview",
                "Skip the introduction entirely",
                "Read only the final paragraph",
            ],
            "correct_index": 1,
            "explanation": "An overview gives later details a structure to attach to, which makes them easier to understand and recall.",
        },
        {
            "prompt": "Which habit best supports long-term retention of studied material?",
            "options": [
                "A single long cramming session",
                "Rereading without testing yourself",
                "Spaced review of the key ideas",
                "Highlighting every line",
            ],
            "correct_index": 2,
            "explanation": "Reviewing key ideas at increasing intervals strengthens memory far more than massed repetition.",
        },
        {
            "prompt": "When a text introduces a new technical term, what should a learner do first?",
            "options": [
                "Identify its definition and an example of its use",
                "Ignore it until it appears in an exam",
                "Replace it with a familiar everyday word",
                "Assume it means the same as a similar-sounding term",
            ],
            "correct_index": 0,
            "explanation": "Pairing a definition with an example anchors the term and prevents it from being confused with others.",
        },
    ],
    QuestionType.FILL_BLANK: [
        {
            "prompt": "Reviewing material at increasing intervals is called ______ repetition.",
            "answer": "spaced",
            "explanation": "Spaced repetition schedules reviews just before material would otherwise be forgotten.",
        },
        {
            "prompt": "A short restatement of the main ideas of a text is called a ______.",
            "answer": "summary",
            "explanation": "Writing a summary forces the learner to select and connect the most important ideas.",
        },
        {
            "prompt": "Explaining an idea in your own words is a good test of your ______ of it.",
            "answer": "understanding",
            "explanation": "Paraphrasing requires understanding rather than recognition of the original wording.",
        },
    ],
    QuestionType.ESSAY: [
        {
            "prompt": "Summarise the main ideas of the material and explain how they connect to each other.",
            "sample_answer": "A good answer names the central ideas of the material, explains each briefly and shows how they build on one another.",
            "key_points": ["Main ideas identified", "Each idea explained", "Connections between ideas"],
            "explanation": "This checks overall comprehension of the material rather than isolated facts.",
        },
        {
            "prompt": "Choose one concept from the material and explain how you would apply it in practice.",
            "sample_answer": "A good answer states the chosen concept, describes a realistic situation and walks through how the concept is used there.",
            "key_points": ["Concept stated clearly", "Realistic scenario", "Step-by-step application"],
            "explanation": "Applying a concept to a new situation shows transferable understanding.",
        },
        {
            "prompt": "Which part of the material is the most challenging, and how would you approach mastering it?",
            "sample_answer": "A good answer identifies a specific difficult idea, explains why it is hard and proposes concrete study steps.",
            "key_points": ["Specific difficulty named", "Reason for the difficulty", "Concrete study plan"],
            "explanation": "Reflecting on difficulty helps plan further study effectively.",
        },
    ],
}

FILLER_DISTRACTORS = (
    "A term that does not appear in the material",
    "An unrelated everyday object",
    "A concept from a different subject area",
)


def _build(question_type: QuestionType, item: dict, question_id: str, difficulty: int) -> Question:
    if question_type is QuestionType.MULTIPLE_CHOICE:
        body = MultipleChoiceBody(options=list(item["options"]), correct_index=item["correct_index"])
    elif question_type is QuestionType.FILL_BLANK:
        body = FillBlankBody(answer=item["answer"], acceptable_answers=[item["answer"]])
    else:
        body = EssayBody(sample_answer=item["sample_answer"], key_points=list(item["key_points"]), scoring_criteria=scoring_criteria(difficulty))
    return Question(
        id=question_id,
        prompt=item["prompt"],
        body=body,
        explanation=item["explanation"],
        difficulty=difficulty,
        provenance=Provenance.FALLBACK,
        knowledge_points=["study skills"],
    )


def fallback_questions(question_type: QuestionType | str, count: int, *, start: int = 0, difficulty: int = 1) -> List[Question]:
    """Fixed, content-independent questions used when every generation path has failed."""
    qtype = QuestionType.from_value(question_type)
    items = FALLBACK_SET[qtype]
    return [
        _build(qtype, items[(start + offset) % len(items)], f"fb-{qtype.value}-{start + offset + 1}", difficulty)
        for offset in range(max(0, count))
    ]


def filler_question(index: int, concepts: Sequence[Concept]) -> Question:
    """Basic padding question; alternates multiple-choice and fill-blank over the concept pool."""
    if not concepts:
        qtype = QuestionType.MULTIPLE_CHOICE if index % 2 == 0 else QuestionType.FILL_BLANK
        question = fallback_questions(qtype, 1, start=index // 2)[0]
        return dataclasses.replace(question, id=f"fill-{index + 1}", prompt=f"{question.prompt} (item {index + 1})")

    concept = concepts[index % len(concepts)]
    if index % 2 == 0:
        correct_index = (index // 2) % 4
        options = list(FILLER_DISTRACTORS)
        options.insert(correct_index, concept.term)
        return Question(
            id=f"fill-{index + 1}",
            prompt=f"Which of the following is a key concept covered in the material (item {index + 1})?",
            body=MultipleChoiceBody(options=options, correct_index=correct_index),
            explanation=f"{concept.term} is one of the concepts the material discusses.",
            provenance=Provenance.FALLBACK,
            knowledge_points=[concept.term],
        )
    hint = concept.term[0]
    return Question(
        id=f"fill-{index + 1}",
        prompt=f"A key concept in the material starts with \"{hint}\" and has {len(concept.term)} characters: ______ (item {index + 1}).",
        body=FillBlankBody(answer=concept.term, acceptable_answers=list(dict.fromkeys([concept.term, concept.term.lower()]))),
        explanation=f"The concept is {concept.term}.",
        provenance=Provenance.FALLBACK,
        knowledge_points=[concept.term],
    )
