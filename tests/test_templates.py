import pathlib
import sys

import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from quizgen.utils.types import Concept, ConceptType, MultipleChoiceBody, Provenance, QuestionType
from quizgen.workflow.fallback import fallback_questions, filler_question
from quizgen.workflow.heuristics import HeuristicGenerator
from quizgen.workflow.templates import BASE_SCORING_CRITERIA, BLANK, TemplateGenerator, blank_out, scoring_criteria, trim_sentence

CONCEPTS = [
    Concept(
        term="Photosynthesis",
        type=ConceptType.DEFINITION,
        definition="the process by which plants convert light into chemical energy",
        context="Photosynthesis is the process by which plants convert light into chemical energy.",
    ),
    Concept(
        term="Chlorophyll",
        type=ConceptType.PROPERTY,
        definition="a green pigment that absorbs light",
        context="Chlorophyll has a green pigment that absorbs light.",
    ),
    Concept(
        term="Calvin cycle",
        type=ConceptType.APPLICATION,
        definition="fix carbon dioxide into sugars",
        context="The Calvin cycle is used to fix carbon dioxide into sugars.",
    ),
    Concept(term="energy", type=ConceptType.HIGH_FREQUENCY, frequency=4),
]


@pytest.mark.parametrize("question_type", list(QuestionType))
@pytest.mark.parametrize("count", [0, 1, 5, 13])
def test_template_generator_returns_exact_count(question_type, count):
    questions = TemplateGenerator().generate(question_type, count, CONCEPTS, difficulty=2)

    assert len(questions) == count
    assert all(question.type is question_type for question in questions)
    assert all(question.provenance is Provenance.TEMPLATE for question in questions)
    assert all(question.difficulty == 2 for question in questions)


def test_concepts_are_used_round_robin():
    questions = TemplateGenerator().generate(QuestionType.ESSAY, 9, CONCEPTS)

    assert [question.knowledge_points[0] for question in questions] == [CONCEPTS[idx % 4].term for idx in range(9)]


def test_start_offset_continues_rotation():
    generator = TemplateGenerator()
    full = generator.generate(QuestionType.FILL_BLANK, 6, CONCEPTS)
    tail = generator.generate(QuestionType.FILL_BLANK, 3, CONCEPTS, start=3)

    assert [question.prompt for question in tail] == [question.prompt for question in full[3:]]
    assert tail[0].id == "tpl-fill-blank-basic-4"


def test_multiple_choice_has_four_options_and_one_correct_definition():
    questions = TemplateGenerator().generate(QuestionType.MULTIPLE_CHOICE, 4, CONCEPTS)

    for position, question in enumerate(questions):
        body = question.body
        assert isinstance(body, MultipleChoiceBody)
        assert len(body.options) == 4
        assert len(set(body.options)) == 4
        assert body.correct_index == position % 4
    assert questions[0].body.options[0] == trim_sentence(CONCEPTS[0].definition)


def test_fill_blank_answer_is_concept_term():
    questions = TemplateGenerator().generate(QuestionType.FILL_BLANK, 4, CONCEPTS)

    assert [question.body.answer for question in questions] == [concept.term for concept in CONCEPTS]
    assert all(BLANK in question.prompt for question in questions)


def test_essay_has_sample_answer_and_three_key_points():
    question = TemplateGenerator().generate(QuestionType.ESSAY, 1, CONCEPTS, difficulty=3)[0]

    assert question.body.sample_answer.startswith("Photosynthesis can be understood as")
    assert len(question.body.key_points) == 3
    assert question.id == "tpl-essay-analysis-1"


@pytest.mark.parametrize("difficulty,bonus", [(1, 0), (2, 1), (3, 2), (7, 2)])
def test_scoring_criteria_add_bonus_items_for_harder_bands(difficulty, bonus):
    criteria = scoring_criteria(difficulty)

    assert criteria[: len(BASE_SCORING_CRITERIA)] == list(BASE_SCORING_CRITERIA)
    assert len(criteria) == len(BASE_SCORING_CRITERIA) + bonus
    assert all("bonus" in item for item in criteria[len(BASE_SCORING_CRITERIA) :])


def test_every_essay_source_attaches_scoring_criteria():
    template = TemplateGenerator().generate(QuestionType.ESSAY, 1, CONCEPTS, difficulty=2)[0]
    heuristic = HeuristicGenerator().generate(QuestionType.ESSAY, 1, CONCEPTS, difficulty=3)[0]
    fixed = fallback_questions(QuestionType.ESSAY, 1)[0]

    assert template.body.scoring_criteria == scoring_criteria(2)
    assert heuristic.body.scoring_criteria == scoring_criteria(3)
    assert fixed.body.scoring_criteria == scoring_criteria(1)
    assert template.to_dict()["scoringCriteria"] == scoring_criteria(2)


def test_empty_pool_generates_nothing():
    assert TemplateGenerator().generate(QuestionType.MULTIPLE_CHOICE, 5, []) == []


def test_blank_out_replaces_first_occurrence_only():
    assert blank_out("Energy flows; energy is conserved", "energy") == f"{BLANK} flows; energy is conserved"
    assert blank_out("Nothing here", "energy") is None


def test_heuristic_generator_uses_pattern_concepts_once():
    questions = HeuristicGenerator().generate(QuestionType.MULTIPLE_CHOICE, 10, CONCEPTS)

    assert len(questions) == 3
    assert all(question.provenance is Provenance.HEURISTIC for question in questions)
    assert questions[0].prompt == "Which statement best defines Photosynthesis?"
    assert all(len(question.body.options) == 4 for question in questions)


def test_heuristic_cloze_blanks_the_term():
    questions = HeuristicGenerator().generate(QuestionType.FILL_BLANK, 1, CONCEPTS)

    assert len(questions) == 1
    assert questions[0].prompt.startswith(f"Complete the statement: {BLANK} is the process")
    assert questions[0].body.answer == "Photosynthesis"


def test_fallback_set_cycles_and_tags_provenance():
    questions = fallback_questions(QuestionType.ESSAY, 4)

    assert len(questions) == 4
    assert questions[0].prompt == questions[3].prompt
    assert {question.provenance for question in questions} == {Provenance.FALLBACK}


def test_filler_questions_have_distinct_prompts():
    with_concepts = [filler_question(idx, CONCEPTS).prompt for idx in range(8)]
    without_concepts = [filler_question(idx, []).prompt for idx in range(8)]

    assert len(set(with_concepts)) == 8
    assert len(set(without_concepts)) == 8
