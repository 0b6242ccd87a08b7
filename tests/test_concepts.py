import pathlib
import sys

import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from quizgen.utils.types import Chunk, Concept, ConceptType
from quizgen.workflow.chunking import ChunkPlanner
from quizgen.workflow.concepts import ConceptExtractor, score_confidence, split_sentences, stitch_chunks
from quizgen.workflow.knowledge_graph import KnowledgeGraphBuilder

BIOLOGY = (
    "Photosynthesis is the process by which green plants convert light energy into chemical energy. "
    "Photosynthesis needs light.\n"
    "The Calvin cycle is used to fix carbon dioxide into sugars.\n"
    "Light intensity affects the rate of photosynthesis in most plants.\n"
    "Cellular respiration is divided into glycolysis, the Krebs cycle and oxidative phosphorylation.\n"
)


def _chunk(index, content):
    return Chunk(index=index, start_offset=0, end_offset=len(content), content=content)


def _by_key(concepts):
    return {concept.key: concept for concept in concepts}


def test_pattern_rules_assign_concept_types():
    result = ConceptExtractor().extract([_chunk(0, BIOLOGY)])
    concepts = _by_key(result.concepts)

    assert concepts["photosynthesis"].type is ConceptType.DEFINITION
    assert concepts["photosynthesis"].definition == "the process by which green plants convert light energy into chemical energy"
    assert concepts["calvin cycle"].type is ConceptType.APPLICATION
    assert concepts["light intensity"].type is ConceptType.RELATIONSHIP
    assert concepts["cellular respiration"].type is ConceptType.CLASSIFICATION


def test_frequent_terms_become_high_frequency_concepts():
    concepts = _by_key(ConceptExtractor(frequency_threshold=2).extract([_chunk(0, BIOLOGY)]).concepts)

    assert concepts["light"].type is ConceptType.HIGH_FREQUENCY
    assert concepts["light"].frequency == 3
    assert concepts["light"].definition is None


def test_duplicate_chunks_merge_by_normalized_term():
    text = "Photosynthesis is the process by which plants make food. Photosynthesis needs light."
    result = ConceptExtractor().extract([_chunk(0, text), _chunk(1, text)])

    keys = [concept.key for concept in result.concepts]
    assert len(keys) == len(set(keys))
    photosynthesis = _by_key(result.concepts)["photosynthesis"]
    assert photosynthesis.frequency == 4
    assert photosynthesis.source_chunks == [0, 1]


def test_cjk_definition_is_recognised():
    text = "光合作用是指植物利用光能合成有机物的过程。"
    concepts = ConceptExtractor().extract([_chunk(0, text)]).concepts

    assert concepts[0].term == "光合作用"
    assert concepts[0].type is ConceptType.DEFINITION


def test_empty_input_gives_empty_result():
    result = ConceptExtractor().extract([])

    assert result.concepts == []
    assert result.graph.nodes == []


def test_unreadable_chunk_is_skipped():
    good = _chunk(1, "Entropy is a measure of disorder in a system.")
    bad = Chunk(index=0, start_offset=0, end_offset=0, content=None)
    result = ConceptExtractor().extract([bad, good])

    assert [concept.key for concept in result.concepts] == ["entropy"]


def test_max_concepts_caps_ranked_output():
    result = ConceptExtractor(max_concepts=3).extract([_chunk(0, BIOLOGY)])

    assert len(result.concepts) == 3
    confidences = [concept.confidence for concept in result.concepts]
    assert confidences == sorted(confidences, reverse=True)


@pytest.mark.parametrize(
    "term,definition,expected",
    [
        ("CPU", "Central processing unit of a computer", 1.0),
        ("entropy", "a measure of disorder", 0.9),
        ("an extremely long term name", None, 0.5),
        ("gradient descent algorithm", None, 0.6),
    ],
)
def test_confidence_heuristics(term, definition, expected):
    assert score_confidence(term, definition) == pytest.approx(expected)


def test_graph_links_concepts_sharing_chunks():
    concepts = [
        Concept(term="alpha", type=ConceptType.DEFINITION, frequency=3, source_chunks=[0, 1]),
        Concept(term="beta", type=ConceptType.DEFINITION, frequency=1, source_chunks=[1]),
        Concept(term="gamma", type=ConceptType.DEFINITION, frequency=1, source_chunks=[2]),
    ]
    graph = KnowledgeGraphBuilder().build(concepts)

    assert [node.id for node in graph.nodes] == ["alpha", "beta", "gamma"]
    assert [(edge.source, edge.target, edge.weight) for edge in graph.edges] == [("alpha", "beta", 1)]
    assert graph.related("beta") == ["alpha"]
    assert graph.related("gamma") == []


def test_graph_respects_node_and_edge_caps():
    concepts = [Concept(term=f"term{idx}", type=ConceptType.DEFINITION, frequency=idx + 1, source_chunks=[0]) for idx in range(8)]
    graph = KnowledgeGraphBuilder(max_nodes=4, max_edges=5).build(concepts)

    assert [node.id for node in graph.nodes] == ["term7", "term6", "term5", "term4"]
    assert len(graph.edges) == 5


def test_global_metadata_summarises_document():
    text = "Chapter 1 Energy\n" + BIOLOGY
    chunks = ChunkPlanner().plan(text)
    metadata = ConceptExtractor().extract(chunks).metadata

    assert metadata.total_words > 0
    assert metadata.reading_time == 1
    assert metadata.structure.chapters == ["Chapter 1 Energy"]
    assert {term.term for term in metadata.top_terms[:3]} == {"energy", "photosynthesis", "light"}
    assert metadata.key_passages == [0]


def test_stitch_chunks_rebuilds_overlapping_text():
    text = " ".join(f"Sentence {idx} is about energy." for idx in range(80))
    chunks = ChunkPlanner(max_chunk_size=300, overlap_size=80, min_chunk_size=50).plan(text)

    assert len(chunks) > 1
    assert stitch_chunks(chunks) == text


def test_split_sentences_handles_mixed_punctuation():
    assert split_sentences("One. Two!\nThree？四。") == ["One.", "Two!", "Three？", "四。"]
