import pathlib
import sys

import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from quizgen.utils.types import Document
from quizgen.workflow.chunking import ChunkPlanner, count_words, tokenize_terms
from quizgen.workflow.normalization import TextNormalizer


SENTENCES = " ".join(f"Sentence number {idx} explains one more idea about the topic." for idx in range(60))


def _assert_covers(text, chunks, overlap):
    assert chunks[0].start_offset == 0
    assert chunks[-1].end_offset == len(text)
    for chunk in chunks:
        assert chunk.start_offset < chunk.end_offset
        assert chunk.content == text[chunk.start_offset : chunk.end_offset]
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.start_offset < current.start_offset
        # no gap between consecutive chunks, and overlap stays bounded
        assert current.start_offset <= previous.end_offset
        assert previous.end_offset - current.start_offset <= overlap


def test_reference_document_yields_three_chunks():
    text = "a" * 2500
    chunks = ChunkPlanner().plan(text, max_chunk_size=1000, overlap_size=200, min_chunk_size=100)

    assert len(chunks) == 3
    assert [chunk.start_offset for chunk in chunks] == [0, 800, 1600]
    assert [chunk.index for chunk in chunks] == [0, 1, 2]
    _assert_covers(text, chunks, 200)


def test_chunks_carry_surrounding_context_and_position():
    text = "a" * 2500
    chunks = ChunkPlanner().plan(text, max_chunk_size=1000, overlap_size=200, min_chunk_size=100)

    assert [chunk.context.percentage for chunk in chunks] == [40, 72, 100]
    assert chunks[0].context.before == ""
    assert chunks[0].context.after == "a" * 100
    assert chunks[1].context.before == "a" * 100
    assert chunks[-1].context.after == ""
    assert chunks[1].context.position == 1800
    assert chunks[1].context.total == 2500
    assert chunks[1].with_context() == "\n".join(["a" * 100, "a" * 1000, "a" * 100])


def test_context_is_stripped_at_the_edges():
    text = "Intro line.\n\n" + "b" * 980 + "\n\n   tail words follow here. " + "c" * 300
    chunks = ChunkPlanner().plan(text, max_chunk_size=1000, overlap_size=0, min_chunk_size=100)

    assert len(chunks) == 2
    assert chunks[0].end_offset == 995
    assert chunks[0].context.after.startswith("tail words")
    assert chunks[1].context.before == "b" * 98


@pytest.mark.parametrize(
    "max_size,overlap,min_size",
    [(1000, 200, 100), (500, 100, 50), (300, 0, 100), (120, 60, 120), (2000, 200, 100)],
)
def test_chunks_cover_text_in_order(max_size, overlap, min_size):
    chunks = ChunkPlanner().plan(SENTENCES, max_chunk_size=max_size, overlap_size=overlap, min_chunk_size=min_size)

    assert chunks
    _assert_covers(SENTENCES, chunks, overlap)


def test_breaks_prefer_paragraph_boundaries():
    text = "A" * 900 + "\n\n" + "B" * 600
    chunks = ChunkPlanner(max_chunk_size=1000, overlap_size=0, min_chunk_size=100).plan(text)

    assert chunks[0].end_offset == 902
    assert chunks[0].content.endswith("\n\n")
    assert chunks[1].content == "B" * 600


def test_sentence_text_breaks_after_sentence_end():
    chunks = ChunkPlanner(max_chunk_size=500, overlap_size=100, min_chunk_size=50).plan(SENTENCES)

    for chunk in chunks[:-1]:
        assert chunk.content.rstrip().endswith(".")


def test_clause_separator_is_the_last_resort_break():
    text = "x" * 950 + ", " + "y" * 500
    chunks = ChunkPlanner(max_chunk_size=1000, overlap_size=0, min_chunk_size=100).plan(text)

    assert chunks[0].end_offset == 952
    assert chunks[1].content == "y" * 500


def test_short_tail_is_folded_into_previous_chunk():
    text = "x" * 1050
    chunks = ChunkPlanner(max_chunk_size=1000, overlap_size=0, min_chunk_size=100).plan(text)

    assert len(chunks) == 1
    assert (chunks[0].start_offset, chunks[0].end_offset) == (0, 1050)


@pytest.mark.parametrize("value", ["", None, 42])
def test_empty_or_invalid_input_has_no_chunks(value):
    assert ChunkPlanner().plan(value) == []


def test_short_text_is_single_chunk_with_metadata():
    text = "Chapter 1 Photosynthesis. Photosynthesis converts light energy. Light drives photosynthesis."
    chunks = ChunkPlanner().plan(text)

    assert len(chunks) == 1
    meta = chunks[0].metadata
    assert meta.key_terms[0].term == "photosynthesis"
    assert meta.key_terms[0].frequency == 3
    assert meta.sentence_count == 3
    assert meta.word_count == count_words(text)
    assert {"type": "chapter", "text": "Chapter 1"} in meta.topics
    assert 1 <= meta.complexity <= 5


def test_tokenize_terms_drops_stop_words_and_numbers():
    assert tokenize_terms("The 2024 model is a Model of the SYSTEM!") == ["model", "model", "system"]


def test_text_normalizer_cleans_whitespace_and_invisible_characters():
    raw = "Line one\r\n\r\n\r\n\r\nLine\u200b   two \t\nend"
    assert TextNormalizer().preprocess(raw) == "Line one\n\nLine two\nend"
    assert TextNormalizer().preprocess(None) == ""


@pytest.mark.parametrize("length,tier", [(0, "low"), (2000, "low"), (2001, "medium"), (5000, "medium"), (5001, "high")])
def test_document_complexity_tier_boundaries(length, tier):
    document = Document(text="a" * length)

    assert document.length == length
    assert document.complexity == tier
