from __future__ import annotations

import re
from collections import Counter
from typing import Dict, List, Optional, Tuple

from quizgen.logging_config import get_logger
from quizgen.utils.types import Chunk, ChunkContext, ChunkMetadata, KeyTerm

logger = get_logger(__name__)

CJK_CHAR = re.compile(r"[\u4e00-\u9fff]")
LATIN_WORD = re.compile(r"[A-Za-z]+(?:'[A-Za-z]+)?")
SENTENCE_END = re.compile(r"[。！？.!?]+")
TERM_STRIP = re.compile(r"[^0-9A-Za-z\u4e00-\u9fff\s]+")
TECHNICAL_TERM = re.compile(r"\b[A-Z]{2,}\b|[\u4e00-\u9fff]{4,}|\b[A-Za-z]{12,}\b")

STOP_WORDS = frozenset(
    """
    a an the and or but if then than that this these those there their they them it its is are was were be been being
    of to in on at by for with from as into onto over under about after before between through during without within
    not no nor so such can could may might must shall should will would do does did done has have had having
    which who whom whose what when where why how all any both each few more most other some same only own very
    also just our we you your he she his her him i me my us one two first second new used use using
    的 了 和 是 在 与 及 或 等 中 为 对
    """.split()
)

TOPIC_PATTERNS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("chapter", re.compile(r"\bchapter\s+[\w.]+|第[一二三四五六七八九十百\d]+章", re.IGNORECASE)),
    ("section", re.compile(r"\bsection\s+[\d.]+|^[ \t]*\d+\.\d+[ \t]+\S[^\n]{0,60}|第[一二三四五六七八九十百\d]+节", re.IGNORECASE | re.MULTILINE)),
    ("reference", re.compile(r"《[^》\n]{1,40}》|【[^】\n]{1,40}】|\"[^\"\n]{2,40}\"")),
    ("concept", re.compile(r"\b(?:definition|concept|principle|theorem|law|method|theory)\b|定义|概念|原理|定理|方法|理论", re.IGNORECASE)),
)


def tokenize_terms(text: str) -> List[str]:
    """Lower-cased candidate terms with punctuation removed and stop words dropped."""
    cleaned = TERM_STRIP.sub(" ", text or "").lower()
    return [token for token in cleaned.split() if 2 <= len(token) <= 20 and token not in STOP_WORDS and not token.isdigit()]


def count_words(text: str) -> int:
    return len(CJK_CHAR.findall(text)) + len(LATIN_WORD.findall(text))


def count_sentences(text: str) -> int:
    return len(SENTENCE_END.findall(text))


class ChunkPlanner:
    """Splits document text into overlapping chunks that end on natural boundaries."""

    # ordered by priority
    BREAK_PATTERNS: Tuple[re.Pattern, ...] = (
        re.compile(r"\n\s*\n"),
        re.compile(r"[。！？.!?]\s*"),
        re.compile(r"[，；,;]\s*"),
    )
    CONTEXT_SIZE = 100
    MAX_LOOKBACK = 200
    LOOKBACK_RATIO = 0.2
    KEY_TERM_LIMIT = 10
    TOPIC_LIMIT = 5

    def __init__(self, max_chunk_size: int = 1000, overlap_size: int = 200, min_chunk_size: int = 100) -> None:
        self.max_chunk_size = max_chunk_size
        self.overlap_size = overlap_size
        self.min_chunk_size = min_chunk_size

    def plan(
        self,
        text: str,
        max_chunk_size: Optional[int] = None,
        overlap_size: Optional[int] = None,
        min_chunk_size: Optional[int] = None,
    ) -> List[Chunk]:
        if not isinstance(text, str) or not text:
            return []
        max_size, overlap, min_size = self._resolve_sizes(max_chunk_size, overlap_size, min_chunk_size)
        length = len(text)
        if length <= max_size:
            return [self._make_chunk(0, 0, length, text)]

        spans: List[Tuple[int, int]] = []
        cursor = 0
        while cursor < length:
            end = min(cursor + max_size, length)
            if end < length:
                end = self._find_break(text, cursor, end, min_size)
            spans.append((cursor, end))
            if end >= length:
                break
            cursor = max(end - overlap, cursor + 1)

        spans = self._fold_short_spans(text, spans, min_size)
        chunks = [self._make_chunk(idx, start, end, text) for idx, (start, end) in enumerate(spans)]
        logger.info("Chunk plan ready | length=%s chunks=%s max=%s overlap=%s", length, len(chunks), max_size, overlap)
        return chunks

    def _resolve_sizes(self, max_chunk_size: Optional[int], overlap_size: Optional[int], min_chunk_size: Optional[int]) -> Tuple[int, int, int]:
        max_size = max(1, int(max_chunk_size if max_chunk_size is not None else self.max_chunk_size))
        overlap = max(0, int(overlap_size if overlap_size is not None else self.overlap_size))
        min_size = int(min_chunk_size if min_chunk_size is not None else self.min_chunk_size)
        return max_size, overlap, min(max(0, min_size), max_size)

    def _find_break(self, text: str, start: int, end: int, min_size: int) -> int:
        window = min(self.MAX_LOOKBACK, int((end - start) * self.LOOKBACK_RATIO))
        if window <= 0:
            return end
        region_start = end - window
        region = text[region_start:end]
        for pattern in self.BREAK_PATTERNS:
            positions = [region_start + match.end() for match in pattern.finditer(region)]
            acceptable = [pos for pos in positions if start + min_size < pos <= end]
            if acceptable:
                return acceptable[-1]
        return end

    @staticmethod
    def _fold_short_spans(text: str, spans: List[Tuple[int, int]], min_size: int) -> List[Tuple[int, int]]:
        kept: List[Tuple[int, int]] = []
        for start, end in spans:
            if kept and len(text[start:end].strip()) < min_size:
                kept[-1] = (kept[-1][0], end)
                continue
            kept.append((start, end))
        return kept

    def _make_chunk(self, index: int, start: int, end: int, text: str) -> Chunk:
        content = text[start:end]
        return Chunk(
            index=index,
            start_offset=start,
            end_offset=end,
            content=content,
            metadata=self.chunk_metadata(content),
            context=self.chunk_context(text, start, end),
        )

    def chunk_context(self, text: str, start: int, end: int) -> ChunkContext:
        """Up to ``CONTEXT_SIZE`` characters either side of the span, plus the end position as a rounded percentage."""
        total = len(text)
        before = text[max(0, start - self.CONTEXT_SIZE):start].strip()
        after = text[end:end + self.CONTEXT_SIZE].strip()
        percentage = int(end * 100 / total + 0.5) if total else 0
        return ChunkContext(before=before, after=after, position=end, total=total, percentage=percentage)

    def chunk_metadata(self, content: str) -> ChunkMetadata:
        counts = Counter(tokenize_terms(content))
        key_terms = [KeyTerm(term=term, frequency=freq) for term, freq in counts.most_common(self.KEY_TERM_LIMIT)]
        return ChunkMetadata(
            key_terms=key_terms,
            word_count=count_words(content),
            sentence_count=count_sentences(content),
            topics=self._topics(content),
            complexity=self.assess_complexity(content),
        )

    def _topics(self, content: str) -> List[Dict[str, str]]:
        topics: List[Dict[str, str]] = []
        seen = set()
        for kind, pattern in TOPIC_PATTERNS:
            for match in pattern.finditer(content):
                marker = match.group(0).strip()
                if (kind, marker.lower()) in seen:
                    continue
                seen.add((kind, marker.lower()))
                topics.append({"type": kind, "text": marker})
                if len(topics) >= self.TOPIC_LIMIT:
                    return topics
        return topics

    @staticmethod
    def assess_complexity(content: str) -> int:
        """Score 1-5 from average sentence length and technical-term density."""
        sentences = [part for part in SENTENCE_END.split(content) if part.strip()]
        avg_sentence = len(content) / max(1, len(sentences))
        score = 1
        if avg_sentence > 100:
            score += 2
        elif avg_sentence > 50:
            score += 1
        density = len(TECHNICAL_TERM.findall(content)) / max(1, count_words(content))
        if density > 0.1:
            score += 1
        if density > 0.2:
            score += 1
        return min(5, score)
