from __future__ import annotations

import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from quizgen.logging_config import get_logger
from quizgen.utils.errors import ExtractionFailure
from quizgen.utils.types import (
    Chunk,
    Concept,
    ConceptType,
    DocumentStructure,
    ExtractionResult,
    GlobalMetadata,
    KeyTerm,
    normalize_term,
)
from quizgen.workflow.chunking import STOP_WORDS, count_sentences, count_words, tokenize_terms
from quizgen.workflow.knowledge_graph import KnowledgeGraphBuilder
from quizgen.workflow.rules import PatternRule, RuleRunner

logger = get_logger(__name__)

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|(?<=[。！？；])|\n+")

_LEAD = r"^\s*(?:(?:the|a|an)\s+)?"
_EN_TERM = r"(?P<term>[A-Za-z][\w\-]*(?:\s+[A-Za-z][\w\-]*){0,3}?)"
_EN_BODY = r"\s+(?P<body>.{5,200}?)[.!?]?\s*$"
_CJK_TERM = r"^\s*(?P<term>[\u4e00-\u9fffA-Za-z0-9]{2,15}?)"
_CJK_BODY = r"(?P<body>[^。！？]{4,100})"

ACRONYM = re.compile(r"\b[A-Z]{2,}\b")
TECHNICAL_NOUN = re.compile(
    r"\b(?:method|theory|principle|system|model|algorithm|technique|process|function|structure|mechanism|equation|theorem)s?\b"
    r"|技术|方法|理论|原理|系统|模型|算法|机制|公式|定理",
    re.IGNORECASE,
)

STRUCTURE_PATTERNS = {
    "chapters": (re.compile(r"^[ \t]*(?:chapter\s+\w+|第[一二三四五六七八九十百\d]+章)[^\n]*$", re.IGNORECASE | re.MULTILINE), 10),
    "sections": (re.compile(r"^[ \t]*(?:\d+\.\d+(?:\.\d+)*|section\s+[\d.]+|第[一二三四五六七八九十百\d]+节)[ \t]+[^\n]+$", re.IGNORECASE | re.MULTILINE), 10),
    "lists": (re.compile(r"^[ \t]*(?:[-*•·]|\d+[.)]|[a-z][.)]|[（(]\d+[）)])[ \t]+[^\n]+$", re.MULTILINE), 20),
}
DEFINITION_CUE = re.compile(r"\b(?:is defined as|refers to|is called|is known as|means)\b|是指|定义为|称为|指的是", re.IGNORECASE)


def split_sentences(text: str) -> List[str]:
    return [part.strip() for part in SENTENCE_SPLIT.split(text or "") if part and part.strip()]


def _clean_term(raw: str) -> Optional[str]:
    term = " ".join((raw or "").strip(" \t\"'“”‘’()[]《》【】:：,，").split())
    if not 2 <= len(term) <= 40 or len(term.split()) > 4:
        return None
    words = normalize_term(term).split()
    if not words or all(word in STOP_WORDS for word in words):
        return None
    return term


def _clean_body(raw: str) -> Optional[str]:
    body = " ".join((raw or "").strip(" \t\"'“”,，:：;；").split())
    return body or None


def _statement(match: re.Match) -> Optional[Tuple[str, str]]:
    term = _clean_term(match.group("term"))
    body = _clean_body(match.group("body"))
    if not term or not body:
        return None
    return term, body


def _english(cue: str) -> str:
    return _LEAD + _EN_TERM + r"\s+(?:" + cue + r")" + _EN_BODY


def _cjk(cue: str) -> str:
    return _CJK_TERM + r"(?:" + cue + r")" + _CJK_BODY


# Most specific cues first: the first matching rule claims the sentence.
CONCEPT_RULES: Tuple[PatternRule, ...] = (
    PatternRule.compile(ConceptType.CLASSIFICATION.value, _english(r"(?:is|are) divided into|(?:is|are|can be) classified into|consists of|is composed of|comprises|includes"), _statement, re.IGNORECASE),
    PatternRule.compile(ConceptType.APPLICATION.value, _english(r"(?:is|are) used (?:for|to|in)|(?:is|are) applied (?:to|in)|can be used (?:for|to)|is useful for"), _statement, re.IGNORECASE),
    PatternRule.compile(ConceptType.RELATIONSHIP.value, _english(r"(?:is|are) related to|(?:is|are) associated with|depends on|affects|influences|leads to|causes|results in|(?:is|are) based on|determines"), _statement, re.IGNORECASE),
    PatternRule.compile(ConceptType.PROPERTY.value, _english(r"has the property of|(?:is|are) characteri[sz]ed by|has|have|features"), _statement, re.IGNORECASE),
    PatternRule.compile(ConceptType.DEFINITION.value, _english(r"(?:is|are) defined as|refers to|(?:is|are) known as|(?:is|are) called|means|is|are"), _statement, re.IGNORECASE),
    PatternRule.compile(ConceptType.CLASSIFICATION.value, _cjk(r"可分为|分为|包括|包含|由"), _statement),
    PatternRule.compile(ConceptType.APPLICATION.value, _cjk(r"应用于|可用于|用于|可以用来"), _statement),
    PatternRule.compile(ConceptType.RELATIONSHIP.value, _cjk(r"影响|导致|决定|基于|依赖于"), _statement),
    PatternRule.compile(ConceptType.PROPERTY.value, _cjk(r"具有|的特点是|的特征是"), _statement),
    PatternRule.compile(ConceptType.DEFINITION.value, _cjk(r"是指|指的是|被定义为|定义为|称为|是一种|是"), _statement),
)


def count_occurrences(term: str, text: str) -> int:
    if re.search(r"[\u4e00-\u9fff]", term):
        return text.count(term)
    pattern = re.compile(r"(?<!\w)" + re.escape(term) + r"(?!\w)", re.IGNORECASE)
    return len(pattern.findall(text))


def score_confidence(term: str, definition: Optional[str]) -> float:
    """Base 0.5 plus bonuses for a compact term, a mid-length definition and domain vocabulary."""
    confidence = 0.5
    if 2 <= len(term) <= 10:
        confidence += 0.2
    if definition and 10 <= len(definition) <= 80:
        confidence += 0.2
    sample = f"{term} {definition or ''}"
    if ACRONYM.search(sample) or TECHNICAL_NOUN.search(sample):
        confidence += 0.1
    return round(min(1.0, confidence), 4)


def stitch_chunks(chunks: Sequence[Chunk]) -> str:
    """Rebuild the source text from overlapping chunks."""
    pieces: List[str] = []
    covered = 0
    for chunk in sorted(chunks, key=lambda item: item.start_offset):
        if chunk.end_offset <= covered:
            continue
        offset = max(0, covered - chunk.start_offset)
        pieces.append(chunk.content[offset:])
        covered = chunk.end_offset
    return "".join(pieces)


class ConceptExtractor:
    """Derives concepts, a co-occurrence knowledge graph and document-level metadata from chunks."""

    TOP_TERM_LIMIT = 20
    WORDS_PER_MINUTE = 200
    MAX_KEY_PASSAGES = 5

    def __init__(
        self,
        max_concepts: int = 20,
        frequency_threshold: int = 2,
        rules: Sequence[PatternRule] = CONCEPT_RULES,
        graph_builder: Optional[KnowledgeGraphBuilder] = None,
    ) -> None:
        self.max_concepts = max_concepts
        self.frequency_threshold = frequency_threshold
        self.runner = RuleRunner(rules)
        self.graph_builder = graph_builder or KnowledgeGraphBuilder()

    def extract(self, chunks: Iterable[Chunk]) -> ExtractionResult:
        usable = [chunk for chunk in chunks or [] if isinstance(chunk, Chunk)]
        if not usable:
            return ExtractionResult()

        merged: Dict[str, Concept] = {}
        readable: List[Chunk] = []
        for chunk in usable:
            try:
                found = self.extract_chunk(chunk)
            except ExtractionFailure:
                logger.warning("Concept extraction skipped chunk | index=%s", chunk.index, exc_info=True)
                continue
            readable.append(chunk)
            for concept in found:
                self._merge(merged, concept)

        concepts = self._rank(merged.values())
        graph = self.graph_builder.build(concepts)
        metadata = self.global_metadata(readable)
        logger.info(
            "Concepts extracted | chunks=%s candidates=%s kept=%s edges=%s",
            len(usable),
            len(merged),
            len(concepts),
            len(graph.edges),
        )
        return ExtractionResult(concepts=concepts, graph=graph, metadata=metadata)

    def extract_chunk(self, chunk: Chunk) -> List[Concept]:
        content = chunk.content
        if not isinstance(content, str):
            raise ExtractionFailure(f"Chunk {chunk.index} carries no text")

        sentences = split_sentences(content)
        found: Dict[str, Concept] = {}
        for sentence in sentences:
            hit = self.runner.first(sentence)
            if hit is None:
                continue
            rule_name, (term, definition) = hit
            key = normalize_term(term)
            if key in found:
                continue
            found[key] = Concept(
                term=term,
                type=ConceptType(rule_name),
                definition=definition,
                frequency=max(1, count_occurrences(term, content)),
                source_chunks=[chunk.index],
                context=sentence,
            )

        for term, frequency in Counter(tokenize_terms(content)).items():
            if frequency < self.frequency_threshold or term in found:
                continue
            found[term] = Concept(
                term=term,
                type=ConceptType.HIGH_FREQUENCY,
                frequency=frequency,
                source_chunks=[chunk.index],
                context=next((sentence for sentence in sentences if term in sentence.lower()), None),
            )
        return list(found.values())

    @staticmethod
    def _merge(merged: Dict[str, Concept], concept: Concept) -> None:
        key = concept.key
        existing = merged.get(key)
        if existing is None:
            merged[key] = concept
            return
        existing.frequency += concept.frequency
        existing.source_chunks = sorted(set(existing.source_chunks) | set(concept.source_chunks))
        if existing.type is ConceptType.HIGH_FREQUENCY and concept.type is not ConceptType.HIGH_FREQUENCY:
            existing.type = concept.type
            existing.term = concept.term
        if not existing.definition and concept.definition:
            existing.definition = concept.definition
            existing.context = concept.context
        elif not existing.context:
            existing.context = concept.context

    def _rank(self, concepts: Iterable[Concept]) -> List[Concept]:
        ranked = list(concepts)
        for concept in ranked:
            concept.confidence = score_confidence(concept.term, concept.definition)
            concept.source_chunks = sorted(set(concept.source_chunks))
        ranked.sort(key=lambda item: (-item.confidence, -item.frequency, item.key))
        return ranked[: self.max_concepts]

    def global_metadata(self, chunks: Sequence[Chunk]) -> GlobalMetadata:
        totals: Counter[str] = Counter()
        for chunk in chunks:
            for key_term in chunk.metadata.key_terms:
                totals[key_term.term] += key_term.frequency

        text = stitch_chunks(chunks)
        total_words = count_words(text)
        return GlobalMetadata(
            top_terms=[KeyTerm(term=term, frequency=freq) for term, freq in totals.most_common(self.TOP_TERM_LIMIT)],
            average_complexity=round(sum(chunk.metadata.complexity for chunk in chunks) / len(chunks), 2) if chunks else 0.0,
            structure=self.scan_structure(text),
            total_words=total_words,
            total_sentences=count_sentences(text),
            reading_time=math.ceil(total_words / self.WORDS_PER_MINUTE),
            key_passages=self.key_passages(chunks),
        )

    @staticmethod
    def scan_structure(text: str) -> DocumentStructure:
        structure = DocumentStructure()
        for field_name, (pattern, limit) in STRUCTURE_PATTERNS.items():
            items = [match.group(0).strip() for match in pattern.finditer(text)]
            setattr(structure, field_name, items[:limit])
        structure.definitions = [sentence for sentence in split_sentences(text) if DEFINITION_CUE.search(sentence)][:10]
        return structure

    def key_passages(self, chunks: Sequence[Chunk]) -> List[int]:
        """Indices of the most content-dense chunks, best first."""
        if not chunks:
            return []
        scored = []
        for chunk in chunks:
            meta = chunk.metadata
            length_score = max(0.0, 1 - abs(len(chunk.content) - 1000) / 1000)
            score = 0.3 * sum(term.frequency for term in meta.key_terms) + 0.2 * meta.complexity + 0.2 * length_score + 0.3 * len(meta.topics)
            scored.append((score, chunk.index))
        scored.sort(key=lambda item: (-item[0], item[1]))
        keep = min(self.MAX_KEY_PASSAGES, math.ceil(len(chunks) * 0.3))
        return [index for _, index in scored[:keep]]
