from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


_TYPE_ALIASES = {
    "mc": "multiple-choice",
    "mcq": "multiple-choice",
    "choice": "multiple-choice",
    "multiple-choice": "multiple-choice",
    "fill": "fill-blank",
    "blank": "fill-blank",
    "fill-in-blank": "fill-blank",
    "fill-in-the-blank": "fill-blank",
    "short-answer": "essay",
    "descriptive": "essay",
}


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple-choice"
    FILL_BLANK = "fill-blank"
    ESSAY = "essay"

    @classmethod
    def from_value(cls, value: Optional[str | "QuestionType"]) -> "QuestionType":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower().replace("_", "-")
        normalized = _TYPE_ALIASES.get(normalized, normalized)
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown question type: {value!r}")


class Provenance(str, Enum):
    TEMPLATE = "template"
    HEURISTIC = "heuristic"
    EXTERNAL = "external"
    FALLBACK = "fallback"


class ConceptType(str, Enum):
    DEFINITION = "definition"
    PROPERTY = "property"
    RELATIONSHIP = "relationship"
    APPLICATION = "application"
    CLASSIFICATION = "classification"
    HIGH_FREQUENCY = "highFrequency"


@dataclass(frozen=True)
class Document:
    """Preprocessed source text; never mutated once built."""

    text: str

    @property
    def length(self) -> int:
        return len(self.text)

    @property
    def complexity(self) -> str:
        if self.length > 5000:
            return "high"
        if self.length > 2000:
            return "medium"
        return "low"


@dataclass
class KeyTerm:
    term: str
    frequency: int


@dataclass
class ChunkMetadata:
    key_terms: List[KeyTerm] = field(default_factory=list)
    word_count: int = 0
    sentence_count: int = 0
    topics: List[Dict[str, str]] = field(default_factory=list)
    complexity: int = 1


@dataclass
class ChunkContext:
    """Text just outside a chunk and how far into the document the chunk ends."""

    before: str = ""
    after: str = ""
    position: int = 0
    total: int = 0
    percentage: int = 0


@dataclass
class Chunk:
    """Contiguous slice of the document, ``[start_offset, end_offset)``."""

    index: int
    start_offset: int
    end_offset: int
    content: str
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    context: ChunkContext = field(default_factory=ChunkContext)

    def with_context(self) -> str:
        return "\n".join(part for part in (self.context.before, self.content.strip(), self.context.after) if part)


@dataclass
class Concept:
    term: str
    type: ConceptType
    definition: Optional[str] = None
    frequency: int = 1
    confidence: float = 0.5
    source_chunks: List[int] = field(default_factory=list)
    context: Optional[str] = None

    @property
    def key(self) -> str:
        return normalize_term(self.term)


@dataclass
class GraphNode:
    id: str
    label: str
    frequency: int
    importance: float
    chunks: List[int] = field(default_factory=list)


@dataclass
class GraphEdge:
    source: str
    target: str
    weight: int


@dataclass
class KnowledgeGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def related(self, node_id: str, limit: int = 3) -> List[str]:
        """Neighbour ids ordered by edge weight."""
        neighbours: List[tuple[int, str]] = []
        for edge in self.edges:
            if edge.source == node_id:
                neighbours.append((edge.weight, edge.target))
            elif edge.target == node_id:
                neighbours.append((edge.weight, edge.source))
        neighbours.sort(key=lambda item: (-item[0], item[1]))
        return [other for _, other in neighbours[:limit]]


@dataclass
class DocumentStructure:
    chapters: List[str] = field(default_factory=list)
    sections: List[str] = field(default_factory=list)
    lists: List[str] = field(default_factory=list)
    definitions: List[str] = field(default_factory=list)


@dataclass
class GlobalMetadata:
    top_terms: List[KeyTerm] = field(default_factory=list)
    average_complexity: float = 0.0
    structure: DocumentStructure = field(default_factory=DocumentStructure)
    total_words: int = 0
    total_sentences: int = 0
    reading_time: int = 0
    key_passages: List[int] = field(default_factory=list)


@dataclass
class ExtractionResult:
    concepts: List[Concept] = field(default_factory=list)
    graph: KnowledgeGraph = field(default_factory=KnowledgeGraph)
    metadata: GlobalMetadata = field(default_factory=GlobalMetadata)


@dataclass
class ProcessedDocument:
    """Planned and analysed document, reusable across generation calls."""

    document: Document
    chunks: List[Chunk]
    extraction: ExtractionResult


@dataclass
class MultipleChoiceBody:
    question_type: ClassVar[QuestionType] = QuestionType.MULTIPLE_CHOICE

    options: List[str]
    correct_index: int


@dataclass
class FillBlankBody:
    question_type: ClassVar[QuestionType] = QuestionType.FILL_BLANK

    answer: str
    acceptable_answers: List[str] = field(default_factory=list)


@dataclass
class EssayBody:
    question_type: ClassVar[QuestionType] = QuestionType.ESSAY

    sample_answer: str
    key_points: List[str] = field(default_factory=list)
    scoring_criteria: List[str] = field(default_factory=list)


QuestionBody = Union[MultipleChoiceBody, FillBlankBody, EssayBody]


@dataclass
class Question:
    """Common envelope around a type-specific question body."""

    id: str
    prompt: str
    body: QuestionBody
    explanation: str = ""
    difficulty: int = 1
    provenance: Provenance = Provenance.TEMPLATE
    quality_score: float = 0.0
    relevance_score: float = 0.0
    knowledge_points: List[str] = field(default_factory=list)

    @property
    def type(self) -> QuestionType:
        return self.body.question_type

    @property
    def choices(self) -> Optional[List[str]]:
        if isinstance(self.body, MultipleChoiceBody):
            return self.body.options
        return None

    @property
    def correct_answer(self) -> Union[int, str]:
        if isinstance(self.body, MultipleChoiceBody):
            return self.body.correct_index
        if isinstance(self.body, FillBlankBody):
            return self.body.answer
        return self.body.sample_answer

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "prompt": self.prompt,
            "correctAnswer": self.correct_answer,
            "explanation": self.explanation,
            "difficulty": self.difficulty,
            "qualityScore": round(self.quality_score, 4),
            "relevanceScore": round(self.relevance_score, 4),
            "provenance": self.provenance.value,
            "knowledgePoints": list(self.knowledge_points),
        }
        if isinstance(self.body, MultipleChoiceBody):
            payload["choices"] = list(self.body.options)
        elif isinstance(self.body, FillBlankBody):
            payload["acceptableAnswers"] = list(self.body.acceptable_answers)
        else:
            payload["keyPoints"] = list(self.body.key_points)
            payload["scoringCriteria"] = list(self.body.scoring_criteria)
        return payload


def normalize_term(term: str) -> str:
    cleaned = "".join(ch if ch.isalnum() else " " for ch in (term or "").lower())
    return " ".join(cleaned.split())
