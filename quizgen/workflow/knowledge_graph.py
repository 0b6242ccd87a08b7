from __future__ import annotations

import math
from collections import Counter, defaultdict
from itertools import combinations
from typing import Dict, Iterable, List, Tuple

from quizgen.utils.types import Concept, GraphEdge, GraphNode, KnowledgeGraph


class KnowledgeGraphBuilder:
    """Builds a co-occurrence graph: concepts are nodes, shared chunks are weighted edges."""

    def __init__(self, max_nodes: int = 50, max_edges: int = 100) -> None:
        self.max_nodes = max_nodes
        self.max_edges = max_edges

    def build(self, concepts: Iterable[Concept]) -> KnowledgeGraph:
        nodes = [
            GraphNode(
                id=concept.key,
                label=concept.term,
                frequency=concept.frequency,
                importance=math.log(concept.frequency + 1),
                chunks=sorted(set(concept.source_chunks)),
            )
            for concept in concepts
        ]
        nodes.sort(key=lambda node: (-node.importance, node.id))
        nodes = nodes[: self.max_nodes]

        members: Dict[int, List[str]] = defaultdict(list)
        for node in nodes:
            for chunk_index in node.chunks:
                members[chunk_index].append(node.id)

        weights: Counter[Tuple[str, str]] = Counter()
        for chunk_index in sorted(members):
            for source, target in combinations(sorted(set(members[chunk_index])), 2):
                weights[(source, target)] += 1

        edges = [GraphEdge(source=source, target=target, weight=weight) for (source, target), weight in weights.items()]
        edges.sort(key=lambda edge: (-edge.weight, edge.source, edge.target))
        return KnowledgeGraph(nodes=nodes, edges=edges[: self.max_edges])
