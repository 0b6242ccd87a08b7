from __future__ import annotations

import copy
import hashlib
import json
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from quizgen.logging_config import get_logger
from quizgen.utils.types import Question

logger = get_logger(__name__)


def build_fingerprint(text: str, params: Dict[str, Any], prefix_chars: Optional[int] = None) -> str:
    """Deterministic cache key over the document content and the request parameters.

    The whole document is hashed unless ``prefix_chars`` bounds it.
    """
    content = text or ""
    if prefix_chars is not None:
        content = content[: max(0, prefix_chars)]
    digest = hashlib.sha256()
    digest.update(content.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(json.dumps(params, sort_keys=True, default=str).encode("utf-8"))
    return digest.hexdigest()


class QuestionCache:
    """Bounded fingerprint -> question list map with insertion-order eviction."""

    def __init__(self, max_entries: int = 100) -> None:
        self.max_entries = max(1, max_entries)
        self._entries: "OrderedDict[str, List[Question]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str) -> Optional[List[Question]]:
        cached = self._entries.get(fingerprint)
        if cached is None:
            self.misses += 1
            return None
        self.hits += 1
        return copy.deepcopy(cached)

    def set(self, fingerprint: str, questions: List[Question]) -> None:
        self._entries[fingerprint] = copy.deepcopy(list(questions))
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.info("Question cache evicted | fingerprint=%s", evicted[:12])

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "capacity": self.max_entries, "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._entries
