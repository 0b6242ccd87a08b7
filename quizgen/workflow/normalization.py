from __future__ import annotations

import re

from quizgen.utils.types import Document


class TextNormalizer:
    """Cleans extracted study-material text before it is chunked."""

    INVISIBLE_PATTERN = re.compile("[\u200b\u200c\u200d\u2060\ufeff\u00ad]")
    INLINE_SPACE_PATTERN = re.compile(r"[ \t\f\v]+")
    BLANK_RUN_PATTERN = re.compile(r"\n{3,}")

    def normalize_newlines(self, text: str) -> str:
        return text.replace("\r\n", "\n").replace("\r", "\n")

    def strip_invisible(self, text: str) -> str:
        return self.INVISIBLE_PATTERN.sub("", text)

    def normalize_whitespace(self, text: str) -> str:
        collapsed = self.INLINE_SPACE_PATTERN.sub(" ", text)
        collapsed = re.sub(r" *\n *", "\n", collapsed)
        return self.BLANK_RUN_PATTERN.sub("\n\n", collapsed)

    def preprocess(self, text: str) -> str:
        if not isinstance(text, str):
            return ""
        cleaned = self.normalize_newlines(text)
        cleaned = self.strip_invisible(cleaned)
        cleaned = self.normalize_whitespace(cleaned)
        return cleaned.strip()

    def build_document(self, text: str) -> Document:
        return Document(text=self.preprocess(text))
