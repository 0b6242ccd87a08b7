from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Sequence, Tuple, Union

Action = Union[str, Callable[[re.Match], Any]]


@dataclass(frozen=True)
class PatternRule:
    """A named ``(pattern, action)`` pair.

    For extraction the action maps a match to a value (``None`` discards it).
    For rewriting the action is a ``re.sub`` replacement: a template string or a callable.
    """

    name: str
    pattern: re.Pattern
    action: Action

    @classmethod
    def compile(cls, name: str, pattern: str, action: Action, flags: int = 0) -> "PatternRule":
        return cls(name=name, pattern=re.compile(pattern, flags), action=action)

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.action, text)

    def matches(self, text: str) -> Iterator[Any]:
        if not callable(self.action):
            raise TypeError(f"Rule {self.name} has no extraction callable")
        for match in self.pattern.finditer(text):
            value = self.action(match)
            if value is not None:
                yield value


class RuleRunner:
    """Evaluates an ordered list of rules against text."""

    def __init__(self, rules: Sequence[PatternRule]) -> None:
        self.rules: Tuple[PatternRule, ...] = tuple(rules)

    def first(self, text: str) -> Optional[Tuple[str, Any]]:
        """Return the first value produced by the earliest matching rule, if any."""
        for rule in self.rules:
            for value in rule.matches(text):
                return rule.name, value
        return None

    def rewrite(self, text: str) -> str:
        for rule in self.rules:
            text = rule.apply(text)
        return text

    def rewrite_until_stable(self, text: str, max_passes: int) -> Tuple[str, int]:
        """Apply :meth:`rewrite` until a pass changes nothing or the pass limit is reached."""
        passes = 0
        while passes < max_passes:
            updated = self.rewrite(text)
            passes += 1
            if updated == text:
                break
            text = updated
        return text, passes
