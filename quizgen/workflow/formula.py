"""Repairs math markup in generated text before it is shown to a learner.

Generated questions routinely contain bare Unicode math (``x²``, ``α``), scripts
without grouping braces (``x^2_1``), ``\\frac``/``\\sqrt`` written with
parentheses and unbalanced braces. :class:`FormulaNormalizer` rewrites all of
that into consistent LaTeX-style markup. The rewrite is idempotent and total:
it never raises, and every output has balanced ``{``/``}``.
"""

from __future__ import annotations

import dataclasses
import re
from typing import Dict, Iterable, List, Sequence

from quizgen.logging_config import get_logger
from quizgen.utils.types import EssayBody, MultipleChoiceBody, Question
from quizgen.workflow.rules import PatternRule, RuleRunner

logger = get_logger(__name__)

ENCODING_FIXES: Dict[str, str] = {
    "Ã—": "×",
    "Ã·": "÷",
    "Â±": "±",
    "Â°": "°",
    "Â²": "²",
    "Â³": "³",
    "Â·": "·",
    "â‰¤": "≤",
    "â‰¥": "≥",
    "â‰ ": "≠",
    "â‰ˆ": "≈",
    "âˆž": "∞",
    "âˆš": "√",
    "âˆ‘": "∑",
    "âˆ«": "∫",
    "â†’": "→",
    "Ï€": "π",
    "Î±": "α",
    "Î²": "β",
    "Î³": "γ",
    "Î´": "δ",
    "Î¸": "θ",
    "Î»": "λ",
    "Î¼": "μ",
    "Ïƒ": "σ",
    "Ï‰": "ω",
    "Î”": "Δ",
}

SYMBOLS: Dict[str, str] = {
    "α": r"\alpha", "β": r"\beta", "γ": r"\gamma", "δ": r"\delta", "ε": r"\epsilon", "ζ": r"\zeta",
    "η": r"\eta", "θ": r"\theta", "ι": r"\iota", "κ": r"\kappa", "λ": r"\lambda", "μ": r"\mu",
    "ν": r"\nu", "ξ": r"\xi", "π": r"\pi", "ρ": r"\rho", "σ": r"\sigma", "τ": r"\tau",
    "υ": r"\upsilon", "φ": r"\phi", "χ": r"\chi", "ψ": r"\psi", "ω": r"\omega",
    "Γ": r"\Gamma", "Δ": r"\Delta", "Θ": r"\Theta", "Λ": r"\Lambda", "Ξ": r"\Xi", "Π": r"\Pi",
    "Σ": r"\Sigma", "Φ": r"\Phi", "Ψ": r"\Psi", "Ω": r"\Omega",
    "×": r"\times", "÷": r"\div", "±": r"\pm", "∓": r"\mp", "·": r"\cdot",
    "≤": r"\leq", "≥": r"\geq", "≠": r"\neq", "≈": r"\approx", "≡": r"\equiv", "∝": r"\propto",
    "∞": r"\infty", "√": r"\sqrt", "∛": r"\sqrt[3]", "∑": r"\sum", "∏": r"\prod", "∫": r"\int",
    "∮": r"\oint", "∂": r"\partial", "∇": r"\nabla", "°": r"^{\circ}",
    "→": r"\rightarrow", "←": r"\leftarrow", "↔": r"\leftrightarrow", "⇒": r"\Rightarrow", "⇔": r"\Leftrightarrow",
    "∈": r"\in", "∉": r"\notin", "⊂": r"\subset", "⊃": r"\supset", "⊆": r"\subseteq", "⊇": r"\supseteq",
    "∪": r"\cup", "∩": r"\cap", "∅": r"\emptyset", "∀": r"\forall", "∃": r"\exists", "¬": r"\neg",
    "∧": r"\wedge", "∨": r"\vee", "∴": r"\therefore", "∵": r"\because", "⊥": r"\perp", "∠": r"\angle",
}

SUPERSCRIPTS = str.maketrans("⁰¹²³⁴⁵⁶⁷⁸⁹⁺⁻⁼⁽⁾ⁿⁱ", "0123456789+-=()ni")
SUBSCRIPTS = str.maketrans("₀₁₂₃₄₅₆₇₈₉₊₋₌₍₎ₐₑₒₓ", "0123456789+-=()aeox")

_ENCODING_PATTERN = re.compile("|".join(re.escape(key) for key in sorted(ENCODING_FIXES, key=len, reverse=True)))
_SYMBOL_PATTERN = re.compile("|".join(re.escape(key) for key in SYMBOLS))
_SUPERSCRIPT_RUN = re.compile("[⁰¹²³⁴⁵⁶⁷⁸⁹⁺⁻⁼⁽⁾ⁿⁱ]+")
_SUBSCRIPT_RUN = re.compile("[₀₁₂₃₄₅₆₇₈₉₊₋₌₍₎ₐₑₒₓ]+")

# Commands whose arguments step 3 repairs; they are never pulled into a script group.
_ARGUMENT_COMMANDS = r"(?!(?:frac|dfrac|tfrac|sqrt)(?![A-Za-z]))"


def _substitute_symbol(match: re.Match) -> str:
    token = SYMBOLS[match.group(0)]
    following = match.string[match.end() : match.end() + 1]
    if token[-1].isalpha() and following.isascii() and following.isalpha():
        return token + " "
    return token


def _brace_script(match: re.Match) -> str:
    operator = match.group(1)
    argument = next(group for group in match.groups()[1:] if group is not None)
    return f"{operator}{{{argument}}}"


SYMBOL_RULES: Sequence[PatternRule] = (
    PatternRule("encoding", _ENCODING_PATTERN, lambda match: ENCODING_FIXES[match.group(0)]),
    PatternRule("superscript-digits", _SUPERSCRIPT_RUN, lambda match: "^{" + match.group(0).translate(SUPERSCRIPTS) + "}"),
    PatternRule("subscript-digits", _SUBSCRIPT_RUN, lambda match: "_{" + match.group(0).translate(SUBSCRIPTS) + "}"),
    PatternRule("symbols", _SYMBOL_PATTERN, _substitute_symbol),
)

SCRIPT_RULES: Sequence[PatternRule] = (
    PatternRule.compile(
        "script-group",
        r"(?<![\\_^])([_^])(?:\(([^()\n]*)\)|(\\" + _ARGUMENT_COMMANDS + r"[A-Za-z]+)|([+-]?[A-Za-z0-9]+(?:\.[0-9]+)?))",
        _brace_script,
    ),
)

FRACTION_RULES: Sequence[PatternRule] = (
    PatternRule.compile("frac-parens", r"\\frac\s*\(([^()\n]*)\)\s*\(([^()\n]*)\)", r"\\frac{\1}{\2}"),
    PatternRule.compile("frac-brace-paren", r"\\frac\s*\{([^{}\n]*)\}\s*\(([^()\n]*)\)", r"\\frac{\1}{\2}"),
    PatternRule.compile("frac-paren-brace", r"\\frac\s*\(([^()\n]*)\)\s*\{", r"\\frac{\1}{"),
    PatternRule.compile("frac-tokens", r"\\frac(?![A-Za-z])\s*([A-Za-z0-9])\s*([A-Za-z0-9])", r"\\frac{\1}{\2}"),
    PatternRule.compile("frac-second-token", r"\\frac\{([^{}\n]*)\}([A-Za-z0-9])", r"\\frac{\1}{\2}"),
    PatternRule.compile("sqrt-index-parens", r"\\sqrt\[([^\]\n]*)\]\s*\(([^()\n]*)\)", r"\\sqrt[\1]{\2}"),
    PatternRule.compile("sqrt-index-token", r"\\sqrt\[([^\]\n]*)\]([A-Za-z0-9]+)", r"\\sqrt[\1]{\2}"),
    PatternRule.compile("sqrt-parens", r"\\sqrt\s*\(([^()\n]*)\)", r"\\sqrt{\1}"),
    PatternRule.compile("sqrt-token", r"\\sqrt(?![A-Za-z])\s*(?![\[{])([A-Za-z0-9]+|\\[A-Za-z]+)", r"\\sqrt{\1}"),
)

CLEANUP_RULES: Sequence[PatternRule] = (
    PatternRule.compile("empty-script", r"(?<!\\)[_^]\{[ \t]*\}", ""),
    PatternRule.compile("inline-space", r"[ \t]{2,}", " "),
    PatternRule.compile("trailing-space", r"[ \t]+\n", "\n"),
)

BRACKET_PAIRS = {"{": "}"}


def balance_brackets(text: str) -> str:
    """Drop unmatched closers and close whatever is still open at the end."""
    closers = set(BRACKET_PAIRS.values())
    stack: List[str] = []
    out: List[str] = []
    for char in text:
        if char in BRACKET_PAIRS:
            stack.append(BRACKET_PAIRS[char])
            out.append(char)
        elif char in closers:
            if stack and stack[-1] == char:
                stack.pop()
                out.append(char)
        else:
            out.append(char)
    out.extend(reversed(stack))
    return "".join(out)


class FormulaNormalizer:
    """Five-step rewrite: symbols, script grouping, fractions/roots, bracket balance, cleanup."""

    MAX_SCRIPT_PASSES = 5
    MAX_ROUNDS = 3

    def __init__(self) -> None:
        self.symbols = RuleRunner(SYMBOL_RULES)
        self.scripts = RuleRunner(SCRIPT_RULES)
        self.fractions = RuleRunner(FRACTION_RULES)
        self.cleanup = RuleRunner(CLEANUP_RULES)

    def normalize(self, text: str) -> str:
        if not isinstance(text, str) or not text:
            return text
        try:
            current = text
            for _ in range(self.MAX_ROUNDS):
                updated = self._run_steps(current)
                if updated == current:
                    break
                current = updated
            return current
        except Exception:
            logger.warning("Formula normalization failed; keeping original text", exc_info=True)
            return text

    def _run_steps(self, text: str) -> str:
        text = self.symbols.rewrite(text)
        text, _passes = self.scripts.rewrite_until_stable(text, self.MAX_SCRIPT_PASSES)
        text = self.fractions.rewrite(text)
        text = balance_brackets(text)
        return self.cleanup.rewrite(text).strip()

    def normalize_question(self, question: Question) -> Question:
        # fill-blank answers are matched against learner input, so they stay verbatim
        body = question.body
        if isinstance(body, MultipleChoiceBody):
            body = dataclasses.replace(body, options=[self.normalize(option) for option in body.options])
        elif isinstance(body, EssayBody):
            body = dataclasses.replace(
                body,
                sample_answer=self.normalize(body.sample_answer),
                key_points=[self.normalize(point) for point in body.key_points],
            )
        return dataclasses.replace(
            question,
            prompt=self.normalize(question.prompt),
            explanation=self.normalize(question.explanation),
            body=body,
        )

    def normalize_questions(self, questions: Iterable[Question]) -> List[Question]:
        return [self.normalize_question(question) for question in questions]
