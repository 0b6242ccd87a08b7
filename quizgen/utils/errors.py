from __future__ import annotations


class QuizgenError(RuntimeError):
    """Base class for pipeline failures that are recovered inside the pipeline."""


class ExtractionFailure(QuizgenError):
    """Raised when a chunk cannot be analysed; the extractor skips it."""


class ExternalServiceFailure(QuizgenError):
    """Raised when the external generation service times out, errors or answers garbage."""


class ParseFailure(ValueError):
    """Raised for a single malformed item inside an otherwise valid payload."""


class InvalidRequestError(ValueError):
    """Raised for structurally invalid generation requests."""


class InvalidTransition(QuizgenError):
    """Raised when the orchestrator attempts a state change the state machine does not allow."""


__all__ = [
    "QuizgenError",
    "ExtractionFailure",
    "ExternalServiceFailure",
    "ParseFailure",
    "InvalidRequestError",
    "InvalidTransition",
]
