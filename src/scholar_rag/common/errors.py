"""scholar_rag.common.errors

Exception taxonomy for the answering workflow and its collaborators.

Errors are raised where they originate (embedder, vector index, LLM wrapper,
structured-output parser) and handled at the workflow seams: a retrieval
failure degrades to an empty document set, a generation failure ends the run
with an apology, and an evaluation or parse failure during evaluation falls
back to the heuristic scorer.

Classes
-------
ScholarRAGError
    Base class for all package errors.
RetrievalError
    Embedding or vector index failure.
GenerationError
    Language model failure while producing an answer.
EvaluationError
    Language model failure while scoring an answer.
ParseError
    Structured output could not be extracted or validated.
RecordNotFoundError
    A record store lookup found nothing for the given id.
PermissionDeniedError
    A caller attempted to modify a record it does not own.
"""


class ScholarRAGError(Exception):
    """Base class for errors raised by ``scholar_rag``."""


class RetrievalError(ScholarRAGError):
    """Raised when embedding a query or ranking the index fails."""


class GenerationError(ScholarRAGError):
    """Raised when the answer-generation model call fails."""


class EvaluationError(ScholarRAGError):
    """Raised when the evaluation model call fails."""


class ParseError(ScholarRAGError):
    """Raised when structured output cannot be parsed or validated.

    Parameters
    ----------
    message : str
        Human-readable description of the failure.
    raw : str or None, optional
        The raw model output that failed to parse.
    """

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class RecordNotFoundError(ScholarRAGError, KeyError):
    """Raised when a record id does not exist in the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "record not found"


class PermissionDeniedError(ScholarRAGError):
    """Raised when a user modifies a record they do not own."""


__all__ = [
    "ScholarRAGError",
    "RetrievalError",
    "GenerationError",
    "EvaluationError",
    "ParseError",
    "RecordNotFoundError",
    "PermissionDeniedError",
]
