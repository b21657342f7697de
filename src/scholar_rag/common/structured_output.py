"""scholar_rag.common.structured_output

Structured-output extraction for free-text model responses.

Language models asked for JSON frequently wrap it in Markdown fences, precede
it with prose, or follow it with commentary. Rather than matching the widest
``{...}`` span with a regular expression (which breaks on trailing prose that
contains braces), this module scans the text for the first position at which
a complete JSON object decodes, using :meth:`json.JSONDecoder.raw_decode`, and
then validates it against a pydantic schema.

Classes
-------
EvaluationPayload
    Self-evaluation verdict.
HallucinationPayload
    Unsupported-claims verdict.
QuizQuestion, QuizPayload
    Generated quiz.
ExamQuestion, ExamSection, ExamPayload
    Generated exam.

Functions
---------
extract_json_object
    Return the first JSON object embedded in a text.
parse_structured
    Extract and validate a JSON object against a pydantic model.
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from scholar_rag.common.errors import ParseError

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()


def _candidate_texts(text: str) -> list[str]:
    """Fenced blocks first, then the raw text."""
    fenced = [m.group(1) for m in _FENCE_RE.finditer(text)]
    return fenced + [text]


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object embedded in ``text``.

    Parameters
    ----------
    text : str
        Raw model output.

    Returns
    -------
    dict[str, Any]
        The decoded object.

    Raises
    ------
    ParseError
        If ``text`` contains no decodable JSON object.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError("Empty model output; expected a JSON object.", raw=text)

    for candidate in _candidate_texts(text):
        idx = candidate.find("{")
        while idx != -1:
            try:
                obj, _end = _DECODER.raw_decode(candidate, idx)
            except json.JSONDecodeError:
                idx = candidate.find("{", idx + 1)
                continue
            if isinstance(obj, dict):
                return obj
            idx = candidate.find("{", idx + 1)

    raise ParseError("No JSON object found in model output.", raw=text)


def parse_structured(text: str, model: Type[M]) -> M:
    """Extract a JSON object from ``text`` and validate it as ``model``.

    Raises
    ------
    ParseError
        If no object is found or the object fails validation.
    """
    data = extract_json_object(text)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ParseError(f"{model.__name__} validation failed: {exc}", raw=text) from exc


def _as_text(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class EvaluationPayload(BaseModel):
    """Verdict returned by the evaluation model."""

    model_config = ConfigDict(extra="ignore")

    score: float
    feedback: str = ""
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    reasoning: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _score_number(cls, value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"score must be numeric, got {value!r}") from exc


class QuizQuestion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["multiple_choice", "short_answer", "true_false"] = "multiple_choice"
    question: str = Field(min_length=1)
    options: list[str] = Field(default_factory=list)
    correct_answer: str = Field(min_length=1)
    explanation: str = ""
    points: float = 1.0
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None
    topic: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_").replace(" ", "_")
        return value

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _answer_text(cls, value: Any) -> Any:
        return _as_text(value)

    @field_validator("options", mode="before")
    @classmethod
    def _options_text(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [_as_text(v) for v in value]
        return value

    @model_validator(mode="after")
    def _check_question(self) -> "QuizQuestion":
        if self.type == "multiple_choice" and len(self.options) < 2:
            raise ValueError("multiple choice questions need at least 2 options")
        if self.points <= 0:
            raise ValueError("question points must be positive")
        return self


class QuizPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str = "Generated quiz"
    description: str = ""
    duration: Optional[str] = None
    total_points: Optional[float] = Field(default=None, alias="totalPoints")
    questions: list[QuizQuestion] = Field(min_length=1)

    @field_validator("duration", mode="before")
    @classmethod
    def _duration_text(cls, value: Any) -> Any:
        return _as_text(value)


class ExamQuestion(BaseModel):
    model_config = ConfigDict(extra="allow")

    question: str = Field(min_length=1)
    type: str = "short_answer"
    options: list[str] = Field(default_factory=list)
    correct_answer: Optional[str] = None
    explanation: str = ""
    points: Optional[float] = None

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _answer_text(cls, value: Any) -> Any:
        return _as_text(value)

    @field_validator("options", mode="before")
    @classmethod
    def _options_text(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [_as_text(v) for v in value]
        return value


class ExamSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str
    questions: list[ExamQuestion] = Field(default_factory=list)
    points: Optional[float] = None

    @field_validator("questions", mode="before")
    @classmethod
    def _wrap_plain_questions(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"question": v} if isinstance(v, str) else v for v in value]
        return value


class ExamPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str = Field(min_length=1)
    duration: Optional[str] = None
    total_points: Optional[float] = Field(default=None, alias="totalPoints")
    sections: list[ExamSection] = Field(min_length=1)

    @field_validator("duration", mode="before")
    @classmethod
    def _duration_text(cls, value: Any) -> Any:
        return _as_text(value)


class HallucinationPayload(BaseModel):
    """Verdict of the unsupported-claims check."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    has_hallucination: bool = Field(default=False, alias="hasHallucination")
    confidence: float = 0.5
    details: str = ""


__all__ = [
    "extract_json_object",
    "parse_structured",
    "EvaluationPayload",
    "HallucinationPayload",
    "QuizQuestion",
    "QuizPayload",
    "ExamQuestion",
    "ExamSection",
    "ExamPayload",
]
