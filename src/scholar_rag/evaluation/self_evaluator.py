"""scholar_rag.evaluation.self_evaluator

Answer quality scoring for the refinement loop.

The primary path asks an evaluation model to grade an answer on accuracy,
completeness, clarity, educational value, relevance and source usage, and
parses its JSON verdict. The score is then penalised for weak retrieval
(average similarity below 0.5, factor 0.8) and low generation confidence
(below 0.5, factor 0.9) and clamped to ``[0, 1]``.

Whenever the model call fails or its output cannot be parsed, a deterministic
heuristic is used instead, so evaluation never fails the workflow.

Classes
-------
EvaluationResult
    Score and commentary for one answer.
HallucinationResult
    Verdict of the unsupported-claims check.
SelfEvaluator
    Model-backed evaluator with heuristic fallback.

Functions
---------
heuristic_evaluation
    Deterministic fallback scorer.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Optional, Protocol, Sequence

from llama_index.core.schema import NodeWithScore

from scholar_rag.common.errors import EvaluationError, ParseError
from scholar_rag.common.structured_output import (
    EvaluationPayload,
    HallucinationPayload,
    parse_structured,
)
from scholar_rag.generation.llm_interface import Completer
from scholar_rag.generation.prompt_builder import PromptBuilder

logger = logging.getLogger("scholar_rag.evaluation")

Aspect = Literal["accuracy", "clarity", "completeness", "educational_value"]

ASPECT_QUESTIONS: dict[str, str] = {
    "accuracy": "How factually accurate is this answer based on the context? (0.0-1.0)",
    "clarity": "How clear and understandable is this answer? (0.0-1.0)",
    "completeness": "How completely does this answer address the question? (0.0-1.0)",
    "educational_value": "How educationally valuable is this answer for learning? (0.0-1.0)",
}

_LEADING_NUMBER_RE = re.compile(r"^\s*([-+]?\d+(?:\.\d+)?|[-+]?\.\d+)")


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _avg(nodes: Sequence[NodeWithScore]) -> float:
    if not nodes:
        return 0.0
    return sum(float(n.score or 0.0) for n in nodes) / len(nodes)


@dataclass
class EvaluationResult:
    """Score and commentary for one answer.

    Attributes
    ----------
    score : float
        Quality estimate in ``[0, 1]``.
    feedback : str
        Overall verdict.
    strengths, improvements : list[str]
        Itemised commentary.
    reasoning : str
        Model reasoning, empty for the heuristic.
    method : str
        ``"llm"`` or ``"heuristic"``.
    error : str or None
        Why the model verdict was unavailable when the heuristic was used.
    """
    score: float
    feedback: str
    strengths: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)
    reasoning: str = ""
    method: str = "llm"
    error: Optional[str] = None


@dataclass
class HallucinationResult:
    has_hallucination: bool
    confidence: float
    details: str


class AnswerCandidate(Protocol):
    answer: str
    confidence: float
    sources: list[str]


def heuristic_evaluation(
        query: str,
        answer: str,
        nodes: Sequence[NodeWithScore],
        confidence: float,
    ) -> EvaluationResult:
    """Score an answer without a model.

    Starting from 0.5: +0.1 for a word count in ``[30, 500]`` (else -0.1);
    +0.15 when at least 60% of the query keywords (words longer than three
    characters) occur in the answer (else -0.1); +0.15 for an average
    retrieval score above 0.7, -0.15 below 0.4, -0.2 with no documents. The
    result is blended ``0.7 * score + 0.3 * confidence`` and clamped.
    """
    score = 0.5
    strengths: list[str] = []
    improvements: list[str] = []

    word_count = len((answer or "").split())
    if 30 <= word_count <= 500:
        score += 0.1
        strengths.append("Answer has appropriate length")
    else:
        score -= 0.1
        improvements.append(
            "Answer may be too brief" if word_count < 30 else "Answer may be too verbose"
        )

    keywords = [w for w in (query or "").lower().split() if len(w) > 3]
    answer_lower = (answer or "").lower()
    coverage = sum(1 for kw in keywords if kw in answer_lower) / (len(keywords) or 1)
    if coverage >= 0.6:
        score += 0.15
        strengths.append("Answer addresses key concepts from the question")
    else:
        score -= 0.1
        improvements.append("Answer may not fully address all aspects of the question")

    if nodes:
        avg_relevance = _avg(nodes)
        if avg_relevance > 0.7:
            score += 0.15
            strengths.append("High-quality relevant documents were used")
        elif avg_relevance < 0.4:
            score -= 0.15
            improvements.append("Retrieved documents may not be highly relevant")
    else:
        score -= 0.2
        improvements.append("No context documents were used")

    score = _clamp01(score * 0.7 + _clamp01(confidence) * 0.3)

    if score > 0.7:
        feedback = "Answer appears to be of good quality"
    elif score > 0.5:
        feedback = "Answer is acceptable but could be improved"
    else:
        feedback = "Answer may need significant improvement"

    return EvaluationResult(
        score=score,
        feedback=feedback,
        strengths=strengths,
        improvements=improvements,
        method="heuristic",
    )


class SelfEvaluator:
    """Model-backed answer evaluator with a deterministic fallback.

    Parameters
    ----------
    llm : Completer
        Evaluation model, typically configured with temperature 0.
    prompt_builder : PromptBuilder
        Registry holding the ``evaluate_answer``, ``evaluate_aspect``,
        ``detect_hallucination`` and ``select_best_answer`` templates.
    context_documents : int, optional
        Number of top retrieved chunks shown to the evaluator. Defaults to ``3``.
    """

    def __init__(
            self,
            *,
            llm: Completer,
            prompt_builder: PromptBuilder,
            context_documents: int = 3,
        ):
        self.llm = llm
        self.prompt_builder = prompt_builder
        self.context_documents = int(context_documents)

    async def _complete(self, prompt: str) -> str:
        try:
            return await self.llm.acomplete(prompt)
        except Exception as exc:
            raise EvaluationError(f"Evaluation model call failed: {exc}") from exc

    async def _llm_verdict(
            self,
            query: str,
            answer: str,
            nodes: Sequence[NodeWithScore],
            confidence: float,
        ) -> EvaluationPayload:
        context = "\n\n".join(n.node.get_content() for n in nodes[: self.context_documents])
        prompt = self.prompt_builder.build(
            "evaluate_answer",
            query=query,
            context=context or "No context available",
            answer=answer,
            confidence=f"{confidence:.2f}",
        )
        return parse_structured(await self._complete(prompt), EvaluationPayload)

    async def aevaluate(
            self,
            query: str,
            answer: str,
            nodes: Sequence[NodeWithScore],
            confidence: float,
        ) -> EvaluationResult:
        """Score ``answer``; never raises.

        When the model verdict is unusable the heuristic result is returned
        with ``error`` set.

        Parameters
        ----------
        query : str
            The question as asked by the user.
        answer : str
            Generated answer.
        nodes : Sequence[NodeWithScore]
            Retrieved chunks the answer was generated from.
        confidence : float
            Generation confidence.
        """
        try:
            verdict = await self._llm_verdict(query, answer, nodes, confidence)
        except (EvaluationError, ParseError) as exc:
            logger.warning("Falling back to heuristic evaluation: %s", exc)
            fallback = heuristic_evaluation(query, answer, nodes, confidence)
            fallback.error = str(exc)
            return fallback

        score = verdict.score
        if _avg(nodes) < 0.5:
            score *= 0.8
        if confidence < 0.5:
            score *= 0.9

        return EvaluationResult(
            score=_clamp01(score),
            feedback=verdict.feedback,
            strengths=list(verdict.strengths),
            improvements=list(verdict.improvements),
            reasoning=verdict.reasoning,
            method="llm",
        )

    async def aevaluate_aspect(self, aspect: Aspect, query: str, answer: str, context: str) -> float:
        """Score a single aspect in ``[0, 1]``; ``0.5`` when the model output is unusable."""
        if aspect not in ASPECT_QUESTIONS:
            raise ValueError(f"Unknown aspect {aspect!r}. Known: {sorted(ASPECT_QUESTIONS)}")
        prompt = self.prompt_builder.build(
            "evaluate_aspect",
            query=query,
            context=context,
            answer=answer,
            aspect_question=ASPECT_QUESTIONS[aspect],
        )
        try:
            raw = await self._complete(prompt)
        except EvaluationError as exc:
            logger.warning("Aspect evaluation %s failed: %s", aspect, exc)
            return 0.5
        match = _LEADING_NUMBER_RE.match(raw or "")
        return _clamp01(float(match.group(1))) if match else 0.5

    async def adetect_hallucinations(self, answer: str, nodes: Sequence[NodeWithScore]) -> HallucinationResult:
        """Check whether ``answer`` makes claims unsupported by ``nodes``."""
        if not nodes:
            return HallucinationResult(False, 0.0, "No context to verify against")

        prompt = self.prompt_builder.build(
            "detect_hallucination",
            context="\n\n".join(n.node.get_content() for n in nodes),
            answer=answer,
        )
        try:
            verdict = parse_structured(await self._complete(prompt), HallucinationPayload)
        except (EvaluationError, ParseError) as exc:
            logger.warning("Hallucination check failed: %s", exc)
            return HallucinationResult(False, 0.0, "Error in hallucination detection")

        return HallucinationResult(
            has_hallucination=verdict.has_hallucination,
            confidence=_clamp01(verdict.confidence),
            details=verdict.details,
        )

    async def aselect_best_answer(
            self,
            query: str,
            candidates: Sequence[AnswerCandidate],
            context: str,
        ) -> int:
        """Return the index of the best candidate.

        Falls back to the highest-confidence candidate (first on ties) when
        the model output is not a valid 1-based choice.
        """
        if not candidates:
            raise ValueError("aselect_best_answer requires at least one candidate")

        fallback = max(range(len(candidates)), key=lambda i: (candidates[i].confidence, -i))
        answers_list = "\n\n".join(
            f"Answer {i + 1}:\n{c.answer}\n(Confidence: {c.confidence}, Sources: {len(c.sources)})"
            for i, c in enumerate(candidates)
        )
        prompt = self.prompt_builder.build(
            "select_best_answer", query=query, context=context, answers_list=answers_list
        )
        try:
            raw = await self._complete(prompt)
        except EvaluationError as exc:
            logger.warning("Answer selection failed: %s", exc)
            return fallback

        match = re.match(r"^\s*(\d+)", raw or "")
        if not match:
            return fallback
        index = int(match.group(1)) - 1
        return index if 0 <= index < len(candidates) else fallback


__all__ = [
    "EvaluationResult",
    "HallucinationResult",
    "SelfEvaluator",
    "AnswerCandidate",
    "heuristic_evaluation",
    "ASPECT_QUESTIONS",
]
