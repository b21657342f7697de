"""scholar_rag.generation.answer_generator

Answer generation from retrieved context.

The generator renders the ``answer`` prompt from a mode-specific system
prompt, the most recent conversation exchanges, the retrieved chunks (each
labelled with its source title and similarity score), the current question
and a mode-specific instruction suffix. The mode also selects between the
precise (low temperature) and creative generator configurations.

Confidence is a simple proxy, ``min(avg_retrieval_score * 1.2, 1.0)``, not a
calibrated probability.

Classes
-------
GenerationResult
    Summary record of one generation.
AnswerGenerator
    Builds prompts, calls the generator model and summarises the result.

Functions
---------
average_score
    Mean similarity score of retrieved nodes.
confidence_from_nodes
    Confidence proxy derived from retrieval scores.
extract_sources
    Deduplicated source titles of sufficiently relevant nodes.
format_context
    Render retrieved nodes as labelled context blocks.
format_history
    Render recent conversation messages as ``Student:``/``Assistant:`` lines.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Type, Union

from langchain_core.messages import BaseMessage
from llama_index.core.schema import NodeWithScore
from pydantic import BaseModel

from scholar_rag.common.errors import GenerationError, ParseError
from scholar_rag.common.modes import MODEL_PROFILES, ModelProfile, ResponseMode, exhaustive
from scholar_rag.common.structured_output import ExamPayload, QuizPayload, parse_structured
from scholar_rag.common.tokenisation import HeuristicTokenCounter, TokenCounter
from scholar_rag.generation.llm_interface import Completer
from scholar_rag.generation.prompt_builder import PromptBuilder

logger = logging.getLogger("scholar_rag.generation")

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]

NO_HISTORY = "No previous conversation"
NO_CONTEXT = "No specific context available from knowledge base"
HINT_FALLBACK = (
    "Try breaking down the problem into smaller steps and identify what you know "
    "and what you need to find."
)

SYSTEM_PROMPT_TEMPLATES = exhaustive(
    {mode: f"system.{mode.value}" for mode in ResponseMode},
    "SYSTEM_PROMPT_TEMPLATES",
)

INSTRUCTION_TEMPLATES = exhaustive(
    {mode: f"instructions.{mode.value}" for mode in ResponseMode},
    "INSTRUCTION_TEMPLATES",
)

STRUCTURED_SCHEMAS: dict[ResponseMode, Optional[Type[BaseModel]]] = exhaustive(
    {
        ResponseMode.RESEARCH: None,
        ResponseMode.MATH_SOLVER: None,
        ResponseMode.PHYSICS_SOLVER: None,
        ResponseMode.CHEMISTRY_SOLVER: None,
        ResponseMode.QUIZ_CREATOR: QuizPayload,
        ResponseMode.EXAM_CREATOR: ExamPayload,
    },
    "STRUCTURED_SCHEMAS",
)


def _score(node: NodeWithScore) -> float:
    return float(node.score or 0.0)


def _title(node: NodeWithScore, default: str) -> str:
    return (node.node.metadata or {}).get("document_title") or default


def average_score(nodes: Sequence[NodeWithScore]) -> float:
    """Mean similarity of ``nodes``; ``0.0`` when empty."""
    if not nodes:
        return 0.0
    return sum(_score(n) for n in nodes) / len(nodes)


def confidence_from_nodes(nodes: Sequence[NodeWithScore]) -> float:
    """``min(average_score * 1.2, 1.0)`` clamped to ``[0, 1]``."""
    return max(0.0, min(average_score(nodes) * 1.2, 1.0))


def extract_sources(
        nodes: Sequence[NodeWithScore],
        *,
        threshold: float = 0.5,
        max_sources: int = 5,
    ) -> list[str]:
    """Titles of nodes scoring above ``threshold``, first-seen order, deduplicated."""
    sources: list[str] = []
    for node in nodes:
        if _score(node) <= threshold:
            continue
        title = _title(node, "Unknown")
        if title not in sources:
            sources.append(title)
        if len(sources) >= max_sources:
            break
    return sources


def format_context(nodes: Sequence[NodeWithScore]) -> str:
    """Render nodes as ``[Document i] (Source: ..., Relevance: ...)`` blocks."""
    blocks = []
    for idx, node in enumerate(nodes, start=1):
        source = _title(node, "Unknown source")
        blocks.append(
            f"[Document {idx}] (Source: {source}, Relevance: {_score(node):.2f})\n{node.node.get_content()}"
        )
    return "\n\n---\n\n".join(blocks)


def format_history(messages: Sequence[BaseMessage], exchanges: int = 3) -> str:
    """Render the last ``exchanges`` user/assistant pairs, skipping system messages."""
    turns = [m for m in messages if m.type in ("human", "ai")]
    recent = turns[-2 * exchanges:] if exchanges > 0 else []
    lines = []
    for msg in recent:
        role = "Student" if msg.type == "human" else "Assistant"
        lines.append(f"{role}: {msg.content}")
    return "\n".join(lines)


@dataclass
class GenerationResult:
    """Summary of a single answer generation.

    Attributes
    ----------
    answer : str
        Generated answer text, stripped.
    confidence : float
        Confidence proxy in ``[0, 1]``.
    sources : list[str]
        Deduplicated titles of the relevant source documents (at most 5).
    token_usage : int
        Estimated prompt plus completion tokens.
    documents_used : int
        Number of retrieved chunks placed in the prompt.
    avg_relevance : float
        Mean retrieval score of those chunks.
    response_time_ms : float
        Wall-clock duration of the generation call.
    structured : dict or None
        Validated quiz/exam payload for structured modes.
    """
    answer: str
    confidence: float
    sources: list[str] = field(default_factory=list)
    token_usage: int = 0
    documents_used: int = 0
    avg_relevance: float = 0.0
    response_time_ms: float = 0.0
    structured: Optional[dict[str, Any]] = None


class AnswerGenerator:
    """Generate answers for a mode from retrieved chunks.

    Parameters
    ----------
    llms : Mapping[ModelProfile, Completer]
        Generator models keyed by profile; both ``PRECISE`` and ``CREATIVE``
        must be present.
    prompt_builder : PromptBuilder
        Registry holding the ``answer`` and ``hint`` templates plus a
        ``system.<mode>`` and ``instructions.<mode>`` template for every mode.
    token_counter : TokenCounter or None, optional
        Token estimator. Defaults to the characters-per-token heuristic.
    source_score_threshold : float, optional
        Minimum score (exclusive) for a chunk's title to be cited. Defaults to ``0.5``.
    max_sources : int, optional
        Maximum number of cited sources. Defaults to ``5``.
    history_exchanges : int, optional
        Number of user/assistant exchanges included in the prompt. Defaults to ``3``.
    """

    def __init__(
            self,
            *,
            llms: Mapping[ModelProfile, Completer],
            prompt_builder: PromptBuilder,
            token_counter: Optional[TokenCounter] = None,
            source_score_threshold: float = 0.5,
            max_sources: int = 5,
            history_exchanges: int = 3,
        ):
        missing_profiles = [p.value for p in ModelProfile if p not in llms]
        if missing_profiles:
            raise ValueError(f"AnswerGenerator requires models for profiles: {missing_profiles}")

        required = ["answer", "hint", *SYSTEM_PROMPT_TEMPLATES.values(), *INSTRUCTION_TEMPLATES.values()]
        missing = [name for name in required if not prompt_builder.has_prompt(name)]
        if missing:
            raise ValueError(f"Prompt templates missing: {missing}")

        self.llms = dict(llms)
        self.prompt_builder = prompt_builder
        self.token_counter = token_counter or HeuristicTokenCounter()
        self.source_score_threshold = float(source_score_threshold)
        self.max_sources = int(max_sources)
        self.history_exchanges = int(history_exchanges)

    def llm_for(self, mode: ResponseMode) -> Completer:
        return self.llms[MODEL_PROFILES[mode]]

    def build_prompt(
            self,
            query: str,
            nodes: Sequence[NodeWithScore],
            mode: ResponseMode,
            history: Sequence[BaseMessage] = (),
        ) -> str:
        """Render the ``answer`` prompt for ``mode``."""
        return self.prompt_builder.build(
            "answer",
            system_prompt=self.prompt_builder.build(SYSTEM_PROMPT_TEMPLATES[mode]),
            conversation_context=format_history(history, self.history_exchanges) or NO_HISTORY,
            context=format_context(nodes) or NO_CONTEXT,
            query=query,
            instructions=self.prompt_builder.build(INSTRUCTION_TEMPLATES[mode]),
        )

    def _summarise(
            self,
            *,
            prompt: str,
            raw_answer: str,
            nodes: Sequence[NodeWithScore],
            mode: ResponseMode,
            started: float,
        ) -> GenerationResult:
        answer = (raw_answer or "").strip()

        structured = None
        schema = STRUCTURED_SCHEMAS[mode]
        if schema is not None:
            try:
                structured = parse_structured(answer, schema).model_dump(by_alias=True)
            except ParseError as exc:
                raise GenerationError(f"Invalid {mode.value} output: {exc}") from exc

        return GenerationResult(
            answer=answer,
            confidence=confidence_from_nodes(nodes),
            sources=extract_sources(
                nodes, threshold=self.source_score_threshold, max_sources=self.max_sources
            ),
            token_usage=self.token_counter.count(prompt) + self.token_counter.count(answer),
            documents_used=len(nodes),
            avg_relevance=average_score(nodes),
            response_time_ms=(time.perf_counter() - started) * 1000.0,
            structured=structured,
        )

    async def agenerate(
            self,
            query: str,
            nodes: Sequence[NodeWithScore],
            mode: ResponseMode | str,
            history: Sequence[BaseMessage] = (),
        ) -> GenerationResult:
        """Generate an answer.

        Raises
        ------
        GenerationError
            If the model call fails, or if a quiz/exam answer does not contain
            a valid payload.
        """
        mode = ResponseMode.parse(mode)
        started = time.perf_counter()
        prompt = self.build_prompt(query, nodes, mode, history)
        try:
            raw = await self.llm_for(mode).acomplete(prompt)
        except Exception as exc:
            raise GenerationError(f"Answer generation failed: {exc}") from exc
        return self._summarise(prompt=prompt, raw_answer=raw, nodes=nodes, mode=mode, started=started)

    async def agenerate_stream(
            self,
            query: str,
            nodes: Sequence[NodeWithScore],
            mode: ResponseMode | str,
            on_chunk: ChunkCallback,
            history: Sequence[BaseMessage] = (),
        ) -> GenerationResult:
        """Generate an answer, forwarding each text chunk to ``on_chunk``.

        ``on_chunk`` may be a plain function or a coroutine function. The
        returned record is the same as :meth:`agenerate` would produce for
        the concatenated text.
        """
        mode = ResponseMode.parse(mode)
        started = time.perf_counter()
        prompt = self.build_prompt(query, nodes, mode, history)
        parts: list[str] = []
        try:
            async for chunk in self.llm_for(mode).astream(prompt):
                parts.append(chunk)
                result = on_chunk(chunk)
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:
            raise GenerationError(f"Streaming generation failed: {exc}") from exc
        return self._summarise(
            prompt=prompt, raw_answer="".join(parts), nodes=nodes, mode=mode, started=started
        )

    async def agenerate_hint(
            self,
            query: str,
            subject: Optional[str] = None,
            difficulty: str = "medium",
        ) -> str:
        """Return a hint that guides without revealing the solution.

        Falls back to a generic problem-solving hint if the model call fails.
        """
        prompt = self.prompt_builder.build(
            "hint", subject=subject or "general", difficulty=difficulty, query=query
        )
        try:
            hint = await self.llms[ModelProfile.CREATIVE].acomplete(prompt)
        except Exception as exc:
            logger.warning("Hint generation failed: %s", exc)
            return HINT_FALLBACK
        return (hint or "").strip() or HINT_FALLBACK


__all__ = [
    "GenerationResult",
    "AnswerGenerator",
    "average_score",
    "confidence_from_nodes",
    "extract_sources",
    "format_context",
    "format_history",
    "NO_HISTORY",
    "NO_CONTEXT",
    "HINT_FALLBACK",
]
