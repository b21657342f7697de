"""scholar_rag.pipelines.rag_workflow

Self-refining retrieval-augmented answering workflow.

:class:`RAGWorkflow` wires the query refiner, retriever, answer generator and
self-evaluator into the loop described by
:mod:`scholar_rag.pipelines.workflow_state`. Each run refines the query
(unchanged on the first pass), retrieves supporting chunks, generates an
answer, scores it, and retries with a freshly refined query while the score
stays below the quality threshold, attempts remain and documents were found.

Failure handling follows the component boundaries:

- retrieval failure continues with an empty document set;
- generation failure ends the run with a fixed apology and ``success=False``;
- evaluation never fails (the evaluator falls back to a heuristic);
- refinement failure retrieves with the original query.

Every fallback is also recorded as an analytics event with ``success=False``.

:meth:`RAGWorkflow.run` never raises.

Classes
-------
WorkflowResult
    Caller-facing record of one run.
RAGWorkflow
    Orchestrates the refine, retrieve, generate, evaluate loop.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from llama_index.core.schema import NodeWithScore

from scholar_rag.common.analytics import AnalyticsLogger
from scholar_rag.common.errors import GenerationError, RetrievalError
from scholar_rag.common.modes import ResponseMode
from scholar_rag.common.schemas import UserRole
from scholar_rag.evaluation.self_evaluator import SelfEvaluator, heuristic_evaluation
from scholar_rag.generation.answer_generator import AnswerGenerator, ChunkCallback, average_score
from scholar_rag.learning.query_refiner import QueryRefiner
from scholar_rag.pipelines.workflow_state import Stage, WorkflowPolicy, WorkflowState, next_stage
from scholar_rag.retrieval.types import RetrievalFilters, Retriever

logger = logging.getLogger("scholar_rag.workflow")

APOLOGY = "I apologize, but I encountered an error generating an answer. Please try again."
WORKFLOW_APOLOGY = "I apologize, but I encountered an error processing your request. Please try again."


def document_reference(node: NodeWithScore) -> dict[str, Any]:
    """Compact reference to a retrieved chunk, suitable for message metadata."""
    meta = node.node.metadata or {}
    return {
        "chunk_id": meta.get("chunk_id") or node.node.node_id,
        "document_id": meta.get("document_id"),
        "title": meta.get("document_title"),
        "chunk_index": meta.get("chunk_index"),
        "score": float(node.score or 0.0),
    }


@dataclass
class WorkflowResult:
    """Outcome of :meth:`RAGWorkflow.run`.

    Attributes
    ----------
    success : bool
        False when generation failed or the run aborted.
    answer : str
        Final answer, or an apology on failure.
    confidence : float
        Confidence of the final answer in ``[0, 1]``.
    sources : list[str]
        Cited document titles.
    documents_used : list[dict]
        References to the chunks the final answer was generated from.
    attempts : int
        Number of refine passes executed.
    evaluation_score : float or None
        Score of the final answer, ``None`` if it was never evaluated.
    evaluation_feedback : str or None
        Evaluator verdict for the final answer.
    token_usage : int
        Tokens used across all passes.
    latency_ms : float
        Wall-clock duration of the run.
    refined_query : str
        Query used for the final retrieval.
    error : str or None
        Error message when ``success`` is False.
    structured : dict or None
        Validated quiz/exam payload.
    """
    success: bool
    answer: str
    confidence: float = 0.0
    sources: list[str] = field(default_factory=list)
    documents_used: list[dict[str, Any]] = field(default_factory=list)
    attempts: int = 0
    evaluation_score: Optional[float] = None
    evaluation_feedback: Optional[str] = None
    token_usage: int = 0
    latency_ms: float = 0.0
    refined_query: str = ""
    error: Optional[str] = None
    structured: Optional[dict[str, Any]] = None


class RAGWorkflow:
    """Refine, retrieve, generate and evaluate until the answer is good enough.

    Parameters
    ----------
    refiner : QueryRefiner
        Produces the query used for each retrieval.
    retriever : Retriever
        Retrieves scored chunks for a query.
    generator : AnswerGenerator
        Produces answers from retrieved chunks.
    evaluator : SelfEvaluator
        Scores answers.
    policy : WorkflowPolicy or None, optional
        Quality threshold and refinement cap.
    analytics : AnalyticsLogger or None, optional
        Sink for ``refinement``, ``retrieval``, ``generation``, ``evaluation``,
        ``workflow_complete`` and ``workflow_error`` events.
    top_k : int or None, optional
        Retrieval depth; the retriever's default when ``None``.
    """

    def __init__(
            self,
            *,
            refiner: QueryRefiner,
            retriever: Retriever,
            generator: AnswerGenerator,
            evaluator: SelfEvaluator,
            policy: Optional[WorkflowPolicy] = None,
            analytics: Optional[AnalyticsLogger] = None,
            top_k: Optional[int] = None,
        ):
        self.refiner = refiner
        self.retriever = retriever
        self.generator = generator
        self.evaluator = evaluator
        self.policy = policy or WorkflowPolicy()
        self.analytics = analytics or AnalyticsLogger()
        self.top_k = top_k

    # --- stages ---------------------------------------------------------

    async def _refine(self, state: WorkflowState) -> None:
        refinement = await self.refiner.refine_with_status(
            state.query,
            state.mode,
            state.subject,
            state.attempts,
            grade_level=state.grade_level,
        )
        state.refined_query = refinement.query
        state.attempts += 1
        if refinement.rewritten:
            await self.analytics.record(
                "refinement",
                success=refinement.error is None,
                error_message=refinement.error,
                user_id=state.user_id,
                subject=state.subject,
                mode=state.mode.value,
                query_text=state.query,
                refined_query=refinement.query,
                attempt=state.attempts,
            )
        state.messages.append(SystemMessage(content=f"Query refined: {state.refined_query}"))

    async def _retrieve(self, state: WorkflowState) -> None:
        started = time.perf_counter()
        filters = RetrievalFilters(
            subject=state.subject, grade_level=state.grade_level, user_role=state.role
        )
        try:
            nodes = await self.retriever.aretrieve(state.active_query, filters=filters, top_k=self.top_k)
            error = None
        except RetrievalError as exc:
            logger.warning("Retrieval failed, continuing without documents: %s", exc)
            nodes, error = [], str(exc)

        state.nodes = list(nodes)
        scores = [float(n.score or 0.0) for n in state.nodes]
        avg = average_score(state.nodes)
        await self.analytics.record(
            "retrieval",
            success=error is None,
            error_message=error,
            user_id=state.user_id,
            subject=state.subject,
            mode=state.mode.value,
            query_text=state.active_query,
            documents_retrieved=len(state.nodes),
            response_time_ms=(time.perf_counter() - started) * 1000.0,
            relevance_scores=scores,
            avg_relevance=avg,
        )
        state.messages.append(
            SystemMessage(content=f"Retrieved {len(state.nodes)} documents (avg relevance: {avg:.2f})")
        )

    async def _generate(self, state: WorkflowState, on_chunk: Optional[ChunkCallback]) -> None:
        try:
            if on_chunk is not None:
                result = await self.generator.agenerate_stream(
                    state.active_query, state.nodes, state.mode, on_chunk, history=state.history
                )
            else:
                result = await self.generator.agenerate(
                    state.active_query, state.nodes, state.mode, history=state.history
                )
        except GenerationError as exc:
            logger.error("Answer generation failed: %s", exc)
            state.error = str(exc)
            state.answer = APOLOGY
            state.confidence = 0.0
            state.sources = []
            state.structured = None
            state.evaluation = None
            await self.analytics.record(
                "generation",
                success=False,
                error_message=str(exc),
                user_id=state.user_id,
                subject=state.subject,
                mode=state.mode.value,
                query_text=state.active_query,
            )
            return

        state.answer = result.answer
        state.confidence = result.confidence
        state.sources = result.sources
        state.structured = result.structured
        state.token_usage += result.token_usage
        state.messages.append(AIMessage(content=result.answer))
        await self.analytics.record(
            "generation",
            user_id=state.user_id,
            subject=state.subject,
            mode=state.mode.value,
            query_text=state.active_query,
            response_time_ms=result.response_time_ms,
            token_usage=result.token_usage,
            confidence=result.confidence,
            sources=result.sources,
        )

    async def _evaluate(self, state: WorkflowState) -> None:
        try:
            evaluation = await self.evaluator.aevaluate(
                state.query, state.answer, state.nodes, state.confidence
            )
        except Exception as exc:
            logger.warning("Evaluator raised, using heuristic score: %s", exc)
            evaluation = heuristic_evaluation(state.query, state.answer, state.nodes, state.confidence)
            evaluation.error = str(exc)
        state.evaluation = evaluation
        await self.analytics.record(
            "evaluation",
            success=evaluation.error is None,
            error_message=evaluation.error,
            user_id=state.user_id,
            subject=state.subject,
            mode=state.mode.value,
            query_text=state.active_query,
            evaluation_score=evaluation.score,
            method=evaluation.method,
            attempt=state.attempts,
        )
        state.messages.append(
            SystemMessage(content=f"Self-evaluation score: {evaluation.score:.2f} ({evaluation.method})")
        )

    # --- loop -----------------------------------------------------------

    async def _drive(self, state: WorkflowState, on_chunk: Optional[ChunkCallback]) -> WorkflowState:
        max_cycles = self.policy.max_refinement_attempts + 1
        cycles = 0
        while state.stage is not Stage.DONE:
            if state.stage is Stage.REFINE:
                cycles += 1
                if cycles > max_cycles:
                    logger.warning("Workflow cycle guard reached after %d cycles", cycles - 1)
                    break
                await self._refine(state)
            elif state.stage is Stage.RETRIEVE:
                await self._retrieve(state)
            elif state.stage is Stage.GENERATE:
                await self._generate(state, on_chunk)
            elif state.stage is Stage.EVALUATE:
                await self._evaluate(state)

            following = next_stage(state, self.policy)
            logger.info(
                "stage=%s -> %s attempt=%d score=%s",
                state.stage.value, following.value, state.attempts,
                f"{state.evaluation_score:.2f}" if state.evaluation_score is not None else "-",
            )
            state.stage = following
        return state

    async def run(
            self,
            query: str,
            *,
            user_id: str,
            role: UserRole | str = UserRole.STUDENT,
            mode: ResponseMode | str = ResponseMode.RESEARCH,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            history: Sequence[BaseMessage] = (),
            on_chunk: Optional[ChunkCallback] = None,
        ) -> WorkflowResult:
        """Answer ``query``; never raises.

        Parameters
        ----------
        query : str
            The user's question.
        user_id : str
            Caller id, recorded on analytics events.
        role : UserRole or str, optional
            Caller role; students only retrieve public documents.
        mode : ResponseMode or str, optional
            Response mode.
        subject, grade_level : str, optional
            Retrieval filters and prompt hints.
        history : Sequence[BaseMessage], optional
            Earlier conversation messages, oldest first.
        on_chunk : callable, optional
            When given, answers are streamed and each chunk is forwarded here.

        Returns
        -------
        WorkflowResult
        """
        started = time.perf_counter()
        try:
            state = WorkflowState(
                query=query,
                user_id=user_id,
                role=UserRole(role),
                mode=ResponseMode.parse(mode),
                subject=subject,
                grade_level=grade_level,
                history=list(history),
                messages=[*history, HumanMessage(content=query)],
            )
            state = await self._drive(state, on_chunk)
        except Exception as exc:
            logger.exception("Workflow failed")
            latency_ms = (time.perf_counter() - started) * 1000.0
            await self.analytics.record(
                "workflow_error",
                success=False,
                error_message=str(exc),
                user_id=user_id,
                subject=subject,
                query_text=query,
                response_time_ms=latency_ms,
            )
            return WorkflowResult(
                success=False,
                answer=WORKFLOW_APOLOGY,
                latency_ms=latency_ms,
                error=str(exc),
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        evaluation = state.evaluation
        await self.analytics.record(
            "workflow_complete",
            success=state.error is None,
            error_message=state.error,
            user_id=user_id,
            subject=subject,
            mode=state.mode.value,
            query_text=query,
            documents_retrieved=len(state.nodes),
            response_time_ms=latency_ms,
            token_usage=state.token_usage,
            refinement_attempts=state.attempts,
            evaluation_score=state.evaluation_score,
        )

        return WorkflowResult(
            success=state.error is None,
            answer=state.answer,
            confidence=max(0.0, min(1.0, state.confidence)),
            sources=list(state.sources),
            documents_used=[document_reference(n) for n in state.nodes],
            attempts=state.attempts,
            evaluation_score=state.evaluation_score,
            evaluation_feedback=evaluation.feedback if evaluation is not None else None,
            token_usage=state.token_usage,
            latency_ms=latency_ms,
            refined_query=state.active_query,
            error=state.error,
            structured=state.structured,
        )


__all__ = ["RAGWorkflow", "WorkflowResult", "document_reference", "APOLOGY"]
