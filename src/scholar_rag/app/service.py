"""scholar_rag.app.service

Caller-facing operations of the assistant.

:class:`AssistantService` sits between transport layers (HTTP, scripts) and
the workflow. It owns conversation bookkeeping: creating conversations on
first use, loading earlier messages as history, and appending the user and
assistant messages of each run. It also records user feedback and forwards it
to registered feedback hooks. Answer checks (unsupported claims, aspect
scores, best-of-n selection) run the self-evaluator against freshly retrieved
documents. Document operations delegate to the ingestion pipeline.

Classes
-------
WorkflowResponse
    Result of :meth:`AssistantService.run_workflow`.
AnswerCheck
    Result of :meth:`AssistantService.verify_answer`.
AssistantService
    Conversation-aware facade over the workflow and ingestion pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from llama_index.core.schema import NodeWithScore

from scholar_rag.common.analytics import AnalyticsLogger
from scholar_rag.common.errors import PermissionDeniedError, RecordNotFoundError, RetrievalError
from scholar_rag.common.modes import ResponseMode
from scholar_rag.common.schemas import (
    Conversation,
    Document,
    DocumentMetadata,
    FeedbackKind,
    FeedbackRecord,
    Message,
    MessageRole,
    UserRole,
)
from scholar_rag.evaluation.self_evaluator import ASPECT_QUESTIONS, AnswerCandidate
from scholar_rag.generation.answer_generator import ChunkCallback
from scholar_rag.pipelines.ingestion import IngestionPipeline, IngestionResult
from scholar_rag.pipelines.rag_workflow import WORKFLOW_APOLOGY, RAGWorkflow, document_reference
from scholar_rag.retrieval.types import RetrievalFilters
from scholar_rag.storage.record_store import RecordStore

logger = logging.getLogger("scholar_rag.service")

FeedbackHook = Callable[[FeedbackRecord], Awaitable[Any]]

TITLE_LENGTH = 50


def conversation_title(query: str) -> str:
    """First 50 characters of ``query``, with ``...`` when truncated."""
    text = (query or "").strip()
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text or "New conversation"


def to_langchain_message(message: Message) -> BaseMessage:
    if message.role == MessageRole.USER:
        return HumanMessage(content=message.content)
    if message.role == MessageRole.ASSISTANT:
        return AIMessage(content=message.content)
    return SystemMessage(content=message.content)


@dataclass
class WorkflowResponse:
    """Result of a workflow run bound to its conversation.

    ``metadata`` carries ``attempts``, ``evaluation_score``, ``token_usage``,
    ``latency_ms`` and ``refined_query``.
    """
    success: bool
    answer: str
    confidence: float = 0.0
    sources: list[str] = field(default_factory=list)
    documents_used: list[dict[str, Any]] = field(default_factory=list)
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    structured: Optional[dict[str, Any]] = None


@dataclass
class AnswerCheck:
    """Unsupported-claims verdict and aspect scores for a candidate answer."""
    has_hallucination: bool
    confidence: float
    details: str
    aspect_scores: dict[str, float] = field(default_factory=dict)
    documents_used: list[dict[str, Any]] = field(default_factory=list)


class AssistantService:
    """Conversation-aware entry point for answering and feedback.

    Parameters
    ----------
    store : RecordStore
        Record store for conversations, messages and feedback.
    workflow : RAGWorkflow
        Answering workflow.
    ingestion : IngestionPipeline or None, optional
        Document pipeline; document operations raise ``RuntimeError`` without it.
    analytics : AnalyticsLogger or None, optional
        Sink for ``feedback`` events.
    feedback_hooks : Sequence[FeedbackHook], optional
        Coroutines called with every recorded feedback.
    """

    def __init__(
            self,
            *,
            store: RecordStore,
            workflow: RAGWorkflow,
            ingestion: Optional[IngestionPipeline] = None,
            analytics: Optional[AnalyticsLogger] = None,
            feedback_hooks: Sequence[FeedbackHook] = (),
        ):
        self.store = store
        self.workflow = workflow
        self.ingestion = ingestion
        self.analytics = analytics or AnalyticsLogger(store)
        self.feedback_hooks: list[FeedbackHook] = list(feedback_hooks)

    def add_feedback_hook(self, hook: FeedbackHook) -> None:
        self.feedback_hooks.append(hook)

    # --- conversations --------------------------------------------------

    async def _owned_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.user_id != user_id:
            raise PermissionDeniedError(
                f"User {user_id} does not own conversation {conversation_id}"
            )
        return conversation

    async def _conversation_for(
            self,
            conversation_id: Optional[str],
            *,
            user_id: str,
            role: UserRole,
            mode: ResponseMode,
            query: str,
            subject: Optional[str],
            grade_level: Optional[str],
        ) -> Conversation:
        if conversation_id:
            return await self._owned_conversation(conversation_id, user_id)
        conversation = Conversation(
            user_id=user_id,
            role=role,
            mode=mode.value,
            title=conversation_title(query),
            subject=subject,
            grade_level=grade_level,
        )
        return await self.store.add_conversation(conversation)

    async def run_workflow(
            self,
            query: str,
            user_id: str,
            role: UserRole | str = UserRole.STUDENT,
            mode: ResponseMode | str = ResponseMode.RESEARCH,
            conversation_id: Optional[str] = None,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            on_chunk: Optional[ChunkCallback] = None,
        ) -> WorkflowResponse:
        """Answer ``query`` within a conversation; never raises.

        A new conversation is created when ``conversation_id`` is ``None``.
        Subject and grade default to the conversation's own tags. The user
        message is always stored; the assistant message only on success.
        """
        try:
            role = UserRole(role)
            mode = ResponseMode.parse(mode)
            conversation = await self._conversation_for(
                conversation_id,
                user_id=user_id,
                role=role,
                mode=mode,
                query=query,
                subject=subject,
                grade_level=grade_level,
            )
        except (RecordNotFoundError, PermissionDeniedError, ValueError) as exc:
            logger.warning("Rejected workflow request: %s", exc)
            return WorkflowResponse(
                success=False,
                answer=WORKFLOW_APOLOGY,
                conversation_id=conversation_id,
                error=str(exc),
            )

        subject = subject if subject is not None else conversation.subject
        grade_level = grade_level if grade_level is not None else conversation.grade_level

        try:
            previous = await self.store.list_messages(conversation.id)
            result = await self.workflow.run(
                query,
                user_id=user_id,
                role=role,
                mode=mode,
                subject=subject,
                grade_level=grade_level,
                history=[to_langchain_message(m) for m in previous],
                on_chunk=on_chunk,
            )

            await self.store.append_message(
                Message(conversation_id=conversation.id, role=MessageRole.USER, content=query)
            )

            metadata = {
                "attempts": result.attempts,
                "evaluation_score": result.evaluation_score,
                "token_usage": result.token_usage,
                "latency_ms": result.latency_ms,
                "original_query": query,
                "refined_query": result.refined_query,
                "mode": mode.value,
                "subject": subject,
            }

            message_id = None
            if result.success:
                assistant = await self.store.append_message(
                    Message(
                        conversation_id=conversation.id,
                        role=MessageRole.ASSISTANT,
                        content=result.answer,
                        confidence=result.confidence,
                        retrieved_docs=list(result.documents_used),
                        metadata={**metadata, "structured": result.structured},
                    )
                )
                message_id = assistant.id
        except Exception as exc:
            logger.exception("Failed to complete workflow for conversation %s", conversation.id)
            return WorkflowResponse(
                success=False,
                answer=WORKFLOW_APOLOGY,
                conversation_id=conversation.id,
                error=str(exc),
            )

        return WorkflowResponse(
            success=result.success,
            answer=result.answer,
            confidence=result.confidence,
            sources=list(result.sources),
            documents_used=list(result.documents_used),
            conversation_id=conversation.id,
            message_id=message_id,
            metadata=metadata,
            error=result.error,
            structured=result.structured,
        )

    async def list_conversations(
            self,
            user_id: str,
            *,
            mode: Optional[ResponseMode | str] = None,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Conversation]:
        mode_value = ResponseMode.parse(mode).value if mode is not None else None
        return await self.store.list_conversations(user_id, mode=mode_value, offset=offset, limit=limit)

    async def list_messages(
            self,
            conversation_id: str,
            user_id: str,
            *,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Message]:
        """Messages of a conversation in order. Only the owner may read them."""
        await self._owned_conversation(conversation_id, user_id)
        return await self.store.list_messages(conversation_id, offset=offset, limit=limit)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        await self._owned_conversation(conversation_id, user_id)
        await self.store.delete_conversation(conversation_id)

    # --- feedback -------------------------------------------------------

    async def record_feedback(
            self,
            message_id: str,
            conversation_id: str,
            user_id: str,
            kind: FeedbackKind | str,
            rating: Optional[float] = None,
            correction: Optional[str] = None,
            comment: Optional[str] = None,
        ) -> FeedbackRecord:
        """Store feedback on an assistant message and run the feedback hooks.

        Hook failures are logged and do not affect the stored feedback.

        Raises
        ------
        RecordNotFoundError
            If the message does not exist.
        ValueError
            If the message belongs to another conversation, or a rating
            feedback has no rating.
        """
        kind = FeedbackKind(kind)
        if kind is FeedbackKind.RATING and rating is None:
            raise ValueError("Rating feedback requires a rating value")

        message = await self.store.get_message(message_id)
        if message.conversation_id != conversation_id:
            raise ValueError(f"Message {message_id} does not belong to conversation {conversation_id}")

        feedback = await self.store.add_feedback(
            FeedbackRecord(
                message_id=message_id,
                conversation_id=conversation_id,
                user_id=user_id,
                kind=kind,
                rating=rating,
                correction=correction,
                comment=comment,
            )
        )
        await self.analytics.record(
            "feedback",
            user_id=user_id,
            kind=kind.value,
            rating=rating,
            message_id=message_id,
        )

        for hook in self.feedback_hooks:
            try:
                await hook(feedback)
            except Exception as exc:
                logger.warning("Feedback hook %r failed: %s", hook, exc)
        return feedback

    # --- answer checks --------------------------------------------------

    async def _context_nodes(
            self,
            query: str,
            *,
            role: UserRole | str,
            subject: Optional[str],
            grade_level: Optional[str],
        ) -> list[NodeWithScore]:
        filters = RetrievalFilters(subject=subject, grade_level=grade_level, user_role=UserRole(role))
        try:
            return list(await self.workflow.retriever.aretrieve(query, filters=filters))
        except RetrievalError as exc:
            logger.warning("Retrieval for answer check failed, checking without context: %s", exc)
            return []

    async def verify_answer(
            self,
            query: str,
            answer: str,
            user_id: str,
            role: UserRole | str = UserRole.STUDENT,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            aspects: Sequence[str] = (),
        ) -> AnswerCheck:
        """Check ``answer`` against the documents retrieved for ``query``.

        Runs the unsupported-claims check and scores each requested aspect
        (``accuracy``, ``clarity``, ``completeness``, ``educational_value``).

        Raises
        ------
        ValueError
            If an aspect is unknown.
        """
        unknown = sorted(set(aspects) - set(ASPECT_QUESTIONS))
        if unknown:
            raise ValueError(f"Unknown aspects {unknown}. Known: {sorted(ASPECT_QUESTIONS)}")

        evaluator = self.workflow.evaluator
        nodes = await self._context_nodes(query, role=role, subject=subject, grade_level=grade_level)
        verdict = await evaluator.adetect_hallucinations(answer, nodes)
        context = "\n\n".join(n.node.get_content() for n in nodes) or "No context available"
        scores = {
            aspect: await evaluator.aevaluate_aspect(aspect, query, answer, context)
            for aspect in aspects
        }

        await self.analytics.record(
            "answer_check",
            user_id=user_id,
            subject=subject,
            query_text=query,
            documents_retrieved=len(nodes),
            has_hallucination=verdict.has_hallucination,
            aspect_scores=scores,
        )
        return AnswerCheck(
            has_hallucination=verdict.has_hallucination,
            confidence=verdict.confidence,
            details=verdict.details,
            aspect_scores=scores,
            documents_used=[document_reference(n) for n in nodes],
        )

    async def select_best_answer(
            self,
            query: str,
            candidates: Sequence[AnswerCandidate],
            user_id: str,
            role: UserRole | str = UserRole.STUDENT,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
        ) -> int:
        """Index of the best of ``candidates`` for ``query``.

        Raises
        ------
        ValueError
            If ``candidates`` is empty.
        """
        if not candidates:
            raise ValueError("At least one candidate answer is required")

        nodes = await self._context_nodes(query, role=role, subject=subject, grade_level=grade_level)
        context = "\n\n".join(n.node.get_content() for n in nodes) or "No context available"
        index = await self.workflow.evaluator.aselect_best_answer(query, candidates, context)
        await self.analytics.record(
            "answer_selection",
            user_id=user_id,
            subject=subject,
            query_text=query,
            documents_retrieved=len(nodes),
            candidates=len(candidates),
            selected=index,
        )
        return index

    # --- documents ------------------------------------------------------

    def _pipeline(self) -> IngestionPipeline:
        if self.ingestion is None:
            raise RuntimeError("No ingestion pipeline configured")
        return self.ingestion

    async def ingest(self, raw_text: str, meta: DocumentMetadata) -> IngestionResult:
        return await self._pipeline().ingest(raw_text, meta)

    async def ingest_file(self, path: str | Path, meta: DocumentMetadata) -> IngestionResult:
        return await self._pipeline().ingest_file(path, meta)

    async def delete_document(self, document_id: str, user_id: str) -> None:
        await self._pipeline().delete_document(document_id, user_id)

    async def update_document_metadata(self, document_id: str, user_id: str, **updates: Any) -> Document:
        return await self._pipeline().update_document_metadata(document_id, user_id, **updates)

    async def list_documents(self, user_id: str, role: UserRole | str, **filters: Any) -> list[Document]:
        return await self._pipeline().list_documents(user_id, role, **filters)


__all__ = ["AnswerCheck", "AssistantService", "WorkflowResponse", "conversation_title", "to_langchain_message"]
