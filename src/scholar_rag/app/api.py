# scholar_rag/app/api.py
from __future__ import annotations

import logging
import os
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from scholar_rag.app.container import build_container
from scholar_rag.common.errors import PermissionDeniedError, RecordNotFoundError
from scholar_rag.common.schemas import DocumentMetadata, FeedbackKind, UserRole
from scholar_rag.config import GlobalConfig
from scholar_rag.evaluation.self_evaluator import Aspect

app = FastAPI(title="Scholar RAG API", version="0.1.0")
logger = logging.getLogger("scholar_rag.api")


class QueryRequest(BaseModel):
    query: str
    user_id: str
    role: UserRole = UserRole.STUDENT
    mode: str = "research"
    conversation_id: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[str] = None


class DocumentReference(BaseModel):
    chunk_id: Optional[str] = None
    document_id: Optional[str] = None
    title: Optional[str] = None
    chunk_index: Optional[int] = None
    score: float = 0.0


class QueryResponse(BaseModel):
    success: bool
    answer: str
    confidence: float = 0.0
    sources: list[str] = Field(default_factory=list)
    documents_used: list[DocumentReference] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    structured: Optional[dict[str, Any]] = None


class DocumentCreateRequest(BaseModel):
    user_id: str
    title: str
    content: str
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    is_public: bool = False
    description: Optional[str] = None
    file_type: str = "txt"


class DocumentCreateResponse(BaseModel):
    document_id: str
    chunk_count: int
    text_length: int


class FeedbackRequest(BaseModel):
    message_id: str
    conversation_id: str
    user_id: str
    kind: FeedbackKind
    rating: Optional[float] = None
    correction: Optional[str] = None
    comment: Optional[str] = None


class FeedbackResponse(BaseModel):
    feedback_id: str


class AnswerCheckRequest(BaseModel):
    query: str
    answer: str
    user_id: str
    role: UserRole = UserRole.STUDENT
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    aspects: list[Aspect] = Field(default_factory=list)


class AnswerCheckResponse(BaseModel):
    has_hallucination: bool
    confidence: float
    details: str
    aspect_scores: dict[str, float] = Field(default_factory=dict)
    documents_used: list[DocumentReference] = Field(default_factory=list)


class CandidateAnswer(BaseModel):
    answer: str
    confidence: float = 0.0
    sources: list[str] = Field(default_factory=list)


class AnswerSelectionRequest(BaseModel):
    query: str
    user_id: str
    candidates: list[CandidateAnswer] = Field(min_length=1)
    role: UserRole = UserRole.STUDENT
    subject: Optional[str] = None
    grade_level: Optional[str] = None


class AnswerSelectionResponse(BaseModel):
    best_index: int
    answer: str


class ConversationSummary(BaseModel):
    id: str
    title: str
    mode: str
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    updated_at: str


class MessageView(BaseModel):
    id: str
    role: str
    content: str
    confidence: Optional[float] = None
    retrieved_docs: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str


def _service():
    return app.state.container.service


def _http_error(endpoint: str, exc: Exception) -> HTTPException:
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    logger.exception("Error while handling %s", endpoint)
    return HTTPException(status_code=500, detail={"error": f"{type(exc).__name__}: {exc}"})


@app.on_event("startup")
def startup():
    # Use env var so Docker can pass config location
    if getattr(app.state, "container", None) is not None:
        return
    cfg_path = os.environ.get("SCHOLAR_RAG_CONFIG", "/app/config/config.yaml")
    cfg = GlobalConfig.load(cfg_path)
    app.state.container = build_container(cfg)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/v1/query", response_model=QueryResponse)
async def query(req: QueryRequest):
    try:
        result = await _service().run_workflow(
            req.query,
            req.user_id,
            role=req.role,
            mode=req.mode,
            conversation_id=req.conversation_id,
            subject=req.subject,
            grade_level=req.grade_level,
        )
    except Exception as e:
        raise _http_error("/v1/query", e)

    return QueryResponse(
        success=result.success,
        answer=result.answer,
        confidence=result.confidence,
        sources=result.sources,
        documents_used=[DocumentReference(**d) for d in result.documents_used],
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        metadata=result.metadata,
        error=result.error,
        structured=result.structured,
    )


@app.post("/v1/documents", response_model=DocumentCreateResponse, status_code=201)
async def create_document(req: DocumentCreateRequest):
    meta = DocumentMetadata(
        title=req.title,
        owner_id=req.user_id,
        subject=req.subject,
        grade_level=req.grade_level,
        is_public=req.is_public,
        description=req.description,
        file_type=req.file_type,
    )
    try:
        result = await _service().ingest(req.content, meta)
    except Exception as e:
        raise _http_error("/v1/documents", e)
    return DocumentCreateResponse(
        document_id=result.document_id,
        chunk_count=result.chunk_count,
        text_length=result.text_length,
    )


@app.delete("/v1/documents/{document_id}", status_code=204)
async def delete_document(document_id: str, user_id: str):
    try:
        await _service().delete_document(document_id, user_id)
    except Exception as e:
        raise _http_error("/v1/documents", e)


@app.post("/v1/feedback", response_model=FeedbackResponse)
async def feedback(req: FeedbackRequest):
    try:
        record = await _service().record_feedback(
            req.message_id,
            req.conversation_id,
            req.user_id,
            req.kind,
            rating=req.rating,
            correction=req.correction,
            comment=req.comment,
        )
    except Exception as e:
        raise _http_error("/v1/feedback", e)
    return FeedbackResponse(feedback_id=record.id)


@app.get("/v1/conversations", response_model=list[ConversationSummary])
async def conversations(user_id: str, offset: int = 0, limit: int = 20):
    try:
        items = await _service().list_conversations(user_id, offset=offset, limit=limit)
    except Exception as e:
        raise _http_error("/v1/conversations", e)
    return [
        ConversationSummary(
            id=c.id,
            title=c.title,
            mode=c.mode,
            subject=c.subject,
            grade_level=c.grade_level,
            updated_at=c.updated_at.isoformat(),
        )
        for c in items
    ]


@app.get("/v1/conversations/{conversation_id}/messages", response_model=list[MessageView])
async def conversation_messages(conversation_id: str, user_id: str, offset: int = 0, limit: int = 50):
    try:
        items = await _service().list_messages(conversation_id, user_id, offset=offset, limit=limit)
    except Exception as e:
        raise _http_error("/v1/conversations/messages", e)
    return [
        MessageView(
            id=m.id,
            role=m.role.value,
            content=m.content,
            confidence=m.confidence,
            retrieved_docs=m.retrieved_docs,
            metadata=m.metadata,
            created_at=m.created_at.isoformat(),
        )
        for m in items
    ]


@app.post("/v1/answers/check", response_model=AnswerCheckResponse)
async def check_answer(req: AnswerCheckRequest):
    try:
        result = await _service().verify_answer(
            req.query,
            req.answer,
            req.user_id,
            role=req.role,
            subject=req.subject,
            grade_level=req.grade_level,
            aspects=req.aspects,
        )
    except Exception as e:
        raise _http_error("/v1/answers/check", e)
    return AnswerCheckResponse(
        has_hallucination=result.has_hallucination,
        confidence=result.confidence,
        details=result.details,
        aspect_scores=result.aspect_scores,
        documents_used=[DocumentReference(**d) for d in result.documents_used],
    )


@app.post("/v1/answers/select", response_model=AnswerSelectionResponse)
async def select_answer(req: AnswerSelectionRequest):
    try:
        index = await _service().select_best_answer(
            req.query,
            req.candidates,
            req.user_id,
            role=req.role,
            subject=req.subject,
            grade_level=req.grade_level,
        )
    except Exception as e:
        raise _http_error("/v1/answers/select", e)
    return AnswerSelectionResponse(best_index=index, answer=req.candidates[index].answer)
