"""scholar_rag.common.schemas

Core data schemas shared across the answering workflow.

These lightweight dataclasses describe the canonical shapes for uploaded
documents and their chunks, conversations and messages, the refinement
history the query refiner learns from, user feedback, and analytics events.
They are passed between ingestion, retrieval, generation, evaluation and the
record store.

Classes
-------
UserRole
    Role of the caller, used for visibility filtering.
FeedbackKind
    Kind of feedback a user can leave on an assistant message.
DocumentMetadata
    Caller-supplied descriptive fields for a document being ingested.
Document
    An uploaded source document.
DocumentChunk
    A chunk produced from a parent :class:`Document`.
Conversation
    A conversation between one user and the assistant.
Message
    A single message appended to a :class:`Conversation`.
RefinementRecord
    A learned (original query, refined query) pair and its running score.
FeedbackRecord
    Feedback left by a user on an assistant message.
AnalyticsEvent
    Free-form telemetry record written to the analytics sink.

Notes
-----
``metadata`` is an untyped ``dict[str, Any]`` of arbitrary key/value pairs;
read it with ``dict.get`` and a default.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class FeedbackKind(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CORRECTION = "correction"
    RATING = "rating"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class DocumentMetadata:
    """Descriptive fields supplied by the uploader of a document.

    Attributes
    ----------
    title : str
        Display title; also used as the source label in answers.
    owner_id : str
        Id of the uploading user.
    subject : str or None
        Subject tag (e.g. ``"math"``).
    grade_level : str or None
        Grade tag (e.g. ``"10"``).
    is_public : bool
        Whether students may retrieve the document.
    description : str or None
        Optional free-text description.
    file_type : str
        Source format label (``"txt"``, ``"md"``, ``"pdf"``, ``"docx"``).
    """
    title: str
    owner_id: str
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    is_public: bool = False
    description: Optional[str] = None
    file_type: str = "txt"


@dataclass
class Document:
    """An uploaded source document.

    The raw text itself is not retained; only its length and the number of
    chunks derived from it. Deleting a document cascades to its chunks.
    """
    title: str
    owner_id: str
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    is_public: bool = False
    description: Optional[str] = None
    file_type: str = "txt"
    text_length: int = 0
    chunk_count: int = 0
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_metadata(cls, meta: DocumentMetadata, **kwargs) -> "Document":
        return cls(
            title=meta.title,
            owner_id=meta.owner_id,
            subject=meta.subject,
            grade_level=meta.grade_level,
            is_public=meta.is_public,
            description=meta.description,
            file_type=meta.file_type,
            **kwargs,
        )


@dataclass
class DocumentChunk:
    """A contiguous span of text derived from a parent :class:`Document`.

    Attributes
    ----------
    parent_id : str
        Identifier of the source document.
    chunk_index : int
        Zero-based ordinal of the chunk within its document.
    text : str
        Chunk text content.
    prev_id : str or None
        Identifier of the previous chunk in the document, if any.
    next_id : str or None
        Identifier of the next chunk in the document, if any.
    id : str
        Unique identifier for the chunk.
    metadata : dict[str, Any]
        Chunking metadata (``document_title``, ``chunk_index``,
        ``sentence_start``, ``sentence_end``, ``char_count``) plus any
        document tags propagated at ingestion time.
    embedding : list[float] or None
        Embedding vector, set once during ingestion and never mutated.
    """
    parent_id: str
    chunk_index: int
    text: str
    prev_id: Optional[str] = None
    next_id: Optional[str] = None
    id: str = field(default_factory=_new_id)
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None


@dataclass
class Conversation:
    user_id: str
    role: UserRole
    mode: str
    title: str = "New conversation"
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    """A message in a conversation. Messages are append-only."""
    conversation_id: str
    role: MessageRole
    content: str
    confidence: Optional[float] = None
    retrieved_docs: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefinementRecord:
    """A learned query rewrite.

    Records are keyed by ``(original_query, refined_query, mode, subject)``
    with case-insensitive query comparison. ``improvement_score`` stays
    ``None`` until the first feedback is observed and is always kept in
    ``[0, 1]`` afterwards.
    """
    original_query: str
    refined_query: str
    mode: str
    subject: Optional[str] = None
    improvement_score: Optional[float] = None
    usage_count: int = 1
    last_used: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=_new_id)


@dataclass
class FeedbackRecord:
    message_id: str
    conversation_id: str
    user_id: str
    kind: FeedbackKind
    rating: Optional[float] = None
    correction: Optional[str] = None
    comment: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AnalyticsEvent:
    """A telemetry record. The core writes these and never reads them back."""
    event_type: str
    user_id: Optional[str] = None
    subject: Optional[str] = None
    mode: Optional[str] = None
    query_text: Optional[str] = None
    documents_retrieved: Optional[int] = None
    response_time_ms: Optional[float] = None
    token_usage: Optional[int] = None
    success: bool = True
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)
