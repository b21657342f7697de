"""scholar_rag.storage.record_store

Record store interface and in-memory implementation.

The answering workflow treats persistence as an abstract store with
create/read/update/delete operations over documents, chunks, conversations,
messages, refinement records, feedback, and analytics events. Every operation
is a coroutine so that a database-backed implementation can await I/O.

Two operations on refinement records are read-modify-write and are exposed as
single atomic primitives (:meth:`RecordStore.upsert_refinement` and
:meth:`RecordStore.apply_refinement_score`). Implementations must serialise
them per refinement key so that concurrent feedback cannot lose updates.

Classes
-------
RecordStore
    Abstract record store interface.
InMemoryRecordStore
    Process-local implementation backed by dictionaries.

Functions
---------
refinement_key
    Normalised identity of a refinement record.
create_record_store
    Construct a record store from a configuration mapping.
"""

from __future__ import annotations

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from typing import Any, Iterable, Mapping, Optional

from scholar_rag.common.errors import RecordNotFoundError
from scholar_rag.common.schemas import (
    AnalyticsEvent,
    Conversation,
    Document,
    DocumentChunk,
    FeedbackRecord,
    Message,
    RefinementRecord,
    utcnow,
)


def refinement_key(
        original_query: str,
        refined_query: str,
        mode: str,
        subject: Optional[str],
    ) -> tuple[str, str, str, Optional[str]]:
    """Return the identity of a refinement record.

    Query texts compare case-insensitively; mode and subject compare exactly.
    """
    return (
        original_query.strip().lower(),
        refined_query.strip().lower(),
        str(mode),
        subject,
    )


def _page(items: list, offset: int, limit: Optional[int]) -> list:
    offset = max(0, int(offset or 0))
    if limit is None:
        return items[offset:]
    return items[offset:offset + max(0, int(limit))]


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class RecordStore(ABC):
    """Abstract CRUD interface over the workflow's persistent records."""

    # --- documents and chunks -------------------------------------------

    @abstractmethod
    async def add_document(self, document: Document) -> Document: ...

    @abstractmethod
    async def get_document(self, document_id: str) -> Document:
        """Return a document.

        Raises
        ------
        RecordNotFoundError
            If no document has id ``document_id``.
        """

    @abstractmethod
    async def update_document(self, document_id: str, **changes: Any) -> Document: ...

    @abstractmethod
    async def delete_document(self, document_id: str) -> None:
        """Delete a document and every chunk that belongs to it."""

    @abstractmethod
    async def list_documents(
            self,
            *,
            owner_id: Optional[str] = None,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            is_public: Optional[bool] = None,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Document]:
        """Return documents matching every given filter, newest first."""

    @abstractmethod
    async def add_chunks(self, chunks: Iterable[DocumentChunk]) -> int: ...

    @abstractmethod
    async def list_chunks(self, document_id: str) -> list[DocumentChunk]:
        """Return the chunks of a document ordered by ``chunk_index``."""

    @abstractmethod
    async def candidate_chunks(
            self,
            *,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            public_only: bool = False,
            limit: Optional[int] = None,
        ) -> list[tuple[DocumentChunk, Document]]:
        """Return embedded chunks whose parent document passes the hard filters."""

    # --- conversations and messages -------------------------------------

    @abstractmethod
    async def add_conversation(self, conversation: Conversation) -> Conversation: ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation: ...

    @abstractmethod
    async def list_conversations(
            self,
            user_id: str,
            *,
            mode: Optional[str] = None,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Conversation]:
        """Return a user's conversations, most recently updated first."""

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None: ...

    @abstractmethod
    async def append_message(self, message: Message) -> Message: ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Message: ...

    @abstractmethod
    async def list_messages(
            self,
            conversation_id: str,
            *,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Message]:
        """Return messages of a conversation in creation order."""

    # --- refinement learning --------------------------------------------

    @abstractmethod
    async def find_refinements(
            self,
            *,
            mode: str,
            subject: Optional[str] = None,
            min_score: Optional[float] = None,
            limit: Optional[int] = None,
        ) -> list[RefinementRecord]:
        """Return refinements ordered by usage count then score, both descending.

        ``subject`` filters only when given.
        """

    @abstractmethod
    async def get_refinement(
            self,
            original_query: str,
            refined_query: str,
            mode: str,
            subject: Optional[str] = None,
        ) -> Optional[RefinementRecord]: ...

    @abstractmethod
    async def upsert_refinement(
            self,
            original_query: str,
            refined_query: str,
            mode: str,
            subject: Optional[str] = None,
        ) -> RefinementRecord:
        """Insert a refinement or increment the usage of an existing one."""

    @abstractmethod
    async def apply_refinement_score(
            self,
            original_query: str,
            refined_query: str,
            mode: str,
            subject: Optional[str],
            observed_score: float,
        ) -> RefinementRecord:
        """Fold an observed score into a refinement's running average.

        The update is ``new = (old * n + observed) / (n + 1)`` where ``n`` is
        the usage count and ``old`` is taken as ``0`` while unset.

        Raises
        ------
        RecordNotFoundError
            If the refinement does not exist.
        """

    # --- feedback and analytics -----------------------------------------

    @abstractmethod
    async def add_feedback(self, feedback: FeedbackRecord) -> FeedbackRecord: ...

    @abstractmethod
    async def list_feedback(self, message_id: Optional[str] = None) -> list[FeedbackRecord]: ...

    @abstractmethod
    async def add_event(self, event: AnalyticsEvent) -> AnalyticsEvent: ...

    @abstractmethod
    async def list_events(self, event_type: Optional[str] = None) -> list[AnalyticsEvent]: ...


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed record store for single-process deployments and tests.

    Mutations that read and then write a record run under a single
    :class:`asyncio.Lock`, which makes the refinement primitives atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self):
        self._documents: dict[str, Document] = {}
        self._chunks: dict[str, list[DocumentChunk]] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, Message] = {}
        self._messages_by_conversation: dict[str, list[str]] = {}
        self._refinements: dict[tuple, RefinementRecord] = {}
        self._feedback: list[FeedbackRecord] = []
        self._events: list[AnalyticsEvent] = []
        self._lock = asyncio.Lock()

    # --- documents and chunks -------------------------------------------

    async def add_document(self, document: Document) -> Document:
        self._documents[document.id] = document
        self._chunks.setdefault(document.id, [])
        return document

    async def get_document(self, document_id: str) -> Document:
        try:
            return self._documents[document_id]
        except KeyError:
            raise RecordNotFoundError(f"Document not found: {document_id}") from None

    async def update_document(self, document_id: str, **changes: Any) -> Document:
        async with self._lock:
            current = await self.get_document(document_id)
            fields = {f.name for f in dataclasses.fields(Document)}
            unknown = sorted(set(changes) - fields)
            if unknown:
                raise ValueError(f"Unknown document fields: {unknown}")
            updated = dataclasses.replace(current, **changes)
            self._documents[document_id] = updated
            return updated

    async def delete_document(self, document_id: str) -> None:
        async with self._lock:
            if document_id not in self._documents:
                raise RecordNotFoundError(f"Document not found: {document_id}")
            del self._documents[document_id]
            self._chunks.pop(document_id, None)

    async def list_documents(
            self,
            *,
            owner_id: Optional[str] = None,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            is_public: Optional[bool] = None,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Document]:
        docs = [
            d for d in self._documents.values()
            if (owner_id is None or d.owner_id == owner_id)
            and (subject is None or d.subject == subject)
            and (grade_level is None or d.grade_level == grade_level)
            and (is_public is None or d.is_public == is_public)
        ]
        docs.sort(key=lambda d: d.created_at, reverse=True)
        return _page(docs, offset, limit)

    async def add_chunks(self, chunks: Iterable[DocumentChunk]) -> int:
        added = 0
        async with self._lock:
            for chunk in chunks:
                if chunk.parent_id not in self._documents:
                    raise RecordNotFoundError(f"Parent document not found: {chunk.parent_id}")
                self._chunks.setdefault(chunk.parent_id, []).append(chunk)
                added += 1
        return added

    async def list_chunks(self, document_id: str) -> list[DocumentChunk]:
        return sorted(self._chunks.get(document_id, []), key=lambda c: c.chunk_index)

    async def candidate_chunks(
            self,
            *,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            public_only: bool = False,
            limit: Optional[int] = None,
        ) -> list[tuple[DocumentChunk, Document]]:
        out: list[tuple[DocumentChunk, Document]] = []
        for document_id, chunks in self._chunks.items():
            doc = self._documents.get(document_id)
            if doc is None:
                continue
            if subject is not None and doc.subject != subject:
                continue
            if grade_level is not None and doc.grade_level != grade_level:
                continue
            if public_only and not doc.is_public:
                continue
            for chunk in chunks:
                if chunk.embedding is None:
                    continue
                out.append((chunk, doc))
                if limit is not None and len(out) >= limit:
                    return out
        return out

    # --- conversations and messages -------------------------------------

    async def add_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation
        self._messages_by_conversation.setdefault(conversation.id, [])
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        try:
            return self._conversations[conversation_id]
        except KeyError:
            raise RecordNotFoundError(f"Conversation not found: {conversation_id}") from None

    async def list_conversations(
            self,
            user_id: str,
            *,
            mode: Optional[str] = None,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Conversation]:
        convs = [
            c for c in self._conversations.values()
            if c.user_id == user_id and (mode is None or c.mode == mode)
        ]
        convs.sort(key=lambda c: c.updated_at, reverse=True)
        return _page(convs, offset, limit)

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            if conversation_id not in self._conversations:
                raise RecordNotFoundError(f"Conversation not found: {conversation_id}")
            del self._conversations[conversation_id]
            for message_id in self._messages_by_conversation.pop(conversation_id, []):
                self._messages.pop(message_id, None)

    async def append_message(self, message: Message) -> Message:
        async with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if conversation is None:
                raise RecordNotFoundError(f"Conversation not found: {message.conversation_id}")
            self._messages[message.id] = message
            self._messages_by_conversation[message.conversation_id].append(message.id)
            conversation.updated_at = utcnow()
        return message

    async def get_message(self, message_id: str) -> Message:
        try:
            return self._messages[message_id]
        except KeyError:
            raise RecordNotFoundError(f"Message not found: {message_id}") from None

    async def list_messages(
            self,
            conversation_id: str,
            *,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Message]:
        ids = self._messages_by_conversation.get(conversation_id, [])
        return _page([self._messages[i] for i in ids], offset, limit)

    # --- refinement learning --------------------------------------------

    async def find_refinements(
            self,
            *,
            mode: str,
            subject: Optional[str] = None,
            min_score: Optional[float] = None,
            limit: Optional[int] = None,
        ) -> list[RefinementRecord]:
        records = [
            r for r in self._refinements.values()
            if r.mode == mode
            and (subject is None or r.subject == subject)
            and (
                min_score is None
                or (r.improvement_score is not None and r.improvement_score >= min_score)
            )
        ]
        records.sort(
            key=lambda r: (r.usage_count, r.improvement_score or 0.0),
            reverse=True,
        )
        return _page(records, 0, limit)

    async def get_refinement(
            self,
            original_query: str,
            refined_query: str,
            mode: str,
            subject: Optional[str] = None,
        ) -> Optional[RefinementRecord]:
        return self._refinements.get(refinement_key(original_query, refined_query, mode, subject))

    async def upsert_refinement(
            self,
            original_query: str,
            refined_query: str,
            mode: str,
            subject: Optional[str] = None,
        ) -> RefinementRecord:
        key = refinement_key(original_query, refined_query, mode, subject)
        async with self._lock:
            record = self._refinements.get(key)
            if record is not None:
                record.usage_count += 1
                record.last_used = utcnow()
                return record
            record = RefinementRecord(
                original_query=original_query,
                refined_query=refined_query,
                mode=str(mode),
                subject=subject,
            )
            self._refinements[key] = record
            return record

    async def apply_refinement_score(
            self,
            original_query: str,
            refined_query: str,
            mode: str,
            subject: Optional[str],
            observed_score: float,
        ) -> RefinementRecord:
        key = refinement_key(original_query, refined_query, mode, subject)
        async with self._lock:
            record = self._refinements.get(key)
            if record is None:
                raise RecordNotFoundError(
                    f"Refinement not found: {original_query!r} -> {refined_query!r} ({mode}, {subject})"
                )
            n = max(0, int(record.usage_count))
            current = record.improvement_score or 0.0
            record.improvement_score = _clamp01((current * n + _clamp01(observed_score)) / (n + 1))
            return record

    # --- feedback and analytics -----------------------------------------

    async def add_feedback(self, feedback: FeedbackRecord) -> FeedbackRecord:
        self._feedback.append(feedback)
        return feedback

    async def list_feedback(self, message_id: Optional[str] = None) -> list[FeedbackRecord]:
        return [f for f in self._feedback if message_id is None or f.message_id == message_id]

    async def add_event(self, event: AnalyticsEvent) -> AnalyticsEvent:
        self._events.append(event)
        return event

    async def list_events(self, event_type: Optional[str] = None) -> list[AnalyticsEvent]:
        return [e for e in self._events if event_type is None or e.event_type == event_type]


def create_record_store(config: Mapping[str, Any] | None = None) -> RecordStore:
    """Create a record store from configuration.

    Parameters
    ----------
    config : Mapping[str, Any] or None, optional
        Mapping with a ``type`` discriminator. Only ``"memory"`` is built in.

    Raises
    ------
    ValueError
        If the requested store type is unknown.
    """
    cfg = dict(config or {})
    kind = str(cfg.get("type") or "memory").strip().lower().replace("-", "_")
    if kind in {"memory", "in_memory", "inmemory"}:
        return InMemoryRecordStore()
    raise ValueError(f"Unknown record store type: {kind!r}")


__all__ = [
    "RecordStore",
    "InMemoryRecordStore",
    "refinement_key",
    "create_record_store",
]
