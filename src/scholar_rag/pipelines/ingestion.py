"""scholar_rag.pipelines.ingestion

Document ingestion and lifecycle.

Ingestion cleans raw text, chunks it, embeds every chunk and stores the
document, its chunks and their vectors. Chunks are independent and write-once,
so their embeddings are computed concurrently, bounded by an
:class:`asyncio.Semaphore`. Nothing is written until every embedding has
succeeded, and a failure while indexing removes the partially stored
document again.

Classes
-------
IngestionResult
    Summary of one ingestion.
IngestionPipeline
    Ingest, update, list and delete documents.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from scholar_rag.common.errors import PermissionDeniedError, RetrievalError
from scholar_rag.common.schemas import Document, DocumentChunk, DocumentMetadata, UserRole
from scholar_rag.retrieval.document_loader import load_document_text
from scholar_rag.retrieval.document_preprocessor import clean_text
from scholar_rag.retrieval.text_splitter import (
    SentenceWindowSplitter,
    TextSpan,
    semantic_sections,
    spans_to_chunks,
)
from scholar_rag.retrieval.types import Embedder
from scholar_rag.retrieval.vector_store import BaseVectorStore
from scholar_rag.storage.record_store import RecordStore

logger = logging.getLogger("scholar_rag.ingestion")

UPDATABLE_FIELDS = frozenset({"title", "description", "subject", "grade_level", "is_public"})


@dataclass
class IngestionResult:
    document_id: str
    chunk_count: int
    text_length: int


class IngestionPipeline:
    """Turn raw documents into indexed, retrievable chunks.

    Parameters
    ----------
    store : RecordStore
        Record store for documents and chunks.
    vector_store : BaseVectorStore
        Index the embedded chunks are added to.
    embedder : Embedder
        Embedding service.
    splitter : SentenceWindowSplitter or None, optional
        Sentence-window chunker. Defaults to 1000/200/2.
    strategy : str, optional
        ``"sentence"`` for sentence windows or ``"semantic"`` for
        section-aware chunking. Defaults to ``"sentence"``.
    embed_concurrency : int, optional
        Maximum number of embedding calls in flight. Defaults to ``8``.
    """

    def __init__(
            self,
            *,
            store: RecordStore,
            vector_store: BaseVectorStore,
            embedder: Embedder,
            splitter: Optional[SentenceWindowSplitter] = None,
            strategy: str = "sentence",
            embed_concurrency: int = 8,
        ):
        if strategy not in ("sentence", "semantic"):
            raise ValueError(f"Unknown chunking strategy {strategy!r}")
        if embed_concurrency < 1:
            raise ValueError("embed_concurrency must be >= 1")
        self.store = store
        self.vector_store = vector_store
        self.embedder = embedder
        self.splitter = splitter or SentenceWindowSplitter()
        self.strategy = strategy
        self.embed_concurrency = int(embed_concurrency)

    def _spans(self, raw_text: str, text: str, title: str) -> list[TextSpan]:
        if self.strategy == "semantic":
            return semantic_sections(raw_text, splitter=self.splitter, title=title)
        return self.splitter.split(text, title=title)

    async def _embed_chunks(self, chunks: list[DocumentChunk]) -> None:
        semaphore = asyncio.Semaphore(self.embed_concurrency)

        async def embed(chunk: DocumentChunk) -> None:
            async with semaphore:
                chunk.embedding = list(await self.embedder.aembed_document(chunk.text))

        try:
            await asyncio.gather(*(embed(c) for c in chunks))
        except Exception as exc:
            raise RetrievalError(f"Failed to embed document chunks: {exc}") from exc

    async def ingest(self, raw_text: str, meta: DocumentMetadata) -> IngestionResult:
        """Clean, chunk, embed and store a document.

        Empty text produces a document with zero chunks and no embedding
        calls.

        Raises
        ------
        RetrievalError
            If embedding or indexing fails; nothing is left stored.
        """
        text = clean_text(raw_text or "")
        document = Document.from_metadata(meta, text_length=len(text))
        chunks = spans_to_chunks(self._spans(raw_text or "", text, meta.title), document_id=document.id)
        document.chunk_count = len(chunks)

        if chunks:
            await self._embed_chunks(chunks)

        await self.store.add_document(document)
        try:
            if chunks:
                await self.store.add_chunks(chunks)
                await self.vector_store.add_chunks(document, chunks)
        except Exception as exc:
            await self.store.delete_document(document.id)
            raise RetrievalError(f"Failed to index document {document.id}: {exc}") from exc

        logger.info("Ingested %r: %d chars, %d chunks", meta.title, len(text), len(chunks))
        return IngestionResult(document_id=document.id, chunk_count=len(chunks), text_length=len(text))

    async def ingest_file(
            self,
            path: str | Path,
            meta: DocumentMetadata,
            file_type: Optional[str] = None,
        ) -> IngestionResult:
        """Extract text from a txt, md, pdf or docx file (or URL) and ingest it.

        The type is inferred from the path unless ``file_type`` is given.

        Raises
        ------
        ValueError
            If the file type is unsupported or extraction fails.
        """
        text, file_type = await asyncio.to_thread(load_document_text, path, file_type)
        meta.file_type = file_type
        return await self.ingest(text, meta)

    async def _owned(self, document_id: str, user_id: str) -> Document:
        document = await self.store.get_document(document_id)
        if document.owner_id != user_id:
            raise PermissionDeniedError(f"User {user_id} does not own document {document_id}")
        return document

    async def delete_document(self, document_id: str, user_id: str) -> None:
        """Delete a document and its chunks. Only the owner may delete.

        Raises
        ------
        RecordNotFoundError
            If the document does not exist.
        PermissionDeniedError
            If ``user_id`` is not the owner.
        """
        await self._owned(document_id, user_id)
        await self.vector_store.delete_document(document_id)
        await self.store.delete_document(document_id)
        logger.info("Deleted document %s", document_id)

    async def update_document_metadata(self, document_id: str, user_id: str, **updates: Any) -> Document:
        """Update descriptive fields of a document. Only the owner may update.

        Chunks are re-indexed so the index sees the new subject, grade and
        visibility.
        """
        await self._owned(document_id, user_id)
        unknown = sorted(set(updates) - UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be updated: {unknown}")
        if not updates:
            return await self.store.get_document(document_id)

        document = await self.store.update_document(document_id, **updates)
        chunks = await self.store.list_chunks(document_id)
        if chunks:
            await self.vector_store.delete_document(document_id)
            await self.vector_store.add_chunks(document, chunks)
        return document

    async def list_documents(
            self,
            user_id: str,
            role: UserRole | str,
            *,
            subject: Optional[str] = None,
            grade_level: Optional[str] = None,
            offset: int = 0,
            limit: Optional[int] = None,
        ) -> list[Document]:
        """List documents visible in the caller's library.

        Teachers and admins see their own uploads; students see public
        documents.
        """
        if UserRole(role) == UserRole.STUDENT:
            return await self.store.list_documents(
                is_public=True, subject=subject, grade_level=grade_level, offset=offset, limit=limit
            )
        return await self.store.list_documents(
            owner_id=user_id, subject=subject, grade_level=grade_level, offset=offset, limit=limit
        )

    async def document_stats(self, document_id: str) -> dict[str, Any]:
        """Chunk statistics of a stored document."""
        document = await self.store.get_document(document_id)
        chunks = await self.store.list_chunks(document_id)
        lengths = [len(c.text) for c in chunks]
        return {
            "document_id": document.id,
            "title": document.title,
            "text_length": document.text_length,
            "chunk_count": len(chunks),
            "avg_chunk_chars": (sum(lengths) / len(lengths)) if lengths else 0.0,
            "max_chunk_chars": max(lengths) if lengths else 0,
        }


__all__ = ["IngestionPipeline", "IngestionResult", "UPDATABLE_FIELDS"]
