"""scholar_rag.retrieval.text_splitter

Sentence-window chunking of document text.

Documents are split into sentences, and sentences are packed into chunks
bounded by a character budget. When a chunk is emitted, the next one is
seeded with the trailing sentences of the previous chunk so that neighbouring
chunks share context. Sentences are never split: a single sentence longer
than the budget becomes a chunk on its own.

Chunking is deterministic. Chunk ids are derived from the parent document id
and the chunk ordinal, so re-running the splitter on identical input yields
identical chunks.

Classes
-------
TextSpan
    A chunk of text with its sentence span, before it is bound to a document.
SentenceWindowSplitter
    Character-bounded, sentence-respecting chunker with sentence overlap.

Functions
---------
split_sentences
    Split text into sentences.
semantic_sections
    Section-aware chunking for Markdown-like text.
chunk_document_text
    Convenience wrapper returning :class:`DocumentChunk` objects.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from scholar_rag.common.schemas import DocumentChunk
from scholar_rag.retrieval.document_preprocessor import clean_text

_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")
_SECTION_RE = re.compile(r"\n\s*\n+|(?=^#{1,6}\s)", re.MULTILINE)


def split_sentences(text: str) -> list[str]:
    """Split ``text`` into sentences.

    A sentence is a run of characters other than ``.``, ``!`` and ``?``
    followed by one or more of them. Trailing text without a terminator is
    kept as a final sentence. Sentences are stripped; empty ones are dropped.

    Parameters
    ----------
    text : str
        Input text, typically already cleaned.

    Returns
    -------
    list[str]
        Sentences in document order.
    """
    if not text or not text.strip():
        return []
    sentences = [m.group(0).strip() for m in _SENTENCE_RE.finditer(text)]
    return [s for s in sentences if s]


@dataclass(frozen=True)
class TextSpan:
    """A chunk of text covering sentences ``[sentence_start, sentence_end)``."""
    text: str
    index: int
    sentence_start: int
    sentence_end: int
    metadata: dict[str, Any] = field(default_factory=dict)


class SentenceWindowSplitter:
    """Pack sentences into size-bounded chunks with trailing-sentence overlap.

    Parameters
    ----------
    chunk_size : int, optional
        Maximum chunk length in characters. Defaults to ``1000``.
    chunk_overlap : int, optional
        Maximum length in characters of the overlap carried into the next
        chunk. Defaults to ``200``.
    overlap_sentences : int, optional
        Maximum number of trailing sentences carried into the next chunk.
        Defaults to ``2``.

    Notes
    -----
    Overlap sentences are dropped from the front of the seed while the seed
    is longer than ``chunk_overlap`` or while the seed plus the incoming
    sentence would exceed ``chunk_size``. Consequently no chunk exceeds
    ``chunk_size`` unless it consists of a single oversized sentence.
    """

    def __init__(
            self,
            chunk_size: int = 1000,
            chunk_overlap: int = 200,
            overlap_sentences: int = 2,
        ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be a positive integer.")
        if chunk_overlap < 0 or overlap_sentences < 0:
            raise ValueError("overlap settings must be non-negative.")
        self.chunk_size = int(chunk_size)
        self.chunk_overlap = int(chunk_overlap)
        self.overlap_sentences = int(overlap_sentences)

    @classmethod
    def from_config_dict(cls, config: dict) -> "SentenceWindowSplitter":
        return cls(
            chunk_size=int(config.get("chunk_size", 1000)),
            chunk_overlap=int(config.get("chunk_overlap", 200)),
            overlap_sentences=int(config.get("overlap_sentences", 2)),
        )

    @staticmethod
    def _join(sentences: list[str]) -> str:
        return " ".join(sentences)

    def _seed(self, emitted: list[int], sentences: list[str], incoming: str) -> list[int]:
        if self.overlap_sentences == 0 or self.chunk_overlap == 0:
            return []
        seed = emitted[-self.overlap_sentences:]
        while seed:
            seed_text = self._join([sentences[i] for i in seed])
            if len(seed_text) <= self.chunk_overlap and len(seed_text) + 1 + len(incoming) <= self.chunk_size:
                break
            seed = seed[1:]
        return seed

    def split(self, text: str, *, title: Optional[str] = None) -> list[TextSpan]:
        """Split ``text`` into chunks.

        Parameters
        ----------
        text : str
            Cleaned document text.
        title : str or None, optional
            Document title recorded in each chunk's metadata.

        Returns
        -------
        list[TextSpan]
            Chunks in document order. Empty text yields an empty list.
        """
        sentences = split_sentences(text)
        spans: list[TextSpan] = []
        current: list[int] = []

        def emit() -> None:
            body = self._join([sentences[i] for i in current])
            spans.append(
                TextSpan(
                    text=body,
                    index=len(spans),
                    sentence_start=current[0],
                    sentence_end=current[-1] + 1,
                    metadata={
                        "document_title": title,
                        "chunk_index": len(spans),
                        "sentence_start": current[0],
                        "sentence_end": current[-1] + 1,
                        "char_count": len(body),
                    },
                )
            )

        for i, sentence in enumerate(sentences):
            if not current:
                current = [i]
                continue
            candidate_len = len(self._join([sentences[j] for j in current])) + 1 + len(sentence)
            if candidate_len <= self.chunk_size:
                current.append(i)
                continue
            emit()
            current = self._seed(current, sentences, sentence) + [i]

        if current:
            emit()

        return spans


def semantic_sections(
        text: str,
        *,
        splitter: Optional[SentenceWindowSplitter] = None,
        title: Optional[str] = None,
        min_section_chars: int = 50,
        max_section_chars: int = 1500,
    ) -> list[TextSpan]:
    """Chunk Markdown-like text along blank lines and headings.

    ``text`` is the raw extracted text; each section is cleaned with
    :func:`~scholar_rag.retrieval.document_preprocessor.clean_text` after
    splitting, so blank lines still mark boundaries. Sections shorter than
    ``min_section_chars`` are dropped, sections up to ``max_section_chars``
    are kept whole, and longer sections are re-split
    with ``splitter``.
    """
    splitter = splitter or SentenceWindowSplitter()
    spans: list[TextSpan] = []
    sentence_offset = 0

    for raw in _SECTION_RE.split(text or ""):
        section = clean_text(raw or "")
        if len(section) < min_section_chars:
            continue

        if len(section) <= max_section_chars:
            n = len(split_sentences(section))
            spans.append(
                TextSpan(
                    text=section,
                    index=len(spans),
                    sentence_start=sentence_offset,
                    sentence_end=sentence_offset + n,
                    metadata={
                        "document_title": title,
                        "chunk_index": len(spans),
                        "type": "semantic_section",
                        "char_count": len(section),
                    },
                )
            )
            sentence_offset += n
            continue

        for sub in splitter.split(section, title=title):
            spans.append(
                TextSpan(
                    text=sub.text,
                    index=len(spans),
                    sentence_start=sentence_offset + sub.sentence_start,
                    sentence_end=sentence_offset + sub.sentence_end,
                    metadata={**sub.metadata, "chunk_index": len(spans), "type": "semantic_section"},
                )
            )
        sentence_offset += len(split_sentences(section))

    return spans


def chunk_id(document_id: str, index: int) -> str:
    """Deterministic chunk id for ``(document_id, index)``."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"scholar-rag:{document_id}#{index}"))


def spans_to_chunks(
        spans: list[TextSpan],
        *,
        document_id: str,
        extra_metadata: Optional[dict[str, Any]] = None,
    ) -> list[DocumentChunk]:
    """Bind spans to a parent document, linking neighbours via ``prev_id``/``next_id``."""
    chunks: list[DocumentChunk] = []
    for span in spans:
        metadata = {**(extra_metadata or {}), **span.metadata}
        chunks.append(
            DocumentChunk(
                parent_id=document_id,
                chunk_index=span.index,
                text=span.text,
                prev_id=chunks[-1].id if chunks else None,
                id=chunk_id(document_id, span.index),
                metadata=metadata,
            )
        )

    for i in range(len(chunks) - 1):
        chunks[i].next_id = chunks[i + 1].id

    return chunks


def chunk_document_text(
        text: str,
        *,
        document_id: str,
        title: Optional[str] = None,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        overlap_sentences: int = 2,
    ) -> list[DocumentChunk]:
    """Chunk a single document's cleaned text.

    Parameters
    ----------
    text : str
        Cleaned document text.
    document_id : str
        Id of the parent document.
    title : str or None, optional
        Document title recorded in chunk metadata.
    chunk_size, chunk_overlap, overlap_sentences : int, optional
        Forwarded to :class:`SentenceWindowSplitter`.

    Returns
    -------
    list[DocumentChunk]
        Linked chunks in document order.
    """
    splitter = SentenceWindowSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        overlap_sentences=overlap_sentences,
    )
    return spans_to_chunks(splitter.split(text, title=title), document_id=document_id)


__all__ = [
    "split_sentences",
    "TextSpan",
    "SentenceWindowSplitter",
    "semantic_sections",
    "chunk_id",
    "spans_to_chunks",
    "chunk_document_text",
]
