"""
Common building blocks shared across the answering workflow.

This package provides small, widely-used primitives (record schemas, response
modes, the error taxonomy, token counting and structured-output parsing)
intended to be imported by multiple layers of the system.

Classes
-------
Document
    Uploaded document record.
DocumentChunk
    Chunk of a document with associated metadata.
ResponseMode
    Closed enumeration of response modes.

Attributes
----------
DocId : TypeAlias
    Type alias for document identifiers.
ChunkId : TypeAlias
    Type alias for chunk identifiers.

See Also
--------
scholar_rag.common.schemas
    Defines the record dataclasses.

Notes
-----
- ``metadata`` fields are untyped mappings; read them with ``dict.get`` and a
  default.
"""
from __future__ import annotations
from typing import TypeAlias

from .errors import (
    EvaluationError,
    GenerationError,
    ParseError,
    PermissionDeniedError,
    RecordNotFoundError,
    RetrievalError,
    ScholarRAGError,
)
from .modes import ResponseMode
from .schemas import (
    Document,
    DocumentChunk,
    DocumentMetadata,
    UserRole,
)

DocId: TypeAlias = str
ChunkId: TypeAlias = str

__all__ = [
    "Document",
    "DocumentChunk",
    "DocumentMetadata",
    "UserRole",
    "ResponseMode",
    "ScholarRAGError",
    "RetrievalError",
    "GenerationError",
    "EvaluationError",
    "ParseError",
    "RecordNotFoundError",
    "PermissionDeniedError",
    "DocId",
    "ChunkId",
]
