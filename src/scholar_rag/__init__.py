"""scholar_rag

Self-learning retrieval-augmented answering for classrooms.

This package contains the building blocks of an educational assistant that
answers questions and generates quizzes and exams from uploaded material. It
refines its own queries over time from user feedback.

Attributes
----------
__version__ : str
    Package version string. Defaults to ``"0.0.0-dev"`` when package metadata is
    unavailable.

Modules
-------
config
    Global configuration loader and cached accessors.
app
    Composition root, caller-facing service and HTTP API.
pipelines
    Answering workflow state machine and document ingestion.
retrieval
    Document loading, cleaning, chunking, embedding, vector index and retrievers.
generation
    LLM wrappers, prompt templates and answer generation.
evaluation
    Self-evaluation of generated answers.
learning
    Query refinement and refinement feedback.
storage
    Record store boundary.
common
    Shared schemas, modes, errors and utilities.

Exports
-------
GlobalConfig
    Global configuration loader and accessor.
ScholarContainer
    Cached runtime component container for applications.
build_container
    Factory function to construct a configured :class:`~scholar_rag.app.container.ScholarContainer`.
RAGWorkflow
    Self-refining answering workflow.
Document
    Uploaded document record.
DocumentChunk
    Chunk schema derived from a parent document.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("scholar-rag")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from .config import GlobalConfig
from .app.container import ScholarContainer, build_container
from .pipelines.rag_workflow import RAGWorkflow
from .common import Document, DocumentChunk

__all__ = [
    "__version__",
    "GlobalConfig",
    "ScholarContainer",
    "build_container",
    "RAGWorkflow",
    "Document",
    "DocumentChunk",
]
