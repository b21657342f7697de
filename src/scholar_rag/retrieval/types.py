"""scholar_rag.retrieval.types

Shared type definitions for the retrieval layer.

This module defines the narrow capability protocols that decouple the
workflow from concrete embedding and retrieval backends, so that
deterministic substitutes can be injected in tests.

Classes
-------
Embedder
    Protocol for text-to-vector embedding.
Retriever
    Protocol defining the retriever interface.
RetrievalFilters
    Hard filters applied before similarity ranking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from llama_index.core.schema import NodeWithScore

from scholar_rag.common.schemas import UserRole


class Embedder(Protocol):
    """Protocol for an embedding service with a fixed output dimension."""

    async def aembed_query(self, query: str) -> list[float]:
        """Embed a query string."""
        ...

    async def aembed_document(self, text: str) -> list[float]:
        """Embed a document text."""
        ...


@dataclass(frozen=True)
class RetrievalFilters:
    """Hard filters applied to candidate chunks.

    Attributes
    ----------
    subject : str or None
        Only chunks from documents tagged with this subject.
    grade_level : str or None
        Only chunks from documents tagged with this grade.
    user_role : UserRole
        Students only see public documents; teachers and admins see all.
    """
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    user_role: UserRole = UserRole.STUDENT

    @property
    def public_only(self) -> bool:
        return UserRole(self.user_role) == UserRole.STUDENT


class Retriever(Protocol):
    """Protocol defining the retriever interface.

    A retriever takes a natural-language query and returns a ranked list of
    chunk nodes with similarity scores, sorted descending, of length at most
    ``top_k``.

    Methods
    -------
    aretrieve
        Retrieve nodes relevant to a query.
    """
    async def aretrieve(
            self,
            query: str,
            filters: Optional[RetrievalFilters] = None,
            top_k: Optional[int] = None,
        ) -> List[NodeWithScore]:
        """Retrieve nodes for a query.

        Raises
        ------
        RetrievalError
            If embedding the query or ranking the index fails.
        """
        ...
