"""scholar_rag.retrieval.retriever

Retriever implementations for the answering workflow.

This module provides concrete retriever classes that embed a natural-language
query and fetch relevant chunk nodes from a vector index. Both vector-only
and hybrid (vector + keyword containment) retrieval strategies are supported.

Classes
-------
VectorIndexRetriever
    Vector-based retriever ranking chunks by cosine similarity.
HybridRetriever
    Hybrid retriever combining vector similarity with keyword containment.

Functions
---------
query_keywords
    Lower-cased query words used for keyword matching.
"""

import logging
from typing import Optional

from llama_index.core.schema import NodeWithScore

from scholar_rag.common.errors import RetrievalError
from scholar_rag.retrieval.types import Embedder, RetrievalFilters
from scholar_rag.retrieval.vector_store import BaseVectorStore

logger = logging.getLogger("scholar_rag.retrieval")


def query_keywords(query: str, min_length: int = 3) -> list[str]:
    """Return lower-cased whitespace-separated words of at least ``min_length`` chars."""
    return [w for w in (query or "").lower().split() if len(w) >= min_length]


class VectorIndexRetriever:
    """Vector-based retriever over a vector index.

    The query is embedded once, then the index returns the chunks passing the
    hard filters ranked by cosine similarity. Results are sorted descending,
    have length at most ``top_k``, and carry their document metadata.

    Parameters
    ----------
    embedder : Embedder
        Embedding service used for the query.
    vector_store : BaseVectorStore
        Index to search.
    top_k : int, optional
        Default number of results. Defaults to ``5``.
    """

    def __init__(
            self,
            *,
            embedder: Embedder,
            vector_store: BaseVectorStore,
            top_k: int = 5,
        ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.top_k = int(top_k)

    async def _embed(self, query: str) -> list[float]:
        try:
            return await self.embedder.aembed_query(query)
        except Exception as exc:
            raise RetrievalError(f"Failed to embed query: {exc}") from exc

    async def aretrieve(
            self,
            query: str,
            filters: Optional[RetrievalFilters] = None,
            top_k: Optional[int] = None,
        ) -> list[NodeWithScore]:
        """Retrieve nodes for a query.

        Raises
        ------
        RetrievalError
            If the embedding service or the index fails.
        """
        k = self.top_k if top_k is None else int(top_k)
        query_embedding = await self._embed(query)
        try:
            nodes = await self.vector_store.similarity_search(query_embedding, filters, k)
        except Exception as exc:
            raise RetrievalError(f"Vector search failed: {exc}") from exc

        nodes = sorted(nodes, key=lambda n: n.score or 0.0, reverse=True)[:k]
        logger.debug("Retrieved %d chunks for query %r", len(nodes), query)
        return nodes


class HybridRetriever(VectorIndexRetriever):
    """Hybrid retriever combining vector similarity and keyword containment.

    Each candidate gets ``alpha * vector_score + (1 - alpha) * keyword_score``
    where ``keyword_score`` is the fraction of query keywords contained in the
    chunk text. Keyword-only matches are scored with a vector score of ``0``.
    The union is re-ranked and truncated to ``top_k``.

    Parameters
    ----------
    alpha : float, optional
        Weight of the vector score, in ``[0, 1]``. Defaults to ``0.7``.
    keyword_limit_factor : int, optional
        Keyword search returns at most ``top_k * keyword_limit_factor``
        matches. Defaults to ``2``.
    """

    def __init__(
            self,
            *,
            embedder: Embedder,
            vector_store: BaseVectorStore,
            top_k: int = 5,
            alpha: float = 0.7,
            keyword_limit_factor: int = 2,
        ):
        super().__init__(embedder=embedder, vector_store=vector_store, top_k=top_k)
        if not 0.0 <= float(alpha) <= 1.0:
            raise ValueError(f"alpha must be in [0, 1], got {alpha!r}")
        self.alpha = float(alpha)
        self.keyword_limit_factor = max(1, int(keyword_limit_factor))

    async def aretrieve(
            self,
            query: str,
            filters: Optional[RetrievalFilters] = None,
            top_k: Optional[int] = None,
        ) -> list[NodeWithScore]:
        k = self.top_k if top_k is None else int(top_k)
        vector_nodes = await super().aretrieve(query, filters, k)

        keywords = query_keywords(query)
        try:
            keyword_nodes = await self.vector_store.keyword_search(
                keywords, filters, k * self.keyword_limit_factor
            )
        except Exception as exc:
            logger.warning("Keyword search failed, using vector results only: %s", exc)
            return vector_nodes

        combined: dict[str, dict] = {}
        for n in vector_nodes:
            combined[n.node.node_id] = {"node": n.node, "vector": n.score or 0.0, "keyword": 0.0}
        for n in keyword_nodes:
            entry = combined.setdefault(n.node.node_id, {"node": n.node, "vector": 0.0, "keyword": 0.0})
            entry["keyword"] = max(entry["keyword"], n.score or 0.0)

        ranked = [
            NodeWithScore(
                node=entry["node"],
                score=self.alpha * entry["vector"] + (1.0 - self.alpha) * entry["keyword"],
            )
            for entry in combined.values()
        ]
        ranked.sort(key=lambda n: n.score, reverse=True)
        return ranked[:k]


__all__ = ["VectorIndexRetriever", "HybridRetriever", "query_keywords"]
