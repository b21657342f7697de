"""scholar_rag.retrieval.vector_store

Vector index interfaces and factories for the retrieval layer.

This module defines a small wrapper interface around vector index backends and
provides two concrete implementations:

- :class:`RecordStoreVectorStore` ranks embedded chunks held in the
  :class:`~scholar_rag.storage.record_store.RecordStore` by cosine similarity
  computed in-process.
- :class:`QdrantVectorStore` delegates similarity ranking to a Qdrant
  collection, with document tags stored as point payload.

Both return LlamaIndex :class:`~llama_index.core.schema.NodeWithScore` items
whose :class:`~llama_index.core.schema.TextNode` carries the chunk id, text,
and originating document metadata.

Classes
-------
BaseVectorStore
    Abstract interface for vector index wrappers.
RecordStoreVectorStore
    Brute-force cosine ranking over the record store.
QdrantVectorStore
    Qdrant-backed vector index.

Functions
---------
keyword_score
    Fraction of keywords contained in a text.
create_vector_store
    Create a vector store implementation from a configuration mapping.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Sequence

from llama_index.core.schema import NodeWithScore, TextNode

from scholar_rag.common.schemas import Document, DocumentChunk
from scholar_rag.retrieval.similarity import cosine_similarities
from scholar_rag.retrieval.types import RetrievalFilters
from scholar_rag.storage.record_store import RecordStore

logger = logging.getLogger("scholar_rag.retrieval")


def _node_metadata(chunk_id: str, chunk_index: int, metadata: dict, document: Document) -> dict:
    out = dict(metadata or {})
    out.update({
        "chunk_id": chunk_id,
        "chunk_index": chunk_index,
        "document_id": document.id,
        "document_title": document.title,
        "subject": document.subject,
        "grade_level": document.grade_level,
    })
    return out


def chunk_to_node(chunk: DocumentChunk, document: Document) -> TextNode:
    """Build a LlamaIndex ``TextNode`` for a chunk and its parent document."""
    return TextNode(
        id_=chunk.id,
        text=chunk.text,
        metadata=_node_metadata(chunk.id, chunk.chunk_index, chunk.metadata, document),
    )


def keyword_score(text: str, keywords: Sequence[str]) -> float:
    """Return the fraction of ``keywords`` contained in ``text`` (case-insensitive)."""
    if not keywords:
        return 0.0
    lowered = (text or "").lower()
    hits = sum(1 for kw in keywords if kw.lower() in lowered)
    return hits / len(keywords)


class BaseVectorStore(ABC):
    """Abstract interface for vector index wrappers.

    Chunks are indexed once, after their embeddings are computed, and never
    mutated. Deleting a document removes all of its chunks from the index.
    """

    @classmethod
    @abstractmethod
    def from_config_dict(cls, config: dict, **deps: Any) -> "BaseVectorStore":
        """Create a vector store instance from a configuration mapping."""

    @abstractmethod
    async def add_chunks(self, document: Document, chunks: Iterable[DocumentChunk]) -> int:
        """Index embedded chunks belonging to ``document``.

        Returns
        -------
        int
            Number of chunks indexed.
        """

    @abstractmethod
    async def delete_document(self, document_id: str) -> None:
        """Remove every chunk of ``document_id`` from the index."""

    @abstractmethod
    async def similarity_search(
            self,
            query_embedding: Sequence[float],
            filters: Optional[RetrievalFilters] = None,
            top_k: int = 5,
        ) -> list[NodeWithScore]:
        """Return at most ``top_k`` nodes sorted by cosine similarity, descending."""

    @abstractmethod
    async def keyword_search(
            self,
            keywords: Sequence[str],
            filters: Optional[RetrievalFilters] = None,
            limit: int = 10,
        ) -> list[NodeWithScore]:
        """Return nodes containing at least one keyword.

        Each node's score is :func:`keyword_score` of its text.
        """


class RecordStoreVectorStore(BaseVectorStore):
    """Vector index computed over chunks held in a record store.

    Candidate chunks passing the hard filters are fetched from the record
    store (at most ``candidate_limit``), scored with cosine similarity against
    the query embedding, and the top ``top_k`` are returned.

    Parameters
    ----------
    store : RecordStore
        Record store holding documents and embedded chunks.
    candidate_limit : int, optional
        Maximum number of candidate chunks considered per query. Defaults to
        ``100``.
    """

    def __init__(self, store: RecordStore, *, candidate_limit: int = 100):
        if store is None:
            raise ValueError("RecordStoreVectorStore requires a record store instance.")
        self.store = store
        self.candidate_limit = int(candidate_limit)

    @classmethod
    def from_config_dict(cls, config: dict, **deps: Any) -> "RecordStoreVectorStore":
        return cls(
            store=deps.get("store"),
            candidate_limit=int(config.get("candidate_limit", 100)),
        )

    async def add_chunks(self, document: Document, chunks: Iterable[DocumentChunk]) -> int:
        # Chunks are read straight from the record store at query time.
        return sum(1 for c in chunks if c.embedding is not None)

    async def delete_document(self, document_id: str) -> None:
        return None

    async def _candidates(self, filters: Optional[RetrievalFilters]) -> list[tuple[DocumentChunk, Document]]:
        f = filters or RetrievalFilters()
        return await self.store.candidate_chunks(
            subject=f.subject,
            grade_level=f.grade_level,
            public_only=f.public_only,
            limit=self.candidate_limit,
        )

    async def similarity_search(
            self,
            query_embedding: Sequence[float],
            filters: Optional[RetrievalFilters] = None,
            top_k: int = 5,
        ) -> list[NodeWithScore]:
        candidates = await self._candidates(filters)
        if not candidates or top_k <= 0:
            return []

        scores = cosine_similarities(query_embedding, [chunk.embedding for chunk, _ in candidates])
        ranked = sorted(zip(candidates, scores), key=lambda item: float(item[1]), reverse=True)

        return [
            NodeWithScore(node=chunk_to_node(chunk, doc), score=float(score))
            for (chunk, doc), score in ranked[:top_k]
        ]

    async def keyword_search(
            self,
            keywords: Sequence[str],
            filters: Optional[RetrievalFilters] = None,
            limit: int = 10,
        ) -> list[NodeWithScore]:
        if not keywords:
            return []
        scored = [
            (chunk, doc, keyword_score(chunk.text, keywords))
            for chunk, doc in await self._candidates(filters)
        ]
        ranked = sorted((item for item in scored if item[2] > 0), key=lambda item: item[2], reverse=True)
        return [
            NodeWithScore(node=chunk_to_node(chunk, doc), score=score)
            for chunk, doc, score in ranked[:limit]
        ]


class QdrantVectorStore(BaseVectorStore):
    """Qdrant-backed vector index.

    Chunk vectors are stored as points in a single collection (cosine
    distance) with the chunk text and document tags as payload, so that the
    subject, grade and visibility filters are evaluated by Qdrant.

    Parameters
    ----------
    host : str, optional
        Qdrant host address. Defaults to ``"localhost"``.
    port : int, optional
        Qdrant port number. Defaults to ``6333``.
    collection_name : str, optional
        Name of the Qdrant collection. Defaults to ``"scholar_chunks"``.
    dimension : int or None, optional
        Vector size used when the collection has to be created.
    api_key : str or None, optional
        Qdrant API key.
    url : str or None, optional
        Full Qdrant URL; overrides ``host``/``port`` when given.
    location : str or None, optional
        Passed through to the client (``":memory:"`` runs an embedded
        in-process instance).
    """

    def __init__(
        self,
        *,
        host: str = "localhost",
        port: int = 6333,
        collection_name: str = "scholar_chunks",
        dimension: Optional[int] = None,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        location: Optional[str] = None,
        client: Any = None,
    ):
        from qdrant_client import AsyncQdrantClient

        if client is not None:
            self.client = client
        elif location:
            self.client = AsyncQdrantClient(location=location)
        elif url:
            self.client = AsyncQdrantClient(url=url, api_key=api_key)
        else:
            self.client = AsyncQdrantClient(host=host, port=port, api_key=api_key)

        self.collection_name = collection_name
        self.dimension = dimension
        self._collection_ready = False

    @classmethod
    def from_config_dict(cls, config: dict, **deps: Any) -> "QdrantVectorStore":
        dimension = config.get("dimension") or deps.get("dimension")
        return cls(
            host=config.get("host", "localhost"),
            port=int(config.get("port", 6333)),
            collection_name=config.get("collection_name", "scholar_chunks"),
            dimension=int(dimension) if dimension is not None else None,
            api_key=config.get("api_key"),
            url=config.get("url"),
            location=config.get("location"),
        )

    async def _ensure_collection(self, size: int) -> None:
        from qdrant_client import models

        if self._collection_ready:
            return
        if not await self.client.collection_exists(self.collection_name):
            await self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=models.VectorParams(
                    size=int(self.dimension or size),
                    distance=models.Distance.COSINE,
                ),
            )
            logger.info("Created Qdrant collection %s", self.collection_name)
        self._collection_ready = True

    @staticmethod
    def _filter(filters: Optional[RetrievalFilters], *, document_id: Optional[str] = None):
        from qdrant_client import models

        f = filters or RetrievalFilters()
        must = []
        if document_id is not None:
            must.append(models.FieldCondition(key="document_id", match=models.MatchValue(value=document_id)))
        if f.subject is not None:
            must.append(models.FieldCondition(key="subject", match=models.MatchValue(value=f.subject)))
        if f.grade_level is not None:
            must.append(models.FieldCondition(key="grade_level", match=models.MatchValue(value=f.grade_level)))
        if f.public_only:
            must.append(models.FieldCondition(key="is_public", match=models.MatchValue(value=True)))
        return models.Filter(must=must) if must else None

    @staticmethod
    def _point_to_node(point: Any, score: float) -> NodeWithScore:
        payload = dict(point.payload or {})
        text = payload.pop("text", "")
        payload.pop("is_public", None)
        return NodeWithScore(node=TextNode(id_=str(point.id), text=text, metadata=payload), score=float(score))

    async def add_chunks(self, document: Document, chunks: Iterable[DocumentChunk]) -> int:
        from qdrant_client import models

        points = []
        for chunk in chunks:
            if chunk.embedding is None:
                raise ValueError(f"Chunk {chunk.id} has no embedding.")
            payload = _node_metadata(chunk.id, chunk.chunk_index, chunk.metadata, document)
            payload["text"] = chunk.text
            payload["is_public"] = bool(document.is_public)
            points.append(models.PointStruct(id=chunk.id, vector=list(chunk.embedding), payload=payload))

        if not points:
            return 0
        await self._ensure_collection(len(points[0].vector))
        await self.client.upsert(collection_name=self.collection_name, points=points)
        return len(points)

    async def delete_document(self, document_id: str) -> None:
        from qdrant_client import models

        if not await self.client.collection_exists(self.collection_name):
            return
        await self.client.delete(
            collection_name=self.collection_name,
            points_selector=models.FilterSelector(filter=self._filter(None, document_id=document_id)),
        )

    async def similarity_search(
            self,
            query_embedding: Sequence[float],
            filters: Optional[RetrievalFilters] = None,
            top_k: int = 5,
        ) -> list[NodeWithScore]:
        if top_k <= 0 or not await self.client.collection_exists(self.collection_name):
            return []
        response = await self.client.query_points(
            collection_name=self.collection_name,
            query=list(query_embedding),
            query_filter=self._filter(filters),
            limit=top_k,
            with_payload=True,
        )
        nodes = [self._point_to_node(p, p.score) for p in response.points]
        nodes.sort(key=lambda n: n.score, reverse=True)
        return nodes

    async def keyword_search(
            self,
            keywords: Sequence[str],
            filters: Optional[RetrievalFilters] = None,
            limit: int = 10,
        ) -> list[NodeWithScore]:
        from qdrant_client import models

        if not keywords or not await self.client.collection_exists(self.collection_name):
            return []

        base = self._filter(filters)
        scroll_filter = models.Filter(
            must=list(base.must) if base is not None else None,
            should=[models.FieldCondition(key="text", match=models.MatchText(text=kw)) for kw in keywords],
        )
        points, _ = await self.client.scroll(
            collection_name=self.collection_name,
            scroll_filter=scroll_filter,
            limit=limit,
            with_payload=True,
            with_vectors=False,
        )
        out = []
        for point in points:
            score = keyword_score((point.payload or {}).get("text", ""), keywords)
            if score > 0:
                out.append(self._point_to_node(point, score))
        return out


def _get_vector_store_kind(cfg):
    for key in ("kind", "type", "provider", "backend", "impl"):
        val = cfg.get(key)
        if val is not None:
            return val
    return None


def _normalize_vector_store_kind(kind):
    """Normalise a vector store kind to a registry key (default ``"record_store"``)."""
    if not kind:
        return "record_store"
    k = str(kind).strip().lower().replace("-", "_")
    if k in {"qdrant", "qdrantvectorstore", "qdrant_vector_store"}:
        return "qdrant"
    if k in {"record_store", "recordstore", "memory", "in_memory", "brute_force"}:
        return "record_store"
    return k


def create_vector_store(config: dict, *, store: RecordStore | None = None, dimension: int | None = None) -> BaseVectorStore:
    """Create a vector store implementation from a configuration mapping.

    Parameters
    ----------
    config : dict
        Configuration mapping used to construct the vector store.
    store : RecordStore or None, optional
        Record store, required by the ``record_store`` backend.
    dimension : int or None, optional
        Embedding dimension, used by Qdrant when creating its collection.

    Raises
    ------
    ValueError
        If the requested backend kind is not supported.
    """
    kind = _normalize_vector_store_kind(_get_vector_store_kind(config))
    if kind == "record_store":
        return RecordStoreVectorStore.from_config_dict(config, store=store)
    if kind == "qdrant":
        return QdrantVectorStore.from_config_dict(config, dimension=dimension)
    raise ValueError(f"Unknown vector store kind: {kind!r}")


__all__ = [
    "BaseVectorStore",
    "RecordStoreVectorStore",
    "QdrantVectorStore",
    "chunk_to_node",
    "keyword_score",
    "create_vector_store",
]
