"""scholar_rag.retrieval.retriever_factory

Factory and registry for retriever implementations.

Retriever constructors are registered under a string key and instantiated
via a single factory function.

Functions
---------
register
    Decorator used to register a retriever builder under a name.
create
    Construct a retriever instance by kind.
"""
from __future__ import annotations
from typing import Callable, Dict, Optional

from scholar_rag.retrieval.retriever import HybridRetriever, VectorIndexRetriever
from scholar_rag.retrieval.types import Embedder, Retriever
from scholar_rag.retrieval.vector_store import BaseVectorStore

_BUILDERS: Dict[str, Callable[..., Retriever]] = {}


def register(name: str):
    """Register a retriever builder under a name.

    Parameters
    ----------
    name : str
        Name under which the retriever builder should be registered.

    Returns
    -------
    Callable
        Decorator that registers the wrapped builder function.
    """
    def _wrap(fn: Callable[..., Retriever]):
        _BUILDERS[name] = fn
        return fn
    return _wrap


def create(
    *,
    kind: str,
    embedder: Embedder,
    vector_store: BaseVectorStore,
    top_k: Optional[int] = None,
    **kwargs,
) -> Retriever:
    """Create a retriever instance by kind.

    Parameters
    ----------
    kind : str
        Registered retriever kind to instantiate (``"vector"`` or ``"hybrid"``).
    embedder : Embedder
        Embedding service used for queries.
    vector_store : BaseVectorStore
        Index to search.
    top_k : int or None, optional
        Default number of results. Forwarded when provided.
    **kwargs : Any
        Additional keyword arguments forwarded to the retriever builder
        (e.g. ``alpha`` for the hybrid retriever).

    Raises
    ------
    ValueError
        If ``kind`` does not correspond to a registered retriever.
    """
    key = (kind or "").strip().lower()
    if key not in _BUILDERS:
        raise ValueError(f"Unknown retriever kind: {kind}. Available: {list(_BUILDERS)}")

    call_kwargs = dict(kwargs)
    call_kwargs["embedder"] = embedder
    call_kwargs["vector_store"] = vector_store
    if top_k is not None:
        call_kwargs["top_k"] = top_k

    return _BUILDERS[key](**call_kwargs)


@register("vector")
def _build_vector(**kw) -> Retriever:
    kw.pop("alpha", None)
    return VectorIndexRetriever(**kw)


@register("hybrid")
def _build_hybrid(**kw) -> Retriever:
    return HybridRetriever(**kw)
