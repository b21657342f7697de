"""scholar_rag.retrieval.embedder

Embedding interfaces and factories for the retrieval layer.

This module defines a small provider-agnostic interface for producing vector
embeddings from text, along with concrete implementations backed by
LlamaIndex embedding wrappers. A factory function is provided to construct
an embedder implementation from configuration.

Classes
-------
BaseEmbedder
    Abstract interface specifying the API used by retrieval and ingestion.
HuggingFaceEmbedder
    Embedder backed by a Hugging Face SentenceTransformer via LlamaIndex.
OpenAILikeEmbedder
    Embedder backed by an OpenAI-compatible HTTP API via LlamaIndex.

Functions
---------
create_embedder
    Create an embedder implementation from a configuration mapping.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from llama_index.core.base.embeddings.base import BaseEmbedding as LlamaIndexBaseEmbedding


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    return bool(value)


class BaseEmbedder(ABC):
    """Abstract interface for text embedding.

    Concrete implementations wrap a LlamaIndex embedding model and expose the
    synchronous and asynchronous calls used by the retriever and by
    ingestion. Every vector an embedder returns has the same dimension.

    Attributes
    ----------
    dimension : int or None
        Configured embedding dimension, if known. Used to validate vectors.
    """

    dimension: Optional[int] = None

    @abstractmethod
    def get_embedder(self) -> LlamaIndexBaseEmbedding:
        """Return the underlying LlamaIndex embedding instance."""

    @classmethod
    @abstractmethod
    def from_config_dict(cls, config: Dict[str, Any]) -> "BaseEmbedder":
        """Create an embedder from a configuration mapping.

        Raises
        ------
        KeyError
            If required configuration keys are missing.
        """

    def _check(self, vector: list[float]) -> list[float]:
        if self.dimension is not None and len(vector) != self.dimension:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )
        return vector

    def embed_query(self, query: str) -> list[float]:
        """Embed a single query string."""
        return self._check(self.get_embedder().get_query_embedding(query))

    def embed_documents(self, documents: list[str]) -> list[list[float]]:
        """Embed a batch of document texts."""
        vectors = self.get_embedder().get_text_embedding_batch(documents)
        return [self._check(v) for v in vectors]

    async def aembed_query(self, query: str) -> list[float]:
        """Asynchronously embed a single query string."""
        return self._check(await self.get_embedder().aget_query_embedding(query))

    async def aembed_document(self, text: str) -> list[float]:
        """Asynchronously embed a single document text."""
        return self._check(await self.get_embedder().aget_text_embedding(text))

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        """Asynchronously embed a batch of document texts."""
        vectors = await self.get_embedder().aget_text_embedding_batch(texts)
        return [self._check(v) for v in vectors]


class HuggingFaceEmbedder(BaseEmbedder):
    """Embedder backed by a Hugging Face SentenceTransformer via LlamaIndex.

    Parameters
    ----------
    model_name : str
        Name or path of the embedding model.
    device : str, optional
        Device identifier (e.g., ``"cuda"``, ``"cpu"``). Defaults to ``"cpu"``.
    trust_remote_code : bool, optional
        Whether to allow custom model code from the Hugging Face Hub.
    dimension : int or None, optional
        Expected embedding dimension.
    model_kwargs : dict[str, Any] or None, optional
        Additional keyword arguments forwarded to the underlying embedder.
    """

    def __init__(
            self,
            model_name: str,
            *,
            device: str = "cpu",
            trust_remote_code: bool = False,
            dimension: Optional[int] = None,
            model_kwargs: dict[str, Any] = None,
        ):
        from llama_index.embeddings.huggingface import HuggingFaceEmbedding

        self.dimension = dimension
        self.embedder = HuggingFaceEmbedding(
            model_name=model_name,
            trust_remote_code=trust_remote_code,
            device=device,
            model_kwargs=model_kwargs or {},
        )

    def get_embedder(self) -> LlamaIndexBaseEmbedding:
        return self.embedder

    @classmethod
    def from_config_dict(cls, config: Dict[str, Any]) -> "HuggingFaceEmbedder":
        dimension = config.get("dimension")
        return cls(
            model_name=config["model_name"],
            device=config.get("device", "cpu"),
            trust_remote_code=_as_bool(config.get("trust_remote_code"), False),
            dimension=int(dimension) if dimension is not None else None,
            model_kwargs=config.get("model_kwargs", {}),
        )


class OpenAILikeEmbedder(BaseEmbedder):
    """Embedder backed by an OpenAI-compatible embedding API via LlamaIndex.

    Parameters
    ----------
    model_name : str
        Model identifier for the embedding endpoint
        (e.g. ``"text-embedding-3-small"``).
    api_base : str or None
        Base URL for the OpenAI-compatible embedding API endpoint.
    api_key : str or None, optional
        API key.
    dimension : int or None, optional
        Expected embedding dimension (``1536`` for ``text-embedding-3-small``).
    model_kwargs : dict[str, Any] or None, optional
        Additional keyword arguments forwarded to the underlying embedder.
    """

    def __init__(
            self,
            model_name: str,
            *,
            api_base: Optional[str] = None,
            api_key: Optional[str] = None,
            dimension: Optional[int] = None,
            model_kwargs: dict[str, Any] = None,
            timeout: float = 60.0,
            max_retries: int = 10,
            embed_batch_size: int = 10,
            num_workers: Optional[int] = None,
            reuse_client: bool = True,
        ):
        from llama_index.embeddings.openai_like import OpenAILikeEmbedding

        self.dimension = dimension
        kwargs: dict[str, Any] = dict(
            model_name=model_name,
            additional_kwargs=model_kwargs or {},
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
            embed_batch_size=embed_batch_size,
            num_workers=num_workers,
            reuse_client=reuse_client,
        )
        if api_base:
            kwargs["api_base"] = api_base
        self.embedder = OpenAILikeEmbedding(**kwargs)

    def get_embedder(self) -> LlamaIndexBaseEmbedding:
        return self.embedder

    @classmethod
    def from_config_dict(cls, config: Dict[str, Any]) -> "OpenAILikeEmbedder":
        dimension = config.get("dimension")
        return cls(
            model_name=config["model_name"],
            api_base=config.get("api_base"),
            api_key=config.get("api_key"),
            dimension=int(dimension) if dimension is not None else None,
            model_kwargs=config.get("model_kwargs", {}),
            timeout=float(config.get("timeout", config.get("request_timeout", 60.0))),
            max_retries=int(config.get("max_retries", 10)),
            embed_batch_size=int(config.get("embed_batch_size", 10)),
            num_workers=config.get("num_workers"),
            reuse_client=_as_bool(config.get("reuse_client"), True),
        )


# ----------------- Factory helpers -----------------

def _get_embedder_kind(cfg: Mapping[str, Any]) -> str:
    """Return the first non-empty ``kind``/``type``/``provider``/``backend``/``impl`` value."""
    for key in ("kind", "type", "provider", "backend", "impl"):
        val = cfg.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return ""


def _normalize_embedder_kind(kind: str) -> str:
    """Normalise an embedder kind string (e.g. ``"OpenAILike"`` -> ``"openai_like"``)."""
    k = kind.strip()
    if not k:
        return ""

    out: list[str] = []
    prev = ""
    for ch in k:
        if prev and prev.islower() and ch.isupper():
            out.append("_")
        out.append(ch)
        prev = ch

    k2 = "".join(out).replace("-", "_").replace(" ", "_")
    while "__" in k2:
        k2 = k2.replace("__", "_")
    k2 = k2.lower()

    k2 = k2.replace("openailike", "openai_like")
    k2 = k2.replace("open_ailike", "openai_like")
    k2 = k2.replace("open_ai_like", "openai_like")
    k2 = k2.replace("hugging_face", "huggingface")
    return k2


def create_embedder(config: Mapping[str, Any]) -> BaseEmbedder:
    """Create an embedder implementation from a configuration mapping.

    The concrete implementation is selected by a discriminator field (one of
    ``kind``, ``type``, ``provider``, ``backend``, ``impl``). Without one,
    :class:`OpenAILikeEmbedder` is used.

    Raises
    ------
    TypeError
        If ``config`` is not a mapping.
    ValueError
        If the discriminator selects an unsupported implementation.
    """
    if not isinstance(config, Mapping):
        raise TypeError(f"create_embedder expected a mapping/dict, got {type(config)}")

    kind_raw = _get_embedder_kind(config)
    kind = _normalize_embedder_kind(kind_raw)

    registry: dict[str, type[BaseEmbedder]] = {
        "huggingface": HuggingFaceEmbedder,
        "hf": HuggingFaceEmbedder,
        "openai_like": OpenAILikeEmbedder,
        "openai": OpenAILikeEmbedder,
    }

    cls = registry.get(kind) if kind else OpenAILikeEmbedder
    if cls is None:
        raise ValueError(
            f"Unknown embedder kind '{kind_raw}' (normalized to '{kind}'). "
            f"Supported kinds: {sorted(registry.keys())}."
        )
    return cls.from_config_dict(dict(config))


__all__ = [
    "BaseEmbedder",
    "HuggingFaceEmbedder",
    "OpenAILikeEmbedder",
    "create_embedder",
]
