import asyncio

import pytest
from llama_index.core.embeddings import MockEmbedding

from scholar_rag.retrieval.embedder import BaseEmbedder, _normalize_embedder_kind


class MockBackedEmbedder(BaseEmbedder):
    """Embedder over LlamaIndex's constant-vector mock model."""

    def __init__(self, embed_dim: int, dimension=None):
        self.embedder = MockEmbedding(embed_dim=embed_dim)
        self.dimension = dimension

    def get_embedder(self):
        return self.embedder

    @classmethod
    def from_config_dict(cls, config):
        return cls(embed_dim=int(config["embed_dim"]), dimension=config.get("dimension"))


def test_sync_query_and_document_embedding():
    embedder = MockBackedEmbedder.from_config_dict({"embed_dim": 4, "dimension": 4})

    query = embedder.embed_query("what is osmosis")
    documents = embedder.embed_documents(["water moves", "across membranes"])

    assert query == [0.5] * 4
    assert documents == [[0.5] * 4, [0.5] * 4]


def test_async_embedding_matches_sync():
    embedder = MockBackedEmbedder(embed_dim=3)

    assert asyncio.run(embedder.aembed_query("cells")) == embedder.embed_query("cells")
    assert asyncio.run(embedder.aembed_documents(["a", "b"])) == embedder.embed_documents(["a", "b"])


def test_dimension_mismatch_is_rejected():
    embedder = MockBackedEmbedder(embed_dim=3, dimension=8)

    with pytest.raises(ValueError):
        embedder.embed_query("cells")
    with pytest.raises(ValueError):
        embedder.embed_documents(["cells"])


@pytest.mark.parametrize(
    "raw, expected",
    [("HuggingFace", "huggingface"), ("openai-like", "openai_like"), ("OpenAILike", "openai_like")],
)
def test_kind_normalisation(raw, expected):
    assert _normalize_embedder_kind(raw) == expected
