import re
import zlib

import pytest
from llama_index.core.schema import NodeWithScore, TextNode

from scholar_rag.app.container import build_container
from scholar_rag.common.modes import ModelProfile
from scholar_rag.config import GlobalConfig
from scholar_rag.generation.prompt_builder import default_prompt_builder
from scholar_rag.storage.record_store import InMemoryRecordStore


class HashingEmbedder:
    """
    Deterministic bag-of-words embedder for tests.

    Each lower-cased word increments one of ``dimension`` buckets chosen by
    its CRC32. Explicit vectors can be pinned for exact texts via ``vectors``.
    """

    def __init__(self, dimension: int = 32, vectors=None, fail_on=None):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.fail_on = fail_on
        self.query_calls = []
        self.document_calls = []

    def _vector(self, text: str):
        if text in self.vectors:
            return list(self.vectors[text])
        vec = [0.0] * self.dimension
        for word in re.findall(r"[a-z0-9]+", (text or "").lower()):
            vec[zlib.crc32(word.encode("utf-8")) % self.dimension] += 1.0
        return vec

    async def aembed_query(self, query: str):
        self.query_calls.append(query)
        return self._vector(query)

    async def aembed_document(self, text: str):
        self.document_calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding service unavailable")
        return self._vector(text)


class ScriptedLLM:
    """
    Completion stub returning queued responses in order.

    A queued exception instance is raised instead of returned. Once the
    queue is empty ``default`` is used for every call.
    """

    def __init__(self, responses=None, default: str = ""):
        self.responses = list(responses or [])
        self.default = default
        self.prompts = []

    def _next(self):
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, BaseException):
            raise item
        return item

    async def acomplete(self, prompt: str, **kwargs):
        self.prompts.append(prompt)
        return self._next()

    async def astream(self, prompt: str, **kwargs):
        self.prompts.append(prompt)
        text = self._next()
        for piece in re.findall(r"\S+\s*", text):
            yield piece


def _make_node(text: str, score: float, title: str = "Biology Notes", **metadata) -> NodeWithScore:
    meta = {"document_title": title, **metadata}
    return NodeWithScore(node=TextNode(text=text, metadata=meta), score=score)


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def prompt_builder():
    return default_prompt_builder()


@pytest.fixture
def hashing_embedder():
    return HashingEmbedder


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def make_node():
    return _make_node


@pytest.fixture
def make_container(store):
    """
    Build a container around in-memory components.

    ``answer``, ``refined`` and ``verdict`` become the default outputs of the
    generator, refiner and evaluator models.
    """

    def factory(answer="An answer.", refined="refined query", verdict='{"score": 1.0, "feedback": "ok"}', **raw):
        generator = ScriptedLLM(default=answer)
        return build_container(
            GlobalConfig(raw),
            record_store=store,
            embedder=HashingEmbedder(),
            generator_llms={ModelProfile.PRECISE: generator, ModelProfile.CREATIVE: generator},
            refiner_llm=ScriptedLLM(default=refined),
            evaluator_llm=ScriptedLLM(default=verdict),
        )

    return factory
