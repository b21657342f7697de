"""scholar_rag.app.container

Composition root for the answering workflow.

This module is the single place where concrete implementations are wired
together from configuration (LLM clients, embedder, record store, vector
index, retriever, refiner, generator, evaluator, workflow and service).
Components are constructed lazily and cached on first access to avoid
repeated expensive initialisation.

Notes
-----
- Keep this module importable with minimal side effects:
  - do not perform network calls at import time
  - do not read files at import time
  - construct expensive objects lazily (cached on first access)

- Components that tests or scripts want to substitute (record store,
  embedder, completion models) can be passed to :func:`build_container` as
  overrides; everything downstream is wired around them.

Examples
--------
>>> from scholar_rag.config import GlobalConfig
>>> from scholar_rag.app.container import build_container
>>> cfg = GlobalConfig.load("config.yaml")
>>> c = build_container(cfg)
>>> response = await c.service.run_workflow("What is photosynthesis?", user_id="u1")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Mapping

from scholar_rag.common.modes import ModelProfile


@dataclass(frozen=True)
class ScholarContainer:
    """Holds the configured, cached runtime components for the application.

    Parameters
    ----------
    config : Any
        Loaded global configuration object (typically :class:`scholar_rag.config.GlobalConfig`).
    overrides : dict[str, Any], optional
        Pre-built components keyed by accessor name (``record_store``,
        ``embedder``, ``generator_llms``, ``refiner_llm``, ``evaluator_llm``).
    """

    config: Any
    overrides: dict[str, Any] = field(default_factory=dict)

    def _override(self, name: str) -> Any:
        return self.overrides.get(name)

    @cached_property
    def generator_llms(self) -> dict[ModelProfile, Any]:
        """Return the precise and creative answer-generation models."""
        if self._override("generator_llms") is not None:
            return dict(self._override("generator_llms"))

        from scholar_rag.generation.llm_interface import create_llm

        section = _as_mapping(self.config.generator_llm)
        return {
            ModelProfile.PRECISE: create_llm(dict(section["precise"])),
            ModelProfile.CREATIVE: create_llm(dict(section["creative"])),
        }

    @cached_property
    def refiner_llm(self) -> Any:
        """Return the LLM used to rewrite queries."""
        if self._override("refiner_llm") is not None:
            return self._override("refiner_llm")

        from scholar_rag.generation.llm_interface import create_llm

        return create_llm(dict(_as_mapping(self.config.refiner_llm)))

    @cached_property
    def evaluator_llm(self) -> Any:
        """Return the LLM used for self-evaluation."""
        if self._override("evaluator_llm") is not None:
            return self._override("evaluator_llm")

        from scholar_rag.generation.llm_interface import create_llm

        return create_llm(dict(_as_mapping(self.config.evaluator_llm)))

    @cached_property
    def prompt_builder(self) -> Any:
        """Return the prompt builder initialised from ``config.prompts``.

        Prompt file sources are resolved relative to the loaded config file
        directory (when available), not the current working directory.
        """
        from scholar_rag.generation.prompt_builder import DEFAULT_PROMPT_SOURCE, PromptBuilder

        prompts = getattr(self.config, "prompts", None) or DEFAULT_PROMPT_SOURCE
        if isinstance(prompts, str):
            sources = [prompts]
        elif isinstance(prompts, (list, tuple)):
            sources = [str(p) for p in prompts]
        else:
            raise TypeError(f"config.prompts must be a str or list[str], got {type(prompts)!r}")

        return PromptBuilder.from_sources(sources, base_dir=getattr(self.config, "base_dir", None))

    @cached_property
    def token_counter(self) -> Any:
        """Return the token counter used for token-usage accounting."""
        from scholar_rag.common.tokenisation import create_token_counter

        return create_token_counter(_as_mapping(getattr(self.config, "tokenization", {}) or {}))

    @cached_property
    def record_store(self) -> Any:
        if self._override("record_store") is not None:
            return self._override("record_store")

        from scholar_rag.storage.record_store import create_record_store

        return create_record_store(_as_mapping(getattr(self.config, "record_store", {}) or {}))

    @cached_property
    def analytics(self) -> Any:
        from scholar_rag.common.analytics import AnalyticsLogger

        return AnalyticsLogger(self.record_store)

    @cached_property
    def embedder(self) -> Any:
        """Return the embedding model wrapper."""
        if self._override("embedder") is not None:
            return self._override("embedder")

        from scholar_rag.retrieval.embedder import create_embedder

        return create_embedder(_as_mapping(self.config.embedder))

    @cached_property
    def vector_store(self) -> Any:
        """Return the vector index (record-store backed or Qdrant)."""
        from scholar_rag.retrieval.vector_store import create_vector_store

        section = dict(_as_mapping(self.config.vector_store))
        section.setdefault("candidate_limit", _as_mapping(self.config.retriever).get("candidate_limit", 100))
        return create_vector_store(
            section,
            store=self.record_store,
            dimension=getattr(self.embedder, "dimension", None),
        )

    @cached_property
    def retriever(self) -> Any:
        """Return the configured vector or hybrid retriever."""
        from scholar_rag.retrieval.retriever_factory import create

        section = _as_mapping(self.config.retriever)
        return create(
            kind=section.get("type") or "vector",
            embedder=self.embedder,
            vector_store=self.vector_store,
            top_k=section.get("top_k"),
            alpha=section.get("alpha", 0.7),
        )

    @cached_property
    def learner(self) -> Any:
        from scholar_rag.learning.refinement_learner import RefinementLearner

        return RefinementLearner(self.record_store)

    @cached_property
    def refiner(self) -> Any:
        from scholar_rag.learning.query_refiner import QueryRefiner

        return QueryRefiner(llm=self.refiner_llm, learner=self.learner, prompt_builder=self.prompt_builder)

    @cached_property
    def generator(self) -> Any:
        from scholar_rag.generation.answer_generator import AnswerGenerator

        wf = _as_mapping(self.config.workflow)
        return AnswerGenerator(
            llms=self.generator_llms,
            prompt_builder=self.prompt_builder,
            token_counter=self.token_counter,
            source_score_threshold=wf.get("source_score_threshold", 0.5),
            max_sources=wf.get("max_sources", 5),
            history_exchanges=wf.get("history_exchanges", 3),
        )

    @cached_property
    def evaluator(self) -> Any:
        from scholar_rag.evaluation.self_evaluator import SelfEvaluator

        return SelfEvaluator(llm=self.evaluator_llm, prompt_builder=self.prompt_builder)

    @cached_property
    def workflow(self) -> Any:
        """Return the fully wired answering workflow."""
        from scholar_rag.pipelines.rag_workflow import RAGWorkflow
        from scholar_rag.pipelines.workflow_state import WorkflowPolicy

        return RAGWorkflow(
            refiner=self.refiner,
            retriever=self.retriever,
            generator=self.generator,
            evaluator=self.evaluator,
            policy=WorkflowPolicy.from_config_dict(_as_mapping(self.config.workflow)),
            analytics=self.analytics,
        )

    @cached_property
    def ingestion(self) -> Any:
        from scholar_rag.pipelines.ingestion import IngestionPipeline
        from scholar_rag.retrieval.text_splitter import SentenceWindowSplitter

        chunking = _as_mapping(self.config.chunking)
        return IngestionPipeline(
            store=self.record_store,
            vector_store=self.vector_store,
            embedder=self.embedder,
            splitter=SentenceWindowSplitter.from_config_dict(dict(chunking)),
            strategy=chunking.get("strategy", "sentence"),
            embed_concurrency=_as_mapping(self.config.ingestion).get("embed_concurrency", 8),
        )

    @cached_property
    def service(self) -> Any:
        """Return the caller-facing service with the refinement feedback hook registered."""
        from scholar_rag.app.service import AssistantService
        from scholar_rag.learning.refinement_learner import RefinementFeedbackHook

        return AssistantService(
            store=self.record_store,
            workflow=self.workflow,
            ingestion=self.ingestion,
            analytics=self.analytics,
            feedback_hooks=[RefinementFeedbackHook(self.learner, self.record_store)],
        )


def build_container(config: Any, **overrides: Any) -> ScholarContainer:
    """Create a :class:`~scholar_rag.app.container.ScholarContainer`.

    Shared entry point for the FastAPI startup hook, CLI scripts and tests.

    Parameters
    ----------
    config : Any
        Loaded global configuration object (typically :class:`scholar_rag.config.GlobalConfig`).
    **overrides : Any
        Pre-built components, see :class:`ScholarContainer`.
    """
    return ScholarContainer(config=config, overrides=dict(overrides))


def _as_mapping(obj: Any) -> Mapping[str, Any]:
    """Coerce an object into a mapping.

    Raises
    ------
    TypeError
        If ``obj`` cannot be interpreted as a mapping.
    """
    if isinstance(obj, Mapping):
        return obj

    if hasattr(obj, "__dict__"):
        return dict(vars(obj))

    raise TypeError(f"Expected mapping type but got {type(obj)}")


__all__ = ["ScholarContainer", "build_container"]
