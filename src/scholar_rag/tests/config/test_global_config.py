import textwrap

import pytest

from scholar_rag.config import GlobalConfig
from scholar_rag.generation.prompt_builder import PromptBuilder, default_prompt_builder
from scholar_rag.generation.llm_interface import _normalize_llm_kind, create_llm


def _write_config(tmp_path, body: str):
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_load_expands_environment_and_applies_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("SCHOLAR_TEST_KEY", "secret-key")
    path = _write_config(
        tmp_path,
        """
        generator_llm:
          type: openai_chat
          model_name: gpt-4o-mini
          api_key: ${SCHOLAR_TEST_KEY}
        embedder:
          type: openai_like
          model_name: text-embedding-3-small
        """,
    )

    cfg = GlobalConfig.load(path)

    assert cfg.base_dir == tmp_path.resolve()
    assert cfg.generator_llm["precise"]["api_key"] == "secret-key"
    assert cfg.generator_llm["precise"]["model_kwargs"]["temperature"] == 0.2
    assert cfg.generator_llm["creative"]["model_kwargs"]["temperature"] == 0.7
    assert cfg.refiner_llm["model_name"] == "gpt-4o-mini"
    assert cfg.refiner_llm["model_kwargs"]["temperature"] == 0.3
    assert cfg.evaluator_llm["model_kwargs"]["temperature"] == 0.0
    assert cfg.vector_store["type"] == "record_store"
    assert cfg.retriever == {"type": "vector", "top_k": 5, "alpha": 0.7, "candidate_limit": 100}
    assert cfg.chunking["chunk_size"] == 1000
    assert cfg.chunking["strategy"] == "sentence"
    assert cfg.workflow["quality_threshold"] == 0.7
    assert cfg.workflow["max_refinement_attempts"] == 3
    assert cfg.ingestion == {"embed_concurrency": 8}
    assert cfg.prompts == "pkg:scholar_rag.prompts:default.json"


def test_precise_and_creative_sections_override_shared_base():
    cfg = GlobalConfig(
        {
            "generator_llm": {
                "type": "openai_chat",
                "model_name": "base-model",
                "precise": {"model_name": "math-model", "model_kwargs": {"temperature": 0.1}},
                "creative": {},
            }
        }
    )

    assert cfg.generator_llm["precise"]["model_name"] == "math-model"
    assert cfg.generator_llm["precise"]["model_kwargs"]["temperature"] == 0.1
    assert cfg.generator_llm["creative"]["model_name"] == "base-model"
    assert cfg.generator_llm["creative"]["type"] == "openai_chat"


@pytest.mark.parametrize(
    "section, body",
    [
        ("retriever", {"alpha": 1.5}),
        ("retriever", {"top_k": 0}),
        ("chunking", {"chunk_size": 0}),
        ("chunking", {"strategy": "paragraph"}),
        ("workflow", {"quality_threshold": 2}),
        ("workflow", {"max_refinement_attempts": "many"}),
        ("ingestion", {"embed_concurrency": 0}),
    ],
)
def test_invalid_values_are_rejected(section, body):
    cfg = GlobalConfig({section: body})

    with pytest.raises(ValueError):
        getattr(cfg, section)


def test_missing_required_sections():
    cfg = GlobalConfig({})

    with pytest.raises(KeyError):
        cfg.generator_llm
    with pytest.raises(KeyError):
        cfg.embedder


def test_non_mapping_section_is_rejected():
    with pytest.raises(TypeError):
        GlobalConfig({"workflow": ["not", "a", "mapping"]}).workflow


def test_default_prompts_cover_every_template_used():
    builder = default_prompt_builder()

    for name in ("answer", "hint", "refine_query", "evaluate_answer", "evaluate_aspect",
                 "detect_hallucination", "select_best_answer", "system.research",
                 "instructions.exam_creator"):
        assert builder.has_prompt(name)


def test_prompt_rendering_is_strict(tmp_path):
    path = tmp_path / "extra.json"
    path.write_text('[{"name": "greet", "system": "Be kind.", "user": "Hello {{ who }}"}]', encoding="utf-8")
    builder = PromptBuilder.from_sources([f"file:{path.name}"], base_dir=tmp_path)

    assert builder.build("greet", who="class") == "Be kind.\nHello class"
    with pytest.raises(Exception):
        builder.build("greet")
    with pytest.raises(KeyError):
        builder.build("missing")


def test_prompt_sources_are_validated(tmp_path):
    builder = PromptBuilder()

    with pytest.raises(FileNotFoundError):
        builder.register_from_source("does-not-exist.json", base_dir=tmp_path)
    with pytest.raises(ValueError):
        builder.register_from_source("pkg:scholar_rag.prompts")
    with pytest.raises(KeyError):
        builder.register_from_dict({"user": "nameless"})


def test_llm_kind_normalisation_and_factory_errors():
    assert _normalize_llm_kind("ChatOpenAI") == "openai_chat"
    assert _normalize_llm_kind("OpenAIChatLike") == "openai_chat"
    assert _normalize_llm_kind("OpenAILike") == "openai_like"
    with pytest.raises(ValueError):
        create_llm({"model_name": "m"})
    with pytest.raises(ValueError):
        create_llm({"type": "anthropic", "model_name": "m"})
