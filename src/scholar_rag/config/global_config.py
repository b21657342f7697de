"""scholar_rag.config.global_config

Global configuration loader and accessors.

This module defines a lightweight wrapper around a raw YAML configuration
dictionary, providing validated, cached access to the configuration sections
used by the answering workflow, the retrieval layer, and ingestion.

Environment variables of the form ``${VAR}`` are expanded recursively in all
string values at load time.

Classes
-------
GlobalConfig
    Loader and accessor for global project configuration.
"""

import os
import yaml
from pathlib import Path
from functools import cached_property
from typing import Any

def _expand_env(obj):
    """Recursively expand environment variables in a nested structure.

    This function walks nested dictionaries and lists and applies
    :func:`os.path.expandvars` to any string values, expanding patterns of the
    form ``${VAR}`` using the current process environment.

    Parameters
    ----------
    obj : Any
        Object to expand. Supported types are dictionaries, lists, and strings.
        Other types are returned unchanged.

    Returns
    -------
    Any
        A structure of the same shape as ``obj`` with environment variables
        expanded in all string values.
    """
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    if isinstance(obj, str):
        return os.path.expandvars(obj)
    return obj


def _section(raw: dict, name: str, *, required: bool = False) -> dict:
    """Return a mapping section from ``raw``, validating its type."""
    value = raw.get(name)
    if value is None:
        if required:
            raise KeyError(f"Missing '{name}' section in configuration.")
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"'{name}' must be a mapping, got {type(value)}.")
    return value


def _with_temperature(cfg: dict, temperature: float) -> dict:
    """Return a copy of an LLM config with ``model_kwargs.temperature`` defaulted."""
    out = dict(cfg)
    model_kwargs = dict(out.get("model_kwargs") or {})
    model_kwargs.setdefault("temperature", temperature)
    out["model_kwargs"] = model_kwargs
    return out


def _number(section: dict, key: str, default, cast, *, name: str):
    value = section.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}.{key}' must be a number, got {value!r}.") from exc


_WORKFLOW_DEFAULTS: dict[str, Any] = {
    "quality_threshold": 0.7,
    "max_refinement_attempts": 3,
    "source_score_threshold": 0.5,
    "max_sources": 5,
    "history_exchanges": 3,
}


class GlobalConfig:
    """Loader and accessor for global project configuration.

    This class wraps a raw configuration dictionary (typically loaded from YAML)
    and exposes validated, cached accessors for commonly used configuration
    sections.

    Parameters
    ----------
    raw : dict
        Raw configuration data as loaded from a YAML file.
    config_path : Path or None, optional
        Absolute path of the loaded file, used to resolve relative paths.
    """

    def __init__(
            self,
            raw: dict,
            config_path: Path | None = None,
        ):
        self.raw = raw or {}
        self.config_path = config_path

    @classmethod
    def load(
            cls,
            path: str | Path,
        ) -> "GlobalConfig":
        """Load configuration from a YAML file.

        Parameters
        ----------
        path : str or Path
            Path to the YAML configuration file.

        Returns
        -------
        GlobalConfig
            An instance initialised with the loaded and environment-expanded data.

        Notes
        -----
        All string values in the loaded YAML are processed with recursive
        environment-variable expansion (``${VAR}``) via :func:`os.path.expandvars`.
        """
        cfg_path = Path(path).expanduser().resolve()
        with cfg_path.open("r") as f:
            data = yaml.safe_load(f) or {}
        data = _expand_env(data)
        return cls(data, config_path=cfg_path)

    @property
    def base_dir(self) -> Path | None:
        """Directory of the loaded config file, if known."""
        if self.config_path is None:
            return None
        return Path(self.config_path).parent

    @cached_property
    def generator_llm(self) -> dict[str, dict]:
        """Return the precise and creative generator model configurations.

        The section may either define ``precise`` and ``creative`` sub-mappings
        or a single flat model config, in which case both variants share it and
        only differ in their default temperature.

        Returns
        -------
        dict[str, dict]
            Mapping with keys ``"precise"`` and ``"creative"``.

        Raises
        ------
        KeyError
            If ``generator_llm`` is missing.
        """
        section = _section(self.raw, "generator_llm", required=True)
        if "precise" in section or "creative" in section:
            base = {k: v for k, v in section.items() if k not in ("precise", "creative")}
            precise = {**base, **(section.get("precise") or {})}
            creative = {**base, **(section.get("creative") or {})}
        else:
            precise = dict(section)
            creative = dict(section)

        return {
            "precise": _with_temperature(precise, 0.2),
            "creative": _with_temperature(creative, 0.7),
        }

    @cached_property
    def refiner_llm(self) -> dict:
        """Return the query-refinement LLM configuration.

        Defaults to the precise generator model at temperature ``0.3``.
        """
        section = self.raw.get("refiner_llm")
        if section is None:
            base = {k: v for k, v in self.generator_llm["precise"].items() if k != "model_kwargs"}
            return _with_temperature(base, 0.3)
        if not isinstance(section, dict):
            raise TypeError("'refiner_llm' must be a mapping.")
        return _with_temperature(section, 0.3)

    @cached_property
    def evaluator_llm(self) -> dict:
        """Return the self-evaluation LLM configuration.

        Defaults to the precise generator model at temperature ``0.0``.
        """
        section = self.raw.get("evaluator_llm")
        if section is None:
            base = {k: v for k, v in self.generator_llm["precise"].items() if k != "model_kwargs"}
            return _with_temperature(base, 0.0)
        if not isinstance(section, dict):
            raise TypeError("'evaluator_llm' must be a mapping.")
        return _with_temperature(section, 0.0)

    @cached_property
    def embedder(self) -> dict:
        """Return the embedder configuration section.

        Raises
        ------
        KeyError
            If ``embedder`` is missing.
        """
        return _section(self.raw, "embedder", required=True)

    @cached_property
    def vector_store(self) -> dict:
        """Return the vector store configuration section.

        Defaults to the record-store backed index when not configured.
        """
        section = dict(_section(self.raw, "vector_store"))
        section.setdefault("type", "record_store")
        return section

    @cached_property
    def record_store(self) -> dict:
        """Return the record store configuration section, or an empty dict."""
        return _section(self.raw, "record_store")

    @cached_property
    def retriever(self) -> dict:
        """Return the retriever configuration with defaults applied.

        Returns
        -------
        dict
            Mapping with ``type``, ``top_k``, ``alpha`` and ``candidate_limit``.

        Raises
        ------
        ValueError
            If ``alpha`` lies outside ``[0, 1]`` or ``top_k`` is not positive.
        """
        section = _section(self.raw, "retriever")
        kind = str(section.get("type", "vector")).strip().lower()
        top_k = _number(section, "top_k", 5, int, name="retriever")
        alpha = _number(section, "alpha", 0.7, float, name="retriever")
        candidate_limit = _number(section, "candidate_limit", 100, int, name="retriever")

        if top_k <= 0:
            raise ValueError("'retriever.top_k' must be a positive integer.")
        if not 0.0 <= alpha <= 1.0:
            raise ValueError("'retriever.alpha' must lie in [0, 1].")

        return {
            "type": kind,
            "top_k": top_k,
            "alpha": alpha,
            "candidate_limit": candidate_limit,
        }

    @cached_property
    def chunking(self) -> dict:
        """Return chunking parameters with defaults applied.

        Raises
        ------
        ValueError
            If ``chunk_size`` is not positive or ``chunk_overlap`` is negative.
        """
        section = _section(self.raw, "chunking")
        chunk_size = _number(section, "chunk_size", 1000, int, name="chunking")
        chunk_overlap = _number(section, "chunk_overlap", 200, int, name="chunking")
        overlap_sentences = _number(section, "overlap_sentences", 2, int, name="chunking")
        strategy = str(section.get("strategy", "sentence")).strip().lower()

        if chunk_size <= 0:
            raise ValueError("'chunking.chunk_size' must be a positive integer.")
        if chunk_overlap < 0 or overlap_sentences < 0:
            raise ValueError("'chunking' overlap settings must be non-negative.")
        if strategy not in ("sentence", "semantic"):
            raise ValueError(f"'chunking.strategy' must be 'sentence' or 'semantic', got {strategy!r}.")

        return {
            "chunk_size": chunk_size,
            "chunk_overlap": chunk_overlap,
            "overlap_sentences": overlap_sentences,
            "strategy": strategy,
        }

    @cached_property
    def workflow(self) -> dict:
        """Return workflow policy settings with defaults applied."""
        section = _section(self.raw, "workflow")
        out = dict(_WORKFLOW_DEFAULTS)
        for key, default in _WORKFLOW_DEFAULTS.items():
            cast = float if isinstance(default, float) else int
            out[key] = _number(section, key, default, cast, name="workflow")

        if not 0.0 <= out["quality_threshold"] <= 1.0:
            raise ValueError("'workflow.quality_threshold' must lie in [0, 1].")
        if out["max_refinement_attempts"] < 0:
            raise ValueError("'workflow.max_refinement_attempts' must be non-negative.")
        return out

    @cached_property
    def ingestion(self) -> dict:
        """Return ingestion settings with defaults applied."""
        section = _section(self.raw, "ingestion")
        concurrency = _number(section, "embed_concurrency", 8, int, name="ingestion")
        if concurrency < 1:
            raise ValueError("'ingestion.embed_concurrency' must be >= 1.")
        return {"embed_concurrency": concurrency}

    @cached_property
    def tokenization(self) -> dict:
        """Return the tokenization section, or an empty dict."""
        return _section(self.raw, "tokenization")

    @cached_property
    def prompts(self):
        """Return the prompts configuration entry.

        Returns
        -------
        str or list[str]
            The ``prompts`` entry, which may be a single source or a list of
            sources. Defaults to the packaged prompt set.

        Notes
        -----
        This accessor returns the raw configured value without validation.
        """
        return self.raw.get("prompts", "pkg:scholar_rag.prompts:default.json")
