"""scholar_rag.generation.llm_interface

Unified interface and factory for large language model (LLM) backends.

This module defines a small, provider-agnostic abstraction for text
completion (one-shot and streaming) and concrete implementations backed by
LangChain OpenAI-compatible wrappers. A factory function is provided to
instantiate the appropriate LLM implementation from a configuration mapping.

Classes
-------
Completer
    Protocol for the completion capability consumed by the workflow.
BaseLLM
    Abstract interface implemented by the LangChain-backed wrappers.
OpenAILikeLLM
    Text completion using an OpenAI-compatible HTTP API via LangChain.
OpenAIChatLikeLLM
    Chat completions using an OpenAI-compatible HTTP API via LangChain.

Functions
---------
create_llm
    Construct an LLM implementation from a configuration mapping.
"""

from __future__ import annotations

import warnings
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Mapping, Optional, Protocol

from langchain_core.callbacks import BaseCallbackHandler
from langchain_openai import ChatOpenAI, OpenAI


def _is_gemini_openai_compat(api_base: str | None) -> bool:
    """Return ``True`` when the API base points to Gemini's OpenAI-compatible endpoint."""
    if not api_base:
        return False
    base = api_base.lower()
    return "generativelanguage.googleapis.com" in base and "/openai" in base


def _sanitize_openai_kwargs(
    api_base: str | None,
    kwargs: dict[str, Any],
    *,
    context: str,
) -> dict[str, Any]:
    """Drop provider-incompatible OpenAI kwargs for known OpenAI-compatible backends."""
    sanitized = dict(kwargs)

    if _is_gemini_openai_compat(api_base):
        unsupported_keys = {"frequency_penalty", "presence_penalty"}
        removed = sorted(k for k in unsupported_keys if k in sanitized)
        for key in removed:
            sanitized.pop(key, None)
        if removed:
            warnings.warn(
                "Dropping unsupported Gemini OpenAI-compatible params "
                f"during {context}: {', '.join(removed)}",
                UserWarning,
            )

    return sanitized


def _coerce_top_p(top_p: Any) -> Optional[float]:
    if top_p is None:
        return None
    try:
        value = float(top_p)
    except (TypeError, ValueError):
        return None
    return value if 0.0 < value < 1.0 else None


def _prompt_text(prompt: Any) -> str:
    if isinstance(prompt, str):
        return prompt
    return prompt.to_string() if hasattr(prompt, "to_string") else str(prompt)


def _content(response: Any) -> str:
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, list):
        # Chat models may return content parts.
        return "".join(p.get("text", "") if isinstance(p, dict) else str(p) for p in content)
    return "" if content is None else str(content)


class Completer(Protocol):
    """Completion capability: ``complete(prompt, temperature)`` and a stream."""

    async def acomplete(self, prompt: str, **kwargs: Any) -> str: ...

    def astream(self, prompt: str, **kwargs: Any) -> AsyncIterator[str]: ...


class BaseLLM(ABC):
    """Abstract interface for LLM text generation.

    Concrete implementations wrap provider-specific LangChain clients and
    expose a small, consistent API used by the answer generator, the query
    refiner and the self-evaluator. Errors from the provider propagate
    unchanged; callers translate them into the workflow's error taxonomy.
    """

    api_base: Optional[str] = None
    default_stop_list: Optional[list[str]] = None

    @classmethod
    @abstractmethod
    def from_config_dict(
            cls,
            config: dict,
            callback_manager: BaseCallbackHandler = None
        ) -> "BaseLLM":
        """Create an LLM instance from a configuration mapping.

        Raises
        ------
        ValueError
            If required configuration keys are missing or invalid.
        """

    def _run_kwargs(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        run_kwargs = _sanitize_openai_kwargs(self.api_base, kwargs, context="generation")
        explicit_stop = run_kwargs.pop("stop", None)
        alt_stop_list = run_kwargs.pop("stop_list", None)
        final_stop = explicit_stop or alt_stop_list or self.default_stop_list
        if final_stop:
            run_kwargs["stop"] = final_stop
        return run_kwargs

    @abstractmethod
    async def acomplete(self, prompt: str, **kwargs) -> str:
        """Asynchronously generate text for a single prompt.

        Parameters
        ----------
        prompt : str
            Prompt text to send to the model.
        **kwargs
            Per-call overrides such as ``temperature`` or ``stop``.
        """

    @abstractmethod
    def astream(self, prompt: str, **kwargs) -> AsyncIterator[str]:
        """Asynchronously yield text chunks as the model produces them."""


class OpenAILikeLLM(BaseLLM):
    """LLM interface using an OpenAI-compatible completions API.

    This implementation wraps :class:`langchain_openai.OpenAI`.

    Parameters
    ----------
    model_name : str
        Model identifier.
    api_base : str or None
        Base URL for the OpenAI-compatible API endpoint.
    api_key : str, optional
        API key value. Defaults to ``"fake"`` for local deployments that do
        not require authentication.
    callback_manager : BaseCallbackHandler, optional
        Optional callback handler for logging/telemetry/streaming.
    **model_kwargs : Any
        Forwarded to the LangChain wrapper (e.g. ``temperature``). A
        ``stop_list`` entry sets the default stop sequences.
    """

    def __init__(
        self,
        model_name: str,
        api_base: Optional[str] = None,
        api_key: str = "fake",
        callback_manager: BaseCallbackHandler = None,
        **model_kwargs: Any,
    ):
        self.api_base = api_base
        model_kwargs = _sanitize_openai_kwargs(api_base, model_kwargs, context="model init")
        self.model_kwargs = dict(model_kwargs)
        self.default_stop_list = model_kwargs.pop("stop_list", None)
        self.temperature = model_kwargs.get("temperature")

        top_p = _coerce_top_p(model_kwargs.pop("top_p", None))

        init_kwargs: dict[str, Any] = dict(
            model_name=model_name,
            openai_api_key=api_key,
            top_p=top_p or 1,
            **model_kwargs,
        )
        if api_base:
            init_kwargs["openai_api_base"] = api_base
        if callback_manager is not None:
            init_kwargs["callbacks"] = [callback_manager]
        self.llm = OpenAI(**init_kwargs)

    @classmethod
    def from_config_dict(
            cls,
            config: dict,
            callback_manager: BaseCallbackHandler = None
        ) -> "OpenAILikeLLM":
        model_name = config.get('model_name')
        if not model_name:
            raise ValueError("LLM config requires 'model_name'.")
        return cls(
            model_name=model_name,
            api_base=config.get('api_base'),
            api_key=config.get('api_key', None),
            callback_manager=callback_manager,
            **dict(config.get('model_kwargs') or {}),
        )

    async def acomplete(self, prompt: str, **kwargs) -> str:
        response = await self.llm.ainvoke(_prompt_text(prompt), **self._run_kwargs(kwargs))
        return _content(response)

    async def astream(self, prompt: str, **kwargs) -> AsyncIterator[str]:
        async for chunk in self.llm.astream(_prompt_text(prompt), **self._run_kwargs(kwargs)):
            text = _content(chunk)
            if text:
                yield text


class OpenAIChatLikeLLM(BaseLLM):
    """LLM interface using an OpenAI-compatible Chat Completions API via LangChain.

    This implementation wraps :class:`langchain_openai.ChatOpenAI`. Prompts
    are sent as a single user turn.
    """

    def __init__(
        self,
        model_name: str,
        api_base: Optional[str] = None,
        api_key: str = "fake",
        callback_manager: BaseCallbackHandler = None,
        **model_kwargs: Any,
    ):
        self.api_base = api_base
        model_kwargs = _sanitize_openai_kwargs(api_base, model_kwargs, context="model init")
        self.model_kwargs = dict(model_kwargs)
        self.default_stop_list = model_kwargs.pop("stop_list", None)
        self.temperature = model_kwargs.get("temperature")

        top_p = _coerce_top_p(model_kwargs.pop("top_p", None))

        init_kwargs: dict[str, Any] = dict(model_kwargs)
        init_kwargs["model"] = model_name
        if api_base:
            init_kwargs["base_url"] = api_base
        if api_key is not None:
            init_kwargs["api_key"] = api_key
        if top_p is not None:
            init_kwargs["top_p"] = top_p
        if callback_manager is not None:
            init_kwargs["callbacks"] = [callback_manager]

        self.llm = ChatOpenAI(**init_kwargs)

    @classmethod
    def from_config_dict(
        cls,
        config: dict,
        callback_manager: BaseCallbackHandler = None,
    ) -> "OpenAIChatLikeLLM":
        model_name = config.get('model_name')
        if not model_name:
            raise ValueError("LLM config requires 'model_name'.")
        return cls(
            model_name=model_name,
            api_base=config.get('api_base'),
            api_key=config.get('api_key', None),
            callback_manager=callback_manager,
            **dict(config.get('model_kwargs') or {}),
        )

    async def acomplete(self, prompt: str, **kwargs) -> str:
        response = await self.llm.ainvoke(_prompt_text(prompt), **self._run_kwargs(kwargs))
        return _content(response)

    async def astream(self, prompt: str, **kwargs) -> AsyncIterator[str]:
        async for chunk in self.llm.astream(_prompt_text(prompt), **self._run_kwargs(kwargs)):
            text = _content(chunk)
            if text:
                yield text


# ----------------- Factory helpers -----------------

def _get_llm_kind(cfg: Mapping[str, Any]) -> str:
    """Return the first non-empty ``kind``/``type``/``provider``/``backend``/``impl`` value."""
    for key in ("kind", "type", "provider", "backend", "impl"):
        val = cfg.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return ""


def _normalize_llm_kind(kind: str) -> str:
    """Normalise an LLM kind/type string to a stable registry key.

    The normalisation converts CamelCase to snake_case, replaces whitespace
    and hyphens with underscores, collapses repeated underscores and applies
    a small set of provider aliases (e.g. ``"ChatOpenAI"`` -> ``"openai_chat"``).
    """
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

    k2 = "".join(out)
    k2 = k2.replace("-", "_").replace(" ", "_")

    while "__" in k2:
        k2 = k2.replace("__", "_")

    k2 = k2.lower()

    k2 = k2.replace("openailike", "openai_like")
    k2 = k2.replace("open_ailike", "openai_like")
    k2 = k2.replace("open_ai_like", "openai_like")
    k2 = k2.replace("chat_open_ai", "openai_chat")
    k2 = k2.replace("chatopenai", "openai_chat")
    k2 = k2.replace("chat_openai", "openai_chat")
    k2 = k2.replace("openai_chatlike", "openai_chat")
    k2 = k2.replace("open_ai_chatlike", "openai_chat")
    k2 = k2.replace("openai_chat_like", "openai_chat")
    k2 = k2.replace("open_aichat_like", "openai_chat")
    k2 = k2.replace("open_ai_chat_like", "openai_chat")

    return k2


def create_llm(config: Mapping[str, Any], callback_manager: Optional[BaseCallbackHandler] = None) -> BaseLLM:
    """Create an LLM implementation from a configuration mapping.

    The concrete implementation is selected by a discriminator field in the
    configuration (one of: ``kind``, ``type``, ``provider``, ``backend``, or
    ``impl``).

    Raises
    ------
    TypeError
        If ``config`` is not a mapping.
    ValueError
        If the discriminator field is missing, or if the discriminator selects
        an unsupported implementation.
    """

    if not isinstance(config, Mapping):
        raise TypeError(f"create_llm expected a mapping/dict, got {type(config)}")

    kind_raw = _get_llm_kind(config)
    kind = _normalize_llm_kind(kind_raw)

    if not kind:
        raise ValueError(
            "LLM config is missing a discriminator field (type/kind/provider/etc.). "
            "Add e.g. type: OpenAIChatLike."
        )

    registry: dict[str, type[BaseLLM]] = {
        "openai_like": OpenAILikeLLM,
        "openai": OpenAIChatLikeLLM,
        "openai_chat": OpenAIChatLikeLLM,
        "openai_chatlike": OpenAIChatLikeLLM,
    }

    cls = registry.get(kind)
    if cls is None:
        raise ValueError(
            f"Unknown LLM kind '{kind_raw}' (normalized to '{kind}'). Supported kinds: {sorted(registry.keys())}."
        )

    return cls.from_config_dict(dict(config), callback_manager=callback_manager)


__all__ = [
    "Completer",
    "BaseLLM",
    "OpenAILikeLLM",
    "OpenAIChatLikeLLM",
    "create_llm",
]
