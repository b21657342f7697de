"""scholar_rag.generation.prompt_builder

Prompt template definitions and rendering utilities.

This module provides lightweight abstractions for defining, registering,
and rendering named prompt templates used by the answer generator, the query
refiner and the self-evaluator. Templates support an optional system block,
few-shot examples, and a user block, and are rendered using Jinja2.

Templates are registered from JSON sources; a source is either
``pkg:<package>:<resource>`` (a packaged resource), ``file:<path>``, or a
plain filesystem path.

Classes
-------
PromptTemplate
    Represents a single named prompt template.
PromptBuilder
    Registry and factory for prompt templates.
"""
from typing import Optional, List, Dict, Any, Iterable, Union
from pathlib import Path
import json
from jinja2 import Environment, StrictUndefined
import warnings
from importlib import resources

_ENV = Environment(undefined=StrictUndefined, keep_trailing_newline=False, autoescape=False)


class PromptTemplate:
    """Represents a single named prompt template.

    Parameters
    ----------
    name : str
        Name of the template.
    system : str or None, optional
        System-level instructions for the template.
    few_shot : list[dict[str, str]] or None, optional
        Few-shot examples. Each entry is expected to contain a ``"content"`` key.
    user : str, optional
        User instruction part of the template.

    Notes
    -----
    Rendering is strict: a placeholder without a value raises
    :class:`jinja2.UndefinedError` instead of silently rendering empty.
    """

    def __init__(self,
                 name: str,
                 system: Optional[str] = None,
                 few_shot: Optional[List[Dict[str, str]]] = None,
                 user: Optional[str] = ''
        ):
        self.name = name
        self.system = system
        self.few_shot = few_shot or []
        self.user = user
        self._compiled = _ENV.from_string(self._source())

    def _source(self) -> str:
        parts = []
        if self.system:
            parts.append(self.system)
        for example in self.few_shot:
            parts.append(example.get('content', ''))
        if self.user:
            parts.append(self.user)
        return "\n".join(parts)

    def render(self, **kwargs) -> str:
        """Render the full prompt by filling in placeholders.

        The system block, few-shot examples (in order), and user block are
        joined with newlines before rendering.
        """
        return self._compiled.render(**kwargs)


class PromptBuilder:
    """Registry and factory for prompt templates."""

    def __init__(self):
        self.templates: Dict[str, PromptTemplate] = {}

    @classmethod
    def from_sources(cls, sources: Iterable[str], base_dir: Optional[Path] = None) -> "PromptBuilder":
        """Create a builder and register every source in order.

        Later sources override templates of the same name from earlier ones.
        """
        builder = cls()
        for source in sources:
            builder.register_from_source(source, base_dir=base_dir)
        return builder

    def register_from_dict(self, data: Dict[str, Any]) -> str:
        """Register a new template from a dictionary.

        Parameters
        ----------
        data : dict[str, Any]
            Mapping with ``"name"`` and optional ``"system"``, ``"few_shot"``
            and ``"user"`` keys.

        Returns
        -------
        str
            Name of the registered template.

        Raises
        ------
        KeyError
            If ``"name"`` is missing from ``data``.
        TypeError
            If fields are of invalid types.
        ValueError
            If ``"name"`` is empty.
        """
        if "name" not in data:
            raise KeyError("Template definition missing required key: 'name'")
        name = data["name"]
        if not isinstance(name, str):
            raise TypeError(f"Template 'name' must be a str, got {type(name)!r}")
        if not name.strip():
            raise ValueError("Template 'name' must be a non-empty string")

        few_shot = data.get("few_shot")
        if few_shot is not None and not isinstance(few_shot, list):
            raise TypeError(f"Template 'few_shot' must be a list or None, got {type(few_shot)!r}")

        template = PromptTemplate(
            name=name,
            system=data.get("system"),
            few_shot=few_shot,
            user=data.get("user") or "",
        )
        if name in self.templates:
            warnings.warn(f"Overwriting existing prompt template: {name}", UserWarning)
        self.templates[name] = template
        return name

    def _register_payload(self, data: Any, origin: str) -> List[str]:
        if isinstance(data, dict):
            return [self.register_from_dict(data)]
        if isinstance(data, list):
            registered: List[str] = []
            for item in data:
                if not isinstance(item, dict):
                    raise TypeError(f"Template list items must be dicts, got {type(item)!r}")
                registered.append(self.register_from_dict(item))
            return registered
        raise TypeError(f"{origin} must contain an object or list of objects, got {type(data)!r}")

    def register_from_file(self, path: Union[Path, str], base_dir: Optional[Path] = None) -> List[str]:
        """Load and register templates from a JSON file.

        Raises
        ------
        FileNotFoundError
            If the file does not exist.
        ValueError
            If the file extension is not supported.
        """
        p = Path(path)
        if not p.is_absolute() and base_dir is not None:
            p = Path(base_dir) / p
        p = p.resolve()
        if not p.exists():
            raise FileNotFoundError(f"Prompt file not found: {p}")
        if p.suffix.lower() != ".json":
            raise ValueError(f"Unsupported file type: {p.suffix}")

        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return self._register_payload(data, f"Prompt file {p}")

    def register_from_package(self, package: str, resource_path: str) -> List[str]:
        """Load and register templates from a JSON resource bundled in a package.

        Raises
        ------
        FileNotFoundError
            If the resource does not exist.
        ValueError
            If the resource extension is not supported.
        """
        if not resource_path.lower().endswith(".json"):
            raise ValueError(f"Unsupported resource type: {resource_path}")

        try:
            res = resources.files(package).joinpath(resource_path)
        except ModuleNotFoundError as e:
            raise FileNotFoundError(f"Could not locate resource '{resource_path}' in package '{package}'") from e

        if not res.is_file():
            raise FileNotFoundError(f"Prompt resource not found: pkg:{package}:{resource_path}")

        data = json.loads(res.read_text(encoding="utf-8"))
        return self._register_payload(data, f"Prompt resource pkg:{package}:{resource_path}")

    def register_from_source(self, source: str, base_dir: Optional[Path] = None) -> List[str]:
        """Register templates from a source spec.

        Supported formats are ``pkg:<package>:<resource_path>``,
        ``file:<path>`` and a plain filesystem path.
        """
        if not isinstance(source, str):
            raise TypeError(f"source must be a str, got {type(source)!r}")

        if source.startswith("pkg:"):
            rest = source[len("pkg:"):]
            if ":" not in rest:
                raise ValueError("pkg: sources must be of the form 'pkg:<package>:<resource_path>'")
            package, resource_path = rest.split(":", 1)
            return self.register_from_package(package.strip(), resource_path.strip())

        if source.startswith("file:"):
            path_str = source[len("file:"):].strip()
            return self.register_from_file(Path(path_str), base_dir=base_dir)

        return self.register_from_file(Path(source), base_dir=base_dir)

    def list_prompts(self) -> List[str]:
        """Return a sorted list of registered prompt template names."""
        return sorted(self.templates.keys())

    def has_prompt(self, name: str) -> bool:
        return name in self.templates

    def get_template(self, name: str) -> PromptTemplate:
        """Get a registered PromptTemplate by name.

        Raises
        ------
        KeyError
            If no template is registered under ``name``.
        """
        if name not in self.templates:
            available = ", ".join(self.list_prompts())
            raise KeyError(f"No template registered under name: {name}. Available: [{available}]")
        return self.templates[name]

    def build(self, name: str, **kwargs) -> str:
        """Build and render a prompt by template name."""
        return self.get_template(name).render(**kwargs)


DEFAULT_PROMPT_SOURCE = "pkg:scholar_rag.prompts:default.json"


def default_prompt_builder() -> PromptBuilder:
    """Return a builder with the packaged default templates registered."""
    return PromptBuilder.from_sources([DEFAULT_PROMPT_SOURCE])
