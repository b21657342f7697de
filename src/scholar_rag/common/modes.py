"""scholar_rag.common.modes

Response modes and the per-mode lookup tables derived from them.

Every site that behaves differently per mode (system prompt, model
configuration, instruction suffix, structured output schema) resolves through
:class:`ResponseMode`. :func:`exhaustive` guards the tables at import time so
that adding a mode without updating a table fails loudly instead of silently
falling through to a default.

Classes
-------
ResponseMode
    Closed enumeration of the six supported response modes.
ModelProfile
    Which generator configuration a mode uses.

Functions
---------
exhaustive
    Validate that a mapping covers every :class:`ResponseMode`.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, TypeVar

V = TypeVar("V")


class ResponseMode(str, Enum):
    """Response mode selected by the caller for a conversation."""

    RESEARCH = "research"
    MATH_SOLVER = "math_solver"
    PHYSICS_SOLVER = "physics_solver"
    CHEMISTRY_SOLVER = "chemistry_solver"
    QUIZ_CREATOR = "quiz_creator"
    EXAM_CREATOR = "exam_creator"

    @classmethod
    def parse(cls, value: "ResponseMode | str") -> "ResponseMode":
        """Coerce a mode name into a :class:`ResponseMode`.

        Accepts the canonical value (``"math_solver"``) as well as the short
        hyphenated aliases (``"math-solve"``, ``"quiz-create"``).

        Raises
        ------
        ValueError
            If ``value`` does not name a known mode.
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            known = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown response mode {value!r}. Known modes: {known}") from None

    @property
    def is_structured(self) -> bool:
        """True when the mode must produce a JSON payload."""
        return self in (ResponseMode.QUIZ_CREATOR, ResponseMode.EXAM_CREATOR)


class ModelProfile(str, Enum):
    """Generator model configuration variants."""

    PRECISE = "precise"
    CREATIVE = "creative"


_ALIASES: dict[str, ResponseMode] = {
    "math_solve": ResponseMode.MATH_SOLVER,
    "math": ResponseMode.MATH_SOLVER,
    "physics_solve": ResponseMode.PHYSICS_SOLVER,
    "physics": ResponseMode.PHYSICS_SOLVER,
    "chemistry_solve": ResponseMode.CHEMISTRY_SOLVER,
    "chemistry": ResponseMode.CHEMISTRY_SOLVER,
    "quiz_create": ResponseMode.QUIZ_CREATOR,
    "quiz": ResponseMode.QUIZ_CREATOR,
    "exam_create": ResponseMode.EXAM_CREATOR,
    "exam": ResponseMode.EXAM_CREATOR,
}


def exhaustive(table: Mapping[ResponseMode, V], name: str) -> dict[ResponseMode, V]:
    """Return ``table`` as a dict after checking it covers every mode.

    Parameters
    ----------
    table : Mapping[ResponseMode, V]
        Per-mode lookup table.
    name : str
        Table name used in the error message.

    Returns
    -------
    dict[ResponseMode, V]
        A copy of ``table``.

    Raises
    ------
    ValueError
        If any :class:`ResponseMode` member is missing from ``table``.
    """
    missing = [m.value for m in ResponseMode if m not in table]
    if missing:
        raise ValueError(f"{name} is missing entries for modes: {missing}")
    return dict(table)


MODEL_PROFILES = exhaustive(
    {
        ResponseMode.RESEARCH: ModelProfile.CREATIVE,
        ResponseMode.MATH_SOLVER: ModelProfile.PRECISE,
        ResponseMode.PHYSICS_SOLVER: ModelProfile.PRECISE,
        ResponseMode.CHEMISTRY_SOLVER: ModelProfile.PRECISE,
        ResponseMode.QUIZ_CREATOR: ModelProfile.CREATIVE,
        ResponseMode.EXAM_CREATOR: ModelProfile.CREATIVE,
    },
    "MODEL_PROFILES",
)


__all__ = ["ResponseMode", "ModelProfile", "MODEL_PROFILES", "exhaustive"]
