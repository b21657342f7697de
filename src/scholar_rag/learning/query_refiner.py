"""scholar_rag.learning.query_refiner

Query rewriting for the refinement loop.

On the first pass of a workflow the user's query is used as typed. On later
passes the refiner asks a language model to rewrite it, showing up to five
previously successful refinements for the same mode and subject as worked
examples and listing any subject abbreviations found in the query.
Abbreviations left in the rewrite are then expanded to their full terms.

Any failure (model error, empty output) falls back to the original query.
Every rewrite attempt is recorded through the
:class:`~scholar_rag.learning.refinement_learner.RefinementLearner`, including
fallbacks, so usage counts reflect what was actually searched for.

Classes
-------
Refinement
    Query chosen for one pass and whether the rewrite failed.
QueryRefiner
    Produces the query used for retrieval on each workflow pass.

Functions
---------
expand_subject_terminology
    Replace known subject abbreviations with their full terms.
detect_abbreviations
    Return the subject abbreviations present in a query.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from scholar_rag.common.modes import ResponseMode
from scholar_rag.common.schemas import RefinementRecord
from scholar_rag.generation.llm_interface import Completer
from scholar_rag.generation.prompt_builder import PromptBuilder
from scholar_rag.learning.refinement_learner import RefinementLearner

logger = logging.getLogger("scholar_rag.learning")

SUBJECT_TERMINOLOGY: dict[str, dict[str, str]] = {
    "math": {
        "eq": "equation",
        "sol": "solution",
        "deriv": "derivative",
        "integ": "integral",
        "trig": "trigonometry",
        "calc": "calculus",
        "geo": "geometry",
        "alg": "algebra",
    },
    "physics": {
        "vel": "velocity",
        "acc": "acceleration",
        "thermo": "thermodynamics",
        "mech": "mechanics",
        "elec": "electricity",
        "mag": "magnetism",
    },
    "chemistry": {
        "rxn": "reaction",
        "mol": "mole",
        "conc": "concentration",
        "eq": "equilibrium",
        "org": "organic",
        "inorg": "inorganic",
    },
}

NO_HISTORY_GUIDANCE = (
    "No historical data available. Use your best judgment based on the mode and subject."
)

_LABEL_RE = re.compile(r"^\s*refined\s+query\s*:\s*", re.IGNORECASE)
_QUOTES = "\"'`“”‘’"


def _terms(subject: Optional[str]) -> dict[str, str]:
    if not subject:
        return {}
    return SUBJECT_TERMINOLOGY.get(subject.strip().lower(), {})


def _word_re(abbreviation: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(abbreviation)}\b", re.IGNORECASE)


def detect_abbreviations(query: str, subject: Optional[str]) -> dict[str, str]:
    """Return ``{abbreviation: term}`` for subject abbreviations found in ``query``."""
    return {
        abbr: term for abbr, term in _terms(subject).items()
        if _word_re(abbr).search(query or "")
    }


def expand_subject_terminology(query: str, subject: Optional[str]) -> str:
    """Replace whole-word subject abbreviations in ``query``.

    Matching is case-insensitive for both the subject and the abbreviation;
    an unknown subject leaves the query unchanged.

    Examples
    --------
    >>> expand_subject_terminology("solve the eq", "Math")
    'solve the equation'
    """
    expanded = query
    for abbr, term in _terms(subject).items():
        expanded = _word_re(abbr).sub(term, expanded)
    return expanded


def clean_refined_output(text: str) -> str:
    """Strip a leading ``Refined Query:`` label and surrounding quotes."""
    cleaned = (text or "").strip()
    cleaned = _LABEL_RE.sub("", cleaned).strip()
    return cleaned.strip(_QUOTES).strip()


def format_examples(examples: Sequence[RefinementRecord]) -> str:
    if not examples:
        return NO_HISTORY_GUIDANCE
    lines = "\n".join(
        f'Original: "{r.original_query}" → Refined: "{r.refined_query}" '
        f"(Score: {r.improvement_score if r.improvement_score is not None else 0})"
        for r in examples
    )
    return f"Here are examples of successful refinements:\n{lines}\n\nFollow similar patterns."


@dataclass
class Refinement:
    """Query chosen for one pass.

    ``rewritten`` is False on the first pass, where the model is not
    consulted; ``error`` holds the reason a rewrite fell back.
    """
    query: str
    rewritten: bool = False
    error: Optional[str] = None


class QueryRefiner:
    """Rewrite queries using past successful refinements as examples.

    Parameters
    ----------
    llm : Completer
        Rewrite model.
    learner : RefinementLearner
        Source of historical examples and sink for new attempts.
    prompt_builder : PromptBuilder
        Registry holding the ``refine_query`` template.
    example_limit : int, optional
        Maximum number of historical examples shown. Defaults to ``5``.
    min_example_score : float, optional
        Minimum improvement score of an example. Defaults to ``0.7``.
    """

    def __init__(
            self,
            *,
            llm: Completer,
            learner: RefinementLearner,
            prompt_builder: PromptBuilder,
            example_limit: int = 5,
            min_example_score: float = 0.7,
        ):
        if not prompt_builder.has_prompt("refine_query"):
            raise KeyError("Prompt template 'refine_query' is not registered")
        self.llm = llm
        self.learner = learner
        self.prompt_builder = prompt_builder
        self.example_limit = int(example_limit)
        self.min_example_score = float(min_example_score)

    async def _rewrite(
            self,
            original_query: str,
            mode: ResponseMode,
            subject: Optional[str],
            attempt: int,
            grade_level: Optional[str],
        ) -> str:
        examples = await self.learner.successful_examples(
            mode, subject, min_score=self.min_example_score, limit=self.example_limit
        )
        expansions = ", ".join(
            f"{abbr} -> {term}" for abbr, term in detect_abbreviations(original_query, subject).items()
        )
        prompt = self.prompt_builder.build(
            "refine_query",
            mode=mode.value,
            subject=subject or "general",
            grade_level=grade_level,
            attempt=attempt,
            original_query=original_query,
            guidance=format_examples(examples),
            expansions=expansions,
        )
        refined = clean_refined_output(await self.llm.acomplete(prompt))
        if not refined:
            raise ValueError("Refinement model returned an empty query")
        return expand_subject_terminology(refined, subject)

    async def refine_with_status(
            self,
            original_query: str,
            mode: ResponseMode | str,
            subject: Optional[str] = None,
            attempt: int = 0,
            grade_level: Optional[str] = None,
        ) -> Refinement:
        """Return the query to retrieve with on pass ``attempt``.

        Parameters
        ----------
        original_query : str
            The query as typed by the user.
        mode : ResponseMode or str
            Response mode of the conversation.
        subject : str, optional
            Subject tag; also selects the abbreviation table.
        attempt : int, optional
            Zero-based pass number. Pass ``0`` returns ``original_query``
            without consulting the model.
        grade_level : str, optional
            Grade tag used to pitch the rewrite.

        Returns
        -------
        Refinement
            The refined query, or ``original_query`` with ``error`` set when
            the rewrite failed.
        """
        if attempt <= 0:
            return Refinement(query=original_query)

        mode = ResponseMode.parse(mode)
        error = None
        try:
            refined = await self._rewrite(original_query, mode, subject, attempt, grade_level)
        except Exception as exc:
            logger.warning("Query refinement failed on attempt %d, using original query: %s", attempt, exc)
            refined, error = original_query, str(exc)

        try:
            await self.learner.record_attempt(original_query, refined, mode, subject)
        except Exception as exc:
            logger.warning("Could not record refinement attempt: %s", exc)

        logger.info("Refined query (attempt %d): %r -> %r", attempt, original_query, refined)
        return Refinement(query=refined, rewritten=True, error=error)

    async def refine(
            self,
            original_query: str,
            mode: ResponseMode | str,
            subject: Optional[str] = None,
            attempt: int = 0,
            grade_level: Optional[str] = None,
        ) -> str:
        """Like :meth:`refine_with_status`, returning only the query text."""
        outcome = await self.refine_with_status(original_query, mode, subject, attempt, grade_level)
        return outcome.query


__all__ = [
    "QueryRefiner",
    "Refinement",
    "SUBJECT_TERMINOLOGY",
    "clean_refined_output",
    "detect_abbreviations",
    "expand_subject_terminology",
    "format_examples",
]
