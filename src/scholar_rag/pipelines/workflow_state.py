"""scholar_rag.pipelines.workflow_state

State and transitions of the self-refining answer workflow.

A run cycles ``REFINE -> RETRIEVE -> GENERATE -> EVALUATE`` and then either
loops back to ``REFINE`` or finishes in ``DONE``. The transition function
:func:`next_stage` is pure: it looks only at the state and the policy, so the
loop in :mod:`scholar_rag.pipelines.rag_workflow` stays a plain dispatcher.

Classes
-------
Stage
    Workflow stages.
WorkflowPolicy
    Quality threshold and refinement cap.
WorkflowState
    Everything a run accumulates.

Functions
---------
next_stage
    Transition function.
should_refine
    Whether an evaluated state loops back to ``REFINE``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from langchain_core.messages import BaseMessage
from llama_index.core.schema import NodeWithScore

from scholar_rag.common.modes import ResponseMode
from scholar_rag.common.schemas import UserRole
from scholar_rag.evaluation.self_evaluator import EvaluationResult


class Stage(str, Enum):
    REFINE = "refine"
    RETRIEVE = "retrieve"
    GENERATE = "generate"
    EVALUATE = "evaluate"
    DONE = "done"


@dataclass(frozen=True)
class WorkflowPolicy:
    """Loop policy.

    Attributes
    ----------
    quality_threshold : float
        Evaluation score at or above which an answer is accepted.
    max_refinement_attempts : int
        Maximum number of times ``REFINE`` executes in one run.
    """
    quality_threshold: float = 0.7
    max_refinement_attempts: int = 3

    @classmethod
    def from_config_dict(cls, config: dict) -> "WorkflowPolicy":
        return cls(
            quality_threshold=float(config.get("quality_threshold", 0.7)),
            max_refinement_attempts=int(config.get("max_refinement_attempts", 3)),
        )


@dataclass
class WorkflowState:
    """Mutable record of a single workflow run.

    ``attempts`` counts executions of ``REFINE``; it never decreases.
    ``messages`` and ``token_usage`` accumulate over every cycle.
    """
    query: str
    user_id: str
    role: UserRole
    mode: ResponseMode
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    history: list[BaseMessage] = field(default_factory=list)

    stage: Stage = Stage.REFINE
    refined_query: str = ""
    nodes: list[NodeWithScore] = field(default_factory=list)
    answer: str = ""
    confidence: float = 0.0
    sources: list[str] = field(default_factory=list)
    structured: Optional[dict[str, Any]] = None
    attempts: int = 0
    evaluation: Optional[EvaluationResult] = None
    messages: list[BaseMessage] = field(default_factory=list)
    token_usage: int = 0
    error: Optional[str] = None

    @property
    def active_query(self) -> str:
        return self.refined_query or self.query

    @property
    def evaluation_score(self) -> Optional[float]:
        return self.evaluation.score if self.evaluation is not None else None


def should_refine(state: WorkflowState, policy: WorkflowPolicy) -> bool:
    """True when the answer is below threshold, attempts remain and documents were found."""
    score = state.evaluation_score
    return (
        score is not None
        and score < policy.quality_threshold
        and state.attempts < policy.max_refinement_attempts
        and len(state.nodes) > 0
    )


def next_stage(state: WorkflowState, policy: WorkflowPolicy) -> Stage:
    """Return the stage that follows ``state.stage``.

    A recorded ``error`` ends the run from any stage.
    """
    if state.error is not None or state.stage is Stage.DONE:
        return Stage.DONE
    if state.stage is Stage.REFINE:
        return Stage.RETRIEVE
    if state.stage is Stage.RETRIEVE:
        return Stage.GENERATE
    if state.stage is Stage.GENERATE:
        return Stage.EVALUATE
    if state.stage is Stage.EVALUATE:
        return Stage.REFINE if should_refine(state, policy) else Stage.DONE
    raise ValueError(f"Unhandled workflow stage: {state.stage!r}")


__all__ = ["Stage", "WorkflowPolicy", "WorkflowState", "next_stage", "should_refine"]
