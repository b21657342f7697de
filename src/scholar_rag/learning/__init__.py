"""scholar_rag.learning

Self-learning query refinement.

Modules
-------
query_refiner
    Rewrites queries using past successful refinements as examples.
refinement_learner
    Records refinement attempts and folds user feedback into their scores.
"""
from .query_refiner import QueryRefiner, Refinement, expand_subject_terminology
from .refinement_learner import FeedbackScorer, RefinementFeedbackHook, RefinementLearner

__all__ = [
    "QueryRefiner",
    "Refinement",
    "RefinementLearner",
    "RefinementFeedbackHook",
    "FeedbackScorer",
    "expand_subject_terminology",
]
