"""scholar_rag.learning.refinement_learner

Bookkeeping for learned query rewrites.

Every refinement the query refiner produces is stored as a
:class:`~scholar_rag.common.schemas.RefinementRecord` keyed by the
case-insensitive (original, refined) pair plus mode and subject. User feedback
on answers produced from a refined query is folded into the record's running
``improvement_score``; records scoring at least 0.7 become worked examples for
later refinements.

Classes
-------
RefinementLearner
    Records attempts, applies feedback and summarises effectiveness.
EffectivenessReport
    Summary returned by :meth:`RefinementLearner.analyze_effectiveness`.
FeedbackScorer
    Maps user feedback to an observed score in ``[0, 1]``.
RefinementFeedbackHook
    Feedback hook that updates the refinement behind an assistant message.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from scholar_rag.common.errors import RecordNotFoundError
from scholar_rag.common.modes import ResponseMode
from scholar_rag.common.schemas import FeedbackKind, FeedbackRecord, RefinementRecord
from scholar_rag.storage.record_store import RecordStore

logger = logging.getLogger("scholar_rag.learning")

SUCCESS_THRESHOLD = 0.7


def _mode_key(mode: ResponseMode | str) -> str:
    return ResponseMode.parse(mode).value


@dataclass
class EffectivenessReport:
    total_refinements: int
    average_score: float
    success_rate: float
    top_added_terms: list[tuple[str, int]] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


class RefinementLearner:
    """Persistence and scoring of refinement records.

    Parameters
    ----------
    store : RecordStore
        Record store holding the refinement history.
    analysis_limit : int, optional
        Maximum number of records inspected by :meth:`analyze_effectiveness`.
    """

    def __init__(self, store: RecordStore, *, analysis_limit: int = 100):
        self.store = store
        self.analysis_limit = int(analysis_limit)

    async def record_attempt(
            self,
            original_query: str,
            refined_query: str,
            mode: ResponseMode | str,
            subject: Optional[str] = None,
        ) -> RefinementRecord:
        """Insert a refinement or bump the usage of the matching one."""
        return await self.store.upsert_refinement(
            original_query, refined_query, _mode_key(mode), subject
        )

    async def successful_examples(
            self,
            mode: ResponseMode | str,
            subject: Optional[str] = None,
            *,
            min_score: float = SUCCESS_THRESHOLD,
            limit: int = 5,
        ) -> list[RefinementRecord]:
        """Return well-scored refinements, most used first."""
        return await self.store.find_refinements(
            mode=_mode_key(mode), subject=subject, min_score=min_score, limit=limit
        )

    async def apply_feedback(
            self,
            original_query: str,
            refined_query: str,
            mode: ResponseMode | str,
            subject: Optional[str],
            observed_score: float,
        ) -> RefinementRecord:
        """Fold ``observed_score`` into the record's running average.

        With ``n`` the usage count, the new score is
        ``(old * n + observed) / (n + 1)``; an unset score counts as ``0``.

        Raises
        ------
        RecordNotFoundError
            If no matching refinement was recorded.
        """
        record = await self.store.apply_refinement_score(
            original_query, refined_query, _mode_key(mode), subject, observed_score
        )
        logger.info(
            "Refinement score updated to %.3f (usage=%d) for %r",
            record.improvement_score, record.usage_count, refined_query,
        )
        return record

    async def analyze_effectiveness(
            self,
            mode: ResponseMode | str,
            subject: Optional[str] = None,
        ) -> EffectivenessReport:
        """Summarise how well refinements for ``mode``/``subject`` have performed.

        Top added terms are words longer than three characters that appear in
        the refined but not the original query of successful refinements
        (score above 0.7), ranked by frequency.
        """
        records = await self.store.find_refinements(
            mode=_mode_key(mode), subject=subject, limit=self.analysis_limit
        )
        if not records:
            return EffectivenessReport(total_refinements=0, average_score=0.0, success_rate=0.0)

        total = len(records)
        successful = [
            r for r in records
            if r.improvement_score is not None and r.improvement_score > SUCCESS_THRESHOLD
        ]

        added = Counter()
        for record in successful:
            original_words = set(record.original_query.lower().split())
            for word in set(record.refined_query.lower().split()):
                if word not in original_words and len(word) > 3:
                    added[word] += 1

        average_score = sum(r.improvement_score or 0.0 for r in records) / total
        success_rate = len(successful) / total
        avg_refined_length = sum(len(r.refined_query.split()) for r in records) / total

        recommendations = []
        if avg_refined_length < 5:
            recommendations.append("Consider adding more specific terms to queries")
        if success_rate < 0.5:
            recommendations.append("Query refinement strategy may need adjustment")

        return EffectivenessReport(
            total_refinements=total,
            average_score=average_score,
            success_rate=success_rate,
            top_added_terms=added.most_common(10),
            recommendations=recommendations,
        )


class FeedbackScorer:
    """Translate feedback into an observed score.

    Approvals score 1.0, rejections and corrections 0.0. Ratings above 1 are
    read as a five-point scale.
    """

    def score(self, kind: FeedbackKind | str, rating: Optional[float] = None) -> float:
        kind = FeedbackKind(kind)
        if kind is FeedbackKind.APPROVE:
            return 1.0
        if kind in (FeedbackKind.REJECT, FeedbackKind.CORRECTION):
            return 0.0
        if rating is None:
            raise ValueError("Rating feedback requires a rating value")
        value = float(rating)
        if value > 1:
            value /= 5.0
        return max(0.0, min(1.0, value))


class RefinementFeedbackHook:
    """Apply feedback on an assistant message to the refinement it used.

    The message metadata written by the assistant service carries
    ``original_query``, ``refined_query``, ``mode`` and ``subject``; feedback
    is applied only when the two queries differ.
    """

    def __init__(
            self,
            learner: RefinementLearner,
            store: RecordStore,
            scorer: Optional[FeedbackScorer] = None,
        ):
        self.learner = learner
        self.store = store
        self.scorer = scorer or FeedbackScorer()

    async def __call__(self, feedback: FeedbackRecord) -> Optional[RefinementRecord]:
        message = await self.store.get_message(feedback.message_id)
        meta = message.metadata or {}
        original = meta.get("original_query")
        refined = meta.get("refined_query")
        if not original or not refined or original.strip().lower() == refined.strip().lower():
            return None

        observed = self.scorer.score(feedback.kind, feedback.rating)
        try:
            return await self.learner.apply_feedback(
                original, refined, meta.get("mode") or ResponseMode.RESEARCH, meta.get("subject"), observed
            )
        except RecordNotFoundError as exc:
            logger.warning("No refinement to update for message %s: %s", feedback.message_id, exc)
            return None


__all__ = [
    "EffectivenessReport",
    "FeedbackScorer",
    "RefinementFeedbackHook",
    "RefinementLearner",
    "SUCCESS_THRESHOLD",
]
