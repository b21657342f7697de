import asyncio
import json

import pytest

from scholar_rag.common.analytics import AnalyticsLogger
from scholar_rag.common.errors import RetrievalError
from scholar_rag.common.modes import ModelProfile, ResponseMode
from scholar_rag.common.schemas import UserRole
from scholar_rag.evaluation.self_evaluator import EvaluationResult, SelfEvaluator, heuristic_evaluation
from scholar_rag.generation.answer_generator import AnswerGenerator
from scholar_rag.learning.query_refiner import QueryRefiner
from scholar_rag.learning.refinement_learner import RefinementLearner
from scholar_rag.pipelines.rag_workflow import APOLOGY, WORKFLOW_APOLOGY, RAGWorkflow
from scholar_rag.pipelines.workflow_state import (
    Stage,
    WorkflowPolicy,
    WorkflowState,
    next_stage,
    should_refine,
)

ANSWER = "Photosynthesis converts light energy into glucose inside chloroplasts."


class StaticRetriever:
    """
    Retriever stub returning the same nodes for every query.

    Queries and filters are recorded; ``error`` is raised instead when set.
    """

    def __init__(self, nodes=(), error=None):
        self.nodes = list(nodes)
        self.error = error
        self.queries = []
        self.filters = []

    async def aretrieve(self, query, filters=None, top_k=None):
        self.queries.append(query)
        self.filters.append(filters)
        if self.error is not None:
            raise self.error
        return list(self.nodes)


class BrokenEvaluator:
    """Evaluator whose every call raises."""

    async def aevaluate(self, query, answer, nodes, confidence):
        raise RuntimeError("evaluator crashed")


def _verdict(score):
    return json.dumps({"score": score, "feedback": f"scored {score}"})


def _workflow(
        store,
        prompt_builder,
        scripted_llm,
        *,
        retriever,
        verdicts=(),
        default_verdict=None,
        answers=(),
        answer=ANSWER,
        refined="photosynthesis light reactions in chloroplasts",
        evaluator=None,
        policy=None,
    ):
    learner = RefinementLearner(store)
    generator = AnswerGenerator(
        llms={
            ModelProfile.PRECISE: scripted_llm(responses=list(answers), default=answer),
            ModelProfile.CREATIVE: scripted_llm(responses=list(answers), default=answer),
        },
        prompt_builder=prompt_builder,
    )
    evaluator = evaluator or SelfEvaluator(
        llm=scripted_llm(responses=list(verdicts), default=default_verdict or _verdict(0.9)),
        prompt_builder=prompt_builder,
    )
    return RAGWorkflow(
        refiner=QueryRefiner(llm=scripted_llm(default=refined), learner=learner, prompt_builder=prompt_builder),
        retriever=retriever,
        generator=generator,
        evaluator=evaluator,
        policy=policy,
        analytics=AnalyticsLogger(store),
    )


def test_run_without_documents_finishes_after_one_attempt(store, prompt_builder, scripted_llm):
    retriever = StaticRetriever()
    workflow = _workflow(store, prompt_builder, scripted_llm, retriever=retriever, default_verdict=_verdict(0.3))

    result = asyncio.run(workflow.run("2+2=4, true or false?", user_id="s1", mode="math"))

    assert result.success
    assert result.attempts == 1
    assert result.answer == ANSWER
    assert result.confidence == 0.0
    assert result.sources == []
    assert result.documents_used == []
    assert retriever.queries == ["2+2=4, true or false?"]
    assert retriever.filters[0].user_role is UserRole.STUDENT


def test_low_score_triggers_one_refinement(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("Chloroplasts absorb light.", 0.9, chunk_id="c1", document_id="d1")])
    workflow = _workflow(
        store, prompt_builder, scripted_llm,
        retriever=retriever,
        verdicts=[_verdict(0.5), _verdict(0.8)],
    )

    result = asyncio.run(workflow.run("photosynthesis", user_id="s1", subject="biology"))

    assert result.success
    assert result.attempts == 2
    assert retriever.queries == ["photosynthesis", "photosynthesis light reactions in chloroplasts"]
    assert result.refined_query == "photosynthesis light reactions in chloroplasts"
    assert result.evaluation_score == pytest.approx(0.8)
    assert result.evaluation_feedback == "scored 0.8"
    assert result.sources == ["Biology Notes"]
    assert result.documents_used[0]["chunk_id"] == "c1"
    assert result.documents_used[0]["document_id"] == "d1"
    assert result.documents_used[0]["score"] == pytest.approx(0.9)

    records = asyncio.run(store.find_refinements(mode="research", subject="biology"))
    assert [(r.original_query, r.refined_query) for r in records] == [
        ("photosynthesis", "photosynthesis light reactions in chloroplasts")
    ]
    refinements = asyncio.run(store.list_events("refinement"))
    evaluations = asyncio.run(store.list_events("evaluation"))
    assert [(e.success, e.metadata["refined_query"]) for e in refinements] == [
        (True, "photosynthesis light reactions in chloroplasts")
    ]
    assert [e.success for e in evaluations] == [True, True]


def test_refinement_is_capped(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("Some text.", 0.9)])
    workflow = _workflow(store, prompt_builder, scripted_llm, retriever=retriever, default_verdict=_verdict(0.2))

    result = asyncio.run(workflow.run("gravity", user_id="s1"))

    assert result.success
    assert result.attempts == 3
    assert len(retriever.queries) == 3
    assert result.evaluation_score == pytest.approx(0.2)


def test_custom_policy_is_honoured(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("Some text.", 0.9)])
    workflow = _workflow(
        store, prompt_builder, scripted_llm,
        retriever=retriever,
        default_verdict=_verdict(0.85),
        policy=WorkflowPolicy(quality_threshold=0.9, max_refinement_attempts=2),
    )

    result = asyncio.run(workflow.run("gravity", user_id="s1"))

    assert result.attempts == 2


def test_generation_failure_returns_apology(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("text", 0.9)])
    workflow = _workflow(
        store, prompt_builder, scripted_llm,
        retriever=retriever,
        answer=TimeoutError("model timed out"),
    )

    result = asyncio.run(workflow.run("gravity", user_id="s1"))

    assert not result.success
    assert result.answer == APOLOGY
    assert result.attempts == 1
    assert result.evaluation_score is None
    assert "model timed out" in result.error
    events = asyncio.run(store.list_events("generation"))
    assert [e.success for e in events] == [False]


def test_retrieval_failure_continues_without_documents(store, prompt_builder, scripted_llm):
    retriever = StaticRetriever(error=RetrievalError("index offline"))
    workflow = _workflow(store, prompt_builder, scripted_llm, retriever=retriever, default_verdict=_verdict(0.2))

    result = asyncio.run(workflow.run("gravity", user_id="s1"))
    events = asyncio.run(store.list_events("retrieval"))

    assert result.success
    assert result.answer == ANSWER
    assert result.attempts == 1
    assert len(events) == 1
    assert events[0].success is False
    assert events[0].error_message == "index offline"
    assert events[0].documents_retrieved == 0


def test_streaming_forwards_chunks(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("text", 0.9)])
    workflow = _workflow(store, prompt_builder, scripted_llm, retriever=retriever)
    received = []

    result = asyncio.run(workflow.run("photosynthesis", user_id="s1", on_chunk=received.append))

    assert result.attempts == 1
    assert "".join(received) == ANSWER


def test_evaluator_crash_uses_heuristic_score(store, prompt_builder, scripted_llm, make_node):
    nodes = [make_node("photosynthesis text", 0.9)]
    workflow = _workflow(
        store, prompt_builder, scripted_llm,
        retriever=StaticRetriever(nodes),
        evaluator=BrokenEvaluator(),
    )

    result = asyncio.run(workflow.run("photosynthesis", user_id="s1"))

    expected = heuristic_evaluation("photosynthesis", ANSWER, nodes, result.confidence)
    assert result.success
    assert result.evaluation_score == pytest.approx(expected.score)
    events = asyncio.run(store.list_events("evaluation"))
    assert events
    assert all(not e.success and e.error_message == "evaluator crashed" for e in events)


def test_completion_is_recorded_in_analytics(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("text", 0.9)])
    workflow = _workflow(store, prompt_builder, scripted_llm, retriever=retriever)

    result = asyncio.run(workflow.run("photosynthesis", user_id="s1", mode="math", subject="math"))
    events = asyncio.run(store.list_events("workflow_complete"))

    assert len(events) == 1
    event = events[0]
    assert event.success
    assert event.user_id == "s1"
    assert event.mode == ResponseMode.MATH_SOLVER.value
    assert event.documents_retrieved == 1
    assert event.token_usage == result.token_usage > 0
    assert event.metadata["refinement_attempts"] == 1
    assert event.metadata["evaluation_score"] == pytest.approx(0.9)


def test_unexpected_failure_is_reported_not_raised(store, prompt_builder, scripted_llm):
    workflow = _workflow(store, prompt_builder, scripted_llm, retriever=StaticRetriever())

    result = asyncio.run(workflow.run("gravity", user_id="s1", role="superuser"))
    events = asyncio.run(store.list_events("workflow_error"))

    assert not result.success
    assert result.answer == WORKFLOW_APOLOGY
    assert result.attempts == 0
    assert len(events) == 1


def test_generation_failure_after_refinement_discards_earlier_answer(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("Chloroplasts absorb light.", 0.9)])
    workflow = _workflow(
        store, prompt_builder, scripted_llm,
        retriever=retriever,
        answers=["first answer", RuntimeError("boom")],
        verdicts=[_verdict(0.5)],
    )

    result = asyncio.run(workflow.run("photosynthesis", user_id="s1"))

    assert not result.success
    assert result.answer == APOLOGY
    assert result.attempts == 2
    assert result.confidence == 0.0
    assert result.sources == []
    assert result.evaluation_score is None
    assert result.evaluation_feedback is None
    assert result.structured is None
    assert "boom" in result.error


def test_evaluation_model_failure_is_recorded(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("photosynthesis text", 0.9)])
    workflow = _workflow(
        store, prompt_builder, scripted_llm,
        retriever=retriever,
        default_verdict=RuntimeError("eval down"),
    )

    result = asyncio.run(workflow.run("photosynthesis", user_id="s1"))
    events = asyncio.run(store.list_events("evaluation"))

    assert result.success
    assert len(events) == result.attempts
    assert all(e.success is False for e in events)
    assert all("eval down" in e.error_message for e in events)
    assert events[0].metadata["method"] == "heuristic"


def test_refinement_model_failure_is_recorded(store, prompt_builder, scripted_llm, make_node):
    retriever = StaticRetriever([make_node("Chloroplasts absorb light.", 0.9)])
    workflow = _workflow(
        store, prompt_builder, scripted_llm,
        retriever=retriever,
        verdicts=[_verdict(0.5), _verdict(0.9)],
        refined=RuntimeError("refiner down"),
    )

    result = asyncio.run(workflow.run("photosynthesis", user_id="s1"))
    events = asyncio.run(store.list_events("refinement"))

    assert result.success
    assert result.attempts == 2
    assert retriever.queries == ["photosynthesis", "photosynthesis"]
    assert [(e.success, e.error_message) for e in events] == [(False, "refiner down")]


def _state(**kwargs):
    defaults = dict(query="q", user_id="u", role=UserRole.STUDENT, mode=ResponseMode.RESEARCH)
    defaults.update(kwargs)
    return WorkflowState(**defaults)


def test_stage_transitions(make_node):
    policy = WorkflowPolicy()

    assert next_stage(_state(stage=Stage.REFINE), policy) is Stage.RETRIEVE
    assert next_stage(_state(stage=Stage.RETRIEVE), policy) is Stage.GENERATE
    assert next_stage(_state(stage=Stage.GENERATE), policy) is Stage.EVALUATE
    assert next_stage(_state(stage=Stage.GENERATE, error="boom"), policy) is Stage.DONE
    assert next_stage(_state(stage=Stage.DONE), policy) is Stage.DONE

    low = EvaluationResult(score=0.4, feedback="weak")
    evaluated = _state(stage=Stage.EVALUATE, evaluation=low, attempts=1, nodes=[make_node("t", 0.9)])
    assert next_stage(evaluated, policy) is Stage.REFINE


@pytest.mark.parametrize(
    "score, attempts, has_nodes, expected",
    [
        (0.4, 1, True, True),
        (0.7, 1, True, False),
        (0.4, 3, True, False),
        (0.4, 1, False, False),
        (None, 1, True, False),
    ],
)
def test_should_refine(make_node, score, attempts, has_nodes, expected):
    evaluation = EvaluationResult(score=score, feedback="") if score is not None else None
    state = _state(
        stage=Stage.EVALUATE,
        evaluation=evaluation,
        attempts=attempts,
        nodes=[make_node("t", 0.9)] if has_nodes else [],
    )

    assert should_refine(state, WorkflowPolicy()) is expected
