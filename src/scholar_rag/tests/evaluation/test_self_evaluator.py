import asyncio
import json

import pytest

from scholar_rag.evaluation.self_evaluator import SelfEvaluator, heuristic_evaluation
from scholar_rag.generation.answer_generator import GenerationResult

QUERY = "Explain how photosynthesis produces glucose in plants"
GOOD_ANSWER = (
    "Photosynthesis is the process plants use to produce glucose. Chlorophyll in the "
    "chloroplasts absorbs light, which splits water and releases oxygen. The captured "
    "energy then drives the Calvin cycle, where carbon dioxide is fixed and turned into "
    "glucose that plants store or use to explain their growth."
)


def _verdict(score, **extra):
    return json.dumps({"score": score, "feedback": "Solid explanation", "strengths": ["clear"], **extra})


def test_heuristic_rewards_length_coverage_and_relevance(make_node):
    nodes = [make_node("photosynthesis", 0.8), make_node("glucose", 0.8)]

    result = heuristic_evaluation(QUERY, GOOD_ANSWER, nodes, confidence=1.0)

    assert result.score == pytest.approx(0.93)
    assert result.method == "heuristic"
    assert result.feedback == "Answer appears to be of good quality"
    assert "High-quality relevant documents were used" in result.strengths
    assert result.improvements == []


def test_heuristic_penalises_short_answers_without_documents():
    result = heuristic_evaluation(QUERY, "No idea.", [], confidence=0.0)

    assert result.score == pytest.approx(0.07)
    assert result.feedback == "Answer may need significant improvement"
    assert "Answer may be too brief" in result.improvements
    assert "No context documents were used" in result.improvements


def test_heuristic_penalises_weak_retrieval(make_node):
    result = heuristic_evaluation(QUERY, GOOD_ANSWER, [make_node("x", 0.2)], confidence=0.5)

    # 0.5 + 0.1 + 0.15 - 0.15 = 0.6, blended with confidence 0.5.
    assert result.score == pytest.approx(0.6 * 0.7 + 0.5 * 0.3)
    assert result.feedback == "Answer is acceptable but could be improved"
    assert "Retrieved documents may not be highly relevant" in result.improvements


def test_model_verdict_is_used_when_retrieval_is_strong(prompt_builder, scripted_llm, make_node):
    llm = scripted_llm(default=f"Evaluation:\n{_verdict(0.9, reasoning='uses context')}")
    evaluator = SelfEvaluator(llm=llm, prompt_builder=prompt_builder)

    result = asyncio.run(evaluator.aevaluate(QUERY, GOOD_ANSWER, [make_node("ctx", 0.8)], 0.96))

    assert result.score == pytest.approx(0.9)
    assert result.method == "llm"
    assert result.feedback == "Solid explanation"
    assert result.strengths == ["clear"]
    assert result.reasoning == "uses context"
    assert result.error is None
    assert "MODEL CONFIDENCE: 0.96" in llm.prompts[0]


def test_model_verdict_is_penalised_for_weak_retrieval_and_confidence(prompt_builder, scripted_llm, make_node):
    evaluator = SelfEvaluator(llm=scripted_llm(default=_verdict(0.9)), prompt_builder=prompt_builder)

    result = asyncio.run(evaluator.aevaluate(QUERY, GOOD_ANSWER, [make_node("ctx", 0.3)], 0.36))

    assert result.score == pytest.approx(0.9 * 0.8 * 0.9)


def test_model_verdict_is_clamped(prompt_builder, scripted_llm, make_node):
    evaluator = SelfEvaluator(llm=scripted_llm(default=_verdict(1.4)), prompt_builder=prompt_builder)

    result = asyncio.run(evaluator.aevaluate(QUERY, GOOD_ANSWER, [make_node("ctx", 0.9)], 1.0))

    assert result.score == 1.0


def test_only_top_context_documents_are_shown(prompt_builder, scripted_llm, make_node):
    llm = scripted_llm(default=_verdict(0.8))
    evaluator = SelfEvaluator(llm=llm, prompt_builder=prompt_builder, context_documents=2)
    nodes = [make_node(f"chunk-{i}", 0.9) for i in range(4)]

    asyncio.run(evaluator.aevaluate(QUERY, GOOD_ANSWER, nodes, 1.0))

    assert "chunk-1" in llm.prompts[0]
    assert "chunk-2" not in llm.prompts[0]


@pytest.mark.parametrize("response", ["The answer looks fine to me.", ConnectionError("evaluator offline")])
def test_unusable_model_output_falls_back_to_heuristic(prompt_builder, scripted_llm, make_node, response):
    evaluator = SelfEvaluator(llm=scripted_llm(default=response), prompt_builder=prompt_builder)
    nodes = [make_node("photosynthesis", 0.8)]

    result = asyncio.run(evaluator.aevaluate(QUERY, GOOD_ANSWER, nodes, 1.0))

    assert result.method == "heuristic"
    assert result.error
    assert result.score == pytest.approx(heuristic_evaluation(QUERY, GOOD_ANSWER, nodes, 1.0).score)


@pytest.mark.parametrize(
    "response, expected",
    [("0.8 - mostly accurate", 0.8), ("1.7", 1.0), ("excellent", 0.5), (RuntimeError("down"), 0.5)],
)
def test_aspect_scores(prompt_builder, scripted_llm, response, expected):
    evaluator = SelfEvaluator(llm=scripted_llm(default=response), prompt_builder=prompt_builder)

    score = asyncio.run(evaluator.aevaluate_aspect("clarity", QUERY, GOOD_ANSWER, "context"))

    assert score == pytest.approx(expected)


def test_unknown_aspect_is_rejected(prompt_builder, scripted_llm):
    evaluator = SelfEvaluator(llm=scripted_llm(), prompt_builder=prompt_builder)

    with pytest.raises(ValueError):
        asyncio.run(evaluator.aevaluate_aspect("humour", QUERY, GOOD_ANSWER, "context"))


def test_hallucination_check(prompt_builder, scripted_llm, make_node):
    flagged = SelfEvaluator(
        llm=scripted_llm(default='{"hasHallucination": true, "confidence": 0.85, "details": "Cites a 1999 study"}'),
        prompt_builder=prompt_builder,
    )
    broken = SelfEvaluator(llm=scripted_llm(default="unsure"), prompt_builder=prompt_builder)
    nodes = [make_node("context", 0.9)]

    verdict = asyncio.run(flagged.adetect_hallucinations(GOOD_ANSWER, nodes))
    no_context = asyncio.run(flagged.adetect_hallucinations(GOOD_ANSWER, []))
    failed = asyncio.run(broken.adetect_hallucinations(GOOD_ANSWER, nodes))

    assert verdict.has_hallucination is True
    assert verdict.confidence == pytest.approx(0.85)
    assert verdict.details == "Cites a 1999 study"
    assert (no_context.has_hallucination, no_context.confidence) == (False, 0.0)
    assert no_context.details == "No context to verify against"
    assert failed.details == "Error in hallucination detection"


def test_best_answer_selection(prompt_builder, scripted_llm):
    candidates = [
        GenerationResult(answer="first", confidence=0.6),
        GenerationResult(answer="second", confidence=0.9, sources=["Cells"]),
        GenerationResult(answer="third", confidence=0.9),
    ]

    def pick(response):
        evaluator = SelfEvaluator(llm=scripted_llm(default=response), prompt_builder=prompt_builder)
        return asyncio.run(evaluator.aselect_best_answer(QUERY, candidates, "context"))

    assert pick("3") == 2
    assert pick("Answer 1 is best") == 1
    assert pick("7") == 1
    assert pick(RuntimeError("down")) == 1
    with pytest.raises(ValueError):
        asyncio.run(
            SelfEvaluator(llm=scripted_llm(), prompt_builder=prompt_builder).aselect_best_answer(QUERY, [], "")
        )
