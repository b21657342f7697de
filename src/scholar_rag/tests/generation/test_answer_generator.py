import asyncio
import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from scholar_rag.common.errors import GenerationError
from scholar_rag.common.modes import ModelProfile, ResponseMode
from scholar_rag.common.tokenisation import HeuristicTokenCounter
from scholar_rag.generation.answer_generator import (
    HINT_FALLBACK,
    NO_CONTEXT,
    NO_HISTORY,
    AnswerGenerator,
    confidence_from_nodes,
    extract_sources,
    format_history,
)
from scholar_rag.generation.prompt_builder import PromptBuilder

QUIZ_JSON = json.dumps(
    {
        "questions": [
            {
                "type": "multiple_choice",
                "question": "Which organelle performs photosynthesis?",
                "options": ["Mitochondrion", "Chloroplast", "Nucleus", "Ribosome"],
                "correct_answer": "Chloroplast",
                "explanation": "Chloroplasts contain chlorophyll.",
            }
        ]
    }
)


def _generator(prompt_builder, precise, creative, **kwargs):
    return AnswerGenerator(
        llms={ModelProfile.PRECISE: precise, ModelProfile.CREATIVE: creative},
        prompt_builder=prompt_builder,
        **kwargs,
    )


def test_sources_keep_titles_above_threshold(make_node):
    """
    Chunks scoring [0.9, 0.85, 0.6, 0.4, 0.2] from five different documents
    cite exactly the three scoring above 0.5.
    """
    nodes = [
        make_node("a", 0.9, title="Cells"),
        make_node("b", 0.85, title="Energy"),
        make_node("c", 0.6, title="Plants"),
        make_node("d", 0.4, title="Rocks"),
        make_node("e", 0.2, title="Stars"),
    ]

    assert extract_sources(nodes) == ["Cells", "Energy", "Plants"]


def test_sources_are_deduplicated_and_capped(make_node):
    nodes = [make_node("x", 0.9, title="Same")] * 3 + [
        make_node("y", 0.8, title=f"Doc {i}") for i in range(10)
    ]

    sources = extract_sources(nodes, max_sources=5)

    assert sources[0] == "Same"
    assert len(sources) == 5
    assert sources.count("Same") == 1


def test_confidence_is_scaled_average_capped_at_one(make_node):
    scores = [0.9, 0.85, 0.6, 0.4, 0.2]

    assert confidence_from_nodes([make_node("t", s) for s in scores]) == pytest.approx(0.708)
    assert confidence_from_nodes([make_node("t", 0.95)]) == 1.0
    assert confidence_from_nodes([]) == 0.0


def test_history_keeps_last_exchanges_and_skips_system_messages():
    messages = [SystemMessage(content="note")]
    for i in range(5):
        messages += [HumanMessage(content=f"q{i}"), AIMessage(content=f"a{i}")]

    rendered = format_history(messages, exchanges=2)

    assert rendered.splitlines() == ["Student: q3", "Assistant: a3", "Student: q4", "Assistant: a4"]
    assert format_history([], exchanges=3) == ""


def test_research_answer_uses_creative_model_and_full_prompt(prompt_builder, scripted_llm, make_node):
    precise = scripted_llm(default="precise answer")
    creative = scripted_llm(default="  Photosynthesis turns light into chemical energy.  ")
    generator = _generator(prompt_builder, precise, creative)
    nodes = [make_node("Chloroplasts capture light.", 0.9), make_node("Unrelated.", 0.3, title="Misc")]

    result = asyncio.run(
        generator.agenerate("What is photosynthesis?", nodes, "research", history=[HumanMessage(content="hi")])
    )

    assert result.answer == "Photosynthesis turns light into chemical energy."
    assert precise.prompts == []
    prompt = creative.prompts[0]
    assert prompt.startswith("You are an educational research assistant")
    assert "[Document 1] (Source: Biology Notes, Relevance: 0.90)\nChloroplasts capture light." in prompt
    assert "[Document 2] (Source: Misc, Relevance: 0.30)" in prompt
    assert "CURRENT QUESTION:\nWhat is photosynthesis?" in prompt
    assert "Student: hi" in prompt
    assert result.sources == ["Biology Notes"]
    assert result.documents_used == 2
    assert result.avg_relevance == pytest.approx(0.6)
    assert result.confidence == pytest.approx(0.72)
    counter = HeuristicTokenCounter()
    assert result.token_usage == counter.count(prompt) + counter.count(result.answer)
    assert result.structured is None


def test_solver_modes_use_precise_model_and_placeholders(prompt_builder, scripted_llm):
    precise = scripted_llm(default="x = 2")
    creative = scripted_llm(default="creative")
    generator = _generator(prompt_builder, precise, creative)

    result = asyncio.run(generator.agenerate("Solve 2x = 4", [], ResponseMode.MATH_SOLVER))

    assert result.answer == "x = 2"
    assert creative.prompts == []
    assert NO_CONTEXT in precise.prompts[0]
    assert NO_HISTORY in precise.prompts[0]
    assert "step-by-step" in precise.prompts[0]
    assert result.confidence == 0.0
    assert result.sources == []


def test_quiz_mode_returns_validated_payload(prompt_builder, scripted_llm, make_node):
    creative = scripted_llm(default=f"Here is your quiz:\n```json\n{QUIZ_JSON}\n```")
    generator = _generator(prompt_builder, scripted_llm(), creative)

    result = asyncio.run(generator.agenerate("Quiz me on plants", [make_node("text", 0.8)], "quiz"))

    assert result.structured["questions"][0]["correct_answer"] == "Chloroplast"
    assert result.structured["questions"][0]["type"] == "multiple_choice"


def test_unparseable_quiz_is_a_generation_error(prompt_builder, scripted_llm):
    creative = scripted_llm(default="Sorry, I cannot produce a quiz about that.")
    generator = _generator(prompt_builder, scripted_llm(), creative)

    with pytest.raises(GenerationError):
        asyncio.run(generator.agenerate("Quiz me", [], ResponseMode.QUIZ_CREATOR))


def test_model_failure_is_a_generation_error(prompt_builder, scripted_llm):
    creative = scripted_llm(default=TimeoutError("model timed out"))
    generator = _generator(prompt_builder, scripted_llm(), creative)

    with pytest.raises(GenerationError):
        asyncio.run(generator.agenerate("Explain gravity", [], "research"))


def test_streaming_forwards_every_chunk(prompt_builder, scripted_llm, make_node):
    text = "Gravity pulls masses toward each other."
    generator = _generator(prompt_builder, scripted_llm(), scripted_llm(default=text))
    received = []

    result = asyncio.run(
        generator.agenerate_stream("Explain gravity", [make_node("g", 0.7)], "research", received.append)
    )

    assert len(received) > 1
    assert "".join(received) == text
    assert result.answer == text
    assert result.documents_used == 1


def test_streaming_accepts_coroutine_callbacks(prompt_builder, scripted_llm):
    generator = _generator(prompt_builder, scripted_llm(), scripted_llm(default="one two three"))
    received = []

    async def on_chunk(chunk):
        received.append(chunk)

    asyncio.run(generator.agenerate_stream("q", [], "research", on_chunk))

    assert "".join(received) == "one two three"


def test_hint_falls_back_on_failure(prompt_builder, scripted_llm):
    working = _generator(prompt_builder, scripted_llm(), scripted_llm(default=" Isolate x first. "))
    broken = _generator(prompt_builder, scripted_llm(), scripted_llm(default=RuntimeError("down")))

    assert asyncio.run(working.agenerate_hint("Solve 3x + 1 = 7", subject="math")) == "Isolate x first."
    assert asyncio.run(broken.agenerate_hint("Solve 3x + 1 = 7")) == HINT_FALLBACK


def test_constructor_validates_models_and_templates(prompt_builder, scripted_llm):
    with pytest.raises(ValueError):
        AnswerGenerator(llms={ModelProfile.PRECISE: scripted_llm()}, prompt_builder=prompt_builder)
    with pytest.raises(ValueError):
        _generator(PromptBuilder(), scripted_llm(), scripted_llm())
