import asyncio
import logging

import pytest

from scholar_rag.app.service import AssistantService, conversation_title
from scholar_rag.common.errors import PermissionDeniedError
from scholar_rag.common.modes import ModelProfile
from scholar_rag.common.schemas import DocumentMetadata, FeedbackKind, MessageRole
from scholar_rag.generation.answer_generator import GenerationResult

LONG_QUERY = "What is photosynthesis and why does it matter to plants living in sunlight?"
NOTES = (
    "Photosynthesis happens in the chloroplasts of plant cells. "
    "Light energy splits water and releases oxygen. "
    "The Calvin cycle fixes carbon dioxide into glucose."
)


def _with_notes(container):
    meta = DocumentMetadata(title="Plant Notes", owner_id="t1", is_public=True)
    asyncio.run(container.service.ingest(NOTES, meta))
    return container


def test_conversation_title():
    assert conversation_title("Short question") == "Short question"
    assert conversation_title(LONG_QUERY) == LONG_QUERY[:50] + "..."
    assert conversation_title("   ") == "New conversation"


def test_first_query_creates_conversation_and_messages(make_container, store):
    container = _with_notes(make_container(answer="Plants turn light into glucose."))

    response = asyncio.run(container.service.run_workflow(LONG_QUERY, "s1"))
    conversation = asyncio.run(store.get_conversation(response.conversation_id))
    messages = asyncio.run(store.list_messages(response.conversation_id))

    assert response.success
    assert response.answer == "Plants turn light into glucose."
    assert conversation.title == LONG_QUERY[:50] + "..."
    assert conversation.user_id == "s1"
    assert conversation.mode == "research"
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[0].content == LONG_QUERY
    assistant = messages[1]
    assert assistant.id == response.message_id
    assert assistant.confidence == pytest.approx(response.confidence)
    assert assistant.retrieved_docs == response.documents_used
    assert assistant.metadata["attempts"] == 1
    assert assistant.metadata["original_query"] == LONG_QUERY
    assert assistant.metadata["refined_query"] == LONG_QUERY
    assert response.metadata["evaluation_score"] is not None


def test_follow_up_sees_conversation_history(make_container):
    container = make_container(answer="Chloroplasts.")
    service = container.service

    first = asyncio.run(service.run_workflow("Where does photosynthesis happen?", "s1"))
    asyncio.run(service.run_workflow("And what does it produce?", "s1", conversation_id=first.conversation_id))

    prompt = container.generator_llms[ModelProfile.CREATIVE].prompts[-1]
    assert "Student: Where does photosynthesis happen?" in prompt
    assert "Assistant: Chloroplasts." in prompt
    assert "CURRENT QUESTION:\nAnd what does it produce?" in prompt


def test_conversation_defaults_apply_to_follow_ups(make_container, store):
    service = make_container().service

    first = asyncio.run(service.run_workflow("Solve 2x = 4", "s1", mode="math", subject="math", grade_level="8"))
    asyncio.run(service.run_workflow("Now 3x = 9", "s1", mode="math", conversation_id=first.conversation_id))
    events = asyncio.run(store.list_events("workflow_complete"))

    assert [e.subject for e in events] == ["math", "math"]


def test_foreign_or_unknown_conversation_is_rejected(make_container, store):
    service = make_container().service
    own = asyncio.run(service.run_workflow("Question", "s1"))

    foreign = asyncio.run(service.run_workflow("Sneaky", "s2", conversation_id=own.conversation_id))
    unknown = asyncio.run(service.run_workflow("Lost", "s1", conversation_id="missing"))

    assert not foreign.success
    assert "does not own" in foreign.error
    assert not unknown.success
    assert len(asyncio.run(store.list_messages(own.conversation_id))) == 2


def test_failed_generation_stores_only_the_user_message(make_container, store):
    service = make_container(answer=RuntimeError("model down")).service

    response = asyncio.run(service.run_workflow("Explain gravity", "s1"))
    messages = asyncio.run(store.list_messages(response.conversation_id))

    assert not response.success
    assert response.message_id is None
    assert [m.role for m in messages] == [MessageRole.USER]


def test_feedback_updates_the_refinement_used(make_container, store):
    container = _with_notes(make_container(refined="photosynthesis in chloroplasts"))
    container.evaluator_llm.responses.extend(['{"score": 0.1}', '{"score": 1.0}'])
    service = container.service

    response = asyncio.run(service.run_workflow("photosynthesis", "s1"))
    feedback = asyncio.run(
        service.record_feedback(response.message_id, response.conversation_id, "s1", FeedbackKind.APPROVE)
    )
    record = asyncio.run(store.get_refinement("photosynthesis", "photosynthesis in chloroplasts", "research"))

    assert response.metadata["attempts"] == 2
    assert response.metadata["refined_query"] == "photosynthesis in chloroplasts"
    assert feedback.kind is FeedbackKind.APPROVE
    assert asyncio.run(store.list_feedback(response.message_id)) == [feedback]
    assert record.improvement_score == pytest.approx(0.5)
    assert len(asyncio.run(store.list_events("feedback"))) == 1


def test_feedback_hook_failure_is_logged(make_container, caplog):
    service = make_container().service
    response = asyncio.run(service.run_workflow("Question", "s1"))

    async def broken_hook(feedback):
        raise RuntimeError("hook exploded")

    service.add_feedback_hook(broken_hook)
    with caplog.at_level(logging.WARNING, logger="scholar_rag.service"):
        feedback = asyncio.run(
            service.record_feedback(response.message_id, response.conversation_id, "s1", "rating", rating=4)
        )

    assert feedback.rating == 4
    assert "hook exploded" in caplog.text


def test_feedback_validation(make_container):
    service = make_container().service
    first = asyncio.run(service.run_workflow("Question one", "s1"))
    second = asyncio.run(service.run_workflow("Question two", "s1"))

    with pytest.raises(ValueError):
        asyncio.run(service.record_feedback(first.message_id, second.conversation_id, "s1", "approve"))
    with pytest.raises(ValueError):
        asyncio.run(service.record_feedback(first.message_id, first.conversation_id, "s1", "rating"))


def test_conversation_listing_and_deletion(make_container, store):
    service = make_container().service
    first = asyncio.run(service.run_workflow("Question one", "s1"))
    asyncio.run(service.run_workflow("Solve x + 1 = 2", "s1", mode="math"))
    asyncio.run(service.run_workflow("Other user", "s2"))

    assert len(asyncio.run(service.list_conversations("s1"))) == 2
    assert len(asyncio.run(service.list_conversations("s1", mode="math_solver"))) == 1

    with pytest.raises(PermissionDeniedError):
        asyncio.run(service.list_messages(first.conversation_id, "s2"))
    with pytest.raises(PermissionDeniedError):
        asyncio.run(service.delete_conversation(first.conversation_id, "s2"))

    asyncio.run(service.delete_conversation(first.conversation_id, "s1"))
    assert len(asyncio.run(service.list_conversations("s1"))) == 1


def test_document_operations_require_a_pipeline(make_container, store):
    service = AssistantService(store=store, workflow=make_container().workflow)

    with pytest.raises(RuntimeError):
        asyncio.run(service.ingest("text", DocumentMetadata(title="t", owner_id="t1")))


def test_verify_answer_checks_claims_and_aspects(make_container, store):
    container = _with_notes(make_container())
    container.evaluator_llm.responses.extend(
        ['{"hasHallucination": true, "confidence": 0.8, "details": "Invents a date"}', "0.9 clear enough"]
    )

    check = asyncio.run(
        container.service.verify_answer(
            "Where does photosynthesis happen?",
            "In chloroplasts, as discovered in 1492.",
            "s1",
            aspects=["clarity"],
        )
    )

    assert check.has_hallucination is True
    assert check.confidence == pytest.approx(0.8)
    assert check.details == "Invents a date"
    assert check.aspect_scores == {"clarity": pytest.approx(0.9)}
    assert check.documents_used[0]["title"] == "Plant Notes"
    assert "Calvin cycle" in container.evaluator_llm.prompts[0]
    assert len(asyncio.run(store.list_events("answer_check"))) == 1
    with pytest.raises(ValueError):
        asyncio.run(container.service.verify_answer("q", "a", "s1", aspects=["humour"]))


def test_select_best_answer_uses_evaluator_choice(make_container):
    container = _with_notes(make_container())
    container.evaluator_llm.responses.append("2")
    candidates = [
        GenerationResult(answer="Mitochondria.", confidence=0.9),
        GenerationResult(answer="Chloroplasts.", confidence=0.4, sources=["Plant Notes"]),
    ]

    index = asyncio.run(
        container.service.select_best_answer("Where does photosynthesis happen?", candidates, "s1")
    )

    assert index == 1
    assert "Answer 2:\nChloroplasts." in container.evaluator_llm.prompts[0]
    with pytest.raises(ValueError):
        asyncio.run(container.service.select_best_answer("q", [], "s1"))
