import pytest

from scholar_rag.common.errors import ParseError
from scholar_rag.common.structured_output import (
    EvaluationPayload,
    ExamPayload,
    HallucinationPayload,
    QuizPayload,
    extract_json_object,
    parse_structured,
)


def test_extracts_object_surrounded_by_prose_with_braces():
    """
    Trailing commentary containing braces must not be swallowed into the
    object, which is what a greedy ``{.*}`` match would do.
    """
    text = 'Here you go: {"score": 0.8, "feedback": "good"} (scores use {0..1})'

    assert extract_json_object(text) == {"score": 0.8, "feedback": "good"}


def test_prefers_fenced_block():
    text = 'Draft {"score": 0.1}\n```json\n{"score": 0.9}\n```'

    assert extract_json_object(text) == {"score": 0.9}


def test_skips_non_object_json_and_invalid_prefixes():
    text = 'Scores [1, 2] then {not json} then {"score": "0.75"}'

    payload = parse_structured(text, EvaluationPayload)

    assert payload.score == pytest.approx(0.75)
    assert payload.strengths == []


@pytest.mark.parametrize("text", ["", "   ", "no json here", "[1, 2, 3]"])
def test_missing_object_raises_parse_error(text):
    with pytest.raises(ParseError):
        extract_json_object(text)


def test_validation_failure_raises_parse_error_with_raw_text():
    raw = '{"score": "very good"}'

    with pytest.raises(ParseError) as info:
        parse_structured(raw, EvaluationPayload)

    assert info.value.raw == raw


def test_quiz_payload_normalises_question_fields():
    raw = """
    {"questions": [
        {"type": "Multiple Choice", "question": "2 + 2?", "options": [3, 4, 5], "correct_answer": 4},
        {"type": "true-false", "question": "Water boils at 100C at sea level.", "correct_answer": true}
    ]}
    """

    quiz = parse_structured(raw, QuizPayload)

    assert quiz.questions[0].type == "multiple_choice"
    assert quiz.questions[0].options == ["3", "4", "5"]
    assert quiz.questions[0].correct_answer == "4"
    assert quiz.questions[1].type == "true_false"
    assert quiz.questions[1].correct_answer == "true"


def test_quiz_payload_rejects_multiple_choice_without_options():
    raw = '{"questions": [{"type": "multiple_choice", "question": "Q?", "correct_answer": "A"}]}'

    with pytest.raises(ParseError):
        parse_structured(raw, QuizPayload)


def test_quiz_payload_requires_questions():
    with pytest.raises(ParseError):
        parse_structured('{"title": "Empty quiz", "questions": []}', QuizPayload)


def test_exam_payload_accepts_camel_case_total_and_plain_questions():
    raw = """
    {"title": "Unit test", "duration": 45, "totalPoints": 20,
     "sections": [{"title": "Part A", "questions": ["Define velocity."], "points": 20}]}
    """

    exam = parse_structured(raw, ExamPayload)

    assert exam.duration == "45"
    assert exam.total_points == 20
    assert exam.sections[0].questions[0].question == "Define velocity."
    assert exam.model_dump(by_alias=True)["totalPoints"] == 20


def test_hallucination_payload_reads_camel_case_flag():
    verdict = parse_structured('{"hasHallucination": true, "confidence": 0.9, "details": "x"}', HallucinationPayload)

    assert verdict.has_hallucination is True
    assert verdict.confidence == pytest.approx(0.9)
