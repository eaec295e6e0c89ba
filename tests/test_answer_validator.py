import asyncio

from lesson_tutor.services.answer_validator import AnswerValidator, ParsedGrade, ParseFailure, parse_grade
from lesson_tutor.services.inference_gateway import GenerationResult

from fakes import FakeGateway


def test_fast_path_skips_gateway():
    gateway = FakeGateway()
    validator = AnswerValidator(gateway)

    result = asyncio.run(validator.validate("constructor", "I am Anna", "i am anna!!"))

    assert result.is_correct is True
    assert result.feedback == ""
    assert result.provider == "fast_path_exact_match"
    assert gateway.calls == []


def test_fast_path_accepts_any_or_variant():
    gateway = FakeGateway()
    result = asyncio.run(
        AnswerValidator(gateway).validate("situations", "One ticket please OR A ticket please", "A ticket, please.")
    )
    assert result.is_correct is True
    assert gateway.calls == []


def test_empty_answer_is_trivially_correct():
    gateway = FakeGateway()
    result = asyncio.run(AnswerValidator(gateway).validate("grammar_text_exercise", "I am a student", "   "))
    assert result.is_correct is True
    assert result.provider == "empty_input"
    assert gateway.calls == []


def test_grader_verdict_is_used():
    gateway = FakeGateway('{"isCorrect": false, "feedback": "Use am with I."}')
    result = asyncio.run(AnswerValidator(gateway).validate("grammar_audio_exercise", "I am a student", "I is student"))

    assert result.is_correct is False
    assert result.feedback == "Use am with I."
    assert result.provider == "fake"
    assert len(gateway.calls) == 1


def test_fenced_and_wrapped_replies_are_recovered():
    fenced = '```json\n{"isCorrect": true, "feedback": ""}\n```'
    wrapped = 'Sure! Here is my verdict: {"isCorrect": true, "feedback": ""} Hope that helps.'
    gateway = FakeGateway(fenced, wrapped)
    validator = AnswerValidator(gateway)

    first = asyncio.run(validator.validate("constructor", "I am Anna", "Anna I am"))
    second = asyncio.run(validator.validate("constructor", "I am Anna", "Anna I am"))

    assert first.is_correct is True
    assert second.is_correct is True


def test_unparseable_reply_asks_to_retry():
    gateway = FakeGateway("I think it's fine")
    result = asyncio.run(AnswerValidator(gateway).validate("constructor", "I am Anna", "Anna I am"))

    assert result.is_correct is False
    assert result.provider == "verification_failed"
    assert result.feedback == "Couldn't verify your answer. Please try again."


def test_gateway_failure_asks_to_retry_in_requested_language():
    gateway = FakeGateway(GenerationResult(text="", success=False, provider="groq_failed"))
    result = asyncio.run(
        AnswerValidator(gateway).validate("constructor", "I am Anna", "Anna I am", ui_lang="ru-RU")
    )

    assert result.is_correct is False
    assert result.feedback == "Не удалось проверить ответ. Попробуй еще раз."


def test_parse_grade_requires_both_fields():
    assert parse_grade('{"isCorrect": true, "feedback": "ok"}') == ParsedGrade(True, "ok")
    assert isinstance(parse_grade('{"isCorrect": "yes", "feedback": ""}'), ParseFailure)
    assert isinstance(parse_grade('{"isCorrect": true}'), ParseFailure)
    assert isinstance(parse_grade("[1, 2]"), ParseFailure)
    assert isinstance(parse_grade(""), ParseFailure)


def test_prompt_carries_task_rules():
    validator = AnswerValidator(FakeGateway())

    constructor = validator.build_messages("constructor", "I am Anna", "Anna am I", "Given words: I, am, Anna", lang="en")
    situation = validator.build_messages("situations", "A coffee, please", "Coffee", task="Order a coffee", lang="ru")

    assert "sentence builder" in constructor[1]["content"]
    assert "Given words: I, am, Anna" in constructor[1]["content"]
    assert "English" in constructor[0]["content"]
    assert 'Task: Order a coffee' in situation[0]["content"]
    assert "Russian" in situation[0]["content"]
    assert "sentence builder" not in situation[1]["content"]
