import asyncio
import json

import pytest

from lesson_tutor.db.database import get_db
from lesson_tutor.models.lesson import LessonTurnRequest, StepPointer, StepType
from lesson_tutor.services.errors import ClientInputError, ScriptFetchError
from lesson_tutor.services.lesson_orchestrator import LessonOrchestrator
from lesson_tutor.services.message_store import MessageStore
from lesson_tutor.services.state_resolver import resolve

from fakes import FakeGateway

LESSON = "day1_lesson1"
USER = "user-1"


async def _with_store(db_path, fn):
    db = await get_db(db_path)
    try:
        return await fn(MessageStore(db))
    finally:
        await db.close()


def _save_script(db_path, script_data, lesson_id=LESSON):
    async def fn(store):
        await store.save_script(lesson_id, script_data, day=1, lesson=1)
    asyncio.run(_with_store(db_path, fn))


def _turn(db_path, gateway, **fields):
    fields.setdefault("lesson_id", LESSON)
    fields.setdefault("user_id", USER)

    async def fn(store):
        return await LessonOrchestrator(store, gateway).handle(LessonTurnRequest(**fields))
    return asyncio.run(_with_store(db_path, fn))


def _history(db_path, lesson_id=LESSON, user_id=USER):
    async def fn(store):
        return await store.history(lesson_id, user_id)
    return asyncio.run(_with_store(db_path, fn))


def _walk_to_grammar(db_path, gateway):
    _turn(db_path, gateway)
    _turn(db_path, gateway)
    return _turn(db_path, gateway)


def test_first_turn_starts_lesson(db_path, script_data):
    _save_script(db_path, script_data)

    response = _turn(db_path, FakeGateway())

    assert response.next_step == StepPointer(type=StepType.GOAL, index=0)
    assert json.loads(response.response)["type"] == "goal"
    history = _history(db_path)
    assert len(history) == 1
    assert history[0].day == 1
    assert history[0].step_snapshot == response.next_step


def test_progression_ignores_stale_client_step(db_path, script_data):
    _save_script(db_path, script_data)
    gateway = FakeGateway()

    _turn(db_path, gateway)
    response = _turn(db_path, gateway, current_step={"type": "situations", "index": 2})

    assert response.next_step == StepPointer(type=StepType.WORDS, index=0)
    assert [m.message_order for m in _history(db_path)] == [1, 2, 3]


def test_wrong_answer_overwrites_pending_placeholder(db_path, script_data):
    _save_script(db_path, script_data)
    seen_during_grading = []

    async def peek():
        async def fn(store):
            return await store.history(LESSON, USER)
        seen_during_grading.extend(await _with_store(db_path, fn))

    gateway = FakeGateway('{"isCorrect": false, "feedback": "Use am with I."}', on_call=peek)
    _walk_to_grammar(db_path, gateway)
    before = _history(db_path)

    response = _turn(db_path, gateway, last_user_message_content="I is student")

    assert len(gateway.calls) == 1
    assert seen_during_grading[-1].text == "Checking your answer…"
    assert seen_during_grading[-1].step_snapshot is None

    assert response.is_correct is False
    assert response.feedback == "Use am with I."
    assert response.next_step == StepPointer(type=StepType.GRAMMAR, index=0)

    after = _history(db_path)
    added = after[len(before):]
    assert [(m.role, m.message_order) for m in added] == [
        ("user", before[-1].message_order + 1),
        ("model", before[-1].message_order + 2),
    ]
    assert "Use am with I." in added[1].text
    assert added[1].step_snapshot == StepPointer(type=StepType.GRAMMAR, index=0)
    assert all("Checking your answer" not in m.text for m in after)


def test_fast_path_answer_advances_without_placeholder(db_path, script_data):
    _save_script(db_path, script_data)
    gateway = FakeGateway()
    _walk_to_grammar(db_path, gateway)

    response = _turn(db_path, gateway, last_user_message_content="i am a student.")

    assert gateway.calls == []
    assert response.is_correct is True
    assert response.provider == "fast_path_exact_match"
    assert response.next_step == StepPointer(type=StepType.CONSTRUCTOR, index=0)
    assert response.response.endswith("<text_input>")
    assert all("Checking your answer" not in m.text for m in _history(db_path))


def test_crash_during_grading_leaves_placeholder_and_previous_step(db_path, script_data):
    _save_script(db_path, script_data)
    gateway = FakeGateway(RuntimeError("worker killed"))
    _walk_to_grammar(db_path, gateway)

    with pytest.raises(RuntimeError):
        _turn(db_path, gateway, last_user_message_content="I is student")

    history = _history(db_path)
    assert history[-1].text == "Checking your answer…"
    assert resolve(None, history) == StepPointer(type=StepType.GRAMMAR, index=0)

    retry = _turn(db_path, FakeGateway(), last_user_message_content="I am a student")
    assert retry.next_step == StepPointer(type=StepType.CONSTRUCTOR, index=0)


def test_gateway_failure_asks_to_retry_and_stays(db_path, script_data):
    _save_script(db_path, script_data)
    gateway = FakeGateway()
    _walk_to_grammar(db_path, gateway)

    response = _turn(db_path, gateway, last_user_message_content="I student")

    assert response.is_correct is False
    assert response.provider == "verification_failed"
    assert response.next_step == StepPointer(type=StepType.GRAMMAR, index=0)


def test_find_the_mistake_uses_choice_without_gateway(db_path, script_data):
    _save_script(db_path, script_data)
    gateway = FakeGateway()
    step = {"type": "find_the_mistake", "index": 0}

    async def seed(store):
        await store.append(LESSON, USER, "model", "{}", 1, step=StepPointer.model_validate(step))
    asyncio.run(_with_store(db_path, seed))

    wrong = _turn(db_path, gateway, choice="B")
    right = _turn(db_path, gateway, choice="a")

    assert wrong.is_correct is False
    assert wrong.next_step == StepPointer(type=StepType.FIND_THE_MISTAKE, index=0)
    assert wrong.messages == []
    assert right.is_correct is True
    assert right.next_step == StepPointer(type=StepType.FIND_THE_MISTAKE, index=1)
    assert gateway.calls == []


def test_validate_only_writes_nothing(db_path, script_data):
    _save_script(db_path, script_data)
    _walk_to_grammar(db_path, FakeGateway())
    before = _history(db_path)
    gateway = FakeGateway('{"isCorrect": true, "feedback": ""}')

    response = _turn(db_path, gateway, last_user_message_content="I am student", validate_only=True)

    assert response.is_correct is True
    assert len(gateway.calls) == 1
    assert _history(db_path) == before


def test_missing_identifiers_are_rejected(db_path, script_data):
    _save_script(db_path, script_data)

    with pytest.raises(ClientInputError):
        _turn(db_path, FakeGateway(), user_id="")
    with pytest.raises(ClientInputError):
        _turn(db_path, FakeGateway(), lesson_id=None)
    assert _history(db_path) == []


def test_unknown_lesson_fails_without_writes(db_path):
    with pytest.raises(ScriptFetchError):
        _turn(db_path, FakeGateway(), lesson_id="missing")
    assert _history(db_path, lesson_id="missing") == []


def test_step_outside_script_halts_without_writes(db_path, script_data):
    _save_script(db_path, script_data)

    response = _turn(db_path, FakeGateway(), current_step={"type": "constructor", "index": 9})

    assert response.is_correct is False
    assert response.response == "Something went wrong with this exercise. Try reopening the lesson."
    assert _history(db_path) == []


def test_completion_is_reached_once_and_not_repeated_in_log(db_path):
    _save_script(db_path, {"goal": "Say hi", "completion": "Bye!"})
    gateway = FakeGateway()

    _turn(db_path, gateway)
    finished = _turn(db_path, gateway)

    assert finished.next_step == StepPointer(type=StepType.COMPLETION, index=0)
    assert finished.response == "Bye! <lesson_complete>"
    stored = len(_history(db_path))

    replay = _turn(db_path, gateway)

    assert replay.next_step is None
    assert replay.response == "Bye! <lesson_complete>"
    assert len(_history(db_path)) == stored

    async def progress(store):
        return await store.get_progress(LESSON, USER)
    assert asyncio.run(_with_store(db_path, progress))["completed"] is True


def test_tutor_mode_greets_answers_and_stops_after_limit(db_path, script_data):
    _save_script(db_path, script_data)
    hint = {"type": "completion", "index": 0}

    greeting = _turn(db_path, FakeGateway(), tutor_mode=True, current_step=hint)
    assert greeting.response == "Happy to answer questions about this lesson. Ask away!"
    assert greeting.next_step == StepPointer(type=StepType.COMPLETION, index=0)

    gateway = FakeGateway(*[f"answer {n}" for n in range(1, 7)])
    for n in range(1, 6):
        reply = _turn(db_path, gateway, tutor_mode=True, last_user_message_content=f"question {n}")
        assert reply.response == f"answer {n}"
        assert reply.is_correct is True

    limited = _turn(db_path, gateway, tutor_mode=True, last_user_message_content="question 6")

    assert limited.response.startswith("We've already covered 5 questions")
    assert len(gateway.calls) == 5
    first_call = gateway.calls[0]
    assert first_call["max_tokens"] == 500
    assert first_call["temperature"] == 0.2
    assert "Lesson goal:" in first_call["messages"][0]["content"]

    history = _history(db_path)
    assert all(m.step_snapshot.tutor for m in history)
    assert sum(1 for m in history if m.role == "user") == 5


def test_tutor_question_mid_lesson_keeps_progress(db_path, script_data):
    _save_script(db_path, script_data)
    gateway = FakeGateway("Good question.")

    _turn(db_path, gateway)
    _turn(db_path, gateway, tutor_mode=True, last_user_message_content="What is a goal?")
    response = _turn(db_path, gateway)

    assert response.next_step == StepPointer(type=StepType.WORDS, index=0)
    assert "<lesson_complete>" not in response.response
