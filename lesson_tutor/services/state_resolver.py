import json
import logging
import re
from typing import Any, Optional, Sequence

from lesson_tutor.models.lesson import ChatMessage, StepPointer, StepType
from lesson_tutor.models.script import LessonScript
from lesson_tutor.services.normalizer import normalize_lenient
from lesson_tutor.services.script_navigator import LESSON_COMPLETE

logger = logging.getLogger(__name__)

_CHIP = re.compile(r"<w>(.*?)<w>")


def _lesson_replies(history: Sequence[ChatMessage]) -> list[ChatMessage]:
    # Tutor-mode Q&A never moves the lesson pointer.
    replies = [
        m for m in history
        if m.role == "model" and not (m.step_snapshot is not None and m.step_snapshot.tutor)
    ]
    return sorted(replies, key=lambda m: m.message_order if m.message_order is not None else -1)


def _last_model_message(history: Sequence[ChatMessage]) -> Optional[ChatMessage]:
    replies = _lesson_replies(history)
    return replies[-1] if replies else None


def _last_snapshot(history: Sequence[ChatMessage]) -> Optional[StepPointer]:
    for message in reversed(_lesson_replies(history)):
        if message.step_snapshot is not None:
            return message.step_snapshot
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value >= 0:
        return value
    return None


def _infer_situation(payload: dict, script: Optional[LessonScript]) -> Optional[StepPointer]:
    scenario_index = _as_int(payload.get("scenario_index"))
    if scenario_index is not None:
        step_index = _as_int(payload.get("step_index")) or None
        return StepPointer(type=StepType.SITUATIONS, index=scenario_index, sub_index=step_index)
    if script is None:
        return None

    title = normalize_lenient(payload.get("title", ""))
    ai_line = normalize_lenient(payload.get("ai", ""))
    for i, scenario in enumerate(script.situations.scenarios):
        for j, step in enumerate(scenario.steps):
            if ai_line and normalize_lenient(step.ai) == ai_line:
                return StepPointer(type=StepType.SITUATIONS, index=i, sub_index=j or None)
    for i, scenario in enumerate(script.situations.scenarios):
        if title and normalize_lenient(scenario.title) == title:
            return StepPointer(type=StepType.SITUATIONS, index=i)
    return None


def _infer_constructor(text: str, script: Optional[LessonScript]) -> Optional[StepPointer]:
    chips = [normalize_lenient(c) for c in _CHIP.findall(text)]
    if not chips or script is None:
        return None
    for i, task in enumerate(script.constructor.tasks):
        if [normalize_lenient(w) for w in task.words] == chips:
            return StepPointer(type=StepType.CONSTRUCTOR, index=i)
    return None


def infer_from_content(message: ChatMessage, script: Optional[LessonScript] = None) -> Optional[StepPointer]:
    """Guess the step a tutor message belongs to from what it shows."""
    text = message.text or ""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None

    if isinstance(payload, dict):
        kind = payload.get("type")
        if kind == "situation":
            return _infer_situation(payload, script)
        if kind == "find_the_mistake":
            index = _as_int(payload.get("taskIndex"))
            return StepPointer(type=StepType.FIND_THE_MISTAKE, index=index) if index is not None else None
        if kind == "words_list":
            return StepPointer(type=StepType.WORDS, index=0)
        if kind == "goal":
            return StepPointer(type=StepType.GOAL, index=0)
        if kind in ("audio_exercise", "text_exercise"):
            return StepPointer(type=StepType.GRAMMAR, index=0)
        return None

    if LESSON_COMPLETE in text:
        return StepPointer(type=StepType.COMPLETION, index=0)
    return _infer_constructor(text, script)


def resolve(
    hint: Optional[StepPointer],
    history: Sequence[ChatMessage],
    script: Optional[LessonScript] = None,
) -> Optional[StepPointer]:
    """Work out the student's current step.

    Server-side records win over the client: the snapshot on the latest tutor
    message, then a step inferred from that message's content, then the latest
    snapshot anywhere in the log, and only then the caller's hint.
    """
    last = _last_model_message(history)
    if last is not None:
        if last.step_snapshot is not None:
            logger.debug("Step resolved from latest snapshot: %s", last.step_snapshot)
            return last.step_snapshot
        inferred = infer_from_content(last, script)
        if inferred is not None:
            logger.info("Step inferred from message content: %s", inferred)
            return inferred

    earlier = _last_snapshot(history)
    if earlier is not None:
        logger.info("Step resolved from an earlier snapshot: %s", earlier)
        return earlier

    if hint is not None:
        logger.info("No server-side step; trusting client hint %s", hint)
    return hint
