"""
Lesson progression over a pre-authored script.

The lesson runs goal -> words -> grammar -> constructor -> find_the_mistake ->
situations -> completion. Every function here is pure: it takes a validated
``LessonScript`` and a ``StepPointer`` and returns the tutor messages to show
plus the pointer the student lands on. Modules without tasks are never shown;
entering one falls through to the next module in the fixed order.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Optional

from lesson_tutor.models.lesson import StepPointer, StepType
from lesson_tutor.models.script import LessonScript, Scenario
from lesson_tutor.services.normalizer import OR_SEPARATOR
from lesson_tutor.services.phrases import phrase

AUDIO_INPUT = "<audio_input>"
TEXT_INPUT = "<text_input>"
LESSON_COMPLETE = "<lesson_complete>"

# Modules that follow grammar, in lesson order.
TASK_MODULES = (StepType.CONSTRUCTOR, StepType.FIND_THE_MISTAKE, StepType.SITUATIONS)

_ASSIGNMENT = re.compile(r"<h>(?:Задание|Task|Assignment)<h>([\s\S]+)", re.IGNORECASE)


@dataclass(frozen=True)
class TutorMessage:
    text: str
    step: Optional[StepPointer]
    translation: str = ""


@dataclass
class NavigatorResult:
    messages: list[TutorMessage] = field(default_factory=list)
    next_step: Optional[StepPointer] = None
    halted: bool = False

    @property
    def completed(self) -> bool:
        return any(LESSON_COMPLETE in m.text for m in self.messages)


@dataclass(frozen=True)
class GradingTarget:
    step: str
    expected: str
    extra: str = ""
    task: Optional[str] = None


def _pointer(step_type: StepType, index: int = 0, sub_index: Optional[int] = None) -> StepPointer:
    return StepPointer(type=step_type, index=index, sub_index=sub_index or None)


def _payload(**fields) -> str:
    return json.dumps({k: v for k, v in fields.items() if v is not None}, ensure_ascii=False)


def extract_assignment(explanation: str) -> str:
    match = _ASSIGNMENT.search(explanation or "")
    return match.group(1).strip() if match else ""


def remove_assignment(explanation: str) -> str:
    return _ASSIGNMENT.sub("", explanation or "").strip()


# ---- payload builders ----

def _section(title_key: str, lang, step: StepPointer, content: str = "") -> TutorMessage:
    return TutorMessage(_payload(type="section", title=phrase(title_key, lang), content=content), step)


def _words_list(script: LessonScript, step: StepPointer) -> TutorMessage:
    words = [item.model_dump() for item in script.words.items]
    return TutorMessage(_payload(type="words_list", instruction=script.words.instruction, words=words), step)


def _grammar_exercise(script: LessonScript, step: StepPointer) -> TutorMessage:
    grammar = script.grammar
    assignment = extract_assignment(grammar.explanation)
    if grammar.practice_kind == "audio":
        content = f"{assignment}\n\n{AUDIO_INPUT}" if assignment else AUDIO_INPUT
        return TutorMessage(
            _payload(type="audio_exercise", content=content, expected=grammar.practice_expected),
            step,
        )
    instruction = grammar.text_exercise.instruction.strip()
    body = "\n\n".join(part for part in (assignment, instruction) if part)
    content = f"{body}\n\n{TEXT_INPUT}" if body else TEXT_INPUT
    return TutorMessage(
        _payload(type="text_exercise", content=content, expected=grammar.practice_expected),
        step,
    )


def constructor_prompt(script: LessonScript, index: int) -> str:
    module = script.constructor
    task = module.tasks[index]
    chips = " ".join(f"<w>{w}<w>" for w in task.words)
    note = f"\n\n💡 {task.note}" if task.note else ""
    return f"🎯 {module.instruction}{note}\n\n{chips}\n\n{TEXT_INPUT}"


def _mistake_payload(script: LessonScript, index: int) -> str:
    module = script.find_the_mistake
    task = module.tasks[index]
    return _payload(
        type="find_the_mistake",
        instruction=module.instruction,
        taskIndex=index,
        total=len(module.tasks),
        options=task.options,
        answer=task.answer,
        explanation=task.explanation,
    )


def _situation_payload(scenario: Scenario, scenario_index: int, step_index: int,
                       feedback: Optional[str] = None, result: Optional[str] = None) -> str:
    step = scenario.steps[step_index]
    fields = dict(
        type="situation",
        title=scenario.title,
        situation=scenario.situation,
        ai=step.ai,
        ai_translation=step.ai_translation,
        task=step.task,
        scenario_index=scenario_index,
        step_index=step_index,
        steps_total=len(scenario.steps),
        feedback=feedback,
        result=result,
    )
    if step.is_completion:
        fields["is_completion_step"] = True
    else:
        fields["text_exercise"] = {"expected": OR_SEPARATOR.join(step.expected_answer), "instruction": step.task}
        fields["input_marker"] = TEXT_INPUT
    return _payload(**fields)


# ---- module entry ----

def _module_has_tasks(script: LessonScript, module: StepType) -> bool:
    if module == StepType.SITUATIONS:
        return _next_situation(script, 0, 0) is not None
    return script.task_count(module.value) > 0


def _next_situation(script: LessonScript, scenario_index: int, step_index: int) -> Optional[tuple[int, int]]:
    """First playable situation step at or after (scenario_index, step_index)."""
    scenarios = script.situations.scenarios
    i, j = scenario_index, step_index
    while i < len(scenarios):
        steps = scenarios[i].steps
        while j < len(steps):
            if steps[j].is_playable:
                return i, j
            j += 1
        i, j = i + 1, 0
    return None


def _lead(text: Optional[str], step: StepPointer) -> list[TutorMessage]:
    return [TutorMessage(text, step)] if text else []


def _enter_completion(script: LessonScript, lead: Optional[str] = None) -> NavigatorResult:
    step = _pointer(StepType.COMPLETION)
    text = f"{script.completion} {LESSON_COMPLETE}".strip()
    if lead:
        text = f"{lead}\n\n{text}"
    return NavigatorResult([TutorMessage(text, step)], step)


def _play_situations(script: LessonScript, scenario_index: int, step_index: int, lang,
                     lead: Optional[str] = None, title_section: bool = False) -> NavigatorResult:
    """Show the next playable situation step; sentinel steps are shown and passed through."""
    messages: list[TutorMessage] = []
    position = _next_situation(script, scenario_index, step_index)
    while position is not None:
        i, j = position
        scenario = script.situations.scenarios[i]
        step = _pointer(StepType.SITUATIONS, i, j)
        if lead:
            messages.extend(_lead(lead, step))
            lead = None
        if title_section:
            messages.append(_section("section_situations", lang, step))
            title_section = False
        situation_step = scenario.steps[j]
        messages.append(TutorMessage(_situation_payload(scenario, i, j), step, situation_step.ai_translation or ""))
        if not situation_step.is_completion:
            return NavigatorResult(messages, step)
        position = _next_situation(script, i, j + 1)

    finished = _enter_completion(script, script.situations.success_text)
    return NavigatorResult(messages + finished.messages, finished.next_step)


def _enter_module(script: LessonScript, module: StepType, lang, lead: Optional[str]) -> NavigatorResult:
    if module == StepType.SITUATIONS:
        return _play_situations(script, 0, 0, lang, lead=lead, title_section=True)

    step = _pointer(module)
    messages = _lead(lead, step)
    if module == StepType.CONSTRUCTOR:
        messages.append(_section("section_constructor", lang, step))
        messages.append(TutorMessage(constructor_prompt(script, 0), step))
    else:
        messages.append(_section("section_find_the_mistake", lang, step))
        messages.append(TutorMessage(_mistake_payload(script, 0), step))
    return NavigatorResult(messages, step)


def _enter_after(script: LessonScript, finished: StepType, lang, lead: Optional[str] = None) -> NavigatorResult:
    """Enter the first module after *finished* that has something to do."""
    remaining = TASK_MODULES if finished == StepType.GRAMMAR else TASK_MODULES[TASK_MODULES.index(finished) + 1:]
    for module in remaining:
        if _module_has_tasks(script, module):
            return _enter_module(script, module, lang, lead)
    return _enter_completion(script, lead)


def _enter_grammar(script: LessonScript, lang, lead: Optional[str] = None) -> NavigatorResult:
    grammar = script.grammar
    theory = remove_assignment(grammar.explanation)

    if grammar.practice_kind is None:
        # Theory without practice is still shown, then the lesson moves on.
        result = _enter_after(script, StepType.GRAMMAR, lang)
        head = _lead(lead, result.next_step)
        if theory:
            head.append(_section("section_grammar", lang, result.next_step, theory))
        return NavigatorResult(head + result.messages, result.next_step)

    step = _pointer(StepType.GRAMMAR)
    messages = _lead(lead, step)
    messages.append(_section("section_grammar", lang, step, theory))
    messages.append(_grammar_exercise(script, step))
    return NavigatorResult(messages, step)


def _enter_words(script: LessonScript, lang) -> NavigatorResult:
    if not script.words.items:
        return _enter_grammar(script, lang)
    step = _pointer(StepType.WORDS)
    return NavigatorResult([_section("section_words", lang, step), _words_list(script, step)], step)


# ---- public API ----

def start_lesson(script: LessonScript, lang=None) -> NavigatorResult:
    step = _pointer(StepType.GOAL)
    return NavigatorResult([TutorMessage(_payload(type="goal", goal=script.goal), step)], step)


def step_exists(script: LessonScript, step: Optional[StepPointer]) -> bool:
    if step is None:
        return False
    if step.type in (StepType.GOAL, StepType.WORDS, StepType.COMPLETION):
        return step.index == 0
    if step.type == StepType.GRAMMAR:
        return step.index == 0 and script.grammar.practice_kind is not None
    if step.type == StepType.CONSTRUCTOR:
        return step.index < len(script.constructor.tasks)
    if step.type == StepType.FIND_THE_MISTAKE:
        return step.index < len(script.find_the_mistake.tasks)
    if step.type == StepType.SITUATIONS:
        scenarios = script.situations.scenarios
        if step.index >= len(scenarios) or step.sub >= len(scenarios[step.index].steps):
            return False
        return scenarios[step.index].steps[step.sub].is_playable
    return False


def grading_target(script: LessonScript, step: StepPointer) -> Optional[GradingTarget]:
    """What the student's answer at *step* is checked against; ``None`` when nothing is graded."""
    if not step_exists(script, step):
        return None

    if step.type == StepType.GRAMMAR:
        grammar = script.grammar
        extra = grammar.text_exercise.instruction if grammar.practice_kind == "text" else ""
        return GradingTarget(f"grammar_{grammar.practice_kind}_exercise", grammar.practice_expected, extra)

    if step.type == StepType.CONSTRUCTOR:
        task = script.constructor.tasks[step.index]
        if not task.correct:
            return None
        extra = f"Given words: {', '.join(task.words)}"
        if task.translation:
            extra += f". Meaning: {task.translation}"
        return GradingTarget("constructor", OR_SEPARATOR.join(task.correct), extra)

    if step.type == StepType.SITUATIONS:
        scenario = script.situations.scenarios[step.index]
        situation_step = scenario.steps[step.sub]
        if situation_step.is_completion or not situation_step.expected_answer:
            return None
        extra = f"Situation: {scenario.situation}. AI line: {situation_step.ai}"
        return GradingTarget(
            "situations",
            OR_SEPARATOR.join(situation_step.expected_answer),
            extra,
            task=situation_step.task,
        )

    return None


def check_choice(script: LessonScript, step: StepPointer, choice: Optional[str], answer_text: str = "") -> bool:
    if step.type != StepType.FIND_THE_MISTAKE or not step_exists(script, step):
        return False
    submitted = (choice or "").strip().upper()
    if not submitted:
        # Typed text counts only when it is the bare letter.
        typed = (answer_text or "").strip().upper()
        if typed not in ("A", "B"):
            return False
        submitted = typed
    return submitted == script.find_the_mistake.tasks[step.index].answer


def advance(
    script: LessonScript,
    step: StepPointer,
    *,
    is_correct: bool = True,
    feedback: str = "",
    choice: Optional[str] = None,
    lang=None,
) -> NavigatorResult:
    if not step_exists(script, step):
        return NavigatorResult([TutorMessage(phrase("scenario_error", lang), step)], step, halted=True)

    if step.type == StepType.GOAL:
        return _enter_words(script, lang)

    if step.type == StepType.WORDS:
        return _enter_grammar(script, lang, script.words.success_text or phrase("words_success", lang))

    if step.type == StepType.GRAMMAR:
        grammar = script.grammar
        if not is_correct:
            marker = AUDIO_INPUT if grammar.practice_kind == "audio" else TEXT_INPUT
            retry = phrase("grammar_retry", lang, feedback=feedback or phrase("retry_default", lang))
            return NavigatorResult([TutorMessage(f"{retry}\n\n{marker}", step)], step)
        lead = grammar.success_text or grammar.transition or phrase("grammar_success", lang)
        return _enter_after(script, StepType.GRAMMAR, lang, lead)

    if step.type == StepType.CONSTRUCTOR:
        if not is_correct:
            task = script.constructor.tasks[step.index]
            text = phrase("constructor_retry", lang, feedback=feedback or phrase("retry_default", lang))
            if task.words:
                words = ", ".join(f'"{w}"' for w in task.words)
                text = f"{text}\n\n{phrase('constructor_words_hint', lang, words=words)}"
            return NavigatorResult([TutorMessage(text, step)], step)
        if step.index + 1 < len(script.constructor.tasks):
            next_step = _pointer(StepType.CONSTRUCTOR, step.index + 1)
            return NavigatorResult([TutorMessage(constructor_prompt(script, step.index + 1), next_step)], next_step)
        lead = script.constructor.success_text or phrase("constructor_success", lang)
        return _enter_after(script, StepType.CONSTRUCTOR, lang, lead)

    if step.type == StepType.FIND_THE_MISTAKE:
        if choice is not None:
            is_correct = check_choice(script, step, choice)
        if not is_correct:
            return NavigatorResult([], step)
        if step.index + 1 < len(script.find_the_mistake.tasks):
            next_step = _pointer(StepType.FIND_THE_MISTAKE, step.index + 1)
            return NavigatorResult([TutorMessage(_mistake_payload(script, step.index + 1), next_step)], next_step)
        lead = script.find_the_mistake.success_text or phrase("find_the_mistake_success", lang)
        return _enter_after(script, StepType.FIND_THE_MISTAKE, lang, lead)

    if step.type == StepType.SITUATIONS:
        scenario = script.situations.scenarios[step.index]
        if not is_correct:
            situation_step = scenario.steps[step.sub]
            text = _situation_payload(
                scenario,
                step.index,
                step.sub,
                feedback=feedback or phrase("situation_retry", lang, task=situation_step.task),
                result="incorrect",
            )
            return NavigatorResult([TutorMessage(text, step, situation_step.ai_translation or "")], step)
        return _play_situations(script, step.index, step.sub + 1, lang)

    # Completion is terminal: the text is repeated and nothing follows.
    return NavigatorResult([TutorMessage(f"{script.completion} {LESSON_COMPLETE}".strip(), None)], None)
