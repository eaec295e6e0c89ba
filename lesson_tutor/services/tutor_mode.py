"""
Post-lesson Q&A: the student asks free-form questions about a lesson they have
finished and the tutor answers with the whole script as context.
"""

import logging
from typing import Optional

from lesson_tutor.config import settings
from lesson_tutor.models.lesson import ChatMessage, LessonTurnResponse, StepPointer, StepType
from lesson_tutor.models.script import LessonScript
from lesson_tutor.services.inference_gateway import InferenceGateway
from lesson_tutor.services.message_store import MessageStore
from lesson_tutor.services.phrases import load_prompt, phrase, resolve_lang

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 12000
HISTORY_WINDOW = 12
TUTOR_STEP = StepPointer(type=StepType.COMPLETION, index=0, tutor=True)


def _lines(*parts: str) -> str:
    return "\n".join(p for p in parts if p)


def build_lesson_context(script: LessonScript) -> str:
    blocks = []
    if script.goal:
        blocks.append(f"Lesson goal: {script.goal}")

    if script.words.items:
        rows = ["Words:"]
        for i, w in enumerate(script.words.items, 1):
            rows.append(_lines(
                f"{i}. {w.word}" + (f" - {w.translation}" if w.translation else ""),
                f"   Example: {w.context}" if w.context else "",
                f"   Example translation: {w.context_translation}" if w.context_translation else "",
            ))
        blocks.append("\n".join(rows))

    grammar = script.grammar
    blocks.append("\n\n".join(p for p in (
        "Grammar:",
        f"Explanation:\n{grammar.explanation}" if grammar.explanation else "",
        f"Audio exercise expected: {grammar.audio_exercise.expected}" if grammar.audio_exercise else "",
        f"Text exercise expected: {grammar.text_exercise.expected}" if grammar.text_exercise else "",
        f"Text exercise instruction: {grammar.text_exercise.instruction}" if grammar.text_exercise else "",
    ) if p))

    if script.constructor.tasks:
        rows = ["Sentence builder:"]
        for i, task in enumerate(script.constructor.tasks, 1):
            rows.append(_lines(
                f"{i}. Words: {' '.join(task.words)}",
                f"   Correct: {' OR '.join(task.correct)}" if task.correct else "",
                f"   Translation: {task.translation}" if task.translation else "",
            ))
        blocks.append("\n".join(rows))

    if script.find_the_mistake.tasks:
        rows = ["Find the mistake:"]
        for i, task in enumerate(script.find_the_mistake.tasks, 1):
            options = task.options + ["", ""]
            rows.append(_lines(
                f"{i}. A) {options[0]}",
                f"   B) {options[1]}",
                f"   Answer: {task.answer}",
                f"   Explanation: {task.explanation}" if task.explanation else "",
            ))
        blocks.append("\n".join(rows))

    if script.situations.scenarios:
        rows = ["Situations:"]
        for i, scenario in enumerate(script.situations.scenarios, 1):
            rows.append(_lines(f"{i}. {scenario.title}", f"   Description: {scenario.situation}" if scenario.situation else ""))
            for j, step in enumerate(scenario.steps, 1):
                rows.append(_lines(
                    f"   Step {j}:",
                    f"     AI: {step.ai}" if step.ai else "",
                    f"     AI translation: {step.ai_translation}" if step.ai_translation else "",
                    f"     Task: {step.task}" if step.task else "",
                    f"     Expected: {' OR '.join(step.expected_answer)}" if step.expected_answer else "",
                ))
        blocks.append("\n".join(rows))

    if script.completion:
        blocks.append(f"Final: {script.completion}")

    text = "\n\n---\n\n".join(blocks)
    if len(text) <= MAX_CONTEXT_CHARS:
        return text
    return f"{text[:MAX_CONTEXT_CHARS]}\n\n{load_prompt('tutor_mode.yaml')['context_truncated']}"


class TutorMode:
    def __init__(self, store: MessageStore, gateway: InferenceGateway, question_limit: Optional[int] = None):
        self.store = store
        self.gateway = gateway
        self.question_limit = question_limit or settings.tutor_question_limit

    async def handle(
        self,
        script: LessonScript,
        lesson_id: str,
        user_id: str,
        question: str,
        ui_lang: Optional[str],
        hint: Optional[StepPointer],
    ) -> LessonTurnResponse:
        lang = resolve_lang(ui_lang)
        question = (question or "").strip()
        history = await self.store.tutor_messages(lesson_id, user_id)
        order = await self.store.last_message_order(lesson_id, user_id)
        saved: list[ChatMessage] = []

        async def save(role: str, text: str) -> ChatMessage:
            nonlocal order
            order += 1
            message = await self.store.append(
                lesson_id, user_id, role, text, order,
                day=script.day, lesson=script.lesson, step=TUTOR_STEP,
            )
            if role == "model":
                saved.append(message)
            return message

        asked = sum(1 for m in history if m.role == "user") + (1 if question else 0)
        if asked > self.question_limit:
            logger.info("Tutor question limit reached for %s/%s", lesson_id, user_id)
            text = phrase("tutor_limit_reached", lang, limit=self.question_limit)
            await save("model", text)
            return self._response(text, saved, hint)

        greeting = phrase("tutor_greeting", lang)
        if not question:
            await save("model", greeting)
            return self._response(greeting, saved, hint)

        system_prompt = load_prompt("tutor_mode.yaml")["system_prompt"][lang].format(
            context=build_lesson_context(script)
        )
        window = [m for m in history if m.text.strip()][-HISTORY_WINDOW:]
        messages = [{"role": "system", "content": system_prompt}]
        if window:
            messages += [
                {"role": "assistant" if m.role == "model" else "user", "content": m.text}
                for m in window
            ]
        else:
            messages.append({"role": "assistant", "content": greeting})
        messages.append({"role": "user", "content": question})

        result = await self.gateway.generate(messages, max_tokens=500, temperature=0.2)
        answer = result.text.strip() if result.success else ""
        if not answer:
            logger.warning("Tutor answer unavailable for %s/%s (%s)", lesson_id, user_id, result.provider)
            answer = phrase("tutor_unavailable", lang)

        await save("user", question)
        await save("model", answer)
        return self._response(answer, saved, hint, provider=result.provider)

    def _response(self, text, saved, hint, provider=None) -> LessonTurnResponse:
        return LessonTurnResponse(
            response=text,
            text=text,
            is_correct=True,
            next_step=hint,
            messages=saved,
            provider=provider,
        )
