import logging
from typing import Optional

from lesson_tutor.models.lesson import (
    ChatMessage,
    LessonTurnRequest,
    LessonTurnResponse,
    StepPointer,
    StepType,
)
from lesson_tutor.models.script import LessonScript
from lesson_tutor.services import script_navigator as navigator
from lesson_tutor.services.answer_validator import AnswerValidator, ValidationResult
from lesson_tutor.services.errors import ClientInputError
from lesson_tutor.services.inference_gateway import InferenceGateway
from lesson_tutor.services.message_store import MessageStore
from lesson_tutor.services.phrases import phrase, resolve_lang
from lesson_tutor.services.state_resolver import resolve
from lesson_tutor.services.tutor_mode import TutorMode

logger = logging.getLogger(__name__)


class LessonOrchestrator:
    """Handles one lesson turn: resolve the step, grade the answer, advance and persist."""

    def __init__(
        self,
        store: MessageStore,
        gateway: InferenceGateway,
        validator: Optional[AnswerValidator] = None,
        tutor: Optional[TutorMode] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.validator = validator or AnswerValidator(gateway)
        self.tutor = tutor or TutorMode(store, gateway)

    async def handle(self, request: LessonTurnRequest) -> LessonTurnResponse:
        lesson_id = (request.lesson_id or "").strip()
        user_id = (request.user_id or "").strip()
        if not lesson_id or not user_id:
            raise ClientInputError("lessonId and userId are required")

        script = await self.store.fetch_script(lesson_id)
        lang = resolve_lang(request.ui_lang)
        hint = StepPointer.from_snapshot(request.current_step)
        answer = (request.last_user_message_content or "").strip()

        if request.tutor_mode:
            return await self.tutor.handle(script, lesson_id, user_id, answer, request.ui_lang, hint)

        history = await self.store.history(lesson_id, user_id)
        step = resolve(hint, history, script)

        if step is None:
            if request.validate_only:
                return LessonTurnResponse(is_correct=True)
            if history:
                logger.warning("No recoverable step for %s/%s despite %d messages", lesson_id, user_id, len(history))
                return self._halted(lang, None)
            logger.info("Starting lesson %s for %s", lesson_id, user_id)
            result = navigator.start_lesson(script, lang)
            saved = await self._persist(script, lesson_id, user_id, result, lang)
            return self._response(result, saved, ValidationResult(is_correct=True))

        if not navigator.step_exists(script, step):
            logger.warning("Step %s does not exist in lesson %s", step.to_snapshot(), lesson_id)
            return self._halted(lang, step)

        if request.validate_only:
            validation = await self._grade(script, step, answer, request.choice, lang)
            return LessonTurnResponse(
                is_correct=validation.is_correct,
                feedback=validation.feedback,
                next_step=step,
                provider=validation.provider or None,
            )

        if step.type == StepType.COMPLETION:
            result = navigator.advance(script, step, lang=lang)
            return self._response(result, [], ValidationResult(is_correct=True))

        order = await self.store.last_message_order(lesson_id, user_id)
        user_text = answer or (request.choice or "").strip()
        if user_text:
            order += 1
            await self.store.append(
                lesson_id, user_id, "user", user_text, order,
                day=script.day, lesson=script.lesson,
            )

        pending: Optional[ChatMessage] = None
        target = navigator.grading_target(script, step)
        if target is not None and self.validator.fast_path(target.expected, answer) is None:
            order += 1
            pending = await self.store.insert_pending(
                lesson_id, user_id, phrase("checking_answer", lang), order,
                day=script.day, lesson=script.lesson,
            )

        validation = await self._grade(script, step, answer, request.choice, lang)
        result = navigator.advance(
            script,
            step,
            is_correct=validation.is_correct,
            feedback=validation.feedback,
            lang=lang,
        )
        logger.info(
            "Lesson %s/%s: %s -> %s (correct=%s, provider=%s)",
            lesson_id, user_id, step.to_snapshot(),
            result.next_step.to_snapshot() if result.next_step else None,
            validation.is_correct, validation.provider,
        )

        saved = await self._persist(script, lesson_id, user_id, result, lang, pending, order)
        return self._response(result, saved, validation)

    async def _grade(self, script: LessonScript, step: StepPointer, answer: str, choice: Optional[str],
                     lang: str) -> ValidationResult:
        if step.type == StepType.FIND_THE_MISTAKE:
            is_correct = navigator.check_choice(script, step, choice, answer)
            return ValidationResult(is_correct=is_correct, provider="choice")

        target = navigator.grading_target(script, step)
        if target is None:
            return ValidationResult(is_correct=True)
        return await self.validator.validate(
            target.step,
            target.expected,
            answer,
            target.extra,
            task=target.task,
            ui_lang=lang,
        )

    async def _persist(
        self,
        script: LessonScript,
        lesson_id: str,
        user_id: str,
        result: navigator.NavigatorResult,
        lang: str,
        pending: Optional[ChatMessage] = None,
        order: Optional[int] = None,
    ) -> list[ChatMessage]:
        if order is None:
            order = await self.store.last_message_order(lesson_id, user_id)

        messages = list(result.messages)
        if pending is not None and not messages:
            messages = [navigator.TutorMessage(phrase("retry_default", lang), result.next_step)]

        saved: list[ChatMessage] = []
        for message in messages:
            if pending is not None:
                await self.store.overwrite(pending.id, message.text, message.step, message.translation)
                saved.append(pending.model_copy(update={
                    "text": message.text,
                    "step_snapshot": message.step,
                    "translation": message.translation or None,
                }))
                pending = None
                continue
            order += 1
            saved.append(await self.store.append(
                lesson_id, user_id, "model", message.text, order,
                day=script.day, lesson=script.lesson,
                step=message.step, translation=message.translation,
            ))

        if result.next_step is not None:
            await self.store.upsert_progress(lesson_id, user_id, result.next_step, result.completed)
        return saved

    def _halted(self, lang: str, step: Optional[StepPointer]) -> LessonTurnResponse:
        text = phrase("scenario_error", lang)
        return LessonTurnResponse(response=text, text=text, is_correct=False, feedback=text, next_step=step)

    def _response(self, result: navigator.NavigatorResult, saved: list[ChatMessage],
                  validation: ValidationResult) -> LessonTurnResponse:
        last = result.messages[-1] if result.messages else None
        text = last.text if last else ""
        if not saved and result.messages:
            # Nothing was persisted (completion replay); still show what the navigator said.
            saved = [
                ChatMessage(role="model", text=m.text, step_snapshot=m.step, translation=m.translation or None)
                for m in result.messages
            ]
        return LessonTurnResponse(
            response=text,
            text=text,
            is_correct=validation.is_correct,
            feedback=validation.feedback,
            next_step=result.next_step,
            translation=last.translation if last else "",
            messages=saved,
            provider=validation.provider or None,
        )
