import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel

from lesson_tutor.services.inference_gateway import InferenceGateway
from lesson_tutor.services.normalizer import lenient_equals
from lesson_tutor.services.phrases import load_prompt, phrase, resolve_lang

logger = logging.getLogger(__name__)

LANG_NAMES = {"ru": "Russian", "en": "English"}

_CODE_FENCE = re.compile(r"^```(?:json)?\s*([\s\S]*?)```$", re.IGNORECASE)


class ValidationResult(BaseModel):
    is_correct: bool
    feedback: str = ""
    provider: str = ""


@dataclass(frozen=True)
class ParsedGrade:
    is_correct: bool
    feedback: str


@dataclass(frozen=True)
class ParseFailure:
    reason: str


ParseOutcome = Union[ParsedGrade, ParseFailure]


def _load_grade(text: str) -> ParseOutcome:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseFailure(f"invalid json: {e.msg}")
    if not isinstance(data, dict):
        return ParseFailure("not an object")
    if not isinstance(data.get("isCorrect"), bool) or not isinstance(data.get("feedback"), str):
        return ParseFailure("missing isCorrect/feedback")
    return ParsedGrade(is_correct=data["isCorrect"], feedback=data["feedback"])


def _parse_direct(text: str) -> ParseOutcome:
    return _load_grade(text)


def _parse_fenced(text: str) -> ParseOutcome:
    match = _CODE_FENCE.match(text)
    if not match:
        return ParseFailure("no code fence")
    return _load_grade(match.group(1).strip())


def _parse_braced(text: str) -> ParseOutcome:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return ParseFailure("no braces")
    return _load_grade(text[start:end + 1])


def parse_grade(raw: str) -> ParseOutcome:
    """Recover ``{isCorrect, feedback}`` from a grader reply, most literal reading first."""
    text = str(raw or "").strip()
    outcome: ParseOutcome = ParseFailure("empty reply")
    for parser in (_parse_direct, _parse_fenced, _parse_braced):
        outcome = parser(text)
        if isinstance(outcome, ParsedGrade):
            return outcome
    return outcome


class AnswerValidator:
    def __init__(self, gateway: InferenceGateway, ui_lang: Optional[str] = None):
        self.gateway = gateway
        self.ui_lang = ui_lang

    def fast_path(self, expected: str, student_answer: str) -> Optional[ValidationResult]:
        """Answer the cheap cases without the grader; ``None`` means inference is needed."""
        if not str(student_answer or "").strip():
            return ValidationResult(is_correct=True, provider="empty_input")
        if lenient_equals(expected, student_answer):
            return ValidationResult(is_correct=True, provider="fast_path_exact_match")
        return None

    async def validate(
        self,
        step: str,
        expected: str,
        student_answer: str,
        extra: str = "",
        *,
        task: Optional[str] = None,
        ui_lang: Optional[str] = None,
    ) -> ValidationResult:
        quick = self.fast_path(expected, student_answer)
        if quick is not None:
            return quick

        lang = resolve_lang(ui_lang or self.ui_lang)
        messages = self.build_messages(step, expected, student_answer, extra, task=task, lang=lang)
        generation = await self.gateway.generate(messages)
        if not generation.success or not generation.text:
            logger.warning("Grader unavailable for step %s; asking the student to retry", step)
            return self._unverified(lang)

        outcome = parse_grade(generation.text)
        if isinstance(outcome, ParseFailure):
            logger.warning("Unusable grader reply for step %s (%s): %.200s", step, outcome.reason, generation.text)
            return self._unverified(lang)
        return ValidationResult(
            is_correct=outcome.is_correct,
            feedback=outcome.feedback,
            provider=generation.provider,
        )

    def build_messages(self, step, expected, student_answer, extra="", *, task=None, lang="ru") -> list[dict]:
        prompt = load_prompt("answer_validator.yaml")
        lang_name = LANG_NAMES.get(lang, "English")

        if step == "situations":
            system_prompt = prompt["situations_system_prompt"].replace("{task}", task or "")
        else:
            system_prompt = prompt["system_prompt"]
        system_prompt = system_prompt.replace("{lang_name}", lang_name)

        rules = [prompt["leniency_rules"].strip(), prompt["placeholder_rules"].strip()]
        if step == "constructor":
            rules.append(prompt["constructor_rules"].strip())

        user_message = prompt["user_template"].format(
            step=step,
            rules="\n\n".join(rules),
            expected=expected,
            answer=student_answer,
            context=f"Context: {extra}" if extra else "",
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message.strip()},
        ]

    def _unverified(self, lang: str) -> ValidationResult:
        return ValidationResult(
            is_correct=False,
            feedback=phrase("verification_failed", lang),
            provider="verification_failed",
        )
