from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Literal, Optional

LESSON_COMPLETED_TASK = "<lesson_completed>"


def as_variants(value: Any) -> list[str]:
    """Collapse an authored answer into a list of accepted sentences.

    ``"I am here"`` and ``["I", "am", "here"]`` both mean one sentence;
    ``[["I", "am"], ["I'm"]]`` lists alternatives.
    """
    if value is None:
        return []
    if isinstance(value, str):
        value = value.strip()
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        if not value:
            return []
        if isinstance(value[0], (list, tuple)):
            variants = []
            for alternative in value:
                joined = " ".join(str(w).strip() for w in alternative if str(w).strip())
                if joined:
                    variants.append(joined)
            return variants
        joined = " ".join(str(w).strip() for w in value if str(w).strip())
        return [joined] if joined else []
    return [str(value).strip()]


class ScriptModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class WordItem(ScriptModel):
    word: str
    translation: str = ""
    context: str = ""
    context_translation: str = ""
    highlights: list[str] = []


class WordsModule(ScriptModel):
    instruction: Optional[str] = None
    success_text: Optional[str] = Field(default=None, alias="successText")
    items: list[WordItem] = []


class AudioExercise(ScriptModel):
    expected: str = ""


class TextExercise(ScriptModel):
    expected: str = ""
    instruction: str = ""


class GrammarModule(ScriptModel):
    explanation: str = ""
    audio_exercise: Optional[AudioExercise] = None
    text_exercise: Optional[TextExercise] = None
    success_text: Optional[str] = Field(default=None, alias="successText")
    transition: Optional[str] = None

    @property
    def practice_kind(self) -> Optional[Literal["audio", "text"]]:
        # Audio wins when an author filled in both.
        if self.audio_exercise and self.audio_exercise.expected.strip():
            return "audio"
        if self.text_exercise and self.text_exercise.expected.strip():
            return "text"
        return None

    @property
    def practice_expected(self) -> str:
        if self.practice_kind == "audio":
            return self.audio_exercise.expected.strip()
        if self.practice_kind == "text":
            return self.text_exercise.expected.strip()
        return ""


class ConstructorTask(ScriptModel):
    words: list[str] = []
    correct: list[str] = []
    note: Optional[str] = None
    translation: Optional[str] = None

    @field_validator("correct", mode="before")
    @classmethod
    def _variants(cls, v):
        return as_variants(v)


class ConstructorModule(ScriptModel):
    instruction: str = ""
    success_text: Optional[str] = Field(default=None, alias="successText")
    tasks: list[ConstructorTask] = []


class MistakeTask(ScriptModel):
    options: list[str] = []
    answer: Literal["A", "B"]
    explanation: str = ""

    @field_validator("answer", mode="before")
    @classmethod
    def _upper(cls, v):
        return str(v or "").strip().upper()


class FindTheMistakeModule(ScriptModel):
    instruction: str = ""
    success_text: Optional[str] = Field(default=None, alias="successText")
    tasks: list[MistakeTask] = []


class SituationStep(ScriptModel):
    ai: str = ""
    ai_translation: Optional[str] = None
    task: str = ""
    expected_answer: list[str] = []

    @field_validator("expected_answer", mode="before")
    @classmethod
    def _variants(cls, v):
        return as_variants(v)

    @field_validator("ai", "task", mode="before")
    @classmethod
    def _strip(cls, v):
        return str(v or "").strip()

    @property
    def is_completion(self) -> bool:
        return self.task.lower() == LESSON_COMPLETED_TASK

    @property
    def is_playable(self) -> bool:
        if not self.ai or not self.task:
            return False
        return self.is_completion or bool(self.expected_answer)


class Scenario(ScriptModel):
    title: str = ""
    situation: str = ""
    steps: list[SituationStep] = []
    legacy: bool = False

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy(cls, data):
        # Single-step scenarios keep ai/task/expected_answer at the top level.
        if isinstance(data, dict) and not data.get("steps"):
            data = dict(data)
            data["steps"] = [
                {
                    "ai": data.pop("ai", ""),
                    "task": data.pop("task", ""),
                    "expected_answer": data.pop("expected_answer", None),
                }
            ]
            data["legacy"] = True
        return data


class SituationsModule(ScriptModel):
    instruction: Optional[str] = None
    success_text: Optional[str] = Field(default=None, alias="successText")
    scenarios: list[Scenario] = []


class LessonScript(ScriptModel):
    goal: str = ""
    words: WordsModule = WordsModule()
    grammar: GrammarModule = GrammarModule()
    constructor: ConstructorModule = ConstructorModule()
    find_the_mistake: FindTheMistakeModule = FindTheMistakeModule()
    situations: SituationsModule = SituationsModule()
    completion: str = ""
    day: int = 0
    lesson: int = 0

    @field_validator("words", mode="before")
    @classmethod
    def _words_list(cls, v):
        # Early scripts stored the vocabulary as a bare list of items.
        if v is None:
            return {}
        if isinstance(v, list):
            return {"items": v}
        return v

    @field_validator("grammar", "constructor", "find_the_mistake", "situations", mode="before")
    @classmethod
    def _missing_module(cls, v):
        return {} if v is None else v

    def task_count(self, module: str) -> int:
        if module == "constructor":
            return len(self.constructor.tasks)
        if module == "find_the_mistake":
            return len(self.find_the_mistake.tasks)
        if module == "situations":
            return len(self.situations.scenarios)
        return 0
