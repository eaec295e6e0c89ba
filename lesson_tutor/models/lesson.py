import json
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class StepType(str, Enum):
    GOAL = "goal"
    WORDS = "words"
    GRAMMAR = "grammar"
    CONSTRUCTOR = "constructor"
    FIND_THE_MISTAKE = "find_the_mistake"
    SITUATIONS = "situations"
    COMPLETION = "completion"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepPointer(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: StepType
    index: int = Field(default=0, ge=0)
    sub_index: Optional[int] = Field(default=None, ge=0)
    tutor: Optional[bool] = None

    @property
    def sub(self) -> int:
        return self.sub_index or 0

    def to_snapshot(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_snapshot(cls, raw: Any) -> Optional["StepPointer"]:
        """Parse a stored or client-sent snapshot; anything malformed is ``None``."""
        if raw is None or isinstance(raw, StepPointer):
            return raw
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                return None
        if not isinstance(raw, dict):
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError:
            return None


class ChatMessage(WireModel):
    id: Optional[int] = None
    role: Literal["user", "model"]
    text: str
    day: int = 0
    lesson: int = 0
    message_order: Optional[int] = None
    step_snapshot: Optional[StepPointer] = None
    translation: Optional[str] = None


class LessonTurnRequest(WireModel):
    # Identifiers are checked by the orchestrator so a missing one is a 400, not a 422.
    lesson_id: Optional[str] = None
    user_id: Optional[str] = None
    current_step: Optional[dict[str, Any]] = None
    last_user_message_content: str = ""
    choice: Optional[str] = None
    ui_lang: Optional[str] = None
    validate_only: bool = False
    tutor_mode: bool = False


class LessonTurnResponse(WireModel):
    response: str = ""
    text: str = ""
    is_correct: bool = True
    feedback: str = ""
    next_step: Optional[StepPointer] = None
    translation: str = ""
    messages: list[ChatMessage] = []
    provider: Optional[str] = None


class LessonHistoryResponse(WireModel):
    lesson_id: str
    user_id: str
    messages: list[ChatMessage] = []
    current_step: Optional[StepPointer] = None
    completed: bool = False
