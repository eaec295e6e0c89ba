import json
import logging
from typing import Any, Optional

import aiosqlite
from pydantic import ValidationError

from lesson_tutor.models.lesson import ChatMessage, StepPointer
from lesson_tutor.models.script import LessonScript
from lesson_tutor.services.errors import ScriptFetchError

logger = logging.getLogger(__name__)


def _snapshot_json(step: Optional[StepPointer]) -> Optional[str]:
    return json.dumps(step.to_snapshot()) if step is not None else None


def _row_to_message(row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        role=row["role"],
        text=row["text"],
        day=row["day"],
        lesson=row["lesson"],
        message_order=row["message_order"],
        step_snapshot=StepPointer.from_snapshot(row["current_step_snapshot"]),
        translation=row["translation"],
    )


class MessageStore:
    """Conversation log and lesson scripts for one request's database connection."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    # ---- scripts ----

    async def fetch_script(self, lesson_id: str) -> LessonScript:
        cursor = await self.db.execute(
            "SELECT day, lesson, script FROM lesson_scripts WHERE lesson_id = ?",
            (lesson_id,),
        )
        row = await cursor.fetchone()
        if not row:
            raise ScriptFetchError(f"Lesson script not found: {lesson_id}")

        try:
            data = json.loads(row["script"])
            script = LessonScript.model_validate(data)
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error("Unreadable lesson script %s: %s", lesson_id, e)
            raise ScriptFetchError(f"Lesson script is unreadable: {lesson_id}") from e

        return script.model_copy(update={"day": row["day"], "lesson": row["lesson"]})

    async def save_script(self, lesson_id: str, script: dict[str, Any], day: int = 0, lesson: int = 0,
                          level: Optional[str] = None):
        await self.db.execute(
            """INSERT INTO lesson_scripts (lesson_id, day, lesson, level, script)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(lesson_id) DO UPDATE SET
                   day = excluded.day,
                   lesson = excluded.lesson,
                   level = excluded.level,
                   script = excluded.script""",
            (lesson_id, day, lesson, level, json.dumps(script, ensure_ascii=False)),
        )
        await self.db.commit()

    # ---- messages ----

    async def history(self, lesson_id: str, user_id: str) -> list[ChatMessage]:
        cursor = await self.db.execute(
            """SELECT * FROM chat_messages
               WHERE lesson_id = ? AND user_id = ?
               ORDER BY message_order, id""",
            (lesson_id, user_id),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(r) for r in rows]

    async def last_message_order(self, lesson_id: str, user_id: str) -> int:
        cursor = await self.db.execute(
            "SELECT MAX(message_order) FROM chat_messages WHERE lesson_id = ? AND user_id = ?",
            (lesson_id, user_id),
        )
        row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0

    async def append(
        self,
        lesson_id: str,
        user_id: str,
        role: str,
        text: str,
        message_order: int,
        *,
        day: int = 0,
        lesson: int = 0,
        step: Optional[StepPointer] = None,
        translation: Optional[str] = None,
    ) -> ChatMessage:
        cursor = await self.db.execute(
            """INSERT INTO chat_messages
               (lesson_id, user_id, day, lesson, role, text, translation, message_order, current_step_snapshot)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (lesson_id, user_id, day, lesson, role, text, translation or None, message_order, _snapshot_json(step)),
        )
        await self.db.commit()
        return ChatMessage(
            id=cursor.lastrowid,
            role=role,
            text=text,
            day=day,
            lesson=lesson,
            message_order=message_order,
            step_snapshot=step,
            translation=translation or None,
        )

    async def insert_pending(self, lesson_id: str, user_id: str, text: str, message_order: int, *,
                             day: int = 0, lesson: int = 0) -> ChatMessage:
        """Placeholder tutor message shown while an answer is being graded."""
        return await self.append(lesson_id, user_id, "model", text, message_order, day=day, lesson=lesson)

    async def overwrite(self, message_id: int, text: str, step: Optional[StepPointer],
                        translation: Optional[str] = None):
        await self.db.execute(
            """UPDATE chat_messages
               SET text = ?, current_step_snapshot = ?, translation = ?
               WHERE id = ?""",
            (text, _snapshot_json(step), translation or None, message_id),
        )
        await self.db.commit()

    async def tutor_messages(self, lesson_id: str, user_id: str) -> list[ChatMessage]:
        return [
            m for m in await self.history(lesson_id, user_id)
            if m.step_snapshot is not None and m.step_snapshot.tutor
        ]

    # ---- progress ----

    async def upsert_progress(self, lesson_id: str, user_id: str, step: Optional[StepPointer], completed: bool):
        await self.db.execute(
            """INSERT INTO lesson_progress (lesson_id, user_id, current_step_snapshot, completed, updated_at)
               VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(lesson_id, user_id) DO UPDATE SET
                   current_step_snapshot = excluded.current_step_snapshot,
                   completed = MAX(lesson_progress.completed, excluded.completed),
                   updated_at = CURRENT_TIMESTAMP""",
            (lesson_id, user_id, _snapshot_json(step), int(completed)),
        )
        await self.db.commit()

    async def get_progress(self, lesson_id: str, user_id: str) -> Optional[dict]:
        cursor = await self.db.execute(
            "SELECT * FROM lesson_progress WHERE lesson_id = ? AND user_id = ?",
            (lesson_id, user_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return {
            "current_step": StepPointer.from_snapshot(row["current_step_snapshot"]),
            "completed": bool(row["completed"]),
            "updated_at": row["updated_at"],
        }
