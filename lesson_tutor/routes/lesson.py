from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from lesson_tutor.db.database import get_db
from lesson_tutor.models.lesson import (
    LessonHistoryResponse,
    LessonTurnRequest,
    LessonTurnResponse,
    StepPointer,
)
from lesson_tutor.services.errors import LessonError
from lesson_tutor.services.inference_gateway import InferenceGateway, build_gateway
from lesson_tutor.services.lesson_orchestrator import LessonOrchestrator
from lesson_tutor.services.message_store import MessageStore
from lesson_tutor.services.state_resolver import resolve

router = APIRouter(prefix="/api/lesson", tags=["lesson"])


async def get_store() -> AsyncIterator[MessageStore]:
    db = await get_db()
    try:
        yield MessageStore(db)
    finally:
        await db.close()


def get_gateway() -> InferenceGateway:
    return build_gateway()


@router.post("/turn", response_model=LessonTurnResponse)
async def lesson_turn(
    body: LessonTurnRequest,
    store: MessageStore = Depends(get_store),
    gateway: InferenceGateway = Depends(get_gateway),
):
    try:
        return await LessonOrchestrator(store, gateway).handle(body)
    except LessonError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.get("/{lesson_id}/history", response_model=LessonHistoryResponse)
async def lesson_history(
    lesson_id: str,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    store: MessageStore = Depends(get_store),
):
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required")

    try:
        script = await store.fetch_script(lesson_id)
    except LessonError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)

    messages = await store.history(lesson_id, user_id)
    progress = await store.get_progress(lesson_id, user_id)
    hint: Optional[StepPointer] = progress["current_step"] if progress else None

    return LessonHistoryResponse(
        lesson_id=lesson_id,
        user_id=user_id,
        messages=messages,
        current_step=resolve(hint, messages, script),
        completed=progress["completed"] if progress else False,
    )
