import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from lesson_tutor.db.database import init_db
from lesson_tutor.config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# CORS configuration based on environment
# ENV=prod → require explicit CORS_ORIGINS or use restrictive default
# ENV=dev (default) → permissive localhost origins
_env = settings.env.lower()
_cors_origins_setting = settings.cors_origins

if _cors_origins_setting:
    _allowed_origins = [o.strip() for o in _cors_origins_setting.split(",") if o.strip()]
elif _env == "prod":
    # No origins configured in prod = no CORS (same-origin only)
    _allowed_origins = []
else:
    _allowed_origins = [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


app = FastAPI(title="Guided Lesson Tutor", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

from lesson_tutor.routes.lesson import router as lesson_router

app.include_router(lesson_router)


@app.get("/health")
async def health_check():
    return {"status": "ok", "env": settings.env}
