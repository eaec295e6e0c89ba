# lesson_tutor/config.py
import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Read from INFERENCE_API_KEY first, then GROQ_API_KEY
    inference_api_key: str = Field(default="", validation_alias="INFERENCE_API_KEY")
    inference_base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        validation_alias="INFERENCE_BASE_URL",
    )
    inference_model: str = Field(default="llama-3.1-8b-instant", validation_alias="INFERENCE_MODEL")
    inference_timeout: float = Field(default=20.0, validation_alias="INFERENCE_TIMEOUT")

    # Optional single-shot provider tried before the hedged one (e.g. Cerebras).
    fast_inference_api_key: Optional[str] = Field(default=None, validation_alias="FAST_INFERENCE_API_KEY")
    fast_inference_base_url: str = Field(
        default="https://api.cerebras.ai/v1",
        validation_alias="FAST_INFERENCE_BASE_URL",
    )
    fast_inference_model: str = Field(default="llama3.1-8b", validation_alias="FAST_INFERENCE_MODEL")

    hedge_attempts: int = Field(default=3, validation_alias="HEDGE_ATTEMPTS")
    hedge_width: int = Field(default=2, validation_alias="HEDGE_WIDTH")
    hedge_backoff_base: float = Field(default=1.0, validation_alias="HEDGE_BACKOFF_BASE")
    hedge_backoff_cap: float = Field(default=5.0, validation_alias="HEDGE_BACKOFF_CAP")

    # Database path can be overridden; in Docker we usually use /app/data/lesson_tutor.db
    database_path: str = Field(default="lesson_tutor.db", validation_alias="DATABASE_PATH")
    database_timeout: float = Field(default=10.0, validation_alias="DATABASE_TIMEOUT")

    default_ui_lang: str = Field(default="ru", validation_alias="DEFAULT_UI_LANG")
    tutor_question_limit: int = Field(default=5, validation_alias="TUTOR_QUESTION_LIMIT")

    env: str = Field(default="dev", validation_alias="ENV")
    cors_origins: str = Field(default="", validation_alias="CORS_ORIGINS")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def _load_settings() -> Settings:
    s = Settings()

    # --- API KEY: accept INFERENCE_API_KEY or GROQ_API_KEY ---
    if not s.inference_api_key:
        s.inference_api_key = os.getenv("GROQ_API_KEY", "").strip()

    if not s.inference_api_key:
        print(
            "ERROR: Inference key not set. Provide INFERENCE_API_KEY or GROQ_API_KEY in environment/.env",
            file=sys.stderr,
        )
        sys.exit(1)

    # --- HEDGING: at least one attempt of at least one request ---
    if s.hedge_attempts < 1 or s.hedge_width < 1:
        print("ERROR: HEDGE_ATTEMPTS and HEDGE_WIDTH must be at least 1.", file=sys.stderr)
        sys.exit(1)

    # --- DB PATH: normalize ---
    # If path is relative, make it relative to the current working dir.
    if s.database_path != ":memory:":
        p = Path(s.database_path)
        if not p.is_absolute():
            s.database_path = str((Path.cwd() / p).resolve())

    return s


settings = _load_settings()
