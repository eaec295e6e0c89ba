import asyncio
import copy
import os
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings are read once at import time, so the environment must be ready first.
os.environ["INFERENCE_API_KEY"] = "test-key"
os.environ["DEFAULT_UI_LANG"] = "en"
os.environ["DATABASE_PATH"] = str(Path(tempfile.gettempdir()) / "lesson_tutor_test.db")
os.environ.pop("FAST_INFERENCE_API_KEY", None)

from lesson_tutor.db.database import init_db  # noqa: E402

SCRIPT = {
    "goal": "Learn to introduce yourself and order in a cafe",
    "words": {
        "instruction": "Listen and repeat",
        "successText": "Nice work with the words!",
        "items": [
            {
                "word": "name",
                "translation": "имя",
                "context": "My name is Anna.",
                "context_translation": "Меня зовут Анна.",
            },
            {
                "word": "coffee",
                "translation": "кофе",
                "context": "A coffee, please.",
                "context_translation": "Кофе, пожалуйста.",
            },
        ],
    },
    "grammar": {
        "explanation": "Use 'I am' to talk about yourself.\n<h>Задание<h>Say that you are a student.",
        "audio_exercise": {"expected": "I am a student"},
        "successText": "Great grammar!",
    },
    "constructor": {
        "instruction": "Build the sentence",
        "tasks": [
            {"words": ["I", "am", "Anna"], "correct": "I am Anna", "note": "Start with I"},
            {"words": ["She", "is", "a", "doctor"], "correct": ["She", "is", "a", "doctor"]},
        ],
    },
    "find_the_mistake": {
        "instruction": "Which sentence has a mistake?",
        "tasks": [
            {"options": ["I is happy.", "I am happy."], "answer": "A", "explanation": "Use am with I."},
            {"options": ["He are tall.", "He is tall."], "answer": "b", "explanation": "Trick task."},
        ],
    },
    "situations": {
        "successText": "All situations done!",
        "scenarios": [
            {
                "title": "At the cafe",
                "situation": "You are ordering a drink",
                "ai": "Hi! What can I get you?",
                "task": "Order a coffee",
                "expected_answer": "A coffee, please",
            },
            {
                "title": "Meeting a colleague",
                "situation": "Your first day at work",
                "steps": [
                    {"ai": "Hello, I'm Tom.", "task": "Introduce yourself", "expected_answer": "I am [name]"},
                    {"ai": "Nice to meet you!", "task": "<lesson_completed>"},
                ],
            },
            {
                "title": "At the station",
                "situation": "You need a train ticket",
                "steps": [
                    {
                        "ai": "Can I help you?",
                        "ai_translation": "Могу я вам помочь?",
                        "task": "Ask for a ticket",
                        "expected_answer": [["One", "ticket", "please"], ["A", "ticket", "please"]],
                    },
                ],
            },
        ],
    },
    "completion": "You finished the lesson!",
}


@pytest.fixture
def script_data():
    return copy.deepcopy(SCRIPT)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "lesson_tutor.db")
    asyncio.run(init_db(path))
    return path
