import yaml
from pathlib import Path
from typing import Optional

from lesson_tutor.config import settings

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

_prompt_cache: dict[str, dict] = {}


def load_prompt(name: str) -> dict:
    if name not in _prompt_cache:
        with open(PROMPTS_DIR / name, "r", encoding="utf-8") as f:
            _prompt_cache[name] = yaml.safe_load(f)
    return _prompt_cache[name]


def resolve_lang(ui_lang: Optional[str]) -> str:
    """Map a client locale ("ru-RU", "en", None...) onto a supported phrase set."""
    lang = (ui_lang or settings.default_ui_lang or "ru").strip().lower()
    return "ru" if lang.startswith("ru") else "en"


def phrase(key: str, lang: Optional[str] = None, **params) -> str:
    table = load_prompt("phrases.yaml")
    text = table[resolve_lang(lang)][key]
    return text.format(**params) if params else text
