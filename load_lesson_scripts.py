#!/usr/bin/env python3
"""
Import authored lesson scripts into the lesson_scripts table.

Run from project root:
    python load_lesson_scripts.py lessons/day1_lesson1.json lessons/day1_lesson2.yaml

Each file holds one script or a list of scripts. Besides the script itself an
entry may carry lesson_id, day, lesson and level; lesson_id defaults to the
file name without its extension. Scripts that do not validate are reported and
skipped.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from lesson_tutor.config import settings
from lesson_tutor.db.database import get_db, init_db
from lesson_tutor.models.script import LessonScript
from lesson_tutor.services.message_store import MessageStore

META_KEYS = ("lesson_id", "day", "lesson", "level")


def read_entries(path: Path) -> list[dict]:
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    entries = data if isinstance(data, list) else [data]
    return [e for e in entries if isinstance(e, dict)]


async def load(paths: list[Path], db_path: str) -> int:
    await init_db(db_path)
    db = await get_db(db_path)
    failures = 0
    try:
        store = MessageStore(db)
        for path in paths:
            try:
                entries = read_entries(path)
            except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
                print(f"  {path}: cannot read ({e})")
                failures += 1
                continue

            for n, entry in enumerate(entries):
                meta = {k: entry.pop(k) for k in META_KEYS if k in entry}
                lesson_id = str(meta.get("lesson_id") or (path.stem if len(entries) == 1 else f"{path.stem}_{n + 1}"))
                try:
                    LessonScript.model_validate(entry)
                except ValidationError as e:
                    print(f"  {path} [{lesson_id}]: invalid script, skipping\n{e}")
                    failures += 1
                    continue

                await store.save_script(
                    lesson_id,
                    entry,
                    day=int(meta.get("day") or 0),
                    lesson=int(meta.get("lesson") or 0),
                    level=meta.get("level"),
                )
                print(f"  Loaded {lesson_id} from {path}")
    finally:
        await db.close()
    return failures


def main():
    parser = argparse.ArgumentParser(description="Import lesson scripts into the tutor database.")
    parser.add_argument("files", nargs="+", type=Path, help="JSON or YAML script files")
    parser.add_argument("--db", default=settings.database_path, help="SQLite database path")
    args = parser.parse_args()

    failures = asyncio.run(load(args.files, args.db))
    print(f"\n--- Done: {len(args.files)} file(s), {failures} failure(s) ---")
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
