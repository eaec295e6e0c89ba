import aiosqlite
from pathlib import Path
from typing import Optional
from lesson_tutor.config import settings

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


async def get_db(path: Optional[str] = None) -> aiosqlite.Connection:
    db = await aiosqlite.connect(path or settings.database_path, timeout=settings.database_timeout)
    db.row_factory = aiosqlite.Row
    return db


async def init_db(path: Optional[str] = None):
    db_path = path or settings.database_path
    if db_path != ":memory:":
        # Ensure parent directory exists (for Docker volume mounts)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    db = await get_db(db_path)
    try:
        await apply_schema(db)
    finally:
        await db.close()


async def apply_schema(db: aiosqlite.Connection):
    schema = SCHEMA_PATH.read_text()
    await db.executescript(schema)
    await db.commit()

    # Run migrations for existing databases
    await _run_migrations(db)


async def _run_migrations(db):
    """Add columns to existing tables if they don't exist yet."""
    migrations = [
        ("lesson_scripts", "level", "ALTER TABLE lesson_scripts ADD COLUMN level TEXT"),
        ("chat_messages", "translation", "ALTER TABLE chat_messages ADD COLUMN translation TEXT"),
        # Older logs were written before per-message step snapshots existed
        ("chat_messages", "current_step_snapshot", "ALTER TABLE chat_messages ADD COLUMN current_step_snapshot TEXT"),
        ("lesson_progress", "completed", "ALTER TABLE lesson_progress ADD COLUMN completed INTEGER NOT NULL DEFAULT 0"),
    ]

    for table, column, sql in migrations:
        cursor = await db.execute(f"PRAGMA table_info({table})")
        columns = [row[1] for row in await cursor.fetchall()]
        if column not in columns:
            await db.execute(sql)
            await db.commit()
