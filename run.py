"""
Start the lesson tutor API.

    python run.py                 # dev: reload on, bound to localhost
    ENV=prod python run.py        # no reload, bound to all interfaces

HOST, PORT and DEV_RELOAD override the defaults picked from ENV.
"""

import os
import uvicorn

from lesson_tutor.config import settings

if __name__ == "__main__":
    dev = settings.env.lower() != "prod"
    reload = os.environ.get("DEV_RELOAD", "1" if dev else "0") == "1"
    host = os.environ.get("HOST", "127.0.0.1" if dev else "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    print(f"Lesson tutor on http://{host}:{port} (env={settings.env}, db={settings.database_path})")
    uvicorn.run(
        "lesson_tutor.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )
