"""
metascry — start script

Starts the FastAPI server with uvicorn.

Usage:
    python start.py            — start server
    python start.py --reload   — start server with auto-reload
"""

import sys
import os
from pathlib import Path

ROOT_DIR = Path(__file__).parent


def start_server(reload=False):
    from web.config import settings

    print(f"\n── Starting metascry on http://{settings.host}:{settings.port} ────────────")

    # core/ and web/ live at ROOT — add it to PYTHONPATH so imports resolve
    env = os.environ.copy()
    existing = env.get("PYTHONPATH", "")
    paths = [str(ROOT_DIR)]
    if existing:
        paths.append(existing)
    env["PYTHONPATH"] = os.pathsep.join(paths)

    os.chdir(ROOT_DIR)
    os.execvpe("uvicorn", [
        "uvicorn", "web.app:app",
        "--host", settings.host,
        "--port", str(settings.port),
        "--log-level", settings.log_level,
        "--workers", "1",
        *(["--reload"] if reload or settings.debug else []),
    ], env)


if __name__ == "__main__":
    sys.path.insert(0, str(ROOT_DIR))
    start_server(reload="--reload" in sys.argv)
