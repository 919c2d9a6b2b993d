"""
metascry — Configuration

All settings are read from environment variables.
In development, values are loaded from a .env file in the project root.

Usage:
    from web.config import settings
    print(settings.cache_limit)
"""

import os
import tempfile
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (two levels up from web/)
_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)


def _csv(value: str) -> tuple[str, ...]:
    return tuple(v.strip() for v in value.split(",") if v.strip())


class Settings:
    # Server
    host: str        = os.getenv("HOST", "0.0.0.0")
    port: int        = int(os.getenv("PORT", "8000"))
    debug: bool      = os.getenv("DEBUG", "false").lower() == "true"

    # Logging — DEBUG=true forces debug output
    log_level: str   = "debug" if debug else os.getenv("LOG_LEVEL", "info").lower()

    # Uploaded raw bytes — default 50 MB
    max_upload_mb: int    = int(os.getenv("MAX_UPLOAD_MB", "50"))
    max_upload_bytes: int = max_upload_mb * 1024 * 1024

    # CORS — comma-separated allowed origins, default "*" for the extension
    cors_origins: list = [
        o.strip()
        for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Metadata cache
    cache_path: Path = Path(
        os.getenv("CACHE_PATH", str(Path(tempfile.gettempdir()) / "metascry" / "cache.sqlite3"))
    )
    cache_limit: int = int(os.getenv("CACHE_LIMIT", "2000"))

    # Adaptive fetch
    range_probe_bytes: int      = int(os.getenv("RANGE_PROBE_BYTES", "65536"))
    range_escalation_bytes: int = int(os.getenv("RANGE_ESCALATION_BYTES", "131072"))
    range_timeout: float        = float(os.getenv("RANGE_TIMEOUT_SECONDS", "10"))
    full_fetch_timeout: float   = float(os.getenv("FULL_FETCH_TIMEOUT_SECONDS", "60"))
    range_exempt_domains: tuple = _csv(os.getenv("RANGE_EXEMPT_DOMAINS", "civitai.com"))
    user_agent: str             = os.getenv("USER_AGENT", "metascry/0.1.0")

    # Parsing
    stealth_min_pixels: int = int(os.getenv("STEALTH_MIN_PIXELS", "250000"))
    metadata_keywords: tuple = _csv(os.getenv(
        "METADATA_KEYWORDS",
        "parameters,prompt,workflow,generation_data,Description,Comment",
    ))

    # App metadata
    app_version: str = "0.1.0"
    app_title: str   = "metascry — Generation Metadata Service"


settings = Settings()
