"""Runtime configuration, read once from the environment at import time."""

import os
from pathlib import Path

HOST = os.environ.get("CODEFORGE_HOST", "localhost")
PORT = int(os.environ.get("CODEFORGE_PORT", "8000"))
LOG_LEVEL = os.environ.get("CODEFORGE_LOG_LEVEL", "INFO").upper()

# Practice-data sync and browser login
API_BASE = os.environ.get("CODEFORGE_API_BASE", "https://codexly.netlify.app/api").rstrip("/")
LOGIN_URL = os.environ.get("CODEFORGE_LOGIN_URL", "https://codexly.netlify.app/login")
TELEMETRY_TIMEOUT = float(os.environ.get("CODEFORGE_TELEMETRY_TIMEOUT", "10"))

CREDENTIALS_PATH = Path(
    os.environ.get("CODEFORGE_CREDENTIALS", str(Path.home() / ".codeforge" / "credentials.json"))
)

# None lets the SDK pick its default model
GENERATION_MODEL = os.environ.get("CODEFORGE_MODEL") or None

TERMINAL_SHELL = os.environ.get("SHELL", "/bin/sh")


def get_cors_origins() -> list[str]:
    """Get CORS origins from environment variable or use default."""
    cors_origins_str = os.environ.get("CODEFORGE_CORS_ORIGINS", f"http://{HOST}:{PORT}")
    origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    return origins if origins else [f"http://{HOST}:{PORT}"]
