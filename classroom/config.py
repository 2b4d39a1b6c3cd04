"""
Runtime settings, all read from environment variables.

Defaults are good enough for a laptop run (SQLite file under data/, a dev JWT
secret). Anything secret MUST be overridden in a real deployment.
"""
from __future__ import annotations
import logging
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = BASE_DIR / "data"

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'app.db'}")

JWT_SECRET = os.getenv("JWT_SECRET", "secret-needs-to-be-changed")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_MINUTES = int(os.getenv("REFRESH_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))

# the one address that gets admin + approved on signup
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")

# create the profile row inside the signup transaction (server side).
# Turning it off leaves provisioning to the lazy path in the session context.
PROFILE_TRIGGER = os.getenv("PROFILE_TRIGGER", "1").strip().lower() not in ("0", "false", "no", "off")

# idle browser sessions are dropped after this many minutes
BROWSER_SESSION_TTL_MINUTES = int(os.getenv("BROWSER_SESSION_TTL_MINUTES", "720"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
