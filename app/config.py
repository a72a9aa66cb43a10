"""Environment configuration and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


APP_ENV = os.getenv("APP_ENV", "dev").strip().lower() or "dev"
LOG_LEVEL = os.getenv("DYNAPP_LOG_LEVEL", "INFO").strip().upper() or "INFO"
WEBHOOKS_ENABLED = _flag("DYNAPP_WEBHOOKS_ENABLED", "1")
WEBHOOK_TIMEOUT_S = float(os.getenv("DYNAPP_WEBHOOK_TIMEOUT_S", "10"))
WEBHOOK_WORKERS = int(os.getenv("DYNAPP_WEBHOOK_WORKERS", "4"))
NOTIFY_SELF = _flag("DYNAPP_NOTIFY_SELF", "0")
FORMULA_DEPTH_LIMIT = int(os.getenv("DYNAPP_FORMULA_DEPTH_LIMIT", "32"))

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return
    logging.basicConfig(level=getattr(logging, (level or LOG_LEVEL), logging.INFO))
    _configured = True
