from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MESSAGE_PREVIEW_LIMIT = 2_000

_WHITESPACE_RE = re.compile(r"\s+")


def configure_logging(log_file: str | None = None, *, level: int = logging.INFO) -> None:
    """Log to the console and, when given, to a persistent file."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)


def env_float(name: str, default: float, *, min_value: float | None = None, max_value: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    if min_value is not None:
        parsed = max(parsed, min_value)
    if max_value is not None:
        parsed = min(parsed, max_value)
    return parsed


def env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    return int(env_float(name, default, min_value=min_value, max_value=max_value))


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def env_list(name: str) -> list[str]:
    raw = os.getenv(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


def normalize_text(value: object) -> str:
    """Collapse whitespace runs to a single space and trim."""
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def truncate_message(text: str, limit: int = MESSAGE_PREVIEW_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def timestamp_ms() -> int:
    return int(utc_now().timestamp() * 1000)
