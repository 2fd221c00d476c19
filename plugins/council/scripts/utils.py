#!/usr/bin/env python3
"""
Agent Council Utilities

Common helpers for the live log, file I/O, text normalization and name validation.
"""
from __future__ import annotations

import datetime as dt
import json
import os
import re
import stat
import tempfile
from pathlib import Path
from typing import Any, IO, Optional

import logging

logger = logging.getLogger("council")

# Valid characters for role/profile names (security: prevent path traversal)
VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Global live log file handle (set by the CLI for the duration of a run)
_live_log: Optional[IO[str]] = None


def set_live_log(log_file: Optional[IO[str]]) -> None:
    """Set the global live log file handle."""
    global _live_log
    _live_log = log_file


def write_live(msg: str, prefix: str = "") -> None:
    """Write to live log file for real-time monitoring via tail -f."""
    if _live_log:
        ts = dt.datetime.now().strftime("%H:%M:%S")
        line = f"[{ts}] {prefix}{msg}\n" if prefix else f"[{ts}] {msg}\n"
        _live_log.write(line)
        _live_log.flush()


def utc_now_iso() -> str:
    """Return current UTC time in ISO format."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def read_text(path: Path) -> str:
    """Read text from file, return empty string if file doesn't exist."""
    return path.read_text(encoding="utf-8") if path.exists() else ""


def ensure_secure_dir(path: Path) -> None:
    """Create directory with 0700 permissions (owner only) for security."""
    path.mkdir(parents=True, exist_ok=True)
    path.chmod(stat.S_IRWXU)  # 0700: rwx for owner only


def write_text_atomic(path: Path, text: str) -> None:
    """Atomic write: write to temp file, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.rename(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def load_json(path: Path, default: Any) -> Any:
    """Load JSON from file. Returns default if file missing or invalid."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {path}: {e}")
        return default


def save_json_atomic(path: Path, obj: Any) -> None:
    """Save object as JSON with atomic write."""
    write_text_atomic(path, json.dumps(obj, indent=2, ensure_ascii=False))


def normalize_text(s: str) -> str:
    """Lowercase and collapse whitespace for case-insensitive comparison."""
    return " ".join(s.strip().lower().split())


def tail(text: str, limit: int) -> str:
    """Return the last `limit` characters of text."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[-limit:]


def safe_label(s: str) -> str:
    """Reduce an arbitrary label to filesystem-safe characters."""
    cleaned = re.sub(r"[^a-zA-Z0-9_-]+", "-", s).strip("-")
    return cleaned or "agent"


def validate_name(name: str, kind: str) -> None:
    """Validate role/profile name to prevent path traversal."""
    if not VALID_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid {kind} name '{name}': must contain only alphanumeric, underscore, or hyphen"
        )
