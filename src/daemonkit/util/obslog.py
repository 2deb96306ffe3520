from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from .time import utc_ts_iso


_CONFIGURED: Dict[str, bool] = {}
_STATE: Dict[str, Any] = {"with_now": False, "component": "daemonkit", "fmt": "text"}

# Correlation keys copied from `logger.*(..., extra={...})` when present.
_EXTRA_KEYS = ("pid", "step", "state", "signal")


def set_log_with_now(enabled: bool) -> None:
    """Prefix text log lines with the current UTC time (used while daemonized)."""
    _STATE["with_now"] = bool(enabled)


def log_with_now() -> bool:
    return bool(_STATE["with_now"])


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname} {record.name}: {record.getMessage()}"
        if _STATE["with_now"]:
            line = f"{utc_ts_iso(record.created)} {line}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonlFormatter(logging.Formatter):
    """Minimal JSONL formatter; one object per line with stable keys."""

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "daemonkit"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": utc_ts_iso(getattr(record, "created", 0.0) or 0.0),
            "level": str(record.levelname or ""),
            "logger": str(record.name or ""),
            "component": self._component,
            "msg": record.getMessage(),
        }

        for k in _EXTRA_KEYS:
            v = getattr(record, k, None)
            if v is None:
                continue
            sv = str(v).strip()
            if sv:
                payload[k] = sv

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            # Never crash logging.
            return '{"component":"%s","level":"%s","msg":"(log serialization failed)"}' % (
                self._component,
                payload.get("level", "INFO"),
            )


def _parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    v = getattr(logging, s, default)
    return v if isinstance(v, int) else default


def _make_formatter(fmt: str, component: str) -> logging.Formatter:
    if fmt == "jsonl":
        return JsonlFormatter(component=component)
    return TextFormatter()


def setup_root_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    fmt: str = "text",
    force: bool = False,
) -> logging.Handler:
    """Configure root logging once per process.

    - Uses a single StreamHandler with the text or JSONL formatter.
    - `force=True` replaces whatever handlers are installed.
    """
    root = logging.getLogger()
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force and root.handlers:
        return root.handlers[0]
    _CONFIGURED[key] = True
    _STATE["component"] = component
    _STATE["fmt"] = fmt

    lvl = _parse_level(level)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(_make_formatter(fmt, component))

    root.setLevel(lvl)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    return handler


def redirect_log(path: Path, mode: str = "a", *, encoding: str = "utf-8") -> logging.Handler:
    """Send all further root logging to `path`.

    The file is opened before any handler is removed, so when opening fails
    the OSError propagates and the previous destination still works.
    """
    root = logging.getLogger()
    handler = logging.FileHandler(str(path), mode=mode, encoding=encoding)
    handler.setLevel(root.level)
    handler.setFormatter(_make_formatter(str(_STATE["fmt"]), str(_STATE["component"])))
    for h in list(root.handlers):
        root.removeHandler(h)
        if isinstance(h, logging.FileHandler):
            h.close()
    root.addHandler(handler)
    return handler


def flush_logging() -> None:
    for h in list(logging.getLogger().handlers):
        try:
            h.flush()
        except (OSError, ValueError):
            pass
