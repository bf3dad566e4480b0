from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

# Context keys appended to plain log lines when present, in this order.
_PLAIN_CONTEXT_KEYS = ("subscription", "address", "batch")

# SDK loggers that emit a line per HTTP request at INFO.
_NOISY_LOGGERS = (
    "azure",
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.identity",
    "urllib3",
)


def _jsonable(value: Any, depth: int = 3) -> bool:
    if isinstance(value, (str, int, float, bool)):
        return True
    if depth <= 0:
        return False
    if isinstance(value, dict):
        return all(isinstance(k, str) and _jsonable(v, depth - 1) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return all(_jsonable(v, depth - 1) for v in value)
    return False


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_KEYS and value is not None
    }


def _utc(record: logging.LogRecord, timespec: str) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec=timespec)


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    json_logs: bool = False


class JsonFormatter(logging.Formatter):
    """One JSON object per line; `extra` fields that serialize cleanly are included."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": _utc(record, "milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in _extras(record).items():
            if _jsonable(value):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)


class PlainFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        extras = _extras(record)
        message = record.getMessage()
        step, phase = extras.get("step"), extras.get("phase")
        if step or phase:
            message = f"[{step or 'unknown'}:{phase or 'unknown'}] {message}"
        context = " ".join(f"{k}={extras[k]}" for k in _PLAIN_CONTEXT_KEYS if k in extras)
        if context:
            message = f"{message} {context}"
        if "duration_ms" in extras:
            message = f"{message} (duration_ms={extras['duration_ms']})"
        text = f"{_utc(record, 'seconds')} {record.levelname} {record.name}: {message}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def _level_from_str(level: str) -> int:
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(config: Optional[LogConfig] = None) -> None:
    """
    Configure the root logger once; later calls are no-ops.
    IPSKU_LOG_LEVEL / IPSKU_JSON_LOGS apply when no config is given.
    """
    if getattr(setup_logging, "_configured", False):
        return

    level_name = (config.level if config else None) or os.getenv("IPSKU_LOG_LEVEL") or "INFO"
    json_logs = config.json_logs if config else (os.getenv("IPSKU_JSON_LOGS") or "").lower() in ("1", "true", "yes")
    level = _level_from_str(level_name)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter() if json_logs else PlainFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    setattr(setup_logging, "_configured", True)


def add_run_log_file(log_path: Path) -> Path:
    """
    Mirror the console log into <outdir>/logs/<command>_<ts>.log, same format.
    Adding the same path twice is a no-op.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    target = os.path.abspath(log_path)
    root = logging.getLogger()
    if any(isinstance(h, logging.FileHandler) and h.baseFilename == target for h in root.handlers):
        return log_path

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(root.level)
    console = next((h for h in root.handlers if h.formatter is not None), None)
    handler.setFormatter(console.formatter if console is not None else PlainFormatter())
    root.addHandler(handler)
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
