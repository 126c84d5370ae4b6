import contextlib
import contextvars
import json
import logging
import os
import sys
import time
from typing import Any, Dict, Iterator, Optional, TextIO

_STRUCTURED_FIELDS = ("op", "step", "resource", "iface", "daemon", "state", "outcome")

# Set for the duration of one controller operation on the calling thread.
_correlation: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "hotspotd_correlation_id", default=None
)


@contextlib.contextmanager
def correlation(correlation_id: Optional[str]) -> Iterator[None]:
    """Tag every record logged inside the block with `correlation_id`."""
    token = _correlation.set(correlation_id)
    try:
        yield
    finally:
        _correlation.reset(token)


def current_correlation() -> Optional[str]:
    return _correlation.get()


class JsonFormatter(logging.Formatter):
    """One JSON object per line. Fields passed via `extra` win over the context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.threadName and record.threadName != "MainThread":
            payload["thread"] = record.threadName
        cid = getattr(record, "correlation_id", None) or current_correlation()
        if cid:
            payload["correlation_id"] = cid
        for k in _STRUCTURED_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), default=str)


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.environ.get("HOTSPOTD_LOG_LEVEL") or "INFO").upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """
    Route the root logger to a single JSON handler on stderr by default;
    stdout carries `status` output.
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(_resolve_level(level))

    handler = logging.StreamHandler(stream=stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
