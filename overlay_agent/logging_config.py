"""Structured logging setup for the overlay agent.

Two output formats are supported, selected by ``settings.log_format``:

- ``json``: one JSON object per line, suitable for log shippers.
- ``text``: a compact human-readable line for interactive use.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from overlay_agent.config import settings

# Attributes present on every LogRecord; anything else came in via ``extra=``.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

_QUIET_LOGGERS = ("httpx", "httpcore", "docker", "urllib3", "uvicorn.access")


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


class AgentJSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def __init__(self, agent_id: str = ""):
        super().__init__()
        self.agent_id = agent_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "overlay-agent",
            "agent_id": self.agent_id,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str)


class AgentTextFormatter(logging.Formatter):
    """Human-readable formatter with a short agent id prefix."""

    def __init__(self, agent_id: str = ""):
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.agent_id = agent_id[:8]

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, self.datefmt)
        line = f"{ts} {record.levelname:<8} [{self.agent_id}] {record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_agent_logging(agent_id: str) -> None:
    """Install a single stdout handler on the root logger."""
    if settings.log_format.lower() == "json":
        formatter: logging.Formatter = AgentJSONFormatter(agent_id=agent_id)
    else:
        formatter = AgentTextFormatter(agent_id=agent_id)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
