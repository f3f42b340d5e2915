"""Local JSON state files (snapshots, health status, recovery history)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def load_json(path: Path, default: Any = None) -> Any:
    """Read a JSON state file, returning ``default`` if missing or corrupt."""
    if not path.exists():
        return default
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load state file {path}: {e}")
        return default


def save_json(path: Path, data: Any) -> bool:
    """Write a JSON state file atomically via a temp file and rename."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)
        return True
    except OSError as e:
        logger.warning(f"Failed to save state file {path}: {e}")
        return False
