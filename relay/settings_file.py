"""JSON settings file utilities.

Relay reads two layered documents: a global one under ``~/.relay`` and a
project one under ``<project>/.relay``. Routing preferences live under the
``routing`` key of each.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import structlog

from relay.config import RELAY_DIR_NAME

logger = structlog.get_logger(__name__)

SETTINGS_FILENAME = "settings.json"


def global_settings_path(home: Optional[Path] = None) -> Path:
    """Path of the user-wide settings file (``~/.relay/settings.json``)."""
    base = home if home is not None else Path.home() / RELAY_DIR_NAME
    return base / SETTINGS_FILENAME


def project_settings_path(cwd: Path | str) -> Path:
    """Path of the project-local settings file (``<cwd>/.relay/settings.json``)."""
    return Path(cwd) / RELAY_DIR_NAME / SETTINGS_FILENAME


def load_settings(path: Path) -> dict:
    """Load a settings document.

    Missing files, unreadable files and anything that is not a JSON object
    all yield an empty dict; callers treat settings as optional.
    """
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("settings.unreadable", path=str(path), error=str(exc))
        return {}
    if not isinstance(data, dict):
        logger.warning("settings.not_an_object", path=str(path))
        return {}
    return data


def write_settings(path: Path, data: dict) -> None:
    """Atomic write with tempfile + rename.

    Creates parent directories if needed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, suffix=".tmp", prefix=".relay_settings_"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _split_dotted_key(dotted_key: str) -> list[str]:
    """Validate and split a dotted key. Raises ValueError on empty segments."""
    if not dotted_key or not dotted_key.strip():
        raise ValueError("Key must not be empty")
    keys = dotted_key.split(".")
    if any(not k for k in keys):
        raise ValueError(f"Key contains empty segments: {dotted_key!r}")
    return keys


def get_value(data: dict, dotted_key: str) -> Any:
    """Get a nested value by dotted key (e.g., 'routing.costPreference')."""
    current: Any = data
    for key in _split_dotted_key(dotted_key):
        if not isinstance(current, dict) or key not in current:
            raise KeyError(dotted_key)
        current = current[key]
    return current


def set_value(data: dict, dotted_key: str, value: Any) -> dict:
    """Set a nested value by dotted key, creating intermediate objects."""
    keys = _split_dotted_key(dotted_key)
    current = data
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value
    return data


def delete_value(data: dict, dotted_key: str) -> dict:
    """Delete a nested value by dotted key.

    Raises KeyError if the key does not exist.
    """
    keys = _split_dotted_key(dotted_key)
    current: Any = data
    for key in keys[:-1]:
        if not isinstance(current, dict) or key not in current:
            raise KeyError(dotted_key)
        current = current[key]
    if not isinstance(current, dict) or keys[-1] not in current:
        raise KeyError(dotted_key)
    del current[keys[-1]]
    return data
