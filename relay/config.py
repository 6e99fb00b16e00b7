# relay/config.py
"""
Configuration for Relay.

Process-level settings flow through this module. Values are loaded from
environment variables (via .env file) and validated with Pydantic. Routing
preferences live elsewhere: they are read per call from the layered JSON
settings files (see relay.routing.router.load_routing_config), because a
project checkout can change them without restarting the host.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode
import structlog


logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above relay/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

# Directory name used under $HOME and under a project root.
RELAY_DIR_NAME = ".relay"


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, str) and value.strip().startswith("["):
        try:
            value = json.loads(value)
        except ValueError:
            pass
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables. NoDecode keeps pydantic-settings
# from JSON-decoding the raw value first.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


def _parse_bool_flag(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


class OrchestrationConfig(BaseSettings):
    """Configuration for the subagent orchestration system."""

    max_parallel_tasks: int = Field(8, alias="RELAY_MAX_PARALLEL_TASKS")
    max_concurrency: int = Field(4, alias="RELAY_MAX_CONCURRENCY")
    # Child process
    subagent_command: str = Field("pi", alias="RELAY_SUBAGENT_COMMAND")
    kill_grace_seconds: float = Field(5.0, alias="RELAY_KILL_GRACE_SECONDS")
    # Watchdog: no stdout at all before startup_timeout, or silence longer
    # than inactivity_timeout once running, marks the child as stalled.
    startup_timeout: float = Field(120.0, alias="RELAY_SUBAGENT_STARTUP_TIMEOUT")
    inactivity_timeout: float = Field(900.0, alias="RELAY_SUBAGENT_INACTIVITY_TIMEOUT")
    # Classifier probe ceiling
    classifier_timeout: float = Field(10.0, alias="RELAY_CLASSIFIER_TIMEOUT")
    # Background retention
    history_tail_messages: int = Field(6, alias="RELAY_SUBAGENT_HISTORY_TAIL_MESSAGES")
    keep_full_history: Annotated[bool, BeforeValidator(_parse_bool_flag)] = Field(
        False, alias="RELAY_SUBAGENT_KEEP_FULL_HISTORY"
    )
    completed_retention_seconds: float = Field(1800.0, alias="RELAY_BACKGROUND_RETENTION")
    # Set for children by the parent; empty means unrestricted.
    allowed_agent_types: StrList = Field(default_factory=list, alias="RELAY_ALLOWED_AGENT_TYPES")
    is_subagent: Annotated[bool, BeforeValidator(_parse_bool_flag)] = Field(
        False, alias="RELAY_IS_SUBAGENT"
    )
    home_dir: Path = Field(default_factory=lambda: Path.home() / RELAY_DIR_NAME, alias="RELAY_HOME")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "OrchestrationConfig":
        self.max_parallel_tasks = max(1, int(self.max_parallel_tasks))
        self.max_concurrency = max(1, min(self.max_parallel_tasks, int(self.max_concurrency)))
        self.kill_grace_seconds = max(0.0, float(self.kill_grace_seconds))
        self.startup_timeout = max(1.0, float(self.startup_timeout))
        self.inactivity_timeout = max(1.0, float(self.inactivity_timeout))
        self.classifier_timeout = max(0.1, float(self.classifier_timeout))
        self.history_tail_messages = max(1, int(self.history_tail_messages))
        self.completed_retention_seconds = max(0.0, float(self.completed_retention_seconds))
        if not self.subagent_command.strip():
            logger.warning("config.empty_subagent_command", fallback="pi")
            self.subagent_command = "pi"
        return self

    @property
    def global_settings_path(self) -> Path:
        return self.home_dir / "settings.json"
