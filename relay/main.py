"""
Relay — Main Entry Point.

Configures structlog once, then hands control to the Click command tree.
Subagent children inherit the parent's environment, so the same redaction
processor keeps provider keys out of both parent and child logs.
"""

from __future__ import annotations

import logging
import re

import structlog

_logging_configured = False

# Provider keys look like "sk-...", "sk-ant-...", "xai-...", "AIza...".
_SECRET_RE = re.compile(r"\b(?:sk-[A-Za-z0-9_-]{16,}|xai-[A-Za-z0-9]{16,}|AIza[0-9A-Za-z_-]{20,})")


def _redact_sensitive_fields(logger, method_name, event_dict):
    """
    Structlog processor that masks credentials and truncates task text.

    Task descriptions and system prompts can be arbitrarily long and may
    quote file contents, so they are clipped before rendering.
    """
    long_keys = {"task", "prompt", "system_prompt", "stderr", "output"}
    max_display_len = 120

    for key, val in list(event_dict.items()):
        if not isinstance(val, str):
            continue
        if "key" in key.lower() and val:
            event_dict[key] = "[REDACTED]"
            continue
        val = _SECRET_RE.sub("[REDACTED]", val)
        if key in long_keys and len(val) > max_display_len:
            val = val[:max_display_len] + "... [truncated]"
        event_dict[key] = val

    return event_dict


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog and standard-library logging for Relay entry points.

    Safe to call more than once; subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=logging.DEBUG if verbose else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _redact_sensitive_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    """Console-script entry point."""
    from relay.cli.app import cli

    cli(obj={})


if __name__ == "__main__":
    main()
