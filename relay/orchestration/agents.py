"""
Agent Registry — discovering and resolving named agent definitions.

Agent files are Markdown documents with a YAML frontmatter block:

    ---
    name: reviewer
    description: Reviews diffs for correctness
    tools: read, grep, Task(scout)
    maxTurns: 20
    ---

    System prompt body...

User-scope directories (``~/.claude/agents`` then ``~/.relay/agents``) are
scanned before project-scope ones (``<root>/.claude/agents`` then
``<root>/.relay/agents``); later directories win on name clashes. A
``_defaults.md`` file in any of them supplies fallback values for agents
that have to be synthesized because nothing matched.
"""

from __future__ import annotations

import math
import re
import subprocess
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field

from relay.config import RELAY_DIR_NAME
from relay.orchestration.models import (
    AgentConfig,
    AgentDefaults,
    AgentScope,
    AgentSource,
    Isolation,
    ResolvedAgent,
)

logger = structlog.get_logger(__name__)

# Built-in tools available in a default child process.
BUILTIN_TOOLS = ["read", "bash", "edit", "write", "grep", "find", "ls"]

MATCH_THRESHOLD = 40
DEFAULTS_FILENAME = "_defaults.md"

EPHEMERAL_DESCRIPTION = "Ephemeral agent for task delegation"
EPHEMERAL_PROMPT = (
    "You are {name}, a specialized subagent. "
    "Complete the delegated task thoroughly and return your results."
)

_FRONTMATTER_RE = re.compile(r"\A\s*---[ \t]*\n(.*?)^---[ \t]*$\n?(.*)\Z", re.DOTALL | re.MULTILINE)
_TASK_TOOL_RE = re.compile(r"^Task\((.+)\)$")


class AgentDefinitionError(ValueError):
    """Raised when an agent file carries a value that cannot be honored."""


class AgentNotFoundError(LookupError):
    """Raised when defaults demand an error for unknown agent names."""


class AgentDiscovery(BaseModel):
    model_config = ConfigDict(frozen=True)

    agents: list[AgentConfig] = Field(default_factory=list)
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)
    project_agents_dirs: list[str] = Field(default_factory=list)

    def names(self) -> list[str]:
        return [a.name for a in self.agents]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split a Markdown document into (frontmatter mapping, body).

    Documents without a frontmatter block, or whose block is not a YAML
    mapping, yield an empty mapping and the whole text as body.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text.strip()
    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning("agents.invalid_yaml", error=str(e))
        return {}, text.strip()
    if not isinstance(meta, dict):
        return {}, text.strip()
    return meta, (match.group(2) or "").strip()


def _split_list(value: Any) -> Optional[list[str]]:
    """Comma string or YAML list → list of non-empty strings, else None."""
    if value is None:
        return None
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value if isinstance(item, (str, int, float))]
    else:
        return None
    items = [item for item in items if item]
    return items or None


def _parse_max_turns(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        turns = int(str(value).strip())
    except ValueError:
        return None
    return turns if turns > 0 else None


def parse_isolation(value: Any, source_path: str) -> Optional[Isolation]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise AgentDefinitionError(
            f'Invalid isolation in {source_path}: expected string "worktree".'
        )
    if value.strip().lower() == "worktree":
        return "worktree"
    raise AgentDefinitionError(
        f'Invalid isolation in {source_path}: received "{value}". Allowed: worktree.'
    )


def _parse_mcp_servers(value: Any, agent_name: str) -> Optional[list[str]]:
    if isinstance(value, list):
        names = []
        for entry in value:
            if isinstance(entry, str):
                names.append(entry)
            elif isinstance(entry, dict):
                logger.warning(
                    "agents.inline_mcp_server_unsupported",
                    agent=agent_name,
                    hint="Use a string reference to a configured server name",
                )
        return _split_list(names)
    return _split_list(value)


def parse_agent_file(path: Path, source: AgentSource) -> Optional[AgentConfig]:
    """Parse one agent file.

    Returns None (with a warning logged) if the file is unreadable or lacks a
    name or description. Raises AgentDefinitionError for an invalid
    isolation value, which is a configuration mistake worth surfacing.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("agents.read_error", path=str(path), error=str(e))
        return None

    meta, body = parse_frontmatter(raw)
    name = str(meta.get("name") or "").strip()
    description = str(meta.get("description") or "").strip()
    if not name or not description:
        logger.warning(
            "agents.missing_fields",
            path=str(path),
            missing=[f for f, v in (("name", name), ("description", description)) if not v],
        )
        return None

    tools: list[str] = []
    allowed_agent_types: list[str] = []
    for entry in _split_list(meta.get("tools")) or []:
        task_match = _TASK_TOOL_RE.match(entry)
        if task_match:
            allowed_agent_types.append(task_match.group(1).strip())
        else:
            tools.append(entry)

    model = meta.get("model")
    return AgentConfig(
        name=name,
        description=description,
        tools=tools or None,
        disallowed_tools=_split_list(meta.get("disallowedTools")),
        skills=_split_list(meta.get("skills")),
        allowed_agent_types=allowed_agent_types or None,
        mcp_servers=_parse_mcp_servers(meta.get("mcpServers"), name),
        max_turns=_parse_max_turns(meta.get("maxTurns")),
        model=model.strip() if isinstance(model, str) and model.strip() else None,
        isolation=parse_isolation(meta.get("isolation"), str(path)),
        system_prompt=body,
        source=source,
        file_path=str(path),
    )


def load_agents_from_dir(directory: Path, source: AgentSource) -> list[AgentConfig]:
    """Parse every ``*.md`` agent file in a directory, sorted by filename.

    Files starting with ``_`` (defaults, drafts) are skipped.
    """
    if not directory.is_dir():
        return []
    agents: list[AgentConfig] = []
    for md_file in sorted(directory.glob("*.md")):
        if md_file.name.startswith("_") or not md_file.is_file():
            continue
        agent = parse_agent_file(md_file, source)
        if agent is not None:
            agents.append(agent)
    return agents


def load_defaults_from_dir(directory: Path) -> Optional[AgentDefaults]:
    """Parse ``_defaults.md`` in a directory; only the frontmatter matters."""
    path = directory / DEFAULTS_FILENAME
    if not path.is_file():
        return None
    try:
        meta, _ = parse_frontmatter(path.read_text(encoding="utf-8"))
    except OSError as e:
        logger.warning("agents.defaults_read_error", path=str(path), error=str(e))
        return None
    if not meta:
        return None

    values: dict[str, Any] = {}
    for key, field_name in (("tools", "tools"), ("disallowedTools", "disallowed_tools")):
        parsed = _split_list(meta.get(key))
        if parsed is not None:
            values[field_name] = parsed
    max_turns = _parse_max_turns(meta.get("maxTurns"))
    if max_turns is not None:
        values["max_turns"] = max_turns
    mcp_servers = _parse_mcp_servers(meta.get("mcpServers"), DEFAULTS_FILENAME)
    if mcp_servers is not None:
        values["mcp_servers"] = mcp_servers
    isolation = parse_isolation(meta.get("isolation"), str(path))
    if isolation is not None:
        values["isolation"] = isolation
    if meta.get("missingAgentBehavior") == "error":
        values["missing_agent_behavior"] = "error"
    fallback = meta.get("fallbackAgent")
    if isinstance(fallback, str) and fallback.strip():
        values["fallback_agent"] = fallback.strip()
    return AgentDefaults(**values)


def merge_defaults(*sources: Optional[AgentDefaults]) -> AgentDefaults:
    """Later sources win per field; list fields replace, never concatenate."""
    merged: dict[str, Any] = {}
    for source in sources:
        if source is None:
            continue
        merged.update(source.model_dump(exclude_unset=True))
    return AgentDefaults(**merged)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def find_project_root(cwd: Path | str) -> Path:
    """Git top-level for ``cwd``, or ``cwd`` itself outside a repository."""
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=3,
        )
    except (OSError, subprocess.TimeoutExpired):
        return Path(cwd)
    root = proc.stdout.strip() if proc.returncode == 0 else ""
    return Path(root) if root else Path(cwd)


def user_agent_dirs(home: Optional[Path] = None) -> list[Path]:
    base = home if home is not None else Path.home()
    return [base / ".claude" / "agents", base / RELAY_DIR_NAME / "agents"]


def project_agent_dirs(cwd: Path | str) -> list[Path]:
    root = find_project_root(cwd)
    return [d for d in (root / ".claude" / "agents", root / RELAY_DIR_NAME / "agents") if d.is_dir()]


def discover_agents(
    cwd: Path | str,
    scope: AgentScope = "user",
    *,
    home: Optional[Path] = None,
) -> AgentDiscovery:
    """Scan agent directories for ``scope`` and merge their defaults."""
    dirs: list[tuple[Path, AgentSource]] = []
    if scope in ("user", "both"):
        dirs.extend((d, "user") for d in user_agent_dirs(home))
    project_dirs = project_agent_dirs(cwd) if scope in ("project", "both") else []
    dirs.extend((d, "project") for d in project_dirs)

    by_name: dict[str, AgentConfig] = {}
    defaults: list[Optional[AgentDefaults]] = []
    for directory, source in dirs:
        for agent in load_agents_from_dir(directory, source):
            by_name[agent.name] = agent
        defaults.append(load_defaults_from_dir(directory))

    logger.debug("agents.discovered", scope=scope, count=len(by_name), dirs=len(dirs))
    return AgentDiscovery(
        agents=list(by_name.values()),
        defaults=merge_defaults(*defaults),
        project_agents_dirs=[str(d) for d in project_dirs],
    )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def score_agent_match(candidate: str, requested: str) -> float:
    """How well a discovered name fits a requested one; 0 means no relation."""
    a = candidate.lower()
    r = requested.lower()
    if a == r:
        return math.inf
    if a.startswith(r):
        return 100 + len(r)
    if r.startswith(a):
        return 90 + len(a)
    if r in a:
        return 50 + len(r)
    if a in r:
        return 40 + len(a)
    return 0


def build_ephemeral_agent(name: str, defaults: AgentDefaults) -> AgentConfig:
    return AgentConfig(
        name=name,
        description=EPHEMERAL_DESCRIPTION,
        tools=defaults.tools,
        disallowed_tools=defaults.disallowed_tools,
        max_turns=defaults.max_turns,
        mcp_servers=defaults.mcp_servers,
        isolation=defaults.isolation,
        system_prompt=EPHEMERAL_PROMPT.format(name=name),
        source="user",
        file_path="",
    )


def resolve_agent(
    requested: str,
    agents: Sequence[AgentConfig],
    defaults: Optional[AgentDefaults] = None,
) -> ResolvedAgent:
    """Exact name, else best fuzzy match scoring ≥ 40, else ephemeral.

    With ``missing_agent_behavior == "error"`` the last step becomes the
    configured fallback agent (exact name) or AgentNotFoundError.
    """
    defaults = defaults or AgentDefaults()

    for agent in agents:
        if agent.name == requested:
            return ResolvedAgent(agent=agent, resolution="exact", requested_name=requested)

    best: Optional[AgentConfig] = None
    best_score = 0.0
    for agent in agents:
        score = score_agent_match(agent.name, requested)
        if score > best_score:
            best, best_score = agent, score
    if best is not None and best_score >= MATCH_THRESHOLD:
        logger.info("agents.fuzzy_match", requested=requested, matched=best.name, score=best_score)
        return ResolvedAgent(agent=best, resolution="match", requested_name=requested)

    if defaults.missing_agent_behavior == "error":
        fallback = next((a for a in agents if a.name == defaults.fallback_agent), None)
        if fallback is not None:
            logger.info("agents.fallback_agent", requested=requested, fallback=fallback.name)
            return ResolvedAgent(agent=fallback, resolution="match", requested_name=requested)
        available = ", ".join(a.name for a in agents) or "none"
        raise AgentNotFoundError(f'Unknown agent "{requested}". Available agents: {available}')

    logger.info("agents.ephemeral", requested=requested)
    return ResolvedAgent(
        agent=build_ephemeral_agent(requested, defaults),
        resolution="ephemeral",
        requested_name=requested,
    )


def resolve_effective_isolation(
    call_isolation: Optional[Isolation],
    agent_isolation: Optional[Isolation],
    default_isolation: Optional[Isolation],
) -> Optional[Isolation]:
    return call_isolation or agent_isolation or default_isolation


def compute_effective_tools(
    tools: Optional[Iterable[str]],
    disallowed_tools: Optional[Iterable[str]],
) -> Optional[list[str]]:
    """The tool allowlist to pass to the child.

    None means "let the child use its own defaults". A denylist on its own
    is applied to the built-in set.
    """
    tool_list = list(tools) if tools else None
    deny = set(disallowed_tools or ())
    if tool_list is None and not deny:
        return None
    if not deny:
        return tool_list
    return [t for t in (tool_list or BUILTIN_TOOLS) if t not in deny]
