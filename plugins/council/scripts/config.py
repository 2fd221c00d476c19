#!/usr/bin/env python3
"""
Agent Council Configuration Loading

Functions for loading the config file, profiles, agent descriptors, role
templates and task request files.
"""
from __future__ import annotations

import copy
import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from detector import (
    DEFAULT_MARKER_END, DEFAULT_MARKER_START,
    DEFAULT_POLL_INTERVAL, DEFAULT_QUIET_INTERVAL,
)
from models import (
    AgentDescriptor, AgentRequest, CompositionError, ConfigError, TaskRequest,
    DEFAULT_TIMEOUT_SECONDS,
)
from utils import load_json, read_text, validate_name

logger = logging.getLogger("council")

# Built-in descriptors; config entries override them key by key
DEFAULT_AGENTS: Dict[str, Dict[str, Any]] = {
    "claude": {
        "kind": "claude",
        "cmd": ["claude", "-p", "--output-format", "json"],
        "output_format": "json",
        "capabilities": {"structured_output": True, "completion_marker": True, "role_injection": True},
        "role_args": ["--append-system-prompt", "{role_text}"],
    },
    "codex": {
        "kind": "codex",
        "cmd": ["codex", "exec", "--json", "-"],
        "output_format": "jsonl",
        "capabilities": {"structured_output": True, "completion_marker": True, "role_injection": False},
        "suppress_stderr": True,
    },
    "gemini": {
        "kind": "gemini",
        "cmd": ["gemini", "--output-format", "json"],
        "output_format": "json",
        "capabilities": {"structured_output": True, "completion_marker": True, "role_injection": False},
    },
}


@dataclasses.dataclass
class CouncilSettings:
    """Engine-wide settings."""
    state_dir: Path = Path(".council")
    global_dir: Optional[Path] = None
    max_concurrency: int = 0  # 0 = unbounded
    default_timeout: float = DEFAULT_TIMEOUT_SECONDS
    global_deadline: Optional[float] = None
    grace_period: float = 5.0
    quiet_interval: float = DEFAULT_QUIET_INTERVAL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    marker_start: str = DEFAULT_MARKER_START
    marker_end: str = DEFAULT_MARKER_END
    tail_chars: int = 2000
    workspace_root: Optional[Path] = None
    transcript_dir: Optional[Path] = None  # per-run prompts/transcripts, set by the CLI
    stream: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any], state_dir: Path, global_dir: Optional[Path]) -> "CouncilSettings":
        workspace_root = d.get("workspace_root")
        settings = cls(
            state_dir=state_dir,
            global_dir=global_dir,
            max_concurrency=int(d.get("max_concurrency", 0) or 0),
            default_timeout=float(d.get("default_timeout", DEFAULT_TIMEOUT_SECONDS)),
            global_deadline=float(d["global_deadline"]) if d.get("global_deadline") else None,
            grace_period=float(d.get("grace_period", 5.0)),
            quiet_interval=float(d.get("quiet_interval", DEFAULT_QUIET_INTERVAL)),
            poll_interval=float(d.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            marker_start=d.get("marker_start", DEFAULT_MARKER_START),
            marker_end=d.get("marker_end", DEFAULT_MARKER_END),
            tail_chars=int(d.get("tail_chars", 2000)),
            workspace_root=Path(workspace_root).expanduser() if workspace_root else None,
        )
        if settings.marker_start == settings.marker_end:
            raise ConfigError("marker_start and marker_end must differ")
        if settings.poll_interval <= 0 or settings.quiet_interval <= 0:
            raise ConfigError("poll_interval and quiet_interval must be positive")
        return settings


def load_frontmatter_doc(path: Path) -> Tuple[Dict[str, Any], str]:
    """Load document with YAML frontmatter. Returns (metadata, body)."""
    if not path.exists():
        return {}, ""

    content = read_text(path)
    if not content.startswith("---"):
        return {}, content

    parts = content.split("---", 2)
    if len(parts) < 3:
        return {}, content

    try:
        frontmatter = yaml.safe_load(parts[1]) or {}
        body = parts[2].strip()
        return frontmatter, body
    except yaml.YAMLError as e:
        logger.warning(f"YAML parse error in {path}: {e}")
        return {}, content


def load_profile(
    state_dir: Path, profile_name: str, global_dir: Optional[Path] = None
) -> Dict[str, Any]:
    """Load profile JSON. Checks state_dir first, then global_dir."""
    validate_name(profile_name, "profile")
    for base in (state_dir, global_dir):
        if base is None:
            continue
        profile_path = base / "profiles" / f"{profile_name}.json"
        if profile_path.exists():
            return load_json(profile_path, {})
    logger.warning(f"Profile '{profile_name}' not found")
    return {}


def merge_profile(cfg: Dict[str, Any], profile: Dict[str, Any]) -> Dict[str, Any]:
    """Merge profile settings into config. Profile values override config."""
    merged = copy.deepcopy(cfg)

    for key, value in profile.items():
        if key in ("agents", "settings"):
            continue
        merged[key] = value

    # Deep merge agents (per agent, per key)
    if "agents" in profile:
        merged_agents = merged.get("agents", {})
        for name, acfg in profile["agents"].items():
            merged_agents[name] = {**merged_agents.get(name, {}), **acfg}
        merged["agents"] = merged_agents

    if "settings" in profile:
        merged["settings"] = {**merged.get("settings", {}), **profile["settings"]}

    return merged


def build_descriptors(
    agents_cfg: Dict[str, Dict[str, Any]], default_timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> Dict[str, AgentDescriptor]:
    """Build agent descriptors from built-in defaults overlaid with config."""
    names = list(DEFAULT_AGENTS) + [n for n in agents_cfg if n not in DEFAULT_AGENTS]
    descriptors: Dict[str, AgentDescriptor] = {}
    for name in names:
        base = copy.deepcopy(DEFAULT_AGENTS.get(name, {}))
        base["timeout"] = default_timeout
        override = agents_cfg.get(name, {})
        if "capabilities" in override:
            base["capabilities"] = {**base.get("capabilities", {}), **override["capabilities"]}
            override = {k: v for k, v in override.items() if k != "capabilities"}
        descriptors[name] = AgentDescriptor.from_dict(name, {**base, **override})
    return descriptors


def load_config(
    config_path: Path,
    profile_name: Optional[str] = None,
    default_global_dir: Optional[Path] = None,
) -> Tuple[CouncilSettings, Dict[str, AgentDescriptor]]:
    """Load config file (+ optional profile) into settings and descriptors."""
    cfg = load_json(config_path, {})
    if not isinstance(cfg, dict):
        raise ConfigError(f"Config {config_path} must contain a JSON object")
    state_dir = Path(cfg.get("state_dir", ".council"))

    global_dir_str = cfg.get("global_dir")
    global_dir = Path(global_dir_str).expanduser() if global_dir_str else default_global_dir

    if profile_name:
        try:
            profile = load_profile(state_dir, profile_name, global_dir)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if profile:
            logger.info(f"Loaded profile: {profile_name}")
            if profile.get("description"):
                logger.info(f"  {profile['description']}")
            cfg = merge_profile(cfg, profile)

    settings = CouncilSettings.from_dict(cfg.get("settings", {}), state_dir, global_dir)
    descriptors = build_descriptors(cfg.get("agents", {}), settings.default_timeout)
    return settings, descriptors


class RoleLibrary:
    """Role templates keyed by role name, looked up in state_dir then global_dir."""

    def __init__(self, state_dir: Path, global_dir: Optional[Path] = None, inline: Optional[Dict[str, str]] = None):
        self.state_dir = state_dir
        self.global_dir = global_dir
        self._inline = dict(inline or {})

    def get(self, role: str) -> str:
        """Return the role template body.

        Raises:
            CompositionError: If the name is invalid or no template exists
        """
        if role in self._inline:
            return self._inline[role]
        try:
            validate_name(role, "role")
        except ValueError as e:
            raise CompositionError(str(e)) from e
        for base in (self.state_dir, self.global_dir):
            if base is None:
                continue
            role_path = base / "roles" / f"{role}.md"
            if role_path.exists():
                _, body = load_frontmatter_doc(role_path)
                return body
        raise CompositionError(f"Role template '{role}' not found")

    def path_for(self, role: str) -> Optional[Path]:
        for base in (self.state_dir, self.global_dir):
            if base is not None and (base / "roles" / f"{role}.md").exists():
                return base / "roles" / f"{role}.md"
        return None


def _parse_agent_entries(entries: List[Any]) -> List[AgentRequest]:
    requests = []
    for entry in entries:
        if isinstance(entry, str):
            requests.append(AgentRequest.parse(entry))
        elif isinstance(entry, dict) and entry.get("agent"):
            timeout = entry.get("timeout")
            requests.append(AgentRequest(
                agent=entry["agent"],
                role=entry.get("role") or entry["agent"],
                timeout=float(timeout) if timeout else None,
            ))
        else:
            raise ConfigError(f"Invalid agent entry in task request: {entry!r}")
    return requests


def load_task_request(path: Path) -> TaskRequest:
    """Load a task request file (YAML or JSON).

    Relative task_file and files paths resolve against the request file's directory.
    """
    if not path.exists():
        raise ConfigError(f"Task request not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid task request {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Task request {path} must be a mapping")

    base = path.parent
    task = data.get("task", "") or ""
    if data.get("task_file"):
        task_path = base / data["task_file"]
        if not task_path.exists():
            raise ConfigError(f"task_file not found: {task_path}")
        task = read_text(task_path)

    deadline = data.get("deadline")
    return TaskRequest(
        agents=_parse_agent_entries(data.get("agents", [])),
        task=task,
        files=[base / f for f in data.get("files", [])],
        timeouts={k: float(v) for k, v in (data.get("timeouts") or {}).items()},
        deadline=float(deadline) if deadline else None,
    )
