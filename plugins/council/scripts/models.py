#!/usr/bin/env python3
"""
Agent Council Data Models

Data classes for council runs: agent descriptors, task requests, invocations,
agent results, review payloads and the synthesis report, plus the error taxonomy.
"""
from __future__ import annotations

import dataclasses
import errno
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Default timeout for one agent invocation, in seconds
DEFAULT_TIMEOUT_SECONDS: float = 300.0

# Spawn errno values worth one automatic retry
TRANSIENT_SPAWN_ERRNOS = frozenset({errno.EAGAIN, errno.ETXTBSY, errno.EINTR})

CONFIDENCE_LEVELS = ("low", "medium", "high")


# =============================================================================
# Errors
# =============================================================================

class CouncilError(Exception):
    """Base class for council errors."""


class ConfigError(CouncilError):
    """Invalid configuration or task request."""


class CompositionError(CouncilError):
    """Prompt could not be assembled (missing role template or unreadable file)."""


class WorkspaceError(CouncilError):
    """Workspace provisioning or cleanup failed."""


class ProcessSpawnError(CouncilError):
    """Agent executable could not be started."""

    def __init__(self, message: str, errno_value: Optional[int] = None):
        super().__init__(message)
        self.errno = errno_value

    @property
    def transient(self) -> bool:
        return self.errno in TRANSIENT_SPAWN_ERRNOS


# =============================================================================
# Enumerations
# =============================================================================

class AgentStatus(str, Enum):
    """Terminal status of one invocation."""
    COMPLETE = "complete"
    MALFORMED_OUTPUT = "malformed_output"
    TIMED_OUT = "timed_out"
    PROCESS_FAILED = "process_failed"


class ErrorKind(str, Enum):
    """Refines a non-complete status for diagnostics and retry decisions."""
    COMPOSITION_ERROR = "composition_error"
    PROCESS_SPAWN_ERROR = "process_spawn_error"
    WORKSPACE_ERROR = "workspace_error"
    NONZERO_EXIT = "nonzero_exit"
    INCOMPLETE_OUTPUT = "incomplete_output"
    EMPTY_OUTPUT = "empty_output"
    DEADLINE = "deadline"
    ABORTED = "aborted"
    UNKNOWN_AGENT = "unknown_agent"


class HandleState(str, Enum):
    """Lifecycle of an agent process handle."""
    SPAWNING = "spawning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CRASHED = "crashed"
    KILLED = "killed"

    @property
    def terminal(self) -> bool:
        return self in (HandleState.SUCCEEDED, HandleState.CRASHED, HandleState.KILLED)


# =============================================================================
# Agents and requests
# =============================================================================

@dataclasses.dataclass
class AgentDescriptor:
    """Static description of an external agent CLI."""
    name: str
    kind: str  # claude, codex, gemini, custom
    cmd: List[str]
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    retry_budget: int = 0
    encoding: str = "utf-8"
    output_format: str = "text"  # text | json | jsonl
    supports_structured_output: bool = True
    supports_completion_marker: bool = True
    supports_role_injection: bool = False
    role_args: List[str] = dataclasses.field(default_factory=list)
    idle_fallback: Optional[bool] = None  # None: enabled only without marker support
    suppress_stderr: bool = False

    @property
    def uses_idle_fallback(self) -> bool:
        if self.idle_fallback is None:
            return not self.supports_completion_marker
        return self.idle_fallback

    @property
    def injects_role(self) -> bool:
        return self.supports_role_injection and bool(self.role_args)

    @property
    def detection_strategy(self) -> str:
        if self.supports_completion_marker and self.uses_idle_fallback:
            return "markers+idle"
        if self.supports_completion_marker:
            return "markers"
        return "idle"

    @classmethod
    def from_dict(cls, name: str, d: Dict[str, Any]) -> "AgentDescriptor":
        caps = d.get("capabilities", {}) or {}
        cmd = d.get("cmd")
        if not cmd or not isinstance(cmd, list):
            raise ConfigError(f"Agent '{name}' needs a non-empty 'cmd' list")
        output_format = d.get("output_format", "text")
        if output_format not in ("text", "json", "jsonl"):
            raise ConfigError(f"Agent '{name}': unknown output_format '{output_format}'")
        return cls(
            name=name,
            kind=d.get("kind", name),
            cmd=[str(c) for c in cmd],
            timeout=float(d.get("timeout") or DEFAULT_TIMEOUT_SECONDS),
            retry_budget=int(d.get("retry_budget", 0)),
            encoding=d.get("encoding", "utf-8"),
            output_format=output_format,
            supports_structured_output=caps.get("structured_output", True),
            supports_completion_marker=caps.get("completion_marker", True),
            supports_role_injection=caps.get("role_injection", False),
            role_args=[str(a) for a in d.get("role_args", [])],
            idle_fallback=d.get("idle_fallback"),
            suppress_stderr=d.get("suppress_stderr", False),
        )


@dataclasses.dataclass(frozen=True)
class AgentRequest:
    """One (agent, role) pair to consult."""
    agent: str
    role: str
    timeout: Optional[float] = None

    @property
    def label(self) -> str:
        return f"{self.agent}[{self.role}]"

    @classmethod
    def parse(cls, value: str) -> "AgentRequest":
        """Parse 'agent:role' (role defaults to the agent name)."""
        agent, _, role = value.partition(":")
        agent = agent.strip()
        if not agent:
            raise ConfigError(f"Invalid agent entry '{value}'")
        return cls(agent=agent, role=role.strip() or agent)


@dataclasses.dataclass
class TaskRequest:
    """Consumer-facing request: who to consult about what."""
    agents: List[AgentRequest]
    task: str
    files: List[Path] = dataclasses.field(default_factory=list)
    timeouts: Dict[str, float] = dataclasses.field(default_factory=dict)
    deadline: Optional[float] = None

    def timeout_for(self, request: AgentRequest, descriptor: Optional[AgentDescriptor]) -> float:
        if request.timeout:
            return request.timeout
        if request.agent in self.timeouts:
            return self.timeouts[request.agent]
        return descriptor.timeout if descriptor else DEFAULT_TIMEOUT_SECONDS


@dataclasses.dataclass
class Invocation:
    """One request to run a single agent with a composed prompt."""
    index: int
    agent: str
    role: str
    prompt: str
    timeout: float
    retry_budget: int = 0
    role_text: str = ""
    workspace: Optional[Path] = None
    attempt: int = 1

    @property
    def label(self) -> str:
        return f"{self.agent}[{self.role}]"


# =============================================================================
# Results
# =============================================================================

def normalize_confidence(value: Any) -> Optional[str]:
    """Map a declared confidence (word or 0.0-1.0 number) to low/medium/high."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value >= 0.8:
            return "high"
        if value >= 0.5:
            return "medium"
        return "low"
    word = str(value).strip().lower()
    if word in CONFIDENCE_LEVELS:
        return word
    try:
        return normalize_confidence(float(word))
    except ValueError:
        return None


def _str_items(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, list):
        items = []
        for item in value:
            if isinstance(item, dict):
                text = item.get("text") or item.get("claim") or item.get("finding") or ""
            else:
                text = str(item)
            if text.strip():
                items.append(text.strip())
        return tuple(items)
    return (str(value),)


@dataclasses.dataclass(frozen=True)
class ReviewPayload:
    """Structured payload declared by an agent between completion markers."""
    status: str
    assessment: str
    confidence: Optional[str] = None
    claims: Tuple[str, ...] = ()
    strengths: Tuple[str, ...] = ()
    concerns: Tuple[str, ...] = ()
    risks: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    fields: Dict[str, Any] = dataclasses.field(default_factory=dict)

    LIST_FIELDS = ("claims", "strengths", "concerns", "risks", "recommendations")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReviewPayload":
        recommendations = _str_items(d.get("recommendations"))
        if d.get("recommendation"):
            recommendations = _str_items(d.get("recommendation")) + recommendations
        return cls(
            status=str(d.get("status", "")),
            assessment=str(d.get("assessment", "")),
            confidence=normalize_confidence(d.get("confidence")),
            claims=_str_items(d.get("claims")),
            strengths=_str_items(d.get("strengths")),
            concerns=_str_items(d.get("concerns")),
            risks=_str_items(d.get("risks")),
            recommendations=recommendations,
            fields=dict(d),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.fields)


@dataclasses.dataclass(frozen=True)
class AgentResult:
    """Terminal result of one invocation. Exactly one per invocation."""
    index: int
    agent: str
    role: str
    status: AgentStatus
    payload: Optional[ReviewPayload] = None
    text: str = ""  # degraded raw output when no structured payload
    degraded: bool = False
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    raw_tail: str = ""
    exit_code: Optional[int] = None
    attempts: int = 1
    duration: float = 0.0

    @property
    def label(self) -> str:
        return f"{self.agent}[{self.role}]"

    @property
    def succeeded(self) -> bool:
        return self.status == AgentStatus.COMPLETE

    @property
    def confidence(self) -> Optional[str]:
        return self.payload.confidence if self.payload else None

    @property
    def status_label(self) -> str:
        """Human-readable status, e.g. 'complete (degraded)' or 'process_failed: process_spawn_error'."""
        if self.succeeded:
            return "complete (degraded)" if self.degraded else "complete"
        if self.error_kind:
            return f"{self.status.value}: {self.error_kind.value}"
        return self.status.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "agent": self.agent,
            "role": self.role,
            "status": self.status.value,
            "degraded": self.degraded,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "payload": self.payload.to_dict() if self.payload else None,
            "text": self.text,
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "duration": round(self.duration, 3),
            "raw_tail": self.raw_tail,
        }


@dataclasses.dataclass(frozen=True)
class AgreementItem:
    """A claim supported by two or more agents."""
    claim: str
    agents: Tuple[str, ...]


@dataclasses.dataclass(frozen=True)
class DivergenceItem:
    """A claim made by one agent that no other agent supported."""
    claim: str
    agent: str


@dataclasses.dataclass(frozen=True)
class SynthesisReport:
    """Unified report built once from the complete set of agent results."""
    results: Tuple[AgentResult, ...]
    agreement: Tuple[AgreementItem, ...]
    divergence: Optional[Tuple[DivergenceItem, ...]]  # None when fewer than two agents succeeded
    recommendation: str
    confidence: Optional[str]

    @property
    def contributors(self) -> List[AgentResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def consensus(self) -> bool:
        return len(self.contributors) >= 2 and bool(self.agreement)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "consensus": self.consensus,
            "contributors": [r.label for r in self.contributors],
            "agreement": [{"claim": a.claim, "agents": list(a.agents)} for a in self.agreement],
            "divergence": (
                None if self.divergence is None
                else [{"claim": d.claim, "agent": d.agent} for d in self.divergence]
            ),
            "recommendation": self.recommendation,
            "results": [r.to_dict() for r in self.results],
        }
