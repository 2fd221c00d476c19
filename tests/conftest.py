"""Shared fixtures: a scripted process handle and engine settings tuned for fast tests."""
from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from config import CouncilSettings, RoleLibrary
from detector import DEFAULT_MARKER_END, DEFAULT_MARKER_START
from models import AgentDescriptor, Invocation, ProcessSpawnError
from process import ProcessHandle


def _run(coro):
    return asyncio.run(coro)


def marker_output(payload: Dict[str, Any], preamble: str = "Reviewing the material...\n") -> bytes:
    """Agent output that ends with a well-formed completion block."""
    return (
        f"{preamble}{DEFAULT_MARKER_START}\n{json.dumps(payload)}\n{DEFAULT_MARKER_END}\n"
    ).encode("utf-8")


class ScriptedProcess(ProcessHandle):
    """ProcessHandle double that plays back (delay, chunk) steps.

    exit_code=None keeps the "process" alive until it is signalled.
    ignore_term=True makes it survive SIGTERM so only SIGKILL stops it.
    """

    def __init__(
        self,
        label: str,
        steps: Sequence[Tuple[float, bytes]] = (),
        exit_code: Optional[int] = 0,
        spawn_errno: Optional[int] = None,
        ignore_term: bool = False,
    ):
        super().__init__(label)
        self.steps = list(steps)
        self.exit_code = exit_code
        self.spawn_errno = spawn_errno
        self.ignore_term = ignore_term
        self.signals: List[int] = []
        self._task: Optional[asyncio.Task] = None

    async def _start(self) -> None:
        if self.spawn_errno is not None:
            raise ProcessSpawnError(f"scripted spawn failure (errno {self.spawn_errno})", self.spawn_errno)
        self._task = asyncio.create_task(self._play())

    async def _play(self) -> None:
        for delay, chunk in self.steps:
            await asyncio.sleep(delay)
            self._append(chunk)
        if self.exit_code is not None:
            self._mark_exited(self.exit_code)

    def _send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if sig == signal.SIGTERM and self.ignore_term:
            return
        if self._task is not None:
            self._task.cancel()
        self._mark_exited(-sig)

    async def _close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


class ScriptedFactory:
    """Process factory for FanOutCoordinator.

    scripts maps agent name to a list of ScriptedProcess keyword dicts, one
    per attempt (the last entry is reused for further attempts).
    """

    def __init__(self, scripts: Dict[str, List[Dict[str, Any]]]):
        self.scripts = scripts
        self.handles: List[ScriptedProcess] = []
        self.calls: List[Tuple[str, int, Path]] = []
        self.workspace_modes: List[int] = []
        self.max_live = 0

    def __call__(self, invocation: Invocation, descriptor: AgentDescriptor) -> ScriptedProcess:
        attempts = self.scripts[invocation.agent]
        script = attempts[min(invocation.attempt, len(attempts)) - 1]
        handle = ScriptedProcess(invocation.label, **script)
        self.calls.append((invocation.label, invocation.attempt, invocation.workspace))
        self.workspace_modes.append(invocation.workspace.stat().st_mode & 0o777)
        self.handles.append(handle)
        self.max_live = max(self.max_live, sum(1 for h in self.handles if not h.state.terminal))
        return handle

    def handles_for(self, label: str) -> List[ScriptedProcess]:
        return [h for h in self.handles if h.label == label]


def make_descriptor(name: str, **overrides: Any) -> AgentDescriptor:
    fields = {"kind": "custom", "cmd": [name], "timeout": 2.0}
    fields.update(overrides)
    return AgentDescriptor(name=name, **fields)


@pytest.fixture
def settings(tmp_path: Path) -> CouncilSettings:
    return CouncilSettings(
        state_dir=tmp_path / ".council",
        grace_period=0.2,
        quiet_interval=0.1,
        poll_interval=0.02,
        workspace_root=tmp_path / "workspaces",
    )


@pytest.fixture
def roles(tmp_path: Path) -> RoleLibrary:
    return RoleLibrary(
        tmp_path / ".council",
        inline={
            "security": "You are a security reviewer.",
            "architecture": "You are an architecture reviewer.",
            "consensus": "You are a consensus-building reviewer.",
            "r": "You are a reviewer.",
        },
    )
