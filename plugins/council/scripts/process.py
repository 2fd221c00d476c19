#!/usr/bin/env python3
"""
Agent Council Process Handles

Owns one external agent process: spawn, incremental output capture, signals and
reaping. Detection logic only sees the ProcessHandle interface, so tests can
substitute a scripted handle that feeds synthetic output.

States: spawning -> running -> {succeeded, crashed, killed}
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Dict, List, Optional

from models import AgentDescriptor, HandleState, Invocation, ProcessSpawnError
from utils import write_live, write_text_atomic

logger = logging.getLogger("council")

CHUNK_SIZE = 4096
# How long to wait for pipes to drain after the process exits
DRAIN_TIMEOUT = 2.0


class OutputBuffer:
    """Append-only byte buffer shared with the completion detector."""

    def __init__(self) -> None:
        self._data = bytearray()

    def append(self, chunk: bytes) -> None:
        self._data.extend(chunk)

    @property
    def size(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def text(self, encoding: str = "utf-8") -> str:
        return self._data.decode(encoding, errors="replace")


class ProcessHandle:
    """Lifecycle state machine for one agent process.

    Subclasses provide _start, _send_signal and optionally _close; they report
    output through _append and exit through _mark_exited.
    """

    def __init__(self, label: str, encoding: str = "utf-8"):
        self.label = label
        self.encoding = encoding
        self.state = HandleState.SPAWNING
        self.output = OutputBuffer()
        self.errors = OutputBuffer()
        self.returncode: Optional[int] = None
        self.started_at: Optional[float] = None
        self.killed = False
        self._activity = asyncio.Event()
        self._exited = asyncio.Event()

    # -- subclass hooks ------------------------------------------------------

    async def _start(self) -> None:
        raise NotImplementedError

    def _send_signal(self, sig: int) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        """Close pipes and stop background readers."""

    # -- reporting (called by subclasses) ------------------------------------

    def _append(self, chunk: bytes, stderr: bool = False) -> None:
        (self.errors if stderr else self.output).append(chunk)
        self._activity.set()

    def _mark_exited(self, returncode: int) -> None:
        self.returncode = returncode
        self._exited.set()
        self._activity.set()

    # -- public interface ----------------------------------------------------

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    @property
    def alive(self) -> bool:
        return self.state == HandleState.RUNNING and not self.exited

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at if self.started_at else 0.0

    def text(self) -> str:
        return self.output.text(self.encoding)

    def stderr_text(self) -> str:
        return self.errors.text(self.encoding)

    async def spawn(self) -> None:
        """Start the process. Spawn failure moves straight to crashed."""
        if self.state != HandleState.SPAWNING:
            raise RuntimeError(f"{self.label}: spawn() called in state {self.state.value}")
        try:
            await self._start()
        except ProcessSpawnError:
            self.state = HandleState.CRASHED
            raise
        self.started_at = time.monotonic()
        self.state = HandleState.RUNNING
        logger.debug(f"{self.label}: running")

    async def wait_activity(self, timeout: float) -> None:
        """Sleep until new output, process exit, or timeout - whichever first."""
        if not self._activity.is_set():
            try:
                await asyncio.wait_for(self._activity.wait(), timeout=max(timeout, 0))
            except asyncio.TimeoutError:
                pass
        self._activity.clear()

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait (bounded) for process exit. Returns the exit code or None."""
        if not self.exited:
            try:
                await asyncio.wait_for(self._exited.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        return self.returncode

    def send_signal(self, sig: int) -> None:
        if self.alive:
            self._send_signal(sig)

    async def terminate(self, grace: float) -> None:
        """SIGTERM, wait up to grace, then SIGKILL and wait again."""
        if not self.alive:
            return
        self.killed = True
        logger.debug(f"{self.label}: terminating")
        self.send_signal(signal.SIGTERM)
        await self.wait(grace)
        if not self.exited:
            logger.warning(f"{self.label}: did not exit within {grace}s of SIGTERM, killing")
            self.send_signal(signal.SIGKILL)
            await self.wait(grace)
        if not self.exited:
            logger.error(f"{self.label}: process did not die after SIGKILL")

    async def reap(self, confirmed: bool, grace: float, exit_grace: float = 0.0) -> HandleState:
        """Reach a terminal state: stop the process if needed and close channels.

        Args:
            confirmed: The detector confirmed well-formed complete output
            grace: Bounded wait after each termination signal
            exit_grace: Time allowed for a still-running process to exit on its own
        """
        if self.state.terminal:
            return self.state
        if self.state == HandleState.SPAWNING:
            self.state = HandleState.CRASHED
            return self.state
        if self.alive and exit_grace > 0:
            await self.wait(exit_grace)
        if self.alive:
            await self.terminate(grace)
        await self._close()

        if self.killed:
            self.state = HandleState.KILLED
        elif self.returncode == 0 and confirmed:
            self.state = HandleState.SUCCEEDED
        else:
            self.state = HandleState.CRASHED
        logger.debug(f"{self.label}: {self.state.value} (exit code {self.returncode})")
        return self.state


def build_command(descriptor: AgentDescriptor, workspace: Path, role_text: str = "") -> List[str]:
    """Expand {workspace}, {prompt_file}, {role_file} and {role_text} in the agent's argv."""
    ctx = {
        "workspace": str(workspace),
        "prompt_file": str(workspace / "prompt.md"),
        "role_file": str(workspace / "role.md"),
        "role_text": role_text,
    }
    args = list(descriptor.cmd)
    if descriptor.injects_role:
        args += descriptor.role_args
    expanded = []
    for arg in args:
        for key, value in ctx.items():
            arg = arg.replace(f"{{{key}}}", value)
        expanded.append(arg)
    return expanded


def reads_prompt_file(descriptor: AgentDescriptor) -> bool:
    return any("{prompt_file}" in a for a in descriptor.cmd)


class AgentProcess(ProcessHandle):
    """A real agent CLI run through asyncio subprocess pipes."""

    def __init__(
        self,
        cmd: List[str],
        stdin_text: Optional[str],
        label: str,
        encoding: str = "utf-8",
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        stream_prefix: Optional[str] = None,
        suppress_stderr: bool = False,
    ):
        super().__init__(label, encoding)
        self.cmd = cmd
        self.stdin_text = stdin_text
        self.cwd = cwd
        self.env = env
        self.stream_prefix = stream_prefix
        self.suppress_stderr = suppress_stderr
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._pumps: List[asyncio.Task] = []
        self._feeder: Optional[asyncio.Task] = None
        self._watcher: Optional[asyncio.Task] = None
        self._pending_lines: Dict[bool, str] = {False: "", True: ""}

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @classmethod
    def for_invocation(
        cls,
        invocation: Invocation,
        descriptor: AgentDescriptor,
        stream: bool = False,
    ) -> "AgentProcess":
        """Prepare the workspace files and build a handle for one invocation."""
        workspace = invocation.workspace
        if workspace is None:
            raise ValueError(f"{invocation.label}: invocation has no workspace")
        write_text_atomic(workspace / "prompt.md", invocation.prompt)
        if descriptor.injects_role:
            write_text_atomic(workspace / "role.md", invocation.role_text)
        env = dict(os.environ)
        env["COUNCIL_WORKSPACE"] = str(workspace)
        return cls(
            cmd=build_command(descriptor, workspace, invocation.role_text),
            stdin_text=None if reads_prompt_file(descriptor) else invocation.prompt,
            label=invocation.label,
            encoding=descriptor.encoding,
            env=env,
            stream_prefix=invocation.label if stream else None,
            suppress_stderr=descriptor.suppress_stderr,
        )

    async def _start(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,  # own process group, so signals reach children too
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to start '{self.cmd[0]}': {e.strerror or e}", e.errno) from e

        self._feeder = asyncio.create_task(self._feed_stdin())
        self._pumps = [
            asyncio.create_task(self._pump(self._proc.stdout, is_stderr=False)),
            asyncio.create_task(self._pump(self._proc.stderr, is_stderr=True)),
        ]
        self._watcher = asyncio.create_task(self._watch_exit())

    async def _feed_stdin(self) -> None:
        stdin = self._proc.stdin
        try:
            if self.stdin_text:
                stdin.write(self.stdin_text.encode(self.encoding))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"{self.label}: process closed stdin before reading the prompt")
        finally:
            stdin.close()

    async def _pump(self, stream: asyncio.StreamReader, is_stderr: bool) -> None:
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            self._append(chunk, stderr=is_stderr)
            if self.stream_prefix and not (is_stderr and self.suppress_stderr):
                self._echo(chunk, is_stderr)
        self._flush_echo(is_stderr)

    def _echo(self, chunk: bytes, is_stderr: bool) -> None:
        """Stream complete lines to console and live log with the agent prefix."""
        pending = self._pending_lines[is_stderr] + chunk.decode(self.encoding, errors="replace")
        *lines, self._pending_lines[is_stderr] = pending.split("\n")
        for line in lines:
            self._emit_line(line.rstrip("\r"), is_stderr)

    def _flush_echo(self, is_stderr: bool) -> None:
        rest = self._pending_lines[is_stderr]
        self._pending_lines[is_stderr] = ""
        if rest and self.stream_prefix and not (is_stderr and self.suppress_stderr):
            self._emit_line(rest, is_stderr)

    def _emit_line(self, line: str, is_stderr: bool) -> None:
        prefix = f"{self.stream_prefix} [stderr]" if is_stderr else self.stream_prefix
        write_live(line, prefix=f"{prefix}: ")
        print(f"  {prefix}: {line}", flush=True)

    async def _watch_exit(self) -> None:
        rc = await self._proc.wait()
        # Collect output still in the pipes; a grandchild holding them open is bounded
        await asyncio.wait(self._pumps, timeout=DRAIN_TIMEOUT)
        self._mark_exited(rc)

    def _send_signal(self, sig: int) -> None:
        if self._proc is None:
            return
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._proc.send_signal(sig)

    async def _close(self) -> None:
        tasks = [t for t in (self._feeder, self._watcher, *self._pumps) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._proc and self._proc.stdin and not self._proc.stdin.is_closing():
            self._proc.stdin.close()
