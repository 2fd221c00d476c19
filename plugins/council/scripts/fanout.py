#!/usr/bin/env python3
"""
Agent Council Fan-Out Coordinator

Runs one invocation per requested (agent, role) pair concurrently and collects
exactly one terminal AgentResult per pair, in request order. Invocation
failures stay inside their own result; only the global deadline or an explicit
abort stops the whole fan-out, and even then every in-flight process is
terminated (with grace) and its workspace released before run() returns.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from detector import CompletionDetector, Detection, watch
from models import (
    AgentDescriptor, AgentRequest, AgentResult, AgentStatus, CompositionError,
    ErrorKind, Invocation, ProcessSpawnError, TaskRequest, WorkspaceError,
)
from parsers import strip_ansi
from process import AgentProcess, ProcessHandle
from prompts import build_completion_instructions, compose_prompt
from utils import safe_label, tail, write_live, write_text_atomic
from workspace import SecureWorkspace

logger = logging.getLogger("council")

# First attempt plus at most one retry
MAX_ATTEMPTS = 2

ProcessFactory = Callable[[Invocation, AgentDescriptor], ProcessHandle]
ResultCallback = Callable[[AgentResult], None]


class ResultSlots:
    """Ordered result collection; each slot is written once, by its own invocation."""

    def __init__(self, size: int):
        self._results: List[Optional[AgentResult]] = [None] * size

    def record(self, index: int, result: AgentResult) -> bool:
        if self._results[index] is not None:
            logger.warning(f"Ignoring second result for slot {index} ({result.label})")
            return False
        self._results[index] = result
        return True

    def missing(self) -> List[int]:
        return [i for i, r in enumerate(self._results) if r is None]

    def collect(self) -> List[AgentResult]:
        if self.missing():
            raise RuntimeError(f"Result slots still empty: {self.missing()}")
        return list(self._results)


@dataclasses.dataclass
class _SlotProgress:
    """What a slot has done so far, for results recorded on cancellation."""
    started: float
    attempts: int = 0
    handle: Optional[ProcessHandle] = None


class FanOutCoordinator:
    """Concurrent fan-out/fan-in over agent invocations."""

    def __init__(
        self,
        descriptors: Dict[str, AgentDescriptor],
        roles,
        settings,
        workspaces: Optional[SecureWorkspace] = None,
        process_factory: Optional[ProcessFactory] = None,
        on_result: Optional[ResultCallback] = None,
    ):
        self.descriptors = descriptors
        self.roles = roles
        self.settings = settings
        self.workspaces = workspaces or SecureWorkspace(settings.workspace_root)
        self.process_factory = process_factory or self._spawn_agent_process
        self.on_result = on_result
        self._abort = asyncio.Event()
        self._stop_reason: Optional[ErrorKind] = None

    def _spawn_agent_process(self, invocation: Invocation, descriptor: AgentDescriptor) -> ProcessHandle:
        return AgentProcess.for_invocation(invocation, descriptor, stream=self.settings.stream)

    def abort(self) -> None:
        """Request cancellation of every still-running invocation."""
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    # -------------------------------------------------------------------------
    # Fan-out / fan-in
    # -------------------------------------------------------------------------

    async def run(self, request: TaskRequest) -> List[AgentResult]:
        """Run every requested invocation and return results in request order."""
        slots = ResultSlots(len(request.agents))
        if self.aborted:
            logger.warning("Abort requested before fan-out: no agent will be started")
            self._stop_reason = ErrorKind.ABORTED
            for index, req in enumerate(request.agents):
                slots.record(index, self._stopped_result(index, req, _SlotProgress(started=time.monotonic())))
            return slots.collect()

        self._stop_reason = None
        cap = self.settings.max_concurrency
        semaphore = asyncio.Semaphore(cap) if cap and cap > 0 else None

        tasks = [
            asyncio.create_task(self._run_slot(index, req, request, slots, semaphore), name=f"council-{req.label}")
            for index, req in enumerate(request.agents)
        ]
        deadline = request.deadline or self.settings.global_deadline

        try:
            stop = await self._wait_all(tasks, deadline)
        except asyncio.CancelledError:
            self._stop_reason = ErrorKind.ABORTED
            await self._cancel(tasks)
            self.workspaces.release_all()
            raise

        if stop is not None:
            self._stop_reason = stop
            label = "Global deadline reached" if stop == ErrorKind.DEADLINE else "Aborted"
            logger.warning(f"{label}: stopping {sum(not t.done() for t in tasks)} running invocation(s)")
            write_live(f"⚠ {label} - terminating running agents")
            await self._cancel(tasks)

        self.workspaces.release_all()
        for index in slots.missing():
            # Cancelled before it ever started (e.g. still queued for a slot)
            req = request.agents[index]
            slots.record(index, self._stopped_result(index, req, _SlotProgress(started=time.monotonic())))
        return slots.collect()

    async def _wait_all(self, tasks: List[asyncio.Task], deadline: Optional[float]) -> Optional[ErrorKind]:
        """Wait for all tasks; return DEADLINE/ABORTED if stopped early, else None."""
        loop = asyncio.get_running_loop()
        ends_at = loop.time() + deadline if deadline else None
        pending = set(tasks)
        abort_waiter = asyncio.create_task(self._abort.wait())
        try:
            while pending:
                timeout = None if ends_at is None else max(ends_at - loop.time(), 0)
                done, _ = await asyncio.wait(
                    pending | {abort_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if abort_waiter in done:
                    return ErrorKind.ABORTED
                if not done:
                    return ErrorKind.DEADLINE
                pending -= done
            return None
        finally:
            abort_waiter.cancel()

    async def _cancel(self, tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_slot(
        self,
        index: int,
        req: AgentRequest,
        request: TaskRequest,
        slots: ResultSlots,
        semaphore: Optional[asyncio.Semaphore],
    ) -> None:
        progress = _SlotProgress(started=time.monotonic())
        try:
            if semaphore is not None:
                async with semaphore:
                    result = await self._invoke(index, req, request, progress)
            else:
                result = await self._invoke(index, req, request, progress)
        except asyncio.CancelledError:
            self._finish_slot(slots, self._stopped_result(index, req, progress))
            raise
        except Exception as e:
            # Contained to this invocation; siblings keep running
            logger.exception(f"{req.label}: unexpected error")
            result = AgentResult(
                index=index, agent=req.agent, role=req.role,
                status=AgentStatus.PROCESS_FAILED, message=f"unexpected error: {e}",
                attempts=progress.attempts,
            )
        self._finish_slot(slots, dataclasses.replace(result, duration=time.monotonic() - progress.started))

    def _finish_slot(self, slots: ResultSlots, result: AgentResult) -> None:
        if not slots.record(result.index, result):
            return
        mark = "✓" if result.succeeded else "✗"
        write_live(f"  {mark} {result.label}: {result.status_label}")
        if self.on_result:
            self.on_result(result)

    def _stopped_result(self, index: int, req: AgentRequest, progress: _SlotProgress) -> AgentResult:
        kind = self._stop_reason or ErrorKind.ABORTED
        message = "killed at global deadline" if kind == ErrorKind.DEADLINE else "aborted"
        handle = progress.handle
        return AgentResult(
            index=index,
            agent=req.agent,
            role=req.role,
            status=AgentStatus.TIMED_OUT,
            error_kind=kind,
            message=message,
            raw_tail=self._raw_tail(handle) if handle else "",
            exit_code=handle.returncode if handle else None,
            attempts=progress.attempts,
            duration=time.monotonic() - progress.started,
        )

    # -------------------------------------------------------------------------
    # One invocation (with retry policy)
    # -------------------------------------------------------------------------

    def _prepare(self, index: int, req: AgentRequest, request: TaskRequest, descriptor: AgentDescriptor) -> Invocation:
        """Compose the prompt for one invocation. Raises CompositionError."""
        role_text = self.roles.get(req.role)
        instructions = build_completion_instructions(
            descriptor, self.settings.marker_start, self.settings.marker_end
        )
        prompt = compose_prompt(
            role_template="" if descriptor.injects_role else role_text,
            task=request.task,
            files=request.files,
            completion_instructions=instructions,
        )
        invocation = Invocation(
            index=index,
            agent=req.agent,
            role=req.role,
            prompt=prompt,
            timeout=request.timeout_for(req, descriptor),
            retry_budget=descriptor.retry_budget,
            role_text=role_text,
        )
        if self.settings.transcript_dir:
            name = f"{index:02d}-{safe_label(req.agent)}-{safe_label(req.role)}.md"
            try:
                write_text_atomic(self.settings.transcript_dir / "prompts" / name, prompt)
            except OSError as e:
                logger.warning(f"Failed to save prompt for {req.label}: {e}")
        return invocation

    async def _invoke(
        self, index: int, req: AgentRequest, request: TaskRequest, progress: _SlotProgress
    ) -> AgentResult:
        descriptor = self.descriptors.get(req.agent)
        if descriptor is None:
            return AgentResult(
                index=index, agent=req.agent, role=req.role,
                status=AgentStatus.PROCESS_FAILED, error_kind=ErrorKind.UNKNOWN_AGENT,
                message=f"no descriptor configured for agent '{req.agent}'",
            )
        try:
            invocation = self._prepare(index, req, request, descriptor)
        except CompositionError as e:
            logger.warning(f"{req.label}: {e}")
            return AgentResult(
                index=index, agent=req.agent, role=req.role,
                status=AgentStatus.PROCESS_FAILED, error_kind=ErrorKind.COMPOSITION_ERROR,
                message=str(e),
            )

        while True:
            progress.attempts = invocation.attempt
            result, transient = await self._attempt(invocation, descriptor, progress)
            if invocation.attempt < MAX_ATTEMPTS and self._should_retry(result, transient, invocation):
                logger.info(f"{invocation.label}: {result.status_label} - retrying once")
                write_live(f"  ↻ {invocation.label}: {result.status_label}, retrying")
                invocation.attempt += 1
                continue
            return result

    @staticmethod
    def _should_retry(result: AgentResult, transient: bool, invocation: Invocation) -> bool:
        if result.error_kind == ErrorKind.PROCESS_SPAWN_ERROR:
            return transient
        if result.status == AgentStatus.TIMED_OUT and result.error_kind is None:
            return invocation.retry_budget > 0
        return False

    async def _attempt(
        self, invocation: Invocation, descriptor: AgentDescriptor, progress: _SlotProgress
    ) -> Tuple[AgentResult, bool]:
        """One attempt inside its own workspace. Returns (result, transient_spawn_failure)."""
        try:
            with self.workspaces.scoped(invocation.label) as workspace:
                invocation.workspace = workspace
                try:
                    return await self._run_process(invocation, descriptor, progress)
                finally:
                    invocation.workspace = None
        except WorkspaceError as e:
            logger.warning(f"{invocation.label}: {e}")
            return self._failed(invocation, ErrorKind.WORKSPACE_ERROR, str(e)), False

    async def _run_process(
        self, invocation: Invocation, descriptor: AgentDescriptor, progress: _SlotProgress
    ) -> Tuple[AgentResult, bool]:
        settings = self.settings
        try:
            handle = self.process_factory(invocation, descriptor)
        except OSError as e:
            raise WorkspaceError(f"Failed to prepare workspace files: {e}") from e
        progress.handle = handle
        detector = CompletionDetector.for_agent(
            descriptor, settings.marker_start, settings.marker_end, settings.quiet_interval
        )
        write_live(
            f"  {invocation.label} → started (attempt {invocation.attempt}, "
            f"{descriptor.detection_strategy}, timeout {invocation.timeout:g}s)"
        )

        detection: Optional[Detection] = None
        try:
            try:
                await handle.spawn()
            except ProcessSpawnError as e:
                logger.warning(f"{invocation.label}: {e}")
                return self._failed(invocation, ErrorKind.PROCESS_SPAWN_ERROR, str(e)), e.transient
            detection = await watch(handle, detector, invocation.timeout, settings.poll_interval)
        finally:
            exit_grace = settings.grace_period if detection is not None and detection.reason == "marker" else 0.0
            await handle.reap(
                confirmed=detection is not None and detection.confirmed,
                grace=settings.grace_period,
                exit_grace=exit_grace,
            )
            self._save_transcript(invocation, handle)

        logger.info(f"{invocation.label}: {detection.status.value} via {detection.reason} (handle {handle.state.value})")
        return AgentResult(
            index=invocation.index,
            agent=invocation.agent,
            role=invocation.role,
            status=detection.status,
            payload=detection.payload,
            text=detection.text,
            degraded=detection.degraded,
            error_kind=detection.error_kind,
            message=detection.message,
            raw_tail=self._raw_tail(handle),
            exit_code=handle.returncode,
            attempts=invocation.attempt,
        ), False

    def _failed(self, invocation: Invocation, kind: ErrorKind, message: str) -> AgentResult:
        return AgentResult(
            index=invocation.index,
            agent=invocation.agent,
            role=invocation.role,
            status=AgentStatus.PROCESS_FAILED,
            error_kind=kind,
            message=message,
            attempts=invocation.attempt,
        )

    def _raw_tail(self, handle: ProcessHandle) -> str:
        limit = self.settings.tail_chars
        out = tail(strip_ansi(handle.text()), limit)
        err = handle.stderr_text()
        if err.strip():
            out = f"{out}\n[stderr]\n{tail(strip_ansi(err), limit // 2)}" if out else tail(strip_ansi(err), limit)
        return out

    def _save_transcript(self, invocation: Invocation, handle: ProcessHandle) -> None:
        """Keep the full output of each attempt in the run directory."""
        if not self.settings.transcript_dir or handle.started_at is None:
            return
        stem = f"{invocation.index:02d}-{safe_label(invocation.agent)}-{safe_label(invocation.role)}.{invocation.attempt}"
        out_dir = self.settings.transcript_dir / "transcripts"
        try:
            write_text_atomic(out_dir / f"{stem}.out", handle.text())
            if handle.errors.size:
                write_text_atomic(out_dir / f"{stem}.err", handle.stderr_text())
        except OSError as e:
            logger.warning(f"Failed to save transcript for {invocation.label}: {e}")
