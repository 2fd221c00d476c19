#!/usr/bin/env python3
"""
Agent Council Completion Detection

Decides from a growing output stream when an invocation is finished and
extracts its payload. Checked in priority order on every change:

1. Explicit marker pair -> complete (parsed) or malformed_output (terminal).
2. Idle fallback -> output size unchanged across two quiet windows while the
   process is alive; full output parsed if possible, else degraded raw text.
3. Timeout -> timed_out.

Process exit is handled after a final marker check (see CompletionDetector.on_exit).
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Optional

from models import AgentDescriptor, AgentStatus, ErrorKind, ReviewPayload
from parsers import find_marker_block, parse_payload, strip_ansi, try_parse_full_output, unwrap_output

logger = logging.getLogger("council")

DEFAULT_MARKER_START = "<<<COUNCIL_RESULT>>>"
DEFAULT_MARKER_END = "<<<END_COUNCIL_RESULT>>>"
DEFAULT_QUIET_INTERVAL = 3.0
DEFAULT_POLL_INTERVAL = 0.5

# Consecutive unchanged sampling windows before idle completion fires
IDLE_STABLE_WINDOWS = 2


@dataclasses.dataclass
class Detection:
    """Outcome of completion detection for one attempt."""
    status: AgentStatus
    reason: str  # marker, idle, exit, timeout
    payload: Optional[ReviewPayload] = None
    text: str = ""
    degraded: bool = False
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @property
    def confirmed(self) -> bool:
        return self.status == AgentStatus.COMPLETE


class CompletionDetector:
    """Incremental completion detector for one invocation attempt."""

    def __init__(
        self,
        marker_start: str = DEFAULT_MARKER_START,
        marker_end: str = DEFAULT_MARKER_END,
        idle_fallback: bool = False,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
        output_format: str = "text",
        structured: bool = True,
    ):
        self.marker_start = marker_start
        self.marker_end = marker_end
        self.idle_fallback = idle_fallback
        self.quiet_interval = quiet_interval
        self.output_format = output_format
        self.structured = structured
        self.start_seen = False
        self._stable_windows = 0
        self._last_size: Optional[int] = None
        self._last_sample_at: Optional[float] = None

    @classmethod
    def for_agent(
        cls,
        descriptor: AgentDescriptor,
        marker_start: str = DEFAULT_MARKER_START,
        marker_end: str = DEFAULT_MARKER_END,
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
    ) -> "CompletionDetector":
        return cls(
            marker_start=marker_start,
            marker_end=marker_end,
            idle_fallback=descriptor.uses_idle_fallback,
            quiet_interval=quiet_interval,
            output_format=descriptor.output_format,
            structured=descriptor.supports_structured_output,
        )

    def visible_text(self, raw: str, final: bool = False) -> Optional[str]:
        """ANSI-stripped, unwrapped agent text; None if not decodable yet."""
        return unwrap_output(strip_ansi(raw), self.output_format, final=final)

    def check_markers(self, raw: str, final: bool = False) -> Optional[Detection]:
        """Return a terminal detection once a complete marker pair is present."""
        text = self.visible_text(raw, final=final)
        if text is None:
            return None
        block, start_seen = find_marker_block(text, self.marker_start, self.marker_end)
        self.start_seen = self.start_seen or start_seen
        if block is None:
            return None
        payload, err = parse_payload(block)
        if payload is not None:
            return Detection(AgentStatus.COMPLETE, reason="marker", payload=payload)
        return Detection(AgentStatus.MALFORMED_OUTPUT, reason="marker", text=block.strip(), message=err)

    def sample(self, size: int, now: float) -> bool:
        """Record an output-size sample. True once idle-stable for two windows.

        Never fires for empty output, once a start marker has been seen, or
        while the size is still growing between windows.
        """
        if not self.idle_fallback or self.start_seen:
            return False
        if self._last_sample_at is None:
            self._last_sample_at, self._last_size = now, size
            return False
        if now - self._last_sample_at < self.quiet_interval:
            return False
        if size == self._last_size and size > 0:
            self._stable_windows += 1
        else:
            self._stable_windows = 0
        self._last_sample_at, self._last_size = now, size
        return self._stable_windows >= IDLE_STABLE_WINDOWS

    def _fallback(self, text: str, reason: str) -> Detection:
        if self.structured:
            payload = try_parse_full_output(text)
            if payload is not None:
                return Detection(AgentStatus.COMPLETE, reason=reason, payload=payload)
        return Detection(AgentStatus.COMPLETE, reason=reason, text=text.strip(), degraded=True)

    def on_idle(self, raw: str) -> Detection:
        return self._fallback(self.visible_text(raw, final=True) or "", reason="idle")

    def on_exit(self, raw: str, returncode: Optional[int]) -> Detection:
        """Classify output once the process has exited and its pipes drained."""
        found = self.check_markers(raw, final=True)
        if found is not None:
            if returncode != 0:
                logger.warning(f"Agent exited with code {returncode} after a complete marker block")
            return found
        text = self.visible_text(raw, final=True) or ""
        if self.start_seen:
            return Detection(
                AgentStatus.PROCESS_FAILED, reason="exit", text=text,
                error_kind=ErrorKind.INCOMPLETE_OUTPUT,
                message="start marker without matching end marker",
            )
        if returncode != 0:
            return Detection(
                AgentStatus.PROCESS_FAILED, reason="exit", text=text,
                error_kind=ErrorKind.NONZERO_EXIT,
                message=f"exited with code {returncode}",
            )
        if not text.strip():
            return Detection(
                AgentStatus.PROCESS_FAILED, reason="exit",
                error_kind=ErrorKind.EMPTY_OUTPUT,
                message="exited without output",
            )
        return self._fallback(text, reason="exit")

    def on_timeout(self, timeout: float) -> Detection:
        return Detection(AgentStatus.TIMED_OUT, reason="timeout", message=f"no completion within {timeout:g}s")


async def watch(
    handle,
    detector: CompletionDetector,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> Detection:
    """Drive a detector against a running ProcessHandle until a terminal outcome.

    Blocks only on the handle's activity/exit signal or the poll interval, so
    cancelling the calling task stops detection immediately.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    checked_size = -1

    while True:
        exited = handle.exited  # snapshot first: an exited handle has drained its pipes
        size = handle.output.size
        if size != checked_size:
            checked_size = size
            found = detector.check_markers(handle.text())
            if found is not None:
                return found
        if exited:
            return detector.on_exit(handle.text(), handle.returncode)

        now = loop.time()
        if detector.sample(size, now):
            return detector.on_idle(handle.text())
        remaining = deadline - now
        if remaining <= 0:
            return detector.on_timeout(timeout)
        await handle.wait_activity(min(poll_interval, remaining))
