#!/usr/bin/env python3
"""
Agent Council Prompt Composition

Builds the final input blob for one agent invocation: role instructions, a
separator, the task content, then referenced file contents in reference order.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

from models import AgentDescriptor, CompositionError

logger = logging.getLogger("council")

SEPARATOR = "\n\n---\n\n"

# Per-file size limit for referenced files
MAX_FILE_SIZE = 1_000_000  # 1MB


def build_completion_instructions(
    descriptor: AgentDescriptor, marker_start: str, marker_end: str
) -> str:
    """Output-format instructions appended to the role section for this agent."""
    if not descriptor.supports_completion_marker:
        if not descriptor.supports_structured_output:
            return ""
        return """\
OUTPUT REQUIREMENTS
Finish with a single JSON object (no markdown) holding at least "status",
"assessment" and "confidence" (high | medium | low).""".strip()

    if descriptor.supports_structured_output:
        body = """\
{
  "status": "complete",
  "assessment": "overall assessment in plain sentences",
  "confidence": "high" | "medium" | "low",
  "strengths": ["..."],
  "concerns": ["..."],
  "recommendations": ["..."]
}"""
    else:
        body = '{"status": "complete", "assessment": "your full analysis as one string"}'

    return f"""\
OUTPUT REQUIREMENTS
When your analysis is finished, write a line containing only {marker_start},
then a single JSON object, then a line containing only {marker_end}.
Write nothing after the closing line. The JSON object must look like:
{body}""".strip()


def read_file_refs(paths: Sequence[Path], max_file_size: int = MAX_FILE_SIZE) -> str:
    """Read referenced files in order, each under a header.

    Raises:
        CompositionError: If any file is missing, unreadable or too large
    """
    parts: List[str] = []
    for path in paths:
        try:
            if not path.is_file():
                raise CompositionError(f"Referenced file not found: {path}")
            size = path.stat().st_size
            if size > max_file_size:
                raise CompositionError(f"Referenced file too large ({size} bytes, max {max_file_size}): {path}")
            text = path.read_text(encoding="utf-8", errors="replace")
        except PermissionError as e:
            raise CompositionError(f"Permission denied: {path}") from e
        except OSError as e:
            raise CompositionError(f"Error reading {path}: {e}") from e
        parts.append(f"### FILE: {path}\n\n```\n{text}\n```\n")
    return "\n".join(parts)


def compose_prompt(
    role_template: str,
    task: str,
    files: Sequence[Path] = (),
    completion_instructions: str = "",
) -> str:
    """Compose the input blob for one invocation.

    Deterministic for identical inputs. An empty role section (role injected
    through CLI arguments instead) is omitted together with its separator.

    Args:
        role_template: Opaque role text
        task: Opaque task payload
        files: Referenced files, appended in the given order
        completion_instructions: Output-format instructions for this agent

    Raises:
        CompositionError: If a referenced file cannot be read
    """
    role_section = "\n\n".join(p for p in (role_template.strip(), completion_instructions.strip()) if p)
    task_section = task.strip()
    file_section = read_file_refs(files)
    if file_section:
        task_section = f"{task_section}\n\n{file_section}" if task_section else file_section

    if not role_section:
        return task_section + "\n"
    return f"{role_section}{SEPARATOR}{task_section}\n"
