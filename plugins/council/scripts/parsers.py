#!/usr/bin/env python3
"""
Agent Council Output Parsers

Functions for turning raw agent output into text and structured payloads:
ANSI stripping, CLI wrapper unwrapping (Claude/Gemini JSON, Codex JSONL events),
completion-marker extraction and payload parsing.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import yaml

from models import ReviewPayload

logger = logging.getLogger("council")

# CSI sequences, OSC sequences (BEL or ST terminated), two-byte escapes, stray C0 controls
ANSI_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]"
)

FENCE_PATTERN = re.compile(r"^\s*```(?:json|yaml|yml)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)

# Keys holding the agent's final text in whole-output JSON wrappers
WRAPPER_TEXT_KEYS = ("result", "response", "content", "message", "text")


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and control bytes (keeps \\t, \\n, \\r)."""
    return ANSI_PATTERN.sub("", text).replace("\r\n", "\n").replace("\r", "\n")


def _wrapper_text(obj: Any) -> Optional[str]:
    """Pull the agent's text out of a single JSON wrapper object."""
    if isinstance(obj, str):
        return obj
    if isinstance(obj, list):
        # Claude CLI may emit an array of events; the result entry is usually last
        for entry in reversed(obj):
            if isinstance(entry, dict) and entry.get("type") == "result":
                return _wrapper_text(entry)
        return None
    if not isinstance(obj, dict):
        return None
    for key in WRAPPER_TEXT_KEYS:
        value = obj.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            # Anthropic-style content blocks
            parts = [b.get("text", "") for b in value if isinstance(b, dict) and b.get("type") == "text"]
            if parts:
                return "\n".join(parts)
    return None


def _event_text(event: Dict[str, Any]) -> Optional[str]:
    """Pull agent message text out of one JSONL event, if it carries any."""
    # Codex exec --json: {"type": "item.completed", "item": {"type": "agent_message", "text": ...}}
    item = event.get("item")
    if isinstance(item, dict) and item.get("type") == "agent_message":
        if event.get("type") in (None, "item.completed"):
            return item.get("text")
        return None
    # Legacy Codex: {"id": ..., "msg": {"type": "agent_message", "message": ...}}
    msg = event.get("msg")
    if isinstance(msg, dict) and msg.get("type") == "agent_message":
        return msg.get("message")
    # Claude stream-json final result
    if event.get("type") == "result" and isinstance(event.get("result"), str):
        return event["result"]
    return None


def unwrap_output(raw: str, output_format: str, final: bool = False) -> Optional[str]:
    """Convert raw CLI output into the agent's own text.

    Args:
        raw: Decoded, ANSI-stripped output so far
        output_format: text | json | jsonl
        final: True once the process has exited (partial output is final)

    Returns:
        The unwrapped text, or None if the output cannot be decoded yet.
    """
    if output_format == "json":
        stripped = raw.strip()
        if not stripped:
            return "" if final else None
        try:
            obj = json.loads(stripped)
        except json.JSONDecodeError:
            # Incomplete wrapper while streaming; at exit fall back to raw text
            return raw if final else None
        text = _wrapper_text(obj)
        return text if text is not None else raw

    if output_format == "jsonl":
        lines = raw.split("\n")
        if not final and not raw.endswith("\n"):
            lines = lines[:-1]  # last line still being written
        texts: List[str] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                texts.append(line)
                continue
            if isinstance(event, dict):
                text = _event_text(event)
                if text:
                    texts.append(text)
        return "\n".join(texts)

    return raw


def find_marker_block(text: str, start: str, end: str) -> Tuple[Optional[str], bool]:
    """Locate the completion marker pair.

    The start marker must begin a line; the end marker is its first occurrence
    after the start marker. Anything after the end marker is ignored.

    Returns:
        (payload_text, start_seen) - payload_text is None until the pair is complete.
    """
    pattern = re.compile(r"(?:^|\n)[ \t]*" + re.escape(start))
    match = pattern.search(text)
    if not match:
        return None, False
    end_idx = text.find(end, match.end())
    if end_idx < 0:
        return None, True
    return text[match.end():end_idx], True


def _strip_fence(text: str) -> str:
    match = FENCE_PATTERN.match(text)
    return match.group(1) if match else text


def parse_structured(text: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """Parse text as a JSON (then YAML) mapping. Returns (mapping, error_reason)."""
    raw = _strip_fence(text.strip()).strip()
    if not raw:
        return None, "empty payload"
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        try:
            obj = yaml.safe_load(raw)
        except yaml.YAMLError:
            return None, f"JSON parse error: {e}"
    if not isinstance(obj, dict):
        return None, f"payload parsed to {type(obj).__name__}, expected mapping"
    return obj, ""


def parse_payload(text: str) -> Tuple[Optional[ReviewPayload], str]:
    """Parse a marker payload into a ReviewPayload. Returns (payload, error_reason)."""
    obj, err = parse_structured(text)
    if obj is None:
        return None, err
    if "status" not in obj:
        return None, "payload missing required field: status"
    return ReviewPayload.from_dict(obj), ""


def try_parse_full_output(text: str) -> Optional[ReviewPayload]:
    """Best-effort structured parse of a whole output (idle/exit fallback)."""
    candidate = text.strip()
    if not candidate:
        return None
    payload, _ = parse_payload(candidate)
    if payload is not None:
        return payload
    # Agents often wrap JSON in prose; try the last fenced block
    blocks = re.findall(r"```(?:json|yaml|yml)?\s*\n(.*?)```", candidate, re.DOTALL)
    if blocks:
        payload, _ = parse_payload(blocks[-1])
    return payload
