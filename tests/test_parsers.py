"""Tests for output unwrapping, marker extraction and payload parsing."""
from __future__ import annotations

import json

from detector import DEFAULT_MARKER_END as END, DEFAULT_MARKER_START as START
from parsers import (
    find_marker_block, parse_payload, strip_ansi, try_parse_full_output, unwrap_output,
)


class TestStripAnsi:
    def test_colors_and_cursor_codes(self):
        assert strip_ansi("\x1b[1;32mOK\x1b[0m done\x1b[2K") == "OK done"

    def test_osc_title_and_crlf(self):
        assert strip_ansi("\x1b]0;title\x07line one\r\nline two") == "line one\nline two"


class TestUnwrapOutput:
    def test_text_passthrough(self):
        assert unwrap_output("hello", "text") == "hello"

    def test_json_wrapper_result_key(self):
        raw = json.dumps({"type": "result", "result": "final answer"})
        assert unwrap_output(raw, "json") == "final answer"

    def test_json_not_decodable_while_streaming(self):
        assert unwrap_output('{"result": "partial', "json") is None
        assert unwrap_output('{"result": "partial', "json", final=True) == '{"result": "partial'

    def test_jsonl_codex_events(self):
        lines = [
            {"type": "thread.started"},
            {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
            {"type": "item.completed", "item": {"type": "agent_message", "text": "the answer"}},
        ]
        raw = "\n".join(json.dumps(e) for e in lines) + "\n"
        assert unwrap_output(raw, "jsonl") == "the answer"

    def test_jsonl_partial_last_line_waits(self):
        done = json.dumps({"msg": {"type": "agent_message", "message": "first"}})
        assert unwrap_output(done + "\n" + '{"msg": {"ty', "jsonl") == "first"


class TestFindMarkerBlock:
    def test_complete_pair(self):
        block, seen = find_marker_block(f"preamble\n{START}\n{{}}\n{END}\n", START, END)
        assert seen
        assert block.strip() == "{}"

    def test_inline_mention_is_not_a_start(self):
        text = f"write a line containing only {START}, then JSON, then {END}."
        assert find_marker_block(text, START, END) == (None, False)

    def test_start_without_end(self):
        assert find_marker_block(f"{START}\n{{\"status\":", START, END) == (None, True)

    def test_first_end_after_start_wins(self):
        text = f"{START}\nA\n{END}\nB\n{END}\n"
        block, _ = find_marker_block(text, START, END)
        assert block.strip() == "A"


class TestParsePayload:
    def test_json_payload(self):
        payload, err = parse_payload('{"status": "complete", "assessment": "Fine.", "confidence": 0.9}')
        assert err == ""
        assert payload.confidence == "high"

    def test_fenced_json(self):
        payload, _ = parse_payload('```json\n{"status": "ok", "assessment": "Fine."}\n```')
        assert payload.assessment == "Fine."

    def test_yaml_fallback(self):
        payload, _ = parse_payload("status: complete\nassessment: Looks good\nconcerns:\n  - slow startup\n")
        assert payload.concerns == ("slow startup",)

    def test_missing_status(self):
        payload, err = parse_payload('{"assessment": "Fine."}')
        assert payload is None
        assert "status" in err

    def test_assessment_is_optional(self):
        payload, err = parse_payload('{status: complete, confidence: high}')
        assert err == ""
        assert payload.status == "complete"
        assert payload.assessment == ""
        assert payload.confidence == "high"

    def test_not_a_mapping(self):
        payload, err = parse_payload("just some prose")
        assert payload is None
        assert "expected mapping" in err

    def test_recommendation_string_leads_recommendations(self):
        payload, _ = parse_payload(json.dumps({
            "status": "complete", "assessment": "x",
            "recommendation": "Ship it", "recommendations": ["Add tests"],
        }))
        assert payload.recommendations == ("Ship it", "Add tests")
        assert payload.to_dict()["recommendation"] == "Ship it"


class TestTryParseFullOutput:
    def test_last_fenced_block_in_prose(self):
        text = 'Here is my review.\n```json\n{"status": "complete", "assessment": "Solid."}\n```\n'
        assert try_parse_full_output(text).assessment == "Solid."

    def test_plain_prose(self):
        assert try_parse_full_output("No structure at all here.") is None
