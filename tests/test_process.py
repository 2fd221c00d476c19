"""Tests for real agent subprocesses (children are `python -c` scripts)."""
from __future__ import annotations

import signal
import sys
from pathlib import Path

import pytest

from conftest import _run, make_descriptor
from detector import CompletionDetector, watch
from models import AgentStatus, HandleState, Invocation, ProcessSpawnError
from process import AgentProcess, build_command, reads_prompt_file

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


def _python(code: str, label: str = "py[test]", stdin_text=None) -> AgentProcess:
    return AgentProcess([sys.executable, "-c", code], stdin_text=stdin_text, label=label)


class TestAgentProcess:
    def test_echoes_stdin_and_exits(self):
        async def scenario():
            handle = _python("import sys; print(sys.stdin.read().upper())", stdin_text="hello council")
            await handle.spawn()
            assert handle.state == HandleState.RUNNING
            await handle.wait(5)
            state = await handle.reap(confirmed=True, grace=1)
            return handle, state

        handle, state = _run(scenario())
        assert handle.returncode == 0
        assert "HELLO COUNCIL" in handle.text()
        assert state == HandleState.SUCCEEDED

    def test_unconfirmed_clean_exit_is_crashed(self):
        async def scenario():
            handle = _python("print('done')")
            await handle.spawn()
            await handle.wait(5)
            return await handle.reap(confirmed=False, grace=1)

        assert _run(scenario()) == HandleState.CRASHED

    def test_captures_stderr_separately(self):
        async def scenario():
            handle = _python("import sys; sys.stderr.write('oops\\n'); sys.exit(2)")
            await handle.spawn()
            await handle.wait(5)
            await handle.reap(confirmed=False, grace=1)
            return handle

        handle = _run(scenario())
        assert handle.returncode == 2
        assert handle.stderr_text().strip() == "oops"
        assert handle.text() == ""

    def test_missing_binary_is_non_transient_spawn_error(self):
        async def scenario():
            handle = AgentProcess(["/nonexistent/agent-cli"], stdin_text=None, label="ghost[x]")
            with pytest.raises(ProcessSpawnError) as info:
                await handle.spawn()
            return handle, info.value

        handle, err = _run(scenario())
        assert not err.transient
        assert handle.state == HandleState.CRASHED

    def test_terminate_kills_hung_process(self):
        async def scenario():
            handle = _python("import time; print('working', flush=True); time.sleep(60)")
            await handle.spawn()
            await handle.wait_activity(5)
            state = await handle.reap(confirmed=False, grace=2)
            return handle, state

        handle, state = _run(scenario())
        assert state == HandleState.KILLED
        assert handle.returncode == -signal.SIGTERM
        assert "working" in handle.text()

    def test_sigkill_after_ignored_sigterm(self):
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )

        async def scenario():
            handle = _python(code)
            await handle.spawn()
            await handle.wait_activity(5)
            state = await handle.reap(confirmed=False, grace=0.5)
            return handle, state

        handle, state = _run(scenario())
        assert state == HandleState.KILLED
        assert handle.returncode == -signal.SIGKILL

    def test_detects_markers_from_real_process(self):
        code = (
            "import json, time\n"
            "print('thinking...', flush=True)\n"
            "print('<<<COUNCIL_RESULT>>>')\n"
            "print(json.dumps({'status': 'complete', 'assessment': 'Looks fine.'}))\n"
            "print('<<<END_COUNCIL_RESULT>>>', flush=True)\n"
            "time.sleep(60)\n"
        )

        async def scenario():
            handle = _python(code)
            await handle.spawn()
            detection = await watch(handle, CompletionDetector(), timeout=10, poll_interval=0.05)
            state = await handle.reap(confirmed=detection.confirmed, grace=1, exit_grace=0.1)
            return detection, state

        detection, state = _run(scenario())
        assert detection.status == AgentStatus.COMPLETE
        assert detection.payload.assessment == "Looks fine."
        # Still running after its answer: terminated, but the answer stands
        assert state == HandleState.KILLED


class TestForInvocation:
    def test_prompt_file_and_placeholders(self, tmp_path):
        descriptor = make_descriptor("custom", cmd=["agent", "--input", "{prompt_file}", "--cwd", "{workspace}"])
        invocation = Invocation(index=0, agent="custom", role="security", prompt="PROMPT", timeout=5, workspace=tmp_path)
        handle = AgentProcess.for_invocation(invocation, descriptor)
        assert (tmp_path / "prompt.md").read_text() == "PROMPT"
        assert handle.cmd == ["agent", "--input", str(tmp_path / "prompt.md"), "--cwd", str(tmp_path)]
        assert handle.stdin_text is None
        assert handle.env["COUNCIL_WORKSPACE"] == str(tmp_path)
        assert reads_prompt_file(descriptor)

    def test_prompt_on_stdin_by_default(self, tmp_path):
        descriptor = make_descriptor("custom", cmd=["agent"])
        invocation = Invocation(index=0, agent="custom", role="r", prompt="PROMPT", timeout=5, workspace=tmp_path)
        handle = AgentProcess.for_invocation(invocation, descriptor)
        assert handle.stdin_text == "PROMPT"

    def test_role_injection_args(self, tmp_path):
        descriptor = make_descriptor(
            "claude", cmd=["claude", "-p"], supports_role_injection=True,
            role_args=["--append-system-prompt", "{role_text}"],
        )
        cmd = build_command(descriptor, Path(tmp_path), role_text="You are {strict}.")
        assert cmd == ["claude", "-p", "--append-system-prompt", "You are {strict}."]

    def test_role_args_ignored_without_capability(self, tmp_path):
        descriptor = make_descriptor("codex", cmd=["codex"], role_args=["--system", "{role_file}"])
        assert build_command(descriptor, Path(tmp_path)) == ["codex"]
