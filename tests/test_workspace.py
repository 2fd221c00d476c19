"""Tests for secure per-invocation workspaces."""
from __future__ import annotations

import stat

import pytest

from workspace import SecureWorkspace


class TestSecureWorkspace:
    def test_owner_only_permissions(self, tmp_path):
        ws = SecureWorkspace(tmp_path / "root")
        path = ws.acquire("codex[security]")
        assert path.is_dir()
        assert stat.S_IMODE(path.stat().st_mode) == 0o700

    def test_unique_paths(self, tmp_path):
        ws = SecureWorkspace(tmp_path)
        paths = {ws.acquire("same") for _ in range(5)}
        assert len(paths) == 5

    def test_release_removes_contents(self, tmp_path):
        ws = SecureWorkspace(tmp_path)
        path = ws.acquire()
        (path / "nested").mkdir()
        (path / "nested" / "prompt.md").write_text("secret")
        ws.release(path)
        assert not path.exists()
        assert ws.active == set()

    def test_release_twice_is_noop(self, tmp_path):
        ws = SecureWorkspace(tmp_path)
        path = ws.acquire()
        ws.release(path)
        ws.release(path)
        assert not path.exists()

    def test_scoped_releases_on_exception(self, tmp_path):
        ws = SecureWorkspace(tmp_path)
        with pytest.raises(RuntimeError):
            with ws.scoped("agent") as path:
                (path / "out.txt").write_text("partial")
                raise RuntimeError("boom")
        assert not path.exists()
        assert ws.active == set()

    def test_release_all(self, tmp_path):
        ws = SecureWorkspace(tmp_path)
        paths = [ws.acquire(f"a{i}") for i in range(3)]
        ws.release_all()
        assert not any(p.exists() for p in paths)
