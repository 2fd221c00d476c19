#!/usr/bin/env python3
"""
Agent Council Secure Workspaces

Per-invocation scratch directories with owner-only permissions and guaranteed
release on every exit path.
"""
from __future__ import annotations

import contextlib
import logging
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Set

from models import WorkspaceError
from utils import ensure_secure_dir, safe_label

logger = logging.getLogger("council")

WORKSPACE_PREFIX = "council-"


class SecureWorkspace:
    """Provision and remove private scratch directories.

    Every acquired directory has a unique name and 0700 permissions. Nothing is
    ever reused: a released directory is removed recursively.
    """

    def __init__(self, root: Optional[Path] = None, prefix: str = WORKSPACE_PREFIX):
        self.root = root
        self.prefix = prefix
        self._active: Set[Path] = set()

    @property
    def active(self) -> Set[Path]:
        return set(self._active)

    def acquire(self, label: str = "agent") -> Path:
        """Create a new private workspace and return its path."""
        try:
            if self.root is not None:
                ensure_secure_dir(self.root)
            path = Path(tempfile.mkdtemp(prefix=f"{self.prefix}{safe_label(label)}-", dir=self.root))
            path.chmod(stat.S_IRWXU)
        except OSError as e:
            raise WorkspaceError(f"Failed to create workspace for {label}: {e}") from e
        self._active.add(path)
        logger.debug(f"Acquired workspace {path}")
        return path

    def release(self, path: Path) -> None:
        """Remove a workspace recursively. Releasing twice is a no-op."""
        self._active.discard(path)
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise WorkspaceError(f"Failed to remove workspace {path}: {e}") from e
        logger.debug(f"Released workspace {path}")

    def release_all(self) -> None:
        """Release every workspace still held. Failures are logged, not raised."""
        for path in list(self._active):
            try:
                self.release(path)
            except WorkspaceError as e:
                logger.warning(str(e))

    @contextlib.contextmanager
    def scoped(self, label: str = "agent") -> Iterator[Path]:
        """Acquire a workspace for the duration of a block.

        Release runs on normal exit, exceptions and task cancellation alike. A
        release failure is logged and never masks the block's own outcome.
        """
        path = self.acquire(label)
        try:
            yield path
        finally:
            try:
                self.release(path)
            except WorkspaceError as e:
                logger.warning(str(e))
