from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "exec-"


@dataclass(slots=True)
class Workspace:
    """Disposable directory owned by exactly one execution request."""

    path: Path
    released: bool = False

    def path_for(self, name: str) -> Path:
        candidate = (self.path / name).resolve()
        if candidate.parent != self.path.resolve():
            raise ValueError(f"File name escapes the workspace: {name!r}")
        return candidate

    def write(self, name: str, content: str) -> Path:
        target = self.path_for(name)
        target.write_text(content, encoding="utf-8")
        return target


def acquire(root: str | None = None) -> Workspace:
    """Create a fresh, uniquely named workspace directory.

    ``mkdtemp`` creates the directory atomically with a random suffix, so
    concurrent requests never share a workspace.
    """
    if root is not None:
        Path(root).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root))
    logger.debug("Acquired workspace %s", path)
    return Workspace(path=path)


def release(ws: Workspace) -> None:
    """Remove the workspace tree. Failures are logged, never raised."""
    if ws.released:
        return
    ws.released = True
    try:
        shutil.rmtree(ws.path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove workspace %s: %s", ws.path, exc)
    else:
        logger.debug("Released workspace %s", ws.path)


@contextmanager
def workspace(root: str | None = None) -> Iterator[Workspace]:
    ws = acquire(root)
    try:
        yield ws
    finally:
        release(ws)
