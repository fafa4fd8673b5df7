"""Isolated scratch copies of the project used for verification runs."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import threading
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

LOGGER = logging.getLogger(__name__)

SCRATCH_PREFIX = "uta-scratch-"

_IGNORED = (
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    "*.pyc",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".tox",
    ".nox",
    ".venv",
    "venv",
    "node_modules",
    ".uta",
    "*.egg-info",
)


class _CopyAborted(Exception):
    """Raised inside the copy worker once the owning task has been cancelled."""


class ScratchArea:
    """Context manager owning a throwaway copy of ``source_root``.

    Use ``async with`` from coroutines: the copy and the removal then run in a
    worker thread so other tasks on the loop keep running. The copy is removed
    on every exit path, including exceptions and task cancellation.
    """

    def __init__(
        self,
        source_root: Path | str,
        *,
        parent: Optional[Path | str] = None,
        label: str = "",
        extra_ignores: tuple[str, ...] = (),
    ) -> None:
        self._source_root = Path(source_root).resolve()
        self._parent = Path(parent) if parent is not None else None
        self._label = label
        self._ignores = _IGNORED + tuple(extra_ignores)
        self._path: Optional[Path] = None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise RuntimeError("Scratch area is not active")
        return self._path

    def _create_root(self) -> Path:
        if self._parent is not None:
            self._parent.mkdir(parents=True, exist_ok=True)
        prefix = f"{SCRATCH_PREFIX}{self._label}-" if self._label else SCRATCH_PREFIX
        root = Path(tempfile.mkdtemp(prefix=prefix, dir=self._parent))
        self._path = root
        return root

    def _copy_sync(self, root: Path, abort: Optional[threading.Event] = None) -> None:
        def copy_file(source: str, destination: str) -> object:
            if abort is not None and abort.is_set():
                raise _CopyAborted(source)
            return shutil.copy2(source, destination)

        shutil.copytree(
            self._source_root,
            root / "project",
            ignore=shutil.ignore_patterns(*self._ignores),
            symlinks=True,
            copy_function=copy_file,
        )

    def __enter__(self) -> "ScratchArea":
        root = self._create_root()
        try:
            self._copy_sync(root)
        except BaseException:
            self.cleanup()
            raise
        LOGGER.debug("Created scratch copy %s", root)
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.cleanup()

    async def __aenter__(self) -> "ScratchArea":
        root = self._create_root()
        abort = threading.Event()
        copy = asyncio.ensure_future(asyncio.to_thread(self._copy_sync, root, abort))
        try:
            await asyncio.shield(copy)
        except BaseException:
            abort.set()
            try:
                # The worker must stop writing before its output is removed.
                await asyncio.wait({copy})
            finally:
                await self.aclose()
            raise
        LOGGER.debug("Created scratch copy %s", root)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.aclose()

    @property
    def project(self) -> Path:
        """Root of the copied project inside the scratch area."""
        return self.path / "project"

    @property
    def artifacts(self) -> Path:
        """Directory for run artifacts that must not be collected as project files."""
        directory = self.path / "artifacts"
        directory.mkdir(exist_ok=True)
        return directory

    def write(self, relative: str, content: str) -> Path:
        target = (self.project / relative).resolve()
        try:
            target.relative_to(self.project.resolve())
        except ValueError as error:
            raise ValueError(f"Refusing to write outside the scratch project: {relative}") from error
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def cleanup(self) -> None:
        if self._path is None:
            return
        path, self._path = self._path, None
        shutil.rmtree(path, ignore_errors=True)
        LOGGER.debug("Removed scratch copy %s", path)

    async def aclose(self) -> None:
        """Remove the copy off the event loop; falls back to a blocking removal if cancelled."""
        if self._path is None:
            return
        path, self._path = self._path, None
        try:
            await asyncio.shield(asyncio.to_thread(shutil.rmtree, path, ignore_errors=True))
        except asyncio.CancelledError:
            shutil.rmtree(path, ignore_errors=True)
            raise
        finally:
            LOGGER.debug("Removed scratch copy %s", path)
