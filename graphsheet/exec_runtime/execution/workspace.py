"""Workspace setup for sheet execution.

Each sheet runs in its own directory on the host:

- ``{data_root}/{prefix}/workspaces/{playground_id}/{sheet_id}/``

The directory is rebuilt from the sheet's stored files before every run, so
files deleted from the sheet do not linger and the process only sees the
sheet's own code.
"""

from __future__ import annotations

import shutil
from collections.abc import Sequence
from pathlib import Path, PurePosixPath

from graphsheet.exec_runtime.execution.sandbox import SpawnError
from graphsheet.exec_runtime.models.enums import Phase
from graphsheet.exec_runtime.models.sheet import SessionKey, SheetFile
from graphsheet.exec_runtime.settings import GraphsheetSettings

DEFAULT_ENTRYPOINT = "main.py"


class SheetPaths:
    """Resolved host paths for one sheet's workspace."""

    def __init__(
        self,
        *,
        data_root: Path,
        prefix: str | None,
        key: SessionKey,
    ) -> None:
        base = data_root
        if prefix:
            base = base / prefix
        self.key = key
        self.root = base / "workspaces" / key.playground_id / key.sheet_id

    def file_path(self, filename: str) -> Path:
        """Host path for a sheet file.  Raises ``SpawnError`` for unsafe names."""
        relative = PurePosixPath(filename)
        if not filename or relative.is_absolute() or ".." in relative.parts or "\\" in filename:
            msg = f"Unsafe filename in sheet {self.key}: {filename!r}"
            raise SpawnError(msg, phase=Phase.SETUP)
        return self.root.joinpath(*relative.parts)

    def materialize(self, files: Sequence[SheetFile]) -> None:
        """Rewrite the workspace directory with exactly *files*."""
        targets = [(self.file_path(f.filename), f.code) for f in files]
        if self.root.exists():
            shutil.rmtree(self.root)
        self.root.mkdir(parents=True, exist_ok=True)
        for path, code in targets:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(code, encoding="utf-8")


def resolve_sheet_paths(key: SessionKey, settings: GraphsheetSettings) -> SheetPaths:
    """Build ``SheetPaths`` from a session key and settings."""
    return SheetPaths(data_root=Path(settings.data_root), prefix=settings.data_prefix, key=key)


def select_entrypoint(files: Sequence[SheetFile]) -> str:
    """Pick the file to run: ``main.py`` if present, else the first Python file.

    Raises ``SpawnError`` when the sheet has no Python file.
    """
    python_files = [f for f in files if f.is_python]
    for f in python_files:
        if f.filename == DEFAULT_ENTRYPOINT:
            return f.filename
    if python_files:
        return python_files[0].filename
    msg = "Sheet has no Python file to run"
    raise SpawnError(msg, phase=Phase.SETUP)
