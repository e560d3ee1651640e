"""Per-feature narrative log written while an agent runs."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Protocol, Union

from automode.services.feature_loader import feature_dir

__all__ = ["ContextManager", "FileContextManager"]

PathLike = Union[str, Path]


class ContextManager(Protocol):
    async def write_to_context_file(
        self, project_path: PathLike, feature_id: str, text: str
    ) -> None: ...


class FileContextManager:
    """Appends to ``.automaker/features/<id>/agent-output.md``.

    Text is appended verbatim; streamed chunks are not newline-terminated.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def context_path(self, project_path: PathLike, feature_id: str) -> Path:
        return feature_dir(project_path, feature_id) / "agent-output.md"

    async def write_to_context_file(
        self, project_path: PathLike, feature_id: str, text: str
    ) -> None:
        if not text:
            return
        await asyncio.to_thread(self._append, self.context_path(project_path, feature_id), text)

    def read_context(self, project_path: PathLike, feature_id: str) -> str:
        try:
            return self.context_path(project_path, feature_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def _append(self, path: Path, text: str) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(text)
