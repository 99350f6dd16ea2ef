"""Local file writes for downloaded scripts."""

from __future__ import annotations

import asyncio
from pathlib import Path


class FileWriter:
    """Writes text files off the event loop, creating parent directories as needed."""

    async def write_file(self, path: Path, content: str) -> None:
        await asyncio.to_thread(self._write, path, content)

    def exists(self, path: Path) -> bool:
        return path.is_file()

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(path)
