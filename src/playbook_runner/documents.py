"""Filesystem-backed document store for playbook folders."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from playbook_runner.batch.models import DocReadResult

logger = logging.getLogger(__name__)


class FileDocumentStore:
    """Reads and writes `<folder>/<filename>` as UTF-8 text."""

    async def read_doc(self, folder: str, filename: str) -> DocReadResult:
        return await asyncio.to_thread(self._read, Path(folder) / filename)

    async def write_doc(self, folder: str, filename: str, content: str) -> bool:
        return await asyncio.to_thread(self._write, Path(folder) / filename, content)

    def _read(self, path: Path) -> DocReadResult:
        try:
            return DocReadResult(success=True, content=path.read_text("utf-8"))
        except FileNotFoundError:
            logger.warning("Document not found: %s", path)
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("Failed to read document %s: %s", path, error)
        return DocReadResult(success=False)

    def _write(self, path: Path, content: str) -> bool:
        # Readers only ever see a complete document.
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            tmp_path.write_text(content, "utf-8")
            tmp_path.replace(path)
        except OSError as error:
            logger.warning("Failed to write document %s: %s", path, error)
            return False
        return True
