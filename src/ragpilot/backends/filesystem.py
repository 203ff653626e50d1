"""
Directory-backed document store.
"""

import asyncio
from pathlib import Path

from ..observability.logging import get_logger
from .base import DocumentRef

logger = get_logger(__name__)

_IGNORED_DIRS = frozenset(
    {
        "__pycache__",
        "node_modules",
        ".git",
        ".obsidian",
        ".trash",
        ".vscode",
        ".idea",
        "build",
        "dist",
    }
)


class FileSystemDocumentStore:
    """Serves documents under a root directory, identified by their POSIX path relative to it."""

    def __init__(self, root: Path | str, extensions: tuple[str, ...] | list[str] = (".md",)):
        self.root = Path(root)
        self.extensions = tuple(ext.lower() for ext in extensions)

    async def list_documents(self, path_prefix: str | None = None) -> list[DocumentRef]:
        refs = await asyncio.to_thread(self._discover_files)
        if path_prefix:
            refs = [ref for ref in refs if ref.path.startswith(path_prefix)]
        return refs

    async def read_document(self, ref: DocumentRef) -> str:
        return await asyncio.to_thread(self._read_file, self.root / ref.path)

    def _discover_files(self) -> list[DocumentRef]:
        if not self.root.is_dir():
            logger.warning(f"Knowledge base directory not found: {self.root}")
            return []

        refs = []
        for file_path in sorted(self.root.rglob("*")):
            if not file_path.is_file():
                continue
            if file_path.suffix.lower() not in self.extensions:
                continue
            if self._should_skip_file(file_path):
                continue

            relative = file_path.relative_to(self.root).as_posix()
            refs.append(DocumentRef(path=relative, basename=file_path.stem))

        logger.debug(f"Discovered {len(refs)} documents under {self.root}")
        return refs

    def _should_skip_file(self, file_path: Path) -> bool:
        if file_path.name.startswith("."):
            return True
        relative_parts = file_path.relative_to(self.root).parts
        return any(part in _IGNORED_DIRS for part in relative_parts)

    @staticmethod
    def _read_file(file_path: Path) -> str:
        try:
            return file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            # latin-1 decodes any byte sequence
            return file_path.read_text(encoding="latin-1")
