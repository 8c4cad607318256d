"""
Content boundary: where module chunks and the module catalog come from.

Text extraction and file storage live outside deckforge. The orchestrator only
needs two capabilities:
- ContentFetcher.fetch_chunks(course_id, module_id)
- ModuleCatalog.list_modules(course_id=None) / get_module(...)

Two implementations are provided: an in-memory source for tests and embedding,
and a JSON directory source laid out as <root>/<course_id>/<module_id>.json.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from deckforge.generation.models import Chunk


@dataclass(frozen=True)
class ModuleRef:
    """A module addressable by the orchestrator."""

    course_id: str
    module_id: str
    title: str = ""

    @property
    def display_title(self) -> str:
        return self.title or f"Module {self.module_id}"

    def to_dict(self) -> dict[str, Any]:
        return {"course_id": self.course_id, "module_id": self.module_id, "title": self.title}


class ContentFetcher(ABC):
    @abstractmethod
    async def fetch_chunks(self, course_id: str, module_id: str) -> list[Chunk]:
        """Return the module's chunks; an empty list means no content."""


class ModuleCatalog(ABC):
    @abstractmethod
    async def list_modules(self, course_id: Optional[str] = None) -> list[ModuleRef]:
        """List modules of one course, or of every course when course_id is None."""

    @abstractmethod
    async def get_module(self, course_id: str, module_id: str) -> Optional[ModuleRef]:
        ...


class InMemoryContentSource(ContentFetcher, ModuleCatalog):
    """Content fetcher and catalog backed by dictionaries."""

    def __init__(self) -> None:
        self._modules: dict[tuple[str, str], ModuleRef] = {}
        self._chunks: dict[tuple[str, str], list[Chunk]] = {}

    def register_module(
        self,
        course_id: str,
        module_id: str,
        title: str = "",
        chunks: list[Chunk] | None = None,
    ) -> ModuleRef:
        ref = ModuleRef(course_id=str(course_id), module_id=str(module_id), title=title)
        self._modules[(ref.course_id, ref.module_id)] = ref
        self._chunks[(ref.course_id, ref.module_id)] = list(chunks or [])
        return ref

    async def fetch_chunks(self, course_id: str, module_id: str) -> list[Chunk]:
        return list(self._chunks.get((str(course_id), str(module_id)), []))

    async def list_modules(self, course_id: Optional[str] = None) -> list[ModuleRef]:
        return [
            ref
            for ref in self._modules.values()
            if course_id is None or ref.course_id == str(course_id)
        ]

    async def get_module(self, course_id: str, module_id: str) -> Optional[ModuleRef]:
        return self._modules.get((str(course_id), str(module_id)))


class JsonDirectoryContentSource(ContentFetcher, ModuleCatalog):
    """
    Reads pre-extracted chunks from disk.

    Each module file is either a list of chunk objects or
    {"title": "...", "chunks": [...]}.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _module_path(self, course_id: str, module_id: str) -> Path:
        return self.root / str(course_id) / f"{module_id}.json"

    def _read(self, path: Path) -> dict[str, Any]:
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, list):
            return {"title": "", "chunks": data}
        return data

    def _scan(self, course_id: Optional[str]) -> list[ModuleRef]:
        if not self.root.exists():
            logger.warning(f"Content directory not found: {self.root}")
            return []

        course_dirs = (
            [self.root / str(course_id)]
            if course_id is not None
            else sorted(p for p in self.root.iterdir() if p.is_dir())
        )
        refs: list[ModuleRef] = []
        for course_dir in course_dirs:
            if not course_dir.is_dir():
                continue
            for path in sorted(course_dir.glob("*.json")):
                try:
                    title = self._read(path).get("title", "")
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Skipping unreadable module file {path}: {e}")
                    continue
                refs.append(ModuleRef(course_id=course_dir.name, module_id=path.stem, title=title))
        return refs

    def _load_chunks(self, course_id: str, module_id: str) -> list[Chunk]:
        path = self._module_path(course_id, module_id)
        if not path.exists():
            return []
        return [Chunk.from_dict(c) for c in self._read(path).get("chunks", [])]

    async def fetch_chunks(self, course_id: str, module_id: str) -> list[Chunk]:
        return await asyncio.to_thread(self._load_chunks, course_id, module_id)

    async def list_modules(self, course_id: Optional[str] = None) -> list[ModuleRef]:
        return await asyncio.to_thread(self._scan, course_id)

    async def get_module(self, course_id: str, module_id: str) -> Optional[ModuleRef]:
        path = self._module_path(course_id, module_id)
        if not path.exists():
            return None
        data = await asyncio.to_thread(self._read, path)
        return ModuleRef(course_id=str(course_id), module_id=str(module_id), title=data.get("title", ""))
