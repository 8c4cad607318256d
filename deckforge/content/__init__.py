"""Content fetcher and module catalog boundary."""

from deckforge.content.fetcher import (
    ContentFetcher,
    InMemoryContentSource,
    JsonDirectoryContentSource,
    ModuleCatalog,
    ModuleRef,
)

__all__ = [
    "ContentFetcher",
    "InMemoryContentSource",
    "JsonDirectoryContentSource",
    "ModuleCatalog",
    "ModuleRef",
]
