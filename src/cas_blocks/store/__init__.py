"""Block store protocol and backend implementations."""

from .base import BlockStats, BlockStore, ErasableStore, ListOptions, select_ids
from .file import FileBlockStore
from .memory import MemoryBlockStore

__all__ = [
    "BlockStore",
    "ErasableStore",
    "BlockStats",
    "ListOptions",
    "select_ids",
    "MemoryBlockStore",
    "FileBlockStore",
]
