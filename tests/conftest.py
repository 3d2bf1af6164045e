"""Shared test fixtures and utilities."""

from datetime import datetime, timedelta, timezone

import pytest

from cas_blocks.data import read_block
from cas_blocks.store.file import FileBlockStore
from cas_blocks.store.memory import MemoryBlockStore

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _at(seconds: float) -> datetime:
    return EPOCH + timedelta(seconds=seconds)


@pytest.fixture
def at():
    """Factory for fixed UTC timestamps a number of seconds after a test epoch."""
    return _at


@pytest.fixture
def memory_store():
    """Empty in-memory block store."""
    return MemoryBlockStore()


@pytest.fixture
def file_store(tmp_path):
    """Empty file block store in a temp directory."""
    return FileBlockStore(tmp_path / "blocks")


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    """Each block store implementation in turn."""
    if request.param == "memory":
        return MemoryBlockStore()
    return FileBlockStore(tmp_path / "blocks")


@pytest.fixture
def make_block():
    """Factory fixture to hash content into a loaded block."""
    def _make(content=b"test content", algorithm: str = "sha2-256"):
        if isinstance(content, str):
            content = content.encode("utf-8")
        return read_block(algorithm, content)
    return _make
