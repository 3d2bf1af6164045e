"""Block type and constructor functions.

Blocks have two primary attributes, ``id`` and ``size``. The block identifier
is a multihash of the content; the size is the number of bytes of content.
Blocks also carry a ``stored_at`` timestamp for when they were persisted, but
it does not affect equality or the block's hash.

A block references its content either in memory as ``ByteContent`` (a
*loaded* block) or through a ``StreamContent`` factory (a *lazy* block).
Blocks returned from listings carry no content at all.

Blocks are never constructed directly; use :func:`create_block`,
:func:`load_block` or :func:`read_block`, which validate their inputs.
"""

from __future__ import annotations

import io
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, BinaryIO, Callable, Mapping, Optional

from .content import ByteContent, ContentReader, StreamContent
from .errors import ContentUnavailable, IdentifierMismatch, InvalidBlock, SizeMismatch
from .hashing import CHUNK_SIZE, Multihash, hash_function


_EMPTY_META: Mapping[str, Any] = MappingProxyType({})
_CONSTRUCT = object()


# ============= Block Type =============

class Block:
    """Immutable, content-identified unit of stored data.

    Equality and hashing use ``(id, size)``; ordering is by
    ``(id, size, stored_at)``.
    """

    __slots__ = ("_id", "_size", "_stored_at", "_content", "_meta", "_hash")

    def __init__(self, token, id, size, stored_at, content, meta=None):
        if token is not _CONSTRUCT:
            raise TypeError("Blocks must be built with create_block, load_block or read_block")
        object.__setattr__(self, "_id", id)
        object.__setattr__(self, "_size", size)
        object.__setattr__(self, "_stored_at", stored_at)
        object.__setattr__(self, "_content", content)
        object.__setattr__(self, "_meta", MappingProxyType(dict(meta)) if meta else _EMPTY_META)
        object.__setattr__(self, "_hash", hash((Block, id, size)))

    def __setattr__(self, name, value):
        raise AttributeError(f"Block is immutable, cannot set {name!r}")

    def __delattr__(self, name):
        raise AttributeError(f"Block is immutable, cannot delete {name!r}")

    @property
    def id(self) -> Multihash:
        return self._id

    @property
    def size(self) -> int:
        return self._size

    @property
    def stored_at(self) -> datetime:
        return self._stored_at

    @property
    def content(self) -> Optional[ContentReader]:
        return self._content

    @property
    def meta(self) -> Mapping[str, Any]:
        """Read-only metadata attached to this block."""
        return self._meta

    def __eq__(self, other):
        if self is other:
            return True
        if type(other) is not Block:
            return NotImplemented
        return self._id == other._id and self._size == other._size

    def __hash__(self):
        return self._hash

    def _sort_key(self):
        return (self._id, self._size, self._stored_at)

    def __lt__(self, other):
        if type(other) is not Block:
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __le__(self, other):
        if type(other) is not Block:
            return NotImplemented
        return self._sort_key() <= other._sort_key()

    def __gt__(self, other):
        if type(other) is not Block:
            return NotImplemented
        return self._sort_key() > other._sort_key()

    def __ge__(self, other):
        if type(other) is not Block:
            return NotImplemented
        return self._sort_key() >= other._sort_key()

    def __repr__(self) -> str:
        stored = self._stored_at.isoformat() if self._stored_at else None
        return f"Block[{self._id} {self._size} {stored}]"

    def __reduce__(self):
        return (_rebuild, (self._id, self._size, self._stored_at, self._content, dict(self._meta)))

    def open(self, start: Optional[int] = None, end: Optional[int] = None) -> BinaryIO:
        """Open a stream over the block content. See :func:`content_stream`."""
        return content_stream(self, start, end)

    def read(self) -> bytes:
        """Read the full block content into memory."""
        with self.open() as stream:
            return stream.read()


def _rebuild(id, size, stored_at, content, meta):
    return Block(_CONSTRUCT, id, size, stored_at, content, meta)


# ============= Content Functions =============

def content_stream(block: Block, start: Optional[int] = None, end: Optional[int] = None) -> BinaryIO:
    """Open a stream to read the block content.

    Args:
        block: Block to read
        start: First byte to read, inclusive (None for the beginning)
        end: Last byte to read, inclusive (None for the end)

    Raises:
        ContentUnavailable: If the block has no content reader
    """
    content = block.content
    if content is None:
        raise ContentUnavailable(block)
    if start is not None or end is not None:
        return content.read_range(start, end)
    return content.read_all()


def is_loaded(block: Block) -> bool:
    """True if the block content is held in memory."""
    return isinstance(block.content, ByteContent)


def is_lazy(block: Block) -> bool:
    """True if the block content is read on demand from a stream factory."""
    return block.content is not None and not isinstance(block.content, ByteContent)


def _read_stream(stream: BinaryIO) -> bytes:
    buf = io.BytesIO()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        buf.write(chunk)
    return buf.getvalue()


def collect_bytes(source) -> ByteContent:
    """Collect a byte source into a ``ByteContent``.

    Accepts bytes-like values, ``ByteContent`` (returned as is), ``str``
    (encoded as UTF-8), ``Path`` (file contents), ``StreamContent`` and
    other content readers, binary file-like objects, and iterables of byte
    chunks. File-like objects are read to the end but not closed.

    Raises:
        TypeError: If the source type is not supported
    """
    if isinstance(source, ByteContent):
        return source
    if isinstance(source, (bytes, bytearray, memoryview)):
        return ByteContent(source)
    if isinstance(source, str):
        return ByteContent(source.encode("utf-8"))
    if isinstance(source, Path):
        with source.open("rb") as f:
            return ByteContent(_read_stream(f))
    if isinstance(source, Block):
        with source.open() as stream:
            return ByteContent(_read_stream(stream))
    if isinstance(source, ContentReader):
        with source.read_all() as stream:
            return ByteContent(_read_stream(stream))
    if hasattr(source, "read"):
        return ByteContent(_read_stream(source))
    if hasattr(source, "__iter__"):
        buf = io.BytesIO()
        for chunk in source:
            if not isinstance(chunk, (bytes, bytearray, memoryview)):
                raise TypeError(f"Byte source yielded non-bytes chunk: {type(chunk).__name__}")
            buf.write(chunk)
        return ByteContent(buf.getvalue())
    raise TypeError(f"Cannot collect bytes from {type(source).__name__}")


# ============= Constructors =============

def now() -> datetime:
    """Return the current time in UTC.

    Patched in tests to control timestamps.
    """
    return datetime.now(timezone.utc)


def create_block(id: Multihash, size: int, stored_at: datetime, content: ContentReader) -> Block:
    """Create a block from a content reader.

    The id and size are trusted as given: nothing checks that the content
    has ``size`` bytes or hashes to ``id``.

    Raises:
        InvalidBlock: If any argument is missing or malformed
    """
    if not isinstance(id, Multihash):
        raise InvalidBlock("Block id must be a multihash", id=id, size=size, stored_at=stored_at)
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise InvalidBlock("Block size must be a positive integer", id=id, size=size, stored_at=stored_at)
    if stored_at is None:
        raise InvalidBlock("Block must have a stored-at timestamp", id=id, size=size, stored_at=stored_at)
    if content is None:
        raise InvalidBlock("Block must have a content reader", id=id, size=size, stored_at=stored_at)
    if callable(content) and not isinstance(content, ContentReader):
        content = StreamContent(content)
    elif not isinstance(content, ContentReader):
        raise InvalidBlock("Block content must be a content reader", id=id, size=size, stored_at=stored_at)
    return Block(_CONSTRUCT, id, size, stored_at, content)


def stub_block(id: Multihash, size: int, stored_at: datetime) -> Block:
    """Create a reference-only block with no content, as returned by listings.

    Raises:
        InvalidBlock: If the id or size is malformed
    """
    if not isinstance(id, Multihash):
        raise InvalidBlock("Block id must be a multihash", id=id, size=size, stored_at=stored_at)
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise InvalidBlock("Block size must be a positive integer", id=id, size=size, stored_at=stored_at)
    return Block(_CONSTRUCT, id, size, stored_at, None)


def load_block(id: Multihash, source, stored_at: Optional[datetime] = None) -> Optional[Block]:
    """Create a block by reading a source into memory.

    The id is trusted as given. Returns None for empty sources, which cannot
    be stored as blocks.
    """
    content = collect_bytes(source)
    size = len(content)
    if size == 0:
        return None
    return create_block(id, size, stored_at or now(), content)


def read_block(algorithm: str, source) -> Optional[Block]:
    """Create a block by reading a source into memory and hashing it.

    Raises:
        UnknownAlgorithm: If no hash function is registered for ``algorithm``
    """
    hash_fn = hash_function(algorithm)
    content = collect_bytes(source)
    size = len(content)
    if size == 0:
        return None
    return create_block(hash_fn(bytes(content)), size, now(), content)


def merge_blocks(left: Block, right: Block) -> Block:
    """Merge two blocks representing the same content.

    The result takes content and timestamp from ``right``; metadata from both
    is merged, with ``right`` winning on conflicting keys.

    Raises:
        IdentifierMismatch: If the block ids differ
        SizeMismatch: If the block sizes differ
    """
    if left.id != right.id:
        raise IdentifierMismatch(left, right)
    if left.size != right.size:
        raise SizeMismatch(left, right)
    return Block(
        _CONSTRUCT,
        right.id,
        right.size,
        right.stored_at,
        right.content,
        {**left.meta, **right.meta},
    )


def wrap_content(block: Block, f: Callable[[ContentReader], ContentReader]) -> Block:
    """Return a new block whose content is ``f(block.content)``.

    The id, size, timestamp and metadata are unchanged.
    """
    return Block(_CONSTRUCT, block.id, block.size, block.stored_at, f(block.content), block.meta)


def with_meta(block: Block, meta: Optional[Mapping[str, Any]] = None, **kwargs) -> Block:
    """Return a new block with extra metadata merged into the existing metadata."""
    merged = {**block.meta, **(meta or {}), **kwargs}
    return Block(_CONSTRUCT, block.id, block.size, block.stored_at, block.content, merged)


__all__ = [
    "Block",
    "content_stream",
    "is_loaded",
    "is_lazy",
    "collect_bytes",
    "now",
    "create_block",
    "stub_block",
    "load_block",
    "read_block",
    "merge_blocks",
    "wrap_content",
    "with_meta",
]
