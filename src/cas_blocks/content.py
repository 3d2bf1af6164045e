"""Content readers for block data.

A content reader repeatably opens binary streams over some backing data.
There are two kinds:

- ``ByteContent`` owns an immutable copy of the bytes in memory.
- ``StreamContent`` wraps a zero-argument factory that returns a fresh
  stream on every call, e.g. ``functools.partial(open, path, "rb")``.

Both support full reads and inclusive byte-range reads. Every stream
returned is a context manager; closing a ranged stream closes the stream
it wraps.
"""

from __future__ import annotations

import io
from typing import BinaryIO, Callable, Optional, Protocol, runtime_checkable


SKIP_CHUNK = 64 * 1024


@runtime_checkable
class ContentReader(Protocol):
    """Protocol for repeatable sources of block content."""

    def read_all(self) -> BinaryIO:
        """Open a stream over all bytes of the content."""
        ...

    def read_range(self, start: Optional[int] = None, end: Optional[int] = None) -> BinaryIO:
        """Open a stream over bytes ``start`` to ``end`` inclusive.

        A None for either bound means the beginning or end of the content.
        """
        ...


def _check_range(start: Optional[int], end: Optional[int]) -> None:
    """Validate range bounds.

    Raises:
        ValueError: If a bound is negative or the range is inverted
    """
    for name, value in (("start", start), ("end", end)):
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Range {name} must be an integer, got {value!r}")
        if value < 0:
            raise ValueError(f"Range {name} must be non-negative, got {value}")
    if start is not None and end is not None and end < start:
        raise ValueError(f"Range end {end} is before start {start}")


class ByteContent:
    """Content held fully in memory."""

    __slots__ = ("_data",)

    def __init__(self, data: bytes):
        self._data = bytes(data)

    def __len__(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return self._data

    def __eq__(self, other):
        if isinstance(other, ByteContent):
            return self._data == other._data
        return NotImplemented

    def __hash__(self):
        return hash(self._data)

    def __repr__(self) -> str:
        return f"ByteContent({len(self._data)} bytes)"

    def read_all(self) -> BinaryIO:
        return io.BytesIO(self._data)

    def read_range(self, start: Optional[int] = None, end: Optional[int] = None) -> BinaryIO:
        _check_range(start, end)
        stop = None if end is None else end + 1
        return io.BytesIO(self._data[start or 0:stop])


class StreamContent:
    """Content produced by a repeatable stream factory.

    The factory must return a new, independent stream each time it is
    called. Range reads open the full stream and skip ahead, seeking when the
    stream supports it.
    """

    __slots__ = ("_factory",)

    def __init__(self, factory: Callable[[], BinaryIO]):
        if not callable(factory):
            raise TypeError(f"Stream factory must be callable, got {type(factory).__name__}")
        self._factory = factory

    @property
    def factory(self) -> Callable[[], BinaryIO]:
        return self._factory

    def __repr__(self) -> str:
        return f"StreamContent({self._factory!r})"

    def read_all(self) -> BinaryIO:
        return self._factory()

    def read_range(self, start: Optional[int] = None, end: Optional[int] = None) -> BinaryIO:
        _check_range(start, end)
        if not start and end is None:
            return self._factory()
        return BoundedReader(self._factory(), start, end)


class BoundedReader(io.RawIOBase):
    """Read-only view of bytes ``start`` to ``end`` (inclusive) of a stream.

    Takes ownership of the wrapped stream: it is closed when this reader is
    closed, or immediately if positioning at ``start`` fails.
    """

    def __init__(self, stream: BinaryIO, start: Optional[int] = None, end: Optional[int] = None):
        super().__init__()
        self._stream = stream
        start = start or 0
        self._remaining = None if end is None else end - start + 1
        try:
            self._skip(start)
        except BaseException:
            stream.close()
            raise

    def _skip(self, count: int) -> None:
        if count <= 0:
            return
        seekable = getattr(self._stream, "seekable", None)
        if seekable is not None and seekable():
            self._stream.seek(count, io.SEEK_CUR)
            return
        while count > 0:
            chunk = self._stream.read(min(count, SKIP_CHUNK))
            if not chunk:
                break
            count -= len(chunk)

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self._remaining == 0:
            return 0
        want = len(buffer)
        if self._remaining is not None:
            want = min(want, self._remaining)
        data = self._stream.read(want)
        if not data:
            return 0
        n = len(data)
        buffer[:n] = data
        if self._remaining is not None:
            self._remaining -= n
        return n

    def close(self) -> None:
        if not self.closed:
            try:
                self._stream.close()
            finally:
                super().close()


__all__ = [
    "ContentReader",
    "ByteContent",
    "StreamContent",
    "BoundedReader",
]
