"""Base protocol for block storage implementations."""

from dataclasses import dataclass
from datetime import datetime
import re
from typing import Iterable, Iterator, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..data import Block
from ..hashing import Multihash

BlockId = Union[Multihash, str]

_HEX_CHARS = re.compile(r"^[0-9a-f]*$")


@dataclass(frozen=True)
class BlockStats:
    """Storage metadata about a block, read without opening its content."""

    id: Multihash
    size: int
    stored_at: datetime


class ListOptions(BaseModel):
    """
    Filters for block listings.

    Bounds and prefix are compared against the hex form of block ids.
    """
    model_config = ConfigDict(frozen=True)

    algorithm: Optional[str] = None      # Only ids hashed with this algorithm
    after: Optional[str] = None          # Exclusive lower bound
    before: Optional[str] = None         # Exclusive upper bound
    prefix: Optional[str] = None         # Hex prefix the ids must share
    limit: Optional[int] = Field(None, gt=0)

    @field_validator("after", "before", "prefix")
    @classmethod
    def validate_hex(cls, v: Optional[str]) -> Optional[str]:
        """Normalize hex filters to lowercase and reject non-hex characters."""
        if v is None:
            return v
        v = v.lower()
        if not _HEX_CHARS.fullmatch(v):
            raise ValueError(f"List filter must be hex, got {v!r}")
        return v or None


def list_options(options: Optional[ListOptions] = None, **kwargs) -> ListOptions:
    """Build ListOptions from an optional instance plus keyword overrides."""
    if options is None:
        return ListOptions(**kwargs)
    if kwargs:
        return ListOptions(**{**options.model_dump(), **kwargs})
    return options


def select_ids(ids: Iterable[Multihash], options: ListOptions) -> Iterator[Multihash]:
    """
    Filter an ascending sequence of ids by list options.

    Stops consuming ``ids`` as soon as no later id can match.
    """
    count = 0
    for id in ids:
        hex_id = id.hex
        if options.after is not None and hex_id <= options.after:
            continue
        if options.before is not None and hex_id >= options.before:
            return
        if options.prefix is not None and not hex_id.startswith(options.prefix):
            if hex_id > options.prefix:
                return
            continue
        if options.algorithm is not None and id.algorithm != options.algorithm:
            continue
        yield id
        count += 1
        if options.limit is not None and count >= options.limit:
            return


@runtime_checkable
class BlockStore(Protocol):
    """
    Protocol for block storage implementations.

    All implementations must be safe to call from multiple threads. Missing
    blocks are reported as None (or False for delete), never as errors;
    backend I/O failures raise StorageIOError.
    """

    def list(self, options: Optional[ListOptions] = None, **kwargs) -> Iterator[Block]:
        """
        List stored blocks in ascending id order.

        Args:
            options: Filters for the listing; keyword arguments build or
                override ListOptions fields

        Returns:
            Iterator of reference-only blocks (no content)
        """
        ...

    def stat(self, id: BlockId) -> Optional[BlockStats]:
        """
        Get storage metadata for a block without opening its content.

        Returns:
            BlockStats, or None if the block is unknown or the id is malformed
        """
        ...

    def get(self, id: BlockId) -> Optional[Block]:
        """
        Load a block, including a content reader that can be opened repeatedly.

        Returns:
            Block, or None if the block is unknown or the id is malformed
        """
        ...

    def put(self, block: Block) -> Optional[Block]:
        """
        Store a block.

        Idempotent: if a block with the same id is already stored, that block
        is returned unchanged and no content is written.

        Returns:
            The stored block, or None if ``block`` is None
        """
        ...

    def delete(self, id: BlockId) -> bool:
        """
        Remove a block.

        Returns:
            True if a block was removed, False if it was not present
        """
        ...


@runtime_checkable
class ErasableStore(Protocol):
    """Stores that can remove all of their blocks at once."""

    def erase(self) -> None:
        ...
