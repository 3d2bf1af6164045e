"""Higher-level operations built on the BlockStore protocol.

Everything here works with any store implementation: it only calls
``list``/``stat``/``get``/``put``/``delete`` (and ``erase`` when a store
provides it).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .data import Block, read_block
from .errors import InvalidBlock
from .hashing import CHUNK_SIZE, Multihash, hash_function
from .store.base import BlockId, BlockStore, ErasableStore, ListOptions, list_options
from .utils import humanize_size

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "sha2-256"


def store_content(store: BlockStore, source, algorithm: str = DEFAULT_ALGORITHM) -> Optional[Block]:
    """Hash a byte source into a block and put it in the store.

    Returns:
        The stored block, or None if the source was empty
    """
    block = read_block(algorithm, source)
    if block is None:
        return None
    return store.put(block)


def validate_block(block: Block) -> None:
    """Check that a block's content matches its id and size.

    Raises:
        InvalidBlock: If the content hash or byte count is wrong
        UnknownAlgorithm: If the id uses an unregistered hash algorithm
        ContentUnavailable: If the block has no content
    """
    hash_fn = hash_function(block.id.algorithm)
    size = 0
    h = hash_fn.factory()
    with block.open() as stream:
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            size += len(chunk)
            h.update(chunk)
    if size != block.size:
        raise InvalidBlock("Block has wrong size", id=block.id, size=block.size, actual=size)
    actual = Multihash(block.id.code, h.digest())
    if actual != block.id:
        raise InvalidBlock("Block content does not match id", id=block.id, actual=actual)


def put_batch(store: BlockStore, blocks: Iterable[Block], max_workers: int = 4) -> List[Block]:
    """Put many blocks in parallel, returning the stored blocks in input order."""
    blocks = [b for b in blocks if b is not None]
    if not blocks:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(store.put, blocks))


def get_batch(store: BlockStore, ids: Iterable[BlockId], max_workers: int = 4) -> List[Block]:
    """Get many blocks in parallel. Missing blocks are left out of the result."""
    ids = list(ids)
    if not ids:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return [b for b in executor.map(store.get, ids) if b is not None]


def delete_batch(store: BlockStore, ids: Iterable[BlockId], max_workers: int = 4) -> Set[BlockId]:
    """Delete many blocks in parallel, returning the ids that were removed."""
    ids = list(ids)
    if not ids:
        return set()
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        results = list(executor.map(store.delete, ids))
    return {id for id, removed in zip(ids, results) if removed}


@dataclass
class StoreSummary:
    """Aggregate statistics over a set of blocks."""

    count: int = 0
    size: int = 0
    # Power-of-two bucket -> block count; bucket b holds sizes in [2**b, 2**(b+1))
    sizes: Dict[int, int] = field(default_factory=dict)

    def add(self, block: Block) -> None:
        self.count += 1
        self.size += block.size
        bucket = block.size.bit_length() - 1
        self.sizes[bucket] = self.sizes.get(bucket, 0) + 1

    def __str__(self) -> str:
        return f"{self.count} blocks, {humanize_size(self.size)}"


def scan(store: BlockStore, options: Optional[ListOptions] = None, **kwargs) -> StoreSummary:
    """Summarize the blocks in a store matching the list options."""
    summary = StoreSummary()
    for block in store.list(list_options(options, **kwargs)):
        summary.add(block)
    return summary


@dataclass
class SyncSummary:
    """Result of copying blocks between stores."""

    copied: List[Multihash] = field(default_factory=list)
    size: int = 0


def sync_stores(
    source: BlockStore,
    dest: BlockStore,
    options: Optional[ListOptions] = None,
    dry_run: bool = False,
    **kwargs,
) -> SyncSummary:
    """Copy blocks present in ``source`` but missing from ``dest``.

    Args:
        source: Store to copy from
        dest: Store to copy into
        options: Restrict the sync to blocks matching these list options
        dry_run: Only report what would be copied

    Returns:
        SyncSummary of the blocks copied (or to be copied)
    """
    opts = list_options(options, **kwargs)
    present = {block.id for block in dest.list(opts.model_copy(update={"limit": None}))}
    summary = SyncSummary()
    for stub in source.list(opts):
        if stub.id in present:
            continue
        if not dry_run:
            block = source.get(stub.id)
            # Deleted from source during the sync
            if block is None:
                continue
            dest.put(block)
        summary.copied.append(stub.id)
        summary.size += stub.size
    logger.info("Synced %d blocks (%s)", len(summary.copied), humanize_size(summary.size))
    return summary


def erase_store(store: BlockStore) -> None:
    """Remove every block from a store.

    Uses the store's own ``erase`` when it has one, otherwise deletes blocks
    one at a time.
    """
    if isinstance(store, ErasableStore):
        store.erase()
        return
    for id in [block.id for block in store.list()]:
        store.delete(id)
