"""Block storage backed by a dictionary in memory."""

import logging
import threading
from typing import Dict, Iterator, Optional

from ..data import Block, collect_bytes, create_block, now, stub_block, with_meta
from ..hashing import Multihash, parse_id
from .base import BlockId, BlockStats, ListOptions, list_options, select_ids

logger = logging.getLogger(__name__)


class MemoryBlockStore:
    """In-memory block store.

    Blocks are held fully loaded in a dict keyed by id. Every read or write
    of the dict happens under one lock, so a put is a single check-and-insert
    step: when two threads put the same id, one insert wins and both callers
    get the winning block back.

    Note: Data is lost when the process exits.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._blocks: Dict[Multihash, Block] = {}

    def __repr__(self) -> str:
        return f"MemoryBlockStore({len(self._blocks)} blocks)"

    def list(self, options: Optional[ListOptions] = None, **kwargs) -> Iterator[Block]:
        opts = list_options(options, **kwargs)
        with self._lock:
            snapshot = dict(self._blocks)
        ids = select_ids(sorted(snapshot), opts)
        return (
            stub_block(id, snapshot[id].size, snapshot[id].stored_at)
            for id in ids
        )

    def stat(self, id: BlockId) -> Optional[BlockStats]:
        block = self.get(id)
        if block is None:
            return None
        return BlockStats(id=block.id, size=block.size, stored_at=block.stored_at)

    def get(self, id: BlockId) -> Optional[Block]:
        mh = parse_id(id)
        if mh is None:
            return None
        with self._lock:
            return self._blocks.get(mh)

    def put(self, block: Optional[Block]) -> Optional[Block]:
        if block is None or block.id is None:
            return None
        with self._lock:
            existing = self._blocks.get(block.id)
        if existing is not None:
            return existing

        # Collect outside the lock; lazy content may be slow to read.
        content = collect_bytes(block)
        size = len(content)
        if size != block.size:
            logger.warning(
                "Block %s declares %d bytes but content had %d", block.id, block.size, size
            )
        loaded = with_meta(create_block(block.id, size, now(), content), block.meta)

        with self._lock:
            existing = self._blocks.get(block.id)
            if existing is not None:
                return existing
            self._blocks[block.id] = loaded
        logger.debug("Stored block %s (%d bytes)", block.id, size)
        return loaded

    def delete(self, id: BlockId) -> bool:
        mh = parse_id(id)
        if mh is None:
            return False
        with self._lock:
            removed = self._blocks.pop(mh, None)
        if removed is not None:
            logger.debug("Deleted block %s", mh)
        return removed is not None

    def erase(self) -> None:
        """Remove all blocks."""
        with self._lock:
            self._blocks.clear()
