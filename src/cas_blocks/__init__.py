"""cas-blocks: content-addressable block storage.

Blocks are immutable byte sequences identified by a multihash of their
content. This package provides the block data model, a storage protocol with
memory and filesystem backends, and a conformance harness that any backend
can be checked against.

Example usage:
    from cas_blocks import FileBlockStore, read_block

    store = FileBlockStore("/tmp/blocks")
    block = store.put(read_block("sha2-256", b"hello world"))
    assert store.get(block.id).read() == b"hello world"
"""

__version__ = "0.1.0"

from .content import ByteContent, ContentReader, StreamContent
from .core import (
    StoreSummary,
    SyncSummary,
    delete_batch,
    erase_store,
    get_batch,
    put_batch,
    scan,
    store_content,
    sync_stores,
    validate_block,
)
from .data import (
    Block,
    collect_bytes,
    content_stream,
    create_block,
    is_lazy,
    is_loaded,
    load_block,
    merge_blocks,
    read_block,
    stub_block,
    with_meta,
    wrap_content,
)
from .errors import (
    BlockError,
    ContentUnavailable,
    IdentifierMismatch,
    InvalidBlock,
    SizeMismatch,
    StorageIOError,
    UnknownAlgorithm,
)
from .hashing import Multihash, algorithms, compute_digest, hash_function, parse_id, register_algorithm
from .store import BlockStats, BlockStore, FileBlockStore, ListOptions, MemoryBlockStore

__all__ = [
    # Version
    "__version__",
    # Identifiers
    "Multihash",
    "parse_id",
    "algorithms",
    "hash_function",
    "compute_digest",
    "register_algorithm",
    # Blocks
    "Block",
    "ContentReader",
    "ByteContent",
    "StreamContent",
    "create_block",
    "stub_block",
    "load_block",
    "read_block",
    "merge_blocks",
    "wrap_content",
    "with_meta",
    "content_stream",
    "collect_bytes",
    "is_loaded",
    "is_lazy",
    # Stores
    "BlockStore",
    "BlockStats",
    "ListOptions",
    "MemoryBlockStore",
    "FileBlockStore",
    # Store utilities
    "store_content",
    "validate_block",
    "put_batch",
    "get_batch",
    "delete_batch",
    "scan",
    "sync_stores",
    "erase_store",
    "StoreSummary",
    "SyncSummary",
    # Exceptions
    "BlockError",
    "InvalidBlock",
    "IdentifierMismatch",
    "SizeMismatch",
    "UnknownAlgorithm",
    "StorageIOError",
    "ContentUnavailable",
]
