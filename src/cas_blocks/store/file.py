"""Block storage backed by files in a local directory.

Each block is stored as one read-only file whose path is derived from the hex
form of its id, split into two shard directories and a file name:

    <root>/<hex[:N]>/<hex[N:N+M]>/<hex[N+M:]>

With the default widths (4, 2) a sha2-256 block lives at
``<root>/1220/ab/cdef...``. The widths are recorded in ``<root>/.layout.yaml``
the first time a store is opened and must not change for the life of the
directory.

Technical Notes:
- Writes go to a temp file in the shard directory, are fsynced and made
  read-only, then atomically renamed into place. Readers never see a
  partially-written block.
- Puts and deletes in one shard take a portalocker lock on
  ``<root>/.locks/<shard>.lock``, so concurrent puts of the same id agree on
  a single winner, and shard pruning never races a write into the same shard.
- Lock files live outside the shard tree so that empty shard directories can
  be pruned. They persist to avoid inode coordination issues.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import shutil
import stat
import tempfile
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Tuple, Union

import portalocker
import yaml

from ..content import StreamContent
from ..data import Block, create_block, stub_block
from ..errors import StorageIOError
from ..hashing import CHUNK_SIZE, Multihash, parse_id
from ..utils import atomic_write_text, fsync_dir
from .base import BlockId, BlockStats, ListOptions, list_options, select_ids

logger = logging.getLogger(__name__)

DEFAULT_SHARD_WIDTHS = (4, 2)
DEFAULT_LOCK_TIMEOUT = 60.0
LOCK_CHECK_INTERVAL = 0.02
LAYOUT_FILE = ".layout.yaml"
LOCK_DIR = ".locks"
LAYOUT_VERSION = 1

_HEX = re.compile(r"^[0-9a-f]+$")


class FileBlockStore:
    """Content-addressed block store in a local directory.

    Attributes:
        root: Store root directory
        shard_widths: Hex widths of the two shard directory levels

    Thread Safety:
        All operations are safe for concurrent access from threads and
        processes sharing the directory.
        ``erase`` is the exception: it must not overlap other operations.

    Ids whose hex form is no longer than the two shard widths combined
    cannot be laid out on disk. ``put`` raises StorageIOError for them, and
    ``get``, ``stat`` and ``delete`` treat them as absent.
    """

    def __init__(
        self,
        root: Union[str, Path],
        shard_widths: Tuple[int, int] = DEFAULT_SHARD_WIDTHS,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        """Open (creating if needed) a file store.

        Args:
            root: Store root directory
            shard_widths: Hex characters used by each of the two shard levels
            lock_timeout: Seconds to wait for a shard lock before failing

        Raises:
            ValueError: If the shard widths are not two positive integers
            StorageIOError: If the root cannot be created or was written with
                different shard widths
        """
        widths = tuple(shard_widths)
        if len(widths) != 2 or any(
            isinstance(w, bool) or not isinstance(w, int) or w < 1 for w in widths
        ):
            raise ValueError(f"Shard widths must be two positive integers, got {shard_widths!r}")
        self.root = Path(root)
        self.shard_widths: Tuple[int, int] = widths
        self.lock_timeout = lock_timeout
        self.lock_dir = self.root / LOCK_DIR

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError("Cannot create block store root", self.root) from e
        self._check_layout()

    def __repr__(self) -> str:
        return f"FileBlockStore({str(self.root)!r}, shard_widths={self.shard_widths})"

    def _check_layout(self) -> None:
        """Record shard widths on first use, or verify them against the record."""
        layout_path = self.root / LAYOUT_FILE
        if not layout_path.exists():
            layout = {"version": LAYOUT_VERSION, "shard_widths": list(self.shard_widths)}
            try:
                atomic_write_text(layout_path, yaml.safe_dump(layout, sort_keys=True))
            except OSError as e:
                raise StorageIOError("Cannot write store layout", layout_path) from e
            return

        try:
            layout = yaml.safe_load(layout_path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise StorageIOError("Cannot read store layout", layout_path) from e
        if not isinstance(layout, dict):
            raise StorageIOError("Malformed store layout", layout_path)
        recorded = tuple(layout.get("shard_widths") or ())
        if recorded != self.shard_widths:
            raise StorageIOError(
                f"Store was created with shard widths {recorded}, "
                f"not {self.shard_widths}",
                self.root,
            )

    # ---- Path mapping -------------------------------------------------------

    def id_to_path(self, id: Multihash) -> Path:
        """Get the file path for a block id.

        Raises:
            ValueError: If the id's hex form is too short to shard
        """
        n, m = self.shard_widths
        hex_id = id.hex
        if len(hex_id) <= n + m:
            raise ValueError(f"Block id {hex_id} is too short for shard widths {self.shard_widths}")
        return self.root / hex_id[:n] / hex_id[n:n + m] / hex_id[n + m:]

    def path_to_id(self, path: Union[str, Path, None]) -> Optional[Multihash]:
        """Parse a block file path back into its id.

        Returns:
            The id, or None if the path is outside the store, has the wrong
            nesting depth, or does not decode to a valid multihash
        """
        if path is None:
            return None
        path = Path(path)
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            try:
                rel = path.resolve().relative_to(self.root.resolve())
            except (ValueError, OSError):
                return None

        parts = rel.parts
        if len(parts) != 3:
            return None
        n, m = self.shard_widths
        shard1, shard2, rest = parts
        if len(shard1) != n or len(shard2) != m or not rest:
            return None
        hex_id = shard1 + shard2 + rest
        if not _HEX.fullmatch(hex_id):
            return None
        try:
            return Multihash.from_hex(hex_id)
        except ValueError:
            return None

    def _path_for(self, id: BlockId) -> Optional[Path]:
        mh = parse_id(id)
        if mh is None:
            return None
        try:
            return self.id_to_path(mh)
        except ValueError:
            return None

    def _lock_for(self, path: Path) -> portalocker.Lock:
        """Lock guarding writes and pruning within one shard directory."""
        shard1 = path.parent.parent.name
        shard2 = path.parent.name
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        return portalocker.Lock(
            str(self.lock_dir / f"{shard1}{shard2}.lock"),
            "w",
            timeout=self.lock_timeout,
            check_interval=LOCK_CHECK_INTERVAL,
            fail_when_locked=False,
        )

    # ---- File helpers -------------------------------------------------------

    def _stat_path(self, id: Multihash, path: Path) -> Optional[BlockStats]:
        try:
            st = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            raise StorageIOError("Cannot stat block file", path) from e
        # Only non-empty regular files are blocks
        if not stat.S_ISREG(st.st_mode) or st.st_size <= 0:
            return None
        return BlockStats(
            id=id,
            size=st.st_size,
            stored_at=datetime.fromtimestamp(st.st_mtime, timezone.utc),
        )

    @staticmethod
    def _open(path: Path) -> BinaryIO:
        try:
            return open(path, "rb")
        except OSError as e:
            raise StorageIOError("Cannot open block file", path) from e

    def _file_block(self, stats: BlockStats, path: Path) -> Block:
        return create_block(stats.id, stats.size, stats.stored_at, StreamContent(partial(self._open, path)))

    def _ensure_dir(self, directory: Path) -> None:
        # A delete in a sibling shard may prune the parent between the two
        # mkdir steps; retry a few times before giving up.
        for attempt in range(3):
            try:
                directory.mkdir(parents=True, exist_ok=True)
                return
            except FileNotFoundError:
                if attempt == 2:
                    raise

    def _write(self, block: Block, path: Path) -> None:
        """Write block content to ``path`` via a temp file and atomic rename."""
        self._ensure_dir(path.parent)

        with tempfile.NamedTemporaryFile(
            prefix=".blk-",
            dir=str(path.parent),
            delete=False,
        ) as tmp:
            tmppath = Path(tmp.name)
            try:
                written = 0
                with block.open() as src:
                    for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                        tmp.write(chunk)
                        written += len(chunk)
                tmp.flush()
                os.fsync(tmp.fileno())
            except Exception:
                tmp.close()
                with contextlib.suppress(OSError):
                    tmppath.unlink()
                raise

        try:
            if written != block.size:
                logger.warning(
                    "Block %s declares %d bytes but content had %d", block.id, block.size, written
                )
            # Read-only before the rename, so the file is immutable from the
            # moment it becomes visible.
            os.chmod(tmppath, 0o444)
            os.replace(str(tmppath), str(path))
            fsync_dir(path.parent)
        except Exception:
            with contextlib.suppress(OSError):
                tmppath.unlink()
            raise

        logger.debug("Stored block %s at %s", block.id, path)

    def _prune(self, directory: Path) -> None:
        """Remove empty shard directories from ``directory`` up to the root."""
        root = self.root
        while directory != root and root in directory.parents:
            try:
                directory.rmdir()
            except FileNotFoundError:
                pass
            except OSError:
                # Not empty
                return
            else:
                logger.debug("Pruned empty shard directory %s", directory)
            directory = directory.parent

    # ---- BlockStore ---------------------------------------------------------

    def list(self, options: Optional[ListOptions] = None, **kwargs) -> Iterator[Block]:
        opts = list_options(options, **kwargs)
        return self._list(opts)

    def _list(self, opts: ListOptions) -> Iterator[Block]:
        for id in select_ids(self._walk_ids(opts), opts):
            stats = self._stat_path(id, self.id_to_path(id))
            # Deleted since the walk saw it
            if stats is None:
                continue
            yield stub_block(stats.id, stats.size, stats.stored_at)

    def _walk_ids(self, opts: ListOptions) -> Iterator[Multihash]:
        """Yield ids of stored blocks in ascending order, skipping stray files."""
        n, m = self.shard_widths
        for shard1 in self._sorted_dirs(self.root, n, "", opts):
            for shard2 in self._sorted_dirs(shard1, m, shard1.name, opts):
                try:
                    entries = sorted(shard2.iterdir())
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise StorageIOError("Cannot list shard directory", shard2) from e
                for entry in entries:
                    id = self.path_to_id(entry)
                    if id is None:
                        logger.debug("Skipping stray file in block store: %s", entry)
                        continue
                    yield id

    def _sorted_dirs(self, parent: Path, width: int, prefix: str, opts: ListOptions) -> Iterator[Path]:
        try:
            entries = sorted(parent.iterdir())
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError("Cannot list store directory", parent) from e
        for entry in entries:
            name = entry.name
            if len(name) != width or not _HEX.fullmatch(name) or not entry.is_dir():
                if name not in (LOCK_DIR, LAYOUT_FILE):
                    logger.debug("Skipping stray entry in block store: %s", entry)
                continue
            if _shard_may_match(prefix + name, opts):
                yield entry

    def stat(self, id: BlockId) -> Optional[BlockStats]:
        path = self._path_for(id)
        if path is None:
            return None
        return self._stat_path(parse_id(id), path)

    def get(self, id: BlockId) -> Optional[Block]:
        path = self._path_for(id)
        if path is None:
            return None
        stats = self._stat_path(parse_id(id), path)
        if stats is None:
            return None
        return self._file_block(stats, path)

    def put(self, block: Optional[Block]) -> Optional[Block]:
        if block is None or block.id is None:
            return None
        try:
            path = self.id_to_path(block.id)
        except ValueError as e:
            raise StorageIOError(str(e), self.root) from e

        # Fast path: already stored
        stats = self._stat_path(block.id, path)
        if stats is not None:
            return self._file_block(stats, path)

        try:
            with self._lock_for(path):
                # Re-check after acquiring lock
                stats = self._stat_path(block.id, path)
                if stats is None:
                    self._write(block, path)
                    stats = self._stat_path(block.id, path)
        except portalocker.LockException as e:
            raise StorageIOError("Timed out waiting for shard lock", path) from e
        except OSError as e:
            raise StorageIOError("Cannot write block file", path) from e

        if stats is None:
            raise StorageIOError("Block file vanished after write", path)
        return self._file_block(stats, path)

    def delete(self, id: BlockId) -> bool:
        path = self._path_for(id)
        if path is None:
            return False
        mh = parse_id(id)
        # Absent ids never touch the lock directory
        if self._stat_path(mh, path) is None:
            return False
        try:
            with self._lock_for(path):
                if self._stat_path(mh, path) is None:
                    return False
                try:
                    path.unlink()
                except (FileNotFoundError, NotADirectoryError):
                    return False
                logger.debug("Deleted block %s", path.name)
                self._prune(path.parent)
                return True
        except portalocker.LockException as e:
            raise StorageIOError("Timed out waiting for shard lock", path) from e
        except OSError as e:
            raise StorageIOError("Cannot delete block file", path) from e

    def erase(self) -> None:
        """Remove every block, shard directory and shard lock file from the store."""
        n, _ = self.shard_widths
        try:
            for entry in self.root.iterdir():
                if entry.is_dir() and len(entry.name) == n and _HEX.fullmatch(entry.name):
                    shutil.rmtree(entry)
            if self.lock_dir.is_dir():
                shutil.rmtree(self.lock_dir)
        except OSError as e:
            raise StorageIOError("Cannot erase block store", self.root) from e
        logger.debug("Erased block store %s", self.root)


def _shard_may_match(shard_hex: str, opts: ListOptions) -> bool:
    """Check whether any id under a shard with this hex prefix could be listed."""
    width = len(shard_hex)
    if opts.prefix is not None and not (
        shard_hex.startswith(opts.prefix) or opts.prefix.startswith(shard_hex)
    ):
        return False
    if opts.after is not None and shard_hex < opts.after[:width]:
        return False
    if opts.before is not None and shard_hex > opts.before[:width]:
        return False
    return True
