"""Utility functions for cas-blocks."""

import contextlib
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def fsync_dir(path: Path) -> None:
    """Fsync a directory to ensure directory entry updates are durable.

    This is a best-effort operation that may not work on all platforms/filesystems.
    Windows and some filesystems don't support directory fsync.
    """
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY

        fd = os.open(str(path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        logger.debug("Directory fsync not supported for %s", path)


def atomic_write_text(path: Path, text: str) -> None:
    """Atomically write text to a file.

    Writes to a temp file in the same directory, fsyncs it, then renames it
    over ``path``. The temp file is removed if anything fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="w",
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.tmp-",
    ) as f:
        tmp = Path(f.name)
        try:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        except Exception:
            f.close()
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise

    try:
        os.replace(tmp, path)
        fsync_dir(path.parent)
    except Exception:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


def humanize_size(size: float) -> str:
    """Convert bytes to human-readable format."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
