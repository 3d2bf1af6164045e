"""Custom exceptions for cas-blocks.

This module defines typed exceptions for block construction, merging,
hashing and storage so callers can tell programmer errors apart from
backend failures. "Not found" is never an exception: stores return None
or False for missing blocks.
"""


class BlockError(RuntimeError):
    """Base class for all block-related errors."""
    pass


# Construction Errors
class InvalidBlock(BlockError):
    """Block constructor was given an invalid id, size, timestamp or content."""

    def __init__(self, message: str, **attrs):
        self.attrs = attrs
        details = ", ".join(f"{k}={v!r}" for k, v in attrs.items())
        super().__init__(f"{message} ({details})" if details else message)


class UnknownAlgorithm(BlockError, ValueError):
    """No hash function is registered under the requested name."""

    def __init__(self, algorithm):
        self.algorithm = algorithm
        super().__init__(f"No digest function found for algorithm {algorithm!r}")


# Merge Errors
class MergeError(BlockError):
    """Base class for merge precondition violations."""

    def __init__(self, message: str, left, right):
        self.left = left
        self.right = right
        super().__init__(message)


class IdentifierMismatch(MergeError):
    """Blocks being merged have differing ids."""

    def __init__(self, left, right):
        super().__init__(
            f"Cannot merge blocks with differing ids {left.id} and {right.id}",
            left,
            right,
        )


class SizeMismatch(MergeError):
    """Blocks being merged have differing sizes."""

    def __init__(self, left, right):
        super().__init__(
            f"Cannot merge blocks with differing sizes {left.size} and {right.size}",
            left,
            right,
        )


# Content Errors
class ContentUnavailable(BlockError):
    """Attempted to stream content from a reference-only block."""

    def __init__(self, block):
        self.block = block
        super().__init__(f"Cannot open empty block {block!r}")


# Storage Errors
class StorageIOError(BlockError):
    """Backend I/O failure (disk full, permission denied, bad store root)."""

    def __init__(self, message: str, path=None):
        self.path = path
        super().__init__(f"{message}: {path}" if path is not None else message)
