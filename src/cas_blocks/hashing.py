"""Content identifiers and the hash function registry.

Block identifiers are multihashes: a self-describing digest value encoded as
``varint(code) || varint(length) || digest``. The hex form of that encoding is
what users see and what the file store uses to derive paths, so ordering on
identifiers is defined to match ordering on their hex strings.

Hash functions are looked up by name in a small registry. New algorithms can
be added at runtime with :func:`register_algorithm`.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple, Union

from .errors import UnknownAlgorithm

CHUNK_SIZE = 8192

_HEX = re.compile(r"^(?:[0-9a-f]{2})+$")


# ---- Varint codec -----------------------------------------------------------

def _encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as an unsigned LEB128 varint."""
    if value < 0:
        raise ValueError(f"Varint value must be non-negative: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a varint starting at ``offset``.

    Returns:
        Tuple of (value, offset of the first byte after the varint)
    """
    value = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ValueError("Truncated varint")
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7
        if shift > 63:
            raise ValueError("Varint too long")


# ---- Identifier type ----------------------------------------------------------

@total_ordering
@dataclass(frozen=True, repr=False)
class Multihash:
    """Immutable digest value identifying a block's content.

    Equality, hashing and ordering are all defined over the binary encoding.
    """

    code: int
    digest: bytes
    _encoded: bytes = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        if isinstance(self.code, bool) or not isinstance(self.code, int) or self.code < 0:
            raise ValueError(f"Multihash code must be a non-negative integer: {self.code!r}")
        if not isinstance(self.digest, (bytes, bytearray)):
            raise ValueError(f"Multihash digest must be bytes: {type(self.digest).__name__}")
        if not self.digest:
            raise ValueError("Multihash digest must not be empty")
        func = _BY_CODE.get(self.code)
        if func is not None and len(self.digest) != func.size:
            raise ValueError(
                f"Digest length {len(self.digest)} does not match "
                f"{func.name} digest size {func.size}"
            )
        digest = bytes(self.digest)
        object.__setattr__(self, "digest", digest)
        object.__setattr__(
            self,
            "_encoded",
            _encode_varint(self.code) + _encode_varint(len(digest)) + digest,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Multihash":
        """Decode a multihash from its binary encoding.

        Raises:
            ValueError: If the encoding is truncated or has trailing bytes
        """
        code, offset = _decode_varint(data)
        length, offset = _decode_varint(data, offset)
        digest = data[offset:]
        if len(digest) != length:
            raise ValueError(
                f"Multihash declares {length} digest bytes but has {len(digest)}"
            )
        return cls(code, bytes(digest))

    @classmethod
    def from_hex(cls, text: str) -> "Multihash":
        """Decode a multihash from lowercase hex.

        Raises:
            ValueError: If the string is not valid lowercase hex or not a multihash
        """
        if not isinstance(text, str) or not _HEX.fullmatch(text):
            raise ValueError(f"Invalid multihash hex: {text!r}")
        return cls.from_bytes(bytes.fromhex(text))

    @property
    def algorithm(self) -> Optional[str]:
        """Registered algorithm name, or None for unknown codes."""
        func = _BY_CODE.get(self.code)
        return func.name if func else None

    @property
    def length(self) -> int:
        return len(self.digest)

    @property
    def hex(self) -> str:
        return self._encoded.hex()

    def to_bytes(self) -> bytes:
        return self._encoded

    def __lt__(self, other):
        if not isinstance(other, Multihash):
            return NotImplemented
        return self._encoded < other._encoded

    def __str__(self) -> str:
        return self.hex

    def __repr__(self) -> str:
        name = self.algorithm or hex(self.code)
        return f"Multihash({name}:{self.digest.hex()})"


def parse_id(value) -> Optional[Multihash]:
    """Coerce a value to a Multihash, returning None if it is malformed.

    Accepts Multihash values and hex strings. Never raises.
    """
    if isinstance(value, Multihash):
        return value
    if isinstance(value, str):
        try:
            return Multihash.from_hex(value)
        except ValueError:
            return None
    return None


# ---- Hash function registry ---------------------------------------------------

Source = Union[bytes, bytearray, memoryview, BinaryIO]


@dataclass(frozen=True)
class HashFunction:
    """A registered digest algorithm."""

    name: str
    code: int
    size: int
    factory: Callable[[], "hashlib._Hash"]

    def __call__(self, source: Source) -> Multihash:
        """Hash a bytes-like value or a binary stream into a Multihash.

        Streams are read in chunks until exhausted and are not closed.
        """
        h = self.factory()
        if isinstance(source, (bytes, bytearray, memoryview)):
            h.update(source)
        else:
            for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                h.update(chunk)
        return Multihash(self.code, h.digest())


_BY_NAME: Dict[str, HashFunction] = {}
_BY_CODE: Dict[int, HashFunction] = {}


def register_algorithm(
    name: str,
    code: int,
    factory: Callable[[], "hashlib._Hash"],
) -> HashFunction:
    """Register a hash algorithm under a name and multihash code.

    Args:
        name: Algorithm name, e.g. "sha2-256"
        code: Multihash function code
        factory: Zero-argument callable returning a fresh hashlib-style object

    Returns:
        The registered HashFunction

    Raises:
        ValueError: If the name or code is already registered to something else
    """
    existing = _BY_NAME.get(name) or _BY_CODE.get(code)
    if existing and (existing.name != name or existing.code != code):
        raise ValueError(
            f"Algorithm {name!r} (0x{code:x}) conflicts with registered "
            f"{existing.name!r} (0x{existing.code:x})"
        )
    func = HashFunction(name=name, code=code, size=factory().digest_size, factory=factory)
    _BY_NAME[name] = func
    _BY_CODE[code] = func
    return func


def hash_function(algorithm: str) -> HashFunction:
    """Look up a registered hash function.

    Raises:
        UnknownAlgorithm: If nothing is registered under that name
    """
    try:
        return _BY_NAME[algorithm]
    except (KeyError, TypeError):
        raise UnknownAlgorithm(algorithm) from None


def algorithms() -> List[str]:
    """Names of all registered algorithms, sorted."""
    return sorted(_BY_NAME)


def compute_digest(algorithm: str, source: Source) -> Multihash:
    """Hash bytes or a binary stream with the named algorithm."""
    return hash_function(algorithm)(source)


register_algorithm("sha1", 0x11, hashlib.sha1)
register_algorithm("sha2-256", 0x12, hashlib.sha256)
register_algorithm("sha2-512", 0x13, hashlib.sha512)
register_algorithm("sha3-256", 0x16, hashlib.sha3_256)
register_algorithm("blake2b-256", 0xB220, lambda: hashlib.blake2b(digest_size=32))


__all__ = [
    "Multihash",
    "HashFunction",
    "parse_id",
    "register_algorithm",
    "hash_function",
    "algorithms",
    "compute_digest",
]
