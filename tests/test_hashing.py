"""Tests for identifiers and the hash function registry."""

import hashlib
import io

import pytest

from cas_blocks.errors import UnknownAlgorithm
from cas_blocks.hashing import (
    Multihash,
    algorithms,
    compute_digest,
    hash_function,
    parse_id,
    register_algorithm,
)


class TestMultihash:
    """Test the Multihash value type."""

    def test_sha256_encoding(self):
        """sha2-256 ids encode as 0x12 0x20 followed by the digest."""
        digest = hashlib.sha256(b"hello").digest()
        mh = Multihash(0x12, digest)

        assert mh.to_bytes() == b"\x12\x20" + digest
        assert mh.hex == "1220" + digest.hex()
        assert str(mh) == mh.hex
        assert mh.algorithm == "sha2-256"
        assert mh.length == 32

    def test_multibyte_varint_code(self):
        """Codes above 0x7f use multi-byte varints."""
        mh = compute_digest("blake2b-256", b"hello")
        assert mh.code == 0xB220
        assert mh.hex.startswith("a0e40220")
        assert Multihash.from_hex(mh.hex) == mh

    def test_hex_round_trip(self):
        """Decoding the hex form gives back an equal id."""
        for name in ("sha1", "sha2-256", "sha2-512", "sha3-256"):
            mh = compute_digest(name, b"round trip")
            assert Multihash.from_hex(mh.hex) == mh
            assert Multihash.from_bytes(mh.to_bytes()) == mh

    def test_digest_length_must_match_algorithm(self):
        """Registered algorithms enforce their digest size."""
        with pytest.raises(ValueError, match="does not match"):
            Multihash(0x12, b"short")

    def test_unknown_code_allowed(self):
        """Unregistered codes are allowed with any non-empty digest."""
        mh = Multihash(0x99, b"\x01\x02")
        assert mh.algorithm is None
        assert "0x99" in repr(mh)

    def test_empty_digest_rejected(self):
        """A multihash needs at least one digest byte."""
        with pytest.raises(ValueError):
            Multihash(0x99, b"")

    def test_invalid_code_rejected(self):
        """Codes must be non-negative integers."""
        with pytest.raises(ValueError):
            Multihash(-1, b"\x01")
        with pytest.raises(ValueError):
            Multihash(True, b"\x01")

    def test_from_bytes_rejects_trailing_data(self):
        """Length prefix must match the remaining bytes exactly."""
        mh = compute_digest("sha1", b"x")
        with pytest.raises(ValueError, match="declares"):
            Multihash.from_bytes(mh.to_bytes() + b"\x00")
        with pytest.raises(ValueError):
            Multihash.from_bytes(mh.to_bytes()[:-1])

    def test_from_bytes_rejects_truncated_varint(self):
        """A lone continuation byte is not a valid varint."""
        with pytest.raises(ValueError, match="Truncated"):
            Multihash.from_bytes(b"\x80")

    def test_from_hex_rejects_bad_input(self):
        """Only lowercase, even-length hex is accepted."""
        mh = compute_digest("sha2-256", b"x")
        for bad in ["", "abc", "zz" * 34, mh.hex.upper(), "../" + mh.hex]:
            with pytest.raises(ValueError):
                Multihash.from_hex(bad)

    def test_immutable(self):
        """Multihash fields cannot be reassigned."""
        mh = compute_digest("sha2-256", b"x")
        with pytest.raises(AttributeError):
            mh.code = 0x11

    def test_equality_and_hash(self):
        """Equal digests are equal and hash the same."""
        a = compute_digest("sha2-256", b"same")
        b = compute_digest("sha2-256", b"same")
        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1
        assert a != compute_digest("sha2-256", b"different")

    def test_ordering_matches_hex(self):
        """Sorting ids gives the same order as sorting their hex strings."""
        ids = [compute_digest(name, str(i).encode()) for i in range(20) for name in ("sha1", "sha2-256", "blake2b-256")]
        assert [i.hex for i in sorted(ids)] == sorted(i.hex for i in ids)

    def test_not_comparable_with_strings(self):
        """Ordering against other types is unsupported."""
        mh = compute_digest("sha2-256", b"x")
        with pytest.raises(TypeError):
            mh < "1220"


class TestParseId:
    """Test lenient id coercion."""

    def test_passes_multihash_through(self):
        mh = compute_digest("sha2-256", b"x")
        assert parse_id(mh) is mh

    def test_parses_hex(self):
        mh = compute_digest("sha2-256", b"x")
        assert parse_id(mh.hex) == mh

    def test_malformed_returns_none(self):
        """Malformed values give None rather than raising."""
        for bad in ["not-hex", "12", "", None, 42, b"\x12\x20"]:
            assert parse_id(bad) is None


class TestRegistry:
    """Test the hash function registry."""

    def test_default_algorithms(self):
        names = algorithms()
        for name in ("sha1", "sha2-256", "sha2-512", "sha3-256", "blake2b-256"):
            assert name in names

    def test_unknown_algorithm(self):
        """Unknown names raise UnknownAlgorithm, which is also a ValueError."""
        with pytest.raises(UnknownAlgorithm, match="foo"):
            hash_function("foo")
        with pytest.raises(ValueError):
            compute_digest("foo", b"x")

    def test_unhashable_algorithm_name(self):
        with pytest.raises(UnknownAlgorithm):
            hash_function(["sha2-256"])

    def test_hash_bytes_and_stream_agree(self):
        """Hashing a stream gives the same id as hashing the bytes."""
        data = b"x" * 20000
        assert compute_digest("sha2-256", io.BytesIO(data)) == compute_digest("sha2-256", data)

    def test_matches_hashlib(self):
        data = b"hello world"
        assert compute_digest("sha1", data).digest == hashlib.sha1(data).digest()
        assert compute_digest("sha2-512", data).digest == hashlib.sha512(data).digest()

    def test_register_new_algorithm(self):
        """New algorithms become available by name and code."""
        func = register_algorithm("md5", 0xD5, hashlib.md5)
        assert func.size == 16
        mh = compute_digest("md5", b"x")
        assert mh.algorithm == "md5"
        assert mh.digest == hashlib.md5(b"x").digest()
        # Re-registering the same pair is harmless
        register_algorithm("md5", 0xD5, hashlib.md5)

    def test_register_conflict(self):
        """A name or code cannot be reassigned."""
        with pytest.raises(ValueError, match="conflicts"):
            register_algorithm("sha2-256", 0x99, hashlib.sha256)
        with pytest.raises(ValueError, match="conflicts"):
            register_algorithm("my-sha", 0x12, hashlib.sha256)
