"""
Content Fingerprints

Design Decision: Fingerprint Primitive
======================================

Options Considered:
1. Plain SHA-256 of the fragment
   - Simple, but a storage node cannot prove a segment belongs to it
2. Merkle root over fixed-size segments
   - Same digest width, allows segment-level inclusion proofs
   - Matches how content-addressed storage networks name data

Decision: SHA-256 Merkle root over 4KB segments
- Empty input hashes to SHA-256 of the empty string
- Odd levels duplicate their last node
- Fingerprints are 32 bytes, shown as 0x-prefixed hex

The pipeline only depends on the FingerprintOracle interface; MerkleOracle
is the implementation the CLI and the storage node use.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Union

from ..errors import ComputeFailure, IOFailure

# Segment size for Merkle leaves: 4KB
SEGMENT_SIZE = 4 * 1024

# Fingerprint width in bytes
DIGEST_SIZE = 32

FingerprintSource = Union[bytes, bytearray, memoryview, Path, str]


@dataclass(frozen=True)
class Fingerprint:
    """An opaque fixed-width content digest, comparable by equality."""
    digest: bytes

    def __post_init__(self):
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(
                f"Fingerprint must be {DIGEST_SIZE} bytes, got {len(self.digest)}"
            )

    @property
    def hex(self) -> str:
        return '0x' + self.digest.hex()

    @classmethod
    def from_hex(cls, value: str) -> 'Fingerprint':
        """Parse a hex fingerprint, with or without the 0x prefix."""
        text = value.strip().lower()
        if text.startswith('0x'):
            text = text[2:]
        try:
            digest = bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"Invalid fingerprint: {value!r}")
        return cls(digest)

    def short(self) -> str:
        """Abbreviated form for logs."""
        return self.hex[:10] + '...'

    def __str__(self) -> str:
        return self.hex


class FingerprintOracle(ABC):
    """Computes deterministic content fingerprints."""

    @abstractmethod
    def fingerprint(self, source: FingerprintSource) -> Fingerprint:
        """
        Compute the fingerprint of a byte buffer or a file.

        Raises:
            IOFailure: the file could not be read
            ComputeFailure: the digest could not be computed
        """


def _merkle_root(leaves: List[bytes]) -> bytes:
    """Fold leaf digests into a root, duplicating the last node on odd levels."""
    if not leaves:
        return hashlib.sha256(b'').digest()

    level = leaves
    while len(level) > 1:
        next_level = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            next_level.append(hashlib.sha256(left + right).digest())
        level = next_level

    return level[0]


class MerkleOracle(FingerprintOracle):
    """
    SHA-256 Merkle root over fixed-size segments.

    Example:
        oracle = MerkleOracle()
        fp = oracle.fingerprint(b"hello")
        assert fp == oracle.fingerprint(b"hello")
    """

    def __init__(self, segment_size: int = SEGMENT_SIZE):
        if segment_size <= 0:
            raise ValueError("segment_size must be positive")
        self.segment_size = segment_size

    def fingerprint(self, source: FingerprintSource) -> Fingerprint:
        if isinstance(source, (str, Path)):
            return self._fingerprint_file(Path(source))

        if not isinstance(source, (bytes, bytearray, memoryview)):
            raise ComputeFailure(
                f"Cannot fingerprint object of type {type(source).__name__}"
            )

        view = memoryview(source)
        leaves = [
            hashlib.sha256(view[i:i + self.segment_size]).digest()
            for i in range(0, len(view), self.segment_size)
        ]
        return Fingerprint(_merkle_root(leaves))

    def _fingerprint_file(self, path: Path) -> Fingerprint:
        leaves = []
        try:
            with open(path, 'rb') as f:
                while True:
                    segment = f.read(self.segment_size)
                    if not segment:
                        break
                    leaves.append(hashlib.sha256(segment).digest())
        except OSError as e:
            raise IOFailure(f"Cannot read {path}: {e}", cause=e)

        return Fingerprint(_merkle_root(leaves))
