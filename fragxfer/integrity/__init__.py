"""
Integrity Module - Fingerprints and Verification

Provides the fingerprint oracle interface, its Merkle-root implementation,
and the verifier that cross-checks original and retrieved fragments.
"""

from .fingerprint import (
    DIGEST_SIZE,
    SEGMENT_SIZE,
    Fingerprint,
    FingerprintOracle,
    MerkleOracle,
)
from .verifier import IntegrityVerifier, VerificationResult

__all__ = [
    'DIGEST_SIZE',
    'SEGMENT_SIZE',
    'Fingerprint',
    'FingerprintOracle',
    'MerkleOracle',
    'IntegrityVerifier',
    'VerificationResult',
]
