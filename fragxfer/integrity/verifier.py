"""
Integrity Verification

Compares original and retrieved fragments by recomputing both fingerprints
with the oracle. Fingerprints reported by the network or carried in the
manifest are never taken on trust when the original is available: the
threat model includes corruption in transit and at rest.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from ..errors import IntegrityMismatch, ShapeMismatch
from ..file.chunker import FragmentSource, iterate_fragments
from .fingerprint import Fingerprint, FingerprintOracle

if TYPE_CHECKING:
    from ..file.manifest import TransferManifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of comparing one fragment pair."""
    fragment_index: int
    match: bool
    expected: Fingerprint
    actual: Fingerprint


def _sequence_length(fragments: FragmentSource) -> Optional[int]:
    try:
        return len(fragments)
    except TypeError:
        return None


class IntegrityVerifier:
    """
    Fingerprint comparison of original vs. retrieved fragments.

    Example:
        verifier = IntegrityVerifier(MerkleOracle())
        results = await verifier.verify(originals, retrieved)
        verifier.require_match(results)
    """

    def __init__(self, oracle: FingerprintOracle):
        self.oracle = oracle

    async def verify(self, original: FragmentSource,
                     retrieved: FragmentSource) -> List[VerificationResult]:
        """
        Verify retrieved fragments against the originals.

        Both sequences are consumed in lock step, one pair at a time.

        Raises:
            ShapeMismatch: the sequences differ in length or indexes
        """
        original_len = _sequence_length(original)
        retrieved_len = _sequence_length(retrieved)
        if original_len is not None and retrieved_len is not None \
                and original_len != retrieved_len:
            raise ShapeMismatch(
                f"Cannot verify {retrieved_len} retrieved fragments against "
                f"{original_len} originals"
            )

        logger.info("Verifying integrity of retrieved fragments")

        results = []
        originals = iterate_fragments(original)
        retrieveds = iterate_fragments(retrieved)

        try:
            while True:
                left = await self._next(originals)
                right = await self._next(retrieveds)

                if left is None and right is None:
                    break
                if left is None or right is None:
                    raise ShapeMismatch(
                        f"Sequences diverge after {len(results)} fragments"
                    )
                if left.index != right.index:
                    raise ShapeMismatch(
                        f"Position {len(results)}: original fragment {left.index} "
                        f"paired with retrieved fragment {right.index}",
                        fragment_index=left.index,
                    )

                results.append(self.compare(left.index, left.data, right.data))
        finally:
            await originals.aclose()
            await retrieveds.aclose()

        return results

    def compare(self, index: int, original_data, retrieved_data) -> VerificationResult:
        """Fingerprint both sides of one fragment and compare."""
        expected = self.oracle.fingerprint(original_data)
        actual = self.oracle.fingerprint(retrieved_data)
        match = expected == actual

        if match:
            logger.info(f"✓ Fragment {index} verification passed: {expected.short()}")
        else:
            logger.warning(
                f"Fingerprint mismatch for fragment {index}: "
                f"expected {expected.hex}, got {actual.hex}"
            )

        return VerificationResult(
            fragment_index=index, match=match, expected=expected, actual=actual,
        )

    async def verify_against_manifest(self, manifest: 'TransferManifest',
                                      retrieved: FragmentSource) -> List[VerificationResult]:
        """
        Verify retrieved fragments against the manifest's fingerprints.

        For downloads that run without the original source. The expected
        side is the fingerprint the uploader computed itself before the
        transfer; the actual side is recomputed from the retrieved bytes.
        """
        retrieved_len = _sequence_length(retrieved)
        if retrieved_len is not None and retrieved_len != len(manifest):
            raise ShapeMismatch(
                f"Cannot verify {retrieved_len} retrieved fragments against "
                f"{len(manifest)} receipts"
            )

        results = []
        async for fragment in iterate_fragments(retrieved):
            position = len(results)
            if position >= len(manifest) or fragment.index != position:
                raise ShapeMismatch(
                    f"Unexpected fragment {fragment.index} at position {position}",
                    fragment_index=fragment.index,
                )

            expected = manifest[position].fingerprint
            actual = self.oracle.fingerprint(fragment.data)
            if expected != actual:
                logger.warning(
                    f"Fingerprint mismatch for fragment {position}: "
                    f"expected {expected.hex}, got {actual.hex}"
                )
            results.append(VerificationResult(
                fragment_index=position, match=expected == actual,
                expected=expected, actual=actual,
            ))

        if len(results) != len(manifest):
            raise ShapeMismatch(
                f"Retrieved {len(results)} fragments for {len(manifest)} receipts"
            )

        return results

    @staticmethod
    def require_match(results: List[VerificationResult]):
        """Raise IntegrityMismatch if any result failed."""
        failed = [r.fragment_index for r in results if not r.match]
        if failed:
            raise IntegrityMismatch(failed)

    @staticmethod
    async def _next(iterator):
        try:
            return await iterator.__anext__()
        except StopAsyncIteration:
            return None
