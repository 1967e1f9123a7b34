"""
Error Taxonomy

Every failure raised by the pipeline derives from TransferError so the
driver can stop on one except clause and still report the originating
fragment. Fragment-level transient failures are retried only inside the
upload coordinator; everything else propagates.
"""

from typing import List, Optional


class TransferError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, fragment_index: Optional[int] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.fragment_index = fragment_index
        self.cause = cause


class ConfigError(TransferError):
    """Invalid or unreadable configuration."""


# === Local / collaborator failures ===

class IOFailure(TransferError):
    """Local read or write failed."""


class ComputeFailure(TransferError):
    """The fingerprint oracle could not compute a digest."""


class NetworkFailure(TransferError):
    """Storage client transport failed."""


class InsufficientFunds(TransferError):
    """The storage network refused the upload for lack of funds or quota."""


class ProofInvalid(TransferError):
    """Retrieved data failed the network-side proof check."""


class NotFound(TransferError):
    """No fragment is stored under the requested fingerprint."""


class Timeout(TransferError):
    """A deadline expired.

    When raised by the upload coordinator, ``manifest`` holds the receipts
    collected before the deadline.
    """

    def __init__(self, message: str, fragment_index: Optional[int] = None,
                 cause: Optional[BaseException] = None, manifest=None):
        super().__init__(message, fragment_index, cause)
        self.manifest = manifest


# === Terminal stage failures ===

class UploadFailure(TransferError):
    """A fragment exhausted its upload attempts.

    ``manifest`` holds the receipts of every fragment uploaded before the
    failing one, for caller-driven resume.
    """

    def __init__(self, message: str, fragment_index: Optional[int] = None,
                 cause: Optional[BaseException] = None, manifest=None,
                 attempts: int = 0):
        super().__init__(message, fragment_index, cause)
        self.manifest = manifest
        self.attempts = attempts


class DownloadFailure(TransferError):
    """A fragment could not be retrieved."""


# === Structural / integrity failures ===

class ShapeMismatch(TransferError):
    """Original and retrieved fragment sequences do not line up."""


class GapDetected(TransferError):
    """A fragment index is missing from an ordered sequence."""

    def __init__(self, expected: int, found: Optional[int]):
        if found is None:
            message = f"Missing fragment {expected}: sequence ended early"
        else:
            message = f"Missing fragment {expected}: got fragment {found} instead"
        super().__init__(message, fragment_index=expected)
        self.expected = expected
        self.found = found


class IntegrityMismatch(TransferError):
    """One or more retrieved fragments do not match their originals."""

    def __init__(self, failed_indexes: List[int]):
        shown = ', '.join(str(i) for i in failed_indexes[:10])
        if len(failed_indexes) > 10:
            shown += ', ...'
        super().__init__(
            f"Fingerprint mismatch for {len(failed_indexes)} fragment(s): {shown}",
            fragment_index=failed_indexes[0] if failed_indexes else None,
        )
        self.failed_indexes = list(failed_indexes)


class SourceTruncated(TransferError):
    """fragment_size * max_parts does not cover the whole source."""

    def __init__(self, total_length: int, covered: int):
        super().__init__(
            f"Source is {total_length:,} bytes but fragment_size * max_parts "
            f"covers only {covered:,}; {total_length - covered:,} bytes would be dropped"
        )
        self.total_length = total_length
        self.covered = covered
