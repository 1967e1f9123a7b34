"""
Upload Coordinator

Design Decision: Upload Strategy
================================

Options Considered:
1. Upload every fragment at once
   - Fastest when the network cooperates
   - Bursts of hundreds of transactions get rate limited

2. Strictly sequential upload
   - Simple, gentle on the network
   - Slow for many small fragments

3. Fixed-size batches with a cooldown between them
   - Bounded burst size
   - Fragments within a batch may run concurrently

Decision: Batches of `batch_size`, cooldown between batches
- Batches run in order; fragments within a batch run in order, or
  concurrently when enabled, with results written to index-addressed slots
- Every fragment is fingerprinted before it is sent
- Each attempt runs under the earlier of its own deadline and the overall
  deadline
- A failed attempt is retried with exponential backoff; attempt k waits
  min(2^(k-2), 30) seconds and attempt 1 never waits

Failure Semantics:
- A fragment that exhausts its attempts aborts the upload with
  UploadFailure; fragments already stored are not rolled back
- The overall deadline expiring aborts with Timeout
- Both errors carry the manifest of the contiguous prefix of fragments
  that were stored, so the caller can resume or clean up
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from ..errors import Timeout, TransferError, UploadFailure, NetworkFailure
from ..file.chunker import Fragment, FragmentSource, iterate_fragments
from ..file.manifest import TransferManifest, TransferReceipt
from ..integrity.fingerprint import Fingerprint, FingerprintOracle
from .client import StorageClient, UploadOptions
from .progress import ProgressCallback, TransferProgress
from .retry import AttemptOutcome, Deadline, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_COOLDOWN = 5.0

Sleep = Callable[[float], Awaitable[None]]


class UploadCoordinator:
    """
    Uploads fragments in batches with per-fragment retry.

    Example:
        coordinator = UploadCoordinator(client, MerkleOracle(), batch_size=5)
        manifest = await coordinator.upload(fragmenter.split(source))
    """

    def __init__(self, client: StorageClient, oracle: FingerprintOracle,
                 options: Optional[UploadOptions] = None,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 max_retries: int = 3,
                 attempt_timeout: Optional[float] = None,
                 overall_timeout: Optional[float] = None,
                 batch_cooldown: float = DEFAULT_BATCH_COOLDOWN,
                 concurrent: bool = False,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Sleep = asyncio.sleep,
                 progress_callback: Optional[ProgressCallback] = None):
        """
        Args:
            client: Storage network client
            oracle: Computes each fragment's fingerprint before transfer
            options: Upload options forwarded to the client
            batch_size: Fragments per batch (>= 1)
            max_retries: Attempts per fragment; 0 is treated as 1
            attempt_timeout: Seconds allowed per attempt (None = unbounded)
            overall_timeout: Seconds allowed for the whole upload
            batch_cooldown: Seconds to pause between batches
            concurrent: Upload the fragments of a batch concurrently
            retry_policy: Overrides the policy derived from max_retries
            sleep: Sleep function for backoff and cooldown
            progress_callback: Called with a TransferProgress after each fragment
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if batch_cooldown < 0:
            raise ValueError(f"batch_cooldown must be >= 0, got {batch_cooldown}")

        self.client = client
        self.oracle = oracle
        self.options = options or UploadOptions()
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy.from_max_retries(max_retries)
        self.attempt_timeout = attempt_timeout
        self.overall_timeout = overall_timeout
        self.batch_cooldown = batch_cooldown
        self.concurrent = concurrent
        self.progress_callback = progress_callback
        self._sleep = sleep

        # Every attempt of the last upload, in the order they finished
        self.outcomes: List[AttemptOutcome] = []

    async def upload(self, fragments: FragmentSource,
                     manifest: Optional[TransferManifest] = None) -> TransferManifest:
        """
        Upload every fragment and collect their receipts.

        Args:
            fragments: Fragments in index order
            manifest: Manifest to append receipts to (a new one if omitted)

        Returns:
            The manifest, one receipt per fragment, index-aligned

        Raises:
            UploadFailure: a fragment exhausted its attempts
            Timeout: the overall deadline expired
        """
        manifest = manifest if manifest is not None else TransferManifest()
        deadline = Deadline.after(self.overall_timeout)
        self.outcomes = []

        try:
            total = len(fragments)
        except TypeError:
            total = 0

        progress = TransferProgress(
            total_fragments=total,
            total_batches=-(-total // self.batch_size),
            phase='uploading',
        )
        logger.info(f"Uploading {total} fragments in batches of {self.batch_size}")

        batches = self._batches(fragments)
        try:
            async for batch in batches:
                try:
                    await self._upload_batch(batch, deadline, manifest, progress)
                finally:
                    # Fragments the batch never reached still hold pool slots
                    for fragment in batch:
                        fragment.release()
        except TransferError:
            progress.phase = 'failed'
            self._notify(progress)
            raise
        finally:
            await batches.aclose()

        progress.phase = 'complete'
        self._notify(progress)
        logger.info(f"Upload complete: {len(manifest)} fragments, "
                    f"{progress.bytes_transferred:,} bytes")
        return manifest

    async def _upload_batch(self, batch: List[Fragment], deadline: Deadline,
                            manifest: TransferManifest, progress: TransferProgress):
        if progress.current_batch > 0 and self.batch_cooldown > 0:
            await self._cooldown(deadline, manifest, progress)

        progress.current_batch += 1
        logger.info(f"Uploading batch {progress.current_batch}: fragments "
                    f"{batch[0].index}-{batch[-1].index}")

        if self.concurrent:
            await self._upload_batch_concurrent(batch, deadline, manifest, progress)
        else:
            for fragment in batch:
                receipt = await self._upload_fragment(fragment, deadline, manifest, progress)
                self._record(receipt, manifest, progress)

    async def _batches(self, fragments: FragmentSource):
        batch: List[Fragment] = []
        source = iterate_fragments(fragments)
        try:
            async for fragment in source:
                batch.append(fragment)
                if len(batch) == self.batch_size:
                    yield batch
                    batch = []
            if batch:
                yield batch
        finally:
            # A read error or early close leaves a partly collected batch
            for fragment in batch:
                fragment.release()
            await source.aclose()

    async def _cooldown(self, deadline: Deadline, manifest: TransferManifest,
                        progress: TransferProgress):
        if not deadline.allows(self.batch_cooldown):
            raise Timeout(
                f"Upload deadline leaves no room for the {self.batch_cooldown}s "
                f"batch cooldown",
                fragment_index=len(manifest), manifest=manifest.copy(),
            )
        progress.phase = 'cooldown'
        self._notify(progress)
        logger.info(f"Waiting {self.batch_cooldown}s before next batch...")
        await self._sleep(self.batch_cooldown)
        progress.phase = 'uploading'

    async def _upload_batch_concurrent(self, batch: List[Fragment], deadline: Deadline,
                                       manifest: TransferManifest,
                                       progress: TransferProgress):
        # Slot i holds the receipt or error of batch[i]
        slots = await asyncio.gather(
            *(self._upload_fragment(f, deadline, manifest, progress) for f in batch),
            return_exceptions=True,
        )

        for fragment, slot in zip(batch, slots):
            if isinstance(slot, BaseException):
                if isinstance(slot, (UploadFailure, Timeout)):
                    slot.manifest = manifest.copy()
                raise slot
            self._record(slot, manifest, progress)

    def _record(self, receipt: TransferReceipt, manifest: TransferManifest,
                progress: TransferProgress):
        manifest.append(receipt)
        progress.completed_fragments += 1
        progress.bytes_transferred += receipt.length or 0
        self._notify(progress)

    async def _upload_fragment(self, fragment: Fragment, deadline: Deadline,
                               manifest: TransferManifest,
                               progress: TransferProgress) -> TransferReceipt:
        """Upload one fragment, retrying per the policy."""
        index = fragment.index
        try:
            try:
                fingerprint = self.oracle.fingerprint(fragment.data)
            except TransferError as e:
                if e.fragment_index is None:
                    e.fragment_index = index
                raise

            last: Optional[AttemptOutcome] = None
            for attempt in range(1, self.retry_policy.attempts + 1):
                delay = self.retry_policy.delay_for(attempt)
                if delay > 0:
                    if not deadline.allows(delay):
                        raise Timeout(
                            f"Upload deadline expired before retrying fragment {index}",
                            fragment_index=index, cause=last.error if last else None,
                            manifest=manifest.copy(),
                        )
                    logger.info(f"Retrying upload of fragment {index} "
                                f"(attempt {attempt}/{self.retry_policy.attempts}) "
                                f"after {delay:g}s")
                    progress.retries += 1
                    await self._sleep(delay)

                last = await self._attempt(fragment, fingerprint, attempt, delay, deadline)
                self.outcomes.append(last)

                if last.succeeded:
                    handle = last.result
                    logger.info(f"✓ Uploaded fragment {index} "
                                f"(tx {handle.transaction_id}, {fingerprint.short()})")
                    return TransferReceipt(
                        fragment_index=index,
                        fingerprint=fingerprint,
                        transaction_id=handle.transaction_id,
                        confirmed=handle.confirmed,
                        offset=fragment.offset,
                        length=fragment.length,
                    )

                logger.warning(f"Upload attempt {attempt} failed for fragment {index}: "
                               f"{last.error}")

                if deadline.expired():
                    raise Timeout(
                        f"Upload deadline expired while uploading fragment {index}",
                        fragment_index=index, cause=last.error,
                        manifest=manifest.copy(),
                    )

            raise UploadFailure(
                f"Upload failed for fragment {index} after "
                f"{self.retry_policy.attempts} attempts: {last.error}",
                fragment_index=index, cause=last.error,
                manifest=manifest.copy(), attempts=self.retry_policy.attempts,
            )
        finally:
            fragment.release()

    async def _attempt(self, fragment: Fragment, fingerprint: Fingerprint,
                       attempt: int, delay: float, deadline: Deadline) -> AttemptOutcome:
        """Run one attempt under its deadline."""
        attempt_deadline = deadline.child(self.attempt_timeout)
        try:
            handle = await asyncio.wait_for(
                self.client.upload(fragment.data, self.options, attempt_deadline),
                timeout=attempt_deadline.remaining(),
            )
        except asyncio.TimeoutError as e:
            return AttemptOutcome(attempt, delay, error=Timeout(
                f"Attempt {attempt} for fragment {fragment.index} timed out",
                fragment_index=fragment.index, cause=e,
            ))
        except TransferError as e:
            return AttemptOutcome(attempt, delay, error=e)

        if handle.fingerprint is not None and handle.fingerprint != fingerprint:
            return AttemptOutcome(attempt, delay, error=NetworkFailure(
                f"Network stored fragment {fragment.index} as "
                f"{handle.fingerprint.short()}, expected {fingerprint.short()}",
                fragment_index=fragment.index,
            ))

        return AttemptOutcome(attempt, delay, result=handle)

    def _notify(self, progress: TransferProgress):
        if self.progress_callback:
            self.progress_callback(progress)
