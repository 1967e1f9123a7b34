"""
Download Coordinator

Design Decision: Download Strategy
===================================

Options Considered:
1. Sequential download in manifest order
   - Simple, one fragment in flight
   - Slow against a high-latency network

2. Bounded parallel download into index-addressed slots
   - Faster
   - Completion order no longer matches manifest order

Decision: Bounded parallelism (default 1) writing into a spool
- Fragments are requested by fingerprint, one per receipt
- Each result lands in the spool slot of its receipt index, so the order
  seen by later stages is the manifest order regardless of completion order
- Any failure aborts the whole download; there is no partial success
- Every request shares one overall deadline

Spools:
- MemorySpool (default) keeps fragments in memory
- DiskSpool writes part_00000.bin, part_00001.bin, ... so multi-GB
  downloads never stay resident
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from ..errors import DownloadFailure, Timeout, TransferError
from ..file.chunker import Fragment, FragmentSpec
from ..file.manifest import TransferManifest, TransferReceipt
from ..file.storage import DiskSpool, MemorySpool
from .client import StorageClient
from .progress import ProgressCallback, TransferProgress
from .retry import Deadline

logger = logging.getLogger(__name__)

Spool = Union[MemorySpool, DiskSpool]


class DownloadCoordinator:
    """
    Retrieves every fragment named by a manifest.

    Example:
        coordinator = DownloadCoordinator(client, verify_proof=True, timeout=1800)
        spool = await coordinator.download(manifest)
        async for fragment in spool:
            ...
    """

    def __init__(self, client: StorageClient, verify_proof: bool = True,
                 timeout: Optional[float] = None, parallelism: int = 1,
                 spool_dir: Optional[Path] = None,
                 progress_callback: Optional[ProgressCallback] = None):
        """
        Args:
            client: Storage network client
            verify_proof: Ask the network to verify its storage proof
            timeout: Seconds allowed for the whole download (None = unbounded)
            parallelism: Maximum fragments in flight
            spool_dir: Spool fragments to part files here instead of memory
            progress_callback: Called with a TransferProgress after each fragment
        """
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {parallelism}")

        self.client = client
        self.verify_proof = verify_proof
        self.timeout = timeout
        self.parallelism = parallelism
        self.spool_dir = Path(spool_dir) if spool_dir is not None else None
        self.progress_callback = progress_callback

    def _new_spool(self, count: int) -> Spool:
        if self.spool_dir is not None:
            return DiskSpool(self.spool_dir, count)
        return MemorySpool(count)

    async def download(self, manifest: TransferManifest) -> Spool:
        """
        Download every fragment in the manifest.

        Returns:
            A spool yielding the fragments in manifest order

        Raises:
            DownloadFailure: a fragment could not be retrieved
            Timeout: the overall deadline expired
        """
        deadline = Deadline.after(self.timeout)
        spool = self._new_spool(len(manifest))
        progress = TransferProgress(total_fragments=len(manifest), phase='downloading')
        semaphore = asyncio.Semaphore(self.parallelism)

        logger.info(f"Downloading {len(manifest)} fragments "
                    f"(verify_proof={self.verify_proof}, parallelism={self.parallelism})")

        async def fetch(receipt: TransferReceipt):
            async with semaphore:
                fragment = await self._download_fragment(
                    receipt, manifest.fragment_size, deadline
                )
                await spool.put(fragment)
                progress.completed_fragments += 1
                progress.bytes_transferred += fragment.length
                self._notify(progress)

        tasks = [asyncio.ensure_future(fetch(receipt)) for receipt in manifest]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await spool.clear()
            progress.phase = 'failed'
            self._notify(progress)
            raise

        progress.phase = 'complete'
        self._notify(progress)
        logger.info(f"Download complete: {len(manifest)} fragments, "
                    f"{progress.bytes_transferred:,} bytes")
        return spool

    async def _download_fragment(self, receipt: TransferReceipt, fragment_size: int,
                                 deadline: Deadline) -> Fragment:
        index = receipt.fragment_index
        try:
            data = await asyncio.wait_for(
                self.client.download(receipt.fingerprint, self.verify_proof, deadline),
                timeout=deadline.remaining(),
            )
        except (asyncio.TimeoutError, Timeout) as e:
            raise Timeout(
                f"Download deadline expired while retrieving fragment {index}",
                fragment_index=index, cause=e,
            )
        except TransferError as e:
            raise DownloadFailure(
                f"Failed to download fragment {index}: {e}",
                fragment_index=index, cause=e,
            )

        if receipt.length is not None and len(data) != receipt.length:
            raise DownloadFailure(
                f"Fragment {index}: expected {receipt.length} bytes, got {len(data)}",
                fragment_index=index,
            )
        if not data:
            raise DownloadFailure(f"Fragment {index} is empty", fragment_index=index)

        offset = receipt.offset
        if offset is None:
            offset = index * (fragment_size or len(data))
        logger.info(f"✓ Downloaded fragment {index} ({len(data):,} bytes)")
        return Fragment(
            spec=FragmentSpec(index=index, offset=offset, length=len(data)),
            data=data,
        )

    def _notify(self, progress: TransferProgress):
        if self.progress_callback:
            self.progress_callback(progress)
