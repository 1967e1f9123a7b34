"""
Pipeline Driver - Main Controller

Runs one transfer end to end:

    Idle -> Fragmented -> Uploaded -> Downloaded -> Verified -> Combined -> Done

Transitions are strictly forward. The first stage error halts the run in
Failed, recording the stage, the fragment index (when known) and the
cause; there is no retry across stages. After an upload failure the
partial manifest is reported so the caller can resume.

The upload and download halves are also exposed on their own so that a
manifest saved by one process can be downloaded by another.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from .config import Config
from .errors import SourceTruncated, TransferError
from .file.assembler import Reassembler
from .file.chunker import FragmentSequence, Fragmenter, SourceStream
from .file.manifest import TransferManifest
from .file.pool import BufferPool
from .file.storage import FragmentStore
from .integrity.fingerprint import FingerprintOracle, MerkleOracle
from .integrity.verifier import IntegrityVerifier, VerificationResult
from .transfer.client import (
    FinalityMode, LocalStorageClient, StorageClient, TcpStorageClient, UploadOptions,
)
from .transfer.downloader import DownloadCoordinator, Spool
from .transfer.progress import ProgressCallback
from .transfer.uploader import UploadCoordinator

logger = logging.getLogger(__name__)

Source = Union[SourceStream, Path, str]


class State(Enum):
    """Pipeline states, in order."""
    IDLE = "idle"
    FRAGMENTED = "fragmented"
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    VERIFIED = "verified"
    COMBINED = "combined"
    DONE = "done"
    FAILED = "failed"


class Stage(Enum):
    """The work that moves the pipeline into its next state."""
    FRAGMENT = "fragment"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    VERIFY = "verify"
    COMBINE = "combine"


STAGE_TARGETS = {
    Stage.FRAGMENT: State.FRAGMENTED,
    Stage.UPLOAD: State.UPLOADED,
    Stage.DOWNLOAD: State.DOWNLOADED,
    Stage.VERIFY: State.VERIFIED,
    Stage.COMBINE: State.COMBINED,
}


@dataclass(frozen=True)
class Transition:
    """One entry in a run's history."""
    state: State
    at: float = field(default_factory=time.time)


@dataclass
class PipelineResult:
    """Everything a run produced, successful or not."""
    history: List[Transition] = field(default_factory=list)
    manifest: Optional[TransferManifest] = None
    results: List[VerificationResult] = field(default_factory=list)
    output_path: Optional[Path] = None
    bytes_written: int = 0
    failed_stage: Optional[Stage] = None
    error: Optional[TransferError] = None

    @property
    def state(self) -> State:
        return self.history[-1].state if self.history else State.IDLE

    @property
    def states(self) -> List[State]:
        return [t.state for t in self.history]

    @property
    def succeeded(self) -> bool:
        return self.error is None


class PipelineFailure(TransferError):
    """The pipeline halted in Failed(stage, cause)."""

    def __init__(self, stage: Stage, cause: TransferError, result: PipelineResult):
        super().__init__(
            f"Pipeline failed during {stage.value}: {cause}",
            fragment_index=cause.fragment_index, cause=cause,
        )
        self.stage = stage
        self.result = result

    @property
    def manifest(self) -> Optional[TransferManifest]:
        return self.result.manifest


class PipelineDriver:
    """
    Drives fragment, upload, download, verify and combine in sequence.

    Collaborators are injected; from_config() builds them from a Config.

    Example:
        driver = PipelineDriver.from_config(load_config(path))
        result = await driver.run(Path("big.bin"), Path("out/final_file.bin"))
    """

    def __init__(self, fragmenter: Fragmenter, uploader: UploadCoordinator,
                 downloader: DownloadCoordinator,
                 verifier: Optional[IntegrityVerifier] = None,
                 allow_truncation: bool = False,
                 pool: Optional[BufferPool] = None):
        self.fragmenter = fragmenter
        self.uploader = uploader
        self.downloader = downloader
        self.verifier = verifier or IntegrityVerifier(uploader.oracle)
        self.allow_truncation = allow_truncation
        self.pool = pool

    @classmethod
    def from_config(cls, config: Config,
                    client: Optional[StorageClient] = None,
                    oracle: Optional[FingerprintOracle] = None,
                    sleep: Callable = asyncio.sleep,
                    upload_progress: Optional[ProgressCallback] = None,
                    download_progress: Optional[ProgressCallback] = None) -> 'PipelineDriver':
        """Build a driver and its collaborators from configuration."""
        oracle = oracle or MerkleOracle()
        if client is None:
            client = make_client(config, oracle)

        up = config.upload
        options = UploadOptions(
            replica_count=up.expected_replica,
            method=up.method,
            trusted_nodes_only=up.full_trusted,
            finality_mode=FinalityMode(up.finality_mode),
            retries=up.max_retries,
        )
        uploader = UploadCoordinator(
            client, oracle, options,
            batch_size=up.batch_size,
            max_retries=up.max_retries,
            attempt_timeout=up.attempt_timeout_seconds,
            overall_timeout=up.timeout_seconds,
            batch_cooldown=up.batch_cooldown,
            concurrent=up.concurrent,
            sleep=sleep,
            progress_callback=upload_progress,
        )

        spool_dir = None
        if config.file.spool_to_disk:
            spool_dir = config.file.output_directory / "downloaded_parts"
        downloader = DownloadCoordinator(
            client,
            verify_proof=config.download.verify_proof,
            timeout=config.download.timeout_seconds,
            parallelism=config.download.parallelism,
            spool_dir=spool_dir,
            progress_callback=download_progress,
        )

        # One buffer per fragment of a batch bounds upload memory
        pool = BufferPool(slots=up.batch_size, buffer_size=config.file.fragment_size)

        return cls(
            Fragmenter(config.file.fragment_size, config.file.number_of_parts),
            uploader,
            downloader,
            IntegrityVerifier(oracle),
            allow_truncation=config.file.allow_truncation,
            pool=pool,
        )

    async def close(self):
        """Release the storage client."""
        await self.uploader.client.close()
        if self.downloader.client is not self.uploader.client:
            await self.downloader.client.close()

    # === Runs ===

    async def run(self, source: Source, output: Path) -> PipelineResult:
        """
        Run the whole pipeline.

        Raises:
            PipelineFailure: a stage failed; .stage, .cause and .result
                             (with the partial manifest) describe it
        """
        result = self._begin()
        stream, fragments = await self._fragment(source, result)
        manifest = await self._upload(stream, fragments, result)
        await self._download_and_combine(manifest, Path(output), stream, result)
        return result

    async def upload_phase(self, source: Source) -> PipelineResult:
        """Fragment and upload only; the run ends in Uploaded."""
        result = self._begin()
        stream, fragments = await self._fragment(source, result)
        await self._upload(stream, fragments, result)
        return result

    async def download_phase(self, manifest: TransferManifest, output: Path,
                             source: Optional[Source] = None) -> PipelineResult:
        """
        Download, verify and combine from a saved manifest.

        With a source the retrieved fragments are verified against it;
        without one, against the fingerprints recorded in the manifest.
        """
        result = self._begin()
        result.manifest = manifest
        stream = None
        if source is not None:
            stream = await self._advance(
                Stage.FRAGMENT, result, lambda: self._open(source), transition=False,
            )
        await self._download_and_combine(manifest, Path(output), stream, result)
        return result

    # === Stages ===

    def _begin(self) -> PipelineResult:
        result = PipelineResult()
        result.history.append(Transition(State.IDLE))
        return result

    async def _advance(self, stage: Stage, result: PipelineResult, work,
                       transition: bool = True):
        """Run one stage's work, then move forward or into Failed."""
        logger.info(f"Stage {stage.value}: starting")
        try:
            value = await work()
        except TransferError as e:
            result.failed_stage = stage
            result.error = e
            result.history.append(Transition(State.FAILED))
            logger.error(f"Stage {stage.value} failed"
                         + (f" at fragment {e.fragment_index}" if e.fragment_index is not None else "")
                         + f": {e}")
            raise PipelineFailure(stage, e, result) from e

        if transition:
            result.history.append(Transition(STAGE_TARGETS[stage]))
        logger.info(f"Stage {stage.value}: done")
        return value

    async def _open(self, source: Source) -> SourceStream:
        if isinstance(source, SourceStream):
            return source
        return SourceStream.from_path(source)

    async def _fragment(self, source: Source, result: PipelineResult):
        async def work():
            stream = await self._open(source)
            truncated = self.fragmenter.truncated_bytes(stream.length)
            if truncated:
                if not self.allow_truncation:
                    raise SourceTruncated(stream.length, self.fragmenter.capacity)
                logger.warning(f"{truncated:,} trailing bytes of {stream.name} "
                               f"will not be transferred")
            fragments = self.fragmenter.split(stream, self.pool)
            logger.info(f"Split {stream.name} ({stream.length:,} bytes) into "
                        f"{len(fragments)} fragments of up to "
                        f"{self.fragmenter.fragment_size:,} bytes")
            return stream, fragments

        return await self._advance(Stage.FRAGMENT, result, work)

    async def _upload(self, stream: SourceStream, fragments: FragmentSequence,
                      result: PipelineResult) -> TransferManifest:
        manifest = TransferManifest(
            source_name=stream.name,
            total_length=fragments.total_length,
            fragment_size=self.fragmenter.fragment_size,
        )
        # Receipts land here as they arrive, so a failure still reports them
        result.manifest = manifest
        return await self._advance(
            Stage.UPLOAD, result, lambda: self.uploader.upload(fragments, manifest),
        )

    def _fragmenter_for(self, manifest: TransferManifest) -> Fragmenter:
        """The fragmentation the manifest was uploaded with."""
        if manifest.fragment_size > 0 and len(manifest) > 0:
            return Fragmenter(manifest.fragment_size, len(manifest))
        return self.fragmenter

    async def _download_and_combine(self, manifest: TransferManifest, output: Path,
                                    stream: Optional[SourceStream],
                                    result: PipelineResult):
        spool: Spool = await self._advance(
            Stage.DOWNLOAD, result, lambda: self.downloader.download(manifest),
        )

        async def verify():
            if stream is not None:
                # Re-read the source without the pool; originals stay live
                # while the spool is compared against them
                originals = self._fragmenter_for(manifest).split(stream)
                results = await self.verifier.verify(originals, spool)
            else:
                results = await self.verifier.verify_against_manifest(manifest, spool)
            result.results = results
            self.verifier.require_match(results)
            return results

        await self._advance(Stage.VERIFY, result, verify)

        written = await self._advance(
            Stage.COMBINE, result,
            lambda: Reassembler(expected_count=len(manifest)).combine(spool, output),
        )
        await spool.clear()

        result.output_path = output
        result.bytes_written = written
        result.history.append(Transition(State.DONE))
        logger.info(f"Pipeline complete: {written:,} bytes written to {output}")


def make_client(config: Config, oracle: FingerprintOracle) -> StorageClient:
    """The storage client named by the configuration."""
    storage = config.storage
    if storage.backend == 'tcp':
        return TcpStorageClient(storage.host, storage.port)
    return LocalStorageClient(
        FragmentStore(storage.data_dir, oracle, capacity=storage.capacity)
    )
