"""Shared test fixtures for fragxfer."""

import asyncio
import uuid
from typing import Dict, List, Optional, Set

import pytest

from fragxfer.errors import NetworkFailure, NotFound
from fragxfer.file.chunker import Fragment, FragmentSpec
from fragxfer.integrity.fingerprint import Fingerprint, MerkleOracle
from fragxfer.transfer.client import StorageClient, TransactionHandle, UploadOptions


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (open local sockets)")


def make_fragments(data: bytes, fragment_size: int) -> List[Fragment]:
    """Fragments of `data` without going through a source."""
    fragments = []
    for index, offset in enumerate(range(0, len(data), fragment_size)):
        chunk = data[offset:offset + fragment_size]
        fragments.append(Fragment(FragmentSpec(index, offset, len(chunk)), chunk))
    return fragments


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


class MemoryClient(StorageClient):
    """
    In-memory StorageClient with scripted failures.

    fail_uploads maps a fragment index to how many attempts fail before
    one succeeds (-1 fails forever). Payloads are mapped back to their
    fragment index through register().
    """

    def __init__(self, oracle: Optional[MerkleOracle] = None,
                 fail_uploads: Optional[Dict[int, int]] = None,
                 upload_delays: Optional[Dict[int, float]] = None,
                 fail_downloads: Optional[Set[int]] = None):
        self.oracle = oracle or MerkleOracle()
        self.blobs: Dict[Fingerprint, bytes] = {}
        self.fail_uploads = dict(fail_uploads or {})
        self.upload_delays = dict(upload_delays or {})
        self.fail_downloads = set(fail_downloads or ())
        self.upload_calls: List[int] = []
        self.download_calls: List[Fingerprint] = []
        self.completion_order: List[int] = []
        self.index_of: Dict[bytes, int] = {}
        self.closed = False

    def register(self, fragments: List[Fragment]):
        """Teach the client which payload belongs to which fragment index."""
        for fragment in fragments:
            self.index_of[bytes(fragment.data)] = fragment.index

    async def upload(self, data, options: UploadOptions, deadline=None) -> TransactionHandle:
        payload = bytes(data)
        index = self.index_of.get(payload, -1)
        self.upload_calls.append(index)

        delay = self.upload_delays.get(index)
        if delay:
            await asyncio.sleep(delay)

        remaining = self.fail_uploads.get(index, 0)
        if remaining != 0:
            if remaining > 0:
                self.fail_uploads[index] = remaining - 1
            raise NetworkFailure(f"Scripted failure for fragment {index}")

        fingerprint = self.oracle.fingerprint(payload)
        self.blobs[fingerprint] = payload
        self.completion_order.append(index)
        return TransactionHandle(uuid.uuid4().hex, True, fingerprint)

    async def download(self, fingerprint: Fingerprint, verify_proof: bool,
                       deadline=None) -> bytes:
        self.download_calls.append(fingerprint)
        data = self.blobs.get(fingerprint)
        if data is None:
            raise NotFound(f"{fingerprint.short()} not stored")
        if self.index_of.get(data) in self.fail_downloads:
            raise NetworkFailure("Scripted download failure")
        return data

    async def close(self):
        self.closed = True


@pytest.fixture
def oracle():
    return MerkleOracle()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def sample_data():
    """1,000,000 bytes of the generator pattern."""
    return bytes(i % 256 for i in range(1_000_000))
