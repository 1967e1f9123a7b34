"""
Fragment Storage

Design Decision: Storage Strategy
==================================

Two kinds of on-disk storage live here:

1. FragmentStore - content-addressed, keyed by fingerprint. Backs the
   in-process LocalStorageClient and the StorageNode.
2. Spools - index-addressed holding areas for downloaded fragments, so the
   verify and combine stages can stream them back in order.

Decision: Two-level directory for the content store
- fragments/ab/0xab12... (first 2 hex chars as subdirectory)
- Keeps any one directory small when a node holds many fragments
- A fragment can be located by hand from its fingerprint

Storage Layout:
```
data/
├── fragments/        # Content-addressed fragment data
│   ├── ab/
│   │   └── 0xabcdef123...
│   └── cd/
│       └── 0xcdef456...
└── temp/             # Partial writes
```

Spool Layout:
```
spool/
├── part_00000.bin
├── part_00001.bin
└── ...
```

All writes go to a temp file first and are renamed into place.
"""

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Union

import aiofiles
import aiofiles.os

from ..errors import GapDetected, InsufficientFunds, IOFailure
from ..integrity.fingerprint import Fingerprint, FingerprintOracle
from .chunker import Fragment, FragmentSpec

logger = logging.getLogger(__name__)


@dataclass
class StoreStats:
    """Statistics about stored fragments."""
    total_fragments: int
    total_bytes: int
    capacity: Optional[int]


class FragmentStore:
    """
    Content-addressed fragment storage on the local filesystem.

    Provides:
    - Fragment storage keyed by the fingerprint of its content
    - Retrieval, existence checks and deletion
    - Optional capacity limit
    """

    def __init__(self, data_dir: Path, oracle: FingerprintOracle,
                 capacity: Optional[int] = None):
        """
        Initialize fragment storage.

        Args:
            data_dir: Directory holding fragments/ and temp/
            oracle: Computes the fingerprint fragments are stored under
            capacity: Maximum stored bytes (None = unlimited)
        """
        self.data_dir = Path(data_dir)
        self.fragments_dir = self.data_dir / "fragments"
        self.temp_dir = self.data_dir / "temp"
        self.oracle = oracle
        self.capacity = capacity

        self._ensure_directories()

    def _ensure_directories(self):
        for dir_path in [self.fragments_dir, self.temp_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def _fragment_path(self, fingerprint: Fingerprint) -> Path:
        """Get filesystem path for a fragment."""
        name = fingerprint.hex
        return self.fragments_dir / name[2:4] / name

    # === Fragment Operations ===

    async def store(self, data: bytes) -> Fingerprint:
        """
        Store fragment data under its fingerprint.

        Storing the same content twice is a no-op.

        Raises:
            InsufficientFunds: the store is over capacity
            IOFailure: the fragment could not be written
        """
        fingerprint = self.oracle.fingerprint(data)
        fragment_path = self._fragment_path(fingerprint)

        if fragment_path.exists():
            return fingerprint

        if self.capacity is not None:
            stats = await self.get_stats()
            if stats.total_bytes + len(data) > self.capacity:
                raise InsufficientFunds(
                    f"Store capacity exceeded: {stats.total_bytes + len(data):,} > "
                    f"{self.capacity:,} bytes"
                )

        temp_path = self.temp_dir / f"{uuid.uuid4().hex}.tmp"
        try:
            await aiofiles.os.makedirs(fragment_path.parent, exist_ok=True)
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(data)
            await aiofiles.os.replace(temp_path, fragment_path)
        except OSError as e:
            raise IOFailure(f"Failed to store fragment {fingerprint.short()}: {e}", cause=e)

        logger.debug(f"Stored fragment {fingerprint.short()} ({len(data):,} bytes)")
        return fingerprint

    async def get(self, fingerprint: Fingerprint) -> Optional[bytes]:
        """
        Retrieve fragment data.

        Returns:
            Fragment bytes, or None if not stored
        """
        fragment_path = self._fragment_path(fingerprint)

        if not fragment_path.exists():
            return None

        try:
            async with aiofiles.open(fragment_path, 'rb') as f:
                return await f.read()
        except OSError as e:
            raise IOFailure(f"Failed to read fragment {fingerprint.short()}: {e}", cause=e)

    async def has(self, fingerprint: Fingerprint) -> bool:
        """Check if a fragment exists in storage."""
        return self._fragment_path(fingerprint).exists()

    async def size(self, fingerprint: Fingerprint) -> Optional[int]:
        """Stored size of a fragment, or None if not stored."""
        fragment_path = self._fragment_path(fingerprint)
        if not fragment_path.exists():
            return None
        return fragment_path.stat().st_size

    async def delete(self, fingerprint: Fingerprint) -> bool:
        """Delete a fragment from storage."""
        fragment_path = self._fragment_path(fingerprint)

        if fragment_path.exists():
            await aiofiles.os.remove(fragment_path)
            return True

        return False

    def list_fingerprints(self) -> List[Fingerprint]:
        """All stored fingerprints."""
        fingerprints = []
        for prefix_dir in self.fragments_dir.iterdir():
            if prefix_dir.is_dir():
                for fragment_file in prefix_dir.iterdir():
                    fingerprints.append(Fingerprint.from_hex(fragment_file.name))
        return fingerprints

    # === Statistics ===

    async def get_stats(self) -> StoreStats:
        """Fragment count, byte total and capacity."""
        total_fragments = 0
        total_bytes = 0

        for prefix_dir in self.fragments_dir.iterdir():
            if prefix_dir.is_dir():
                for fragment_file in prefix_dir.iterdir():
                    total_fragments += 1
                    total_bytes += fragment_file.stat().st_size

        return StoreStats(
            total_fragments=total_fragments,
            total_bytes=total_bytes,
            capacity=self.capacity,
        )


# === Download Spools ===

class MemorySpool:
    """Index-addressed in-memory holding area for downloaded fragments."""

    def __init__(self, count: int):
        self._slots: List[Optional[Fragment]] = [None] * count

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def filled(self) -> int:
        return sum(1 for f in self._slots if f is not None)

    async def put(self, fragment: Fragment):
        self._slots[fragment.index] = fragment

    def __aiter__(self) -> AsyncIterator[Fragment]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Fragment]:
        for index, fragment in enumerate(self._slots):
            if fragment is None:
                raise GapDetected(expected=index, found=None)
            yield fragment

    async def clear(self):
        self._slots = [None] * len(self._slots)


class DiskSpool:
    """
    Index-addressed spool of part files.

    Each fragment is written to part_NNNNN.bin as it arrives (in any
    order) and read back one at a time in index order, so only one
    fragment is resident while streaming.
    """

    def __init__(self, directory: Union[str, Path], count: int):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._count = count
        self._specs: Dict[int, FragmentSpec] = {}

    def __len__(self) -> int:
        return self._count

    @property
    def filled(self) -> int:
        return len(self._specs)

    def path_for(self, index: int) -> Path:
        return self.directory / f"part_{index:05d}.bin"

    async def put(self, fragment: Fragment):
        final_path = self.path_for(fragment.index)
        temp_path = final_path.with_suffix('.tmp')
        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(fragment.data)
            await aiofiles.os.replace(temp_path, final_path)
        except OSError as e:
            raise IOFailure(
                f"Failed to spool fragment {fragment.index}: {e}",
                fragment_index=fragment.index, cause=e,
            )
        self._specs[fragment.index] = fragment.spec

    def __aiter__(self) -> AsyncIterator[Fragment]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Fragment]:
        for index in range(self._count):
            spec = self._specs.get(index)
            if spec is None:
                raise GapDetected(expected=index, found=None)
            try:
                async with aiofiles.open(self.path_for(index), 'rb') as f:
                    data = await f.read()
            except OSError as e:
                raise IOFailure(
                    f"Failed to read spooled fragment {index}: {e}",
                    fragment_index=index, cause=e,
                )
            yield Fragment(spec=spec, data=data)

    async def clear(self):
        """Remove all part files."""
        for index in list(self._specs):
            path = self.path_for(index)
            if path.exists():
                await aiofiles.os.remove(path)
        self._specs.clear()
