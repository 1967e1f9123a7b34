"""
File Fragmenter

Design Decision: Fragment Size
==============================

Options Considered:
| Size    | Pros                          | Cons                             |
|---------|-------------------------------|----------------------------------|
| 256KB   | Fine-grained retries          | Many transactions per file       |
| 4MB     | Good balance                  | -                                |
| 400MB   | Few transactions              | A failed attempt resends a lot   |

Decision: 4MB default, configurable per run
- Each fragment is one storage transaction, so the count drives cost
- Small enough that a retry resends little data
- Callers moving multi-GB files raise it and lower the part count

Fragmentation Strategy: Fixed-Size, capped part count
- Fragment i covers [i * size, min((i + 1) * size, L))
- At most max_parts fragments are produced; anything past
  fragment_size * max_parts is not fragmented (the pipeline driver
  checks for that before splitting)
- No zero-length fragment is ever produced
"""

import io
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    AsyncIterator, Callable, Iterable, List, Optional, Union, AsyncIterable
)

import aiofiles

from ..errors import IOFailure
from .pool import BufferPool

# Fragment size: 4MB
DEFAULT_FRAGMENT_SIZE = 4 * 1024 * 1024

DEFAULT_MAX_PARTS = 10


@dataclass(frozen=True)
class FragmentSpec:
    """Byte range of one fragment within the source."""
    index: int
    offset: int
    length: int

    def __post_init__(self):
        if self.index < 0:
            raise ValueError(f"Fragment index must be >= 0, got {self.index}")
        if self.offset < 0:
            raise ValueError(f"Fragment offset must be >= 0, got {self.offset}")
        if self.length <= 0:
            raise ValueError(f"Fragment length must be > 0, got {self.length}")

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass
class Fragment:
    """
    A fragment's bytes together with its position in the source.

    A fragment is held by one stage at a time. Calling release() drops the
    bytes and hands any pooled buffer back to its pool.
    """
    spec: FragmentSpec
    data: Union[bytes, bytearray, memoryview]
    _on_release: Optional[Callable[[], None]] = field(
        default=None, repr=False, compare=False
    )

    def __post_init__(self):
        if len(self.data) != self.spec.length:
            raise ValueError(
                f"Fragment {self.spec.index}: expected {self.spec.length} bytes, "
                f"got {len(self.data)}"
            )

    @property
    def index(self) -> int:
        return self.spec.index

    @property
    def offset(self) -> int:
        return self.spec.offset

    @property
    def length(self) -> int:
        return self.spec.length

    @property
    def released(self) -> bool:
        return len(self.data) == 0

    def release(self):
        """Drop the fragment's bytes and return its buffer, if pooled."""
        callback, self._on_release = self._on_release, None
        self.data = b''
        if callback is not None:
            callback()


class _BytesReader:
    """Async reader over an in-memory buffer."""

    def __init__(self, data: bytes):
        self._buffer = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)

    async def readinto(self, target) -> int:
        return self._buffer.readinto(target)


class SourceStream:
    """
    A finite byte source of known length, backed by a file or a buffer.

    The source is treated as immutable: a file that shrinks while it is
    being fragmented is reported as an IOFailure.
    """

    def __init__(self, path: Optional[Path] = None, data: Optional[bytes] = None,
                 name: str = ''):
        if (path is None) == (data is None):
            raise ValueError("Provide exactly one of path or data")

        self.path = Path(path) if path is not None else None
        self._data = bytes(data) if data is not None else None

        if self.path is not None:
            try:
                self.length = self.path.stat().st_size
            except OSError as e:
                raise IOFailure(f"Cannot open source {self.path}: {e}", cause=e)
            self.name = name or self.path.name
        else:
            self.length = len(self._data)
            self.name = name or '<memory>'

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> 'SourceStream':
        return cls(path=Path(path))

    @classmethod
    def from_bytes(cls, data: bytes, name: str = '<memory>') -> 'SourceStream':
        return cls(data=data, name=name)

    @asynccontextmanager
    async def open(self):
        """Open the source for sequential reading."""
        if self.path is None:
            yield _BytesReader(self._data)
            return

        try:
            f = await aiofiles.open(self.path, 'rb')
        except OSError as e:
            raise IOFailure(f"Cannot open source {self.path}: {e}", cause=e)
        try:
            yield f
        finally:
            await f.close()


class FragmentSequence:
    """
    Lazy, restartable sequence of fragments over a source.

    Every `async for` re-opens the source and reads it from the start, so
    the same sequence can feed the upload stage and, later, the integrity
    check without holding fragments in memory.
    """

    def __init__(self, source: SourceStream, specs: List[FragmentSpec],
                 pool: Optional[BufferPool] = None):
        self.source = source
        self.specs = specs
        self.pool = pool

    def __len__(self) -> int:
        return len(self.specs)

    @property
    def total_length(self) -> int:
        return sum(spec.length for spec in self.specs)

    def __aiter__(self) -> AsyncIterator[Fragment]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Fragment]:
        if not self.specs:
            return

        async with self.source.open() as reader:
            for spec in self.specs:
                try:
                    if self.pool is not None:
                        fragment = await self._read_pooled(reader, spec)
                    else:
                        data = await reader.read(spec.length)
                        if len(data) != spec.length:
                            raise IOFailure(
                                f"Source ended early at fragment {spec.index}: "
                                f"expected {spec.length} bytes, read {len(data)}",
                                fragment_index=spec.index,
                            )
                        fragment = Fragment(spec=spec, data=data)
                except OSError as e:
                    raise IOFailure(
                        f"Failed to read fragment {spec.index}: {e}",
                        fragment_index=spec.index, cause=e,
                    )

                yield fragment

    async def _read_pooled(self, reader, spec: FragmentSpec) -> Fragment:
        slot = await self.pool.acquire()
        try:
            view = memoryview(self.pool.buffer(slot))[:spec.length]
            filled = 0
            while filled < spec.length:
                n = await reader.readinto(view[filled:])
                if not n:
                    raise IOFailure(
                        f"Source ended early at fragment {spec.index}: "
                        f"expected {spec.length} bytes, read {filled}",
                        fragment_index=spec.index,
                    )
                filled += n
        except BaseException:
            self.pool.release(slot)
            raise

        return Fragment(spec=spec, data=view, _on_release=lambda: self.pool.release(slot))


class Fragmenter:
    """
    Splits a source into ordered fixed-size fragments.

    Example:
        fragmenter = Fragmenter(fragment_size=300_000, max_parts=10)
        async for fragment in fragmenter.split(SourceStream.from_path(path)):
            ...
    """

    def __init__(self, fragment_size: int = DEFAULT_FRAGMENT_SIZE,
                 max_parts: int = DEFAULT_MAX_PARTS):
        if fragment_size <= 0:
            raise ValueError(f"fragment_size must be > 0, got {fragment_size}")
        if max_parts <= 0:
            raise ValueError(f"max_parts must be > 0, got {max_parts}")
        self.fragment_size = fragment_size
        self.max_parts = max_parts

    @property
    def capacity(self) -> int:
        """Largest source length that is fragmented completely."""
        return self.fragment_size * self.max_parts

    def get_fragment_count(self, total_length: int) -> int:
        """Number of fragments for a source of the given length."""
        full = (total_length + self.fragment_size - 1) // self.fragment_size
        return min(full, self.max_parts)

    def truncated_bytes(self, total_length: int) -> int:
        """Bytes past the last fragment that would not be fragmented."""
        return max(0, total_length - self.capacity)

    def plan(self, total_length: int) -> List[FragmentSpec]:
        """Compute fragment boundaries without reading anything."""
        specs = []
        for index in range(self.get_fragment_count(total_length)):
            offset = index * self.fragment_size
            length = min(self.fragment_size, total_length - offset)
            specs.append(FragmentSpec(index=index, offset=offset, length=length))
        return specs

    def split(self, source: SourceStream,
              pool: Optional[BufferPool] = None) -> FragmentSequence:
        """
        Split a source into fragments.

        Args:
            source: The byte source
            pool: Optional buffer pool; fragments then borrow pooled
                  buffers and must be released by their last holder

        Returns:
            A lazy, restartable FragmentSequence
        """
        if pool is not None and pool.buffer_size < self.fragment_size:
            raise ValueError(
                f"Pool buffers ({pool.buffer_size} bytes) are smaller than "
                f"fragment_size ({self.fragment_size})"
            )
        return FragmentSequence(source, self.plan(source.length), pool)


def split(source: SourceStream, fragment_size: int = DEFAULT_FRAGMENT_SIZE,
          max_parts: int = DEFAULT_MAX_PARTS) -> FragmentSequence:
    """Split a source with a one-off Fragmenter."""
    return Fragmenter(fragment_size, max_parts).split(source)


FragmentSource = Union[Iterable[Fragment], AsyncIterable[Fragment]]


async def iterate_fragments(fragments: FragmentSource) -> AsyncIterator[Fragment]:
    """Iterate plain lists and lazy sequences alike."""
    if hasattr(fragments, '__aiter__'):
        iterator = fragments.__aiter__()
        try:
            async for fragment in iterator:
                yield fragment
        finally:
            # Closes the source reader when iteration stops early
            if hasattr(iterator, 'aclose'):
                await iterator.aclose()
    else:
        for fragment in fragments:
            yield fragment
