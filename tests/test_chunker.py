"""Tests for the fragmenter.

Tests for:
- Fragment boundaries for arbitrary lengths, sizes and part caps
- Lazy, restartable iteration over files and buffers
- Pooled buffers
- Read failures
"""

import asyncio

import pytest

from fragxfer.errors import IOFailure
from fragxfer.file.chunker import (
    Fragment,
    FragmentSpec,
    Fragmenter,
    SourceStream,
    iterate_fragments,
    split,
)
from fragxfer.file.pool import BufferPool


async def collect(sequence):
    return [(f.index, f.offset, bytes(f.data)) async for f in sequence]


class TestFragmentSpec:
    """Tests for fragment byte ranges."""

    def test_end(self):
        spec = FragmentSpec(index=2, offset=600, length=300)
        assert spec.end == 900

    def test_zero_length_rejected(self):
        with pytest.raises(ValueError):
            FragmentSpec(index=0, offset=0, length=0)

    def test_negative_index_rejected(self):
        with pytest.raises(ValueError):
            FragmentSpec(index=-1, offset=0, length=1)

    def test_fragment_length_must_match_spec(self):
        with pytest.raises(ValueError):
            Fragment(FragmentSpec(0, 0, 4), b"abc")


class TestFragmenterPlan:
    """Tests for boundary planning without I/O."""

    @pytest.mark.parametrize("length,size,max_parts", [
        (0, 10, 5),
        (1, 10, 5),
        (10, 10, 5),
        (11, 10, 5),
        (49, 10, 5),
        (50, 10, 5),
        (51, 10, 5),
        (1000, 7, 3),
        (1000, 1000, 1),
        (999_999, 4096, 1000),
    ])
    def test_counts_and_lengths(self, length, size, max_parts):
        """Count is min(ceil(L/F), max_parts); lengths are min(F, remaining)."""
        fragmenter = Fragmenter(fragment_size=size, max_parts=max_parts)
        specs = fragmenter.plan(length)

        expected_count = min(-(-length // size), max_parts)
        assert len(specs) == expected_count
        assert fragmenter.get_fragment_count(length) == expected_count

        covered = 0
        for i, spec in enumerate(specs):
            assert spec.index == i
            assert spec.offset == covered
            assert spec.length == min(size, length - covered)
            assert spec.length > 0
            covered += spec.length

        assert covered == min(length, size * max_parts)
        assert fragmenter.truncated_bytes(length) == length - covered

    def test_million_bytes_in_300k_fragments(self):
        """1,000,000 bytes at 300,000 per fragment gives four fragments."""
        specs = Fragmenter(fragment_size=300_000, max_parts=10).plan(1_000_000)

        assert [s.length for s in specs] == [300_000, 300_000, 300_000, 100_000]
        assert [s.offset for s in specs] == [0, 300_000, 600_000, 900_000]

    def test_capacity(self):
        assert Fragmenter(fragment_size=100, max_parts=10).capacity == 1000

    @pytest.mark.parametrize("size,parts", [(0, 1), (-1, 1), (1, 0)])
    def test_invalid_parameters(self, size, parts):
        with pytest.raises(ValueError):
            Fragmenter(fragment_size=size, max_parts=parts)


class TestSplit:
    """Tests for reading fragments from a source."""

    @pytest.mark.asyncio
    async def test_split_bytes(self):
        source = SourceStream.from_bytes(b"abcdefghij")
        fragments = await collect(split(source, fragment_size=4, max_parts=10))

        assert fragments == [(0, 0, b"abcd"), (1, 4, b"efgh"), (2, 8, b"ij")]

    @pytest.mark.asyncio
    async def test_split_file(self, tmp_path, sample_data):
        path = tmp_path / "source.bin"
        path.write_bytes(sample_data)

        sequence = Fragmenter(300_000, 10).split(SourceStream.from_path(path))
        fragments = await collect(sequence)

        assert len(sequence) == 4
        assert sequence.total_length == 1_000_000
        assert b"".join(data for _, _, data in fragments) == sample_data

    @pytest.mark.asyncio
    async def test_restartable(self, sample_data):
        """Each iteration re-reads the source from the start."""
        sequence = Fragmenter(300_000, 10).split(SourceStream.from_bytes(sample_data))

        first = await collect(sequence)
        second = await collect(sequence)
        assert first == second

    @pytest.mark.asyncio
    async def test_stops_at_max_parts(self):
        """Bytes past fragment_size * max_parts are not fragmented."""
        source = SourceStream.from_bytes(b"x" * 100)
        fragments = await collect(split(source, fragment_size=10, max_parts=3))

        assert len(fragments) == 3
        assert sum(len(data) for _, _, data in fragments) == 30

    @pytest.mark.asyncio
    async def test_empty_source(self):
        source = SourceStream.from_bytes(b"")
        assert await collect(split(source, fragment_size=10, max_parts=3)) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(IOFailure):
            SourceStream.from_path(tmp_path / "missing.bin")

    @pytest.mark.asyncio
    async def test_source_shrinks_after_planning(self, tmp_path):
        """A file that ends early is a read failure, not a short fragment."""
        path = tmp_path / "source.bin"
        path.write_bytes(b"y" * 100)
        sequence = Fragmenter(40, 10).split(SourceStream.from_path(path))
        path.write_bytes(b"y" * 50)

        with pytest.raises(IOFailure) as exc_info:
            await collect(sequence)
        assert exc_info.value.fragment_index == 1

    @pytest.mark.asyncio
    async def test_iterate_plain_list(self):
        fragments = [Fragment(FragmentSpec(0, 0, 2), b"ab")]
        seen = [f async for f in iterate_fragments(fragments)]
        assert seen == fragments


class TestPooledSplit:
    """Tests for fragments backed by a buffer pool."""

    @pytest.mark.asyncio
    async def test_pooled_fragments_return_buffers(self):
        pool = BufferPool(slots=2, buffer_size=4)
        sequence = Fragmenter(4, 10).split(SourceStream.from_bytes(b"abcdefghij"), pool)

        seen = []
        async for fragment in sequence:
            seen.append(bytes(fragment.data))
            assert pool.available == 1
            fragment.release()
            assert fragment.released
            assert pool.available == 2

        assert seen == [b"abcd", b"efgh", b"ij"]

    def test_pool_smaller_than_fragment_rejected(self):
        pool = BufferPool(slots=1, buffer_size=2)
        with pytest.raises(ValueError):
            Fragmenter(4, 10).split(SourceStream.from_bytes(b"abcd"), pool)


class TestBufferPool:
    """Tests for slot-indexed buffer reuse."""

    @pytest.mark.asyncio
    async def test_buffers_are_reused(self):
        pool = BufferPool(slots=1, buffer_size=8)
        slot = await pool.acquire()
        first = pool.buffer(slot)
        pool.release(slot)

        slot = await pool.acquire()
        assert pool.buffer(slot) is first

    @pytest.mark.asyncio
    async def test_release_unacquired_slot(self):
        pool = BufferPool(slots=2, buffer_size=8)
        with pytest.raises(ValueError):
            pool.release(0)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_release(self):
        pool = BufferPool(slots=1, buffer_size=8)
        slot = await pool.acquire()

        waiter = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0)
        assert not waiter.done()

        pool.release(slot)
        assert await asyncio.wait_for(waiter, timeout=1) == slot
