"""Tests for reassembly and the test file generator."""

import io

import pytest

from conftest import make_fragments
from fragxfer.errors import GapDetected
from fragxfer.file.assembler import Reassembler, combine
from fragxfer.file.chunker import Fragmenter, SourceStream
from fragxfer.file.generator import BLOCK_SIZE, generate_test_file, pattern_block


class TestReassembler:
    """Tests for combining ordered fragments."""

    @pytest.mark.asyncio
    async def test_combine_to_path(self, tmp_path, sample_data):
        output = tmp_path / "out" / "final_file.bin"
        written = await combine(make_fragments(sample_data, 300_000), output)

        assert written == len(sample_data)
        assert output.read_bytes() == sample_data
        # Only the final file remains; the temp file was renamed into place
        assert [p.name for p in output.parent.iterdir()] == ["final_file.bin"]

    @pytest.mark.asyncio
    async def test_combine_to_sink(self):
        sink = io.BytesIO()
        written = await Reassembler().combine(make_fragments(b"abcdefghij", 3), sink)

        assert written == 10
        assert sink.getvalue() == b"abcdefghij"

    @pytest.mark.asyncio
    async def test_fragments_released_after_writing(self):
        fragments = make_fragments(b"abcdefghij", 3)
        await combine(fragments, io.BytesIO())
        assert all(f.released for f in fragments)

    @pytest.mark.asyncio
    async def test_gap_detected(self, tmp_path):
        fragments = make_fragments(b"abcdefghij", 3)
        del fragments[1]
        output = tmp_path / "out.bin"

        with pytest.raises(GapDetected) as exc_info:
            await combine(fragments, output)

        assert exc_info.value.expected == 1
        assert exc_info.value.found == 2
        assert not output.exists()
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_out_of_order(self):
        fragments = make_fragments(b"abcdefghij", 3)
        fragments[0], fragments[1] = fragments[1], fragments[0]

        with pytest.raises(GapDetected):
            await combine(fragments, io.BytesIO())

    @pytest.mark.asyncio
    async def test_missing_tail(self):
        fragments = make_fragments(b"abcdefghij", 3)

        with pytest.raises(GapDetected) as exc_info:
            await Reassembler(expected_count=5).combine(fragments, io.BytesIO())
        assert exc_info.value.expected == 4
        assert exc_info.value.found is None

    @pytest.mark.asyncio
    async def test_round_trip_through_fragmenter(self, tmp_path, sample_data):
        """Splitting then combining reproduces the source byte for byte."""
        source = tmp_path / "source.bin"
        source.write_bytes(sample_data)
        output = tmp_path / "copy.bin"

        sequence = Fragmenter(300_000, 10).split(SourceStream.from_path(source))
        await combine(sequence, output)

        assert output.read_bytes() == sample_data


class TestGenerator:
    """Tests for the deterministic test file."""

    def test_pattern_block(self):
        block = pattern_block(600)
        assert block[:3] == b"\x00\x01\x02"
        assert block[256] == 0
        assert block[599] == 599 % 256

    @pytest.mark.asyncio
    async def test_exact_size_with_tail(self, tmp_path):
        size = BLOCK_SIZE + 1000
        path = await generate_test_file(tmp_path / "test.bin", size)

        data = path.read_bytes()
        assert len(data) == size
        assert data[BLOCK_SIZE:BLOCK_SIZE + 3] == b"\x00\x01\x02"
        assert data[-1] == 999 % 256

    @pytest.mark.asyncio
    async def test_small_file(self, tmp_path):
        path = await generate_test_file(tmp_path / "tiny.bin", 10)
        assert path.read_bytes() == bytes(range(10))

    @pytest.mark.asyncio
    async def test_negative_size(self, tmp_path):
        with pytest.raises(ValueError):
            await generate_test_file(tmp_path / "bad.bin", -1)
