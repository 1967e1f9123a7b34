"""
Reassembler

Concatenates fragments back into the original byte stream. Fragments must
arrive with indexes 0..N-1 in order; each one is released as soon as it
has been written so only one fragment is resident at a time.
"""

import inspect
import logging
import uuid
from pathlib import Path
from typing import BinaryIO, Optional, Union

import aiofiles
import aiofiles.os

from ..errors import GapDetected, IOFailure
from .chunker import FragmentSource, iterate_fragments

logger = logging.getLogger(__name__)

Output = Union[str, Path, BinaryIO]


class Reassembler:
    """
    Writes ordered fragments to a path or a binary sink.

    Writing to a path goes through a temp file in the same directory that
    is renamed into place only after every fragment was written.
    """

    def __init__(self, expected_count: Optional[int] = None):
        """
        Args:
            expected_count: If set, fewer fragments than this is a gap
        """
        self.expected_count = expected_count

    async def combine(self, fragments: FragmentSource, output: Output) -> int:
        """
        Combine fragments into the output.

        Returns:
            Total bytes written

        Raises:
            GapDetected: an index is missing or out of order
            IOFailure: the output could not be written
        """
        if isinstance(output, (str, Path)):
            return await self._combine_to_path(fragments, Path(output))
        return await self._combine_to_sink(fragments, output)

    async def _combine_to_path(self, fragments: FragmentSource, output_path: Path) -> int:
        temp_path = output_path.parent / f".{output_path.name}.{uuid.uuid4().hex[:8]}.tmp"

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, 'wb') as f:
                written = await self._write_all(fragments, f.write)
            await aiofiles.os.replace(temp_path, output_path)
        except OSError as e:
            await self._discard(temp_path)
            raise IOFailure(f"Failed to write {output_path}: {e}", cause=e)
        except BaseException:
            await self._discard(temp_path)
            raise

        logger.info(f"All fragments combined successfully. Final file: {output_path}")
        return written

    async def _combine_to_sink(self, fragments: FragmentSource, sink: BinaryIO) -> int:
        async def write(data):
            result = sink.write(data)
            if inspect.isawaitable(result):
                await result

        try:
            return await self._write_all(fragments, write)
        except OSError as e:
            raise IOFailure(f"Failed to write output: {e}", cause=e)

    async def _write_all(self, fragments: FragmentSource, write) -> int:
        expected = 0
        written = 0

        async for fragment in iterate_fragments(fragments):
            if fragment.index != expected:
                raise GapDetected(expected=expected, found=fragment.index)

            length = fragment.length
            await write(fragment.data)
            fragment.release()

            written += length
            logger.debug(f"Combined fragment {expected} ({length:,} bytes)")
            expected += 1

        if self.expected_count is not None and expected < self.expected_count:
            raise GapDetected(expected=expected, found=None)

        return written

    async def _discard(self, path: Path):
        if path.exists():
            await aiofiles.os.remove(path)


async def combine(fragments: FragmentSource, output: Output,
                  expected_count: Optional[int] = None) -> int:
    """Combine fragments with a one-off Reassembler."""
    return await Reassembler(expected_count).combine(fragments, output)
