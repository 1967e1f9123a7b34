"""
Test File Generator

Writes a deterministic file of a given size for end-to-end runs. The
content repeats the byte pattern 0, 1, ..., 255 in 1MB blocks, so a
corrupted or misordered fragment always changes the output.
"""

import logging
from pathlib import Path

import aiofiles

from ..errors import IOFailure

logger = logging.getLogger(__name__)

BLOCK_SIZE = 1024 * 1024  # 1MB

# Log progress every this many blocks
PROGRESS_EVERY = 100


def pattern_block(size: int = BLOCK_SIZE) -> bytes:
    """One block of the repeating 0..255 pattern."""
    return bytes(i % 256 for i in range(size))


async def generate_test_file(path: Path, size: int) -> Path:
    """
    Generate a test file of exactly `size` bytes.

    Returns:
        The path written
    """
    if size < 0:
        raise ValueError(f"size must be >= 0, got {size}")

    path = Path(path)
    logger.info(f"Generating test file: {path} (size: {size / (1024 ** 3):.2f} GB)")

    block = pattern_block()
    total_blocks, tail = divmod(size, BLOCK_SIZE)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, 'wb') as f:
            for i in range(total_blocks):
                await f.write(block)
                if i % PROGRESS_EVERY == 0:
                    logger.info(f"Progress: {i}/{total_blocks} MB written")
            if tail:
                await f.write(block[:tail])
    except OSError as e:
        raise IOFailure(f"Failed to generate {path}: {e}", cause=e)

    logger.info("Test file generation completed successfully")
    return path
