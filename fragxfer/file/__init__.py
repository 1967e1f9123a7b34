"""
File Module - Fragmenting, Manifests, and Storage

This module handles the local side of a transfer: splitting a source into
fragments, recording receipts, spooling downloads and reassembling output.
"""

from .chunker import (
    DEFAULT_FRAGMENT_SIZE,
    Fragment,
    FragmentSequence,
    FragmentSpec,
    Fragmenter,
    SourceStream,
    iterate_fragments,
    split,
)
from .manifest import TransferManifest, TransferReceipt
from .storage import DiskSpool, FragmentStore, MemorySpool, StoreStats
from .assembler import Reassembler, combine
from .generator import generate_test_file
from .pool import BufferPool

__all__ = [
    'DEFAULT_FRAGMENT_SIZE',
    'Fragment',
    'FragmentSequence',
    'FragmentSpec',
    'Fragmenter',
    'SourceStream',
    'iterate_fragments',
    'split',
    'TransferManifest',
    'TransferReceipt',
    'DiskSpool',
    'FragmentStore',
    'MemorySpool',
    'StoreStats',
    'Reassembler',
    'combine',
    'generate_test_file',
    'BufferPool',
]
