"""
fragxfer - Fragmented Large-File Transfer

Splits a large file into fixed-size fragments, uploads each fragment to a
content-addressed storage network with per-fragment retry, downloads them
back, cross-checks their fingerprints and reassembles the original bytes.
"""

__version__ = '1.0.0'

from .errors import TransferError
from .pipeline import PipelineDriver, PipelineFailure, PipelineResult, Stage, State

__all__ = [
    '__version__',
    'TransferError',
    'PipelineDriver',
    'PipelineFailure',
    'PipelineResult',
    'Stage',
    'State',
]
