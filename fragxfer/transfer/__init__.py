"""
Transfer Module - Fragment Upload/Download

Coordinates uploads and downloads against a storage client, and serves
fragments from a storage node over TCP.
"""

from .protocol import TransferProtocol, TransferServer
from .client import (
    FinalityMode,
    LocalStorageClient,
    StorageClient,
    TcpStorageClient,
    TransactionHandle,
    UploadOptions,
)
from .retry import AttemptOutcome, Deadline, RetryPolicy
from .progress import TransferProgress
from .uploader import UploadCoordinator
from .downloader import DownloadCoordinator
from .server import StorageNode

__all__ = [
    'TransferProtocol',
    'TransferServer',
    'FinalityMode',
    'LocalStorageClient',
    'StorageClient',
    'TcpStorageClient',
    'TransactionHandle',
    'UploadOptions',
    'AttemptOutcome',
    'Deadline',
    'RetryPolicy',
    'TransferProgress',
    'UploadCoordinator',
    'DownloadCoordinator',
    'StorageNode',
]
