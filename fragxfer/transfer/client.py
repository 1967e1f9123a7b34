"""
Storage Clients

The upload and download coordinators talk to the storage network only
through the StorageClient interface. Two implementations ship:

- LocalStorageClient: stores fragments in an in-process FragmentStore.
  Used for single-machine runs and tests.
- TcpStorageClient: talks to a StorageNode over the fragment transfer
  protocol.

Every call accepts an optional Deadline; clients bound their network
waits by it and raise Timeout when it expires.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Optional, Union

from ..errors import (
    InsufficientFunds, NetworkFailure, NotFound, ProofInvalid, Timeout,
    TransferError,
)
from ..file.storage import FragmentStore
from ..integrity.fingerprint import Fingerprint
from .protocol import (
    ConnectionClosed, ErrorCode, TransferMessage, TransferMessageType,
    TransferProtocol, connect_to_node,
)
from .retry import Deadline

logger = logging.getLogger(__name__)

Payload = Union[bytes, bytearray, memoryview]


class FinalityMode(Enum):
    """How strongly the network must confirm an upload before returning."""
    PACKED = "packed"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class UploadOptions:
    """Options forwarded verbatim to the storage network on upload."""
    replica_count: int = 1
    method: str = "min-price"
    trusted_nodes_only: bool = False
    finality_mode: FinalityMode = FinalityMode.FINALIZED
    retries: int = 3

    def __post_init__(self):
        if self.replica_count < 1:
            raise ValueError(f"replica_count must be >= 1, got {self.replica_count}")
        if self.retries < 0:
            raise ValueError(f"retries must be >= 0, got {self.retries}")

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['finality_mode'] = self.finality_mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'UploadOptions':
        data = dict(data)
        if 'finality_mode' in data:
            data['finality_mode'] = FinalityMode(data['finality_mode'])
        return cls(**data)


@dataclass(frozen=True)
class TransactionHandle:
    """The network's acknowledgement of one stored fragment."""
    transaction_id: str
    confirmed: bool = True
    fingerprint: Optional[Fingerprint] = None


class StorageClient(ABC):
    """Upload and download of opaque byte fragments."""

    @abstractmethod
    async def upload(self, data: Payload, options: UploadOptions,
                     deadline: Optional[Deadline] = None) -> TransactionHandle:
        """
        Store a fragment.

        Raises:
            NetworkFailure, InsufficientFunds, Timeout
        """

    @abstractmethod
    async def download(self, fingerprint: Fingerprint, verify_proof: bool,
                       deadline: Optional[Deadline] = None) -> bytes:
        """
        Retrieve a fragment by fingerprint.

        Raises:
            NetworkFailure, ProofInvalid, NotFound, Timeout
        """

    async def close(self):
        """Release any held connections."""


async def _bounded(awaitable, deadline: Optional[Deadline], what: str):
    """Await under a deadline, mapping expiry to Timeout."""
    remaining = deadline.remaining() if deadline is not None else None
    if remaining is not None and remaining <= 0:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise Timeout(f"{what}: deadline already expired")
    try:
        return await asyncio.wait_for(awaitable, timeout=remaining)
    except asyncio.TimeoutError as e:
        raise Timeout(f"{what}: deadline expired", cause=e)


class LocalStorageClient(StorageClient):
    """
    StorageClient backed by a local FragmentStore.

    Example:
        store = FragmentStore(Path("./data"), MerkleOracle())
        client = LocalStorageClient(store)
        handle = await client.upload(b"...", UploadOptions())
    """

    def __init__(self, store: FragmentStore):
        self.store = store

    async def upload(self, data: Payload, options: UploadOptions,
                     deadline: Optional[Deadline] = None) -> TransactionHandle:
        fingerprint = await _bounded(
            self.store.store(bytes(data)), deadline, "Local upload"
        )
        return TransactionHandle(
            transaction_id=uuid.uuid4().hex,
            confirmed=True,
            fingerprint=fingerprint,
        )

    async def download(self, fingerprint: Fingerprint, verify_proof: bool,
                       deadline: Optional[Deadline] = None) -> bytes:
        data = await _bounded(
            self.store.get(fingerprint), deadline, "Local download"
        )
        if data is None:
            raise NotFound(f"Fragment {fingerprint.short()} not found")

        if verify_proof and self.store.oracle.fingerprint(data) != fingerprint:
            raise ProofInvalid(
                f"Stored data for {fingerprint.short()} does not match its fingerprint"
            )
        return data


class TcpStorageClient(StorageClient):
    """
    StorageClient that talks to a StorageNode.

    Keeps one connection open and reconnects after a transport failure.
    Requests on the connection are serialized by the protocol's lock. A
    request that times out while waiting for the lock leaves the connection
    alone; one that times out on the wire resets it.
    """

    def __init__(self, host: str, port: int, connect_timeout: float = 10.0):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self._protocol: Optional[TransferProtocol] = None
        self._connect_lock = asyncio.Lock()

    async def _connection(self) -> TransferProtocol:
        async with self._connect_lock:
            if self._protocol is None or self._protocol.closed:
                self._protocol = await connect_to_node(
                    self.host, self.port, timeout=self.connect_timeout
                )
                logger.debug(f"Connected to storage node {self.host}:{self.port}")
            return self._protocol

    async def _exchange(self, send, deadline: Optional[Deadline], what: str):
        async def exchange():
            protocol = await self._connection()
            try:
                return await send(protocol)
            except ConnectionClosed:
                # Another exchange was abandoned mid-frame while this one
                # was queued; it never reached the wire
                logger.debug(f"{what}: reconnecting to {self.host}:{self.port}")
                protocol = await self._connection()
                try:
                    return await send(protocol)
                except ConnectionClosed as e:
                    raise NetworkFailure(f"{what}: connection closed", cause=e)

        return await _bounded(exchange(), deadline, what)

    async def upload(self, data: Payload, options: UploadOptions,
                     deadline: Optional[Deadline] = None) -> TransactionHandle:
        response = await self._exchange(
            lambda p: p.store_fragment(bytes(data), options.to_dict()),
            deadline, "Upload",
        )

        if response.type == TransferMessageType.STORE_ACK:
            fp = response.headers.get('fingerprint')
            return TransactionHandle(
                transaction_id=response.headers['transaction_id'],
                confirmed=bool(response.headers.get('confirmed', True)),
                fingerprint=Fingerprint.from_hex(fp) if fp else None,
            )

        raise self._error_for(response, "Upload")

    async def download(self, fingerprint: Fingerprint, verify_proof: bool,
                       deadline: Optional[Deadline] = None) -> bytes:
        response = await self._exchange(
            lambda p: p.request_fragment(fingerprint.hex, verify_proof),
            deadline, "Download",
        )

        if response.type == TransferMessageType.FRAGMENT_DATA:
            return response.data
        if response.type == TransferMessageType.FRAGMENT_NOT_FOUND:
            raise NotFound(f"Fragment {fingerprint.short()} not found on node")

        raise self._error_for(response, "Download")

    async def ping(self, deadline: Optional[Deadline] = None) -> bool:
        return await self._exchange(lambda p: p.ping(), deadline, "Ping")

    async def close(self):
        if self._protocol is not None:
            await self._protocol.close()
            self._protocol = None

    @staticmethod
    def _error_for(response: TransferMessage, what: str) -> TransferError:
        if response.type != TransferMessageType.ERROR:
            return NetworkFailure(f"{what}: unexpected reply {response.type.value}")

        code = response.headers.get('code')
        detail = response.headers.get('detail', '')
        if code == ErrorCode.QUOTA_EXCEEDED:
            return InsufficientFunds(f"{what} refused: {detail}")
        if code == ErrorCode.PROOF_INVALID:
            return ProofInvalid(f"{what}: {detail}")
        return NetworkFailure(f"{what} failed ({code}): {detail}")
