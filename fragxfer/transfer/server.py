"""
Storage Node

Serves a FragmentStore over the fragment transfer protocol: accepts
STORE_FRAGMENT requests, answers REQUEST_FRAGMENT with the stored bytes,
and replies to PING.
"""

import logging
import uuid
from pathlib import Path
from typing import Optional

from ..errors import InsufficientFunds, IOFailure
from ..file.storage import FragmentStore
from ..integrity.fingerprint import Fingerprint, FingerprintOracle, MerkleOracle
from .protocol import (
    ErrorCode, TransferMessage, TransferMessageType, TransferProtocol,
    TransferServer,
)

logger = logging.getLogger(__name__)


class StorageNode:
    """
    A storage node holding fragments in a content-addressed store.

    Example:
        node = StorageNode(Path("./node-data"), port=8469)
        await node.start()
        ...
        await node.stop()
    """

    def __init__(self, data_dir: Path, host: str = '0.0.0.0', port: int = 8469,
                 capacity: Optional[int] = None,
                 oracle: Optional[FingerprintOracle] = None):
        self.oracle = oracle or MerkleOracle()
        self.store = FragmentStore(Path(data_dir), self.oracle, capacity=capacity)
        self.server = TransferServer(host=host, port=port)
        self.host = host

        # Statistics
        self.fragments_received = 0
        self.fragments_served = 0
        self.bytes_received = 0
        self.bytes_served = 0

        self._running = False
        self._setup_handlers()

    @property
    def port(self) -> int:
        return self.server.bound_port or self.server.port

    @property
    def is_running(self) -> bool:
        return self._running

    def _setup_handlers(self):
        """Route store, fetch and ping frames to this node."""
        self.server.set_handler(
            TransferMessageType.STORE_FRAGMENT,
            self._handle_store
        )
        self.server.set_handler(
            TransferMessageType.REQUEST_FRAGMENT,
            self._handle_fragment_request
        )
        self.server.set_handler(
            TransferMessageType.PING,
            self._handle_ping
        )

    async def start(self):
        """Start the node's transfer server."""
        await self.server.start()
        self._running = True
        logger.info(f"Storage node started on port {self.port}")

    async def stop(self):
        """Stop the node."""
        await self.server.stop()
        self._running = False
        logger.info(f"Storage node stopped. Received {self.fragments_received} fragments, "
                    f"served {self.fragments_served} ({self.bytes_served:,} bytes)")

    async def _handle_store(self, message: TransferMessage,
                            protocol: TransferProtocol):
        """Handle a fragment upload."""
        try:
            fingerprint = await self.store.store(message.data)
        except InsufficientFunds as e:
            await protocol.send_error(ErrorCode.QUOTA_EXCEEDED, str(e))
            return
        except IOFailure as e:
            logger.error(f"Failed to store fragment: {e}")
            await protocol.send_error(ErrorCode.INTERNAL, str(e))
            return

        self.fragments_received += 1
        self.bytes_received += len(message.data)

        options = message.headers.get('options')
        if not isinstance(options, dict):
            options = {}
        await protocol.send(TransferMessage(
            type=TransferMessageType.STORE_ACK,
            headers={
                'fingerprint': fingerprint.hex,
                'transaction_id': uuid.uuid4().hex,
                'confirmed': True,
                'finality_mode': options.get('finality_mode'),
            },
        ))
        logger.debug(f"Stored fragment {fingerprint.short()} ({len(message.data):,} bytes)")

    async def _handle_fragment_request(self, message: TransferMessage,
                                       protocol: TransferProtocol):
        """Handle a fragment request."""
        fp_hex = message.headers.get('fingerprint')
        try:
            if not isinstance(fp_hex, str):
                raise ValueError(fp_hex)
            fingerprint = Fingerprint.from_hex(fp_hex)
        except ValueError:
            await protocol.send_error(ErrorCode.BAD_REQUEST, f"Invalid fingerprint: {fp_hex!r}")
            return

        data = await self.store.get(fingerprint)
        if data is None:
            await protocol.send(TransferMessage(
                type=TransferMessageType.FRAGMENT_NOT_FOUND,
                headers={'fingerprint': fingerprint.hex},
            ))
            logger.debug(f"Fragment not found: {fingerprint.short()}")
            return

        if message.headers.get('verify_proof') and self.oracle.fingerprint(data) != fingerprint:
            await protocol.send_error(
                ErrorCode.PROOF_INVALID,
                f"Stored data for {fingerprint.short()} failed its proof",
            )
            return

        await protocol.send(TransferMessage(
            type=TransferMessageType.FRAGMENT_DATA,
            headers={'fingerprint': fingerprint.hex},
            data=data,
        ))
        self.fragments_served += 1
        self.bytes_served += len(data)
        logger.debug(f"Served fragment {fingerprint.short()} ({len(data):,} bytes)")

    async def _handle_ping(self, message: TransferMessage,
                           protocol: TransferProtocol):
        """Answer PING with PONG."""
        await protocol.send(TransferMessage(type=TransferMessageType.PONG))

    async def get_stats(self) -> dict:
        """Transfer counters merged with the store statistics."""
        store_stats = await self.store.get_stats()
        return {
            'running': self._running,
            'host': self.host,
            'port': self.port,
            'fragments_received': self.fragments_received,
            'fragments_served': self.fragments_served,
            'bytes_received': self.bytes_received,
            'bytes_served': self.bytes_served,
            'stored_fragments': store_stats.total_fragments,
            'stored_bytes': store_stats.total_bytes,
            'capacity': store_stats.capacity,
        }
