"""
Fragment Transfer Protocol

Design Decision: Wire Format
============================

Options Considered:
1. HTTP uploads to the node
   - Ubiquitous tooling
   - Streaming multi-hundred-MB bodies needs care on both ends

2. Length-prefixed frames over a plain TCP stream
   - One small codec, no extra dependency
   - Framing is our responsibility

3. gRPC streaming
   - Typed messages
   - Code generation and a heavy runtime

Decision: Length-prefixed frames
- Every frame is two big-endian u32 values followed by a JSON header and
  an opaque payload
- The header always names the message `type`; everything else in it is
  message specific
- A connection carries one request/response exchange at a time

Frame Layout:
```
 0        4        8                 8 + hdr_len
 +--------+--------+-----------------+---------------------+
 | total  | hdr_len| header (JSON)   | payload (bytes)     |
 +--------+--------+-----------------+---------------------+
 total = hdr_len + len(payload), at most 512MB
```

Exchanges:
- STORE_FRAGMENT(payload, options) -> STORE_ACK{fingerprint, transaction_id} | ERROR{code}
- REQUEST_FRAGMENT{fingerprint, verify_proof} -> FRAGMENT_DATA | FRAGMENT_NOT_FOUND | ERROR{code}
- PING -> PONG
"""

import asyncio
import json
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..errors import NetworkFailure

logger = logging.getLogger(__name__)

# Largest accepted frame body: 512MB
MAX_MESSAGE_SIZE = 512 * 1024 * 1024

# total length, header length
_PREFIX = struct.Struct('>II')


class TransferMessageType(Enum):
    # Upload
    STORE_FRAGMENT = "STORE_FRAGMENT"
    STORE_ACK = "STORE_ACK"

    # Download
    REQUEST_FRAGMENT = "REQUEST_FRAGMENT"
    FRAGMENT_DATA = "FRAGMENT_DATA"
    FRAGMENT_NOT_FOUND = "FRAGMENT_NOT_FOUND"

    # Control
    ERROR = "ERROR"
    PING = "PING"
    PONG = "PONG"


class ErrorCode:
    """Values of the `code` header on ERROR messages."""
    QUOTA_EXCEEDED = "quota_exceeded"
    PROOF_INVALID = "proof_invalid"
    BAD_REQUEST = "bad_request"
    INTERNAL = "internal"


class ProtocolError(Exception):
    """Malformed frame on the wire."""


class ConnectionClosed(ConnectionError):
    """The connection closed while a request waited its turn; nothing was sent."""


@dataclass
class TransferMessage:
    """One frame: a typed JSON header plus an optional payload."""
    type: TransferMessageType
    headers: Dict[str, Any] = field(default_factory=dict)
    data: bytes = b''

    def to_bytes(self) -> bytes:
        """Encode as a complete frame."""
        header = json.dumps({
            'type': self.type.value,
            'data_length': len(self.data),
            **self.headers,
        }).encode('utf-8')

        body_length = len(header) + len(self.data)
        if body_length > MAX_MESSAGE_SIZE:
            raise ProtocolError(
                f"{self.type.value} frame of {body_length:,} bytes exceeds the limit"
            )
        return b''.join((_PREFIX.pack(body_length, len(header)), header, bytes(self.data)))

    @classmethod
    async def from_reader(cls, reader: asyncio.StreamReader) -> Optional['TransferMessage']:
        """
        Decode the next frame from a stream.

        Returns:
            The message, or None if the stream ended cleanly between frames

        Raises:
            ProtocolError: the bytes on the wire are not a valid frame
        """
        try:
            prefix = await reader.readexactly(_PREFIX.size)
        except asyncio.IncompleteReadError as e:
            if not e.partial:
                return None
            raise ProtocolError("Stream ended inside a frame prefix")

        body_length, header_length = _PREFIX.unpack(prefix)
        if body_length > MAX_MESSAGE_SIZE:
            raise ProtocolError(f"Frame of {body_length:,} bytes exceeds the limit")
        if header_length > body_length:
            raise ProtocolError(
                f"Header length {header_length} exceeds frame length {body_length}"
            )

        try:
            body = await reader.readexactly(body_length)
        except asyncio.IncompleteReadError:
            raise ProtocolError("Stream ended inside a frame")

        try:
            header = json.loads(body[:header_length].decode('utf-8'))
            msg_type = TransferMessageType(header.pop('type'))
        except (ValueError, KeyError, AttributeError, TypeError) as e:
            raise ProtocolError(f"Invalid frame header: {e}")
        header.pop('data_length', None)

        return cls(type=msg_type, headers=header, data=body[header_length:])


class TransferProtocol:
    """
    One side of a transfer connection.

    request() holds a lock for the whole send/receive exchange, so
    concurrent callers sharing a connection never interleave frames.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_address(self) -> Tuple[str, int]:
        return self.writer.get_extra_info('peername')

    async def send(self, message: TransferMessage):
        if self._closed:
            raise ConnectionError("Connection closed")
        self.writer.write(message.to_bytes())
        await self.writer.drain()

    async def receive(self) -> Optional[TransferMessage]:
        if self._closed:
            return None
        return await TransferMessage.from_reader(self.reader)

    async def request(self, message: TransferMessage) -> TransferMessage:
        """
        Send a request and wait for its response.

        Cancelling a request that is on the wire aborts the connection;
        requests still queued behind it then raise ConnectionClosed.

        Raises:
            ConnectionClosed: the connection was closed before this request
                              got its turn
            NetworkFailure: the connection failed or closed before a response
        """
        async with self._lock:
            if self._closed:
                raise ConnectionClosed(f"Connection closed before {message.type.value} was sent")
            try:
                await self.send(message)
                response = await self.receive()
            except asyncio.CancelledError:
                # The stream is now out of step with the peer
                self.abort()
                raise
            except (ConnectionError, OSError, ProtocolError) as e:
                await self.close()
                raise NetworkFailure(f"{message.type.value} failed: {e}", cause=e)

            if response is None:
                await self.close()
                raise NetworkFailure(f"Connection closed awaiting reply to {message.type.value}")

            return response

    def abort(self):
        """Close without waiting for the transport to drain."""
        if not self._closed:
            self._closed = True
            self.writer.close()

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    # === Requests ===

    async def store_fragment(self, data: bytes, options: Dict[str, Any]) -> TransferMessage:
        """Ask the node to store a fragment."""
        return await self.request(TransferMessage(
            type=TransferMessageType.STORE_FRAGMENT,
            headers={'options': options},
            data=data,
        ))

    async def request_fragment(self, fingerprint: str, verify_proof: bool) -> TransferMessage:
        """Ask the node for a fragment by fingerprint."""
        return await self.request(TransferMessage(
            type=TransferMessageType.REQUEST_FRAGMENT,
            headers={'fingerprint': fingerprint, 'verify_proof': verify_proof},
        ))

    async def ping(self) -> bool:
        response = await self.request(TransferMessage(type=TransferMessageType.PING))
        return response.type == TransferMessageType.PONG

    async def send_error(self, code: str, detail: str):
        await self.send(TransferMessage(
            type=TransferMessageType.ERROR,
            headers={'code': code, 'detail': detail},
        ))


RequestHandler = Callable[[TransferMessage, TransferProtocol], Awaitable[None]]


class TransferServer:
    """
    Accepts transfer connections and dispatches each incoming frame to the
    handler registered for its type.
    """

    def __init__(self, host: str = '0.0.0.0', port: int = 8469):
        self.host = host
        self.port = port
        self.server: Optional[asyncio.AbstractServer] = None
        self._handlers: Dict[TransferMessageType, RequestHandler] = {}
        self._running = False

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when started on port 0)."""
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    def on_request(self, msg_type: TransferMessageType):
        """Register the decorated coroutine as the handler for msg_type."""
        def register(handler: RequestHandler):
            self.set_handler(msg_type, handler)
            return handler
        return register

    def set_handler(self, msg_type: TransferMessageType, handler: RequestHandler):
        self._handlers[msg_type] = handler

    async def start(self):
        self.server = await asyncio.start_server(self._serve_connection, self.host, self.port)
        self._running = True
        logger.info(f"Transfer server listening on {self.host}:{self.bound_port}")

    async def stop(self):
        self._running = False
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            logger.info(f"Transfer server on port {self.port} stopped")

    async def _serve_connection(self, reader: asyncio.StreamReader,
                                writer: asyncio.StreamWriter):
        protocol = TransferProtocol(reader, writer)
        remote = protocol.remote_address
        logger.debug(f"Accepted transfer connection from {remote}")

        try:
            while self._running:
                message = await protocol.receive()
                if message is None:
                    break
                await self._dispatch(message, protocol)
        except (ConnectionError, ProtocolError) as e:
            logger.error(f"Dropping connection from {remote}: {e}")
        except Exception as e:
            logger.exception(f"Handler failed on connection from {remote}: {e!r}")
        finally:
            await protocol.close()
            logger.debug(f"Transfer connection from {remote} closed")

    async def _dispatch(self, message: TransferMessage, protocol: TransferProtocol):
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning(f"Rejecting unsupported {message.type.value} request")
            await protocol.send_error(
                ErrorCode.BAD_REQUEST, f"Unsupported message {message.type.value}"
            )
            return
        await handler(message, protocol)


async def connect_to_node(host: str, port: int,
                          timeout: float = 10.0) -> TransferProtocol:
    """
    Open a connection to a storage node's transfer server.

    Raises:
        NetworkFailure: the connection could not be established
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout,
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise NetworkFailure(f"Failed to connect to {host}:{port}: {e!r}", cause=e)
    return TransferProtocol(reader, writer)
