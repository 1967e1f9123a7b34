"""Tests for the fragment transfer protocol, storage node and TCP client.

Integration tests open local sockets on an ephemeral port.
"""

import asyncio
import json
import logging
import struct

import pytest
import pytest_asyncio

from fragxfer.errors import InsufficientFunds, NetworkFailure, NotFound, ProofInvalid, Timeout
from fragxfer.integrity.fingerprint import Fingerprint
from fragxfer.transfer.client import TcpStorageClient, UploadOptions
from fragxfer.transfer.protocol import (
    MAX_MESSAGE_SIZE, ProtocolError, TransferMessage, TransferMessageType, TransferServer,
    connect_to_node,
)
from fragxfer.transfer.retry import Deadline
from fragxfer.transfer.server import StorageNode


def reader_for(raw: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(raw)
    reader.feed_eof()
    return reader


class TestFraming:
    """Tests for message encoding on the wire."""

    def test_layout(self):
        message = TransferMessage(TransferMessageType.PING, {'k': 'v'}, b"xyz")
        raw = message.to_bytes()

        total, header_length = struct.unpack('>II', raw[:8])
        header = json.loads(raw[8:8 + header_length])

        assert total == header_length + 3
        assert header == {'type': 'PING', 'data_length': 3, 'k': 'v'}
        assert raw[8 + header_length:] == b"xyz"

    @pytest.mark.asyncio
    async def test_decode(self):
        message = TransferMessage(TransferMessageType.STORE_FRAGMENT,
                                  {'options': {'replica_count': 2}}, b"payload")
        decoded = await TransferMessage.from_reader(reader_for(message.to_bytes()))
        assert decoded == message

    @pytest.mark.asyncio
    async def test_clean_eof(self):
        assert await TransferMessage.from_reader(reader_for(b"")) is None

    @pytest.mark.asyncio
    async def test_truncated_message(self):
        raw = TransferMessage(TransferMessageType.PING, data=b"abc").to_bytes()
        with pytest.raises(ProtocolError):
            await TransferMessage.from_reader(reader_for(raw[:-1]))

    @pytest.mark.asyncio
    async def test_oversized_message(self):
        raw = struct.pack('>II', MAX_MESSAGE_SIZE + 1, 2) + b"{}"
        with pytest.raises(ProtocolError):
            await TransferMessage.from_reader(reader_for(raw))

    @pytest.mark.asyncio
    async def test_unknown_type(self):
        header = json.dumps({'type': 'NOPE'}).encode()
        raw = struct.pack('>II', len(header), len(header)) + header
        with pytest.raises(ProtocolError):
            await TransferMessage.from_reader(reader_for(raw))


@pytest_asyncio.fixture
async def node(tmp_path):
    node = StorageNode(tmp_path / "node", host='127.0.0.1', port=0, capacity=1000)
    await node.start()
    yield node
    await node.stop()


@pytest_asyncio.fixture
async def client(node):
    client = TcpStorageClient('127.0.0.1', node.port)
    yield client
    await client.close()


@pytest.mark.integration
class TestTcpStorage:
    """Tests for TcpStorageClient against a live StorageNode."""

    @pytest.mark.asyncio
    async def test_upload_and_download(self, node, client):
        handle = await client.upload(b"fragment bytes", UploadOptions())

        assert handle.confirmed
        assert handle.transaction_id
        assert handle.fingerprint == node.oracle.fingerprint(b"fragment bytes")
        assert await client.download(handle.fingerprint, verify_proof=True) == b"fragment bytes"

        stats = await node.get_stats()
        assert stats['fragments_received'] == 1
        assert stats['fragments_served'] == 1
        assert stats['stored_bytes'] == len(b"fragment bytes")

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        with pytest.raises(NotFound):
            await client.download(Fingerprint(b"\x00" * 32), verify_proof=True)

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, client):
        await client.upload(b"x" * 800, UploadOptions())
        with pytest.raises(InsufficientFunds):
            await client.upload(b"y" * 800, UploadOptions())

    @pytest.mark.asyncio
    async def test_proof_invalid(self, node, client):
        handle = await client.upload(b"original", UploadOptions())
        fp = handle.fingerprint
        (node.store.fragments_dir / fp.hex[2:4] / fp.hex).write_bytes(b"tampered")

        with pytest.raises(ProofInvalid):
            await client.download(fp, verify_proof=True)
        assert await client.download(fp, verify_proof=False) == b"tampered"

    @pytest.mark.asyncio
    async def test_ping(self, client):
        assert await client.ping()

    @pytest.mark.asyncio
    async def test_reconnects_after_close(self, client):
        await client.ping()
        await client.close()
        assert await client.ping()

    @pytest.mark.asyncio
    async def test_expired_deadline(self, client):
        deadline = Deadline(expires_at=0.0)
        with pytest.raises(Timeout):
            await client.upload(b"late", UploadOptions(), deadline)

    @pytest.mark.asyncio
    async def test_unsupported_message(self, node):
        protocol = await connect_to_node('127.0.0.1', node.port)
        try:
            response = await protocol.request(TransferMessage(TransferMessageType.PONG))
        finally:
            await protocol.close()

        assert response.type == TransferMessageType.ERROR
        assert response.headers['code'] == 'bad_request'

    @pytest.mark.asyncio
    async def test_non_string_fingerprint_rejected(self, node):
        protocol = await connect_to_node('127.0.0.1', node.port)
        try:
            response = await protocol.request(TransferMessage(
                TransferMessageType.REQUEST_FRAGMENT,
                {'fingerprint': 12345, 'verify_proof': True},
            ))
            still_open = await protocol.ping()
        finally:
            await protocol.close()

        assert response.type == TransferMessageType.ERROR
        assert response.headers['code'] == 'bad_request'
        assert still_open

    @pytest.mark.asyncio
    async def test_connection_refused(self, tmp_path):
        node = StorageNode(tmp_path / "gone", host='127.0.0.1', port=0)
        await node.start()
        port = node.port
        await node.stop()

        client = TcpStorageClient('127.0.0.1', port, connect_timeout=1.0)
        with pytest.raises(NetworkFailure):
            await client.ping()


@pytest.mark.integration
class TestTransferServer:

    @pytest.mark.asyncio
    async def test_handler_error_logged_and_connection_dropped(self, caplog):
        server = TransferServer(host='127.0.0.1', port=0)

        @server.on_request(TransferMessageType.PING)
        async def broken(message, protocol):
            raise RuntimeError("handler blew up")

        await server.start()
        try:
            protocol = await connect_to_node('127.0.0.1', server.bound_port)
            with caplog.at_level(logging.ERROR, logger='fragxfer.transfer.protocol'):
                with pytest.raises(NetworkFailure):
                    await protocol.ping()
                await asyncio.sleep(0.05)
        finally:
            await server.stop()

        assert "handler blew up" in caplog.text


@pytest_asyncio.fixture
async def slow_server():
    """A transfer server whose STORE_FRAGMENT replies are delayed per payload."""
    server = TransferServer(host='127.0.0.1', port=0)
    delays = {b"slow": 0.5}

    @server.on_request(TransferMessageType.STORE_FRAGMENT)
    async def store(message, protocol):
        await asyncio.sleep(delays.get(message.data, 0))
        await protocol.send(TransferMessage(
            TransferMessageType.STORE_ACK,
            {'transaction_id': message.data.decode(), 'confirmed': True},
        ))

    await server.start()
    yield server
    await server.stop()


@pytest.mark.integration
class TestSharedConnection:
    """Timeouts on one exchange must not break others sharing the connection."""

    @pytest.mark.asyncio
    async def test_timeout_while_queued_leaves_connection_open(self, slow_server):
        client = TcpStorageClient('127.0.0.1', slow_server.bound_port)
        try:
            holder = asyncio.create_task(client.upload(b"slow", UploadOptions()))
            await asyncio.sleep(0.1)

            with pytest.raises(Timeout):
                await client.upload(b"queued", UploadOptions(), Deadline.after(0.1))

            handle = await holder
        finally:
            await client.close()

        assert handle.transaction_id == "slow"

    @pytest.mark.asyncio
    async def test_queued_request_survives_timeout_on_the_wire(self, slow_server):
        client = TcpStorageClient('127.0.0.1', slow_server.bound_port)
        try:
            timed_out = asyncio.create_task(
                client.upload(b"slow", UploadOptions(), Deadline.after(0.2))
            )
            await asyncio.sleep(0.05)
            queued = asyncio.create_task(client.upload(b"fast", UploadOptions()))

            with pytest.raises(Timeout):
                await timed_out
            handle = await asyncio.wait_for(queued, timeout=5)
        finally:
            await client.close()

        assert handle.transaction_id == "fast"
