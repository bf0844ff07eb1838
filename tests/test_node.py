"""Tests for the handshake with a remote node."""
import io
import logging
import os
import socket
import threading

import pytest

from btc_handshake.node import (
    HandshakeError,
    node_address_from_env,
    parse_node_address,
    perform_handshake,
    receive_version,
    send_version,
)
from btc_handshake.protocol import (
    MessageHeader,
    PacketError,
    ShortReadError,
    build_message,
    build_message_header,
    build_network_address,
    build_version_payload,
    read_message,
    serialize_header,
    serialize_version_payload,
)
from btc_handshake.constants import MAGIC_NUMBER, MAX_PAYLOAD_SIZE, NODE_ADDRESS_ENV


class FakeStream:
    """Duplex stream: reads come from `incoming`, writes go to `outgoing`."""

    def __init__(self, incoming=b''):
        self.incoming = io.BytesIO(incoming)
        self.outgoing = io.BytesIO()
        self.flushed = False

    def read(self, size):
        return self.incoming.read(size)

    def write(self, data):
        self.flushed = False
        return self.outgoing.write(data)

    def flush(self):
        self.flushed = True


def make_version(user_agent='/Satoshi:25.0.0/', nonce_byte=0x42):
    address = build_network_address(1, '10.0.0.1', 8333)
    return build_version_payload(
        addr_recv=address,
        addr_from=address,
        version=70016,
        services=1,
        timestamp=1700000000,
        user_agent=user_agent,
        start_height=812345,
        random_bytes=lambda n: bytes([nonce_byte]) * n,
    )


def version_message(payload):
    return build_message('version', serialize_version_payload(payload))


# Configuration

@pytest.mark.parametrize('value, expected', [
    ('127.0.0.1:8333', ('127.0.0.1', 8333)),
    ('seed.example.org:18333', ('seed.example.org', 18333)),
    ('seed.example.org', ('seed.example.org', 8333)),
    ('  10.0.0.5:9000\n', ('10.0.0.5', 9000)),
    ('[::1]:18444', ('::1', 18444)),
    ('[2001:db8::1]', ('2001:db8::1', 8333)),
    ('2001:db8::1', ('2001:db8::1', 8333)),
])
def test_parse_node_address(value, expected):
    """Host and port are split out, port defaults to 8333."""
    assert parse_node_address(value) == expected


@pytest.mark.parametrize('value', ['', '   ', 'host:abc', 'host:0', 'host:70000', '[::1'])
def test_parse_node_address_rejects_bad_values(value):
    """Malformed addresses raise HandshakeError."""
    with pytest.raises(HandshakeError):
        parse_node_address(value)


def test_node_address_from_env():
    """The node address is read from BTC_NODE_ADDRESS."""
    assert node_address_from_env({NODE_ADDRESS_ENV: 'node:8333'}) == ('node', 8333)


def test_node_address_from_env_missing():
    """A missing variable is reported clearly."""
    with pytest.raises(HandshakeError):
        node_address_from_env({})


# Sending and receiving

def test_send_version_writes_header_and_payload():
    """send_version writes a full message and flushes."""
    stream = FakeStream()
    payload = make_version()

    written = send_version(stream, payload)

    data = stream.outgoing.getvalue()
    assert written == len(data)
    assert stream.flushed

    header, parsed, raw = read_message(io.BytesIO(data))
    assert header.command_name() == 'version'
    assert parsed == payload


def test_receive_version():
    """A valid version message is decoded and returned."""
    theirs = make_version()
    stream = FakeStream(version_message(theirs))

    assert receive_version(stream) == theirs


def test_receive_version_bad_magic(caplog):
    """A wrong magic number is rejected and logged."""
    payload_bytes = serialize_version_payload(make_version())
    header = build_message_header('version', payload_bytes, magic=0x0709110B)
    stream = FakeStream(serialize_header(header) + payload_bytes)

    with caplog.at_level(logging.WARNING, logger='btc_handshake.node'):
        with pytest.raises(HandshakeError, match='Magic'):
            receive_version(stream)
    assert 'Bad magic' in caplog.text


def test_receive_version_wrong_command():
    """A message other than version is rejected."""
    stream = FakeStream(build_message('verack', b''))

    with pytest.raises(HandshakeError, match='Command'):
        receive_version(stream)


def test_receive_version_bad_checksum():
    """A payload whose checksum does not match the header is rejected."""
    data = bytearray(version_message(make_version()))
    data[-1] ^= 0xFF

    with pytest.raises(HandshakeError, match='Checksum'):
        receive_version(FakeStream(bytes(data)))


def test_receive_version_connection_closed():
    """A connection closing mid-message is an I/O error."""
    data = version_message(make_version())

    with pytest.raises(ShortReadError):
        receive_version(FakeStream(data[:10]))
    with pytest.raises(ShortReadError):
        receive_version(FakeStream(data[:-3]))


def test_receive_version_with_relay_flag():
    """Real nodes append a relay byte after start_height; it is accepted."""
    theirs = make_version()
    payload_bytes = serialize_version_payload(theirs) + b'\x01'
    stream = FakeStream(build_message('version', payload_bytes))

    assert receive_version(stream) == theirs


def test_receive_version_rejects_oversized_payload():
    """A version header announcing a huge payload is refused before reading it."""
    header = MessageHeader(MAGIC_NUMBER, b'version'.ljust(12, b'\x00'), MAX_PAYLOAD_SIZE + 1, 0)
    stream = FakeStream(serialize_header(header))

    with pytest.raises(PacketError, match='too large'):
        receive_version(stream)


# Over a real socket

def serve_one_handshake(server, reply, received):
    conn, _ = server.accept()
    with conn, conn.makefile('rwb') as stream:
        received.append(receive_version(stream))
        send_version(stream, reply)


def test_perform_handshake_over_tcp():
    """Both sides exchange and validate version messages over TCP."""
    reply = make_version(user_agent='/fake-node:1.0/')
    received = []

    with socket.create_server(('127.0.0.1', 0)) as server:
        port = server.getsockname()[1]
        thread = threading.Thread(target=serve_one_handshake, args=(server, reply, received))
        thread.start()
        try:
            theirs = perform_handshake('127.0.0.1', port, timeout=5.0, user_agent='/test/')
        finally:
            thread.join(timeout=5.0)

    assert theirs == reply
    assert theirs.user_agent == '/fake-node:1.0/'

    ours = received[0]
    assert ours.version == 60002
    assert ours.services == 0
    assert ours.user_agent == '/test/'
    assert str(ours.addr_recv.ip) == '127.0.0.1'
    assert ours.addr_from.port == 8333


def serve_echo_nonce(server):
    conn, _ = server.accept()
    with conn, conn.makefile('rwb') as stream:
        ours = receive_version(stream)
        echo = build_version_payload(
            addr_recv=ours.addr_from,
            addr_from=ours.addr_recv,
            random_bytes=lambda n: ours.nonce.to_bytes(n, 'little'),
        )
        send_version(stream, echo)


def test_perform_handshake_detects_self_connection():
    """A reply carrying our own nonce means we connected to ourselves."""
    with socket.create_server(('127.0.0.1', 0)) as server:
        port = server.getsockname()[1]
        thread = threading.Thread(target=serve_echo_nonce, args=(server,))
        thread.start()
        try:
            with pytest.raises(HandshakeError, match='ourselves'):
                perform_handshake('127.0.0.1', port, timeout=5.0)
        finally:
            thread.join(timeout=5.0)


@pytest.mark.skipif(NODE_ADDRESS_ENV not in os.environ, reason=f"{NODE_ADDRESS_ENV} is not set")
def test_handshake_with_live_node():
    """Handshake with the node named in BTC_NODE_ADDRESS."""
    host, port = node_address_from_env()
    theirs = perform_handshake(host, port)
    assert theirs.version > 0
