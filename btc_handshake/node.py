"""
Handshake with a remote node over TCP.

Sends our version message, waits for the node's version message and
validates it. The codec in protocol.py does the byte work; this module
decides what to send and when, and checks what comes back.
"""

import logging
import os
import socket

from btc_handshake.constants import (
    COMMAND_VERSION,
    DEFAULT_ADDRESS,
    DEFAULT_PORT,
    DEFAULT_SERVICES,
    MAGIC_NUMBER,
    NODE_ADDRESS_ENV,
    PROTOCOL_VERSION,
)
from btc_handshake.crypto import checksum
from btc_handshake.protocol import (
    build_message,
    build_network_address,
    build_version_payload,
    decode_version_payload,
    read_header,
    read_payload,
    serialize_version_payload,
)

logger = logging.getLogger(__name__)


class HandshakeError(Exception):
    """Raised when the remote node answers with an unexpected message."""
    pass


def parse_node_address(value):
    """
    Split "host:port" into (host, port).

    Accepts "host", "host:port" and "[ipv6]:port". A missing port
    defaults to 8333.

    Raises:
        HandshakeError: If the value is empty or the port is invalid
    """
    value = value.strip()
    if not value:
        raise HandshakeError("Node address is empty")

    if value.startswith('['):
        host, sep, rest = value[1:].partition(']')
        if not sep:
            raise HandshakeError(f"Unterminated IPv6 address: {value!r}")
        port = rest[1:] if rest.startswith(':') else ''
    elif value.count(':') == 1:
        host, _, port = value.partition(':')
    else:
        # Bare hostname, IPv4 address or unbracketed IPv6 address
        host, port = value, ''

    if not port:
        return host, DEFAULT_PORT
    if not port.isdigit() or not (0 < int(port) <= 0xFFFF):
        raise HandshakeError(f"Invalid port in node address: {value!r}")
    return host, int(port)


def node_address_from_env(environ=None):
    """Read the node to connect to from BTC_NODE_ADDRESS."""
    environ = os.environ if environ is None else environ
    value = environ.get(NODE_ADDRESS_ENV)
    if value is None:
        raise HandshakeError(f"Environment variable {NODE_ADDRESS_ENV} is not set")
    return parse_node_address(value)


def send_version(stream, payload):
    """
    Write a version message (header + payload) to the stream and flush.

    Returns:
        int: Number of bytes written
    """
    message = build_message(COMMAND_VERSION, serialize_version_payload(payload))
    stream.write(message)
    stream.flush()
    logger.debug(f"-> version ({len(message)} bytes, nonce {payload.nonce:#x})")
    return len(message)


def receive_version(stream, magic=MAGIC_NUMBER):
    """
    Read the remote node's version message and validate it.

    The magic number is checked before the length field is trusted,
    and the command and checksum before the payload is decoded.

    Returns:
        VersionPayload: The remote node's version payload

    Raises:
        HandshakeError: Wrong magic number, command or checksum
        PacketError: Malformed or oversized message
        ShortReadError: Connection closed early
    """
    header = read_header(stream)

    if header.magic != magic:
        logger.warning(f"Bad magic number {header.magic:#010x}")
        raise HandshakeError(
            f"Magic number is not correct: {header.magic:#010x} "
            f"(expected {magic:#010x})"
        )

    command = header.command_name()
    logger.debug(f"<- {command} ({header.length} bytes)")
    if command != COMMAND_VERSION:
        logger.warning(f"Unexpected command {command!r}")
        raise HandshakeError(f"Command is not correct: {command!r}")

    payload_bytes = read_payload(stream, header)

    calculated = checksum(payload_bytes)
    if calculated != header.checksum:
        logger.warning("Checksum mismatch on version payload")
        raise HandshakeError(
            f"Checksums don't match: {header.checksum:#010x} "
            f"(calculated {calculated:#010x})"
        )

    return decode_version_payload(payload_bytes)


def perform_handshake(host, port=DEFAULT_PORT, timeout=10.0, user_agent='', start_height=0):
    """
    Connect to a node and exchange version messages.

    Args:
        host (str): Node hostname or IP address
        port (int): Node port
        timeout (float): Socket timeout for connect and every read, in seconds
        user_agent (str): Our user agent
        start_height (int): Our best block height

    Returns:
        VersionPayload: The version payload the node sent back
    """
    logger.info(f"Connecting to {host}:{port}...")

    with socket.create_connection((host, port), timeout=timeout) as sock:
        address = build_network_address(DEFAULT_SERVICES, DEFAULT_ADDRESS, DEFAULT_PORT)
        ours = build_version_payload(
            addr_recv=address,
            addr_from=address,
            version=PROTOCOL_VERSION,
            services=DEFAULT_SERVICES,
            user_agent=user_agent,
            start_height=start_height
        )

        with sock.makefile('rwb') as stream:
            send_version(stream, ours)

            logger.info("Waiting for response from node...")
            theirs = receive_version(stream)

    if theirs.nonce == ours.nonce:
        raise HandshakeError("Connected to ourselves (nonce matches)")

    logger.info(
        f"Node at {host}:{port} speaks version {theirs.version}, "
        f"user agent {theirs.user_agent!r}, height {theirs.start_height}"
    )
    return theirs
