"""
Protocol layer for the Bitcoin-style handshake.

Handles serialization (Python → bytes) and deserialization
(bytes or stream → Python) for everything exchanged during the handshake.

Wire formats:
- Message header: magic + command + length + checksum
- Network address: services + ip address + port
- Compact string: compact size + utf-8 bytes
- Version payload: version + services + timestamp + addr_recv + addr_from
  + nonce + user_agent + start_height

Every read_* function takes a stream with a blocking read(n) method
(a BytesIO, or socket.makefile('rb')). Every parse_* function takes
a complete byte string.
"""

import io
import ipaddress
import struct
import time
from dataclasses import dataclass

from nacl.utils import random

from btc_handshake.constants import *
from btc_handshake.crypto import checksum, generate_nonce


class PacketError(Exception):
    """Raised when received bytes are malformed."""
    pass


class ShortReadError(IOError):
    """Raised when a stream ends before the requested number of bytes."""
    pass


def read_exactly(stream, size):
    """
    Read exactly `size` bytes from a stream, blocking until they arrive.

    Reads in chunks of at most READ_CHUNK_SIZE, so a partial read from an
    unbuffered stream is retried and a huge declared size only costs
    memory for the bytes that actually arrive.

    Raises:
        ShortReadError: If the stream ends first
    """
    data = bytearray()
    while len(data) < size:
        chunk = stream.read(min(size - len(data), READ_CHUNK_SIZE))
        if not chunk:
            raise ShortReadError(f"Could not read {size} bytes, got {len(data)}")
        data += chunk
    return bytes(data)


def read_payload(stream, header):
    """
    Read the payload announced by a header.

    Raises:
        PacketError: If the announced length is over MAX_PAYLOAD_SIZE
        ShortReadError: If the stream ends first
    """
    if header.length > MAX_PAYLOAD_SIZE:
        raise PacketError(
            f"Payload too large: {header.length} bytes (max {MAX_PAYLOAD_SIZE})"
        )
    return read_exactly(stream, header.length)


def _parse_all(read_func, packet_bytes):
    """Run a read_* function over a byte string and reject leftovers."""
    stream = io.BytesIO(packet_bytes)
    result = read_func(stream)
    leftover = len(packet_bytes) - stream.tell()
    if leftover:
        raise PacketError(f"{leftover} unexpected trailing bytes")
    return result


def _check_range(name, value, low, high):
    if not (low <= value <= high):
        raise ValueError(f"{name} must be {low}-{high}, got {value}")


# ---------------------------------------------------------------------------
# Message header
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MessageHeader:
    """Fixed 24-byte envelope sent before every payload."""
    magic: int
    command: bytes  # 12 bytes, null-padded
    length: int
    checksum: int

    def command_name(self):
        """
        Command as text with the null padding stripped, e.g. 'version'.

        Raises:
            PacketError: If the command bytes are not ASCII
        """
        try:
            return self.command.rstrip(b'\x00').decode('ascii')
        except UnicodeDecodeError as e:
            raise PacketError(f"Invalid command name {self.command!r}") from e


def build_message_header(command, payload, magic=MAGIC_NUMBER):
    """
    Build the header that goes in front of a payload.

    Format:
    ┌──────────┬─────────────┬──────────┬──────────┐
    │  Magic   │   Command   │  Length  │ Checksum │
    │ (4 bytes)│  (12 bytes) │ (4 bytes)│ (4 bytes)│
    └──────────┴─────────────┴──────────┴──────────┘

    Args:
        command (str): ASCII command name, at most 12 characters
        payload (bytes): Serialized payload the header describes
        magic (int): Network magic number

    Returns:
        MessageHeader

    Raises:
        ValueError: If the command is not ASCII or too long
    """
    try:
        command_bytes = command.encode('ascii')
    except UnicodeEncodeError:
        raise ValueError(f"Command must be ASCII, got {command!r}")
    if not command_bytes or len(command_bytes) > COMMAND_SIZE:
        raise ValueError(f"Command must be 1-{COMMAND_SIZE} bytes, got {command!r}")
    _check_range('Payload length', len(payload), 0, MAX_UINT32)
    _check_range('Magic', magic, 0, MAX_UINT32)

    return MessageHeader(
        magic=magic,
        command=command_bytes.ljust(COMMAND_SIZE, b'\x00'),
        length=len(payload),
        checksum=checksum(payload)
    )


def serialize_header(header):
    """Serialize a header to 24 bytes."""
    return struct.pack(
        HEADER_FORMAT,
        header.magic,
        header.command,
        header.length,
        header.checksum
    )


def read_header(stream):
    """
    Read a header from a stream.

    The command bytes are kept verbatim; they are only checked
    when command_name() is called.
    """
    magic, command, length, payload_checksum = struct.unpack(
        HEADER_FORMAT,
        read_exactly(stream, HEADER_SIZE)
    )
    return MessageHeader(magic, command, length, payload_checksum)


def parse_header(packet_bytes):
    return _parse_all(read_header, packet_bytes)


# ---------------------------------------------------------------------------
# Network address
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NetworkAddress:
    """Services, 16-byte IP address and port of a node."""
    services: int
    address: bytes  # always 16 bytes
    port: int

    @property
    def ip(self):
        """The address as an ipaddress object (IPv4 if it is IPv4-mapped)."""
        ip = ipaddress.IPv6Address(self.address)
        return ip.ipv4_mapped or ip


def build_network_address(services, ip, port):
    """
    Build a network address.

    Args:
        services (int): 64-bit service bitmask
        ip (str | IPv4Address | IPv6Address): IPv4 or IPv6 address
        port (int): TCP port

    Returns:
        NetworkAddress: IPv4 addresses are stored in IPv4-mapped form

    Raises:
        ValueError: If a field is out of range or the ip is invalid
    """
    _check_range('Services', services, 0, MAX_UINT64)
    _check_range('Port', port, 0, MAX_UINT16)

    ip = ipaddress.ip_address(ip)
    if ip.version == 4:
        packed = IPV4_MAPPED_PREFIX + ip.packed
    else:
        packed = ip.packed

    return NetworkAddress(services=services, address=packed, port=port)


def serialize_network_address(addr):
    """
    Serialize a network address to 26 bytes.

    Format:
    ┌──────────────┬──────────────────┬────────────┐
    │   Services   │    IP Address    │    Port    │
    │  (8 bytes LE)│    (16 bytes)    │(2 bytes BE)│
    └──────────────┴──────────────────┴────────────┘
    """
    if len(addr.address) != IP_ADDRESS_SIZE:
        raise ValueError(f"Address must be {IP_ADDRESS_SIZE} bytes")

    return (
        struct.pack(ADDRESS_FORMAT, addr.services, addr.address)
        + struct.pack(PORT_FORMAT, addr.port)
    )


def read_network_address(stream):
    """Read a 26-byte network address from a stream."""
    services, address = struct.unpack(
        ADDRESS_FORMAT,
        read_exactly(stream, SERVICES_SIZE + IP_ADDRESS_SIZE)
    )
    (port,) = struct.unpack(PORT_FORMAT, read_exactly(stream, PORT_SIZE))
    return NetworkAddress(services, address, port)


def parse_network_address(packet_bytes):
    return _parse_all(read_network_address, packet_bytes)


# ---------------------------------------------------------------------------
# Compact string
# ---------------------------------------------------------------------------

def serialize_compact_size(size):
    """
    Encode a length using the narrowest compact size form.

    Size ranges:
        0 - 0xFC:               1 byte   [size]
        0xFD - 0xFFFF:          3 bytes  [0xFD] [uint16 LE]
        0x10000 - 0xFFFFFFFF:   5 bytes  [0xFE] [uint32 LE]
        larger:                 9 bytes  [0xFF] [uint64 LE]
    """
    _check_range('Compact size', size, 0, MAX_UINT64)

    if size < COMPACT_SIZE_UINT16:
        return struct.pack('<B', size)
    elif size <= MAX_UINT16:
        return struct.pack('<BH', COMPACT_SIZE_UINT16, size)
    elif size <= MAX_UINT32:
        return struct.pack('<BI', COMPACT_SIZE_UINT32, size)
    else:
        return struct.pack('<BQ', COMPACT_SIZE_UINT64, size)


def read_compact_size(stream):
    (marker,) = struct.unpack('<B', read_exactly(stream, 1))

    if marker == COMPACT_SIZE_UINT16:
        (size,) = struct.unpack('<H', read_exactly(stream, 2))
    elif marker == COMPACT_SIZE_UINT32:
        (size,) = struct.unpack('<I', read_exactly(stream, 4))
    elif marker == COMPACT_SIZE_UINT64:
        (size,) = struct.unpack('<Q', read_exactly(stream, 8))
    else:
        size = marker

    return size


def serialize_compact_string(text):
    """Encode text as compact size (in utf-8 bytes) followed by the utf-8 bytes."""
    data = text.encode('utf-8')
    return serialize_compact_size(len(data)) + data


def read_compact_string(stream):
    """
    Read a compact string from a stream.

    Raises:
        ShortReadError: If the stream holds fewer bytes than declared
        PacketError: If the bytes are not valid utf-8
    """
    size = read_compact_size(stream)
    data = read_exactly(stream, size)
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise PacketError(f"Invalid utf-8 in string of {size} bytes") from e


def parse_compact_string(packet_bytes):
    return _parse_all(read_compact_string, packet_bytes)


# ---------------------------------------------------------------------------
# Version payload
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VersionPayload:
    """Payload of the version message each side sends first."""
    version: int
    services: int
    timestamp: int
    addr_recv: NetworkAddress
    addr_from: NetworkAddress
    nonce: int
    user_agent: str
    start_height: int


def build_version_payload(
    addr_recv,
    addr_from,
    version=PROTOCOL_VERSION,
    services=DEFAULT_SERVICES,
    timestamp=None,
    user_agent='',
    start_height=0,
    random_bytes=random
):
    """
    Build a version payload with a fresh random nonce.

    Args:
        addr_recv (NetworkAddress): Address of the node we talk to
        addr_from (NetworkAddress): Our own address
        version (int): Protocol version
        services (int): Services we offer
        timestamp (int): Seconds since epoch, defaults to now
        user_agent (str): Software name
        start_height (int): Height of our best block
        random_bytes (callable): Source for the nonce (see generate_nonce)

    Returns:
        VersionPayload

    Raises:
        ValueError: If a field is out of range
    """
    if timestamp is None:
        timestamp = int(time.time())

    _check_range('Version', version, MIN_INT32, MAX_INT32)
    _check_range('Services', services, 0, MAX_UINT64)
    _check_range('Timestamp', timestamp, MIN_INT64, MAX_INT64)
    _check_range('Start height', start_height, MIN_INT32, MAX_INT32)

    return VersionPayload(
        version=version,
        services=services,
        timestamp=timestamp,
        addr_recv=addr_recv,
        addr_from=addr_from,
        nonce=generate_nonce(random_bytes),
        user_agent=user_agent,
        start_height=start_height
    )


def serialize_version_payload(payload):
    """
    Serialize a version payload.

    Format:
    version (4) + services (8) + timestamp (8) + addr_recv (26)
    + addr_from (26) + nonce (8) + user_agent (compact string)
    + start_height (4)
    """
    return b''.join([
        struct.pack(VERSION_PREFIX_FORMAT, payload.version, payload.services, payload.timestamp),
        serialize_network_address(payload.addr_recv),
        serialize_network_address(payload.addr_from),
        struct.pack(NONCE_FORMAT, payload.nonce),
        serialize_compact_string(payload.user_agent),
        struct.pack(START_HEIGHT_FORMAT, payload.start_height),
    ])


def read_version_payload(stream):
    """Read a version payload from a stream. The nonce is taken from the wire."""
    version, services, timestamp = struct.unpack(
        VERSION_PREFIX_FORMAT,
        read_exactly(stream, struct.calcsize(VERSION_PREFIX_FORMAT))
    )
    addr_recv = read_network_address(stream)
    addr_from = read_network_address(stream)
    (nonce,) = struct.unpack(NONCE_FORMAT, read_exactly(stream, NONCE_SIZE))
    user_agent = read_compact_string(stream)
    (start_height,) = struct.unpack(
        START_HEIGHT_FORMAT,
        read_exactly(stream, struct.calcsize(START_HEIGHT_FORMAT))
    )

    return VersionPayload(
        version=version,
        services=services,
        timestamp=timestamp,
        addr_recv=addr_recv,
        addr_from=addr_from,
        nonce=nonce,
        user_agent=user_agent,
        start_height=start_height
    )


def parse_version_payload(packet_bytes):
    return _parse_all(read_version_payload, packet_bytes)


def decode_version_payload(payload_bytes):
    """
    Decode the payload of a received version message.

    Newer peers append fields after start_height (the relay flag since
    protocol 70001); those bytes are ignored.
    """
    return read_version_payload(io.BytesIO(payload_bytes))


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

_SERIALIZERS = {
    MessageHeader: serialize_header,
    NetworkAddress: serialize_network_address,
    VersionPayload: serialize_version_payload,
    str: serialize_compact_string,
}

# Payload decoders by command name
PAYLOAD_PARSERS = {
    COMMAND_VERSION: decode_version_payload,
}


def encode(entity):
    """Serialize any protocol entity (a str is encoded as a compact string)."""
    try:
        serializer = _SERIALIZERS[type(entity)]
    except KeyError:
        raise TypeError(f"Cannot encode {type(entity).__name__}")
    return serializer(entity)


def build_message(command, payload_bytes):
    """Return header + payload, ready to be written to the wire."""
    header = build_message_header(command, payload_bytes)
    return serialize_header(header) + payload_bytes


def read_message(stream):
    """
    Read one complete message from a stream.

    The header is read first, then exactly `length` payload bytes, which
    are decoded according to the command name. Magic number and checksum
    are returned as-is for the caller to validate.

    Returns:
        tuple: (MessageHeader, decoded payload, raw payload bytes)

    Raises:
        ShortReadError: If the stream ends early
        PacketError: If the command is unknown, the payload is too large
            or malformed
    """
    header = read_header(stream)
    payload_bytes = read_payload(stream, header)

    command = header.command_name()
    try:
        parser = PAYLOAD_PARSERS[command]
    except KeyError:
        raise PacketError(f"Unsupported command: {command!r}")

    return header, parser(payload_bytes), payload_bytes
