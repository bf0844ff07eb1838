"""
Protocol constants for the Bitcoin-style handshake.

Defines message header layout, field sizes and struct formats.
All multi-byte integers are little-endian, except the port inside a
network address which uses big-endian (network byte order).
"""

# Magic number at the start of every message header (mainnet)
MAGIC_NUMBER = 0xD9B4BEF9

# Default values for our own version message
PROTOCOL_VERSION = 60002
DEFAULT_PORT = 8333
DEFAULT_SERVICES = 0
DEFAULT_ADDRESS = '127.0.0.1'

# Commands
COMMAND_VERSION = 'version'

# Field sizes (in bytes)
MAGIC_SIZE = 4
COMMAND_SIZE = 12       # ASCII, null-padded
LENGTH_SIZE = 4
CHECKSUM_SIZE = 4       # First 4 bytes of double SHA-256
SERVICES_SIZE = 8
IP_ADDRESS_SIZE = 16    # IPv4 addresses are stored IPv4-mapped
PORT_SIZE = 2
NONCE_SIZE = 8

# Struct formats
# '<' = little-endian, '>' = big-endian
HEADER_FORMAT = '<I12sII'             # magic, command, length, checksum
ADDRESS_FORMAT = '<Q16s'              # services, ip address
PORT_FORMAT = '>H'                    # port (network byte order)
VERSION_PREFIX_FORMAT = '<iQq'        # version, services, timestamp
NONCE_FORMAT = '<Q'
START_HEIGHT_FORMAT = '<i'

HEADER_SIZE = MAGIC_SIZE + COMMAND_SIZE + LENGTH_SIZE + CHECKSUM_SIZE  # 24 bytes
NETWORK_ADDRESS_SIZE = SERVICES_SIZE + IP_ADDRESS_SIZE + PORT_SIZE     # 26 bytes

# Compact size markers: a length below COMPACT_SIZE_UINT16 fits in one byte,
# larger ones get a marker followed by a 2, 4 or 8 byte length.
COMPACT_SIZE_UINT16 = 0xFD
COMPACT_SIZE_UINT32 = 0xFE
COMPACT_SIZE_UINT64 = 0xFF

# Prefix turning an IPv4 address into its IPv4-mapped IPv6 form (::ffff:a.b.c.d)
IPV4_MAPPED_PREFIX = b'\x00' * 10 + b'\xff\xff'

# Integer limits
MAX_UINT16 = 2**16 - 1
MAX_UINT32 = 2**32 - 1
MAX_UINT64 = 2**64 - 1
MIN_INT32, MAX_INT32 = -2**31, 2**31 - 1
MIN_INT64, MAX_INT64 = -2**63, 2**63 - 1

# Environment variable holding the node to connect to ("host:port")
NODE_ADDRESS_ENV = 'BTC_NODE_ADDRESS'

# Maximum payload size we accept from a peer (prevent memory exhaustion attacks)
MAX_PAYLOAD_SIZE = 4000000  # 4 MB, same limit as Bitcoin Core

# Streams are read in chunks of at most this size, so memory only grows
# with bytes that actually arrive
READ_CHUNK_SIZE = 64 * 1024
