"""
Cryptographic helpers for the handshake.
Uses PyNaCl (libsodium) for secure random byte generation and
cryptography for SHA-256.
"""
from nacl.utils import random
from cryptography.hazmat.primitives import hashes

from btc_handshake.constants import CHECKSUM_SIZE, NONCE_SIZE


def double_sha256(data):
    """Return SHA-256(SHA-256(data)) as 32 raw bytes."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    first = digest.finalize()

    digest = hashes.Hash(hashes.SHA256())
    digest.update(first)
    return digest.finalize()


def checksum(data):
    """
    Compute the integrity tag carried in a message header.
    
    The payload is hashed twice with SHA-256 and the first 4 bytes
    of the result are read as a little-endian unsigned integer.
    
    Args:
        data (bytes): Serialized payload (may be empty)
        
    Returns:
        int: 32-bit checksum
        
    Example:
        >>> hex(checksum(b''))
        '0xe2e0f65d'
    """
    return int.from_bytes(double_sha256(data)[:CHECKSUM_SIZE], 'little')


def generate_nonce(random_bytes=random):
    """
    Generate a random 64-bit nonce for a version message.
    
    Peers use the nonce to detect connections to themselves, so it must
    be unique per message. The default source is libsodium's CSPRNG,
    which is safe to call from several threads at once.
    
    Args:
        random_bytes (callable): Returns N random bytes when called with N.
            Tests pass a deterministic source here.
        
    Returns:
        int: Unsigned 64-bit nonce
    """
    data = random_bytes(NONCE_SIZE)
    if len(data) != NONCE_SIZE:
        raise ValueError(f"Random source must return {NONCE_SIZE} bytes, got {len(data)}")
    return int.from_bytes(data, 'little')
