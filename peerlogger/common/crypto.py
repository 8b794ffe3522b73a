"""
Cryptographic utilities for node identities.

- keccak256 / sha256 hashing
- secp256k1 compact signatures used by the "v4" identity scheme
- public key compression helpers
"""

from __future__ import annotations

from Crypto.Hash import SHA256
from Crypto.Hash import keccak as _keccak_mod
from coincurve import PrivateKey, PublicKey


def keccak256(data: bytes) -> bytes:
    """Compute Keccak-256 hash (NOT SHA3-256)."""
    h = _keccak_mod.new(digest_bits=256)
    h.update(data)
    return h.digest()


def sha256(data: bytes) -> bytes:
    """Compute SHA-256 hash."""
    return SHA256.new(data).digest()


# ---------------------------------------------------------------------------
# secp256k1
# ---------------------------------------------------------------------------

def private_key_to_public_key(private_key: bytes) -> bytes:
    """Get the 64-byte raw public key (x || y) for a private key."""
    pk = PrivateKey(private_key)
    return pk.public_key.format(compressed=False)[1:]


def compress_pubkey(pubkey: bytes) -> bytes:
    """64-byte raw or 65-byte uncompressed key -> 33-byte compressed key."""
    if len(pubkey) == 64:
        pubkey = b"\x04" + pubkey
    return PublicKey(pubkey).format(compressed=True)


def decompress_pubkey(pubkey: bytes) -> bytes:
    """33-byte compressed key -> 64-byte raw key (x || y)."""
    return PublicKey(pubkey).format(compressed=False)[1:]


def sign_compact(msg_hash: bytes, private_key: bytes) -> bytes:
    """Sign a 32-byte hash, returning the 64-byte r || s form (no recovery id)."""
    if len(msg_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    pk = PrivateKey(private_key)
    # coincurve returns 65 bytes: r(32) + s(32) + v(1)
    return pk.sign_recoverable(msg_hash, hasher=None)[:64]


def verify_compact(msg_hash: bytes, signature: bytes, pubkey: bytes) -> bool:
    """Check a 64-byte r || s signature against a public key.

    The recovery id is not transmitted, so both candidates are tried and the
    recovered key is compared with the claimed one.
    """
    if len(signature) != 64 or len(msg_hash) != 32:
        return False
    try:
        expected = compress_pubkey(pubkey) if len(pubkey) != 33 else pubkey
    except ValueError:
        return False
    for v in (0, 1):
        try:
            recovered = PublicKey.from_signature_and_message(
                signature + bytes([v]), msg_hash, hasher=None,
            )
        except ValueError:
            continue
        if recovered.format(compressed=True) == expected:
            return True
    return False
