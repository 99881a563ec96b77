"""Key derivation shared by the transport layer."""

from __future__ import annotations

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF


def hkdf_sha512(salt: bytes, ikm: bytes, info: bytes) -> bytes:
    """Derive a 32-byte key with HKDF-SHA512."""
    kdf = HKDF(algorithm=hashes.SHA512(), length=32, salt=bytes(salt), info=bytes(info))
    return kdf.derive(bytes(ikm))