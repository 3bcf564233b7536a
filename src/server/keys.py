"""
WireGuard key generation.

WireGuard keys are raw X25519 keys encoded as base64, which is what PyNaCl's
Curve25519 PrivateKey produces.
"""

import base64
import binascii
from typing import Tuple

import nacl.utils
from nacl.public import PrivateKey

from src.common.errors import ValidationError

KEY_SIZE = 32


def _encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def decode_key(key: str) -> bytes:
    """
    Decode a base64 WireGuard key.

    Raises:
        ValidationError: If the key is not 32 bytes of base64
    """
    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"invalid key encoding: {e}") from e
    if len(raw) != KEY_SIZE:
        raise ValidationError(f"key must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw


class KeyGenerator:
    """Produces interface and peer key material."""

    def generate_keypair(self) -> Tuple[str, str]:
        """
        Generate a new key pair.

        Returns:
            Tuple of (private_key, public_key), base64 encoded
        """
        private = PrivateKey.generate()
        return _encode(bytes(private)), _encode(bytes(private.public_key))

    def public_key(self, private_key: str) -> str:
        """Derive the public key of a base64 private key."""
        private = PrivateKey(decode_key(private_key))
        return _encode(bytes(private.public_key))

    def generate_preshared_key(self) -> str:
        return _encode(nacl.utils.random(KEY_SIZE))
