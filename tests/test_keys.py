#!/usr/bin/env python3
"""
Unit tests for WireGuard key generation.
"""

import base64
import unittest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.common.errors import ValidationError
from src.server.keys import KeyGenerator, decode_key


class TestKeyGenerator(unittest.TestCase):
    """Test key material."""

    def setUp(self):
        """Set up test fixtures."""
        self.keys = KeyGenerator()

    def test_keypair_format(self):
        """Test keys are 32 bytes encoded as 44 base64 characters."""
        private, public = self.keys.generate_keypair()

        for key in (private, public):
            self.assertEqual(len(key), 44)
            self.assertEqual(len(base64.b64decode(key)), 32)
        self.assertNotEqual(private, public)

    def test_public_key_derivation(self):
        """Test the public key is derived deterministically from the private key."""
        private, public = self.keys.generate_keypair()
        self.assertEqual(self.keys.public_key(private), public)

    def test_keypairs_unique(self):
        """Test generated keys differ."""
        keys = {self.keys.generate_keypair()[0] for _ in range(20)}
        self.assertEqual(len(keys), 20)

    def test_preshared_key(self):
        """Test preshared keys are 32 random bytes."""
        psk = self.keys.generate_preshared_key()
        self.assertEqual(len(base64.b64decode(psk)), 32)
        self.assertNotEqual(psk, self.keys.generate_preshared_key())

    def test_invalid_keys(self):
        """Test malformed keys are rejected."""
        with self.assertRaises(ValidationError):
            decode_key("not base64!")
        with self.assertRaises(ValidationError):
            decode_key(base64.b64encode(b"short").decode())
        with self.assertRaises(ValidationError):
            self.keys.public_key("wg3-private")


if __name__ == "__main__":
    unittest.main()
