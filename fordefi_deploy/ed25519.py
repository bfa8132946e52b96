# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Ed25519 keys and signatures for Solana.

Solana accounts are identified by Ed25519 public keys, and every transaction
signature is a detached 64-byte Ed25519 signature over the serialized message.
Keys are printed in base58, the same text form the Solana CLI and explorers use.

The module includes:
- PrivateKey: 32-byte Ed25519 seed used for local co-signing
- PublicKey: 32-byte Ed25519 verifying key
- Signature: 64-byte detached signature

Examples:
    Sign and verify a message::

        private_key = PrivateKey.random()
        signature = private_key.sign(message_bytes)
        assert private_key.public_key().verify(message_bytes, signature)
"""

from __future__ import annotations

import unittest

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .codec import Deserializer, Serializer


class PrivateKey:
    LENGTH: int = 32

    key: SigningKey

    def __init__(self, key: SigningKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self.key == other.key

    def __str__(self):
        return self.hex()

    @staticmethod
    def from_hex(value: str | bytes) -> PrivateKey:
        """Create a PrivateKey from a 32-byte seed, given as hex or raw bytes.

        Raises:
            ValueError: If the seed is not exactly 32 bytes.
        """
        if isinstance(value, str):
            if value[0:2] == "0x":
                value = value[2:]
            value = bytes.fromhex(value)
        if len(value) != PrivateKey.LENGTH:
            raise ValueError(
                f"Ed25519 seed must be {PrivateKey.LENGTH} bytes, got {len(value)}"
            )
        return PrivateKey(SigningKey(value))

    def hex(self) -> str:
        return f"0x{self.key.encode().hex()}"

    def seed(self) -> bytes:
        return self.key.encode()

    def public_key(self) -> PublicKey:
        return PublicKey(self.key.verify_key)

    @staticmethod
    def random() -> PrivateKey:
        return PrivateKey(SigningKey.generate())

    def sign(self, data: bytes) -> Signature:
        return Signature(self.key.sign(data).signature)


class PublicKey:
    """Ed25519 public key.

    Attributes:
        LENGTH: The byte length of Ed25519 public keys (32)
    """

    LENGTH: int = 32

    key: VerifyKey

    def __init__(self, key: VerifyKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self.key == other.key

    def __str__(self) -> str:
        return base58.b58encode(self.key.encode()).decode()

    @staticmethod
    def from_str(value: str) -> PublicKey:
        return PublicKey(VerifyKey(base58.b58decode(value)))

    def verify(self, data: bytes, signature: Signature) -> bool:
        """Verify a detached signature over ``data``.

        Returns:
            True if the signature is valid, False for a bad or malformed one.
        """
        try:
            self.key.verify(data, signature.data())
        except (BadSignatureError, ValueError):
            return False
        return True

    def to_crypto_bytes(self) -> bytes:
        return self.key.encode()


class Signature:
    """A detached 64-byte Ed25519 signature.

    The all-zero signature is what an unsigned slot holds in a serialized
    transaction, see ``Signature.empty``.
    """

    LENGTH: int = 64

    signature: bytes

    def __init__(self, signature: bytes):
        if len(signature) != Signature.LENGTH:
            raise ValueError(
                f"Signature must be {Signature.LENGTH} bytes, got {len(signature)}"
            )
        self.signature = signature

    def __eq__(self, other: object):
        if not isinstance(other, Signature):
            return NotImplemented
        return self.signature == other.signature

    def __str__(self) -> str:
        return base58.b58encode(self.signature).decode()

    def __repr__(self) -> str:
        return f"Signature({self})"

    @staticmethod
    def empty() -> Signature:
        return Signature(b"\x00" * Signature.LENGTH)

    def is_empty(self) -> bool:
        return self.signature == b"\x00" * Signature.LENGTH

    def data(self) -> bytes:
        return self.signature

    @staticmethod
    def from_str(value: str) -> Signature:
        return Signature(base58.b58decode(value))

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Signature:
        return Signature(deserializer.fixed_bytes(Signature.LENGTH))

    def serialize(self, serializer: Serializer):
        serializer.fixed_bytes(self.signature)


class Test(unittest.TestCase):
    def test_rfc8032_public_key(self):
        private_key = PrivateKey.from_hex(
            "9d61b19deffd5a60ba844af492ec2cc44449c5697b326919703bac031cae7f60"
        )
        self.assertEqual(
            private_key.public_key().to_crypto_bytes().hex(),
            "d75a980182b10ab7d54bfed3c964073a0ee172f3daa62325af021a68f707511a",
        )

    def test_sign_and_verify(self):
        in_value = b"test_message"

        private_key = PrivateKey.random()
        public_key = private_key.public_key()

        signature = private_key.sign(in_value)
        self.assertTrue(public_key.verify(in_value, signature))
        self.assertFalse(public_key.verify(b"other_message", signature))
        self.assertFalse(public_key.verify(in_value, Signature.empty()))

    def test_public_key_base58(self):
        public_key = PrivateKey.random().public_key()
        self.assertEqual(PublicKey.from_str(str(public_key)), public_key)

    def test_signature_base58(self):
        signature = PrivateKey.random().sign(b"data")
        self.assertEqual(Signature.from_str(str(signature)), signature)

    def test_signature_length(self):
        with self.assertRaises(ValueError):
            Signature(b"\x01" * 63)
        self.assertTrue(Signature.empty().is_empty())

    def test_seed_length(self):
        with self.assertRaises(ValueError):
            PrivateKey.from_hex(b"\x01" * 31)


if __name__ == "__main__":
    unittest.main()
