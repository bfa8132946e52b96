# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Locally held Solana keypairs.

Deployments need two throwaway keypairs: one for the buffer account and one for
the program account. Both are stored in the Solana CLI keypair format, a JSON
array of 64 integers holding the 32-byte Ed25519 seed followed by the 32-byte
public key, so they can be inspected or reused with ``solana`` tooling.
"""

from __future__ import annotations

import json
import tempfile
import typing
import unittest

import base58

from . import ed25519
from .address import Address

SECRET_KEY_LENGTH = 64


class Keypair:
    """An address together with the private key that signs for it."""

    account_address: Address
    private_key: ed25519.PrivateKey

    def __init__(self, account_address: Address, private_key: ed25519.PrivateKey):
        self.account_address = account_address
        self.private_key = private_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Keypair):
            return NotImplemented
        return (
            self.account_address == other.account_address
            and self.private_key == other.private_key
        )

    def __repr__(self) -> str:
        return f"Keypair({self.account_address})"

    @staticmethod
    def generate() -> Keypair:
        private_key = ed25519.PrivateKey.random()
        account_address = Address.from_key(private_key.public_key())
        return Keypair(account_address, private_key)

    @staticmethod
    def from_seed(seed: bytes) -> Keypair:
        private_key = ed25519.PrivateKey.from_hex(seed)
        account_address = Address.from_key(private_key.public_key())
        return Keypair(account_address, private_key)

    @staticmethod
    def from_secret_key(secret_key: typing.Union[bytes, typing.List[int]]) -> Keypair:
        """Build a keypair from the 64-byte ``seed || public key`` form.

        Raises:
            ValueError: If the length is wrong or the embedded public key does
                not belong to the seed.
        """
        secret_key = bytes(secret_key)
        if len(secret_key) != SECRET_KEY_LENGTH:
            raise ValueError(
                f"Secret key must be {SECRET_KEY_LENGTH} bytes, got {len(secret_key)}"
            )
        keypair = Keypair.from_seed(secret_key[:32])
        if keypair.account_address.address != secret_key[32:]:
            raise ValueError("Secret key public half does not match its seed")
        return keypair

    @staticmethod
    def load(path: str) -> Keypair:
        """Load a keypair file written by ``solana-keygen`` or ``store``.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the content is not a valid 64-byte keypair.
        """
        with open(path) as file:
            data = json.load(file)
        return Keypair.from_secret_key(data)

    def store(self, path: str):
        with open(path, "w") as file:
            json.dump(list(self.secret_key()), file)

    def address(self) -> Address:
        return self.account_address

    def public_key(self) -> ed25519.PublicKey:
        return self.private_key.public_key()

    def secret_key(self) -> bytes:
        return self.private_key.seed() + self.account_address.address

    def secret_key_base58(self) -> str:
        """The 64-byte secret key in base58, as wallets export it."""
        return base58.b58encode(self.secret_key()).decode()

    def sign(self, data: bytes) -> ed25519.Signature:
        return self.private_key.sign(data)


class Test(unittest.TestCase):
    def test_load_and_store(self):
        (file, path) = tempfile.mkstemp()
        start = Keypair.generate()
        start.store(path)
        load = Keypair.load(path)

        self.assertEqual(start, load)
        with open(path) as f:
            self.assertEqual(len(json.load(f)), SECRET_KEY_LENGTH)

    def test_key(self):
        message = b"test message"
        keypair = Keypair.generate()
        signature = keypair.sign(message)
        self.assertTrue(keypair.public_key().verify(message, signature))

    def test_secret_key_base58(self):
        keypair = Keypair.generate()
        decoded = base58.b58decode(keypair.secret_key_base58())
        self.assertEqual(Keypair.from_secret_key(decoded), keypair)

    def test_mismatched_secret_key(self):
        first = Keypair.generate()
        second = Keypair.generate()
        with self.assertRaises(ValueError):
            Keypair.from_secret_key(
                first.private_key.seed() + second.account_address.address
            )
        with self.assertRaises(ValueError):
            Keypair.from_secret_key(b"\x01" * 32)


if __name__ == "__main__":
    unittest.main()
