# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Solana account addresses and program derived addresses.

An address is 32 bytes. For ordinary accounts it is an Ed25519 public key; for
program derived addresses (PDAs) it is a SHA-256 digest that is guaranteed not
to be a valid curve point, so no private key can ever sign for it. The
BPF Upgradeable Loader keeps each program's bytecode in such an account, the
ProgramData account, derived from the program id.

Examples:
    Parsing and printing::

        loader = Address.from_str("BPFLoaderUpgradeab1e11111111111111111111111")
        print(loader)  # base58

    Deriving the ProgramData account of a program::

        program_data, bump = Address.find_program_address(
            [bytes(program_id)], BPF_LOADER_UPGRADEABLE
        )
"""

from __future__ import annotations

import hashlib
import typing
import unittest

import base58

from . import ed25519
from .codec import Deserializer, Serializer

PDA_MARKER = b"ProgramDerivedAddress"
MAX_SEED_LENGTH = 32
MAX_SEEDS = 16

# Curve25519 field prime and the Edwards curve constant d = -121665/121666.
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P
_SQRT_M1 = pow(2, (_P - 1) // 4, _P)


class ParseAddressError(ValueError):
    """The input could not be parsed as a 32-byte base58 address."""


class Address:
    """A 32-byte Solana account address."""

    address: bytes
    LENGTH: int = 32

    def __init__(self, address: bytes):
        self.address = address

        if len(address) != Address.LENGTH:
            raise ParseAddressError("Expected address of length 32")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Address):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __bytes__(self) -> bytes:
        return self.address

    def __str__(self) -> str:
        return base58.b58encode(self.address).decode()

    def __repr__(self) -> str:
        return f"Address({self})"

    @staticmethod
    def from_str(address: str) -> Address:
        """Parse a base58 address.

        Raises:
            ParseAddressError: If the string is not base58 or does not decode
                to exactly 32 bytes.
        """
        try:
            decoded = base58.b58decode(address.strip())
        except ValueError as e:
            raise ParseAddressError(f"Invalid base58 address: {address}") from e
        return Address(decoded)

    @staticmethod
    def from_key(key: ed25519.PublicKey) -> Address:
        return Address(key.to_crypto_bytes())

    def is_on_curve(self) -> bool:
        return is_on_curve(self.address)

    @staticmethod
    def create_program_address(
        seeds: typing.Sequence[bytes], program_id: Address
    ) -> Address:
        """Hash ``seeds`` under ``program_id`` into a program derived address.

        Raises:
            ValueError: If there are too many seeds, a seed is longer than 32
                bytes, or the digest happens to be a valid curve point.
        """
        if len(seeds) > MAX_SEEDS:
            raise ValueError(f"At most {MAX_SEEDS} seeds are allowed")

        hasher = hashlib.sha256()
        for seed in seeds:
            if len(seed) > MAX_SEED_LENGTH:
                raise ValueError(f"Seed exceeds {MAX_SEED_LENGTH} bytes")
            hasher.update(seed)
        hasher.update(program_id.address)
        hasher.update(PDA_MARKER)
        digest = hasher.digest()

        if is_on_curve(digest):
            raise ValueError("Invalid seeds, address must fall off the curve")
        return Address(digest)

    @staticmethod
    def find_program_address(
        seeds: typing.Sequence[bytes], program_id: Address
    ) -> typing.Tuple[Address, int]:
        """Find the first off-curve address, trying bump seeds from 255 down.

        Returns:
            The derived address and the bump seed that produced it.
        """
        for bump in range(255, 0, -1):
            try:
                address = Address.create_program_address(
                    list(seeds) + [bytes([bump])], program_id
                )
            except ValueError:
                continue
            return (address, bump)
        raise ValueError("Unable to find a viable program address bump seed")

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Address:
        return Address(deserializer.fixed_bytes(Address.LENGTH))

    def serialize(self, serializer: Serializer):
        serializer.fixed_bytes(self.address)


def is_on_curve(data: bytes) -> bool:
    """Whether ``data`` decompresses to a point on the Ed25519 curve.

    Only the curve equation is checked, not subgroup membership, which matches
    how the Solana runtime decides whether an address may have a private key.
    """
    y = int.from_bytes(data, "little") & ((1 << 255) - 1)
    y %= _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P

    # Candidate square root of u / v.
    x = u * pow(v, 3, _P) * pow(u * pow(v, 7, _P), (_P - 5) // 8, _P) % _P
    vx2 = v * x * x % _P
    if vx2 == u:
        return True
    if vx2 == (-u) % _P:
        return True
    return False


SYSTEM_PROGRAM = Address.from_str("11111111111111111111111111111111")
BPF_LOADER_UPGRADEABLE = Address.from_str(
    "BPFLoaderUpgradeab1e11111111111111111111111"
)
SYSVAR_RENT = Address.from_str("SysvarRent111111111111111111111111111111111")
SYSVAR_CLOCK = Address.from_str("SysvarC1ock11111111111111111111111111111111")


def program_data_address(program_id: Address) -> Address:
    """ProgramData account that holds ``program_id``'s deployed bytecode."""
    return Address.find_program_address([program_id.address], BPF_LOADER_UPGRADEABLE)[
        0
    ]


class Test(unittest.TestCase):
    def test_well_known_addresses(self):
        self.assertEqual(SYSTEM_PROGRAM.address, b"\x00" * 32)
        self.assertEqual(
            str(BPF_LOADER_UPGRADEABLE), "BPFLoaderUpgradeab1e11111111111111111111111"
        )
        self.assertEqual(
            Address.from_str(str(SYSVAR_CLOCK)),
            SYSVAR_CLOCK,
        )

    def test_parse_errors(self):
        with self.assertRaises(ParseAddressError):
            Address.from_str("1111")
        with self.assertRaises(ParseAddressError):
            Address.from_str("0OIl")
        with self.assertRaises(ParseAddressError):
            Address(b"\x01" * 31)

    def test_public_keys_are_on_curve(self):
        for _ in range(8):
            key = ed25519.PrivateKey.random().public_key()
            self.assertTrue(Address.from_key(key).is_on_curve())

    def test_find_program_address(self):
        program_id = Address.from_key(ed25519.PrivateKey.random().public_key())
        address, bump = Address.find_program_address(
            [program_id.address], BPF_LOADER_UPGRADEABLE
        )

        self.assertFalse(address.is_on_curve())
        self.assertEqual(
            Address.create_program_address(
                [program_id.address, bytes([bump])], BPF_LOADER_UPGRADEABLE
            ),
            address,
        )
        # Every higher bump must have produced an on-curve digest.
        for higher in range(bump + 1, 256):
            with self.assertRaises(ValueError):
                Address.create_program_address(
                    [program_id.address, bytes([higher])], BPF_LOADER_UPGRADEABLE
                )
        self.assertEqual(program_data_address(program_id), address)

    def test_create_program_address_vectors(self):
        seed_key = Address.from_str("SeedPubey1111111111111111111111111111111111")
        vectors = [
            ([b"", b"\x01"], "BwqrghZA2htAcqq8dzP1WDAhTXYTYWj7CHxF5j7TDBAe"),
            (["☉".encode(), b"\x00"], "13yWmRpaTR4r5nAktwLqMpRNr28tnVUZw26rTvPSSB19"),
            ([b"Talking", b"Squirrels"], "2fnQrngrQT4SeLcdToJAD96phoEjNL2man2kfRLCASVk"),
            ([seed_key.address, b"\x01"], "976ymqVnfE32QFe6NfGDctSvVa36LWnvYxhU6G2232YL"),
        ]
        for seeds, expected in vectors:
            self.assertEqual(
                str(Address.create_program_address(seeds, BPF_LOADER_UPGRADEABLE)),
                expected,
            )

    def test_seed_limits(self):
        with self.assertRaises(ValueError):
            Address.create_program_address([b"\x00" * 33], SYSTEM_PROGRAM)
        with self.assertRaises(ValueError):
            Address.create_program_address([b""] * 17, SYSTEM_PROGRAM)

    def test_serialize(self):
        ser = Serializer()
        BPF_LOADER_UPGRADEABLE.serialize(ser)
        self.assertEqual(
            Address.deserialize(Deserializer(ser.output())), BPF_LOADER_UPGRADEABLE
        )


if __name__ == "__main__":
    unittest.main()
