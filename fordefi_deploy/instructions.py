# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Deployment operations and their instruction encoding.

Each operation is one instruction to either the System program or the BPF
Upgradeable Loader. The set of operations is closed: ``Operation`` is the union
of the classes below and every one of them knows its program id, its ordered
account list and its instruction data. Instruction data is bincode, a u32
little-endian variant tag followed by the variant's fields.

BPF Upgradeable Loader instruction tags:

    0  InitializeBuffer
    1  Write { offset: u32, bytes: Vec<u8> }
    2  DeployWithMaxDataLen { max_data_len: u64 }
    5  Close

System program instruction tags:

    0  CreateAccount { lamports: u64, space: u64, owner: Pubkey }
"""

from __future__ import annotations

import typing
import unittest
from dataclasses import dataclass

from .address import (
    BPF_LOADER_UPGRADEABLE,
    SYSTEM_PROGRAM,
    SYSVAR_CLOCK,
    SYSVAR_RENT,
    Address,
)
from .codec import Deserializer, Serializer
from .transactions import AccountMeta, Instruction


class SystemInstruction:
    CREATE_ACCOUNT: int = 0


class LoaderInstruction:
    INITIALIZE_BUFFER: int = 0
    WRITE: int = 1
    DEPLOY_WITH_MAX_DATA_LEN: int = 2
    UPGRADE: int = 3
    SET_AUTHORITY: int = 4
    CLOSE: int = 5


# Buffer account metadata: u32 state tag, option tag, 32-byte authority.
ESCROW_HEADER_SIZE = 37
# Program account: u32 state tag and the 32-byte ProgramData address.
PROGRAM_ACCOUNT_SIZE = 36
# ProgramData metadata: u32 state tag, u64 slot, option tag, 32-byte authority.
PROGRAM_DATA_HEADER_SIZE = 45
# Loader size limit for ProgramData accounts.
MAX_PERMITTED_DATA_LENGTH = 10 * 1024 * 1024
# Instruction data of a Write before the chunk itself: tag, offset, u64 length.
WRITE_HEADER_SIZE = 4 + 4 + 8


def _create_account_data(lamports: int, space: int, owner: Address) -> bytes:
    ser = Serializer()
    ser.u32(SystemInstruction.CREATE_ACCOUNT)
    ser.u64(lamports)
    ser.u64(space)
    owner.serialize(ser)
    return ser.output()


@dataclass(frozen=True)
class CreateAccount:
    """Create and fund the buffer account, assigning it to the loader."""

    payer: Address
    new_account: Address
    lamports: int
    space: int
    owner: Address = BPF_LOADER_UPGRADEABLE

    program_id = SYSTEM_PROGRAM

    def accounts(self) -> typing.Tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.payer, is_signer=True, is_writable=True),
            AccountMeta(self.new_account, is_signer=True, is_writable=True),
        )

    def data(self) -> bytes:
        return _create_account_data(self.lamports, self.space, self.owner)

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.accounts(), self.data())


@dataclass(frozen=True)
class InitializeEscrow:
    """Initialize the buffer and record its write authority."""

    escrow: Address
    authority: Address

    program_id = BPF_LOADER_UPGRADEABLE

    def accounts(self) -> typing.Tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.escrow, is_signer=False, is_writable=True),
            AccountMeta(self.authority, is_signer=False, is_writable=False),
        )

    def data(self) -> bytes:
        ser = Serializer()
        ser.u32(LoaderInstruction.INITIALIZE_BUFFER)
        return ser.output()

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.accounts(), self.data())


@dataclass(frozen=True)
class WriteChunk:
    """Write ``data`` into the buffer at ``offset`` (relative to the program bytes)."""

    escrow: Address
    authority: Address
    offset: int
    data_bytes: bytes

    program_id = BPF_LOADER_UPGRADEABLE

    def accounts(self) -> typing.Tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.escrow, is_signer=False, is_writable=True),
            AccountMeta(self.authority, is_signer=True, is_writable=False),
        )

    def data(self) -> bytes:
        ser = Serializer()
        ser.u32(LoaderInstruction.WRITE)
        ser.u32(self.offset)
        ser.vec_u8(self.data_bytes)
        return ser.output()

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.accounts(), self.data())

    @staticmethod
    def decode(data: bytes) -> typing.Tuple[int, bytes]:
        """Split Write instruction data back into ``(offset, bytes)``."""
        der = Deserializer(data)
        tag = der.u32()
        if tag != LoaderInstruction.WRITE:
            raise ValueError(f"Not a Write instruction, tag {tag}")
        offset = der.u32()
        chunk = der.vec_u8()
        if der.remaining() != 0:
            raise ValueError(f"{der.remaining()} trailing bytes after Write data")
        return (offset, chunk)


@dataclass(frozen=True)
class CreateTarget:
    """Create and fund the program account, assigning it to the loader."""

    payer: Address
    new_account: Address
    lamports: int
    space: int = PROGRAM_ACCOUNT_SIZE
    owner: Address = BPF_LOADER_UPGRADEABLE

    program_id = SYSTEM_PROGRAM

    def accounts(self) -> typing.Tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.payer, is_signer=True, is_writable=True),
            AccountMeta(self.new_account, is_signer=True, is_writable=True),
        )

    def data(self) -> bytes:
        return _create_account_data(self.lamports, self.space, self.owner)

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.accounts(), self.data())


@dataclass(frozen=True)
class Finalize:
    """Deploy the buffer's bytes into the program's ProgramData account.

    The loader moves the buffer's lamports to the payer and closes it.
    """

    payer: Address
    authority: Address
    escrow: Address
    target: Address
    target_data: Address
    max_data_len: int

    program_id = BPF_LOADER_UPGRADEABLE

    def accounts(self) -> typing.Tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.payer, is_signer=True, is_writable=True),
            AccountMeta(self.target_data, is_signer=False, is_writable=True),
            AccountMeta(self.target, is_signer=False, is_writable=True),
            AccountMeta(self.escrow, is_signer=False, is_writable=True),
            AccountMeta(SYSVAR_RENT, is_signer=False, is_writable=False),
            AccountMeta(SYSVAR_CLOCK, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
            AccountMeta(self.authority, is_signer=True, is_writable=False),
        )

    def data(self) -> bytes:
        ser = Serializer()
        ser.u32(LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN)
        ser.u64(self.max_data_len)
        return ser.output()

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.accounts(), self.data())


@dataclass(frozen=True)
class Close:
    """Close a buffer and send all of its lamports to ``recipient``."""

    account: Address
    recipient: Address
    authority: Address

    program_id = BPF_LOADER_UPGRADEABLE

    def accounts(self) -> typing.Tuple[AccountMeta, ...]:
        return (
            AccountMeta(self.account, is_signer=False, is_writable=True),
            AccountMeta(self.recipient, is_signer=False, is_writable=True),
            AccountMeta(self.authority, is_signer=True, is_writable=False),
        )

    def data(self) -> bytes:
        ser = Serializer()
        ser.u32(LoaderInstruction.CLOSE)
        return ser.output()

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.accounts(), self.data())


Operation = typing.Union[
    CreateAccount, InitializeEscrow, WriteChunk, CreateTarget, Finalize, Close
]


def to_instructions(operations: typing.Sequence[Operation]) -> typing.List[Instruction]:
    return [operation.to_instruction() for operation in operations]


class Test(unittest.TestCase):
    def setUp(self):
        self.payer = Address(b"\x01" * 32)
        self.escrow = Address(b"\x02" * 32)
        self.target = Address(b"\x03" * 32)
        self.target_data = Address(b"\x04" * 32)

    def test_create_account(self):
        operation = CreateAccount(self.payer, self.escrow, 1_000_000, 1937)
        data = operation.data()
        self.assertEqual(len(data), 4 + 8 + 8 + 32)
        self.assertEqual(data[:4], b"\x00\x00\x00\x00")
        self.assertEqual(int.from_bytes(data[4:12], "little"), 1_000_000)
        self.assertEqual(int.from_bytes(data[12:20], "little"), 1937)
        self.assertEqual(data[20:], BPF_LOADER_UPGRADEABLE.address)

        instruction = operation.to_instruction()
        self.assertEqual(instruction.program_id, SYSTEM_PROGRAM)
        self.assertTrue(all(meta.is_signer for meta in instruction.accounts))

    def test_initialize_buffer(self):
        operation = InitializeEscrow(self.escrow, self.payer)
        self.assertEqual(operation.data(), b"\x00\x00\x00\x00")
        self.assertEqual(
            operation.accounts(),
            (
                AccountMeta(self.escrow, False, True),
                AccountMeta(self.payer, False, False),
            ),
        )

    def test_write_layout(self):
        operation = WriteChunk(self.escrow, self.payer, 1800, b"\xaa" * 100)
        data = operation.data()
        self.assertEqual(
            data[:WRITE_HEADER_SIZE],
            b"\x01\x00\x00\x00"
            + (1800).to_bytes(4, "little")
            + (100).to_bytes(8, "little"),
        )
        self.assertEqual(data[WRITE_HEADER_SIZE:], b"\xaa" * 100)
        self.assertEqual(len(data), WRITE_HEADER_SIZE + 100)
        self.assertEqual(WriteChunk.decode(data), (1800, b"\xaa" * 100))

    def test_write_decode_rejects_other_layouts(self):
        with self.assertRaises(ValueError):
            WriteChunk.decode(b"\x05\x00\x00\x00")
        data = WriteChunk(self.escrow, self.payer, 0, b"\x01\x02").data()
        with self.assertRaises(ValueError):
            WriteChunk.decode(data + b"\x00\x00\x00\x00")

    def test_create_target(self):
        operation = CreateTarget(self.payer, self.target, 1_141_440)
        data = operation.data()
        self.assertEqual(int.from_bytes(data[12:20], "little"), PROGRAM_ACCOUNT_SIZE)

    def test_finalize(self):
        operation = Finalize(
            payer=self.payer,
            authority=self.payer,
            escrow=self.escrow,
            target=self.target,
            target_data=self.target_data,
            max_data_len=11_900,
        )
        self.assertEqual(
            operation.data(), b"\x02\x00\x00\x00" + (11_900).to_bytes(8, "little")
        )
        self.assertEqual(
            [meta.address for meta in operation.accounts()],
            [
                self.payer,
                self.target_data,
                self.target,
                self.escrow,
                SYSVAR_RENT,
                SYSVAR_CLOCK,
                SYSTEM_PROGRAM,
                self.payer,
            ],
        )

    def test_close(self):
        operation = Close(self.escrow, self.payer, self.payer)
        self.assertEqual(operation.data(), b"\x05\x00\x00\x00")
        self.assertEqual(operation.program_id, BPF_LOADER_UPGRADEABLE)
        self.assertTrue(operation.accounts()[2].is_signer)


if __name__ == "__main__":
    unittest.main()
