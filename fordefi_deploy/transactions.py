# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Solana messages and transactions.

A transaction is a list of signatures followed by a message. The message lists
every account the instructions touch, ordered so that signers come first and,
within signers and non-signers, writable accounts come before read-only ones.
A three-byte header records where those groups end, which is how the runtime
knows which accounts must sign and which may be written. The fee payer is
always the first key and owns the first signature slot.

Both the legacy format and the v0 versioned format (a ``0x80`` prefix byte and
an empty address lookup table section) are supported.
"""

from __future__ import annotations

import typing
import unittest
from dataclasses import dataclass, field

import base58
from nacl.signing import VerifyKey

from .address import SYSTEM_PROGRAM, Address
from .codec import DecodeError, Deserializer, Serializer, compact_u16_length
from .ed25519 import PublicKey, Signature
from .keypair import Keypair

MAX_TRANSACTION_SIZE = 1232
VERSION_PREFIX_MASK = 0x80
BLOCKHASH_LENGTH = 32


@dataclass(frozen=True)
class AccountMeta:
    address: Address
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    program_id: Address
    accounts: typing.Tuple[AccountMeta, ...]
    data: bytes


@dataclass(frozen=True)
class MessageHeader:
    num_required_signatures: int
    num_readonly_signed_accounts: int
    num_readonly_unsigned_accounts: int

    def serialize(self, serializer: Serializer):
        serializer.u8(self.num_required_signatures)
        serializer.u8(self.num_readonly_signed_accounts)
        serializer.u8(self.num_readonly_unsigned_accounts)

    @staticmethod
    def deserialize(deserializer: Deserializer) -> MessageHeader:
        return MessageHeader(deserializer.u8(), deserializer.u8(), deserializer.u8())


@dataclass(frozen=True)
class CompiledInstruction:
    program_id_index: int
    accounts: typing.Tuple[int, ...]
    data: bytes

    def serialize(self, serializer: Serializer):
        serializer.u8(self.program_id_index)
        serializer.sequence(list(self.accounts), Serializer.u8)
        serializer.to_bytes(self.data)

    @staticmethod
    def deserialize(deserializer: Deserializer) -> CompiledInstruction:
        program_id_index = deserializer.u8()
        accounts = tuple(deserializer.sequence(Deserializer.u8))
        data = deserializer.to_bytes()
        return CompiledInstruction(program_id_index, accounts, data)


def blockhash_bytes(blockhash: typing.Union[str, bytes]) -> bytes:
    if isinstance(blockhash, str):
        blockhash = base58.b58decode(blockhash)
    if len(blockhash) != BLOCKHASH_LENGTH:
        raise ValueError(f"Blockhash must be {BLOCKHASH_LENGTH} bytes")
    return blockhash


@dataclass(frozen=True)
class Message:
    header: MessageHeader
    account_keys: typing.Tuple[Address, ...]
    recent_blockhash: bytes
    instructions: typing.Tuple[CompiledInstruction, ...]
    # None for a legacy message, otherwise the version number.
    version: typing.Optional[int] = 0

    @staticmethod
    def compile(
        instructions: typing.Sequence[Instruction],
        fee_payer: Address,
        recent_blockhash: typing.Union[str, bytes],
        version: typing.Optional[int] = 0,
    ) -> Message:
        """Order the accounts, build the header and index the instructions.

        Account flags are merged across instructions: an account that is a
        signer or writable anywhere is a signer or writable in the message.
        Within a group, accounts keep the order of their first appearance.
        """
        metas: typing.Dict[Address, typing.List[bool]] = {
            fee_payer: [True, True]
        }
        for instruction in instructions:
            for meta in instruction.accounts:
                flags = metas.setdefault(meta.address, [False, False])
                flags[0] = flags[0] or meta.is_signer
                flags[1] = flags[1] or meta.is_writable
            metas.setdefault(instruction.program_id, [False, False])

        def group(is_signer: bool, is_writable: bool) -> typing.List[Address]:
            return [
                address
                for address, flags in metas.items()
                if flags[0] == is_signer and flags[1] == is_writable
            ]

        writable_signers = group(True, True)
        readonly_signers = group(True, False)
        writable_unsigned = group(False, True)
        readonly_unsigned = group(False, False)
        account_keys = tuple(
            writable_signers + readonly_signers + writable_unsigned + readonly_unsigned
        )
        header = MessageHeader(
            num_required_signatures=len(writable_signers) + len(readonly_signers),
            num_readonly_signed_accounts=len(readonly_signers),
            num_readonly_unsigned_accounts=len(readonly_unsigned),
        )

        index = {address: position for position, address in enumerate(account_keys)}
        compiled = tuple(
            CompiledInstruction(
                program_id_index=index[instruction.program_id],
                accounts=tuple(index[meta.address] for meta in instruction.accounts),
                data=instruction.data,
            )
            for instruction in instructions
        )
        return Message(
            header,
            account_keys,
            blockhash_bytes(recent_blockhash),
            compiled,
            version,
        )

    def fee_payer(self) -> Address:
        return self.account_keys[0]

    def signers(self) -> typing.Tuple[Address, ...]:
        return self.account_keys[: self.header.num_required_signatures]

    def is_writable(self, position: int) -> bool:
        header = self.header
        if position < header.num_required_signatures:
            return (
                position
                < header.num_required_signatures - header.num_readonly_signed_accounts
            )
        return position < len(self.account_keys) - header.num_readonly_unsigned_accounts

    def with_blockhash(self, recent_blockhash: typing.Union[str, bytes]) -> Message:
        return Message(
            self.header,
            self.account_keys,
            blockhash_bytes(recent_blockhash),
            self.instructions,
            self.version,
        )

    def blockhash(self) -> str:
        return base58.b58encode(self.recent_blockhash).decode()

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()

    def serialize(self, serializer: Serializer):
        if self.version is not None:
            serializer.u8(VERSION_PREFIX_MASK | self.version)
        self.header.serialize(serializer)
        serializer.sequence(list(self.account_keys), Serializer.struct)
        serializer.fixed_bytes(self.recent_blockhash)
        serializer.sequence(list(self.instructions), Serializer.struct)
        if self.version is not None:
            # No address lookup tables.
            serializer.compact_u16(0)

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Message:
        version: typing.Optional[int] = None
        first = deserializer.u8()
        if first & VERSION_PREFIX_MASK:
            version = first & ~VERSION_PREFIX_MASK
            if version != 0:
                raise DecodeError(f"Unsupported message version {version}")
            header = MessageHeader.deserialize(deserializer)
        else:
            header = MessageHeader(first, deserializer.u8(), deserializer.u8())

        account_keys = tuple(deserializer.sequence(Address.deserialize))
        if not 0 < header.num_required_signatures <= len(account_keys):
            raise DecodeError(
                f"Header requires {header.num_required_signatures} signers "
                f"of {len(account_keys)} accounts"
            )
        recent_blockhash = deserializer.fixed_bytes(BLOCKHASH_LENGTH)
        instructions = tuple(deserializer.sequence(CompiledInstruction.deserialize))
        if version is not None:
            lookups = deserializer.compact_u16()
            if lookups != 0:
                raise DecodeError("Address lookup tables are not supported")
        return Message(header, account_keys, recent_blockhash, instructions, version)

    @staticmethod
    def from_bytes(data: bytes) -> Message:
        return Message.deserialize(Deserializer(data))


@dataclass
class Transaction:
    """A message and one signature slot per required signer.

    Unfilled slots hold the all-zero signature until their signer signs.
    """

    message: Message
    signatures: typing.List[Signature] = field(default_factory=list)

    def __post_init__(self):
        if not self.signatures:
            self.signatures = [
                Signature.empty() for _ in range(self.message.header.num_required_signatures)
            ]
        if len(self.signatures) != self.message.header.num_required_signatures:
            raise ValueError(
                f"Expected {self.message.header.num_required_signatures} signatures, "
                f"got {len(self.signatures)}"
            )

    def slot(self, address: Address) -> int:
        """Signature slot of ``address``.

        Raises:
            ValueError: If ``address`` is not a required signer.
        """
        signers = self.message.signers()
        if address not in signers:
            raise ValueError(f"{address} is not a required signer")
        return signers.index(address)

    def add_signature(self, address: Address, signature: Signature):
        self.signatures[self.slot(address)] = signature

    def sign_partial(self, keypairs: typing.Sequence[Keypair]):
        message = self.message.to_bytes()
        for keypair in keypairs:
            self.add_signature(keypair.address(), keypair.sign(message))

    def missing_signers(self) -> typing.List[Address]:
        return [
            address
            for address, signature in zip(self.message.signers(), self.signatures)
            if signature.is_empty()
        ]

    def is_fully_signed(self) -> bool:
        return not self.missing_signers()

    def verify_signatures(self) -> typing.List[Address]:
        """Return the signers whose slot holds a signature that does not verify."""
        message = self.message.to_bytes()
        invalid = []
        for address, signature in zip(self.message.signers(), self.signatures):
            key = PublicKey(VerifyKey(address.address))
            if not key.verify(message, signature):
                invalid.append(address)
        return invalid

    def signature(self) -> str:
        """The fee payer's signature in base58, which is the transaction id."""
        return str(self.signatures[0])

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()

    def serialize(self, serializer: Serializer):
        serializer.sequence(self.signatures, Serializer.struct)
        self.message.serialize(serializer)

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Transaction:
        signatures = deserializer.sequence(Signature.deserialize)
        message = Message.deserialize(deserializer)
        return Transaction(message, signatures)

    @staticmethod
    def from_bytes(data: bytes) -> Transaction:
        der = Deserializer(data)
        transaction = Transaction.deserialize(der)
        if der.remaining() != 0:
            raise DecodeError(f"{der.remaining()} trailing bytes after transaction")
        return transaction


def estimate_size(
    instructions: typing.Sequence[Instruction],
    fee_payer: Address,
    version: typing.Optional[int] = 0,
) -> int:
    """Serialized size of a fully signed transaction holding ``instructions``.

    The blockhash does not change the size, so a zero blockhash stands in.
    """
    message = Message.compile(
        instructions, fee_payer, b"\x00" * BLOCKHASH_LENGTH, version
    )
    signers = message.header.num_required_signatures
    return (
        compact_u16_length(signers)
        + signers * Signature.LENGTH
        + len(message.to_bytes())
    )


class Test(unittest.TestCase):
    def setUp(self):
        self.payer = Keypair.generate()
        self.new_account = Keypair.generate()
        self.program = Address.from_key(Keypair.generate().public_key())
        self.readonly = Address.from_key(Keypair.generate().public_key())
        self.blockhash = b"\x07" * 32

        self.instruction = Instruction(
            program_id=self.program,
            accounts=(
                AccountMeta(self.readonly, is_signer=False, is_writable=False),
                AccountMeta(self.new_account.address(), is_signer=True, is_writable=True),
                AccountMeta(self.payer.address(), is_signer=True, is_writable=False),
            ),
            data=b"\x01\x02",
        )

    def test_compile_orders_accounts(self):
        message = Message.compile(
            [self.instruction], self.payer.address(), self.blockhash
        )
        self.assertEqual(
            message.account_keys,
            (self.payer.address(), self.new_account.address(), self.readonly, self.program),
        )
        self.assertEqual(message.header, MessageHeader(2, 0, 2))
        self.assertEqual(message.instructions[0].program_id_index, 3)
        self.assertEqual(message.instructions[0].accounts, (2, 1, 0))
        self.assertTrue(message.is_writable(1))
        self.assertFalse(message.is_writable(2))

    def test_readonly_signer_group(self):
        instruction = Instruction(
            program_id=SYSTEM_PROGRAM,
            accounts=(AccountMeta(self.new_account.address(), True, False),),
            data=b"",
        )
        message = Message.compile([instruction], self.payer.address(), self.blockhash)
        self.assertEqual(message.header, MessageHeader(2, 1, 1))
        self.assertFalse(message.is_writable(1))
        self.assertTrue(message.is_writable(0))

    def test_message_round_trip(self):
        for version in (None, 0):
            message = Message.compile(
                [self.instruction], self.payer.address(), self.blockhash, version
            )
            data = message.to_bytes()
            if version is None:
                self.assertEqual(data[0], 2)
            else:
                self.assertEqual(data[0], 0x80)
            self.assertEqual(Message.from_bytes(data), message)

    def test_signature_slots(self):
        message = Message.compile(
            [self.instruction], self.payer.address(), self.blockhash
        )
        transaction = Transaction(message)
        self.assertEqual(len(transaction.signatures), 2)
        self.assertEqual(
            transaction.missing_signers(),
            [self.payer.address(), self.new_account.address()],
        )

        transaction.sign_partial([self.new_account])
        self.assertTrue(transaction.signatures[0].is_empty())
        self.assertEqual(transaction.missing_signers(), [self.payer.address()])

        transaction.sign_partial([self.payer])
        self.assertTrue(transaction.is_fully_signed())
        self.assertEqual(transaction.verify_signatures(), [])

        decoded = Transaction.from_bytes(transaction.to_bytes())
        self.assertEqual(decoded, transaction)
        self.assertEqual(decoded.signature(), str(transaction.signatures[0]))

        with self.assertRaises(ValueError):
            transaction.slot(self.readonly)

    def test_malformed_transaction_bytes(self):
        message = Message.compile(
            [self.instruction], self.payer.address(), self.blockhash
        )
        encoded = Transaction(message).to_bytes()

        with self.assertRaises(DecodeError):
            Transaction.from_bytes(encoded[:-1])
        with self.assertRaises(DecodeError):
            Transaction.from_bytes(encoded + b"\x00")
        message_bytes = message.to_bytes()
        with self.assertRaises(DecodeError):
            Message.from_bytes(bytes([0x81]) + message_bytes[1:])
        with self.assertRaises(ValueError):
            Message.from_bytes(b"\x80\x00\x00\x00\x00")

    def test_tampered_signature_detected(self):
        message = Message.compile(
            [self.instruction], self.payer.address(), self.blockhash
        )
        transaction = Transaction(message)
        transaction.sign_partial([self.payer, self.new_account])
        transaction.signatures[1] = self.payer.sign(b"something else")
        self.assertEqual(transaction.verify_signatures(), [self.new_account.address()])

    def test_estimate_size_matches_serialized(self):
        message = Message.compile(
            [self.instruction], self.payer.address(), self.blockhash
        )
        transaction = Transaction(message)
        self.assertEqual(
            estimate_size([self.instruction], self.payer.address()),
            len(transaction.to_bytes()),
        )

    def test_with_blockhash_keeps_content(self):
        message = Message.compile(
            [self.instruction], self.payer.address(), self.blockhash
        )
        refreshed = message.with_blockhash(b"\x09" * 32)
        self.assertEqual(refreshed.account_keys, message.account_keys)
        self.assertEqual(refreshed.instructions, message.instructions)
        self.assertNotEqual(refreshed.recent_blockhash, message.recent_blockhash)


if __name__ == "__main__":
    unittest.main()
