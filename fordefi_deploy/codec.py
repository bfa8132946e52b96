# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Binary encoding used by Solana transactions and native program instructions.

Two encodings meet on the wire:

- The transaction envelope (signatures, message header, account keys,
  instructions) prefixes every variable-length array with a *compact-u16*
  ("shortvec") length: little-endian base 128, at most three bytes.
- Instruction data for native programs such as the System program and the
  BPF Upgradeable Loader is bincode: fixed-width little-endian integers,
  enum tags as u32, and ``Vec<u8>`` as a u64 length followed by the bytes.

The module contains:
- Protocol interfaces for serializable and deserializable objects
- Deserializer class for reading encoded data
- Serializer class for writing encoded data
- Helper function for encoding a single value

Examples:
    Encoding a loader ``Write`` instruction::

        from fordefi_deploy.codec import Serializer

        ser = Serializer()
        ser.u32(1)              # instruction tag
        ser.u32(900)            # offset
        ser.vec_u8(chunk)       # u64 length + bytes
        data = ser.output()

    Reading a shortvec-prefixed list of keys::

        der = Deserializer(message_bytes)
        keys = der.sequence(lambda d: d.fixed_bytes(32))
"""

from __future__ import annotations

import io
import typing
import unittest

from typing_extensions import Protocol

MAX_U8 = 2**8 - 1
MAX_U16 = 2**16 - 1
MAX_U32 = 2**32 - 1
MAX_U64 = 2**64 - 1


class DecodeError(ValueError):
    """Input bytes do not hold a valid encoding."""


class Deserializable(Protocol):
    """Objects that can be rebuilt from their wire encoding."""

    @classmethod
    def from_bytes(cls, indata: bytes) -> Deserializable:
        der = Deserializer(indata)
        return der.struct(cls)

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Deserializable:
        ...


class Serializable(Protocol):
    """Objects that can write their own wire encoding."""

    def to_bytes(self) -> bytes:
        ser = Serializer()
        ser.struct(self)
        return ser.output()

    def serialize(self, serializer: Serializer):
        ...


class Deserializer:
    """Reads values from an in-memory byte buffer.

    All integers are little-endian and unsigned. Reads past the end of the
    buffer raise instead of returning short data.
    """

    _input: io.BytesIO
    _length: int

    def __init__(self, data: bytes):
        self._length = len(data)
        self._input = io.BytesIO(data)

    def remaining(self) -> int:
        return self._length - self._input.tell()

    def bool(self) -> bool:
        value = int.from_bytes(self._read(1), byteorder="little", signed=False)
        if value == 0:
            return False
        elif value == 1:
            return True
        else:
            raise DecodeError(f"Unexpected boolean value: {value}")

    def to_bytes(self) -> bytes:
        """Read a compact-u16 length followed by that many bytes."""
        return self._read(self.compact_u16())

    def vec_u8(self) -> bytes:
        """Read a bincode ``Vec<u8>``: a u64 length followed by the bytes."""
        return self._read(self.u64())

    def fixed_bytes(self, length: int) -> bytes:
        return self._read(length)

    def sequence(
        self,
        value_decoder: typing.Callable[[Deserializer], typing.Any],
    ) -> typing.List[typing.Any]:
        """Read a compact-u16 count followed by that many elements."""
        length = self.compact_u16()
        values = []
        while len(values) < length:
            values.append(value_decoder(self))
        return values

    def struct(self, struct: typing.Any) -> typing.Any:
        return struct.deserialize(self)

    def u8(self) -> int:
        return self._read_int(1)

    def u16(self) -> int:
        return self._read_int(2)

    def u32(self) -> int:
        return self._read_int(4)

    def u64(self) -> int:
        return self._read_int(8)

    def compact_u16(self) -> int:
        """Read a compact-u16 (shortvec) encoded integer.

        Each byte carries 7 bits of data and a continuation bit. A u16 needs
        at most three bytes; anything longer, or a value that does not fit in
        16 bits, is rejected.

        Raises:
            DecodeError: If the encoding is too long, the value overflows u16,
                or the stream ends early.
        """
        value = 0
        for position in range(3):
            byte = self._read_int(1)
            value |= (byte & 0x7F) << (position * 7)
            if byte & 0x80 == 0:
                if value > MAX_U16:
                    raise DecodeError("Unexpectedly large compact-u16 value")
                return value
        raise DecodeError("compact-u16 encoding longer than 3 bytes")

    def _read(self, length: int) -> bytes:
        value = self._input.read(length)
        if value is None or len(value) < length:
            actual_length = 0 if value is None else len(value)
            error = (
                f"Unexpected end of input. Requested: {length}, found: {actual_length}"
            )
            raise DecodeError(error)
        return value

    def _read_int(self, length: int) -> int:
        return int.from_bytes(self._read(length), byteorder="little", signed=False)


class Serializer:
    """Writes values into an in-memory byte buffer.

    Examples:
        Basic usage::

            ser = Serializer()
            ser.u32(0)
            ser.u64(lamports)
            ser.fixed_bytes(bytes(owner))
            data = ser.output()

        Serializing a shortvec of account indices::

            ser.sequence([0, 1, 2], Serializer.u8)
    """

    _output: io.BytesIO

    def __init__(self):
        self._output = io.BytesIO()

    def output(self) -> bytes:
        return self._output.getvalue()

    def bool(self, value: bool):
        self._write_int(int(value), 1)

    def to_bytes(self, value: bytes):
        """Write a compact-u16 length followed by the raw bytes."""
        self.compact_u16(len(value))
        self._output.write(value)

    def vec_u8(self, value: bytes):
        """Write a bincode ``Vec<u8>``: a u64 length followed by the raw bytes."""
        self.u64(len(value))
        self._output.write(value)

    def fixed_bytes(self, value):
        self._output.write(value)

    @staticmethod
    def sequence_serializer(
        value_encoder: typing.Callable[[Serializer, typing.Any], None],
    ):
        return lambda self, values: self.sequence(values, value_encoder)

    def sequence(
        self,
        values: typing.List[typing.Any],
        value_encoder: typing.Callable[[Serializer, typing.Any], None],
    ):
        """Write a compact-u16 count followed by each encoded element."""
        self.compact_u16(len(values))
        for value in values:
            self.fixed_bytes(encoder(value, value_encoder))

    def struct(self, value: typing.Any):
        value.serialize(self)

    def u8(self, value: int):
        if value < 0 or value > MAX_U8:
            raise Exception(f"Cannot encode {value} into u8")

        self._write_int(value, 1)

    def u16(self, value: int):
        if value < 0 or value > MAX_U16:
            raise Exception(f"Cannot encode {value} into u16")

        self._write_int(value, 2)

    def u32(self, value: int):
        if value < 0 or value > MAX_U32:
            raise Exception(f"Cannot encode {value} into u32")

        self._write_int(value, 4)

    def u64(self, value: int):
        if value < 0 or value > MAX_U64:
            raise Exception(f"Cannot encode {value} into u64")

        self._write_int(value, 8)

    def compact_u16(self, value: int):
        """Write a compact-u16 (shortvec) encoded integer.

        Raises:
            Exception: If the value is negative or exceeds the u16 range.
        """
        if value < 0 or value > MAX_U16:
            raise Exception(f"Cannot encode {value} into compact-u16")

        while value >= 0x80:
            # Write 7 (lowest) bits of data and set the 8th bit to 1.
            byte = value & 0x7F
            self.u8(byte | 0x80)
            value >>= 7

        # Write the remaining bits of data and set the highest bit to 0.
        self.u8(value & 0x7F)

    def _write_int(self, value: int, length: int):
        self._output.write(value.to_bytes(length, "little", signed=False))


def encoder(
    value: typing.Any, encoder: typing.Callable[[Serializer, typing.Any], typing.Any]
) -> bytes:
    """Encode a single value with ``encoder`` and return the bytes."""
    ser = Serializer()
    encoder(ser, value)
    return ser.output()


def compact_u16_length(value: int) -> int:
    """Number of bytes the compact-u16 encoding of ``value`` occupies."""
    return len(encoder(value, Serializer.compact_u16))


class Test(unittest.TestCase):
    def test_compact_u16_vectors(self):
        vectors = [
            (0, b"\x00"),
            (0x7F, b"\x7f"),
            (0x80, b"\x80\x01"),
            (0xFF, b"\xff\x01"),
            (0x3FFF, b"\xff\x7f"),
            (0x4000, b"\x80\x80\x01"),
            (0xFFFF, b"\xff\xff\x03"),
        ]
        for value, expected in vectors:
            self.assertEqual(encoder(value, Serializer.compact_u16), expected)
            self.assertEqual(Deserializer(expected).compact_u16(), value)
            self.assertEqual(compact_u16_length(value), len(expected))

    def test_compact_u16_range(self):
        ser = Serializer()
        with self.assertRaises(Exception):
            ser.compact_u16(0x10000)
        with self.assertRaises(DecodeError):
            Deserializer(b"\xff\xff\x07").compact_u16()
        with self.assertRaises(DecodeError):
            Deserializer(b"\x80\x80\x80\x01").compact_u16()

    def test_vec_u8_layout(self):
        ser = Serializer()
        ser.vec_u8(b"abc")
        self.assertEqual(ser.output(), b"\x03\x00\x00\x00\x00\x00\x00\x00abc")

        der = Deserializer(ser.output())
        self.assertEqual(der.vec_u8(), b"abc")
        self.assertEqual(der.remaining(), 0)

    def test_to_bytes_uses_shortvec_length(self):
        data = b"\x01" * 200

        ser = Serializer()
        ser.to_bytes(data)
        self.assertEqual(ser.output()[:2], b"\xc8\x01")

        der = Deserializer(ser.output())
        self.assertEqual(der.to_bytes(), data)

    def test_little_endian_integers(self):
        ser = Serializer()
        ser.u32(1)
        ser.u64(2**40 + 5)
        self.assertEqual(
            ser.output(),
            b"\x01\x00\x00\x00" + (2**40 + 5).to_bytes(8, "little"),
        )

        der = Deserializer(ser.output())
        self.assertEqual(der.u32(), 1)
        self.assertEqual(der.u64(), 2**40 + 5)

    def test_sequence(self):
        in_value = [1, 2, 300]

        ser = Serializer()
        ser.sequence(in_value, Serializer.u16)
        der = Deserializer(ser.output())
        out_value = der.sequence(Deserializer.u16)

        self.assertEqual(in_value, out_value)

    def test_integer_range_checks(self):
        ser = Serializer()
        with self.assertRaises(Exception):
            ser.u8(256)
        with self.assertRaises(Exception):
            ser.u32(-1)
        with self.assertRaises(Exception):
            ser.u64(2**64)

    def test_unexpected_end_of_input(self):
        der = Deserializer(b"\x01\x02")
        with self.assertRaises(DecodeError):
            der.u32()
        with self.assertRaises(ValueError):
            Deserializer(b"\x02").bool()


if __name__ == "__main__":
    unittest.main()
