# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Planning a program deployment as an ordered list of loader operations.

A plan is fully determined before any transaction is sent: the buffer and
program addresses come from locally generated keypairs, the ProgramData address
is derived from the program id, and the only network access is the three
rent-exemption queries for the buffer, program and ProgramData accounts. The
operations are, in order:

    CreateAccount(buffer) -> InitializeEscrow -> WriteChunk x N
        -> CreateTarget(program) -> Finalize

Examples:
    Planning against a live cluster::

        planner = DeploymentPlanner(rpc_client)
        plan = await planner.plan(
            payload, buffer_keypair, program_keypair, vault_address
        )
        print(f"{len(plan.write_chunks())} writes, buffer {plan.escrow}")
"""

from __future__ import annotations

import os
import typing
import unittest
import unittest.mock
from dataclasses import dataclass

import httpx

from .address import Address, program_data_address
from .async_client import ApiError, RpcClient, RpcError
from .exceptions import InvalidPayload, PlanningError
from .instructions import (
    ESCROW_HEADER_SIZE,
    MAX_PERMITTED_DATA_LENGTH,
    PROGRAM_ACCOUNT_SIZE,
    PROGRAM_DATA_HEADER_SIZE,
    CreateAccount,
    CreateTarget,
    Finalize,
    InitializeEscrow,
    Operation,
    WriteChunk,
)
from .keypair import Keypair
from .transactions import MAX_TRANSACTION_SIZE, estimate_size

DEFAULT_CHUNK_SIZE = 900
DEFAULT_UPGRADE_HEADROOM = 10_000

RentFunction = typing.Callable[[int], typing.Awaitable[int]]


def max_chunk_size(version: typing.Optional[int] = 0) -> int:
    """Largest chunk that still fits a Write transaction signed by one key."""
    authority = Address(b"\x01" * 32)
    escrow = Address(b"\x02" * 32)
    sample = b"\x00" * 128
    overhead = (
        estimate_size(
            [WriteChunk(escrow, authority, 0, sample).to_instruction()], authority, version
        )
        - len(sample)
    )
    return MAX_TRANSACTION_SIZE - overhead


MAX_CHUNK_SIZE = max_chunk_size()


@dataclass(frozen=True)
class DeploymentPlan:
    """The ordered operations of one deployment attempt and their parameters."""

    operations: typing.Tuple[Operation, ...]
    payload_length: int
    chunk_size: int
    fee_payer: Address
    escrow: Address
    target: Address
    target_data: Address
    escrow_rent: int
    target_rent: int
    program_data_rent: int
    max_data_len: int

    def __len__(self) -> int:
        return len(self.operations)

    def write_chunks(self) -> typing.List[WriteChunk]:
        return [
            operation
            for operation in self.operations
            if isinstance(operation, WriteChunk)
        ]

    def payload(self) -> bytes:
        """Concatenate the chunk data in offset order."""
        chunks = sorted(self.write_chunks(), key=lambda chunk: chunk.offset)
        return b"".join(chunk.data_bytes for chunk in chunks)

    def total_rent(self) -> int:
        """Peak lamports the fee payer locks up, fees excluded.

        The buffer rent is refunded when the program is finalized, in the same
        instruction that funds the ProgramData account.
        """
        return max(self.escrow_rent, self.program_data_rent) + self.target_rent

    def validate(self):
        """Check ordering and chunk coverage.

        Raises:
            PlanningError: If any buffer operation falls outside the
                create..finalize window, or the chunks leave a gap or overlap.
        """
        kinds = [type(operation) for operation in self.operations]
        if kinds.count(CreateAccount) != 1 or kinds.count(Finalize) != 1:
            raise PlanningError("Plan needs exactly one buffer creation and finalize")
        created = kinds.index(CreateAccount)
        finalized = kinds.index(Finalize)
        for position, operation in enumerate(self.operations):
            if isinstance(operation, (InitializeEscrow, WriteChunk)) and not (
                created < position < finalized
            ):
                raise PlanningError(
                    f"Operation {position} touches the buffer outside its lifetime"
                )

        expected = 0
        for chunk in sorted(self.write_chunks(), key=lambda chunk: chunk.offset):
            if chunk.offset != expected:
                raise PlanningError(f"Chunk gap or overlap at offset {chunk.offset}")
            if not 0 < len(chunk.data_bytes) <= self.chunk_size:
                raise PlanningError(f"Chunk at {chunk.offset} has bad length")
            expected += len(chunk.data_bytes)
        if expected != self.payload_length:
            raise PlanningError(
                f"Chunks cover {expected} of {self.payload_length} bytes"
            )


def create_chunks(
    data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> typing.List[typing.Tuple[int, bytes]]:
    chunks: typing.List[typing.Tuple[int, bytes]] = []
    read_data = 0
    while read_data < len(data):
        start_read_data = read_data
        read_data = min(read_data + chunk_size, len(data))
        chunks.append((start_read_data, data[start_read_data:read_data]))
    return chunks


async def plan(
    payload: bytes,
    escrow_keypair: Keypair,
    target_keypair: Keypair,
    fee_payer: Address,
    rent_fn: RentFunction,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    upgrade_headroom: int = DEFAULT_UPGRADE_HEADROOM,
) -> DeploymentPlan:
    """Split ``payload`` into the operations that deploy it.

    Args:
        payload: The program binary.
        escrow_keypair: Fresh keypair for the buffer account.
        target_keypair: Fresh keypair whose address becomes the program id.
        fee_payer: Pays rent and fees; also the buffer and upgrade authority.
        rent_fn: Coroutine returning the rent-exempt minimum for a size.
        chunk_size: Bytes written per Write instruction.
        upgrade_headroom: Extra ProgramData space reserved for upgrades.

    Raises:
        InvalidPayload: If ``payload`` is empty.
        PlanningError: If ``chunk_size`` does not fit a transaction, the
            program would exceed the loader's size limit, or a rent query fails.
    """
    if len(payload) == 0:
        raise InvalidPayload("Program binary is empty")
    if not 0 < chunk_size <= MAX_CHUNK_SIZE:
        raise PlanningError(
            f"Chunk size {chunk_size} must be between 1 and {MAX_CHUNK_SIZE}"
        )
    max_data_len = len(payload) + upgrade_headroom
    if max_data_len > MAX_PERMITTED_DATA_LENGTH:
        raise PlanningError(
            f"Program data length {max_data_len} exceeds {MAX_PERMITTED_DATA_LENGTH}"
        )

    escrow = escrow_keypair.address()
    target = target_keypair.address()
    escrow_size = len(payload) + ESCROW_HEADER_SIZE
    try:
        escrow_rent = await rent_fn(escrow_size)
        target_rent = await rent_fn(PROGRAM_ACCOUNT_SIZE)
        program_data_rent = await rent_fn(PROGRAM_DATA_HEADER_SIZE + max_data_len)
    except (ApiError, RpcError, httpx.HTTPError) as e:
        raise PlanningError(f"Rent exemption query failed: {e}") from e

    target_data = program_data_address(target)

    operations: typing.List[Operation] = [
        CreateAccount(fee_payer, escrow, escrow_rent, escrow_size),
        InitializeEscrow(escrow, fee_payer),
    ]
    for offset, chunk in create_chunks(payload, chunk_size):
        operations.append(WriteChunk(escrow, fee_payer, offset, chunk))
    operations.append(CreateTarget(fee_payer, target, target_rent))
    operations.append(
        Finalize(
            payer=fee_payer,
            authority=fee_payer,
            escrow=escrow,
            target=target,
            target_data=target_data,
            max_data_len=max_data_len,
        )
    )

    deployment_plan = DeploymentPlan(
        operations=tuple(operations),
        payload_length=len(payload),
        chunk_size=chunk_size,
        fee_payer=fee_payer,
        escrow=escrow,
        target=target,
        target_data=target_data,
        escrow_rent=escrow_rent,
        target_rent=target_rent,
        program_data_rent=program_data_rent,
        max_data_len=max_data_len,
    )
    deployment_plan.validate()
    return deployment_plan


class DeploymentPlanner:
    """Plans deployments with rent figures from a live cluster."""

    client: RpcClient
    chunk_size: int
    upgrade_headroom: int

    def __init__(
        self,
        client: RpcClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        upgrade_headroom: int = DEFAULT_UPGRADE_HEADROOM,
    ):
        self.client = client
        self.chunk_size = chunk_size
        self.upgrade_headroom = upgrade_headroom

    async def plan(
        self,
        payload: bytes,
        escrow_keypair: Keypair,
        target_keypair: Keypair,
        fee_payer: Address,
    ) -> DeploymentPlan:
        return await plan(
            payload,
            escrow_keypair,
            target_keypair,
            fee_payer,
            self.client.get_minimum_balance_for_rent_exemption,
            self.chunk_size,
            self.upgrade_headroom,
        )


class Test(unittest.IsolatedAsyncioTestCase):
    @staticmethod
    async def rent(size: int) -> int:
        return (size + 128) * 6960

    def setUp(self):
        self.escrow = Keypair.generate()
        self.target = Keypair.generate()
        self.fee_payer = Keypair.generate().address()

    async def test_example_scenario(self):
        payload = os.urandom(1900)
        deployment_plan = await plan(
            payload, self.escrow, self.target, self.fee_payer, self.rent
        )

        writes = deployment_plan.write_chunks()
        self.assertEqual([w.offset for w in writes], [0, 900, 1800])
        self.assertEqual([len(w.data_bytes) for w in writes], [900, 900, 100])
        self.assertEqual(len(deployment_plan), 7)
        self.assertEqual(
            [type(op) for op in deployment_plan.operations],
            [
                CreateAccount,
                InitializeEscrow,
                WriteChunk,
                WriteChunk,
                WriteChunk,
                CreateTarget,
                Finalize,
            ],
        )
        self.assertEqual(deployment_plan.payload(), payload)
        self.assertEqual(deployment_plan.max_data_len, 1900 + DEFAULT_UPGRADE_HEADROOM)

        create = deployment_plan.operations[0]
        self.assertEqual(create.space, 1900 + ESCROW_HEADER_SIZE)
        self.assertEqual(create.lamports, await self.rent(1900 + ESCROW_HEADER_SIZE))
        target = deployment_plan.operations[5]
        self.assertEqual(target.lamports, await self.rent(PROGRAM_ACCOUNT_SIZE))
        self.assertEqual(
            deployment_plan.program_data_rent,
            await self.rent(PROGRAM_DATA_HEADER_SIZE + 1900 + DEFAULT_UPGRADE_HEADROOM),
        )
        self.assertEqual(
            deployment_plan.total_rent(),
            deployment_plan.program_data_rent + deployment_plan.target_rent,
        )
        self.assertEqual(
            deployment_plan.operations[6].target_data,
            program_data_address(self.target.address()),
        )

    async def test_partition_property(self):
        for length in (1, 899, 900, 901, 1800, 4321, 65_537):
            payload = os.urandom(length)
            deployment_plan = await plan(
                payload, self.escrow, self.target, self.fee_payer, self.rent
            )
            writes = deployment_plan.write_chunks()
            self.assertEqual(len(writes), -(-length // DEFAULT_CHUNK_SIZE))

            covered = 0
            for write in writes:
                self.assertEqual(write.offset, covered)
                covered += len(write.data_bytes)
            self.assertEqual(covered, length)
            self.assertEqual(deployment_plan.payload(), payload)

    async def test_empty_payload(self):
        with self.assertRaises(InvalidPayload):
            await plan(b"", self.escrow, self.target, self.fee_payer, self.rent)

    async def test_rent_failure(self):
        async def failing_rent(size: int) -> int:
            raise RpcError("node is behind", -32005)

        with self.assertRaises(PlanningError) as cm:
            await plan(b"\x01", self.escrow, self.target, self.fee_payer, failing_rent)
        self.assertIsInstance(cm.exception.__cause__, RpcError)

    async def test_chunk_size_bounds(self):
        with self.assertRaises(PlanningError):
            await plan(
                b"\x01" * 10,
                self.escrow,
                self.target,
                self.fee_payer,
                self.rent,
                chunk_size=MAX_CHUNK_SIZE + 1,
            )
        deployment_plan = await plan(
            b"\x01" * 5000,
            self.escrow,
            self.target,
            self.fee_payer,
            self.rent,
            chunk_size=MAX_CHUNK_SIZE,
        )
        self.assertEqual(deployment_plan.write_chunks()[1].offset, MAX_CHUNK_SIZE)

    def test_max_chunk_size_fits_transaction(self):
        self.assertGreater(MAX_CHUNK_SIZE, DEFAULT_CHUNK_SIZE)
        escrow = self.escrow.address()
        instruction = WriteChunk(escrow, self.fee_payer, 0, b"\x00" * MAX_CHUNK_SIZE)
        self.assertEqual(
            estimate_size([instruction.to_instruction()], self.fee_payer),
            MAX_TRANSACTION_SIZE,
        )

    def test_validate_rejects_gap(self):
        escrow = self.escrow.address()
        operations = (
            CreateAccount(self.fee_payer, escrow, 1, 40),
            InitializeEscrow(escrow, self.fee_payer),
            WriteChunk(escrow, self.fee_payer, 0, b"\x01"),
            WriteChunk(escrow, self.fee_payer, 2, b"\x01"),
            Finalize(
                self.fee_payer,
                self.fee_payer,
                escrow,
                self.target.address(),
                program_data_address(self.target.address()),
                10,
            ),
        )
        deployment_plan = DeploymentPlan(
            operations, 3, 900, self.fee_payer, escrow, self.target.address(),
            program_data_address(self.target.address()), 1, 1, 1, 10,
        )
        with self.assertRaises(PlanningError):
            deployment_plan.validate()

    async def test_planner_uses_client_rent(self):
        client = unittest.mock.Mock()
        client.get_minimum_balance_for_rent_exemption = unittest.mock.AsyncMock(
            side_effect=[2_000_000, 1_000_000, 9_000_000]
        )
        planner = DeploymentPlanner(client, chunk_size=500)
        deployment_plan = await planner.plan(
            b"\x02" * 1200, self.escrow, self.target, self.fee_payer
        )
        self.assertEqual(deployment_plan.escrow_rent, 2_000_000)
        self.assertEqual(deployment_plan.target_rent, 1_000_000)
        self.assertEqual(deployment_plan.program_data_rent, 9_000_000)
        self.assertEqual(deployment_plan.total_rent(), 10_000_000)
        client.get_minimum_balance_for_rent_exemption.assert_any_await(
            PROGRAM_DATA_HEADER_SIZE + 1200 + DEFAULT_UPGRADE_HEADROOM
        )
        self.assertEqual(len(deployment_plan.write_chunks()), 3)
        client.get_minimum_balance_for_rent_exemption.assert_any_await(
            1200 + ESCROW_HEADER_SIZE
        )


if __name__ == "__main__":
    unittest.main()
