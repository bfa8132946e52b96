# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Grouping planned operations into transactions.

Operations are packed greedily in plan order: the next operation joins the
current transaction while the fully signed size stays within the limit, and
starts a new one otherwise. Write operations are kept alone by default, since
the chunk size already fills most of a transaction. With the default settings a
deployment becomes:

    [CreateAccount, InitializeEscrow], [Write], ..., [Write], [CreateTarget, Finalize]

Templates carry no blockhash. The signing adapter attaches a fresh one on
every attempt.
"""

from __future__ import annotations

import typing
import unittest
from dataclasses import dataclass

from .address import Address
from .deployment_plan import DeploymentPlan, plan
from .exceptions import PlanningError
from .instructions import (
    Close,
    CreateAccount,
    CreateTarget,
    Finalize,
    InitializeEscrow,
    Operation,
    WriteChunk,
    to_instructions,
)
from .keypair import Keypair
from .transactions import MAX_TRANSACTION_SIZE, Message, estimate_size


@dataclass(frozen=True)
class TransactionTemplate:
    """Operations for one transaction, its fee payer and its local co-signers."""

    index: int
    operations: typing.Tuple[Operation, ...]
    fee_payer: Address
    signers: typing.Tuple[Keypair, ...] = ()
    version: typing.Optional[int] = 0

    def compile(self, recent_blockhash: typing.Union[str, bytes]) -> Message:
        return Message.compile(
            to_instructions(self.operations),
            self.fee_payer,
            recent_blockhash,
            self.version,
        )

    def estimated_size(self) -> int:
        return estimate_size(
            to_instructions(self.operations), self.fee_payer, self.version
        )

    def describe(self) -> str:
        return "+".join(type(operation).__name__ for operation in self.operations)


def batch(
    deployment_plan: DeploymentPlan,
    signers: typing.Sequence[Keypair] = (),
    max_bytes_per_tx: int = MAX_TRANSACTION_SIZE,
    isolate_writes: bool = True,
    version: typing.Optional[int] = 0,
) -> typing.List[TransactionTemplate]:
    """Batch a deployment plan; see ``batch_operations``."""
    return batch_operations(
        deployment_plan.operations,
        deployment_plan.fee_payer,
        signers,
        max_bytes_per_tx,
        isolate_writes,
        version,
    )


def batch_operations(
    operations: typing.Sequence[Operation],
    fee_payer: Address,
    signers: typing.Sequence[Keypair] = (),
    max_bytes_per_tx: int = MAX_TRANSACTION_SIZE,
    isolate_writes: bool = True,
    version: typing.Optional[int] = 0,
) -> typing.List[TransactionTemplate]:
    """Pack ``operations`` into transaction templates without reordering them.

    Args:
        operations: Operations in execution order.
        fee_payer: Fee payer of every transaction.
        signers: Local keypairs that may have to co-sign; each template gets
            only those its accounts require.
        max_bytes_per_tx: Ceiling on the fully signed serialized size.
        isolate_writes: Keep every WriteChunk in a transaction of its own.
        version: Message version, None for legacy messages.

    Raises:
        PlanningError: If a single operation does not fit the ceiling.
    """
    groups: typing.List[typing.List[Operation]] = []
    current: typing.List[Operation] = []

    def size(group: typing.List[Operation]) -> int:
        return estimate_size(to_instructions(group), fee_payer, version)

    for position, operation in enumerate(operations):
        if size([operation]) > max_bytes_per_tx:
            raise PlanningError(
                f"Operation {position} ({type(operation).__name__}) does not fit "
                f"in {max_bytes_per_tx} bytes"
            )
        if isolate_writes and isinstance(operation, WriteChunk):
            if current:
                groups.append(current)
                current = []
            groups.append([operation])
            continue
        if current and size(current + [operation]) > max_bytes_per_tx:
            groups.append(current)
            current = []
        current.append(operation)
    if current:
        groups.append(current)

    templates = []
    for index, group in enumerate(groups):
        required = set(
            Message.compile(
                to_instructions(group), fee_payer, b"\x00" * 32, version
            ).signers()
        )
        template_signers = tuple(
            keypair
            for keypair in signers
            if keypair.address() in required and keypair.address() != fee_payer
        )
        templates.append(
            TransactionTemplate(index, tuple(group), fee_payer, template_signers, version)
        )
    return templates


class Test(unittest.IsolatedAsyncioTestCase):
    @staticmethod
    async def rent(size: int) -> int:
        return (size + 128) * 6960

    @staticmethod
    def small_writes(fee_payer: Address, escrow: Address) -> typing.List[Operation]:
        return [
            WriteChunk(escrow, fee_payer, offset * 10, b"\x01" * 10) for offset in range(4)
        ]

    async def asyncSetUp(self):
        self.escrow = Keypair.generate()
        self.target = Keypair.generate()
        self.fee_payer = Keypair.generate().address()
        self.plan = await plan(
            b"\x07" * 1900, self.escrow, self.target, self.fee_payer, self.rent
        )

    def test_default_policy(self):
        templates = batch(self.plan, [self.escrow, self.target])
        self.assertEqual(
            [[type(op) for op in t.operations] for t in templates],
            [
                [CreateAccount, InitializeEscrow],
                [WriteChunk],
                [WriteChunk],
                [WriteChunk],
                [CreateTarget, Finalize],
            ],
        )
        self.assertEqual([t.index for t in templates], [0, 1, 2, 3, 4])
        self.assertEqual(templates[0].signers, (self.escrow,))
        self.assertEqual(templates[1].signers, ())
        self.assertEqual(templates[4].signers, (self.target,))
        for template in templates:
            self.assertLessEqual(template.estimated_size(), MAX_TRANSACTION_SIZE)

    def test_order_preserved(self):
        templates = batch(self.plan, [self.escrow, self.target])
        flattened = [op for t in templates for op in t.operations]
        self.assertEqual(tuple(flattened), self.plan.operations)

    def test_deterministic(self):
        first = batch(self.plan, [self.escrow, self.target])
        second = batch(self.plan, [self.escrow, self.target])
        self.assertEqual(first, second)

    def test_tight_ceiling_splits_pairs(self):
        setup = list(self.plan.operations[:2])
        together = estimate_size(to_instructions(setup), self.fee_payer)
        templates = batch_operations(setup, self.fee_payer, max_bytes_per_tx=together - 1)
        self.assertEqual(len(templates), 2)

    def test_packing_without_isolation(self):
        small = self.small_writes(self.fee_payer, self.escrow.address())
        templates = batch_operations(small, self.fee_payer, isolate_writes=False)
        self.assertEqual(len(templates), 1)
        templates = batch_operations(small, self.fee_payer)
        self.assertEqual(len(templates), len(small))

    def test_oversized_operation(self):
        with self.assertRaises(PlanningError):
            batch(self.plan, max_bytes_per_tx=600)

    def test_close_template(self):
        close = Close(self.escrow.address(), self.fee_payer, self.fee_payer)
        templates = batch_operations([close], self.fee_payer)
        self.assertEqual(len(templates), 1)
        self.assertEqual(templates[0].describe(), "Close")


if __name__ == "__main__":
    unittest.main()
