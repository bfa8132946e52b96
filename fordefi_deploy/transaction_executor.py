# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

import enum
import logging
import typing
import unittest
import unittest.mock
from dataclasses import dataclass

import httpx

from .async_client import ApiError, RpcClient, RpcError
from .exceptions import (
    BroadcastError,
    DeployError,
    DeploymentFailed,
    LifetimeExpired,
    OracleTerminalFailure,
    cause_chain,
    root_cause,
)
from .fordefi_signer import DEFAULT_FEE_LAMPORTS, FordefiSigner
from .instructions import WriteChunk
from .keypair import Keypair
from .transaction_batcher import TransactionTemplate, batch_operations

DEFAULT_MAX_RETRIES = 3


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    SIGNING = "signing"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class TransactionAttempt:
    """Progress of one template through signing, broadcast and confirmation."""

    index: int
    status: TransactionStatus = TransactionStatus.PENDING
    attempts: int = 0
    signature: typing.Optional[str] = None
    failure: typing.Optional[BaseException] = None


@dataclass
class ConfirmedTransaction:
    index: int
    signature: str
    attempts: int


class TransactionExecutor:
    """Signs, sends and confirms transaction templates one after another.

    Each template is signed with a fresh blockhash, submitted with preflight
    simulation and then confirmed. When the blockhash expires before the
    transaction lands, the template is signed again from scratch, up to
    ``max_retries`` attempts in total. Any other failure stops the run: later
    templates are never signed.

    Failures surface as ``DeploymentFailed`` carrying the template index, the
    deepest exception of the chain, any program logs from simulation and the
    number of attempts made.

    Examples:
        Execute a batched deployment::

            executor = TransactionExecutor(signer, rpc_client, fee_lamports=5000)
            confirmed = await executor.execute(templates)
            for transaction in confirmed:
                print(transaction.index, transaction.signature)
    """

    signer: FordefiSigner
    rpc_client: RpcClient
    fee_lamports: int
    max_retries: int
    confirm: bool
    attempts: typing.List[TransactionAttempt]

    def __init__(
        self,
        signer: FordefiSigner,
        rpc_client: RpcClient,
        fee_lamports: int = DEFAULT_FEE_LAMPORTS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        confirm: bool = True,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.signer = signer
        self.rpc_client = rpc_client
        self.fee_lamports = fee_lamports
        self.max_retries = max_retries
        self.confirm = confirm
        self.attempts = []

    def with_max_retries(self, max_retries: int) -> "TransactionExecutor":
        return TransactionExecutor(
            self.signer, self.rpc_client, self.fee_lamports, max_retries, self.confirm
        )

    async def execute(
        self, templates: typing.Sequence[TransactionTemplate]
    ) -> typing.List[ConfirmedTransaction]:
        confirmed = []
        for template in templates:
            confirmed.append(await self.execute_one(template))
        return confirmed

    async def execute_one(self, template: TransactionTemplate) -> ConfirmedTransaction:
        record = TransactionAttempt(template.index)
        self.attempts.append(record)

        while True:
            record.attempts += 1
            record.status = TransactionStatus.PENDING
            try:
                signature = await self._attempt(template, record)
            except LifetimeExpired as e:
                record.status = TransactionStatus.FAILED
                record.failure = e
                if record.attempts >= self.max_retries:
                    logging.error(
                        f"Transaction {template.index} expired {record.attempts} "
                        "time(s), giving up"
                    )
                    raise DeploymentFailed(
                        template.index, root_cause(e), collect_logs(e), record.attempts
                    ) from e
                logging.warning(
                    f"Transaction {template.index} expired on attempt "
                    f"{record.attempts}/{self.max_retries}, signing again: {e}"
                )
                continue
            except (DeployError, ApiError, RpcError, httpx.HTTPError) as e:
                record.status = TransactionStatus.FAILED
                record.failure = e
                logging.error(
                    f"Transaction {template.index} ({template.describe()}) failed: {e}",
                    exc_info=True,
                )
                raise DeploymentFailed(
                    template.index, root_cause(e), collect_logs(e), record.attempts
                ) from e

            record.status = TransactionStatus.CONFIRMED
            logging.info(
                f"Transaction {template.index} ({template.describe()}) confirmed: "
                f"{signature}"
            )
            return ConfirmedTransaction(template.index, signature, record.attempts)

    async def _attempt(
        self, template: TransactionTemplate, record: TransactionAttempt
    ) -> str:
        record.status = TransactionStatus.SIGNING
        envelope = await self.signer.sign(template, self.fee_lamports)
        record.status = TransactionStatus.SIGNED
        record.signature = envelope.signature

        try:
            signature = await self.rpc_client.send_transaction(envelope.raw)
        except RpcError as e:
            raise classify(e) from e
        record.status = TransactionStatus.BROADCAST
        record.signature = signature
        logging.info(f"Transaction {template.index} sent: {signature}")

        if self.confirm:
            try:
                await self.rpc_client.confirm_transaction(
                    signature, envelope.last_valid_block_height
                )
            except RpcError as e:
                raise classify(e) from e
        return signature


def classify(error: RpcError) -> DeployError:
    """Map an RPC error to LifetimeExpired or BroadcastError."""
    if error.is_blockhash_expired():
        return LifetimeExpired(error.message)
    return BroadcastError(error.message, error.logs)


def collect_logs(error: BaseException) -> typing.List[str]:
    for item in cause_chain(error):
        logs = getattr(item, "logs", None)
        if logs:
            return list(logs)
    return []


class Test(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.vault = Keypair.generate().address()
        buffer = Keypair.generate().address()
        writes = [
            WriteChunk(buffer, self.vault, offset * 10, b"\x01" * 10) for offset in range(3)
        ]
        self.templates = batch_operations(writes, self.vault)

        self.signer = unittest.mock.Mock()
        self.signer.sign = unittest.mock.AsyncMock(side_effect=self.envelope)
        self.rpc_client = unittest.mock.Mock()
        self.rpc_client.send_transaction = unittest.mock.AsyncMock(
            side_effect=lambda raw: raw.decode()
        )
        self.rpc_client.confirm_transaction = unittest.mock.AsyncMock(return_value={})
        self.signed = 0

    async def envelope(self, template, fee_lamports):
        self.signed += 1
        return unittest.mock.Mock(
            raw=f"sig-{template.index}-{self.signed}".encode(),
            signature=f"sig-{template.index}-{self.signed}",
            last_valid_block_height=100 + self.signed,
        )

    def executor(self, max_retries=3) -> TransactionExecutor:
        return TransactionExecutor(self.signer, self.rpc_client, 7000, max_retries)

    async def test_execute_in_order(self):
        executor = self.executor()
        confirmed = await executor.execute(self.templates)
        self.assertEqual([c.index for c in confirmed], [0, 1, 2])
        self.assertEqual([c.attempts for c in confirmed], [1, 1, 1])
        self.assertEqual(confirmed[2].signature, "sig-2-3")
        for call in self.signer.sign.await_args_list:
            self.assertEqual(call.args[1], 7000)
        self.assertEqual(
            [a.status for a in executor.attempts], [TransactionStatus.CONFIRMED] * 3
        )
        self.rpc_client.confirm_transaction.assert_awaited_with("sig-2-3", 103)

    async def test_expired_then_confirmed(self):
        expired = RpcError("Transaction simulation failed: Blockhash not found", -32002)
        self.rpc_client.send_transaction.side_effect = [expired, "sig-ok"]
        confirmed = await self.executor().execute(self.templates[:1])
        self.assertEqual(confirmed[0].signature, "sig-ok")
        self.assertEqual(confirmed[0].attempts, 2)
        self.assertEqual(self.signer.sign.await_count, 2)

    async def test_retry_bound(self):
        self.rpc_client.send_transaction.side_effect = RpcError(
            "Blockhash not found", -32002
        )
        with self.assertRaises(DeploymentFailed) as cm:
            await self.executor(max_retries=3).execute(self.templates)
        self.assertEqual(cm.exception.index, 0)
        self.assertEqual(cm.exception.attempts, 3)
        self.assertIsInstance(cm.exception.cause, RpcError)
        self.assertEqual(self.signer.sign.await_count, 3)

    async def test_expiry_during_confirmation(self):
        self.rpc_client.confirm_transaction.side_effect = [
            LifetimeExpired("block height exceeded"),
            {},
        ]
        confirmed = await self.executor().execute(self.templates[:1])
        self.assertEqual(confirmed[0].attempts, 2)
        self.assertEqual(confirmed[0].signature, "sig-0-2")

    async def test_abort_before_next(self):
        failure = RpcError(
            "Transaction simulation failed: custom program error: 0x1",
            -32002,
            {"err": {"InstructionError": [0, {"Custom": 1}]}, "logs": ["Program log: boom"]},
        )
        self.rpc_client.send_transaction.side_effect = [
            "sig-0",
            failure,
            "sig-2",
        ]
        executor = self.executor()
        with self.assertRaises(DeploymentFailed) as cm:
            await executor.execute(self.templates)
        self.assertEqual(cm.exception.index, 1)
        self.assertEqual(cm.exception.attempts, 1)
        self.assertEqual(cm.exception.logs, ["Program log: boom"])
        self.assertIs(cm.exception.cause, failure)
        self.assertEqual(self.signer.sign.await_count, 2)
        self.assertEqual(executor.attempts[1].status, TransactionStatus.FAILED)

    async def test_oracle_failure_not_retried(self):
        self.signer.sign.side_effect = OracleTerminalFailure("fd-1", "aborted", "policy")
        with self.assertRaises(DeploymentFailed) as cm:
            await self.executor().execute(self.templates)
        self.assertIsInstance(cm.exception.cause, OracleTerminalFailure)
        self.assertEqual(self.signer.sign.await_count, 1)
        self.rpc_client.send_transaction.assert_not_awaited()

    def test_classify(self):
        self.assertIsInstance(
            classify(RpcError("x", -32002, {"err": "BlockhashNotFound"})), LifetimeExpired
        )
        broadcast = classify(RpcError("x", -32002, {"logs": ["a"]}))
        self.assertIsInstance(broadcast, BroadcastError)
        self.assertEqual(broadcast.logs, ["a"])

    def test_max_retries_positive(self):
        with self.assertRaises(ValueError):
            self.executor(max_retries=0)


if __name__ == "__main__":
    unittest.main()
