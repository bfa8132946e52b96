# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Reclaiming the rent held by buffers of failed deployments.

A deployment that stops after its buffer was created leaves the buffer, and
the lamports that keep it rent exempt, on the cluster. ``BufferRecovery``
closes such a buffer with a single loader ``Close`` instruction signed by the
vault (the buffer authority), sending the lamports back to the vault or to a
chosen recipient.
"""

import logging
import typing
import unittest
import unittest.mock
from dataclasses import dataclass

from .address import BPF_LOADER_UPGRADEABLE, SYSTEM_PROGRAM, Address
from .async_client import AccountInfo, RpcClient
from .codec import Deserializer
from .exceptions import (
    AlreadyClosed,
    DeploymentFailed,
    NotFound,
    OracleAuthError,
    RecoveryError,
)
from .instructions import ESCROW_HEADER_SIZE, Close
from .keypair import Keypair
from .transaction_batcher import batch_operations
from .transaction_executor import ConfirmedTransaction, TransactionExecutor

RECOVERY_MAX_RETRIES = 2
BUFFER_STATE = 1


@dataclass
class BufferInfo:
    address: Address
    lamports: int
    authority: typing.Optional[Address]
    data_length: int

    @staticmethod
    def from_account(address: Address, account: AccountInfo) -> "BufferInfo":
        """Decode the loader buffer header of ``account``.

        Raises:
            RecoveryError: If the account does not hold a loader buffer.
        """
        if len(account.data) < ESCROW_HEADER_SIZE - Address.LENGTH:
            raise RecoveryError(f"{address} is too small to be a buffer")
        der = Deserializer(account.data)
        state = der.u32()
        if state != BUFFER_STATE:
            raise RecoveryError(f"{address} is not a buffer (loader state {state})")
        authority = None
        if der.bool():
            if len(account.data) < ESCROW_HEADER_SIZE:
                raise RecoveryError(f"{address} has a truncated buffer authority")
            authority = Address.deserialize(der)
        return BufferInfo(
            address,
            account.lamports,
            authority,
            max(len(account.data) - ESCROW_HEADER_SIZE, 0),
        )


class BufferRecovery:
    """Closes loader buffers owned by the vault."""

    rpc_client: RpcClient
    executor: TransactionExecutor
    authority: Address
    recipient: Address
    message_version: typing.Optional[int]

    def __init__(
        self,
        rpc_client: RpcClient,
        executor: TransactionExecutor,
        authority: Address,
        recipient: typing.Optional[Address] = None,
        max_retries: int = RECOVERY_MAX_RETRIES,
        message_version: typing.Optional[int] = 0,
    ):
        self.rpc_client = rpc_client
        self.executor = executor.with_max_retries(max_retries)
        self.authority = authority
        self.recipient = recipient or authority
        self.message_version = message_version

    async def inspect(self, address: Address) -> BufferInfo:
        """Fetch and decode the buffer at ``address``.

        Raises:
            NotFound: If no account exists at ``address``.
            AlreadyClosed: If the account holds no lamports or is no longer
                owned by the loader.
            RecoveryError: If the account is not a buffer.
        """
        account = await self.rpc_client.get_account_info(address)
        if account is None:
            raise NotFound(address)
        if account.lamports == 0:
            raise AlreadyClosed(address, "no lamports left")
        if account.owner != BPF_LOADER_UPGRADEABLE:
            raise AlreadyClosed(address, f"owned by {account.owner}")
        info = BufferInfo.from_account(address, account)
        logging.info(
            f"Buffer {address}: {info.lamports} lamports, {info.data_length} bytes, "
            f"authority {info.authority}"
        )
        return info

    async def reclaim(self, address: Address) -> ConfirmedTransaction:
        """Close the buffer at ``address`` and return the confirmed transaction.

        Raises:
            NotFound, AlreadyClosed, RecoveryError: As ``inspect``, or when
                the buffer authority is not the vault.
            DeploymentFailed: If signing or sending the close fails.
        """
        info = await self.inspect(address)
        if info.authority != self.authority:
            raise RecoveryError(
                f"Buffer {address} has authority {info.authority}, not {self.authority}"
            )

        close = Close(address, self.recipient, self.authority)
        templates = batch_operations(
            [close], self.authority, version=self.message_version
        )
        confirmed = await self.executor.execute(templates)
        logging.info(
            f"Closed buffer {address}, {info.lamports} lamports returned to "
            f"{self.recipient}: {confirmed[0].signature}"
        )
        return confirmed[0]


class Test(unittest.IsolatedAsyncioTestCase):
    @staticmethod
    def buffer_data(authority: typing.Optional[Address], payload: bytes = b"") -> bytes:
        header = BUFFER_STATE.to_bytes(4, "little")
        if authority is None:
            return header + b"\x00" + payload
        return header + b"\x01" + authority.address + payload

    def setUp(self):
        self.vault = Keypair.generate().address()
        self.buffer = Keypair.generate().address()
        self.accounts: typing.Dict[Address, AccountInfo] = {
            self.buffer: AccountInfo(
                5_000_000,
                BPF_LOADER_UPGRADEABLE,
                self.buffer_data(self.vault, b"\x00" * 100),
                False,
            )
        }

        async def get_account_info(address):
            return self.accounts.get(address)

        async def send_transaction(raw):
            del self.accounts[self.buffer]
            return "close-signature"

        self.rpc_client = unittest.mock.Mock()
        self.rpc_client.get_account_info = unittest.mock.AsyncMock(
            side_effect=get_account_info
        )
        self.rpc_client.send_transaction = unittest.mock.AsyncMock(
            side_effect=send_transaction
        )
        self.rpc_client.confirm_transaction = unittest.mock.AsyncMock(return_value={})
        self.signer = unittest.mock.Mock()
        self.signer.sign = unittest.mock.AsyncMock(
            return_value=unittest.mock.Mock(
                raw=b"raw", signature="close-signature", last_valid_block_height=10
            )
        )
        self.recovery = BufferRecovery(
            self.rpc_client, TransactionExecutor(self.signer, self.rpc_client), self.vault
        )

    async def test_inspect(self):
        info = await self.recovery.inspect(self.buffer)
        self.assertEqual(info, BufferInfo(self.buffer, 5_000_000, self.vault, 100))

    async def test_reclaim_twice(self):
        confirmed = await self.recovery.reclaim(self.buffer)
        self.assertEqual(confirmed.signature, "close-signature")
        template = self.signer.sign.await_args.args[0]
        self.assertEqual(template.operations, (Close(self.buffer, self.vault, self.vault),))
        self.assertEqual(template.fee_payer, self.vault)

        with self.assertRaises(NotFound):
            await self.recovery.reclaim(self.buffer)
        self.assertEqual(self.signer.sign.await_count, 1)

    async def test_already_closed(self):
        self.accounts[self.buffer] = AccountInfo(0, BPF_LOADER_UPGRADEABLE, b"", False)
        with self.assertRaises(AlreadyClosed):
            await self.recovery.reclaim(self.buffer)

        self.accounts[self.buffer] = AccountInfo(890880, SYSTEM_PROGRAM, b"", False)
        with self.assertRaises(AlreadyClosed):
            await self.recovery.reclaim(self.buffer)
        self.signer.sign.assert_not_awaited()

    async def test_foreign_authority(self):
        other = Keypair.generate().address()
        self.accounts[self.buffer] = AccountInfo(
            5_000_000, BPF_LOADER_UPGRADEABLE, self.buffer_data(other), False
        )
        with self.assertRaises(RecoveryError):
            await self.recovery.reclaim(self.buffer)

    async def test_truncated_authority(self):
        data = self.buffer_data(self.vault)[: ESCROW_HEADER_SIZE - 1]
        self.accounts[self.buffer] = AccountInfo(
            5_000_000, BPF_LOADER_UPGRADEABLE, data, False
        )
        with self.assertRaises(RecoveryError):
            await self.recovery.inspect(self.buffer)
        self.signer.sign.assert_not_awaited()

    async def test_legacy_message(self):
        recovery = BufferRecovery(
            self.rpc_client,
            TransactionExecutor(self.signer, self.rpc_client),
            self.vault,
            message_version=None,
        )
        await recovery.reclaim(self.buffer)
        template = self.signer.sign.await_args.args[0]
        self.assertIsNone(template.version)

    async def test_custom_recipient(self):
        recipient = Keypair.generate().address()
        recovery = BufferRecovery(
            self.rpc_client,
            TransactionExecutor(self.signer, self.rpc_client),
            self.vault,
            recipient,
        )
        await recovery.reclaim(self.buffer)
        template = self.signer.sign.await_args.args[0]
        self.assertEqual(template.operations[0].recipient, recipient)

    async def test_signing_failure(self):
        self.signer.sign.side_effect = OracleAuthError("invalid token", 401)
        with self.assertRaises(DeploymentFailed) as cm:
            await self.recovery.reclaim(self.buffer)
        self.assertIsInstance(cm.exception.cause, OracleAuthError)
        self.assertIn(self.buffer, self.accounts)

    def test_recovery_retry_budget(self):
        self.assertEqual(self.recovery.executor.max_retries, RECOVERY_MAX_RETRIES)


if __name__ == "__main__":
    unittest.main()
