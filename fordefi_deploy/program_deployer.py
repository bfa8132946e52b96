# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
End-to-end program deployment.

``ProgramDeployer`` ties the pieces together:

1. **Pre-flight**: refuse buffer or program keypairs whose address already
   holds an account, and check the vault can pay the peak rent (buffer or
   ProgramData, plus the program account) and a fee per transaction before
   anything is sent.
2. **Plan**: split the binary into loader operations.
3. **Batch**: pack the operations into transactions.
4. **Execute**: sign each transaction with Fordefi, send and confirm it, with
   blockhash refresh on expiry.

When a transaction fails after the buffer was created, the buffer address and
the command that reclaims its rent are logged before the error is re-raised.

Examples:
    Deploy from files::

        config = DeployConfig.from_env()
        deployer = ProgramDeployer.from_config(config)
        try:
            result = await deployer.deploy_from_files(
                config.program_so_path,
                config.buffer_keypair_path,
                config.program_keypair_path,
            )
            print(result.program_id, result.program_data)
        finally:
            await deployer.close()
"""

import logging
import os
import tempfile
import typing
import unittest
import unittest.mock
from dataclasses import dataclass

import httpx

from .address import Address, program_data_address
from .async_client import AccountInfo, ApiError, ClientConfig, RpcClient, RpcError
from .buffer_recovery import BufferRecovery
from .config import DeployConfig
from .deployment_plan import (
    DEFAULT_UPGRADE_HEADROOM,
    DeploymentPlan,
    DeploymentPlanner,
)
from .exceptions import (
    DeploymentFailed,
    InsufficientFunds,
    InvalidPayload,
    PlanningError,
)
from .fordefi_client import FordefiClient
from .fordefi_signer import FordefiSigner
from .instructions import (
    ESCROW_HEADER_SIZE,
    PROGRAM_ACCOUNT_SIZE,
    PROGRAM_DATA_HEADER_SIZE,
)
from .keypair import Keypair
from .transaction_batcher import TransactionTemplate, batch
from .transaction_executor import TransactionExecutor


@dataclass
class DeploymentResult:
    program_id: Address
    program_data: Address
    buffer: Address
    signatures: typing.List[str]


class ProgramDeployer:
    """Deploys program binaries with a Fordefi vault as payer and authority."""

    rpc_client: RpcClient
    signer: FordefiSigner
    executor: TransactionExecutor
    planner: DeploymentPlanner
    fordefi_client: typing.Optional[FordefiClient]
    isolate_writes: bool
    message_version: typing.Optional[int]

    def __init__(
        self,
        rpc_client: RpcClient,
        signer: FordefiSigner,
        executor: TransactionExecutor,
        planner: DeploymentPlanner,
        fordefi_client: typing.Optional[FordefiClient] = None,
        isolate_writes: bool = True,
        message_version: typing.Optional[int] = 0,
    ):
        self.rpc_client = rpc_client
        self.signer = signer
        self.executor = executor
        self.planner = planner
        self.fordefi_client = fordefi_client
        self.isolate_writes = isolate_writes
        self.message_version = message_version

    @staticmethod
    def from_config(config: DeployConfig) -> "ProgramDeployer":
        """Build the clients and components described by ``config``.

        Raises:
            ConfigError: If the API signer key cannot be read.
        """
        fordefi_config = config.fordefi_config()
        rpc_client = RpcClient(config.rpc_url, ClientConfig())
        fordefi_client = FordefiClient(fordefi_config)
        signer = FordefiSigner(
            rpc_client,
            fordefi_client,
            config.vault_id,
            config.vault_address,
            config.chain,
            config.ephemeral_signing,
        )
        executor = TransactionExecutor(signer, rpc_client, config.fee_lamports)
        planner = DeploymentPlanner(rpc_client, config.chunk_size)
        return ProgramDeployer(
            rpc_client,
            signer,
            executor,
            planner,
            fordefi_client,
            message_version=config.message_version,
        )

    @property
    def vault_address(self) -> Address:
        return self.signer.vault_address

    def recovery(self, recipient: typing.Optional[Address] = None) -> BufferRecovery:
        return BufferRecovery(
            self.rpc_client,
            self.executor,
            self.vault_address,
            recipient,
            message_version=self.message_version,
        )

    async def close(self):
        await self.rpc_client.close()
        if self.fordefi_client is not None:
            await self.fordefi_client.close()

    async def deploy_from_files(
        self, program_so_path: str, buffer_keypair_path: str, program_keypair_path: str
    ) -> DeploymentResult:
        """Deploy the binary at ``program_so_path``.

        Keypair files that do not exist yet are generated and stored, so a
        second run with the same paths reuses the same addresses.
        """
        try:
            with open(program_so_path, "rb") as f:
                payload = f.read()
        except OSError as e:
            raise InvalidPayload(f"Cannot read program binary {program_so_path}: {e}") from e

        buffer_keypair = load_or_create_keypair(buffer_keypair_path)
        program_keypair = load_or_create_keypair(program_keypair_path)
        return await self.deploy(payload, buffer_keypair, program_keypair)

    async def deploy(
        self, payload: bytes, buffer_keypair: Keypair, program_keypair: Keypair
    ) -> DeploymentResult:
        """Deploy ``payload`` to the address of ``program_keypair``.

        Raises:
            PlanningError: If a keypair is already in use or planning fails.
            InsufficientFunds: If the vault cannot cover rent and fees.
            DeploymentFailed: If any transaction fails; later transactions are
                not attempted.
        """
        await self.check_unused(buffer_keypair, program_keypair)
        deployment_plan = await self.planner.plan(
            payload, buffer_keypair, program_keypair, self.vault_address
        )
        templates = batch(
            deployment_plan,
            [buffer_keypair, program_keypair],
            isolate_writes=self.isolate_writes,
            version=self.message_version,
        )
        await self.check_balance(deployment_plan, templates)

        logging.info(
            f"Deploying {deployment_plan.payload_length} bytes to program "
            f"{deployment_plan.target} through buffer {deployment_plan.escrow}: "
            f"{len(deployment_plan.write_chunks())} writes in {len(templates)} transactions"
        )

        try:
            confirmed = await self.executor.execute(templates)
        except DeploymentFailed as e:
            if e.index > 0:
                logging.error(
                    f"Deployment stopped at transaction {e.index}. Buffer "
                    f"{deployment_plan.escrow} may still hold "
                    f"{deployment_plan.escrow_rent} lamports; reclaim them with: "
                    f"python -m fordefi_deploy.cli close-buffer {deployment_plan.escrow}"
                )
            raise

        result = DeploymentResult(
            program_id=deployment_plan.target,
            program_data=deployment_plan.target_data,
            buffer=deployment_plan.escrow,
            signatures=[transaction.signature for transaction in confirmed],
        )
        logging.info(
            f"Program {result.program_id} deployed, program data {result.program_data}"
        )
        return result

    async def check_unused(self, buffer_keypair: Keypair, program_keypair: Keypair):
        if buffer_keypair.address() == program_keypair.address():
            raise PlanningError("Buffer and program keypairs must differ")
        for name, keypair in (("Buffer", buffer_keypair), ("Program", program_keypair)):
            try:
                account = await self.rpc_client.get_account_info(keypair.address())
            except (ApiError, RpcError, httpx.HTTPError) as e:
                raise PlanningError(f"Cannot look up {keypair.address()}: {e}") from e
            if account is not None:
                raise PlanningError(
                    f"{name} address {keypair.address()} is already in use; "
                    "use a fresh keypair or close the old buffer first"
                )

    async def check_balance(
        self, deployment_plan: DeploymentPlan, templates: typing.List[TransactionTemplate]
    ):
        required = deployment_plan.total_rent() + self.executor.fee_lamports * len(
            templates
        )
        try:
            available = await self.rpc_client.get_balance(self.vault_address)
        except (ApiError, RpcError, httpx.HTTPError) as e:
            raise PlanningError(f"Cannot read the balance of {self.vault_address}: {e}") from e
        if available < required:
            raise InsufficientFunds(self.vault_address, required, available)
        logging.info(
            f"Vault {self.vault_address} holds {available} lamports, "
            f"deployment needs {required}"
        )


def load_or_create_keypair(path: str) -> Keypair:
    if os.path.exists(path):
        return Keypair.load(path)
    keypair = Keypair.generate()
    keypair.store(path)
    logging.info(f"Generated keypair {keypair.address()} at {path}")
    return keypair


class Test(unittest.IsolatedAsyncioTestCase):
    @staticmethod
    async def rent(size: int) -> int:
        return (size + 128) * 6960

    def setUp(self):
        self.vault = Keypair.generate().address()
        self.accounts: typing.Dict[Address, AccountInfo] = {}
        self.sent: typing.List[bytes] = []

        async def get_account_info(address):
            return self.accounts.get(address)

        async def send_transaction(raw):
            self.sent.append(raw)
            return raw.decode()

        self.rpc_client = unittest.mock.Mock()
        self.rpc_client.get_account_info = unittest.mock.AsyncMock(
            side_effect=get_account_info
        )
        self.rpc_client.get_minimum_balance_for_rent_exemption = unittest.mock.AsyncMock(
            side_effect=self.rent
        )
        self.rpc_client.get_balance = unittest.mock.AsyncMock(return_value=10**12)
        self.rpc_client.send_transaction = unittest.mock.AsyncMock(
            side_effect=send_transaction
        )
        self.rpc_client.confirm_transaction = unittest.mock.AsyncMock(return_value={})

        self.signer = unittest.mock.Mock(vault_address=self.vault)
        self.signer.sign = unittest.mock.AsyncMock(side_effect=self.envelope)

        self.deployer = ProgramDeployer(
            self.rpc_client,
            self.signer,
            TransactionExecutor(self.signer, self.rpc_client, 5000),
            DeploymentPlanner(self.rpc_client),
        )
        self.buffer = Keypair.generate()
        self.program = Keypair.generate()

    async def envelope(self, template, fee_lamports):
        return unittest.mock.Mock(
            raw=f"sig-{template.index}".encode(),
            signature=f"sig-{template.index}",
            last_valid_block_height=100,
        )

    async def test_deploy(self):
        result = await self.deployer.deploy(b"\x42" * 1900, self.buffer, self.program)
        self.assertEqual(result.program_id, self.program.address())
        self.assertEqual(result.buffer, self.buffer.address())
        self.assertEqual(result.program_data, program_data_address(self.program.address()))
        self.assertEqual(result.signatures, [f"sig-{index}" for index in range(5)])

        templates = [call.args[0] for call in self.signer.sign.await_args_list]
        self.assertEqual(
            [template.describe() for template in templates],
            [
                "CreateAccount+InitializeEscrow",
                "WriteChunk",
                "WriteChunk",
                "WriteChunk",
                "CreateTarget+Finalize",
            ],
        )
        self.assertEqual(templates[0].signers, (self.buffer,))
        self.assertEqual(templates[4].signers, (self.program,))
        for call in self.signer.sign.await_args_list:
            self.assertEqual(call.args[1], 5000)

    async def test_insufficient_funds(self):
        self.rpc_client.get_balance.return_value = 1000
        with self.assertRaises(InsufficientFunds) as cm:
            await self.deployer.deploy(b"\x42" * 1900, self.buffer, self.program)
        program_data_rent = await self.rent(
            PROGRAM_DATA_HEADER_SIZE + 1900 + DEFAULT_UPGRADE_HEADROOM
        )
        self.assertEqual(
            cm.exception.required,
            program_data_rent + await self.rent(PROGRAM_ACCOUNT_SIZE) + 5 * 5000,
        )
        self.assertEqual(cm.exception.available, 1000)
        self.signer.sign.assert_not_awaited()
        self.assertEqual(self.sent, [])

    async def test_balance_covers_program_data_rent(self):
        buffer_and_program = (
            await self.rent(1900 + ESCROW_HEADER_SIZE)
            + await self.rent(PROGRAM_ACCOUNT_SIZE)
            + 5 * 5000
        )
        self.rpc_client.get_balance.return_value = buffer_and_program
        with self.assertRaises(InsufficientFunds):
            await self.deployer.deploy(b"\x42" * 1900, self.buffer, self.program)
        self.signer.sign.assert_not_awaited()

        self.rpc_client.get_balance.return_value = (
            await self.rent(PROGRAM_DATA_HEADER_SIZE + 1900 + DEFAULT_UPGRADE_HEADROOM)
            + await self.rent(PROGRAM_ACCOUNT_SIZE)
            + 5 * 5000
        )
        result = await self.deployer.deploy(b"\x42" * 1900, self.buffer, self.program)
        self.assertEqual(len(result.signatures), 5)

    async def test_reused_keypair(self):
        self.accounts[self.buffer.address()] = AccountInfo(1, self.vault, b"", False)
        with self.assertRaises(PlanningError):
            await self.deployer.deploy(b"\x42" * 100, self.buffer, self.program)
        with self.assertRaises(PlanningError):
            await self.deployer.deploy(b"\x42" * 100, self.program, self.program)
        self.signer.sign.assert_not_awaited()

    async def test_empty_payload(self):
        with self.assertRaises(InvalidPayload):
            await self.deployer.deploy(b"", self.buffer, self.program)

    async def test_failure_logs_recovery_hint(self):
        self.rpc_client.send_transaction.side_effect = [
            "sig-0",
            "sig-1",
            RpcError("Transaction simulation failed", -32002, {"logs": ["Program failed"]}),
        ]
        with self.assertLogs(level="ERROR") as logs:
            with self.assertRaises(DeploymentFailed) as cm:
                await self.deployer.deploy(b"\x42" * 1900, self.buffer, self.program)
        self.assertEqual(cm.exception.index, 2)
        self.assertEqual(cm.exception.logs, ["Program failed"])
        self.assertTrue(
            any(f"close-buffer {self.buffer.address()}" in line for line in logs.output)
        )
        self.assertEqual(self.signer.sign.await_count, 3)

    async def test_deploy_from_files(self):
        with tempfile.TemporaryDirectory() as directory:
            so_path = os.path.join(directory, "program.so")
            with open(so_path, "wb") as f:
                f.write(b"\x7fELF" + b"\x00" * 500)
            buffer_path = os.path.join(directory, "buffer.json")
            program_path = os.path.join(directory, "program.json")

            result = await self.deployer.deploy_from_files(so_path, buffer_path, program_path)
            self.assertEqual(result.program_id, Keypair.load(program_path).address())
            self.assertEqual(result.buffer, Keypair.load(buffer_path).address())

            with self.assertRaises(InvalidPayload):
                await self.deployer.deploy_from_files(
                    os.path.join(directory, "missing.so"), buffer_path, program_path
                )

    async def test_recovery_shares_clients(self):
        recovery = self.deployer.recovery()
        self.assertIs(recovery.rpc_client, self.rpc_client)
        self.assertEqual(recovery.authority, self.vault)
        self.assertEqual(recovery.message_version, 0)

        self.deployer.message_version = None
        self.assertIsNone(self.deployer.recovery().message_version)


if __name__ == "__main__":
    unittest.main()
