# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Command line entry points.

Supported Commands:
- deploy: Deploy the program binary at PROGRAM_SO_PATH
- close-buffer: Close a buffer left by a failed deployment and reclaim its rent

All settings come from environment variables; see ``fordefi_deploy.config``.

Examples:
    Deploy a program::

        export FORDEFI_API_USER_TOKEN=...
        export FORDEFI_VAULT_ID=...
        export FORDEFI_VAULT_ADDRESS=...
        python -m fordefi_deploy.cli deploy

    Reclaim the rent of a failed deployment::

        python -m fordefi_deploy.cli close-buffer 5ZWj7a1f8tWkjBESHKgrLmXshuXxqeY9SYcfbshpAqPG
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import unittest
import unittest.mock
from typing import List

from .address import Address
from .config import DeployConfig, log_level
from .exceptions import (
    ConfigError,
    DeployError,
    DeploymentFailed,
    NotFound,
    OracleAuthError,
    cause_chain,
    root_cause,
)
from .program_deployer import DeploymentResult, ProgramDeployer

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

SIGNATURE_HINT = (
    "Signature verification failed. Check that FORDEFI_VAULT_ADDRESS is the "
    "address of FORDEFI_VAULT_ID, and that the buffer and program keypairs "
    "signed the same message Fordefi signed (try EPHEMERAL_SIGNING=oracle)."
)


async def deploy(config: DeployConfig) -> DeploymentResult:
    deployer = ProgramDeployer.from_config(config)
    try:
        result = await deployer.deploy_from_files(
            config.program_so_path,
            config.buffer_keypair_path,
            config.program_keypair_path,
        )
    finally:
        await deployer.close()

    print(f"Program Id: {result.program_id}")
    print(f"Program data: {result.program_data}")
    print(f"Buffer: {result.buffer}")
    print(f"Transactions: {len(result.signatures)}")
    return result


async def close_buffer(config: DeployConfig, buffer: Address, recipient: Address | None):
    deployer = ProgramDeployer.from_config(config)
    try:
        confirmed = await deployer.recovery(recipient).reclaim(buffer)
    finally:
        await deployer.close()
    print(f"Closed buffer {buffer}: {confirmed.signature}")
    return confirmed


def report_failure(error: DeployError):
    """Log ``error``, its causes, any program logs and a hint where one applies."""
    logging.error(f"{type(error).__name__}: {error}")
    for cause in cause_chain(error)[1:]:
        logging.error(f"  caused by {type(cause).__name__}: {cause}")
    if isinstance(error, DeploymentFailed):
        for line in error.logs:
            logging.error(f"  log: {line}")

    root = root_cause(error)
    if "signature verification" in str(root).lower():
        logging.error(SIGNATURE_HINT)
    if isinstance(root, OracleAuthError):
        logging.error(
            "Fordefi rejected the request; check FORDEFI_API_USER_TOKEN and "
            "FORDEFI_API_SIGNER_PRIVATE_KEY_PATH"
        )


async def main(args: List[str]) -> int:
    """Run a command and return the process exit code."""
    parser = argparse.ArgumentParser(description="Deploy Solana programs with Fordefi")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("deploy", help="Deploy the program binary at PROGRAM_SO_PATH")
    close = subparsers.add_parser(
        "close-buffer", help="Close a buffer and reclaim its rent"
    )
    close.add_argument("buffer", help="Buffer address", type=Address.from_str)
    close.add_argument(
        "--recipient",
        help="Address that receives the lamports (default: the vault)",
        type=Address.from_str,
    )
    parsed_args = parser.parse_args(args)

    logging.basicConfig(level=log_level(), format=LOG_FORMAT)

    try:
        config = DeployConfig.from_env()
        if parsed_args.command == "deploy":
            await deploy(config)
        else:
            await close_buffer(config, parsed_args.buffer, parsed_args.recipient)
    except DeployError as e:
        report_failure(e)
        return 1
    return 0


def run():
    sys.exit(asyncio.run(main(sys.argv[1:])))


class Test(unittest.IsolatedAsyncioTestCase):
    env = {
        "FORDEFI_API_USER_TOKEN": "token",
        "FORDEFI_VAULT_ID": "vault-id",
        "FORDEFI_VAULT_ADDRESS": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
    }
    buffer = "BPFLoaderUpgradeab1e11111111111111111111111"

    def setUp(self):
        self.deployer = unittest.mock.Mock()
        self.deployer.close = unittest.mock.AsyncMock()
        self.deployer.deploy_from_files = unittest.mock.AsyncMock(
            return_value=DeploymentResult(
                Address.from_str(self.buffer),
                Address.from_str(self.buffer),
                Address.from_str(self.buffer),
                ["sig"],
            )
        )
        self.recovery = unittest.mock.Mock()
        self.recovery.reclaim = unittest.mock.AsyncMock(
            return_value=unittest.mock.Mock(signature="close-sig")
        )
        self.deployer.recovery.return_value = self.recovery

        patchers = [
            unittest.mock.patch.dict(os.environ, self.env, clear=True),
            unittest.mock.patch(
                "fordefi_deploy.cli.ProgramDeployer.from_config",
                return_value=self.deployer,
            ),
            unittest.mock.patch("builtins.print"),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)

    async def test_deploy(self):
        self.assertEqual(await main(["deploy"]), 0)
        self.deployer.deploy_from_files.assert_awaited_once_with(
            "./target/deploy/program.so", "./buffer-keypair.json", "./program-keypair.json"
        )
        self.deployer.close.assert_awaited_once()

    async def test_deploy_failure(self):
        try:
            try:
                raise DeployError("Transaction signature verification failure")
            except DeployError as e:
                raise DeploymentFailed(4, e, ["Program log: x"]) from e
        except DeploymentFailed as e:
            failure = e
        self.deployer.deploy_from_files.side_effect = failure

        with self.assertLogs(level="ERROR") as logs:
            self.assertEqual(await main(["deploy"]), 1)
        output = "\n".join(logs.output)
        self.assertIn("Program log: x", output)
        self.assertIn(SIGNATURE_HINT, output)
        self.deployer.close.assert_awaited_once()

    async def test_close_buffer(self):
        self.assertEqual(await main(["close-buffer", self.buffer]), 0)
        self.recovery.reclaim.assert_awaited_once_with(Address.from_str(self.buffer))
        self.deployer.recovery.assert_called_once_with(None)

    async def test_close_buffer_not_found(self):
        self.recovery.reclaim.side_effect = NotFound(Address.from_str(self.buffer))
        with self.assertLogs(level="ERROR"):
            self.assertEqual(await main(["close-buffer", self.buffer]), 1)

    async def test_missing_configuration(self):
        with unittest.mock.patch.dict(os.environ, {}, clear=True):
            with self.assertLogs(level="ERROR") as logs:
                self.assertEqual(await main(["deploy"]), 1)
        self.assertIn(ConfigError.__name__, logs.output[0])

    async def test_log_level_from_environment(self):
        with unittest.mock.patch.dict(os.environ, {"LOG_LEVEL": "debug"}):
            with unittest.mock.patch("logging.basicConfig") as basic_config:
                self.assertEqual(await main(["deploy"]), 0)
        self.assertEqual(basic_config.call_args.kwargs["level"], logging.DEBUG)

    async def test_usage_errors(self):
        with unittest.mock.patch("sys.stderr"):
            with self.assertRaises(SystemExit):
                await main([])
            with self.assertRaises(SystemExit):
                await main(["close-buffer", "not-an-address-0"])


if __name__ == "__main__":
    run()
