# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Environment configuration for deployments.

Every setting is read from an environment variable; only the Fordefi
credentials and vault are required.

Environment Variables:
    FORDEFI_API_USER_TOKEN: Bearer token of the Fordefi API user
        (``FORDEFI_API_TOKEN`` is accepted as a fallback)
    FORDEFI_VAULT_ID: Id of the Solana vault that pays and signs
    FORDEFI_VAULT_ADDRESS: Base58 address of that vault
    FORDEFI_API_SIGNER_PRIVATE_KEY_PATH: PEM file of the API signer key
        (default: ./fordefi_secret/private.pem)
    FORDEFI_API_BASE_URL: Fordefi API root (default: https://api.fordefi.com)
    FORDEFI_FEE_LAMPORTS: Fee set on every transaction (default: 5000)
    SOLANA_CLUSTER: devnet, testnet, mainnet or mainnet-beta (default: devnet)
    SOLANA_RPC_URL: RPC endpoint (default: the cluster's public endpoint)
    SOLANA_MESSAGE_VERSION: 0 or legacy (default: 0)
    PROGRAM_SO_PATH: Program binary (default: ./target/deploy/program.so)
    BUFFER_KEYPAIR_PATH: Buffer keypair file (default: ./buffer-keypair.json)
    PROGRAM_KEYPAIR_PATH: Program keypair file (default: ./program-keypair.json)
    CHUNK_SIZE: Bytes written per transaction (default: 900)
    EPHEMERAL_SIGNING: local or oracle (default: local)
    LOG_LEVEL: Logging level of the command line tool (default: INFO)
"""

import logging
import os
import typing
import unittest
import unittest.mock
from dataclasses import dataclass

from .address import Address
from .async_client import CLUSTER_URLS
from .deployment_plan import DEFAULT_CHUNK_SIZE
from .exceptions import ConfigError
from .fordefi_client import FordefiConfig
from .fordefi_signer import DEFAULT_FEE_LAMPORTS, FORDEFI_CHAINS, EphemeralSigning

DEFAULT_PRIVATE_KEY_PATH = "./fordefi_secret/private.pem"
DEFAULT_FORDEFI_URL = "https://api.fordefi.com"


@dataclass
class DeployConfig:
    api_user_token: str
    vault_id: str
    vault_address: Address
    private_key_path: str = DEFAULT_PRIVATE_KEY_PATH
    fordefi_base_url: str = DEFAULT_FORDEFI_URL
    fee_lamports: int = DEFAULT_FEE_LAMPORTS
    cluster: str = "devnet"
    rpc_url: str = CLUSTER_URLS["devnet"]
    message_version: typing.Optional[int] = 0
    program_so_path: str = "./target/deploy/program.so"
    buffer_keypair_path: str = "./buffer-keypair.json"
    program_keypair_path: str = "./program-keypair.json"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    ephemeral_signing: EphemeralSigning = EphemeralSigning.LOCAL

    @staticmethod
    def from_env(
        environ: typing.Optional[typing.Mapping[str, str]] = None
    ) -> "DeployConfig":
        """Read the configuration from ``environ`` (default: ``os.environ``).

        Raises:
            ConfigError: If a required variable is missing or a value is invalid.
        """
        env = os.environ if environ is None else environ

        token = env.get("FORDEFI_API_USER_TOKEN") or env.get("FORDEFI_API_TOKEN")
        if not token:
            raise ConfigError("FORDEFI_API_USER_TOKEN is not set")
        vault_id = required(env, "FORDEFI_VAULT_ID")
        try:
            vault_address = Address.from_str(required(env, "FORDEFI_VAULT_ADDRESS"))
        except ValueError as e:
            raise ConfigError(f"FORDEFI_VAULT_ADDRESS is not a valid address: {e}") from e

        cluster = env.get("SOLANA_CLUSTER", "devnet")
        if cluster not in FORDEFI_CHAINS:
            raise ConfigError(
                f"SOLANA_CLUSTER must be one of {', '.join(FORDEFI_CHAINS)}, got {cluster}"
            )

        try:
            ephemeral_signing = EphemeralSigning(env.get("EPHEMERAL_SIGNING", "local"))
        except ValueError as e:
            raise ConfigError("EPHEMERAL_SIGNING must be 'local' or 'oracle'") from e

        return DeployConfig(
            api_user_token=token,
            vault_id=vault_id,
            vault_address=vault_address,
            private_key_path=env.get(
                "FORDEFI_API_SIGNER_PRIVATE_KEY_PATH", DEFAULT_PRIVATE_KEY_PATH
            ),
            fordefi_base_url=env.get("FORDEFI_API_BASE_URL", DEFAULT_FORDEFI_URL),
            fee_lamports=integer(env, "FORDEFI_FEE_LAMPORTS", DEFAULT_FEE_LAMPORTS),
            cluster=cluster,
            rpc_url=env.get("SOLANA_RPC_URL") or CLUSTER_URLS[cluster],
            message_version=message_version(env.get("SOLANA_MESSAGE_VERSION", "0")),
            program_so_path=env.get("PROGRAM_SO_PATH", "./target/deploy/program.so"),
            buffer_keypair_path=env.get("BUFFER_KEYPAIR_PATH", "./buffer-keypair.json"),
            program_keypair_path=env.get("PROGRAM_KEYPAIR_PATH", "./program-keypair.json"),
            chunk_size=integer(env, "CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
            ephemeral_signing=ephemeral_signing,
        )

    @property
    def chain(self) -> str:
        return FORDEFI_CHAINS[self.cluster]

    def private_key_pem(self) -> bytes:
        try:
            with open(self.private_key_path, "rb") as f:
                return f.read()
        except OSError as e:
            raise ConfigError(
                f"Cannot read the API signer key at {self.private_key_path}: {e}"
            ) from e

    def fordefi_config(self) -> FordefiConfig:
        return FordefiConfig(
            api_user_token=self.api_user_token,
            private_key_pem=self.private_key_pem(),
            base_url=self.fordefi_base_url,
        )


def log_level(environ: typing.Optional[typing.Mapping[str, str]] = None) -> int:
    """The logging level named by LOG_LEVEL, INFO when unset or unknown."""
    env = os.environ if environ is None else environ
    name = env.get("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def required(env: typing.Mapping[str, str], name: str) -> str:
    value = env.get(name)
    if not value:
        raise ConfigError(f"{name} is not set")
    return value


def integer(env: typing.Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value}") from e
    if parsed <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return parsed


def message_version(value: str) -> typing.Optional[int]:
    if value.lower() == "legacy":
        return None
    if value == "0":
        return 0
    raise ConfigError(f"SOLANA_MESSAGE_VERSION must be '0' or 'legacy', got {value}")


class Test(unittest.TestCase):
    vault = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

    def env(self, **overrides) -> typing.Dict[str, str]:
        env = {
            "FORDEFI_API_USER_TOKEN": "token",
            "FORDEFI_VAULT_ID": "vault-id",
            "FORDEFI_VAULT_ADDRESS": self.vault,
        }
        env.update(overrides)
        return env

    def test_defaults(self):
        config = DeployConfig.from_env(self.env())
        self.assertEqual(config.vault_address, Address.from_str(self.vault))
        self.assertEqual(config.rpc_url, "https://api.devnet.solana.com")
        self.assertEqual(config.chain, "solana_devnet")
        self.assertEqual(config.fee_lamports, 5000)
        self.assertEqual(config.chunk_size, 900)
        self.assertEqual(config.message_version, 0)
        self.assertEqual(config.ephemeral_signing, EphemeralSigning.LOCAL)

    def test_overrides(self):
        config = DeployConfig.from_env(
            self.env(
                SOLANA_CLUSTER="mainnet-beta",
                SOLANA_RPC_URL="https://rpc.example",
                FORDEFI_FEE_LAMPORTS="10000",
                SOLANA_MESSAGE_VERSION="legacy",
                EPHEMERAL_SIGNING="oracle",
                LOG_LEVEL="debug",
            )
        )
        self.assertEqual(config.chain, "solana_mainnet")
        self.assertEqual(config.rpc_url, "https://rpc.example")
        self.assertEqual(config.fee_lamports, 10000)
        self.assertIsNone(config.message_version)
        self.assertEqual(config.ephemeral_signing, EphemeralSigning.ORACLE)

    def test_log_level(self):
        self.assertEqual(log_level({}), logging.INFO)
        self.assertEqual(log_level({"LOG_LEVEL": "debug"}), logging.DEBUG)
        self.assertEqual(log_level({"LOG_LEVEL": "verbose"}), logging.INFO)

    def test_token_fallback(self):
        env = self.env(FORDEFI_API_TOKEN="fallback")
        del env["FORDEFI_API_USER_TOKEN"]
        self.assertEqual(DeployConfig.from_env(env).api_user_token, "fallback")

    def test_missing_and_invalid(self):
        env = self.env()
        del env["FORDEFI_VAULT_ID"]
        for bad in (
            env,
            self.env(FORDEFI_VAULT_ADDRESS="not-base58-0OIl"),
            self.env(SOLANA_CLUSTER="localnet"),
            self.env(CHUNK_SIZE="big"),
            self.env(CHUNK_SIZE="0"),
            self.env(EPHEMERAL_SIGNING="remote"),
        ):
            with self.assertRaises(ConfigError):
                DeployConfig.from_env(bad)

    def test_reads_os_environ(self):
        with unittest.mock.patch.dict(os.environ, self.env(), clear=True):
            self.assertEqual(DeployConfig.from_env().vault_id, "vault-id")

    def test_missing_private_key(self):
        config = DeployConfig.from_env(
            self.env(FORDEFI_API_SIGNER_PRIVATE_KEY_PATH="/nonexistent/private.pem")
        )
        with self.assertRaises(ConfigError):
            config.fordefi_config()


if __name__ == "__main__":
    unittest.main()
