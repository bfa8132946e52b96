# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Asynchronous Solana JSON-RPC client.

This module provides the small slice of the Solana JSON-RPC API the deployer
needs: rent-exemption queries, the latest blockhash, account and balance
lookups, transaction submission and confirmation polling. All calls are
coroutines backed by a shared ``httpx.AsyncClient``.

Error Handling:
    - HTTP status codes >= 400 raise ``ApiError``
    - JSON-RPC error objects raise ``RpcError``, which carries the error code,
      the message and any program log lines from preflight simulation
    - ``confirm_transaction`` raises ``LifetimeExpired`` once the blockhash can
      no longer land and ``BroadcastError`` when the transaction failed on chain

Examples:
    Basic usage::

        import asyncio
        from fordefi_deploy.async_client import RpcClient

        async def main():
            client = RpcClient("https://api.devnet.solana.com")
            try:
                blockhash = await client.get_latest_blockhash()
                rent = await client.get_minimum_balance_for_rent_exemption(1000)
                print(blockhash.blockhash, rent)
            finally:
                await client.close()

        asyncio.run(main())
"""

import asyncio
import base64
import itertools
import json
import logging
import time
import unittest
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .address import BPF_LOADER_UPGRADEABLE, SYSTEM_PROGRAM, Address
from .exceptions import BroadcastError, LifetimeExpired
from .metadata import Metadata

CLUSTER_URLS = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet": "https://api.mainnet-beta.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

# Substrings the cluster uses when a transaction's blockhash is stale or unknown.
BLOCKHASH_EXPIRY_SIGNALS = (
    "blockhash not found",
    "blockhashnotfound",
    "block height exceeded",
    "transactionexpired",
)


@dataclass
class ClientConfig:
    """Configuration parameters for the Solana RPC client.

    Attributes:
        commitment: Commitment level for reads and confirmation (default: "confirmed")
        preflight_commitment: Commitment used for preflight simulation
        skip_preflight: Send without simulating first (default: False)
        transaction_wait_in_seconds: Upper bound on confirmation polling (default: 120)
        poll_interval: Seconds between confirmation polls (default: 1.0)
        http2: Enable HTTP/2 (default: True)
        api_key: Optional bearer token for authenticated RPC providers
    """

    commitment: str = "confirmed"
    preflight_commitment: str = "confirmed"
    skip_preflight: bool = False
    transaction_wait_in_seconds: int = 120
    poll_interval: float = 1.0
    http2: bool = True
    api_key: Optional[str] = None


@dataclass
class Blockhash:
    blockhash: str
    last_valid_block_height: int


@dataclass
class AccountInfo:
    lamports: int
    owner: Address
    data: bytes
    executable: bool

    @staticmethod
    def from_rpc(value: Dict[str, Any]) -> "AccountInfo":
        data, encoding = value["data"]
        if encoding != "base64":
            raise ValueError(f"Unexpected account data encoding {encoding}")
        return AccountInfo(
            lamports=int(value["lamports"]),
            owner=Address.from_str(value["owner"]),
            data=base64.b64decode(data),
            executable=bool(value.get("executable", False)),
        )


class RpcClient:
    """Client for the Solana JSON-RPC API.

    The client holds only connection configuration, so one instance can be
    shared by every component of a deployment.
    """

    client: httpx.AsyncClient
    client_config: ClientConfig
    base_url: str

    def __init__(
        self,
        base_url: str,
        client_config: ClientConfig = ClientConfig(),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        # Default limits
        limits = httpx.Limits()
        # Default timeouts but do not set a pool timeout, since the idea is that jobs will wait as
        # long as progress is being made.
        timeout = httpx.Timeout(60.0, pool=None)
        # Default headers
        headers = {Metadata.CLIENT_HEADER: Metadata.get_client_header_val()}
        self.client = httpx.AsyncClient(
            http2=client_config.http2,
            limits=limits,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )
        self.client_config = client_config
        self._request_ids = itertools.count(1)

        if client_config.api_key:
            self.client.headers["Authorization"] = f"Bearer {client_config.api_key}"

    async def close(self):
        await self.client.aclose()

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        """Lamports an account of ``size`` bytes must hold to be rent exempt."""
        result = await self._call(
            "getMinimumBalanceForRentExemption",
            [size, {"commitment": self.client_config.commitment}],
        )
        return int(result)

    async def get_latest_blockhash(self) -> Blockhash:
        result = await self._call(
            "getLatestBlockhash", [{"commitment": self.client_config.commitment}]
        )
        value = result["value"]
        return Blockhash(value["blockhash"], int(value["lastValidBlockHeight"]))

    async def get_account_info(self, address: Address) -> Optional[AccountInfo]:
        """Fetch an account, or None when nothing exists at ``address``."""
        result = await self._call(
            "getAccountInfo",
            [
                str(address),
                {"encoding": "base64", "commitment": self.client_config.commitment},
            ],
        )
        value = result["value"]
        if value is None:
            return None
        return AccountInfo.from_rpc(value)

    async def get_balance(self, address: Address) -> int:
        result = await self._call(
            "getBalance", [str(address), {"commitment": self.client_config.commitment}]
        )
        return int(result["value"])

    async def get_block_height(self) -> int:
        result = await self._call(
            "getBlockHeight", [{"commitment": self.client_config.commitment}]
        )
        return int(result)

    async def get_signature_statuses(
        self, signatures: List[str]
    ) -> List[Optional[Dict[str, Any]]]:
        result = await self._call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": False}],
        )
        return result["value"]

    async def send_transaction(self, raw_transaction: bytes) -> str:
        """Submit a signed transaction and return its signature.

        Raises:
            RpcError: If preflight simulation or submission fails; simulation
                logs are available on the exception.
        """
        result = await self._call(
            "sendTransaction",
            [
                base64.b64encode(raw_transaction).decode(),
                {
                    "encoding": "base64",
                    "skipPreflight": self.client_config.skip_preflight,
                    "preflightCommitment": self.client_config.preflight_commitment,
                },
            ],
        )
        return result

    async def confirm_transaction(
        self, signature: str, last_valid_block_height: Optional[int] = None
    ) -> Dict[str, Any]:
        """Poll until ``signature`` reaches the configured commitment.

        Raises:
            BroadcastError: If the transaction failed on chain or was not
                confirmed within ``transaction_wait_in_seconds``.
            LifetimeExpired: If the block height passed
                ``last_valid_block_height`` before the transaction landed.
        """
        wanted = ("confirmed", "finalized")
        if self.client_config.commitment == "finalized":
            wanted = ("finalized",)

        deadline = time.monotonic() + self.client_config.transaction_wait_in_seconds
        while True:
            status = (await self.get_signature_statuses([signature]))[0]
            if status is None and last_valid_block_height is not None:
                block_height = await self.get_block_height()
                if block_height > last_valid_block_height:
                    # The transaction may have landed after the first status query.
                    status = (await self.get_signature_statuses([signature]))[0]
                    if status is None:
                        raise LifetimeExpired(
                            f"Transaction {signature} expired: block height exceeded "
                            f"({block_height} > {last_valid_block_height})"
                        )

            if status is not None:
                if status.get("err") is not None:
                    raise BroadcastError(
                        f"Transaction {signature} failed: {status['err']}"
                    )
                if status.get("confirmationStatus") in wanted:
                    return status

            if time.monotonic() >= deadline:
                raise BroadcastError(
                    f"Transaction {signature} not confirmed after "
                    f"{self.client_config.transaction_wait_in_seconds}s"
                )
            await asyncio.sleep(self.client_config.poll_interval)

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": [] if params is None else params,
        }
        response = await self.client.post(url=self.base_url, json=request)
        if response.status_code >= 400:
            logging.info(f"{method} failed with HTTP {response.status_code}")
            raise ApiError(response.text, response.status_code)

        body = response.json()
        if body.get("error") is not None:
            raise RpcError.from_response(body["error"])
        return body.get("result")


class ApiError(Exception):
    """The API returned a non-success status code, e.g., >= 400"""

    status_code: int

    def __init__(self, message: str, status_code: int):
        # Call the base class constructor with the parameters it needs
        super().__init__(message)
        self.status_code = status_code


class RpcError(Exception):
    """The node answered with a JSON-RPC error object."""

    code: int
    data: Any
    logs: List[str]

    def __init__(self, message: str, code: int, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data
        self.logs = []
        if isinstance(data, dict) and isinstance(data.get("logs"), list):
            self.logs = [str(line) for line in data["logs"]]

    @staticmethod
    def from_response(error: Dict[str, Any]) -> "RpcError":
        return RpcError(
            str(error.get("message", "")), int(error.get("code", 0)), error.get("data")
        )

    def is_blockhash_expired(self) -> bool:
        text = self.message
        if isinstance(self.data, dict) and self.data.get("err") is not None:
            text = f"{text} {self.data['err']}"
        return is_blockhash_expired(text)


def is_blockhash_expired(message: str) -> bool:
    """Whether an error message says the transaction's blockhash is unusable."""
    lowered = message.lower()
    return any(signal in lowered for signal in BLOCKHASH_EXPIRY_SIGNALS)


def _rpc_response(result: Any = None, error: Optional[Dict[str, Any]] = None):
    """Build an ``httpx.Response`` carrying a JSON-RPC reply, for tests."""
    body: Dict[str, Any] = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    return httpx.Response(200, json=body)


class Test(unittest.IsolatedAsyncioTestCase):
    def client(self, handler) -> RpcClient:
        return RpcClient(
            "https://rpc.test",
            ClientConfig(poll_interval=0, http2=False),
            transport=httpx.MockTransport(handler),
        )

    async def test_rent_and_blockhash(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            calls.append(body)
            if body["method"] == "getMinimumBalanceForRentExemption":
                return _rpc_response(1_000_000 + body["params"][0])
            return _rpc_response(
                {
                    "context": {"slot": 1},
                    "value": {
                        "blockhash": "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N",
                        "lastValidBlockHeight": 3090,
                    },
                }
            )

        client = self.client(handler)
        self.assertEqual(await client.get_minimum_balance_for_rent_exemption(36), 1_000_036)
        blockhash = await client.get_latest_blockhash()
        self.assertEqual(blockhash.last_valid_block_height, 3090)
        self.assertEqual(calls[0]["params"][0], 36)
        self.assertEqual(calls[1]["method"], "getLatestBlockhash")
        await client.close()

    async def test_get_account_info(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(SYSTEM_PROGRAM).encode() in request.content:
                return _rpc_response({"context": {"slot": 1}, "value": None})
            return _rpc_response(
                {
                    "context": {"slot": 1},
                    "value": {
                        "data": [base64.b64encode(b"\x01\x02").decode(), "base64"],
                        "executable": False,
                        "lamports": 42,
                        "owner": str(BPF_LOADER_UPGRADEABLE),
                        "rentEpoch": 0,
                    },
                }
            )

        client = self.client(handler)
        self.assertIsNone(await client.get_account_info(SYSTEM_PROGRAM))
        info = await client.get_account_info(BPF_LOADER_UPGRADEABLE)
        self.assertEqual(info, AccountInfo(42, BPF_LOADER_UPGRADEABLE, b"\x01\x02", False))
        await client.close()

    async def test_rpc_error_with_logs(self):
        error = {
            "code": -32002,
            "message": "Transaction simulation failed: Blockhash not found",
            "data": {"err": "BlockhashNotFound", "logs": ["Program log: hi"]},
        }

        client = self.client(lambda request: _rpc_response(error=error))
        with self.assertRaises(RpcError) as cm:
            await client.send_transaction(b"\x00")
        self.assertEqual(cm.exception.code, -32002)
        self.assertEqual(cm.exception.logs, ["Program log: hi"])
        self.assertTrue(cm.exception.is_blockhash_expired())
        await client.close()

    async def test_http_error(self):
        client = self.client(lambda request: httpx.Response(429, text="slow down"))
        with self.assertRaises(ApiError) as cm:
            await client.get_block_height()
        self.assertEqual(cm.exception.status_code, 429)
        await client.close()

    async def test_confirm_transaction(self):
        statuses = [None, {"confirmationStatus": "processed", "err": None}]
        statuses.append({"confirmationStatus": "confirmed", "err": None})

        def handler(request: httpx.Request) -> httpx.Response:
            if b"getBlockHeight" in request.content:
                return _rpc_response(10)
            return _rpc_response({"context": {"slot": 1}, "value": [statuses.pop(0)]})

        client = self.client(handler)
        status = await client.confirm_transaction("sig", last_valid_block_height=100)
        self.assertEqual(status["confirmationStatus"], "confirmed")
        await client.close()

    async def test_confirm_transaction_expired(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if b"getBlockHeight" in request.content:
                return _rpc_response(101)
            return _rpc_response({"context": {"slot": 1}, "value": [None]})

        client = self.client(handler)
        with self.assertRaises(LifetimeExpired):
            await client.confirm_transaction("sig", last_valid_block_height=100)
        await client.close()

    async def test_confirm_transaction_landed_at_expiry(self):
        statuses = [None, {"confirmationStatus": "confirmed", "err": None}]
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            method = json.loads(request.content)["method"]
            methods.append(method)
            if method == "getBlockHeight":
                return _rpc_response(101)
            return _rpc_response({"context": {"slot": 1}, "value": [statuses.pop(0)]})

        client = self.client(handler)
        status = await client.confirm_transaction("sig", last_valid_block_height=100)
        self.assertEqual(status["confirmationStatus"], "confirmed")
        self.assertEqual(
            methods,
            ["getSignatureStatuses", "getBlockHeight", "getSignatureStatuses"],
        )
        await client.close()

    async def test_confirm_transaction_processed_past_expiry(self):
        statuses = [{"confirmationStatus": "processed", "err": None}]
        statuses.append({"confirmationStatus": "confirmed", "err": None})

        def handler(request: httpx.Request) -> httpx.Response:
            if b"getBlockHeight" in request.content:
                return _rpc_response(101)
            return _rpc_response({"context": {"slot": 1}, "value": [statuses.pop(0)]})

        client = self.client(handler)
        status = await client.confirm_transaction("sig", last_valid_block_height=100)
        self.assertEqual(status["confirmationStatus"], "confirmed")
        await client.close()

    async def test_confirm_transaction_failed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return _rpc_response(
                {
                    "context": {"slot": 1},
                    "value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "Custom"]}}],
                }
            )

        client = self.client(handler)
        with self.assertRaises(BroadcastError):
            await client.confirm_transaction("sig")
        await client.close()

    def test_expiry_signals(self):
        self.assertTrue(is_blockhash_expired("Blockhash not found"))
        self.assertTrue(is_blockhash_expired("TransactionExpiredBlockheightExceededError"))
        self.assertFalse(is_blockhash_expired("custom program error: 0x1"))


if __name__ == "__main__":
    unittest.main()
