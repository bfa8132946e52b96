# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Asynchronous client for the Fordefi transactions API.

Fordefi holds the vault key in an MPC wallet and signs on request. An API user
authenticates every call with its bearer token. Requests that create
transactions must also carry a signature made with the API signer's P-256 key
over ``{path}|{timestamp}|{body}``, sent in the ``x-signature`` header (base64
of the DER-encoded ECDSA signature) next to ``x-timestamp`` in milliseconds.

Signing is asynchronous on Fordefi's side: ``create_transaction`` returns an id
and ``wait_for_transaction`` polls it until it reaches a terminal state.

Examples:
    Create and wait for a transaction::

        config = FordefiConfig(
            api_user_token=os.environ["FORDEFI_API_USER_TOKEN"],
            private_key_pem=open("fordefi_secret/private.pem", "rb").read(),
        )
        client = FordefiClient(config)
        created = await client.create_transaction(body)
        signed = await client.wait_for_transaction(created["id"])
"""

import asyncio
import base64
import hashlib
import json
import logging
import time
import unittest
import unittest.mock
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx
from ecdsa import NIST256p, SigningKey
from ecdsa.util import sigdecode_der, sigencode_der

from .async_client import ApiError
from .exceptions import (
    OracleAuthError,
    OracleTerminalFailure,
    OracleTimeout,
    ProtocolError,
)
from .metadata import Metadata

TRANSACTIONS_PATH = "/api/v1/transactions"

# States in which the vault signature is available.
SIGNED_STATES = frozenset(
    ["signed", "pushed", "pushed_to_blockchain", "mined", "completed"]
)
FAILED_STATES = frozenset(
    [
        "failed",
        "aborted",
        "cancelled",
        "dropped",
        "error_signing",
        "error_pushing_to_blockchain",
        "error_submitting_to_provider",
    ]
)


@dataclass
class FordefiConfig:
    """Configuration for the Fordefi API client.

    Attributes:
        api_user_token: Bearer token of the Fordefi API user
        private_key_pem: PEM encoded P-256 key of the API signer
        base_url: API root (default: "https://api.fordefi.com")
        poll_interval: Seconds between status polls (default: 2.0)
        poll_timeout: Seconds to wait for a terminal state (default: 100.0)
        http2: Enable HTTP/2 (default: True)
    """

    api_user_token: str
    private_key_pem: Union[str, bytes]
    base_url: str = "https://api.fordefi.com"
    poll_interval: float = 2.0
    poll_timeout: float = 100.0
    http2: bool = True


class FordefiClient:
    """Thin wrapper around the Fordefi create/get transaction endpoints."""

    client: httpx.AsyncClient
    config: FordefiConfig
    signing_key: SigningKey

    def __init__(
        self,
        config: FordefiConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.signing_key = SigningKey.from_pem(config.private_key_pem)
        headers = {
            Metadata.CLIENT_HEADER: Metadata.get_client_header_val(),
            "Authorization": f"Bearer {config.api_user_token}",
        }
        self.client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            http2=config.http2,
            timeout=httpx.Timeout(60.0, pool=None),
            headers=headers,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    def sign_request(self, path: str, timestamp: int, body: str) -> str:
        """Base64 DER signature over ``{path}|{timestamp}|{body}``."""
        payload = f"{path}|{timestamp}|{body}".encode()
        signature = self.signing_key.sign_deterministic(
            payload, hashfunc=hashlib.sha256, sigencode=sigencode_der
        )
        return base64.b64encode(signature).decode()

    async def create_transaction(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Submit a transaction for signing.

        Raises:
            OracleAuthError: If Fordefi rejects the credentials.
            ApiError: For any other HTTP error.
            ProtocolError: If the response carries no transaction id.
        """
        body = json.dumps(request)
        timestamp = int(time.time() * 1000)
        headers = {
            "Content-Type": "application/json",
            "x-timestamp": str(timestamp),
            "x-signature": self.sign_request(TRANSACTIONS_PATH, timestamp, body),
        }
        response = await self.client.post(
            TRANSACTIONS_PATH, content=body.encode(), headers=headers
        )
        data = self._check(response)
        if not isinstance(data, dict) or not data.get("id"):
            raise ProtocolError(f"Fordefi response has no transaction id: {data}")
        return data

    async def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        response = await self.client.get(f"{TRANSACTIONS_PATH}/{transaction_id}")
        data = self._check(response)
        if not isinstance(data, dict):
            raise ProtocolError(f"Unexpected Fordefi response: {data}")
        return data

    async def wait_for_transaction(
        self,
        transaction_id: str,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Poll until the transaction is signed or has failed.

        The request is never abandoned before ``timeout``: a request that is
        still being processed may yet produce a valid signature.

        Raises:
            OracleTerminalFailure: If Fordefi reports a failure state.
            OracleTimeout: If no terminal state is reached within ``timeout``.
        """
        poll_interval = self.config.poll_interval if poll_interval is None else poll_interval
        timeout = self.config.poll_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        last_state: Optional[str] = None

        while True:
            data = await self.get_transaction(transaction_id)
            state = data.get("state")
            if state != last_state:
                logging.debug(f"Fordefi transaction {transaction_id}: {state}")
                last_state = state
            if state in SIGNED_STATES:
                return data
            if state in FAILED_STATES:
                raise OracleTerminalFailure(
                    transaction_id, state, failure_reason(data)
                )
            if time.monotonic() >= deadline:
                raise OracleTimeout(transaction_id, last_state, timeout)
            await asyncio.sleep(poll_interval)

    def _check(self, response: httpx.Response) -> Any:
        if response.status_code in (401, 403):
            raise OracleAuthError(response.text, response.status_code)
        if response.status_code >= 400:
            raise ApiError(response.text, response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Fordefi returned invalid JSON: {response.text}") from e


def failure_reason(data: Dict[str, Any]) -> Optional[str]:
    for key in ("failure_reason", "error_message", "explanation"):
        if data.get(key):
            return str(data[key])
    return None


class Test(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.key = SigningKey.generate(curve=NIST256p)
        self.config = FordefiConfig(
            api_user_token="token",
            private_key_pem=self.key.to_pem(),
            poll_interval=0,
            poll_timeout=0.05,
            http2=False,
        )

    def client(self, handler) -> FordefiClient:
        return FordefiClient(self.config, transport=httpx.MockTransport(handler))

    async def test_create_transaction_signs_request(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "tx-1", "state": "waiting_for_signing"})

        client = self.client(handler)
        created = await client.create_transaction({"vault_id": "v"})
        self.assertEqual(created["id"], "tx-1")

        request = seen[0]
        self.assertEqual(request.url.path, TRANSACTIONS_PATH)
        self.assertEqual(request.headers["Authorization"], "Bearer token")
        payload = (
            f"{TRANSACTIONS_PATH}|{request.headers['x-timestamp']}|".encode()
            + request.content
        )
        self.assertTrue(
            self.key.get_verifying_key().verify(
                base64.b64decode(request.headers["x-signature"]),
                payload,
                hashfunc=hashlib.sha256,
                sigdecode=sigdecode_der,
            )
        )
        await client.close()

    async def test_auth_error(self):
        client = self.client(lambda request: httpx.Response(401, text="bad token"))
        with self.assertRaises(OracleAuthError) as cm:
            await client.create_transaction({})
        self.assertEqual(cm.exception.status_code, 401)
        await client.close()

    async def test_missing_id(self):
        client = self.client(lambda request: httpx.Response(200, json={"state": "x"}))
        with self.assertRaises(ProtocolError):
            await client.create_transaction({})
        await client.close()

    async def test_wait_until_signed(self):
        states = ["waiting_for_approval", "approved", "signed"]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "tx-1", "state": states.pop(0)})

        client = self.client(handler)
        data = await client.wait_for_transaction("tx-1")
        self.assertEqual(data["state"], "signed")
        self.assertEqual(states, [])
        await client.close()

    async def test_wait_terminal_failure(self):
        client = self.client(
            lambda request: httpx.Response(
                200, json={"id": "tx-2", "state": "aborted", "failure_reason": "policy"}
            )
        )
        with self.assertRaises(OracleTerminalFailure) as cm:
            await client.wait_for_transaction("tx-2")
        self.assertEqual(cm.exception.transaction_id, "tx-2")
        self.assertEqual(cm.exception.state, "aborted")
        self.assertEqual(cm.exception.reason, "policy")
        await client.close()

    async def test_wait_timeout(self):
        client = self.client(
            lambda request: httpx.Response(200, json={"id": "tx-3", "state": "approved"})
        )
        with self.assertRaises(OracleTimeout) as cm:
            await client.wait_for_transaction("tx-3", poll_interval=0.01)
        self.assertEqual(cm.exception.last_state, "approved")
        await client.close()

    async def test_get_uses_bearer_only(self):
        with unittest.mock.patch(
            "fordefi_deploy.fordefi_client.FordefiClient.sign_request"
        ) as sign_request:
            client = self.client(
                lambda request: httpx.Response(200, json={"id": "tx", "state": "mined"})
            )
            await client.get_transaction("tx")
            sign_request.assert_not_called()
            await client.close()


if __name__ == "__main__":
    unittest.main()
