# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Signing deployment transactions with a Fordefi vault.

``FordefiSigner.sign`` turns a transaction template into raw signed bytes:

1. fetch a fresh blockhash (never reused between attempts),
2. compile the message with the vault as fee payer,
3. co-sign locally with the template's ephemeral keypairs, or hand their
   secret keys to Fordefi for this one request,
4. submit the serialized message with a custom fee so Fordefi's own fee
   prediction is never used,
5. poll until Fordefi reports the transaction signed,
6. assemble the raw transaction, with the vault signature in slot 0 and the
   local signatures in their slots, and check every signature.

Broadcasting is left to the caller.
"""

import base64
import binascii
import enum
import itertools
import logging
import typing
import unittest
import unittest.mock
from dataclasses import dataclass

import base58

from .address import Address, program_data_address
from .async_client import Blockhash, RpcClient
from .ed25519 import Signature
from .exceptions import PlanningError, ProtocolError
from .fordefi_client import FordefiClient
from .instructions import (
    Close,
    CreateAccount,
    CreateTarget,
    Finalize,
    InitializeEscrow,
    WriteChunk,
)
from .keypair import Keypair
from .transaction_batcher import TransactionTemplate, batch_operations
from .transactions import Message, Transaction

DEFAULT_FEE_LAMPORTS = 5000

FORDEFI_CHAINS = {
    "devnet": "solana_devnet",
    "testnet": "solana_devnet",
    "mainnet": "solana_mainnet",
    "mainnet-beta": "solana_mainnet",
}


class EphemeralSigning(enum.Enum):
    """Where the keys of freshly created accounts sign."""

    LOCAL = "local"
    ORACLE = "oracle"


@dataclass
class SignedEnvelope:
    raw: bytes
    transaction: Transaction
    blockhash: str
    last_valid_block_height: int
    oracle_transaction_id: str

    @property
    def signature(self) -> str:
        return self.transaction.signature()


class FordefiSigner:
    """Signs transaction templates with a Fordefi vault as fee payer."""

    rpc_client: RpcClient
    fordefi_client: FordefiClient
    vault_id: str
    vault_address: Address
    chain: str
    ephemeral_signing: EphemeralSigning

    def __init__(
        self,
        rpc_client: RpcClient,
        fordefi_client: FordefiClient,
        vault_id: str,
        vault_address: Address,
        chain: str = "solana_devnet",
        ephemeral_signing: EphemeralSigning = EphemeralSigning.LOCAL,
    ):
        self.rpc_client = rpc_client
        self.fordefi_client = fordefi_client
        self.vault_id = vault_id
        self.vault_address = vault_address
        self.chain = chain
        self.ephemeral_signing = ephemeral_signing

    async def sign(
        self, template: TransactionTemplate, fee_lamports: int
    ) -> SignedEnvelope:
        if template.fee_payer != self.vault_address:
            raise PlanningError(
                f"Template fee payer {template.fee_payer} is not the vault "
                f"{self.vault_address}"
            )

        blockhash: Blockhash = await self.rpc_client.get_latest_blockhash()
        transaction = Transaction(template.compile(blockhash.blockhash))
        if self.ephemeral_signing == EphemeralSigning.LOCAL:
            transaction.sign_partial(template.signers)

        request = self.request_body(transaction, template.signers, fee_lamports)
        created = await self.fordefi_client.create_transaction(request)
        oracle_id = str(created["id"])
        logging.info(
            f"Transaction {template.index} ({template.describe()}) submitted "
            f"to Fordefi as {oracle_id}"
        )

        response = await self.fordefi_client.wait_for_transaction(oracle_id)
        signed = self.assemble(transaction, response)
        return SignedEnvelope(
            raw=signed.to_bytes(),
            transaction=signed,
            blockhash=blockhash.blockhash,
            last_valid_block_height=blockhash.last_valid_block_height,
            oracle_transaction_id=oracle_id,
        )

    def request_body(
        self,
        transaction: Transaction,
        signers: typing.Sequence[Keypair],
        fee_lamports: int,
    ) -> typing.Dict[str, typing.Any]:
        """Build the Fordefi create-transaction request for ``transaction``.

        The vault's slot and any unsigned slot are sent as ``{"data": None}``.
        """
        signatures: typing.List[typing.Dict[str, typing.Optional[str]]] = []
        for address, signature in zip(
            transaction.message.signers(), transaction.signatures
        ):
            if address == self.vault_address or signature.is_empty():
                signatures.append({"data": None})
            else:
                signatures.append({"data": base64.b64encode(signature.data()).decode()})

        details: typing.Dict[str, typing.Any] = {
            "type": "solana_serialized_transaction_message",
            "push_mode": "manual",
            "chain": self.chain,
            "data": base64.b64encode(transaction.message.to_bytes()).decode(),
            "signatures": signatures,
            "skip_prediction": True,
            "fee": {"type": "custom", "unit_price": str(fee_lamports)},
        }
        if self.ephemeral_signing == EphemeralSigning.ORACLE and signers:
            details["ephemeral_signing_keys"] = [
                keypair.secret_key_base58() for keypair in signers
            ]

        return {
            "vault_id": self.vault_id,
            "signer_type": "api_signer",
            "sign_mode": "auto",
            "type": "solana_transaction",
            "details": details,
        }

    def assemble(
        self, transaction: Transaction, response: typing.Dict[str, typing.Any]
    ) -> Transaction:
        """Combine Fordefi's result with the local partial signatures.

        Raises:
            ProtocolError: If the response has neither a raw transaction nor
                signatures, a signature is malformed or missing, or any
                signature fails to verify.
        """
        oracle_id = response.get("id")
        raw = raw_transaction(response)
        if raw is not None:
            try:
                signed = Transaction.from_bytes(base64.b64decode(raw))
            except ValueError as e:
                raise ProtocolError(
                    f"Fordefi transaction {oracle_id} has an undecodable raw transaction"
                ) from e
            if signed.message.fee_payer() != self.vault_address:
                raise ProtocolError(
                    f"Fordefi transaction {oracle_id} changed the fee payer"
                )
            if signed.message != transaction.message:
                logging.warning(
                    f"Fordefi transaction {oracle_id} returned a modified message"
                )
        else:
            signed = Transaction(transaction.message, list(transaction.signatures))
            self._merge_signature_entries(signed, response)

        if signed.message == transaction.message:
            for position, signature in enumerate(transaction.signatures):
                if signed.signatures[position].is_empty() and not signature.is_empty():
                    signed.signatures[position] = signature

        missing = signed.missing_signers()
        if missing:
            raise ProtocolError(
                f"Fordefi transaction {oracle_id} is missing signatures for "
                + ", ".join(str(address) for address in missing)
            )
        invalid = signed.verify_signatures()
        if invalid:
            raise ProtocolError(
                f"Fordefi transaction {oracle_id} has invalid signatures for "
                + ", ".join(str(address) for address in invalid)
            )
        return signed

    def _merge_signature_entries(
        self, signed: Transaction, response: typing.Dict[str, typing.Any]
    ):
        entries = response.get("signatures")
        if entries is None:
            entries = (response.get("details") or {}).get("signatures")
        if not entries:
            raise ProtocolError(
                f"Fordefi transaction {response.get('id')} has no raw transaction "
                "or signatures"
            )

        for position, entry in enumerate(entries):
            if isinstance(entry, str):
                entry = {"data": entry}
            data = entry.get("data") if isinstance(entry, dict) else None
            if not data:
                continue
            try:
                signature = Signature(base64.b64decode(data))
            except (binascii.Error, ValueError) as e:
                raise ProtocolError(f"Malformed signature in slot {position}") from e

            signer = entry.get("public_key") or entry.get("signer")
            if signer:
                try:
                    signed.add_signature(Address.from_str(signer), signature)
                except ValueError as e:
                    raise ProtocolError(f"Unexpected signer {signer}") from e
            elif position < len(signed.signatures):
                signed.signatures[position] = signature
            else:
                raise ProtocolError(f"Signature slot {position} out of range")


def raw_transaction(response: typing.Dict[str, typing.Any]) -> typing.Optional[str]:
    """The base64 raw transaction from wherever Fordefi put it, if anywhere."""
    for container in (
        response,
        response.get("solana_transaction") or {},
        response.get("details") or {},
    ):
        if isinstance(container, dict) and container.get("raw_transaction"):
            return container["raw_transaction"]
    return None


class _FakeFordefi:
    """Signs submitted messages with a local vault keypair, for tests."""

    def __init__(self, vault: Keypair, mode: str = "raw", final_state: str = "signed"):
        self.vault = vault
        self.mode = mode
        self.final_state = final_state
        self.requests: typing.List[typing.Dict[str, typing.Any]] = []

    async def create_transaction(self, request):
        self.requests.append(request)
        return {"id": f"fordefi-{len(self.requests)}", "state": "waiting_for_signing"}

    async def wait_for_transaction(self, transaction_id):
        request = self.requests[-1]
        details = request["details"]
        message_bytes = base64.b64decode(details["data"])
        vault_signature = base64.b64encode(self.vault.sign(message_bytes).data()).decode()

        if self.mode == "raw":
            message = Message.from_bytes(message_bytes)
            transaction = Transaction(message)
            transaction.signatures[0] = self.vault.sign(message_bytes)
            for position, entry in enumerate(details["signatures"]):
                if entry["data"]:
                    transaction.signatures[position] = Signature(
                        base64.b64decode(entry["data"])
                    )
            for secret in details.get("ephemeral_signing_keys", []):
                keypair = Keypair.from_secret_key(base58.b58decode(secret))
                transaction.add_signature(keypair.address(), keypair.sign(message_bytes))
            raw = base64.b64encode(transaction.to_bytes()).decode()
            return {
                "id": transaction_id,
                "state": self.final_state,
                "solana_transaction": {"raw_transaction": raw},
            }
        return {
            "id": transaction_id,
            "state": self.final_state,
            "signatures": [{"data": vault_signature, "public_key": str(self.vault.address())}],
        }


class Test(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.vault = Keypair.generate()
        self.escrow = Keypair.generate()
        self.rpc_client = unittest.mock.Mock()
        heights = itertools.count(100, 100)
        self.rpc_client.get_latest_blockhash = unittest.mock.AsyncMock(
            side_effect=lambda: Blockhash(
                str(Keypair.generate().address()), next(heights)
            )
        )
        operations = [
            CreateAccount(self.vault.address(), self.escrow.address(), 1_000, 40),
            InitializeEscrow(self.escrow.address(), self.vault.address()),
        ]
        self.template = batch_operations(
            operations, self.vault.address(), [self.escrow]
        )[0]

    def signer(self, fordefi, mode=EphemeralSigning.LOCAL) -> FordefiSigner:
        return FordefiSigner(
            self.rpc_client, fordefi, "vault-id", self.vault.address(), "solana_devnet", mode
        )

    async def test_sign_with_raw_transaction(self):
        fordefi = _FakeFordefi(self.vault)
        envelope = await self.signer(fordefi).sign(self.template, 5000)

        self.assertTrue(envelope.transaction.is_fully_signed())
        self.assertEqual(envelope.transaction.verify_signatures(), [])
        self.assertEqual(envelope.last_valid_block_height, 100)
        self.assertEqual(envelope.oracle_transaction_id, "fordefi-1")
        self.assertEqual(Transaction.from_bytes(envelope.raw), envelope.transaction)

        request = fordefi.requests[0]
        self.assertEqual(request["vault_id"], "vault-id")
        self.assertEqual(request["signer_type"], "api_signer")
        self.assertEqual(request["details"]["fee"], {"type": "custom", "unit_price": "5000"})
        self.assertTrue(request["details"]["skip_prediction"])
        self.assertEqual(request["details"]["push_mode"], "manual")
        self.assertIsNone(request["details"]["signatures"][0]["data"])
        self.assertIsNotNone(request["details"]["signatures"][1]["data"])
        self.assertNotIn("ephemeral_signing_keys", request["details"])

    async def test_custom_fee_on_every_transaction_kind(self):
        vault = self.vault.address()
        escrow = self.escrow.address()
        target = Keypair.generate()
        finalize = Finalize(
            payer=vault,
            authority=vault,
            escrow=escrow,
            target=target.address(),
            target_data=program_data_address(target.address()),
            max_data_len=10_100,
        )
        templates = [self.template]
        templates += batch_operations([WriteChunk(escrow, vault, 0, b"\x01" * 100)], vault)
        templates += batch_operations(
            [CreateTarget(vault, target.address(), 1_000), finalize], vault, [target]
        )
        templates += batch_operations([Close(escrow, vault, vault)], vault)
        self.assertEqual(
            [template.describe() for template in templates],
            ["CreateAccount+InitializeEscrow", "WriteChunk", "CreateTarget+Finalize", "Close"],
        )

        fordefi = _FakeFordefi(self.vault)
        signer = self.signer(fordefi)
        for template in templates:
            envelope = await signer.sign(template, 7500)
            self.assertEqual(envelope.transaction.verify_signatures(), [])

        self.assertEqual(len(fordefi.requests), len(templates))
        for request in fordefi.requests:
            details = request["details"]
            self.assertEqual(details["fee"], {"type": "custom", "unit_price": "7500"})
            self.assertTrue(details["skip_prediction"])

    async def test_sign_with_signature_entries(self):
        fordefi = _FakeFordefi(self.vault, mode="entries")
        envelope = await self.signer(fordefi).sign(self.template, 5000)
        self.assertEqual(envelope.transaction.verify_signatures(), [])
        self.assertEqual(envelope.signature, str(envelope.transaction.signatures[0]))

    async def test_fresh_blockhash_each_call(self):
        fordefi = _FakeFordefi(self.vault)
        signer = self.signer(fordefi)
        first = await signer.sign(self.template, 5000)
        second = await signer.sign(self.template, 5000)
        self.assertNotEqual(first.blockhash, second.blockhash)
        self.assertEqual(self.rpc_client.get_latest_blockhash.await_count, 2)

    async def test_oracle_held_ephemeral_keys(self):
        fordefi = _FakeFordefi(self.vault)
        envelope = await self.signer(fordefi, EphemeralSigning.ORACLE).sign(
            self.template, 5000
        )
        details = fordefi.requests[0]["details"]
        self.assertEqual(
            details["ephemeral_signing_keys"], [self.escrow.secret_key_base58()]
        )
        self.assertEqual([entry["data"] for entry in details["signatures"]], [None, None])
        self.assertTrue(envelope.transaction.is_fully_signed())

    async def test_missing_signature_is_protocol_error(self):
        signer = self.signer(_FakeFordefi(self.vault))
        message = self.template.compile("4uQeVj5tqViQh7yWWGStvkEG1Zmhx6uasJtWCJziofM")
        with self.assertRaises(ProtocolError):
            signer.assemble(Transaction(message), {"id": "x", "state": "signed"})

    async def test_forged_signature_is_protocol_error(self):
        signer = self.signer(_FakeFordefi(self.vault))
        message = self.template.compile("4uQeVj5tqViQh7yWWGStvkEG1Zmhx6uasJtWCJziofM")
        transaction = Transaction(message)
        transaction.sign_partial([self.escrow])
        forged = base64.b64encode(Keypair.generate().sign(b"x").data()).decode()
        with self.assertRaises(ProtocolError):
            signer.assemble(
                transaction, {"id": "x", "state": "signed", "signatures": [{"data": forged}]}
            )

    async def test_undecodable_raw_transaction_is_protocol_error(self):
        signer = self.signer(_FakeFordefi(self.vault))
        message = self.template.compile("4uQeVj5tqViQh7yWWGStvkEG1Zmhx6uasJtWCJziofM")
        transaction = Transaction(message)
        truncated = base64.b64encode(transaction.to_bytes()[:-3]).decode()
        for raw in (truncated, "not base64!"):
            with self.assertRaises(ProtocolError):
                signer.assemble(
                    transaction, {"id": "x", "state": "signed", "raw_transaction": raw}
                )

    async def test_fee_payer_must_be_vault(self):
        close = Close(self.escrow.address(), self.vault.address(), self.vault.address())
        template = batch_operations([close], self.escrow.address())[0]
        with self.assertRaises(PlanningError):
            await self.signer(_FakeFordefi(self.vault)).sign(template, 5000)

    def test_raw_transaction_locations(self):
        self.assertEqual(raw_transaction({"raw_transaction": "a"}), "a")
        self.assertEqual(raw_transaction({"details": {"raw_transaction": "b"}}), "b")
        self.assertIsNone(raw_transaction({"state": "signed"}))


if __name__ == "__main__":
    unittest.main()
