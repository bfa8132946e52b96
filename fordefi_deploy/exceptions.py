# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""Errors raised while planning, signing, sending and recovering deployments."""

import typing
import unittest

if typing.TYPE_CHECKING:
    from .address import Address


class DeployError(Exception):
    """Base exception for deployment errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(DeployError):
    """A required setting is missing or invalid."""


class PlanningError(DeployError):
    """The deployment could not be planned, e.g. a rent query failed."""


class InvalidPayload(PlanningError):
    """The program binary is empty or unusable."""


class ProtocolError(DeployError):
    """A response did not have the shape the protocol requires."""


class LifetimeExpired(DeployError):
    """The transaction's blockhash expired before it landed."""


class OracleError(DeployError):
    """Base exception for Fordefi signing failures."""


class OracleAuthError(OracleError):
    """Fordefi rejected the API user token or the request signature."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        return f"OracleAuthError ({self.status_code}): {self.message}"


class OracleTerminalFailure(OracleError):
    """Fordefi reported a terminal failure state for the transaction."""

    def __init__(self, transaction_id: str, state: str, reason: typing.Optional[str] = None):
        message = f"Fordefi transaction {transaction_id} ended in state '{state}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.transaction_id = transaction_id
        self.state = state
        self.reason = reason


class OracleTimeout(OracleError):
    """Fordefi did not reach a terminal state before the poll timeout."""

    def __init__(self, transaction_id: str, last_state: typing.Optional[str], timeout: float):
        super().__init__(
            f"Fordefi transaction {transaction_id} still '{last_state}' after {timeout}s"
        )
        self.transaction_id = transaction_id
        self.last_state = last_state
        self.timeout = timeout


class BroadcastError(DeployError):
    """The cluster rejected the transaction or it failed on chain."""

    def __init__(self, message: str, logs: typing.Optional[typing.List[str]] = None):
        super().__init__(message)
        self.logs = logs or []


class InsufficientFunds(DeployError):
    """The fee payer cannot cover rent and fees for the whole deployment."""

    def __init__(self, address: "Address", required: int, available: int):
        super().__init__(
            f"{address} holds {available} lamports, deployment needs {required}"
        )
        self.address = address
        self.required = required
        self.available = available


class DeploymentFailed(DeployError):
    """A transaction failed and the remaining ones were not attempted.

    ``cause`` is the deepest exception in the chain and ``logs`` holds any
    program log lines from preflight simulation.
    """

    def __init__(
        self,
        index: int,
        cause: BaseException,
        logs: typing.Optional[typing.List[str]] = None,
        attempts: int = 1,
    ):
        super().__init__(
            f"Transaction {index} failed after {attempts} attempt(s): {cause}"
        )
        self.index = index
        self.cause = cause
        self.logs = logs or []
        self.attempts = attempts


class RecoveryError(DeployError):
    """Base exception for buffer recovery errors."""


class NotFound(RecoveryError):
    """No account exists at the address."""

    def __init__(self, address: "Address"):
        super().__init__(f"Account not found: {address}")
        self.address = address


class AlreadyClosed(RecoveryError):
    """The account exists but is no longer a funded loader buffer."""

    def __init__(self, address: "Address", reason: str):
        super().__init__(f"Buffer {address} already closed: {reason}")
        self.address = address
        self.reason = reason


def root_cause(error: BaseException) -> BaseException:
    """Follow ``__cause__`` (then ``__context__``) to the deepest exception."""
    seen = set()
    while id(error) not in seen:
        seen.add(id(error))
        following = error.__cause__ or error.__context__
        if following is None:
            break
        error = following
    return error


def cause_chain(error: BaseException) -> typing.List[BaseException]:
    chain = [error]
    while True:
        following = chain[-1].__cause__ or chain[-1].__context__
        if following is None or following in chain:
            return chain
        chain.append(following)


class Test(unittest.TestCase):
    def test_root_cause(self):
        try:
            try:
                try:
                    raise ValueError("innermost")
                except ValueError as e:
                    raise BroadcastError("middle") from e
            except BroadcastError as e:
                raise DeploymentFailed(3, e) from e
        except DeploymentFailed as e:
            error = e

        self.assertIsInstance(root_cause(error), ValueError)
        self.assertEqual(
            [type(item) for item in cause_chain(error)],
            [DeploymentFailed, BroadcastError, ValueError],
        )

    def test_root_cause_without_chain(self):
        error = ProtocolError("bad response")
        self.assertIs(root_cause(error), error)

    def test_messages(self):
        self.assertIn("failed", str(OracleTerminalFailure("tx-1", "failed")))
        self.assertIn("tx-1", str(OracleTimeout("tx-1", "waiting_for_approval", 5)))
        self.assertEqual(DeploymentFailed(2, LifetimeExpired("x"), attempts=3).attempts, 3)
        self.assertTrue(issubclass(InvalidPayload, PlanningError))


if __name__ == "__main__":
    unittest.main()
