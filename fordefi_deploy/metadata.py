# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Client identification for outgoing HTTP requests.

Both the Solana RPC client and the Fordefi client send a ``User-Agent`` header
naming this package and its installed version, so that requests made by the
deployer can be told apart in provider logs.

Examples:
    Attach the header to a custom client::

        import httpx

        from fordefi_deploy.metadata import Metadata

        headers = {Metadata.CLIENT_HEADER: Metadata.get_client_header_val()}
        client = httpx.AsyncClient(headers=headers)
"""

import importlib.metadata as metadata
import unittest

# Package name constant for metadata lookup
PACKAGE_NAME = "solana-fordefi-deploy"


class Metadata:
    CLIENT_HEADER = "User-Agent"

    @staticmethod
    def get_client_header_val() -> str:
        """Header value in the form ``solana-fordefi-deploy/{version}``.

        A source checkout that was never installed reports version 0.0.0.
        """
        try:
            version = metadata.version(PACKAGE_NAME)
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        return f"{PACKAGE_NAME}/{version}"


class Test(unittest.TestCase):
    def test_header_value(self):
        value = Metadata.get_client_header_val()
        self.assertTrue(value.startswith(f"{PACKAGE_NAME}/"))


if __name__ == "__main__":
    unittest.main()
