# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Fordefi Solana Deployer - deploy BPF programs to Solana with an MPC-held authority.

Solana caps a transaction at 1232 bytes, so a program binary cannot be deployed
in one shot. This package walks the BPF Upgradeable Loader protocol one small
transaction at a time: it creates and initializes a buffer account, writes the
binary into it in chunks, then creates the program account and finalizes the
deployment. The fee payer and upgrade authority is a Fordefi vault, so every
transaction is signed by the Fordefi API rather than by a local private key.

Core Features:
- **Chunk Planning**: Split a binary into an ordered list of loader operations
- **Batching**: Pack operations into transactions under the size ceiling
- **Remote Signing**: Submit serialized messages to Fordefi and collect signatures
- **Blockhash Refresh**: Re-sign and resend transactions whose blockhash expired
- **Buffer Recovery**: Close an orphaned buffer and reclaim its rent

Quick Start:
    Deploy a program from environment configuration::

        import asyncio

        from fordefi_deploy.config import DeployConfig
        from fordefi_deploy.program_deployer import ProgramDeployer

        async def main():
            config = DeployConfig.from_env()
            deployer = ProgramDeployer.from_config(config)
            try:
                result = await deployer.deploy_from_files(
                    config.program_so_path,
                    config.buffer_keypair_path,
                    config.program_keypair_path,
                )
                print(f"Program deployed: {result.program_id}")
            finally:
                await deployer.close()

        asyncio.run(main())

    Reclaim the rent held by a buffer from a failed deployment::

        python -m fordefi_deploy.cli close-buffer <buffer-address>

Modules:
    - codec: Little-endian and compact-u16 wire encoding
    - address / ed25519 / keypair: Keys, addresses and PDA derivation
    - instructions: System and BPF loader operations
    - transactions: Message compilation and signed transactions
    - deployment_plan / transaction_batcher: Planning and batching
    - async_client: Solana JSON-RPC client
    - fordefi_client / fordefi_signer: Fordefi API client and signing adapter
    - transaction_executor: Sequential executor with blockhash refresh
    - buffer_recovery: Buffer close-and-reclaim
    - program_deployer: End-to-end orchestration
    - cli: Command line entry points
"""
