"""
Tests for omega_relayer.executor.

Tests cover:
- Release and wrapped-mint calldata and routing
- Duplicate wrapped NFT detection before submission
- Reverts are terminal and never retried
- Ambiguous sends are polled, never resubmitted
- SPL mint and NFT unlock on Solana
"""
from __future__ import annotations

import asyncio
import base64
from unittest.mock import AsyncMock, patch

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction
from web3 import Web3

from omega_relayer.evm.contracts import encode_release, to_hex_data
from omega_relayer.evm.signer import LocalAccountSigner
from omega_relayer.exceptions import (
    AssetNotHeldError,
    ConfigurationError,
    DuplicateWrappedAssetError,
    OutcomeUnknownError,
    RPCError,
    SourceTransactionError,
    TargetRevertError,
    TransientRPCError,
)
from omega_relayer.executor import ActionExecutor
from omega_relayer.models import Flow, Ledger, TransferIntent
from omega_relayer.solana.metadata import NftMetadata
from omega_relayer.solana.transactions import build_mint_to_instructions

from chain_fixtures import (
    BRIDGE_ADDRESS,
    NFT_MINT,
    OMEGA_DESTINATION,
    OMEGA_PRIVATE_KEY,
    SENTRIES_ADDRESS,
    SERPENT_ADDRESS,
    SOLANA_RECIPIENT,
    TOKEN_MINT,
    wrapped_nft_state,
)

DESTINATION = Web3.to_checksum_address(OMEGA_DESTINATION)
OTHER_MINT = str(Keypair().pubkey())

SENTRY_METADATA = NftMetadata(NFT_MINT, "Solar Sentry #1", "SDS", "https://meta.test/1.json")
SERPENT_METADATA = NftMetadata(NFT_MINT, "Secret Serpent #9", "SSS", "https://meta.test/9.json")


def burn_intent(amount=50_000_000_000):
    return TransferIntent(Flow.TOKEN_BURN, "burn-sig", DESTINATION, Ledger.SOLANA, TOKEN_MINT, amount)


def deposit_intent():
    return TransferIntent(Flow.NFT_DEPOSIT, "deposit-sig", DESTINATION, Ledger.SOLANA, NFT_MINT)


def lock_intent(amount):
    return TransferIntent(Flow.TOKEN_LOCK, "0:0xlock", SOLANA_RECIPIENT, Ledger.OMEGA, BRIDGE_ADDRESS, amount)


def nft_burn_intent():
    return TransferIntent(
        Flow.NFT_BURN, "7:0xburn", SOLANA_RECIPIENT, Ledger.OMEGA, NFT_MINT, instance_id=7
    )


def sent_tx_hash(rpc) -> str:
    raw = rpc.send_raw_transaction.await_args.args[0]
    return Web3.to_hex(Web3.keccak(hexstr=raw))


@pytest.fixture
def rpc(omega_rpc):
    """An Omega node that accepts and mines everything."""
    omega_rpc.estimate_gas.return_value = 100_000
    omega_rpc.get_nonce.return_value = 0
    omega_rpc.get_gas_price.return_value = 10 ** 9
    omega_rpc.send_raw_transaction.return_value = "0x" + "00" * 32
    omega_rpc.get_transaction_receipt.return_value = {"status": "0x1", "blockNumber": "0x10"}
    omega_rpc.get_block_number.return_value = 16
    return omega_rpc


@pytest.fixture
def sol(solana_rpc):
    """A Solana node that accepts and confirms everything."""
    solana_rpc.get_latest_blockhash.return_value = str(Hash.default())
    solana_rpc.send_raw_transaction.return_value = "sig"
    solana_rpc.confirm_transaction.return_value = True
    solana_rpc.get_token_accounts_by_owner.return_value = [
        {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "1"}}}}}}
    ]
    return solana_rpc


@pytest.fixture
def executor(settings, rpc, sol):
    return ActionExecutor(
        settings,
        signer=LocalAccountSigner(OMEGA_PRIVATE_KEY),
        solana_keypair=Keypair(),
        omega_client_factory=lambda: rpc,
        solana_client_factory=lambda: sol,
    )


class TestReleaseTokens:
    """Solana burn -> Omega release."""

    @pytest.mark.asyncio
    async def test_release_rescales_amount(self, executor, rpc):
        tx_hash = await executor.execute(burn_intent())

        call = rpc.estimate_gas.await_args.args[0]
        assert call["to"] == BRIDGE_ADDRESS
        assert call["data"] == to_hex_data(encode_release(DESTINATION, 50 * 10 ** 18))
        assert tx_hash == sent_tx_hash(rpc)
        rpc.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gas_estimate_revert_is_terminal(self, executor, rpc):
        rpc.estimate_gas.side_effect = RPCError("eth_estimateGas: execution reverted: paused", code=3)

        with pytest.raises(TargetRevertError) as exc_info:
            await executor.execute(burn_intent())

        assert exc_info.value.tx_hash is None
        assert rpc.estimate_gas.await_count == 1
        rpc.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mined_revert_is_not_retried(self, executor, rpc):
        rpc.get_transaction_receipt.return_value = {"status": "0x0", "blockNumber": "0x10"}

        with pytest.raises(TargetRevertError) as exc_info:
            await executor.execute(burn_intent())

        assert exc_info.value.tx_hash == sent_tx_hash(rpc)
        rpc.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_rejected_as_revert_is_terminal(self, executor, rpc):
        rpc.send_raw_transaction.side_effect = RPCError("eth_sendRawTransaction: execution reverted", code=3)

        with pytest.raises(TargetRevertError):
            await executor.execute(burn_intent())

        rpc.send_raw_transaction.assert_awaited_once()
        rpc.get_transaction_receipt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ambiguous_send_is_polled_not_resubmitted(self, executor, rpc):
        rpc.send_raw_transaction.side_effect = TransientRPCError("connection reset")
        rpc.get_transaction_receipt.return_value = None

        with pytest.raises(OutcomeUnknownError) as exc_info:
            await executor.execute(burn_intent())

        rpc.send_raw_transaction.assert_awaited_once()
        assert exc_info.value.tx_hash == sent_tx_hash(rpc)
        assert rpc.get_transaction_receipt.await_count >= 1

    @pytest.mark.asyncio
    async def test_ambiguous_send_that_landed_succeeds(self, executor, rpc):
        rpc.send_raw_transaction.side_effect = TransientRPCError("timeout")

        assert await executor.execute(burn_intent()) == sent_tx_hash(rpc)
        rpc.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transient_failure_before_send_is_retried(self, executor, rpc):
        rpc.get_nonce.side_effect = [TransientRPCError("busy"), 3]

        await executor.execute(burn_intent())

        assert rpc.get_nonce.await_count == 2
        rpc.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_writes_get_distinct_nonces(self, settings, rpc, sol):
        signer = LocalAccountSigner(OMEGA_PRIVATE_KEY)
        executor = ActionExecutor(
            settings,
            signer=signer,
            omega_client_factory=lambda: rpc,
            solana_client_factory=lambda: sol,
        )
        sent = []

        async def slow_send(raw_tx):
            await asyncio.sleep(0.01)
            sent.append(raw_tx)
            return Web3.to_hex(Web3.keccak(hexstr=raw_tx))

        # The node's pending nonce only moves once a send has returned
        rpc.get_nonce.side_effect = lambda *args, **kwargs: len(sent)
        rpc.send_raw_transaction.side_effect = slow_send
        first = TransferIntent(Flow.TOKEN_BURN, "burn-a", DESTINATION, Ledger.SOLANA, TOKEN_MINT, 10 ** 9)
        second = TransferIntent(Flow.TOKEN_BURN, "burn-b", DESTINATION, Ledger.SOLANA, TOKEN_MINT, 10 ** 9)

        with patch.object(signer, "sign_transaction", wraps=signer.sign_transaction) as sign:
            await asyncio.gather(executor.execute(first), executor.execute(second))

        nonces = sorted(call.args[0].nonce for call in sign.call_args_list)
        assert nonces == [0, 1]
        assert len(sent) == 2

    @pytest.mark.asyncio
    async def test_receipt_poll_errors_keep_polling(self, executor, rpc):
        rpc.get_transaction_receipt.side_effect = [
            TransientRPCError("lagging"),
            None,
            {"status": "0x1", "blockNumber": "0x10"},
        ]
        assert await executor.execute(burn_intent()) == sent_tx_hash(rpc)

    @pytest.mark.asyncio
    async def test_missing_signer(self, settings, rpc):
        executor = ActionExecutor(settings, omega_client_factory=lambda: rpc)
        with pytest.raises(ConfigurationError):
            await executor.execute(burn_intent())


class TestMintWrappedNft:
    """Solana NFT deposit -> Omega wrapped mint."""

    @pytest.mark.asyncio
    async def test_live_duplicate_rejected_before_submit(self, executor, rpc):
        rpc.eth_call.side_effect = wrapped_nft_state({0: OTHER_MINT, 1: NFT_MINT})

        with patch("omega_relayer.executor.fetch_metadata", AsyncMock(return_value=SENTRY_METADATA)):
            with pytest.raises(DuplicateWrappedAssetError) as exc_info:
                await executor.execute(deposit_intent())

        assert exc_info.value.token_id == 1
        rpc.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_burned_wrapped_token_allows_new_mint(self, executor, rpc):
        rpc.eth_call.side_effect = wrapped_nft_state({0: NFT_MINT}, burned=(0,))

        with patch("omega_relayer.executor.fetch_metadata", AsyncMock(return_value=SENTRY_METADATA)):
            await executor.execute(deposit_intent())

        assert rpc.estimate_gas.await_args.args[0]["to"] == SENTRIES_ADDRESS
        rpc.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scan_is_bounded_to_recent_tokens(self, executor, rpc):
        # nft_scan_window is 10 in the test settings; token 0 is out of range
        mints = {i: OTHER_MINT for i in range(15)}
        mints[0] = NFT_MINT
        rpc.eth_call.side_effect = wrapped_nft_state(mints)

        with patch("omega_relayer.executor.fetch_metadata", AsyncMock(return_value=SENTRY_METADATA)):
            await executor.execute(deposit_intent())

        # tokenCounter + 10 solanaMintOf lookups
        assert rpc.eth_call.await_count == 11
        rpc.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_serpent_routing(self, executor, rpc):
        rpc.eth_call.side_effect = wrapped_nft_state({})

        with patch("omega_relayer.executor.fetch_metadata", AsyncMock(return_value=SERPENT_METADATA)):
            await executor.execute(deposit_intent())

        assert rpc.estimate_gas.await_args.args[0]["to"] == SERPENT_ADDRESS


class TestSolanaWrites:
    """Omega lock -> SPL mint and Omega wrapped burn -> NFT unlock."""

    @pytest.mark.asyncio
    async def test_mint_source_tokens_truncates_dust(self, executor, sol):
        with patch(
            "omega_relayer.executor.build_mint_to_instructions", wraps=build_mint_to_instructions
        ) as builder:
            signature = await executor.execute(lock_intent(2 * 10 ** 18 + 5))

        assert builder.call_args.args[3] == 2 * 10 ** 9
        sent = VersionedTransaction.from_bytes(base64.b64decode(sol.send_raw_transaction.await_args.args[0]))
        assert signature == str(sent.signatures[0])

    @pytest.mark.asyncio
    async def test_unlock_requires_custody(self, executor, sol):
        sol.get_token_accounts_by_owner.return_value = []

        with pytest.raises(AssetNotHeldError):
            await executor.execute(nft_burn_intent())
        sol.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unlock_nft(self, executor, sol):
        signature = await executor.execute(nft_burn_intent())

        sol.send_raw_transaction.assert_awaited_once()
        owner, mint = sol.get_token_accounts_by_owner.await_args.args
        assert mint == NFT_MINT
        assert signature

    @pytest.mark.asyncio
    async def test_failed_solana_transaction_is_terminal(self, executor, sol):
        sol.confirm_transaction.side_effect = SourceTransactionError("sig", "solana", reason="custom error")

        with pytest.raises(TargetRevertError):
            await executor.execute(nft_burn_intent())
        sol.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unconfirmed_solana_write_is_unknown(self, executor, sol):
        sol.send_raw_transaction.side_effect = TransientRPCError("timeout", chain="solana")
        sol.confirm_transaction.return_value = False

        with pytest.raises(OutcomeUnknownError):
            await executor.execute(lock_intent(10 ** 18))
        sol.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_keypair(self, settings, sol):
        executor = ActionExecutor(settings, solana_client_factory=lambda: sol)
        with pytest.raises(ConfigurationError):
            await executor.execute(lock_intent(10 ** 18))
