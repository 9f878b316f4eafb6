"""
Action executor: performs the compensating write for a TransferIntent.

Features:
- Omega writes (release, wrapped NFT mint) signed locally and confirmed by
  polling receipts
- Solana writes (SPL mint, NFT transfer out of custody) signed with the
  relayer keypair and confirmed through getSignatureStatuses
- Bounded retries of pre-submission failures with a fresh RPC client per
  attempt
- On-chain duplicate check before minting a wrapped NFT

Once a transaction has been handed to a node it is never sent again. A
transient failure of the send call itself is treated as "possibly
submitted": the executor switches to confirmation polling of the locally
computed transaction id and, failing confirmation, raises
OutcomeUnknownError.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from web3 import Web3

from .config import RelayerSettings
from .evm.contracts import (
    decode_string,
    decode_uint256,
    encode_mint,
    encode_owner_of,
    encode_release,
    encode_solana_mint_of,
    encode_token_counter,
    to_hex_data,
)
from .evm.rpc_client import OmegaRPCClient
from .evm.signer import SignerPort, TransactionRequest
from .exceptions import (
    AssetNotHeldError,
    ConfigurationError,
    DuplicateWrappedAssetError,
    OutcomeUnknownError,
    PayloadDecodeError,
    RelayerError,
    RPCError,
    TargetRevertError,
)
from .models import Flow, TransferIntent
from .retry import RetryConfig, is_transient, retry_async
from .solana.client import SolanaClient
from .solana.metadata import Collection, NftMetadata, fetch_metadata
from .solana.transactions import (
    build_mint_to_instructions,
    build_nft_transfer_instructions,
    sign_transaction,
)
from .units import format_units, to_source_units_with_dust, to_target_units

logger = logging.getLogger(__name__)

OmegaClientFactory = Callable[[], OmegaRPCClient]
SolanaClientFactory = Callable[[], SolanaClient]
PreSubmitCheck = Callable[[OmegaRPCClient], Awaitable[None]]


def parse_solana_address(value: str) -> Pubkey:
    """Parse a Solana destination, raising PayloadDecodeError if it is not a pubkey."""
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as e:
        raise PayloadDecodeError(
            f"Not a valid Solana address: {value!r}",
            details={"destination": value},
        ) from e


def _is_revert(error: RPCError) -> bool:
    return error.code == 3 or "revert" in error.message.lower()


class ActionExecutor:
    """
    Executes TransferIntents against the opposite ledger.

    Args:
        settings: Relayer settings (omega, solana and executor sections)
        signer: Omega signing key; required for Solana -> Omega flows
        solana_keypair: Relayer Solana keypair; required for Omega -> Solana
            flows and used as the NFT custody wallet
        omega_client_factory: Builds a new Omega RPC client; called once per
            attempt
        solana_client_factory: Builds a new Solana RPC client; called once
            per attempt
    """

    def __init__(
        self,
        settings: RelayerSettings,
        signer: Optional[SignerPort] = None,
        solana_keypair: Optional[Keypair] = None,
        omega_client_factory: Optional[OmegaClientFactory] = None,
        solana_client_factory: Optional[SolanaClientFactory] = None,
    ):
        self._settings = settings
        self._signer = signer
        self._keypair = solana_keypair
        self._omega_client_factory = omega_client_factory or (
            lambda: OmegaRPCClient(settings.omega)
        )
        self._solana_client_factory = solana_client_factory or (
            lambda: SolanaClient(settings.solana)
        )
        self._nonce_locks: Dict[str, asyncio.Lock] = {}

        executor = settings.executor
        self._retry_config = RetryConfig(
            max_attempts=executor.max_attempts,
            base_delay=executor.base_delay,
            max_delay=executor.max_delay,
            exponential_base=executor.exponential_base,
        )

    async def execute(self, intent: TransferIntent) -> str:
        """Perform the write for an intent and return the confirmed transaction id.

        Raises:
            TargetRevertError: The ledger rejected the write (terminal)
            DuplicateWrappedAssetError: A live wrapped NFT already exists
            OutcomeUnknownError: Submitted but not confirmed in time
            RetryExhausted: Every pre-submission attempt failed transiently
        """
        if intent.flow == Flow.TOKEN_BURN:
            return await self.release_tokens(intent)
        if intent.flow == Flow.NFT_DEPOSIT:
            return await self.mint_wrapped_nft(intent)
        if intent.flow == Flow.TOKEN_LOCK:
            return await self.mint_source_tokens(intent)
        if intent.flow == Flow.NFT_BURN:
            return await self.unlock_nft(intent)
        raise ValueError(f"Unsupported flow: {intent.flow}")

    # ------------------------------------------------------------------
    # Solana -> Omega
    # ------------------------------------------------------------------

    async def release_tokens(self, intent: TransferIntent) -> str:
        """Release native Omega tokens for a Solana burn."""
        bridge = self._settings.omega.bridge_address
        if not bridge:
            raise ConfigurationError("Omega bridge address is not configured")

        amount = to_target_units(
            intent.amount,
            self._settings.solana.token_decimals,
            self._settings.omega.native_decimals,
        )
        logger.info(
            f"Releasing {format_units(amount, self._settings.omega.native_decimals)} "
            f"to {intent.destination} for burn {intent.source_id}"
        )
        return await self._submit_omega(bridge, encode_release(intent.destination, amount))

    async def mint_wrapped_nft(self, intent: TransferIntent) -> str:
        """Mint the wrapped representation of a deposited Solana NFT."""
        metadata = await retry_async(self._fetch_metadata, intent.asset_id, config=self._retry_config)
        contract = self._collection_address(metadata)
        logger.info(
            f"Minting wrapped {metadata.collection.value} NFT for {intent.asset_id} "
            f"to {intent.destination} on {contract}"
        )

        async def ensure_not_wrapped(rpc: OmegaRPCClient) -> None:
            await self.check_not_wrapped(rpc, contract, intent.asset_id)

        return await self._submit_omega(
            contract,
            encode_mint(intent.destination, metadata.uri, intent.asset_id),
            pre_submit=ensure_not_wrapped,
        )

    async def _fetch_metadata(self, mint: str) -> NftMetadata:
        async with self._solana_client_factory() as client:
            return await fetch_metadata(client, mint)

    def _collection_address(self, metadata: NftMetadata) -> str:
        omega = self._settings.omega
        if metadata.collection == Collection.SECRET_SERPENT:
            address = omega.serpent_address
        else:
            address = omega.sentries_address
            if not metadata.is_known_collection:
                logger.warning(
                    f"Unknown collection for {metadata.mint} ({metadata.symbol!r}, {metadata.name!r}), "
                    f"defaulting to Solar Sentries"
                )
        if not address:
            raise ConfigurationError(f"No Omega contract configured for {metadata.collection.value}")
        return address

    async def check_not_wrapped(self, rpc: OmegaRPCClient, contract: str, mint: str) -> None:
        """Scan the most recent wrapped tokens for a live one backed by ``mint``.

        Raises:
            DuplicateWrappedAssetError: A live token already wraps ``mint``.
        """
        counter = decode_uint256(
            await rpc.eth_call({"to": contract, "data": to_hex_data(encode_token_counter())})
        )
        lowest = max(0, counter - self._settings.executor.nft_scan_window)

        for token_id in range(counter - 1, lowest - 1, -1):
            try:
                wrapped_mint = decode_string(
                    await rpc.eth_call(
                        {"to": contract, "data": to_hex_data(encode_solana_mint_of(token_id))}
                    )
                )
                if wrapped_mint != mint:
                    continue
                await rpc.eth_call({"to": contract, "data": to_hex_data(encode_owner_of(token_id))})
            except RPCError as e:
                if e.retryable or not _is_revert(e):
                    raise
                # Burned tokens revert on lookup
                continue
            raise DuplicateWrappedAssetError(mint, token_id, contract)

    async def _submit_omega(
        self,
        contract: str,
        data: bytes,
        pre_submit: Optional[PreSubmitCheck] = None,
    ) -> str:
        if self._signer is None:
            raise ConfigurationError("Omega signer is not configured")
        tx_hash = await retry_async(
            self._send_omega_transaction, contract, data, pre_submit, config=self._retry_config
        )
        await self._wait_for_receipt(tx_hash)
        return tx_hash

    def _nonce_lock(self, address: str) -> asyncio.Lock:
        """Per-sender lock held from nonce fetch until the send returns.

        Writes from every flow share one Omega account, so each pending nonce
        is read by exactly one writer.
        """
        key = address.lower()
        lock = self._nonce_locks.get(key)
        if lock is None:
            lock = self._nonce_locks[key] = asyncio.Lock()
        return lock

    async def _send_omega_transaction(
        self,
        contract: str,
        data: bytes,
        pre_submit: Optional[PreSubmitCheck],
    ) -> str:
        async with self._omega_client_factory() as rpc:
            if pre_submit is not None:
                await pre_submit(rpc)

            async with self._nonce_lock(self._signer.address):
                tx = await self._build_transaction(rpc, contract, data)
                raw_tx = self._signer.sign_transaction(tx)
                tx_hash = Web3.to_hex(Web3.keccak(hexstr=raw_tx))

                try:
                    await rpc.send_raw_transaction(raw_tx)
                except RPCError as e:
                    if _is_revert(e):
                        raise TargetRevertError(tx_hash, "omega", reason=e.message) from e
                    if not e.retryable:
                        raise
                    logger.warning(f"Send of {tx_hash} failed ambiguously ({e}); polling for it instead")
                except Exception as e:
                    if not is_transient(e):
                        raise
                    logger.warning(f"Send of {tx_hash} failed ambiguously ({e}); polling for it instead")
                else:
                    logger.info(f"Transaction submitted: {tx_hash} (nonce {tx.nonce})")
            return tx_hash

    async def _build_transaction(
        self, rpc: OmegaRPCClient, contract: str, data: bytes
    ) -> TransactionRequest:
        omega = self._settings.omega
        sender = self._signer.address

        try:
            estimate = await rpc.estimate_gas(
                {"from": sender, "to": contract, "data": to_hex_data(data)}
            )
            gas_limit = estimate * (100 + omega.gas_limit_buffer_percent) // 100
        except RPCError as e:
            if _is_revert(e):
                raise TargetRevertError(None, "omega", reason=e.message) from e
            if e.retryable:
                raise
            logger.warning(f"Gas estimation failed: {e}, using default")
            gas_limit = omega.default_gas_limit

        return TransactionRequest(
            chain_id=omega.chain_id,
            to_address=contract,
            data=data,
            nonce=await rpc.get_nonce(sender),
            gas_limit=gas_limit,
            gas_price=await rpc.get_gas_price(),
        )

    async def _wait_for_receipt(self, tx_hash: str) -> dict:
        """Poll for a receipt until confirmed, reverted or timed out."""
        executor = self._settings.executor
        required = self._settings.omega.confirmations_required
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        async with self._omega_client_factory() as rpc:
            while True:
                try:
                    receipt = await rpc.get_transaction_receipt(tx_hash)
                    if receipt:
                        if int(receipt.get("status", "0x0"), 16) == 0:
                            raise TargetRevertError(tx_hash, "omega")

                        tx_block = int(receipt.get("blockNumber", "0x0"), 16)
                        confirmations = await rpc.get_block_number() - tx_block + 1
                        if confirmations >= required:
                            logger.info(f"Transaction {tx_hash} confirmed with {confirmations} confirmations")
                            return receipt
                        logger.debug(f"Transaction {tx_hash} has {confirmations} confirmations, waiting for {required}")
                except RelayerError as e:
                    if not e.retryable:
                        raise
                    logger.warning(f"Receipt poll for {tx_hash} failed: {e}")

                elapsed = loop.time() - start_time
                if elapsed >= executor.confirmation_timeout_seconds:
                    raise OutcomeUnknownError(tx_hash, "omega", elapsed)
                await asyncio.sleep(executor.confirmation_poll_seconds)

    # ------------------------------------------------------------------
    # Omega -> Solana
    # ------------------------------------------------------------------

    async def mint_source_tokens(self, intent: TransferIntent) -> str:
        """Mint bridged SPL tokens on Solana for an Omega lock."""
        solana = self._settings.solana
        if not solana.token_mint:
            raise ConfigurationError("Solana token mint is not configured")

        amount, dust = to_source_units_with_dust(
            intent.amount, solana.token_decimals, self._settings.omega.native_decimals
        )
        if dust:
            logger.warning(
                f"Lock {intent.source_id} carries {dust} wei below one token unit; it is not bridged"
            )
        recipient = parse_solana_address(intent.destination)
        mint = Pubkey.from_string(solana.token_mint)
        logger.info(
            f"Minting {format_units(amount, solana.token_decimals)} to {recipient} for lock {intent.source_id}"
        )

        async def instructions(client: SolanaClient) -> List[Instruction]:
            return build_mint_to_instructions(
                self._require_keypair().pubkey(), mint, recipient, amount, solana.token_decimals
            )

        return await self._submit_solana(instructions)

    async def unlock_nft(self, intent: TransferIntent) -> str:
        """Transfer a custodied NFT back to its Solana owner after a wrapped burn."""
        recipient = parse_solana_address(intent.destination)
        mint = parse_solana_address(intent.asset_id)
        holder = self._require_keypair().pubkey()
        logger.info(
            f"Unlocking {intent.asset_id} (wrapped token {intent.instance_id}) to {recipient}"
        )

        async def instructions(client: SolanaClient) -> List[Instruction]:
            accounts = await client.get_token_accounts_by_owner(str(holder), str(mint))
            held = sum(
                int(a["account"]["data"]["parsed"]["info"]["tokenAmount"]["amount"])
                for a in accounts
            )
            if held < 1:
                raise AssetNotHeldError(intent.asset_id, str(holder))
            return build_nft_transfer_instructions(holder, mint, recipient)

        return await self._submit_solana(instructions)

    def _require_keypair(self) -> Keypair:
        if self._keypair is None:
            raise ConfigurationError("Solana relayer keypair is not configured")
        return self._keypair

    async def _submit_solana(
        self,
        build_instructions: Callable[[SolanaClient], Awaitable[List[Instruction]]],
    ) -> str:
        keypair = self._require_keypair()

        async def send() -> str:
            async with self._solana_client_factory() as client:
                ixs = await build_instructions(client)
                blockhash = await client.get_latest_blockhash()
                signed = sign_transaction(keypair, ixs, blockhash)
                try:
                    await client.send_raw_transaction(signed.base64_tx)
                except Exception as e:
                    if not is_transient(e):
                        raise
                    logger.warning(
                        f"Send of {signed.signature} failed ambiguously ({e}); polling for it instead"
                    )
                return signed.signature

        signature = await retry_async(send, config=self._retry_config)
        await self._wait_for_signature(signature)
        return signature

    async def _wait_for_signature(self, signature: str) -> None:
        executor = self._settings.executor
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        async with self._solana_client_factory() as client:
            while True:
                try:
                    if await client.confirm_transaction(signature):
                        logger.info(f"Solana transaction {signature} confirmed")
                        return
                except Exception as e:
                    if not is_transient(e):
                        raise
                    logger.warning(f"Status poll for {signature} failed: {e}")

                elapsed = loop.time() - start_time
                if elapsed >= executor.confirmation_timeout_seconds:
                    raise OutcomeUnknownError(signature, "solana", elapsed)
                await asyncio.sleep(executor.confirmation_poll_seconds)
