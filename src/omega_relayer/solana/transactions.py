"""SPL token instruction builders and transaction signing for Solana."""
from __future__ import annotations

import base64
import json
import logging
import struct
from dataclasses import dataclass
from typing import Sequence

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from ..config import SolanaSettings
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Solana program IDs
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

# SPL token instruction discriminators
_TRANSFER_CHECKED = 12
_MINT_TO_CHECKED = 14
# Associated token account program: CreateIdempotent
_CREATE_ATA_IDEMPOTENT = 1


@dataclass(frozen=True)
class SignedSolanaTransaction:
    """A signed transaction ready for sendTransaction."""
    signature: str
    base64_tx: str


def load_keypair(settings: SolanaSettings) -> Keypair:
    """Load the relayer keypair from inline JSON or from a keypair file.

    Both forms hold the 64-byte secret key as a JSON array of integers, the
    format written by ``solana-keygen``.
    """
    raw = settings.relayer_keypair_json.get_secret_value()
    if not raw and settings.relayer_keypair_path:
        try:
            raw = settings.relayer_keypair_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read relayer keypair from {settings.relayer_keypair_path}: {e}"
            ) from e
    if not raw:
        raise ConfigurationError("Solana relayer keypair is not configured")

    try:
        secret = bytes(json.loads(raw))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid Solana relayer keypair: {e}") from e
    if len(secret) != 64:
        raise ConfigurationError(f"Solana relayer keypair must be 64 bytes, got {len(secret)}")
    try:
        return Keypair.from_bytes(secret)
    except ValueError as e:
        raise ConfigurationError(f"Invalid Solana relayer keypair: {e}") from e


def get_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Derive the Associated Token Account for owner + mint."""
    ata, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return ata


def create_associated_token_account_idempotent(
    payer: Pubkey, owner: Pubkey, mint: Pubkey
) -> Instruction:
    """Create the owner's ATA, succeeding as a no-op if it already exists."""
    ata = get_associated_token_address(owner, mint)
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([_CREATE_ATA_IDEMPOTENT]),
        [
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def mint_to_checked(
    mint: Pubkey, destination: Pubkey, authority: Pubkey, amount: int, decimals: int
) -> Instruction:
    """SPL MintToChecked: mint ``amount`` raw units into ``destination``."""
    return Instruction(
        TOKEN_PROGRAM_ID,
        struct.pack("<BQB", _MINT_TO_CHECKED, amount, decimals),
        [
            AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        ],
    )


def transfer_checked(
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
) -> Instruction:
    """SPL TransferChecked between two token accounts of ``mint``."""
    return Instruction(
        TOKEN_PROGRAM_ID,
        struct.pack("<BQB", _TRANSFER_CHECKED, amount, decimals),
        [
            AccountMeta(pubkey=source, is_signer=False, is_writable=True),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
        ],
    )


def build_mint_to_instructions(
    authority: Pubkey, mint: Pubkey, recipient: Pubkey, amount: int, decimals: int
) -> list[Instruction]:
    """Ensure the recipient ATA exists, then mint into it."""
    recipient_ata = get_associated_token_address(recipient, mint)
    return [
        create_associated_token_account_idempotent(authority, recipient, mint),
        mint_to_checked(mint, recipient_ata, authority, amount, decimals),
    ]


def build_nft_transfer_instructions(
    holder: Pubkey, mint: Pubkey, recipient: Pubkey
) -> list[Instruction]:
    """Move one zero-decimal token from the holder's ATA to the recipient's ATA."""
    return [
        create_associated_token_account_idempotent(holder, recipient, mint),
        transfer_checked(
            get_associated_token_address(holder, mint),
            mint,
            get_associated_token_address(recipient, mint),
            holder,
            1,
            0,
        ),
    ]


def sign_transaction(
    keypair: Keypair, instructions: Sequence[Instruction], blockhash: str
) -> SignedSolanaTransaction:
    """Compile a v0 message paid by ``keypair`` and sign it."""
    message = MessageV0.try_compile(
        keypair.pubkey(),
        list(instructions),
        [],
        Hash.from_string(blockhash),
    )
    tx = VersionedTransaction(message, [keypair])
    return SignedSolanaTransaction(
        signature=str(tx.signatures[0]),
        base64_tx=base64.b64encode(bytes(tx)).decode("ascii"),
    )
