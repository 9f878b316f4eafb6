"""Solana (source ledger) integration: RPC, memo decoding, classification, SPL writes."""

from .classifier import TransferClassifier, extract_burn_amount, extract_nft_deposit
from .client import SolanaClient
from .memo import MEMO_PROGRAM_IDS, extract_memo
from .metadata import Collection, NftMetadata, fetch_metadata

__all__ = [
    "SolanaClient",
    "TransferClassifier",
    "extract_burn_amount",
    "extract_nft_deposit",
    "extract_memo",
    "MEMO_PROGRAM_IDS",
    "Collection",
    "NftMetadata",
    "fetch_metadata",
]
