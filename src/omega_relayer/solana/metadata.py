"""Metaplex token metadata lookup for bridged NFTs."""
from __future__ import annotations

import base64
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from solders.pubkey import Pubkey

from ..exceptions import AssetMetadataError
from .client import SolanaClient

logger = logging.getLogger(__name__)

METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")

# key (1) + update authority (32) + mint (32)
_HEADER_LEN = 1 + 32 + 32


class Collection(str, Enum):
    """Wrapped NFT collections deployed on Omega."""
    SOLAR_SENTRIES = "solar_sentries"
    SECRET_SERPENT = "secret_serpent"


@dataclass(frozen=True)
class NftMetadata:
    """The subset of on-chain Metaplex metadata the relayer forwards."""
    mint: str
    name: str
    symbol: str
    uri: str

    @property
    def collection(self) -> Collection:
        """Route by symbol first, then by name; unknown NFTs go to Solar Sentries."""
        if self.symbol == "SSS" or "Secret Serpent" in self.name:
            return Collection.SECRET_SERPENT
        return Collection.SOLAR_SENTRIES

    @property
    def is_known_collection(self) -> bool:
        return self.symbol in ("SSS", "SDS") or any(
            marker in self.name for marker in ("Secret Serpent", "Solar Sent")
        )


def find_metadata_address(mint: str) -> Pubkey:
    """Derive the metadata PDA: seeds ["metadata", program, mint]."""
    pda, _bump = Pubkey.find_program_address(
        [b"metadata", bytes(METADATA_PROGRAM_ID), bytes(Pubkey.from_string(mint))],
        METADATA_PROGRAM_ID,
    )
    return pda


def _read_string(data: bytes, offset: int) -> Tuple[str, int]:
    (length,) = struct.unpack_from("<I", data, offset)
    offset += 4
    if offset + length > len(data):
        raise ValueError(f"String of length {length} at offset {offset} overruns {len(data)} bytes")
    raw = data[offset:offset + length]
    return raw.decode("utf-8").replace("\x00", ""), offset + length


def decode_metadata(mint: str, data: bytes) -> NftMetadata:
    """Decode name/symbol/uri from a Metaplex metadata account.

    Raises:
        AssetMetadataError: The account data is truncated or not UTF-8.
    """
    try:
        offset = _HEADER_LEN
        name, offset = _read_string(data, offset)
        symbol, offset = _read_string(data, offset)
        uri, _ = _read_string(data, offset)
    except (struct.error, ValueError) as e:
        raise AssetMetadataError(
            f"Malformed metadata account for {mint}: {e}",
            details={"mint": mint},
        ) from e
    return NftMetadata(mint=mint, name=name.strip(), symbol=symbol.strip(), uri=uri.strip())


async def fetch_metadata(client: SolanaClient, mint: str) -> NftMetadata:
    """Fetch and decode the metadata account of an NFT mint.

    Raises:
        AssetMetadataError: No metadata account exists or it cannot be decoded.
    """
    try:
        address = find_metadata_address(mint)
    except ValueError as e:
        raise AssetMetadataError(f"Invalid mint address {mint}: {e}", details={"mint": mint}) from e

    info = await client.get_account_info(str(address))
    if not info or not info.get("data"):
        raise AssetMetadataError(
            f"No metadata account for mint {mint} at {address}",
            details={"mint": mint, "metadata_account": str(address)},
        )

    encoded = info["data"][0] if isinstance(info["data"], list) else info["data"]
    metadata = decode_metadata(mint, base64.b64decode(encoded))
    logger.info(
        f"Fetched metadata for {mint}: {metadata.name} | {metadata.symbol} | {metadata.uri}"
    )
    return metadata
