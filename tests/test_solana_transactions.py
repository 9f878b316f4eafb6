"""
Tests for omega_relayer.solana.transactions and omega_relayer.solana.metadata.
"""
from __future__ import annotations

import base64
import json
import struct
from unittest.mock import AsyncMock

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from omega_relayer.config import SolanaSettings
from omega_relayer.exceptions import AssetMetadataError, ConfigurationError
from omega_relayer.solana.metadata import (
    Collection,
    NftMetadata,
    decode_metadata,
    fetch_metadata,
    find_metadata_address,
)
from omega_relayer.solana.transactions import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    build_mint_to_instructions,
    build_nft_transfer_instructions,
    get_associated_token_address,
    load_keypair,
    sign_transaction,
)

from chain_fixtures import NFT_MINT, metadata_account


class TestInstructionBuilders:
    def setup_method(self):
        self.authority = Keypair().pubkey()
        self.recipient = Keypair().pubkey()
        self.mint = Keypair().pubkey()

    def test_mint_to_checked_layout(self):
        create_ata, mint_to = build_mint_to_instructions(
            self.authority, self.mint, self.recipient, 50_000_000_000, 9
        )

        assert create_ata.program_id == ASSOCIATED_TOKEN_PROGRAM_ID
        assert bytes(create_ata.data) == b"\x01"
        assert mint_to.program_id == TOKEN_PROGRAM_ID
        assert bytes(mint_to.data) == struct.pack("<BQB", 14, 50_000_000_000, 9)
        assert mint_to.accounts[1].pubkey == get_associated_token_address(self.recipient, self.mint)
        assert mint_to.accounts[2].is_signer

    def test_nft_transfer_moves_one_zero_decimal_token(self):
        _, transfer = build_nft_transfer_instructions(self.authority, self.mint, self.recipient)

        assert bytes(transfer.data) == struct.pack("<BQB", 12, 1, 0)
        assert transfer.accounts[0].pubkey == get_associated_token_address(self.authority, self.mint)
        assert transfer.accounts[2].pubkey == get_associated_token_address(self.recipient, self.mint)

    def test_signature_is_known_before_sending(self):
        keypair = Keypair()
        ixs = build_mint_to_instructions(keypair.pubkey(), self.mint, self.recipient, 1, 9)

        signed = sign_transaction(keypair, ixs, str(Hash.default()))

        tx = VersionedTransaction.from_bytes(base64.b64decode(signed.base64_tx))
        assert str(tx.signatures[0]) == signed.signature
        assert tx.message.account_keys[0] == keypair.pubkey()


class TestLoadKeypair:
    def test_inline_json(self):
        keypair = Keypair()
        settings = SolanaSettings(relayer_keypair_json=json.dumps(list(bytes(keypair))))
        assert load_keypair(settings).pubkey() == keypair.pubkey()

    def test_keypair_file(self, tmp_path):
        keypair = Keypair()
        path = tmp_path / "id.json"
        path.write_text(json.dumps(list(bytes(keypair))))
        assert load_keypair(SolanaSettings(relayer_keypair_path=path)).pubkey() == keypair.pubkey()

    def test_missing_and_invalid(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_keypair(SolanaSettings())
        with pytest.raises(ConfigurationError):
            load_keypair(SolanaSettings(relayer_keypair_json="[1, 2, 3]"))
        with pytest.raises(ConfigurationError):
            load_keypair(SolanaSettings(relayer_keypair_path=tmp_path / "missing.json"))


class TestMetadata:
    def test_decode_strips_padding(self):
        data = metadata_account("Solar Sentry #12", "SDS", "https://meta.test/12.json")
        metadata = decode_metadata(NFT_MINT, data)

        assert metadata == NftMetadata(NFT_MINT, "Solar Sentry #12", "SDS", "https://meta.test/12.json")
        assert metadata.collection == Collection.SOLAR_SENTRIES
        assert metadata.is_known_collection

    @pytest.mark.parametrize(
        "name,symbol,expected,known",
        [
            ("Secret Serpent #1", "", Collection.SECRET_SERPENT, True),
            ("Anything", "SSS", Collection.SECRET_SERPENT, True),
            ("Solar Sentinel #3", "", Collection.SOLAR_SENTRIES, True),
            ("Mystery", "MYS", Collection.SOLAR_SENTRIES, False),
        ],
    )
    def test_collection_routing(self, name, symbol, expected, known):
        metadata = NftMetadata(NFT_MINT, name, symbol, "uri")
        assert metadata.collection == expected
        assert metadata.is_known_collection is known

    def test_truncated_account(self):
        data = metadata_account("Solar Sentry #12", "SDS", "https://meta.test/12.json")
        with pytest.raises(AssetMetadataError):
            decode_metadata(NFT_MINT, data[:80])

    def test_metadata_pda_is_derived_from_program_and_mint(self):
        assert find_metadata_address(NFT_MINT) == find_metadata_address(NFT_MINT)
        assert find_metadata_address(NFT_MINT) != find_metadata_address(str(Pubkey.default()))

    @pytest.mark.asyncio
    async def test_fetch_metadata(self):
        data = metadata_account("Secret Serpent #4", "SSS", "https://meta.test/4.json")
        client = AsyncMock()
        client.get_account_info.return_value = {"data": [base64.b64encode(data).decode(), "base64"]}

        metadata = await fetch_metadata(client, NFT_MINT)

        assert metadata.collection == Collection.SECRET_SERPENT
        client.get_account_info.assert_awaited_once_with(str(find_metadata_address(NFT_MINT)))

    @pytest.mark.asyncio
    async def test_fetch_metadata_missing_account(self):
        client = AsyncMock()
        client.get_account_info.return_value = None
        with pytest.raises(AssetMetadataError):
            await fetch_metadata(client, NFT_MINT)
