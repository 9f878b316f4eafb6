"""
Tests for omega_relayer.evm.contracts and omega_relayer.evm.signer.
"""
from __future__ import annotations

import pytest
from eth_abi import decode
from web3 import Web3

from omega_relayer.evm.contracts import (
    MINT_SELECTOR,
    RELEASE_SELECTOR,
    decode_event,
    decode_string,
    decode_uint256,
    encode_mint,
    encode_release,
    to_hex_data,
)
from omega_relayer.evm.signer import LocalAccountSigner, TransactionRequest
from omega_relayer.exceptions import ConfigurationError, PayloadDecodeError

from chain_fixtures import (
    BRIDGE_ADDRESS,
    NFT_MINT,
    OMEGA_DESTINATION,
    OMEGA_PRIVATE_KEY,
    SENDER_ADDRESS,
    SENTRIES_ADDRESS,
    SOLANA_RECIPIENT,
    bridge_burn_log,
    locked_log,
)

TX_HASH = "0x" + "ab" * 32


class TestCalldata:
    def test_release_selector_and_args(self):
        data = encode_release(OMEGA_DESTINATION, 50 * 10 ** 18)

        assert data[:4] == RELEASE_SELECTOR == Web3.keccak(text="release(address,uint256)")[:4]
        recipient, amount = decode(["address", "uint256"], data[4:])
        assert recipient.lower() == OMEGA_DESTINATION
        assert amount == 50 * 10 ** 18

    def test_mint_args(self):
        data = encode_mint(OMEGA_DESTINATION, "https://meta.test/1.json", NFT_MINT)

        assert data[:4] == MINT_SELECTOR
        to, uri, mint = decode(["address", "string", "string"], data[4:])
        assert (to.lower(), uri, mint) == (OMEGA_DESTINATION, "https://meta.test/1.json", NFT_MINT)

    def test_return_value_decoding(self):
        from eth_abi import encode

        assert decode_uint256(to_hex_data(encode(["uint256"], [42]))) == 42
        assert decode_string(to_hex_data(encode(["string"], [NFT_MINT]))) == NFT_MINT


class TestDecodeEvent:
    def test_locked(self):
        event = decode_event(locked_log(TX_HASH, log_index=3, amount=2 * 10 ** 18))

        assert event.name == "Locked"
        assert event.address == BRIDGE_ADDRESS
        assert event.log_index == 3
        assert event.block_number == 100
        assert event.args == {
            "sender": SENDER_ADDRESS,
            "amount": 2 * 10 ** 18,
            "solanaAddress": SOLANA_RECIPIENT,
        }
        assert event.event_id == f"3:{TX_HASH}"

    def test_bridge_burn(self):
        event = decode_event(bridge_burn_log(TX_HASH, token_id=7))

        assert event.name == "BridgeBurn"
        assert event.address == SENTRIES_ADDRESS
        assert event.args["from"] == SENDER_ADDRESS
        assert event.args["tokenId"] == 7
        assert event.args["solanaMint"] == NFT_MINT
        assert event.args["solanaRecipient"] == SOLANA_RECIPIENT
        assert event.event_id == f"7:{TX_HASH}"

    def test_unknown_topic_and_removed_logs_ignored(self):
        log = locked_log(TX_HASH, 0, 10 ** 18)
        assert decode_event({**log, "topics": ["0x" + "00" * 32]}) is None
        assert decode_event({**log, "removed": True}) is None
        assert decode_event({**log, "topics": []}) is None

    def test_garbage_data_raises(self):
        log = locked_log(TX_HASH, 0, 10 ** 18)
        with pytest.raises(PayloadDecodeError):
            decode_event({**log, "data": "0x1234"})


class TestLocalAccountSigner:
    def test_signed_transaction_hash_is_keccak_of_raw(self):
        signer = LocalAccountSigner(OMEGA_PRIVATE_KEY)
        tx = TransactionRequest(
            chain_id=1313161768,
            to_address=BRIDGE_ADDRESS,
            data=encode_release(OMEGA_DESTINATION, 1),
            nonce=0,
            gas_limit=100_000,
            gas_price=10 ** 9,
        )

        raw = signer.sign_transaction(tx)

        assert raw.startswith("0x")
        assert Web3.is_checksum_address(signer.address)
        # Signing is deterministic for the same key and payload
        assert signer.sign_transaction(tx) == raw

    @pytest.mark.parametrize("key", ["", "0x1234"])
    def test_invalid_key(self, key):
        with pytest.raises(ConfigurationError):
            LocalAccountSigner(key)
