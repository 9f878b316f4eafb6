"""
Tests for omega_relayer.solana.memo.

Tests cover:
- json, compiled and jsonParsed body shapes
- Log line fallback, including escaped payloads
- Malformed encodings never raising
"""
from __future__ import annotations

import base58

from omega_relayer.solana.memo import MEMO_PROGRAM_V1, MEMO_PROGRAM_V2, extract_memo

from chain_fixtures import (
    HOLDER,
    OMEGA_DESTINATION,
    TOKEN_PROGRAM,
    burn_tx,
    nft_deposit_tx,
)


class TestInstructionShapes:
    """A memo is found in every transaction body shape the RPC returns."""

    def test_json_encoding_base58_data(self):
        assert extract_memo(burn_tx(1, memo=OMEGA_DESTINATION)) == OMEGA_DESTINATION

    def test_compiled_instructions_raw_bytes(self):
        assert extract_memo(nft_deposit_tx(memo=OMEGA_DESTINATION)) == OMEGA_DESTINATION

    def test_compiled_instructions_byte_list_and_buffer(self):
        tx = nft_deposit_tx(memo=None)
        message = tx["transaction"]["message"]
        message["compiledInstructions"].append(
            {"programIdIndex": 4, "data": {"type": "Buffer", "data": list(b"0xfeed")}}
        )
        assert extract_memo(tx) == "0xfeed"

        message["compiledInstructions"][-1]["data"] = list(b"0xbeef")
        assert extract_memo(tx) == "0xbeef"

    def test_json_parsed_encoding(self):
        tx = {
            "transaction": {
                "message": {
                    "accountKeys": [{"pubkey": HOLDER, "signer": True, "writable": True}],
                    "instructions": [
                        {"programId": TOKEN_PROGRAM, "parsed": {"type": "burn"}},
                        {"programId": MEMO_PROGRAM_V2, "parsed": f"  {OMEGA_DESTINATION}\n"},
                    ],
                },
            },
            "meta": {"err": None, "logMessages": []},
        }
        assert extract_memo(tx) == OMEGA_DESTINATION

    def test_loaded_addresses_are_indexed_after_static_keys(self):
        tx = {
            "transaction": {
                "message": {
                    "staticAccountKeys": [HOLDER],
                    "compiledInstructions": [{"programIdIndex": 1, "data": b"0xcafe"}],
                },
            },
            "meta": {"loadedAddresses": {"writable": [], "readonly": [MEMO_PROGRAM_V1]}},
        }
        assert extract_memo(tx) == "0xcafe"

    def test_trailing_nul_padding_is_stripped(self):
        tx = burn_tx(1, memo=None)
        tx["transaction"]["message"]["instructions"].append(
            {"programIdIndex": 4, "data": base58.b58encode(b"0xabc\x00\x00 ").decode()}
        )
        assert extract_memo(tx) == "0xabc"


class TestLogFallback:
    """Memo log lines are used when no instruction carries the memo."""

    def test_memo_from_logs(self):
        tx = burn_tx(1, memo=None)
        tx["meta"]["logMessages"] = [
            f"Program {MEMO_PROGRAM_V2} invoke [1]",
            f'Program log: Memo (len 42): "{OMEGA_DESTINATION}"',
        ]
        assert extract_memo(tx) == OMEGA_DESTINATION

    def test_escaped_quotes_in_log_payload(self):
        tx = burn_tx(1, memo=None)
        tx["meta"]["logMessages"] = ['Program log: Memo (len 7): "say \\"hi\\""']
        assert extract_memo(tx) == 'say "hi"'

    def test_undecodable_instruction_falls_back_to_logs(self):
        tx = burn_tx(1, memo=None)
        tx["transaction"]["message"]["instructions"].append({"programIdIndex": 4, "data": "0OIl"})
        tx["meta"]["logMessages"] = [f'Program log: Memo (len 42): "{OMEGA_DESTINATION}"']
        assert extract_memo(tx) == OMEGA_DESTINATION


class TestNoMemo:
    """Absent or garbage memos yield None instead of raising."""

    def test_no_memo_anywhere(self):
        assert extract_memo(burn_tx(1, memo=None)) is None

    def test_non_dict_bodies(self):
        assert extract_memo(None) is None
        assert extract_memo([]) is None

    def test_out_of_range_program_index(self):
        tx = burn_tx(1, memo=None)
        tx["transaction"]["message"]["instructions"].append({"programIdIndex": 99, "data": "abc"})
        assert extract_memo(tx) is None

    def test_invalid_utf8_memo_data(self):
        tx = nft_deposit_tx(memo=None)
        tx["transaction"]["message"]["compiledInstructions"].append(
            {"programIdIndex": 4, "data": b"\xff\xfe"}
        )
        assert extract_memo(tx) is None

    def test_whitespace_only_memo(self):
        tx = nft_deposit_tx(memo="   \x00")
        assert extract_memo(tx) is None
