"""Calldata encoding and event decoding for the Omega bridge contracts.

OmegaBridge:
    function lock(string solanaAddress) payable
    function release(address recipient, uint256 amount)
    event Locked(address indexed sender, uint256 amount, string solanaAddress)

WrappedNFT (one deployment per collection):
    function mint(address to, string uri, string solanaMint) returns (uint256)
    function tokenCounter() view returns (uint256)
    function solanaMintOf(uint256 tokenId) view returns (string)
    function ownerOf(uint256 tokenId) view returns (address)  // reverts once burned
    event BridgeBurn(address indexed from, uint256 indexed tokenId,
                     string solanaMint, string solanaRecipient)
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from ..exceptions import PayloadDecodeError
from ..models import TargetEvent


def _selector(signature: str) -> bytes:
    return Web3.keccak(text=signature)[:4]


def _topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


RELEASE_SELECTOR = _selector("release(address,uint256)")
MINT_SELECTOR = _selector("mint(address,string,string)")
TOKEN_COUNTER_SELECTOR = _selector("tokenCounter()")
SOLANA_MINT_OF_SELECTOR = _selector("solanaMintOf(uint256)")
OWNER_OF_SELECTOR = _selector("ownerOf(uint256)")

LOCKED_TOPIC = _topic("Locked(address,uint256,string)")
BRIDGE_BURN_TOPIC = _topic("BridgeBurn(address,uint256,string,string)")

EVENT_NAMES = {
    LOCKED_TOPIC: "Locked",
    BRIDGE_BURN_TOPIC: "BridgeBurn",
}


def to_hex_data(data: bytes) -> str:
    return "0x" + data.hex()


def encode_release(recipient: str, amount: int) -> bytes:
    """Encode OmegaBridge.release(recipient, amount)."""
    return RELEASE_SELECTOR + encode(
        ["address", "uint256"], [Web3.to_checksum_address(recipient), amount]
    )


def encode_mint(to: str, uri: str, solana_mint: str) -> bytes:
    """Encode WrappedNFT.mint(to, uri, solanaMint)."""
    return MINT_SELECTOR + encode(
        ["address", "string", "string"],
        [Web3.to_checksum_address(to), uri, solana_mint],
    )


def encode_token_counter() -> bytes:
    return TOKEN_COUNTER_SELECTOR


def encode_solana_mint_of(token_id: int) -> bytes:
    return SOLANA_MINT_OF_SELECTOR + encode(["uint256"], [token_id])


def encode_owner_of(token_id: int) -> bytes:
    return OWNER_OF_SELECTOR + encode(["uint256"], [token_id])


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def decode_uint256(result: str) -> int:
    """Decode a single uint256 eth_call return value."""
    (value,) = decode(["uint256"], _hex_to_bytes(result))
    return value


def decode_string(result: str) -> str:
    """Decode a single string eth_call return value."""
    (value,) = decode(["string"], _hex_to_bytes(result))
    return value


def _topic_address(topic: str) -> str:
    return Web3.to_checksum_address("0x" + topic[-40:])


def _int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def decode_event(log: Dict[str, Any]) -> Optional[TargetEvent]:
    """Decode a Locked or BridgeBurn log into a TargetEvent.

    Returns None for logs of other events. Removed (reorged) logs are
    dropped as well.

    Raises:
        PayloadDecodeError: The log matches a known topic but its data does
            not decode.
    """
    topics: List[str] = log.get("topics") or []
    if not topics or log.get("removed"):
        return None

    name = EVENT_NAMES.get(topics[0].lower())
    if name is None:
        return None

    try:
        data = _hex_to_bytes(log.get("data") or "0x")
        if name == "Locked":
            amount, solana_address = decode(["uint256", "string"], data)
            args = {
                "sender": _topic_address(topics[1]),
                "amount": amount,
                "solanaAddress": solana_address,
            }
        else:
            solana_mint, solana_recipient = decode(["string", "string"], data)
            args = {
                "from": _topic_address(topics[1]),
                "tokenId": _int(topics[2]),
                "solanaMint": solana_mint,
                "solanaRecipient": solana_recipient,
            }
        return TargetEvent(
            name=name,
            tx_hash=log["transactionHash"],
            log_index=_int(log.get("logIndex", 0)),
            block_number=_int(log.get("blockNumber", 0)),
            address=Web3.to_checksum_address(log["address"]),
            args=args,
        )
    except (DecodingError, IndexError, KeyError, ValueError, TypeError) as e:
        raise PayloadDecodeError(
            f"Cannot decode {name} log in {log.get('transactionHash')}: {e}",
            details={"tx_hash": log.get("transactionHash")},
        ) from e
