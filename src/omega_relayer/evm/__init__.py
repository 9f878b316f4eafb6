"""Omega (EVM target ledger) integration: RPC, contract codec, signing."""

from .contracts import BRIDGE_BURN_TOPIC, LOCKED_TOPIC, decode_event
from .rpc_client import OmegaRPCClient
from .signer import LocalAccountSigner, SignerPort, TransactionRequest

__all__ = [
    "OmegaRPCClient",
    "LocalAccountSigner",
    "SignerPort",
    "TransactionRequest",
    "decode_event",
    "LOCKED_TOPIC",
    "BRIDGE_BURN_TOPIC",
]
