"""Transaction signing for the Omega relayer account."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict

from eth_account import Account
from web3 import Web3

from ..exceptions import ConfigurationError


@dataclass
class TransactionRequest:
    """An unsigned legacy (type 0) transaction."""
    chain_id: int
    to_address: str
    data: bytes
    nonce: int
    gas_limit: int
    gas_price: int
    value: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "to": Web3.to_checksum_address(self.to_address),
            "data": self.data,
            "nonce": self.nonce,
            "gas": self.gas_limit,
            "gasPrice": self.gas_price,
            "value": self.value,
        }


class SignerPort(ABC):
    """Abstract interface for the relayer's Omega signing key."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Checksummed address of the signing account."""

    @abstractmethod
    def sign_transaction(self, tx: TransactionRequest) -> str:
        """Sign a transaction and return the raw signed tx as 0x-hex."""


class LocalAccountSigner(SignerPort):
    """Signs with a private key held in process memory."""

    def __init__(self, private_key: str):
        if not private_key:
            raise ConfigurationError("Omega relayer private key is not configured")
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid Omega relayer private key: {e}") from e

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: TransactionRequest) -> str:
        signed = self._account.sign_transaction(tx.to_dict())
        return Web3.to_hex(signed.raw_transaction)
