"""Unified exception hierarchy for the relayer.

All relayer-specific exceptions inherit from RelayerError, enabling:
- Consistent containment at the pipeline level
- Distinct logging of each outcome category (rejected vs. unknown)
- Structured details for log records

Usage:
    from omega_relayer.exceptions import TargetRevertError, OutcomeUnknownError

    try:
        await executor.release_tokens(intent)
    except TargetRevertError:
        ...  # terminal, do not record
    except OutcomeUnknownError:
        ...  # submitted but unconfirmed, do not resubmit

All exceptions have:
- error_code: Machine-readable error code (e.g., "TARGET_REVERT")
- retryable: Whether the retry combinator may try the operation again
- message: Human-readable error message
- details: Optional additional context dictionary
"""
from __future__ import annotations

from typing import Any, List, Optional, Tuple


class RelayerError(Exception):
    """Base exception for all relayer errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "RELAYER_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a loggable dictionary."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(RelayerError):
    """Missing or invalid relayer configuration."""

    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# RPC Errors (transient unless stated otherwise)
# =============================================================================

class RPCError(RelayerError):
    """JSON-RPC error returned by a node."""

    error_code = "RPC_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        chain: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if code is not None:
            details["code"] = code
        if chain:
            details["chain"] = chain
        super().__init__(message, details=details)
        self.code = code
        self.data = data
        self.chain = chain


class TransientRPCError(RPCError):
    """Network failure, timeout, rate limit or lagging node. Safe to retry."""

    error_code = "TRANSIENT_RPC_ERROR"
    retryable = True


class AllEndpointsFailedError(TransientRPCError):
    """Raised when every configured RPC endpoint failed for one call."""

    error_code = "ALL_ENDPOINTS_FAILED"

    def __init__(self, chain: str, errors: List[Tuple[str, str]]):
        self.errors = errors
        error_summary = "; ".join([f"{url}: {err}" for url, err in errors[:3]])
        super().__init__(
            f"All RPC endpoints failed for {chain}. Errors: {error_summary}",
            chain=chain,
        )


class ChainIDMismatchError(RelayerError):
    """Raised when the node reports a different chain ID than configured."""

    error_code = "CHAIN_ID_MISMATCH"

    def __init__(self, chain: str, expected: int, received: int):
        self.chain = chain
        self.expected = expected
        self.received = received
        super().__init__(
            f"Chain ID mismatch for {chain}: expected {expected}, got {received}. "
            f"SECURITY: This could indicate connecting to wrong network!",
            details={"expected": expected, "received": received},
        )


# =============================================================================
# Discovery Errors
# =============================================================================

class PayloadDecodeError(RelayerError):
    """A routing payload was present but could not be interpreted."""

    error_code = "PAYLOAD_DECODE_ERROR"


# =============================================================================
# Execution Errors
# =============================================================================

class TargetRevertError(RelayerError):
    """Transaction was mined but reverted. Terminal for the intent."""

    error_code = "TARGET_REVERT"

    def __init__(self, tx_hash: Optional[str], chain: str, reason: Optional[str] = None):
        self.tx_hash = tx_hash
        self.chain = chain
        self.reason = reason
        if tx_hash:
            message = f"Transaction {tx_hash} failed on {chain}"
        else:
            message = f"Transaction rejected by {chain} before submission"
        if reason:
            message += f": {reason}"
        super().__init__(message, details={"tx_hash": tx_hash, "chain": chain})


class SourceTransactionError(TargetRevertError):
    """Solana reported an execution error for a submitted transaction."""

    error_code = "SOURCE_TX_ERROR"


class OutcomeUnknownError(RelayerError):
    """Transaction was submitted but its outcome could not be confirmed in time.

    The write is not safe to repeat; callers must not resubmit.
    """

    error_code = "OUTCOME_UNKNOWN"

    def __init__(self, tx_hash: str, chain: str, waited_seconds: float):
        self.tx_hash = tx_hash
        self.chain = chain
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Transaction {tx_hash} on {chain} not confirmed after {waited_seconds:.0f}s",
            details={"tx_hash": tx_hash, "chain": chain},
        )


class DuplicateWrappedAssetError(RelayerError):
    """The target ledger already holds a wrapped representation of the asset."""

    error_code = "DUPLICATE_WRAPPED_ASSET"

    def __init__(self, asset_id: str, token_id: int, contract: str):
        self.asset_id = asset_id
        self.token_id = token_id
        self.contract = contract
        super().__init__(
            f"Asset {asset_id} already wrapped as token {token_id} on {contract}",
            details={"asset_id": asset_id, "token_id": token_id},
        )


class AssetMetadataError(RelayerError):
    """Source-ledger metadata for an NFT could not be resolved."""

    error_code = "ASSET_METADATA_ERROR"


class AssetNotHeldError(RelayerError):
    """The relayer does not custody the asset it was asked to release."""

    error_code = "ASSET_NOT_HELD"

    def __init__(self, asset_id: str, holder: str):
        self.asset_id = asset_id
        self.holder = holder
        super().__init__(
            f"Relayer wallet {holder} does not hold {asset_id}",
            details={"asset_id": asset_id, "holder": holder},
        )


# =============================================================================
# Persistence Errors
# =============================================================================

class DedupStoreError(RelayerError):
    """The dedup store could not be loaded or durably updated."""

    error_code = "DEDUP_STORE_ERROR"


__all__ = [
    "RelayerError",
    "ConfigurationError",
    "RPCError",
    "TransientRPCError",
    "AllEndpointsFailedError",
    "ChainIDMismatchError",
    "PayloadDecodeError",
    "TargetRevertError",
    "SourceTransactionError",
    "OutcomeUnknownError",
    "DuplicateWrappedAssetError",
    "AssetMetadataError",
    "AssetNotHeldError",
    "DedupStoreError",
]
