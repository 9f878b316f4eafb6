"""Data model shared by pollers, listener, pipeline and executor."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Ledger(str, Enum):
    """The two ledgers the relayer bridges between."""
    SOLANA = "solana"
    OMEGA = "omega"


class AssetKind(str, Enum):
    """What a watched source account produces."""
    FUNGIBLE_BURN = "fungible_burn"
    NFT_DEPOSIT = "nft_deposit"


class Flow(str, Enum):
    """Bridge direction + asset class. Each flow owns one dedup domain."""
    TOKEN_BURN = "token_burn"        # Solana burn -> Omega release
    NFT_DEPOSIT = "nft_deposit"      # Solana NFT deposit -> Omega wrapped mint
    TOKEN_LOCK = "token_lock"        # Omega lock -> Solana SPL mint
    NFT_BURN = "nft_burn"            # Omega wrapped burn -> Solana NFT transfer

    @property
    def dedup_domain(self) -> str:
        return {
            Flow.TOKEN_BURN: "token_burns",
            Flow.NFT_DEPOSIT: "nft_deposits",
            Flow.TOKEN_LOCK: "target_locks",
            Flow.NFT_BURN: "target_burns",
        }[self]


@dataclass(frozen=True)
class WatchedSource:
    """A source-ledger account polled for candidate transactions."""
    ledger: Ledger
    address: str
    kind: AssetKind

    @property
    def flow(self) -> Flow:
        if self.kind == AssetKind.FUNGIBLE_BURN:
            return Flow.TOKEN_BURN
        return Flow.NFT_DEPOSIT


@dataclass
class CandidateEvent:
    """A resolved source-ledger transaction awaiting classification."""
    ledger: Ledger
    tx_id: str
    body: Dict[str, Any]
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class TransferIntent:
    """A validated request to perform one compensating action.

    ``amount`` is in the origin ledger's smallest unit. NFT flows carry the
    Solana mint in ``asset_id``; NFT burns also carry the wrapped token id
    in ``instance_id``.
    """
    flow: Flow
    source_id: str
    destination: str
    origin_ledger: Ledger
    asset_id: str
    amount: int = 1
    instance_id: Optional[int] = None

    @property
    def dedup_domain(self) -> str:
        return self.flow.dedup_domain

    @property
    def lock_key(self) -> str:
        """Identifier serialized by the concurrency guard.

        Always the asset: the NFT mint, the bridged token mint for burns or
        the bridge contract for locks.
        """
        return self.asset_id


@dataclass(frozen=True)
class TargetEvent:
    """A decoded Omega event log."""
    name: str
    tx_hash: str
    log_index: int
    block_number: int
    address: str
    args: Dict[str, Any]

    @property
    def event_id(self) -> str:
        """Composite identifier shared by the live handler and the sweep."""
        if self.name == "BridgeBurn":
            return f"{self.args['tokenId']}:{self.tx_hash}"
        return f"{self.log_index}:{self.tx_hash}"


class ExecutionOutcome(str, Enum):
    """Terminal state of one pass of an intent through the pipeline."""
    SUCCESS = "success"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_BUSY = "skipped_busy"
    REJECTED = "rejected"
    OUTCOME_UNKNOWN = "outcome_unknown"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    """Result reported by the pipeline for one intent."""
    outcome: ExecutionOutcome
    intent: TransferIntent
    tx_id: Optional[str] = None
    detail: Optional[str] = None