"""Solana <-> Omega bridge relayer: reconciliation engine exports."""

__version__ = "0.1.0"

from .config import RelayerSettings, load_settings
from .dedup import DedupStore, DedupStores
from .engine import RelayerEngine
from .executor import ActionExecutor
from .guard import ConcurrencyGuard
from .listener import TargetListener
from .models import (
    AssetKind,
    CandidateEvent,
    ExecutionOutcome,
    ExecutionResult,
    Flow,
    Ledger,
    TargetEvent,
    TransferIntent,
    WatchedSource,
)
from .pipeline import IntentPipeline
from .pollers import SourcePoller

__all__ = [
    "__version__",
    "RelayerSettings",
    "load_settings",
    "DedupStore",
    "DedupStores",
    "RelayerEngine",
    "ActionExecutor",
    "ConcurrencyGuard",
    "TargetListener",
    "AssetKind",
    "CandidateEvent",
    "ExecutionOutcome",
    "ExecutionResult",
    "Flow",
    "Ledger",
    "TargetEvent",
    "TransferIntent",
    "WatchedSource",
    "IntentPipeline",
    "SourcePoller",
]
