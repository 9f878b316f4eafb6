"""Intent pipeline: dedup check, per-asset guard, execution, durable record.

Every discovery path (source pollers, target listener, reconciliation
sweep) hands its TransferIntents to ``IntentPipeline.process``. All
per-intent errors are contained here and reported as an ExecutionResult,
so a bad transaction never stops the loop that found it.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Set

from .dedup import DedupStores
from .exceptions import (
    AssetMetadataError,
    AssetNotHeldError,
    DedupStoreError,
    DuplicateWrappedAssetError,
    OutcomeUnknownError,
    PayloadDecodeError,
    RelayerError,
    TargetRevertError,
)
from .executor import ActionExecutor
from .guard import ConcurrencyGuard
from .logging_config import intent_context
from .models import ExecutionOutcome, ExecutionResult, TransferIntent

logger = logging.getLogger(__name__)

# Terminal for the intent: logged, not recorded, eligible for manual reprocessing
REJECTION_ERRORS = (
    TargetRevertError,
    DuplicateWrappedAssetError,
    AssetMetadataError,
    AssetNotHeldError,
    PayloadDecodeError,
)


def _error_extra(error: RelayerError) -> dict:
    return {"error_code": error.error_code, "error_details": error.details}


class IntentPipeline:
    """Runs TransferIntents through dedup, guard and executor.

    Args:
        stores: Dedup stores, one per flow
        guard: Process-wide concurrency guard
        executor: Performs the compensating write
        record_on_unknown_outcome: Record intents whose write was submitted
            but never confirmed. Off by default: such intents stay eligible
            for rediscovery.
    """

    def __init__(
        self,
        stores: DedupStores,
        guard: ConcurrencyGuard,
        executor: ActionExecutor,
        record_on_unknown_outcome: bool = False,
    ):
        self._stores = stores
        self._guard = guard
        self._executor = executor
        self._record_on_unknown_outcome = record_on_unknown_outcome
        # Confirmed executions whose record could not be persisted
        self._unpersisted: Dict[str, Set[str]] = {}
        self.outcomes: Counter = Counter()

    def is_processed(self, intent: TransferIntent) -> bool:
        domain = intent.dedup_domain
        if intent.source_id in self._unpersisted.get(domain, ()):
            return True
        return self._stores[domain].contains(intent.source_id)

    @property
    def unpersisted_count(self) -> int:
        return sum(len(ids) for ids in self._unpersisted.values())

    async def process(self, intent: TransferIntent) -> ExecutionResult:
        """Execute an intent at most once and report what happened."""
        with intent_context(intent.flow.value, intent.source_id, intent.asset_id):
            result = await self._process(intent)
        self.outcomes[result.outcome] += 1
        return result

    async def _process(self, intent: TransferIntent) -> ExecutionResult:
        if self.is_processed(intent):
            logger.debug(f"{intent.source_id} already processed, skipping")
            return ExecutionResult(ExecutionOutcome.SKIPPED_DUPLICATE, intent)

        with self._guard.held(intent.lock_key) as acquired:
            if not acquired:
                logger.info(f"{intent.lock_key} is already being executed, skipping for now")
                return ExecutionResult(ExecutionOutcome.SKIPPED_BUSY, intent)

            # Another task may have finished the same intent while we were queued
            if self.is_processed(intent):
                logger.debug(f"{intent.source_id} processed concurrently, skipping")
                return ExecutionResult(ExecutionOutcome.SKIPPED_DUPLICATE, intent)

            logger.info(
                f"Executing {intent.flow.value} {intent.source_id}: "
                f"{intent.amount} of {intent.asset_id} -> {intent.destination}"
            )

            try:
                tx_id = await self._executor.execute(intent)
            except REJECTION_ERRORS as e:
                logger.error(f"Rejected {intent.source_id}: {e}", extra=_error_extra(e))
                return ExecutionResult(ExecutionOutcome.REJECTED, intent, detail=str(e))
            except OutcomeUnknownError as e:
                logger.error(
                    f"Outcome unknown for {intent.source_id}: {e}. "
                    f"Check {e.tx_hash} on {e.chain} before any manual replay",
                    extra=_error_extra(e),
                )
                if self._record_on_unknown_outcome:
                    self._record(intent)
                return ExecutionResult(
                    ExecutionOutcome.OUTCOME_UNKNOWN, intent, tx_id=e.tx_hash, detail=str(e)
                )
            except RelayerError as e:
                logger.error(f"Failed to execute {intent.source_id}: {e}", extra=_error_extra(e))
                return ExecutionResult(ExecutionOutcome.FAILED, intent, detail=str(e))
            except Exception as e:
                logger.exception(f"Unexpected error executing {intent.source_id}: {e}")
                return ExecutionResult(ExecutionOutcome.FAILED, intent, detail=str(e))

            logger.info(f"Executed {intent.source_id} as {tx_id}")
            if not self._record(intent):
                return ExecutionResult(
                    ExecutionOutcome.FAILED,
                    intent,
                    tx_id=tx_id,
                    detail="executed but dedup record not persisted",
                )
            return ExecutionResult(ExecutionOutcome.SUCCESS, intent, tx_id=tx_id)

    def _record(self, intent: TransferIntent) -> bool:
        """Persist the intent's source id; on failure keep it in memory and alert."""
        domain = intent.dedup_domain
        store = self._stores[domain]
        pending = self._unpersisted.setdefault(domain, set())
        try:
            for source_id in sorted(pending):
                store.record(source_id)
                pending.discard(source_id)
            store.record(intent.source_id)
            return True
        except DedupStoreError as e:
            pending.add(intent.source_id)
            logger.critical(
                f"Could not persist {intent.source_id} to '{domain}': {e}. "
                f"It will not be re-executed by this process; restore the store before restarting",
                extra=_error_extra(e),
            )
            return False
