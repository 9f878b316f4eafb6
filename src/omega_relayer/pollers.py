"""
Source pollers for the Solana side of the bridge.

One SourcePoller runs per watched account: the bridged token mint (burns)
and the relayer custody wallet (NFT deposits). Each tick lists recent
signatures, resolves them oldest first and hands qualifying transfers to
the intent pipeline.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import PollerSettings
from .exceptions import PayloadDecodeError, TransientRPCError
from .models import (
    CandidateEvent,
    ExecutionOutcome,
    ExecutionResult,
    Ledger,
    WatchedSource,
)
from .pipeline import IntentPipeline
from .retry import RetryConfig, retry_async
from .solana.classifier import TransferClassifier
from .solana.client import SolanaClient

logger = logging.getLogger(__name__)

# Outcomes that let the watermark move past a signature. Rejections are
# terminal and left for manual reprocessing; busy, failed and unknown
# outcomes are seen again on the next tick.
SETTLED_OUTCOMES = (
    ExecutionOutcome.SUCCESS,
    ExecutionOutcome.SKIPPED_DUPLICATE,
    ExecutionOutcome.REJECTED,
)

# Upper bound on backwards pagination when catching up from the watermark
MAX_CATCHUP_PAGES = 10


class SourcePoller:
    """
    Polls one watched Solana account for candidate transfers.

    Features:
    - Non-overlapping ticks (a stalled RPC call never doubles a tick)
    - Oldest-first processing within a tick
    - Bounded, backed-off retries when resolving a transaction body
    - Advisory in-memory ``until`` watermark; the dedup store stays the
      only correctness mechanism
    """

    def __init__(
        self,
        source: WatchedSource,
        client: SolanaClient,
        pipeline: IntentPipeline,
        settings: Optional[PollerSettings] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.source = source
        self._client = client
        self._pipeline = pipeline
        self._settings = settings or PollerSettings()
        self._interval = interval_seconds or self._settings.token_interval_seconds
        self._classifier = TransferClassifier(source)
        self._fetch_config = RetryConfig(
            max_attempts=self._settings.fetch_attempts,
            base_delay=self._settings.fetch_base_delay,
        )

        self._polling = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._until: Optional[str] = None
        self._backfill_before: Optional[str] = None

        self.ticks = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.source.kind.value}:{self.source.address}"

    @property
    def watermark(self) -> Optional[str]:
        return self._until

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name=f"poller-{self.source.kind.value}")
        logger.info(f"Poller {self.name} started (every {self._interval}s)")

    async def stop(self) -> None:
        """Stop the polling loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Poller {self.name} stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Unexpected error in poller {self.name}: {e}")
            await asyncio.sleep(self._interval)

    async def tick(self) -> List[ExecutionResult]:
        """Run one poll tick. Returns immediately if the previous tick is still running."""
        if self._polling:
            logger.debug(f"Poller {self.name} still busy with previous tick")
            return []

        self._polling = True
        try:
            return await self._tick()
        finally:
            self._polling = False
            self.ticks += 1
            self.last_tick_at = datetime.now(timezone.utc)

    async def _tick(self) -> List[ExecutionResult]:
        try:
            signatures, complete = await self._list_signatures()
        except Exception as e:
            self.last_error = str(e)
            logger.warning(f"Listing signatures for {self.name} failed, aborting tick: {e}")
            return []

        if signatures:
            logger.debug(f"Poller {self.name} found {len(signatures)} signatures")

        results: List[ExecutionResult] = []
        settled_through: Optional[str] = None
        blocked = False

        # getSignaturesForAddress returns newest first
        for info in reversed(signatures):
            signature = info["signature"]
            settled = True

            if not info.get("err"):
                settled, result = await self._handle_signature(signature)
                if result is not None:
                    results.append(result)

            if settled and not blocked:
                settled_through = signature
            else:
                blocked = True

        # A partial listing does not connect to the watermark
        if settled_through is not None and complete:
            self._until = settled_through
        self.last_error = None
        return results

    async def _list_signatures(self) -> Tuple[List[Dict[str, Any]], bool]:
        """List signatures newer than the watermark, newest first.

        Returns (signatures, complete). The listing is incomplete when the
        catch-up page cap is hit before reaching the watermark; the older
        remainder is then listed on the following ticks, starting below the
        oldest signature seen here.
        """
        page_size = self._settings.page_size
        before = self._backfill_before
        page = await self._client.get_signatures_for_address(
            self.source.address, limit=page_size, before=before, until=self._until
        )
        signatures = list(page)

        # Without a watermark only the newest page is considered
        pages = 1
        while self._until and len(page) == page_size and pages < MAX_CATCHUP_PAGES:
            page = await self._client.get_signatures_for_address(
                self.source.address,
                limit=page_size,
                before=signatures[-1]["signature"],
                until=self._until,
            )
            signatures.extend(page)
            pages += 1

        if self._until and len(page) == page_size:
            self._backfill_before = signatures[-1]["signature"]
            logger.warning(
                f"Poller {self.name} listed {len(signatures)} signatures without reaching "
                f"watermark {self._until}; continuing below {self._backfill_before} next tick"
            )
            return signatures, False

        if before is not None:
            logger.info(f"Poller {self.name} caught up to watermark {self._until}")
        self._backfill_before = None
        return signatures, True

    async def _handle_signature(self, signature: str) -> tuple[bool, Optional[ExecutionResult]]:
        """Resolve, classify and execute one signature.

        Returns (settled, result); unsettled signatures hold the watermark
        back so a later tick sees them again.
        """
        body = await self._fetch(signature)
        if body is None:
            return False, None

        event = CandidateEvent(ledger=Ledger.SOLANA, tx_id=signature, body=body)
        try:
            intent = self._classifier.classify(event)
        except PayloadDecodeError as e:
            logger.warning(f"Discarding {signature}: {e}")
            return True, None

        if intent is None:
            return True, None

        result = await self._pipeline.process(intent)
        return result.outcome in SETTLED_OUTCOMES, result

    async def _fetch(self, signature: str) -> Optional[Dict[str, Any]]:
        """Resolve a transaction body with bounded retry. None means skip for this tick."""
        # RPC nodes lag behind the signature index
        await asyncio.sleep(self._settings.propagation_delay_seconds)
        try:
            return await retry_async(self._fetch_once, signature, config=self._fetch_config)
        except Exception as e:
            logger.warning(f"Could not resolve {signature}, skipping this tick: {e}")
            return None

    async def _fetch_once(self, signature: str) -> Dict[str, Any]:
        body = await self._client.get_transaction(signature)
        if body is None:
            raise TransientRPCError(f"Transaction {signature} not available yet", chain="solana")
        return body

    def status(self) -> Dict[str, Any]:
        return {
            "source": self.name,
            "running": self._running,
            "ticks": self.ticks,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "watermark": self._until,
            "backfilling": self._backfill_before is not None,
            "last_error": self.last_error,
        }
