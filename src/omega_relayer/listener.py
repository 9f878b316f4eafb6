"""
Target listener and reconciliation sweep for Omega events.

Two producers feed one queue:
- the live subscription, an ``eth_newFilter`` installed on the node and
  drained with ``eth_getFilterChanges`` (re-installed whenever the node
  loses it)
- the reconciliation sweep, which re-reads the trailing block window with
  ``eth_getLogs`` on a fixed interval to cover anything the filter missed

A single consumer turns queued events into TransferIntents and runs them
through the intent pipeline. Both producers identify an event by the same
composite id, so whichever path delivers it second is a dedup hit.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from .config import RelayerSettings
from .evm.contracts import BRIDGE_BURN_TOPIC, LOCKED_TOPIC, decode_event
from .evm.rpc_client import OmegaRPCClient
from .exceptions import PayloadDecodeError
from .executor import parse_solana_address
from .models import (
    ExecutionOutcome,
    ExecutionResult,
    Flow,
    Ledger,
    TargetEvent,
    TransferIntent,
)
from .pipeline import IntentPipeline
from .units import rescale_factor

logger = logging.getLogger(__name__)


class TargetListener:
    """
    Discovers Locked and BridgeBurn events on Omega.

    Args:
        settings: Relayer settings (omega and listener sections)
        client: Long-lived Omega client; filters are bound to its node
        pipeline: Intent pipeline shared with the source pollers
    """

    def __init__(
        self,
        settings: RelayerSettings,
        client: OmegaRPCClient,
        pipeline: IntentPipeline,
    ):
        self._settings = settings
        self._listener = settings.listener
        self._client = client
        self._pipeline = pipeline
        self.queue: asyncio.Queue[TargetEvent] = asyncio.Queue()

        omega = settings.omega
        self._bridge = omega.bridge_address.lower()
        self._nft_contracts = {
            a.lower() for a in (omega.sentries_address, omega.serpent_address) if a
        }

        self._filter_id: Optional[str] = None
        # Source ids whose write was rejected; terminal until restart
        self._rejected: Set[str] = set()
        self._sweeping = False
        self._running = False
        self._tasks: List[asyncio.Task] = []

        self.last_filter_poll_at: Optional[datetime] = None
        self.last_sweep_at: Optional[datetime] = None
        self.events_seen = 0

    @property
    def addresses(self) -> List[str]:
        return [a for a in (self._bridge, *sorted(self._nft_contracts)) if a]

    def _log_filter(self, from_block: Any, to_block: Any) -> Dict[str, Any]:
        return {
            "address": self.addresses,
            "topics": [[LOCKED_TOPIC, BRIDGE_BURN_TOPIC]],
            "fromBlock": from_block,
            "toBlock": to_block,
        }

    async def start(self) -> None:
        """Start the filter producer, the sweep and the consumer."""
        if self._running:
            return
        if not self.addresses:
            logger.warning("No Omega contracts configured, target listener not started")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._filter_loop(), name="listener-filter"),
            asyncio.create_task(self._sweep_loop(), name="listener-sweep"),
            asyncio.create_task(self._consume_loop(), name="listener-consumer"),
        ]
        logger.info(f"Target listener started for {', '.join(self.addresses)}")

    async def stop(self) -> None:
        """Stop all listener tasks and uninstall the filter."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self._filter_id is not None:
            try:
                await self._client.uninstall_filter(self._filter_id)
            except Exception as e:
                logger.debug(f"Could not uninstall filter {self._filter_id}: {e}")
            self._filter_id = None
        logger.info("Target listener stopped")

    # ------------------------------------------------------------------
    # Live subscription
    # ------------------------------------------------------------------

    async def _filter_loop(self) -> None:
        while self._running:
            await self.poll_filter()
            await asyncio.sleep(self._listener.filter_poll_seconds)

    async def poll_filter(self) -> int:
        """Drain the live filter once, installing it if needed. Returns events queued."""
        try:
            if self._filter_id is None:
                self._filter_id = await self._client.new_filter(
                    self._log_filter("latest", "latest")
                )
                logger.info(f"Installed Omega log filter {self._filter_id}")
                return 0

            logs = await self._client.get_filter_changes(self._filter_id)
        except Exception as e:
            logger.warning(f"Omega filter poll failed, re-installing filter: {e}")
            self._filter_id = None
            return 0

        self.last_filter_poll_at = datetime.now(timezone.utc)
        return self._enqueue_logs(logs, source="live")

    # ------------------------------------------------------------------
    # Reconciliation sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while self._running:
            await self.sweep()
            await asyncio.sleep(self._listener.sweep_interval_seconds)

    async def sweep(self) -> int:
        """Re-scan the trailing block window once. Returns events queued."""
        if self._sweeping:
            logger.debug("Previous sweep still running")
            return 0

        self._sweeping = True
        try:
            latest = await self._client.get_block_number()
            start = max(0, latest - self._listener.sweep_window_blocks)
            queued = 0

            chunk = max(1, self._listener.max_block_range)
            for from_block in range(start, latest + 1, chunk):
                to_block = min(from_block + chunk - 1, latest)
                logs = await self._client.get_logs(
                    self._log_filter(hex(from_block), hex(to_block))
                )
                queued += self._enqueue_logs(logs, source="sweep", skip_processed=True)

            self.last_sweep_at = datetime.now(timezone.utc)
            if queued:
                logger.info(f"Sweep of blocks {start}-{latest} queued {queued} unprocessed events")
            return queued
        except Exception as e:
            logger.warning(f"Reconciliation sweep failed: {e}")
            return 0
        finally:
            self._sweeping = False

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    def _enqueue_logs(
        self, logs: List[Dict[str, Any]], source: str, skip_processed: bool = False
    ) -> int:
        queued = 0
        for log in logs:
            try:
                event = decode_event(log)
            except PayloadDecodeError as e:
                logger.warning(f"Discarding undecodable {source} log: {e}")
                continue
            if event is None:
                continue

            if skip_processed:
                intent = self._intent_or_none(event)
                if intent is None or self._is_settled(intent):
                    continue

            self.queue.put_nowait(event)
            self.events_seen += 1
            queued += 1
            logger.debug(f"Queued {event.name} {event.event_id} from {source}")
        return queued

    async def _consume_loop(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.exception(f"Unexpected error handling {event.name} {event.event_id}: {e}")
            finally:
                self.queue.task_done()

    async def handle_event(self, event: TargetEvent) -> Optional[ExecutionResult]:
        """Convert one event to an intent and run it through the pipeline."""
        intent = self._intent_or_none(event)
        if intent is None:
            return None
        if intent.source_id in self._rejected:
            logger.debug(f"{intent.source_id} was rejected earlier, not retrying")
            return None

        result = await self._pipeline.process(intent)
        if result.outcome == ExecutionOutcome.REJECTED:
            self._rejected.add(intent.source_id)
        return result

    def _is_settled(self, intent: TransferIntent) -> bool:
        return intent.source_id in self._rejected or self._pipeline.is_processed(intent)

    def _intent_or_none(self, event: TargetEvent) -> Optional[TransferIntent]:
        try:
            return self.intent_from_event(event)
        except PayloadDecodeError as e:
            logger.warning(f"Discarding {event.name} {event.event_id}: {e}")
            return None

    def intent_from_event(self, event: TargetEvent) -> Optional[TransferIntent]:
        """Build the TransferIntent for a decoded event.

        Returns None for events from unexpected contracts and for locks
        smaller than one Solana token unit.

        Raises:
            PayloadDecodeError: The event names an invalid Solana address.
        """
        address = event.address.lower()

        if event.name == "Locked":
            if address != self._bridge:
                return None
            amount = event.args["amount"]
            factor = rescale_factor(
                self._settings.solana.token_decimals, self._settings.omega.native_decimals
            )
            if amount < factor:
                logger.warning(f"Lock {event.event_id} of {amount} wei is below one token unit, ignoring")
                return None
            destination = str(parse_solana_address(event.args["solanaAddress"]))
            return TransferIntent(
                flow=Flow.TOKEN_LOCK,
                source_id=event.event_id,
                destination=destination,
                origin_ledger=Ledger.OMEGA,
                asset_id=event.address,
                amount=amount,
            )

        if event.name == "BridgeBurn":
            if address not in self._nft_contracts:
                return None
            destination = str(parse_solana_address(event.args["solanaRecipient"]))
            mint = str(parse_solana_address(event.args["solanaMint"]))
            return TransferIntent(
                flow=Flow.NFT_BURN,
                source_id=event.event_id,
                destination=destination,
                origin_ledger=Ledger.OMEGA,
                asset_id=mint,
                instance_id=event.args["tokenId"],
            )

        return None

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "filter_installed": self._filter_id is not None,
            "queue_size": self.queue.qsize(),
            "events_seen": self.events_seen,
            "rejected": len(self._rejected),
            "last_filter_poll_at": self.last_filter_poll_at.isoformat() if self.last_filter_poll_at else None,
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
        }
