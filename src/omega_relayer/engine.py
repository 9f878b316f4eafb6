"""
Relayer engine: wires stores, guard, executor, pollers and listener into
one long-running process.

Usage:
    settings = load_settings()
    engine = RelayerEngine.from_settings(settings)
    await engine.run()
"""
from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from solders.keypair import Keypair

from .config import RelayerSettings
from .dedup import DedupStores
from .evm.rpc_client import OmegaRPCClient
from .evm.signer import LocalAccountSigner, SignerPort
from .executor import ActionExecutor
from .guard import ConcurrencyGuard
from .listener import TargetListener
from .models import AssetKind, Ledger, WatchedSource
from .pipeline import IntentPipeline
from .pollers import SourcePoller
from .solana.client import SolanaClient
from .solana.transactions import load_keypair

logger = logging.getLogger(__name__)


def configured_keypair(settings: RelayerSettings) -> Optional[Keypair]:
    """The relayer's Solana keypair, or None when none is configured.

    Raises:
        ConfigurationError: A keypair is configured but cannot be loaded.
    """
    solana = settings.solana
    if not (solana.relayer_keypair_json.get_secret_value() or solana.relayer_keypair_path):
        return None
    return load_keypair(solana)


def watched_sources(settings: RelayerSettings, keypair: Optional[Keypair] = None) -> List[WatchedSource]:
    """Solana accounts the relayer polls, derived from configuration."""
    sources = []
    if settings.solana.token_mint:
        sources.append(
            WatchedSource(Ledger.SOLANA, settings.solana.token_mint, AssetKind.FUNGIBLE_BURN)
        )

    receiver = settings.solana.nft_receiver
    if not receiver and keypair is not None:
        receiver = str(keypair.pubkey())
    if receiver:
        sources.append(WatchedSource(Ledger.SOLANA, receiver, AssetKind.NFT_DEPOSIT))
    return sources


class RelayerEngine:
    """
    Owns every long-running component of the relayer.

    Pollers and the listener share one pipeline, and with it one set of
    dedup stores and one concurrency guard, so an intent discovered by
    several paths is still executed at most once.
    """

    def __init__(
        self,
        settings: RelayerSettings,
        pipeline: IntentPipeline,
        stores: DedupStores,
        pollers: List[SourcePoller],
        listener: Optional[TargetListener] = None,
        solana_client: Optional[SolanaClient] = None,
        omega_client: Optional[OmegaRPCClient] = None,
    ):
        self.settings = settings
        self.pipeline = pipeline
        self.stores = stores
        self.pollers = pollers
        self.listener = listener
        self._solana_client = solana_client
        self._omega_client = omega_client

        self._stop_event: Optional[asyncio.Event] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self.started_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: RelayerSettings) -> "RelayerEngine":
        """Build the engine and all of its components from settings.

        Raises:
            ConfigurationError: A configured key cannot be loaded.
            DedupStoreError: An existing dedup store is unreadable.
        """
        stores = DedupStores(settings.store.data_dir)
        guard = ConcurrencyGuard()

        signer: Optional[SignerPort] = None
        private_key = settings.omega.private_key.get_secret_value()
        if private_key:
            signer = LocalAccountSigner(private_key)
            logger.info(f"Omega signer loaded: {signer.address}")
        else:
            logger.warning("No Omega private key configured; Solana -> Omega flows will fail")

        keypair = configured_keypair(settings)
        if keypair is not None:
            logger.info(f"Solana relayer keypair loaded: {keypair.pubkey()}")
        else:
            logger.warning("No Solana relayer keypair configured; Omega -> Solana flows will fail")

        executor = ActionExecutor(settings, signer=signer, solana_keypair=keypair)
        pipeline = IntentPipeline(
            stores,
            guard,
            executor,
            record_on_unknown_outcome=settings.executor.record_on_unknown_outcome,
        )

        solana_client = SolanaClient(settings.solana)
        pollers = []
        for source in watched_sources(settings, keypair):
            interval = (
                settings.poller.token_interval_seconds
                if source.kind == AssetKind.FUNGIBLE_BURN
                else settings.poller.nft_interval_seconds
            )
            pollers.append(
                SourcePoller(source, solana_client, pipeline, settings.poller, interval_seconds=interval)
            )

        omega_client = None
        listener = None
        if settings.listener.enabled:
            omega_client = OmegaRPCClient(settings.omega)
            listener = TargetListener(settings, omega_client, pipeline)

        return cls(
            settings,
            pipeline,
            stores,
            pollers,
            listener=listener,
            solana_client=solana_client,
            omega_client=omega_client,
        )

    async def start(self) -> None:
        """Start pollers, listener and heartbeat."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)

        self._stop_event = asyncio.Event()
        self.started_at = datetime.now(timezone.utc)

        if not self.pollers and self.listener is None:
            logger.warning("Nothing to watch: configure a token mint, an NFT receiver or the Omega listener")

        for poller in self.pollers:
            await poller.start()
        if self.listener is not None:
            await self.listener.start()

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="heartbeat")
        logger.info(
            f"Relayer started ({self.settings.environment}) with {len(self.pollers)} pollers, "
            f"listener {'on' if self.listener else 'off'}"
        )

    async def stop(self) -> None:
        """Stop every component and release network resources."""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for poller in self.pollers:
            await poller.stop()
        if self.listener is not None:
            await self.listener.stop()

        if self._solana_client is not None:
            await self._solana_client.close()
        if self._omega_client is not None:
            await self._omega_client.close()

        logger.info(f"Relayer stopped. Outcomes: {self._outcome_counts()}")

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM or request_stop()."""
        await self.start()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or thread; KeyboardInterrupt still works
                pass

        try:
            await self._stop_event.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_seconds)
            health = self.health()
            logger.info(
                f"Heartbeat: outcomes {health['outcomes']}, "
                f"unpersisted {health['unpersisted']}",
                extra={"stores": health["stores"]},
            )
            if health["unpersisted"]:
                logger.critical(
                    f"{health['unpersisted']} executed intents are not persisted to the dedup store"
                )

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exception = context.get("exception")
        logger.error(
            f"Unhandled error in event loop: {context.get('message')}",
            exc_info=exception,
        )

    def _outcome_counts(self) -> Dict[str, int]:
        return {outcome.value: count for outcome, count in self.pipeline.outcomes.items()}

    def health(self) -> Dict[str, Any]:
        """Snapshot of engine state for heartbeats and the status command."""
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "pollers": [poller.status() for poller in self.pollers],
            "listener": self.listener.status() if self.listener else None,
            "stores": self.stores.stats(),
            "outcomes": self._outcome_counts(),
            "unpersisted": self.pipeline.unpersisted_count,
            "omega_endpoints": self._omega_client.get_endpoint_stats() if self._omega_client else [],
        }
