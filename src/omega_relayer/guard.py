"""In-process concurrency guard keyed by asset identifier.

Prevents two overlapping executions for the same asset within one process
lifetime. It never waits: a busy asset is skipped and picked up again on a
later poll tick. Restarts are covered by the dedup store, not by this guard.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """Process-wide set of asset identifiers currently being executed."""

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, asset_id: str) -> bool:
        """Atomically claim an asset. Returns False immediately if already held."""
        with self._lock:
            if asset_id in self._held:
                return False
            self._held.add(asset_id)
            return True

    def release(self, asset_id: str) -> None:
        """Release a claimed asset. Releasing an unheld asset is a no-op."""
        with self._lock:
            self._held.discard(asset_id)

    @contextmanager
    def held(self, asset_id: str) -> Iterator[bool]:
        """Scoped acquisition.

        Yields whether the asset was acquired; if it was, it is released on
        every exit path including exceptions and task cancellation.

            with guard.held(intent.lock_key) as acquired:
                if not acquired:
                    return
                ...
        """
        acquired = self.try_acquire(asset_id)
        if not acquired:
            logger.debug(f"Asset {asset_id} already in flight, skipping")
        try:
            yield acquired
        finally:
            if acquired:
                self.release(asset_id)

    def is_held(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._held

    def __len__(self) -> int:
        with self._lock:
            return len(self._held)
