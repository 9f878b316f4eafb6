"""Durable idempotency oracle.

Each dedup domain is one JSON file holding a flat array of processed source
identifiers. The set only grows; removing an entry is a manual operator
action. Every ``record`` rewrites the whole file through a temp file +
``os.replace``, then fsyncs the directory, so a crash leaves either the
old or the new set on disk, never a truncated one.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, FrozenSet, Iterable

from .exceptions import DedupStoreError
from .models import Flow

logger = logging.getLogger(__name__)


def _fsync_directory(directory: Path) -> None:
    """Flush a rename inside ``directory`` to disk (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class DedupStore:
    """File-backed set of processed identifiers for one dedup domain.

    Args:
        path: JSON file holding the identifiers. Missing file means empty.
        domain: Name used in log lines and errors.
    """

    def __init__(self, path: Path, domain: str | None = None):
        self._path = Path(path)
        self._domain = domain or self._path.stem
        self._lock = threading.RLock()
        self._seen: set[str] = self._load()

        logger.info(
            f"Loaded dedup store '{self._domain}' with {len(self._seen)} entries from {self._path}"
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def domain(self) -> str:
        return self._domain

    def _load(self) -> set[str]:
        if not self._path.exists():
            return set()
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            # Starting with an empty set here would reopen every past transfer
            raise DedupStoreError(
                f"Cannot load dedup store '{self._domain}' from {self._path}: {e}",
                details={"path": str(self._path)},
            ) from e

        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            raise DedupStoreError(
                f"Dedup store '{self._domain}' at {self._path} is not a list of strings",
                details={"path": str(self._path)},
            )
        return set(data)

    def contains(self, identifier: str) -> bool:
        """Return True if the identifier was already executed."""
        with self._lock:
            return identifier in self._seen

    __contains__ = contains

    def record(self, identifier: str) -> None:
        """Durably add an identifier.

        The in-memory set is only updated after the file is replaced, so a
        failed write leaves the store exactly as it was and is surfaced as
        DedupStoreError.
        """
        with self._lock:
            if identifier in self._seen:
                return
            updated = self._seen | {identifier}
            self._write(updated)
            self._seen = updated

        logger.info(f"Recorded {identifier} in dedup store '{self._domain}'")

    def _write(self, identifiers: Iterable[str]) -> None:
        payload = json.dumps(sorted(identifiers), indent=2)
        directory = self._path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=directory,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
            _fsync_directory(directory)
        except OSError as e:
            raise DedupStoreError(
                f"Failed to persist dedup store '{self._domain}' to {self._path}: {e}",
                details={"path": str(self._path)},
            ) from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def snapshot(self) -> FrozenSet[str]:
        """Immutable copy of the current identifiers."""
        with self._lock:
            return frozenset(self._seen)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def stats(self) -> dict:
        """Return store statistics."""
        return {
            "domain": self._domain,
            "path": str(self._path),
            "entries": len(self),
        }


class DedupStores:
    """One DedupStore per flow, all kept under the same data directory."""

    def __init__(self, data_dir: Path):
        self._data_dir = Path(data_dir)
        self._stores: Dict[str, DedupStore] = {}
        for flow in Flow:
            domain = flow.dedup_domain
            self._stores[domain] = DedupStore(
                self._data_dir / f"processed_{domain}.json",
                domain=domain,
            )

    def for_flow(self, flow: Flow) -> DedupStore:
        return self._stores[flow.dedup_domain]

    def __getitem__(self, domain: str) -> DedupStore:
        return self._stores[domain]

    def stats(self) -> list[dict]:
        return [store.stats() for store in self._stores.values()]
